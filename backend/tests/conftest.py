"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (through aiosqlite) with
all tables created, wrapped in the same :class:`Database` object the
application uses. A single shared connection (``StaticPool``) lets the
fixture session, API requests and sweeps see each other's commits.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.billing.dependencies import get_gateway
from app.billing.midtrans_client import (
    GatewayTransactionStatus,
    map_status,
    notification_signature,
)
from app.billing.plans import DEFAULT_PLANS, PlanInterval
from app.config import settings
from app.database import Base, Database, get_database
from app.main import app
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus
from app.models.tenant import Tenant
from app.models.user import User

TEST_SERVER_KEY = "SB-Mid-server-test-key"
TEST_CRON_TOKEN = "test-cron-token"


# ---------------------------------------------------------------------------
# Fake payment gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory :class:`PaymentGateway` with recorded calls.

    ``create_checkout_token`` / ``get_transaction_status`` /
    ``cancel_transaction`` are ``AsyncMock`` objects so tests can set
    ``side_effect`` (e.g. a ``GatewayError``) or inspect call args.
    """

    def __init__(self, server_key: str = TEST_SERVER_KEY) -> None:
        self.server_key = server_key
        self.create_checkout_token = AsyncMock(side_effect=self._token)
        self.get_transaction_status = AsyncMock(side_effect=self._status)
        self.cancel_transaction = AsyncMock(return_value=None)
        self.statuses: dict[str, str] = {}
        self.requests: list[Any] = []

    async def _token(self, request) -> str:
        self.requests.append(request)
        return f"snap-{request.order_id}"

    async def _status(self, order_id: str) -> GatewayTransactionStatus:
        status = self.statuses.get(order_id, "pending")
        return GatewayTransactionStatus(
            order_id=order_id,
            transaction_status=status,
            status_code="200",
            payment_type="bank_transfer",
            raw={"order_id": order_id, "transaction_status": status, "status_code": "200"},
        )

    def verify_notification_signature(self, notification: dict[str, Any]) -> bool:
        expected = notification_signature(
            str(notification.get("order_id", "")),
            str(notification.get("status_code", "")),
            str(notification.get("gross_amount", "")),
            self.server_key,
        )
        return notification.get("signature_key") == expected

    def map_status(self, provider_status: str | None):
        return map_status(provider_status)


def signed_notification(
    order_id: str,
    transaction_status: str,
    gross_amount: str = "100.00",
    status_code: str = "200",
    server_key: str = TEST_SERVER_KEY,
    **extra: Any,
) -> dict[str, Any]:
    """A Midtrans-style notification body with a valid ``signature_key``."""
    return {
        "order_id": order_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "payment_type": "bank_transfer",
        "signature_key": notification_signature(order_id, status_code, gross_amount, server_key),
        **extra,
    }


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[Database, None]:
    """Fresh in-memory database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    db = Database(engine=engine)
    yield db
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await db.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging data and calling services directly.

    Tests commit explicitly before handing control to code that opens its
    own sessions (API requests, sweeps).
    """
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(autouse=True)
def _billing_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "internal_cron_token", TEST_CRON_TOKEN)
    monkeypatch.setattr(settings, "midtrans_server_key", TEST_SERVER_KEY)


@pytest_asyncio.fixture
async def client(database: Database, gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database and fake gateway."""
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Catalogue, tenant and users
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> dict[str, SubscriptionPlan]:
    """The default catalogue plus two round-priced plans for proration checks."""
    created: dict[str, SubscriptionPlan] = {}
    for definition in DEFAULT_PLANS:
        created[definition.id] = SubscriptionPlan(
            id=definition.id,
            name=definition.name,
            description=definition.description,
            price=definition.price,
            interval=definition.interval,
            max_users=definition.max_users,
            max_ingredients=definition.max_ingredients,
            max_batches=definition.max_batches,
            features=definition.features,
        )
    created["plan-a"] = SubscriptionPlan(id="plan-a", name="Plan A", price=Decimal("10"), interval=PlanInterval.MONTHLY)
    created["plan-b"] = SubscriptionPlan(id="plan-b", name="Plan B", price=Decimal("30"), interval=PlanInterval.MONTHLY)
    created["annual-plan"] = SubscriptionPlan(
        id="annual-plan", name="Annual", price=Decimal("900"), interval=PlanInterval.YEARLY
    )
    created["retired-plan"] = SubscriptionPlan(
        id="retired-plan", name="Retired", price=Decimal("50"), interval=PlanInterval.MONTHLY, is_active=False
    )
    db_session.add_all(created.values())
    await db_session.commit()
    return created


@pytest_asyncio.fixture
async def tenant(db_session: AsyncSession, plans) -> Tenant:
    unique = uuid.uuid4().hex[:8]
    tenant = Tenant(name="Test Brewery", subdomain=f"brewery-{unique}")
    db_session.add(tenant)
    await db_session.commit()
    return tenant


async def create_user(db_session: AsyncSession, tenant: Tenant, role: str = "ADMIN") -> User:
    """Create a user of ``tenant`` with ``role``."""
    unique = uuid.uuid4().hex[:8]
    user = User(
        tenant_id=tenant.id,
        email=f"{role.lower()}-{unique}@test.com",
        name="Test Brewer",
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession, tenant: Tenant) -> User:
    return await create_user(db_session, tenant, "ADMIN")


@pytest_asyncio.fixture
async def staff_user(db_session: AsyncSession, tenant: Tenant) -> User:
    return await create_user(db_session, tenant, "STAFF")


def auth_headers_for(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.tenant_id)}"}


@pytest.fixture
def auth_headers(admin_user: User) -> dict[str, str]:
    """Return Authorization headers for the tenant admin."""
    return auth_headers_for(admin_user)


async def create_subscription(
    db_session: AsyncSession,
    tenant: Tenant,
    plan_id: str = "free-plan",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    start: datetime | None = None,
    end: datetime | None = None,
    **fields: Any,
) -> Subscription:
    """Create and commit the tenant's subscription."""
    subscription = Subscription(
        tenant_id=tenant.id,
        plan_id=plan_id,
        status=status,
        current_period_start=start,
        current_period_end=end,
        **fields,
    )
    db_session.add(subscription)
    await db_session.commit()
    await db_session.refresh(subscription)
    return subscription


async def reload(db_session: AsyncSession, obj):
    """Re-read ``obj`` from the database (other sessions may have changed it).

    Works on expired instances too: the identity comes from the instance
    state, so no lazy load is attempted.
    """
    return await db_session.get(type(obj), inspect(obj).identity, populate_existing=True)
