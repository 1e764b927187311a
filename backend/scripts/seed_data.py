"""Seed the database with the plan catalogue and a demo brewery tenant.

Plans are upserted by id, so re-running refreshes prices and limits without
touching subscriptions that reference them. The demo tenant is deleted and
re-created on every run.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import delete, select

from app.auth.jwt import create_access_token
from app.billing.periods import utcnow
from app.billing.plans import DEFAULT_PLANS
from app.config import settings
from app.database import Database
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus
from app.models.tenant import Tenant
from app.models.transaction import Transaction
from app.models.user import User

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

DEMO_TENANT = {
    "name": "Hoppy Hollow Brewing Co.",
    "subdomain": "hoppy-hollow",
}

DEMO_USERS = [
    {"email": "owner@hoppyhollow.test", "name": "Dewi Hartono", "role": "ADMIN"},
    {"email": "brewer@hoppyhollow.test", "name": "Made Sudarma", "role": "STAFF"},
]


async def seed(database: Database) -> None:
    """Populate the plan catalogue and the demo tenant."""
    async with database.session() as session:
        # ------------------------------------------------------------------
        # 1. Plan catalogue
        # ------------------------------------------------------------------
        for definition in DEFAULT_PLANS:
            plan = await session.get(SubscriptionPlan, definition.id)
            if plan is None:
                plan = SubscriptionPlan(id=definition.id)
                session.add(plan)
            plan.name = definition.name
            plan.description = definition.description
            plan.price = definition.price
            plan.interval = definition.interval
            plan.max_users = definition.max_users
            plan.max_ingredients = definition.max_ingredients
            plan.max_batches = definition.max_batches
            plan.features = definition.features
            plan.is_active = True
            print(f"   📦 {definition.name:<13} {definition.price:>8} / {definition.interval.value.lower()}")
        await session.flush()
        print(f"✅ Upserted {len(DEFAULT_PLANS)} plans")

        # ------------------------------------------------------------------
        # 2. Demo tenant (delete and re-create)
        # ------------------------------------------------------------------
        result = await session.execute(select(Tenant).where(Tenant.subdomain == DEMO_TENANT["subdomain"]))
        existing = result.scalar_one_or_none()
        if existing is not None:
            print(f"⚠️  Demo tenant '{existing.subdomain}' already exists. Deleting and re-seeding...")
            await session.execute(delete(Transaction).where(Transaction.tenant_id == existing.id))
            await session.execute(delete(Subscription).where(Subscription.tenant_id == existing.id))
            await session.execute(delete(User).where(User.tenant_id == existing.id))
            await session.execute(delete(Tenant).where(Tenant.id == existing.id))
            await session.flush()

        tenant = Tenant(**DEMO_TENANT)
        session.add(tenant)
        await session.flush()

        users = [User(tenant_id=tenant.id, **data) for data in DEMO_USERS]
        session.add_all(users)

        # ------------------------------------------------------------------
        # 3. Free subscription (never expires)
        # ------------------------------------------------------------------
        session.add(
            Subscription(
                tenant_id=tenant.id,
                plan_id=settings.free_plan_id,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=utcnow(),
                current_period_end=None,
            )
        )
        await session.flush()

        print(f"✅ Created demo tenant: {tenant.name} (id={tenant.id})")
        print()
        print("=" * 60)
        print("📊 Seed Summary")
        print("=" * 60)
        print(f"   Plans:         {len(DEFAULT_PLANS)}")
        print(f"   Tenants:       1 ({tenant.subdomain})")
        print(f"   Users:         {len(users)}")
        print("   Subscriptions: 1 (free plan)")
        print("=" * 60)
        for user in users:
            print(f"🔑 {user.role:<6} {user.email}")
            print(f"   Bearer {create_access_token(user.id, tenant.id)}")


async def main() -> None:
    database = Database(settings.async_database_url)
    try:
        await seed(database)
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
