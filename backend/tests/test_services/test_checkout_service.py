"""Tests for re-initiated checkouts, renewals and abandoned checkouts."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import AuthorizationError, GatewayError, StateConflictError, ValidationError
from app.billing.metadata import CheckoutMeta, RenewalMeta
from app.billing.plans import PlanInterval
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from app.services.checkout_service import (
    abandon_pending_checkout,
    create_checkout_token,
    get_pending_checkout,
    renewal_info,
    request_renewal,
)
from app.services.plan_change_service import request_plan_change
from conftest import create_subscription, reload

PERIOD_START = datetime(2024, 4, 1)
PERIOD_END = datetime(2024, 5, 1)
NOW = PERIOD_END - timedelta(days=10)


async def _by_order(db_session: AsyncSession, order_id: str) -> Transaction:
    result = await db_session.execute(
        select(Transaction)
        .where(Transaction.payment_gateway_id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _pending_upgrade(db_session, gateway, tenant, user):
    """plan-a → plan-b upgrade waiting on payment (7 IDR due)."""
    sub = await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)
    result = await request_plan_change(db_session, gateway, user, sub.id, "plan-b", now=NOW)
    await db_session.commit()
    return sub, result.checkout


class TestCreateCheckoutToken:
    """Re-initiating checkout for the intended plan."""

    @pytest.mark.asyncio
    async def test_requires_pending_checkout(self, db_session: AsyncSession, gateway, tenant, admin_user):
        await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)
        with pytest.raises(StateConflictError, match="initiate the plan change"):
            await create_checkout_token(db_session, gateway, admin_user, "plan-b", PlanInterval.MONTHLY)

    @pytest.mark.asyncio
    async def test_only_intended_plan(self, db_session: AsyncSession, gateway, tenant, admin_user):
        await _pending_upgrade(db_session, gateway, tenant, admin_user)
        with pytest.raises(AuthorizationError, match="intended plan"):
            await create_checkout_token(db_session, gateway, admin_user, "annual-plan", PlanInterval.YEARLY)

    @pytest.mark.asyncio
    async def test_supersedes_previous_order(self, db_session: AsyncSession, gateway, tenant, admin_user):
        sub, first = await _pending_upgrade(db_session, gateway, tenant, admin_user)

        second = await create_checkout_token(db_session, gateway, admin_user, "plan-b", PlanInterval.MONTHLY)
        await db_session.commit()

        assert second.order_id != first.order_id
        assert second.order_id.startswith("SUB-")
        # The prorated amount is kept, not replaced by the list price
        assert second.amount == 7

        old = await _by_order(db_session, first.order_id)
        assert old.status is TransactionStatus.CANCELLED
        assert old.details.superseded_by == second.order_id

        new = await _by_order(db_session, second.order_id)
        assert new.status is TransactionStatus.PENDING
        match new.details:
            case CheckoutMeta(supersedes=supersedes):
                assert supersedes == [first.order_id]
            case other:
                pytest.fail(f"unexpected metadata {other!r}")

        gateway.cancel_transaction.assert_awaited_once_with(first.order_id)
        sub = await reload(db_session, sub)
        assert sub.status is SubscriptionStatus.PENDING_CHECKOUT
        assert sub.intended_plan_id == "plan-b"

    @pytest.mark.asyncio
    async def test_gateway_cancel_failure_is_tolerated(self, db_session: AsyncSession, gateway, tenant, admin_user):
        _, first = await _pending_upgrade(db_session, gateway, tenant, admin_user)
        gateway.cancel_transaction.side_effect = GatewayError("Payment gateway rejected cancellation")

        second = await create_checkout_token(db_session, gateway, admin_user, "plan-b", PlanInterval.MONTHLY)
        await db_session.commit()

        assert (await _by_order(db_session, first.order_id)).status is TransactionStatus.CANCELLED
        assert (await _by_order(db_session, second.order_id)).status is TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_yearly_cycle_of_monthly_plan(self, db_session: AsyncSession, gateway, tenant, admin_user):
        await create_subscription(
            db_session,
            tenant,
            "free-plan",
            status=SubscriptionStatus.PENDING_CHECKOUT,
            intended_plan_id="starter-plan",
        )

        result = await create_checkout_token(db_session, gateway, admin_user, "starter-plan", PlanInterval.YEARLY)
        await db_session.commit()

        # 29.99 * 12 with 20% off = 287.90, rounded to whole rupiah
        assert result.amount == 288
        assert result.billing_cycle is PlanInterval.YEARLY
        assert (await _by_order(db_session, result.order_id)).billing_cycle is PlanInterval.YEARLY

    @pytest.mark.asyncio
    async def test_yearly_plan_cannot_be_billed_monthly(self, db_session: AsyncSession, gateway, tenant, admin_user):
        await create_subscription(
            db_session,
            tenant,
            "free-plan",
            status=SubscriptionStatus.PENDING_CHECKOUT,
            intended_plan_id="annual-plan",
        )
        with pytest.raises(ValidationError) as exc_info:
            await create_checkout_token(db_session, gateway, admin_user, "annual-plan", PlanInterval.MONTHLY)
        assert exc_info.value.field == "billingCycle"
        gateway.create_checkout_token.assert_not_awaited()


class TestRenewal:
    @pytest.mark.asyncio
    async def test_inside_window(self, db_session: AsyncSession, tenant, admin_user):
        sub = await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)

        info = await renewal_info(db_session, admin_user, sub.id, now=PERIOD_END - timedelta(days=3))

        assert info.can_renew is True
        assert info.days_until_expiry == 3
        assert info.amount == Decimal("10")

    @pytest.mark.asyncio
    async def test_outside_window(self, db_session: AsyncSession, tenant, admin_user):
        sub = await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)

        info = await renewal_info(db_session, admin_user, sub.id, now=PERIOD_END - timedelta(days=20))

        assert info.can_renew is False
        assert "7 days" in info.reason

    @pytest.mark.asyncio
    async def test_free_plan_cannot_renew(self, db_session: AsyncSession, tenant, admin_user):
        sub = await create_subscription(db_session, tenant, "free-plan", start=PERIOD_START)
        info = await renewal_info(db_session, admin_user, sub.id, now=NOW)
        assert info.can_renew is False

    @pytest.mark.asyncio
    async def test_request_renewal_opens_checkout(self, db_session: AsyncSession, gateway, tenant, admin_user):
        sub = await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)
        now = PERIOD_END - timedelta(days=2)

        result = await request_renewal(db_session, gateway, admin_user, sub.id, now=now)
        await db_session.commit()

        assert result.order_id.startswith("RENEWAL-")
        assert result.amount == 10
        tx = await _by_order(db_session, result.order_id)
        match tx.details:
            case RenewalMeta(renewal_period_start=start, renewal_period_end=end):
                assert start == PERIOD_END
                assert end == datetime(2024, 6, 1)
            case other:
                pytest.fail(f"unexpected metadata {other!r}")

        sub = await reload(db_session, sub)
        assert sub.status is SubscriptionStatus.PENDING_CHECKOUT
        assert sub.intended_plan_id == "plan-a"

    @pytest.mark.asyncio
    async def test_request_renewal_outside_window_rejected(
        self, db_session: AsyncSession, gateway, tenant, admin_user
    ):
        sub = await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)
        with pytest.raises(StateConflictError):
            await request_renewal(db_session, gateway, admin_user, sub.id, now=PERIOD_START)
        gateway.create_checkout_token.assert_not_awaited()


class TestPendingCheckout:
    @pytest.mark.asyncio
    async def test_none_without_checkout(self, db_session: AsyncSession, tenant, admin_user):
        await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)
        assert await get_pending_checkout(db_session, admin_user) is None

    @pytest.mark.asyncio
    async def test_describes_open_checkout(self, db_session: AsyncSession, gateway, tenant, admin_user):
        _, checkout = await _pending_upgrade(db_session, gateway, tenant, admin_user)

        pending = await get_pending_checkout(db_session, admin_user)

        assert pending.intended_plan_id == "plan-b"
        assert pending.order_id == checkout.order_id
        assert pending.amount == Decimal("6.67")

    @pytest.mark.asyncio
    async def test_abandon_reverts_and_cancels_order(self, db_session: AsyncSession, gateway, tenant, admin_user):
        sub, checkout = await _pending_upgrade(db_session, gateway, tenant, admin_user)

        await abandon_pending_checkout(db_session, gateway, admin_user, now=NOW)
        await db_session.commit()

        sub = await reload(db_session, sub)
        assert sub.status is SubscriptionStatus.ACTIVE
        assert sub.plan_id == "plan-a"
        assert sub.intended_plan_id is None

        tx = await _by_order(db_session, checkout.order_id)
        assert tx.status is TransactionStatus.CANCELLED
        assert tx.details.superseded_by == "abandoned"
        gateway.cancel_transaction.assert_awaited_once_with(checkout.order_id)

    @pytest.mark.asyncio
    async def test_abandon_after_lapse_returns_past_due(self, db_session: AsyncSession, gateway, tenant, admin_user):
        _, checkout = await _pending_upgrade(db_session, gateway, tenant, admin_user)

        sub = await abandon_pending_checkout(db_session, gateway, admin_user, now=PERIOD_END + timedelta(days=2))

        assert sub.status is SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_abandon_without_checkout_rejected(self, db_session: AsyncSession, gateway, tenant, admin_user):
        await create_subscription(db_session, tenant, "plan-a", start=PERIOD_START, end=PERIOD_END)
        with pytest.raises(StateConflictError):
            await abandon_pending_checkout(db_session, gateway, admin_user, now=NOW)
