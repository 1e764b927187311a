"""Tests for subscription status rules and the conditional-update primitive."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import StateConflictError
from app.billing.state_machine import (
    attempt_transaction_transition,
    attempt_transition,
    derive_time_status,
    ensure_plan_change_allowed,
    time_transition,
)
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from conftest import create_subscription, reload

NOW = datetime(2024, 6, 15, 12, 0)


def _subscription(status: SubscriptionStatus, end: datetime | None, plan_id: str = "plan-a") -> Subscription:
    return Subscription(plan_id=plan_id, status=status, current_period_end=end)


class TestDeriveTimeStatus:
    """Status implied purely by the period end and the grace window."""

    def test_no_end_is_active(self):
        assert derive_time_status(None, NOW, 7) is SubscriptionStatus.ACTIVE

    def test_future_end_is_active(self):
        assert derive_time_status(NOW + timedelta(days=1), NOW, 7) is SubscriptionStatus.ACTIVE

    def test_six_days_past_is_past_due(self):
        assert derive_time_status(NOW - timedelta(days=6), NOW, 7) is SubscriptionStatus.PAST_DUE

    def test_exactly_at_grace_boundary_is_past_due(self):
        assert derive_time_status(NOW - timedelta(days=7), NOW, 7) is SubscriptionStatus.PAST_DUE

    def test_eight_days_past_is_expired(self):
        assert derive_time_status(NOW - timedelta(days=8), NOW, 7) is SubscriptionStatus.EXPIRED


class TestTimeTransition:
    def test_active_to_past_due(self):
        sub = _subscription(SubscriptionStatus.ACTIVE, NOW - timedelta(days=2))
        assert time_transition(sub, NOW, 7) is SubscriptionStatus.PAST_DUE

    def test_active_straight_to_expired(self):
        sub = _subscription(SubscriptionStatus.ACTIVE, NOW - timedelta(days=30))
        assert time_transition(sub, NOW, 7) is SubscriptionStatus.EXPIRED

    def test_past_due_stays_inside_grace(self):
        sub = _subscription(SubscriptionStatus.PAST_DUE, NOW - timedelta(days=2))
        assert time_transition(sub, NOW, 7) is None

    def test_past_due_to_expired(self):
        sub = _subscription(SubscriptionStatus.PAST_DUE, NOW - timedelta(days=9))
        assert time_transition(sub, NOW, 7) is SubscriptionStatus.EXPIRED

    def test_pending_checkout_never_moved_by_time(self):
        sub = _subscription(SubscriptionStatus.PENDING_CHECKOUT, NOW - timedelta(days=30))
        assert time_transition(sub, NOW, 7) is None

    def test_free_tier_never_moves(self):
        sub = _subscription(SubscriptionStatus.ACTIVE, None, plan_id="free-plan")
        assert time_transition(sub, NOW, 7) is None


class TestEnsurePlanChangeAllowed:
    """Which statuses may start a plan change."""

    @pytest.mark.parametrize(
        "status",
        [
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.TRIALING,
        ],
    )
    def test_whitelisted_statuses(self, status):
        ensure_plan_change_allowed(_subscription(status, NOW + timedelta(days=10)), "plan-b", NOW)

    @pytest.mark.parametrize("status", [SubscriptionStatus.PENDING_CHECKOUT, SubscriptionStatus.EXPIRED])
    def test_other_statuses_rejected(self, status):
        with pytest.raises(StateConflictError) as exc_info:
            ensure_plan_change_allowed(_subscription(status, NOW + timedelta(days=10)), "plan-b", NOW)
        assert exc_info.value.current_status == status.value

    def test_same_plan_while_active_rejected(self):
        sub = _subscription(SubscriptionStatus.ACTIVE, NOW + timedelta(days=10))
        with pytest.raises(StateConflictError, match="Cannot renew the same plan"):
            ensure_plan_change_allowed(sub, "plan-a", NOW)

    def test_same_plan_after_expiry_points_to_renewal(self):
        sub = _subscription(SubscriptionStatus.PAST_DUE, NOW - timedelta(days=1))
        with pytest.raises(StateConflictError, match="renewal endpoint"):
            ensure_plan_change_allowed(sub, "plan-a", NOW)


class TestAttemptTransition:
    """Conditional UPDATE ... WHERE status IN (expected)."""

    @pytest.mark.asyncio
    async def test_applies_when_status_matches(self, db_session: AsyncSession, tenant):
        sub = await create_subscription(db_session, tenant, "plan-a", end=NOW + timedelta(days=5))

        applied = await attempt_transition(
            db_session, sub.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CHECKOUT, intended_plan_id="plan-b"
        )
        await db_session.commit()

        assert applied is True
        sub = await reload(db_session, sub)
        assert sub.status is SubscriptionStatus.PENDING_CHECKOUT
        assert sub.intended_plan_id == "plan-b"

    @pytest.mark.asyncio
    async def test_no_op_when_status_moved(self, db_session: AsyncSession, tenant):
        sub = await create_subscription(db_session, tenant, "plan-a", status=SubscriptionStatus.EXPIRED)

        applied = await attempt_transition(
            db_session, sub.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE
        )

        assert applied is False
        sub = await reload(db_session, sub)
        assert sub.status is SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_extra_condition_guards(self, db_session: AsyncSession, tenant):
        sub = await create_subscription(db_session, tenant, "plan-a", intended_plan_id="plan-b")

        applied = await attempt_transition(
            db_session,
            sub.id,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.ACTIVE,
            Subscription.intended_plan_id == "annual-plan",
            intended_plan_id=None,
        )

        assert applied is False

    @pytest.mark.asyncio
    async def test_second_writer_loses(self, db_session: AsyncSession, tenant):
        sub = await create_subscription(db_session, tenant, "plan-a")
        first = await attempt_transition(db_session, sub.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
        second = await attempt_transition(db_session, sub.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
        assert (first, second) == (True, False)


class TestAttemptTransactionTransition:
    @pytest.mark.asyncio
    async def test_pending_resolves_once(self, db_session: AsyncSession, tenant):
        tx = Transaction(
            tenant_id=tenant.id,
            subscription_plan_id="plan-a",
            status=TransactionStatus.PENDING,
            payment_gateway_id="SUB-1-AAAAAA",
            meta={"type": "checkout", "subscription_id": "x"},
        )
        db_session.add(tx)
        await db_session.commit()

        assert await attempt_transaction_transition(
            db_session, tx.id, TransactionStatus.PENDING, TransactionStatus.PAID
        )
        assert not await attempt_transaction_transition(
            db_session, tx.id, TransactionStatus.PENDING, TransactionStatus.FAILED
        )
        tx = await reload(db_session, tx)
        assert tx.status is TransactionStatus.PAID
