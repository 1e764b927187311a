"""Subscription service — lookups, tenant scoping, activation, and cancellation."""

import logging
import math
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import AuthorizationError, NotFoundError, StateConflictError
from app.billing.metadata import RenewalMeta, annotate
from app.billing.periods import compute_next_period_end, utcnow
from app.billing.state_machine import (
    attempt_transaction_transition,
    attempt_transition,
    time_transition,
)
from app.config import settings
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from app.models.user import User

logger = logging.getLogger(__name__)

ALL_STATUSES = frozenset(SubscriptionStatus)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_plan(db: AsyncSession, plan_id: str) -> SubscriptionPlan:
    plan = await db.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise NotFoundError("SubscriptionPlan", plan_id)
    return plan


async def list_active_plans(db: AsyncSession) -> list[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.price)
    )
    return list(result.scalars().all())


async def get_subscription(
    db: AsyncSession, subscription_id: uuid.UUID, *, for_update: bool = False
) -> Subscription:
    """Load a subscription by id, optionally taking a row lock."""
    stmt = select(Subscription).where(Subscription.id == subscription_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription", subscription_id)
    return subscription


async def get_subscription_for_tenant(
    db: AsyncSession, tenant_id: uuid.UUID, *, for_update: bool = False
) -> Subscription:
    stmt = select(Subscription).where(Subscription.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription", tenant_id)
    return subscription


async def get_transaction_by_order(db: AsyncSession, order_id: str) -> Transaction:
    """Look up a transaction by gateway order id (used by webhook and reconcile)."""
    result = await db.execute(select(Transaction).where(Transaction.payment_gateway_id == order_id))
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFoundError("Transaction", order_id)
    return transaction


async def list_transactions(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    status: TransactionStatus,
    plan_id: str | None = None,
) -> list[Transaction]:
    stmt = select(Transaction).where(Transaction.tenant_id == tenant_id, Transaction.status == status)
    if plan_id is not None:
        stmt = stmt.where(Transaction.subscription_plan_id == plan_id)
    result = await db.execute(stmt.order_by(Transaction.created_at.desc()))
    return list(result.scalars().all())


async def cancel_scheduled_changes(db: AsyncSession, tenant_id: uuid.UUID, superseded_by: str) -> int:
    """Cancel the tenant's SCHEDULED (staged end-of-period) transactions."""
    cancelled = 0
    for scheduled in await list_transactions(db, tenant_id, TransactionStatus.SCHEDULED):
        if await attempt_transaction_transition(
            db,
            scheduled.id,
            TransactionStatus.SCHEDULED,
            TransactionStatus.CANCELLED,
            meta=annotate(scheduled.meta, superseded_by=superseded_by),
        ):
            cancelled += 1
    return cancelled


def ensure_tenant_scope(subscription: Subscription, user: User, *, billing_role: bool = False) -> None:
    """Raise :class:`AuthorizationError` if ``user`` may not act on ``subscription``."""
    if subscription.tenant_id != user.tenant_id:
        raise AuthorizationError("Unauthorized access to subscription")
    if billing_role and not user.can_manage_billing:
        raise AuthorizationError("Insufficient permissions")


async def get_or_create_subscription(db: AsyncSession, tenant_id: uuid.UUID) -> Subscription:
    """Get the tenant's subscription or create a non-expiring free one."""
    result = await db.execute(select(Subscription).where(Subscription.tenant_id == tenant_id))
    subscription = result.scalar_one_or_none()
    if subscription is not None:
        return subscription

    logger.info("Creating free-tier subscription for tenant %s", tenant_id)
    subscription = Subscription(
        tenant_id=tenant_id,
        plan_id=settings.free_plan_id,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=utcnow(),
        current_period_end=None,
    )
    db.add(subscription)
    await db.flush()
    await db.refresh(subscription)
    return subscription


# ---------------------------------------------------------------------------
# Status refresh
# ---------------------------------------------------------------------------


async def refresh_status(db: AsyncSession, subscription: Subscription, now: datetime | None = None) -> Subscription:
    """Apply any pending time-driven transition (ACTIVE → PAST_DUE → EXPIRED)."""
    now = now or utcnow()
    target = time_transition(subscription, now, settings.grace_period_days)
    if target is not None:
        await attempt_transition(db, subscription.id, subscription.status, target)
        await db.refresh(subscription)
    return subscription


def days_remaining(subscription: Subscription, now: datetime) -> int | None:
    if subscription.current_period_end is None:
        return None
    seconds = (subscription.current_period_end - now).total_seconds()
    return max(math.ceil(seconds / 86400), 0)


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


def _activation_start(subscription: Subscription, transaction: Transaction, now: datetime) -> datetime:
    """Payments start the new period now; early renewals keep the paid-up days."""
    match transaction.details:
        case RenewalMeta() if subscription.current_period_end and subscription.current_period_end > now:
            return subscription.current_period_end
        case _:
            return now


async def activate_from_transaction(
    db: AsyncSession, subscription: Subscription, transaction: Transaction, now: datetime
) -> Subscription:
    """Activate the plan a paid transaction bought.

    Callers must first have won the transaction's PENDING → PAID transition;
    that win is what keeps a repeated notification from extending twice.
    """
    start = _activation_start(subscription, transaction, now)
    end = compute_next_period_end(start, transaction.billing_cycle)
    await attempt_transition(
        db,
        subscription.id,
        ALL_STATUSES,
        SubscriptionStatus.ACTIVE,
        plan_id=transaction.subscription_plan_id,
        current_period_start=start,
        current_period_end=end,
        intended_plan_id=None,
        cancel_at_period_end=False,
    )
    await db.refresh(subscription)
    logger.info(
        "Activated plan %s for tenant %s until %s (order %s)",
        transaction.subscription_plan_id,
        subscription.tenant_id,
        end.isoformat(),
        transaction.payment_gateway_id,
    )
    return subscription


# ---------------------------------------------------------------------------
# Cancel at period end
# ---------------------------------------------------------------------------


async def cancel_at_period_end(db: AsyncSession, user: User) -> Subscription:
    """Schedule a downgrade to the free plan when the current period ends."""
    subscription = await get_subscription_for_tenant(db, user.tenant_id, for_update=True)
    ensure_tenant_scope(subscription, user, billing_role=True)

    if subscription.status is SubscriptionStatus.CANCELLED:
        raise StateConflictError("Subscription is already cancelled", current_status=subscription.status.value)
    if subscription.status is SubscriptionStatus.PENDING_CHECKOUT:
        raise StateConflictError(
            "Complete or abandon the pending checkout first", current_status=subscription.status.value
        )
    if subscription.cancel_at_period_end:
        raise StateConflictError(
            "Subscription is already set to downgrade at period end",
            current_status=subscription.status.value,
        )
    if subscription.plan_id == settings.free_plan_id or subscription.current_period_end is None:
        raise StateConflictError("Subscription is already on the free plan", current_status=subscription.status.value)

    applied = await attempt_transition(
        db,
        subscription.id,
        subscription.status,
        subscription.status,
        Subscription.cancel_at_period_end.is_(False),
        cancel_at_period_end=True,
        intended_plan_id=None,
    )
    if not applied:
        raise StateConflictError("Subscription changed concurrently, please retry", current_status=subscription.status.value)

    # A staged end-of-period change is superseded by the cancellation
    await cancel_scheduled_changes(db, subscription.tenant_id, "cancel_at_period_end")

    await db.refresh(subscription)
    logger.info(
        "Downgrade to free scheduled for tenant %s at %s",
        subscription.tenant_id,
        subscription.current_period_end,
    )
    return subscription


async def undo_cancel_at_period_end(db: AsyncSession, user: User) -> Subscription:
    """Keep the current plan after all (clears ``cancel_at_period_end``)."""
    subscription = await get_subscription_for_tenant(db, user.tenant_id, for_update=True)
    ensure_tenant_scope(subscription, user, billing_role=True)

    if not subscription.cancel_at_period_end:
        raise StateConflictError("Subscription is not set to downgrade", current_status=subscription.status.value)

    applied = await attempt_transition(
        db,
        subscription.id,
        subscription.status,
        subscription.status,
        Subscription.cancel_at_period_end.is_(True),
        cancel_at_period_end=False,
    )
    if not applied:
        raise StateConflictError("Subscription changed concurrently, please retry", current_status=subscription.status.value)

    await db.refresh(subscription)
    logger.info("Scheduled downgrade cancelled for tenant %s", subscription.tenant_id)
    return subscription
