"""Subscription state machine — transition rules and the conditional-update primitive.

Every mutating flow (plan changes, webhook, reconcile, sweeps) moves a
subscription or transaction through :func:`attempt_transition` /
:func:`attempt_transaction_transition`. Each is a single
``UPDATE ... WHERE status IN (expected)``: when two writers race, exactly
one sees ``True`` and the other is a no-op.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from app.billing.exceptions import StateConflictError
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction

logger = logging.getLogger(__name__)

# Statuses that may accept a plan-change request. PENDING_CHECKOUT must
# resolve (pay or abandon) first.
PLAN_CHANGE_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.TRIALING,
    }
)

# Statuses moved by the passage of time (grace sweep / lazy refresh).
TIME_DRIVEN_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})


def derive_time_status(
    period_end: datetime | None, now: datetime, grace_period_days: int
) -> SubscriptionStatus:
    """Status implied purely by the period end.

    ``ACTIVE`` while the period runs (or has no end), ``PAST_DUE`` inside
    the grace window, ``EXPIRED`` after it.
    """
    if period_end is None or period_end > now:
        return SubscriptionStatus.ACTIVE
    if period_end >= now - timedelta(days=grace_period_days):
        return SubscriptionStatus.PAST_DUE
    return SubscriptionStatus.EXPIRED


def time_transition(
    subscription: Subscription, now: datetime, grace_period_days: int
) -> SubscriptionStatus | None:
    """Target status if time alone should move ``subscription``, else None.

    Only ACTIVE → PAST_DUE, ACTIVE → EXPIRED and PAST_DUE → EXPIRED exist;
    time never moves a subscription backwards or out of any other status.
    """
    if subscription.status not in TIME_DRIVEN_STATUSES:
        return None
    target = derive_time_status(subscription.current_period_end, now, grace_period_days)
    if target is SubscriptionStatus.EXPIRED:
        return target
    if target is SubscriptionStatus.PAST_DUE and subscription.status is SubscriptionStatus.ACTIVE:
        return target
    return None


def ensure_plan_change_allowed(subscription: Subscription, new_plan_id: str, now: datetime) -> None:
    """Raise :class:`StateConflictError` unless a change to ``new_plan_id`` may start."""
    if subscription.status not in PLAN_CHANGE_STATUSES:
        raise StateConflictError(
            f"Cannot change plans for subscriptions with status: {subscription.status.value}. "
            "Please complete any pending actions first.",
            current_status=subscription.status.value,
        )

    if subscription.plan_id != new_plan_id:
        return

    if not subscription.is_expired(now):
        raise StateConflictError(
            "Cannot renew the same plan while subscription is active. You can upgrade or "
            "downgrade to other plans, or wait until your current subscription expires.",
            current_status=subscription.status.value,
        )
    raise StateConflictError(
        "Expired subscription renewals must be processed through the renewal endpoint for payment.",
        current_status=subscription.status.value,
    )


def _as_set(expected: Any) -> set:
    if isinstance(expected, (SubscriptionStatus, TransactionStatus)):
        return {expected}
    return set(expected)


async def attempt_transition(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    expected: SubscriptionStatus | Iterable[SubscriptionStatus],
    target: SubscriptionStatus,
    *conditions: ColumnElement[bool],
    **values: Any,
) -> bool:
    """Move a subscription to ``target`` if its status is still in ``expected``.

    ``conditions`` narrow the guard further (e.g. the staged plan must
    still match); ``values`` are written alongside the status. Returns
    whether the row was updated.
    """
    expected_set = _as_set(expected)
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status.in_(sorted(expected_set)),
            *conditions,
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1
    if applied:
        # Reload so objects already in the session (and their plan) match the row
        await db.get(Subscription, subscription_id, populate_existing=True)
        logger.info(
            "Subscription %s -> %s (%s)",
            subscription_id,
            target.value,
            ", ".join(sorted(values)) or "status only",
        )
    else:
        logger.info(
            "Subscription %s not moved to %s: status no longer in %s",
            subscription_id,
            target.value,
            sorted(s.value for s in expected_set),
        )
    return applied


async def attempt_transaction_transition(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    expected: TransactionStatus | Iterable[TransactionStatus],
    target: TransactionStatus,
    meta: dict[str, Any] | None = None,
) -> bool:
    """Move a transaction to ``target`` if its status is still in ``expected``."""
    values: dict[Any, Any] = {Transaction.status: target}
    if meta is not None:
        values[Transaction.meta] = meta
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.id == transaction_id,
            Transaction.status.in_(sorted(_as_set(expected))),
        )
        .values(values)
        .execution_options(synchronize_session=False)
    )
    applied = result.rowcount == 1
    if applied:
        await db.get(Transaction, transaction_id, populate_existing=True)
        logger.info("Transaction %s -> %s", transaction_id, target.value)
    else:
        logger.info("Transaction %s already resolved, not moved to %s", transaction_id, target.value)
    return applied
