"""Scheduled sweeps — grace-period expiry, deferred plan changes, scheduled downgrades.

Each sweep selects candidate ids up front, then handles every candidate in
its own session so one bad row cannot abort the batch. The mutation itself
is always a conditional transition, so overlapping runs (or a run racing a
payment activation) turn into no-ops instead of lost updates.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.metadata import PlanChangeMeta, ScheduledDowngradeMeta, annotate, dump_metadata
from app.billing.periods import compute_next_period_end, utcnow
from app.billing.state_machine import (
    TIME_DRIVEN_STATUSES,
    attempt_transaction_transition,
    attempt_transition,
    time_transition,
)
from app.config import settings
from app.database import Database
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from app.services.subscription_service import get_plan, get_subscription, list_transactions

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Machine-readable outcome of one sweep run."""

    name: str
    candidates: int = 0
    processed: int = 0
    skipped: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "sweep": self.name,
            "candidates": self.candidates,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": len(self.failures),
            "failures": self.failures,
        }


async def _candidate_ids(database: Database, *conditions: Any) -> list[uuid.UUID]:
    async with database.session() as db:
        result = await db.execute(select(Subscription.id).where(*conditions).order_by(Subscription.current_period_end))
        return list(result.scalars().all())


async def _run(
    database: Database,
    report: SweepReport,
    ids: list[uuid.UUID],
    handle: Callable[[AsyncSession, uuid.UUID], Awaitable[bool]],
) -> SweepReport:
    report.candidates = len(ids)
    for subscription_id in ids:
        try:
            async with database.session() as db:
                if await handle(db, subscription_id):
                    report.processed += 1
                else:
                    report.skipped += 1
        except Exception as e:
            logger.exception("%s sweep failed for subscription %s", report.name, subscription_id)
            report.failures.append({"subscription_id": str(subscription_id), "error": str(e)})

    logger.info(
        "%s sweep: %d candidates, %d processed, %d skipped, %d failed",
        report.name,
        report.candidates,
        report.processed,
        report.skipped,
        len(report.failures),
    )
    return report


# ---------------------------------------------------------------------------
# Grace period
# ---------------------------------------------------------------------------


async def expire_grace_period(database: Database, now: datetime | None = None) -> SweepReport:
    """ACTIVE → PAST_DUE inside the grace window, → EXPIRED after it."""
    now = now or utcnow()
    ids = await _candidate_ids(
        database,
        Subscription.status.in_(sorted(TIME_DRIVEN_STATUSES)),
        Subscription.current_period_end.is_not(None),
        Subscription.current_period_end <= now,
    )

    async def handle(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
        subscription = await get_subscription(db, subscription_id)
        target = time_transition(subscription, now, settings.grace_period_days)
        if target is None:
            return False
        return await attempt_transition(
            db,
            subscription.id,
            subscription.status,
            target,
            Subscription.current_period_end == subscription.current_period_end,
        )

    return await _run(database, SweepReport("expire-grace-period"), ids, handle)


# ---------------------------------------------------------------------------
# Deferred plan changes
# ---------------------------------------------------------------------------


async def activate_deferred_changes(database: Database, now: datetime | None = None) -> SweepReport:
    """Promote plans staged for the end of the period.

    The new period starts at the old period end, however late the sweep
    runs. A staged plan is only promoted while a SCHEDULED (or PAID)
    transaction backs it; one whose backing transaction failed is dropped.
    """
    now = now or utcnow()
    ids = await _candidate_ids(
        database,
        Subscription.intended_plan_id.is_not(None),
        Subscription.current_period_end.is_not(None),
        Subscription.current_period_end <= now,
        Subscription.status != SubscriptionStatus.PENDING_CHECKOUT,
        Subscription.cancel_at_period_end.is_(False),
    )

    async def handle(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
        subscription = await get_subscription(db, subscription_id)
        intended_plan_id = subscription.intended_plan_id
        if intended_plan_id is None:
            return False

        backing = await _backing_transactions(db, subscription, intended_plan_id)
        if not backing:
            logger.warning(
                "Dropping staged plan %s for tenant %s: no scheduled transaction backs it",
                intended_plan_id,
                subscription.tenant_id,
            )
            await attempt_transition(
                db,
                subscription.id,
                subscription.status,
                subscription.status,
                Subscription.intended_plan_id == intended_plan_id,
                intended_plan_id=None,
            )
            return False

        plan = await get_plan(db, intended_plan_id)
        old_end = subscription.current_period_end
        applied = await attempt_transition(
            db,
            subscription.id,
            subscription.status,
            SubscriptionStatus.ACTIVE,
            Subscription.intended_plan_id == intended_plan_id,
            Subscription.current_period_end == old_end,
            plan_id=plan.id,
            current_period_start=old_end,
            current_period_end=compute_next_period_end(old_end, plan.interval),
            intended_plan_id=None,
        )
        if not applied:
            return False

        for transaction in backing:
            if transaction.status is TransactionStatus.SCHEDULED:
                await attempt_transaction_transition(
                    db,
                    transaction.id,
                    TransactionStatus.SCHEDULED,
                    TransactionStatus.PAID,
                    meta=annotate(transaction.meta, scheduled_activation_handled=True, activated_at=now),
                )
        logger.info("Deferred change to %s applied for tenant %s", plan.id, subscription.tenant_id)
        return True

    return await _run(database, SweepReport("activate-deferred-changes"), ids, handle)


async def _backing_transactions(
    db: AsyncSession, subscription: Subscription, plan_id: str
) -> list[Transaction]:
    scheduled = await list_transactions(db, subscription.tenant_id, TransactionStatus.SCHEDULED, plan_id)
    if scheduled:
        return scheduled
    paid = await list_transactions(db, subscription.tenant_id, TransactionStatus.PAID, plan_id)
    return [tx for tx in paid if _is_unhandled_deferred_change(tx)][:1]


def _is_unhandled_deferred_change(transaction: Transaction) -> bool:
    match transaction.details:
        case PlanChangeMeta(effective="end_of_period", scheduled_activation_handled=None):
            return True
        case _:
            return False


# ---------------------------------------------------------------------------
# Scheduled downgrades
# ---------------------------------------------------------------------------


async def process_scheduled_downgrades(database: Database, now: datetime | None = None) -> SweepReport:
    """Move subscriptions flagged ``cancel_at_period_end`` to the free plan."""
    now = now or utcnow()
    async with database.session() as db:
        free_plan = await get_plan(db, settings.free_plan_id)
        free_plan_id, free_interval = free_plan.id, free_plan.interval

    ids = await _candidate_ids(
        database,
        Subscription.cancel_at_period_end.is_(True),
        Subscription.current_period_end.is_not(None),
        Subscription.current_period_end <= now,
        # An open checkout resolves first; a failed one leaves the flag for the next run
        Subscription.status.not_in([SubscriptionStatus.CANCELLED, SubscriptionStatus.PENDING_CHECKOUT]),
    )

    async def handle(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
        subscription = await get_subscription(db, subscription_id)
        if subscription.status is SubscriptionStatus.PENDING_CHECKOUT:
            return False
        from_plan_id = subscription.plan_id
        original_end = subscription.current_period_end
        applied = await attempt_transition(
            db,
            subscription.id,
            subscription.status,
            SubscriptionStatus.ACTIVE,
            Subscription.cancel_at_period_end.is_(True),
            plan_id=free_plan_id,
            current_period_start=now,
            current_period_end=None,
            intended_plan_id=None,
            cancel_at_period_end=False,
        )
        if not applied:
            return False

        db.add(
            Transaction(
                tenant_id=subscription.tenant_id,
                user_id=None,
                subscription_plan_id=free_plan_id,
                amount=Decimal("0"),
                currency=settings.currency,
                billing_cycle=free_interval,
                status=TransactionStatus.COMPLETED,
                payment_method="system",
                meta=dump_metadata(
                    ScheduledDowngradeMeta(
                        from_plan_id=from_plan_id,
                        to_plan_id=free_plan_id,
                        original_period_end=original_end,
                    )
                ),
            )
        )
        logger.info("Tenant %s downgraded from %s to the free plan", subscription.tenant_id, from_plan_id)
        return True

    return await _run(database, SweepReport("process-scheduled-downgrades"), ids, handle)
