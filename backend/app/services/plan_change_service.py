"""Plan change service — upgrade/downgrade orchestration and previews."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import StateConflictError, ValidationError
from app.billing.metadata import (
    ExpiredPlanChangeMeta,
    PlanChangeMeta,
    TransactionMeta,
    dump_metadata,
)
from app.billing.midtrans_client import PaymentGateway
from app.billing.periods import compute_next_period_end, utcnow
from app.billing.proration import Proration, calculate_proration
from app.billing.state_machine import (
    attempt_transition,
    ensure_plan_change_allowed,
)
from app.config import settings
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from app.models.user import User
from app.services.checkout_service import CheckoutResult, start_checkout
from app.services.subscription_service import (
    cancel_scheduled_changes,
    ensure_tenant_scope,
    get_plan,
    get_subscription,
)

logger = logging.getLogger(__name__)

Effective = Literal["immediate", "end_of_period"]
ChangeType = Literal["upgrade", "downgrade"]


@dataclass
class PlanChangeResult:
    """Outcome of :func:`request_plan_change`.

    When ``requires_payment`` is true the checkout fields are set and the
    change is applied once the payment is confirmed.
    """

    requires_payment: bool
    change_type: ChangeType
    effective: Effective
    subscription: Subscription
    current_plan: SubscriptionPlan
    new_plan: SubscriptionPlan
    message: str
    proration: Proration | None = None
    checkout: CheckoutResult | None = None
    credit_amount: Decimal | None = None
    scheduled_date: datetime | None = None
    transaction_id: uuid.UUID | None = None


@dataclass
class PlanChangePreview:
    current_plan: SubscriptionPlan
    new_plan: SubscriptionPlan
    change_type: ChangeType
    period_start: datetime | None
    period_end: datetime | None
    proration: Proration | None
    immediate_amount: Decimal
    immediate_requires_payment: bool
    end_of_period_available: bool


def _change_type(current: SubscriptionPlan, new: SubscriptionPlan) -> ChangeType:
    return "upgrade" if new.price > current.price else "downgrade"


def _is_fresh_acquisition(subscription: Subscription, now: datetime) -> bool:
    """No live period to prorate against (expired, or the period-less free tier)."""
    return subscription.current_period_end is None or subscription.is_expired(now)


async def _load(
    db: AsyncSession, user: User, subscription_id: uuid.UUID, new_plan_id: str, *, for_update: bool
) -> tuple[Subscription, SubscriptionPlan]:
    subscription = await get_subscription(db, subscription_id, for_update=for_update)
    ensure_tenant_scope(subscription, user)
    new_plan = await get_plan(db, new_plan_id)
    if not new_plan.is_active:
        raise ValidationError("Plan is no longer available", field="newPlanId")
    return subscription, new_plan


async def preview_plan_change(
    db: AsyncSession,
    user: User,
    subscription_id: uuid.UUID,
    new_plan_id: str,
    now: datetime | None = None,
) -> PlanChangePreview:
    """Proration breakdown for a prospective change, without side effects."""
    now = now or utcnow()
    subscription, new_plan = await _load(db, user, subscription_id, new_plan_id, for_update=False)
    current_plan = subscription.plan

    if _is_fresh_acquisition(subscription, now):
        return PlanChangePreview(
            current_plan=current_plan,
            new_plan=new_plan,
            change_type=_change_type(current_plan, new_plan),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            proration=None,
            immediate_amount=new_plan.price,
            immediate_requires_payment=new_plan.price > 0,
            end_of_period_available=False,
        )

    proration = calculate_proration(
        current_plan.price,
        new_plan.price,
        subscription.current_period_start or now,
        subscription.current_period_end,
        now,
    )
    return PlanChangePreview(
        current_plan=current_plan,
        new_plan=new_plan,
        change_type=_change_type(current_plan, new_plan),
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
        proration=proration,
        immediate_amount=max(proration.net_amount, Decimal("0.00")),
        immediate_requires_payment=proration.requires_payment,
        end_of_period_available=True,
    )


async def request_plan_change(
    db: AsyncSession,
    gateway: PaymentGateway,
    user: User,
    subscription_id: uuid.UUID,
    new_plan_id: str,
    effective: Effective = "immediate",
    now: datetime | None = None,
) -> PlanChangeResult:
    """Start a plan change.

    Depending on the live period and price difference this opens a hosted
    checkout, applies the change right away, or stages it for the end of
    the current period.
    """
    now = now or utcnow()
    subscription, new_plan = await _load(db, user, subscription_id, new_plan_id, for_update=True)
    ensure_plan_change_allowed(subscription, new_plan.id, now)
    current_plan = subscription.plan
    change_type = _change_type(current_plan, new_plan)

    if _is_fresh_acquisition(subscription, now):
        return await _fresh_acquisition(db, gateway, user, subscription, current_plan, new_plan, change_type, now)

    proration = calculate_proration(
        current_plan.price,
        new_plan.price,
        subscription.current_period_start or now,
        subscription.current_period_end,
        now,
    )
    logger.info(
        "Plan change %s -> %s for tenant %s (%s, net %s)",
        current_plan.id,
        new_plan.id,
        subscription.tenant_id,
        effective,
        proration.net_amount,
    )

    meta = PlanChangeMeta(
        change_type=change_type,
        effective=effective,
        subscription_id=str(subscription.id),
        from_plan_id=current_plan.id,
        to_plan_id=new_plan.id,
        proration=proration.as_dict(),
    )

    if effective == "end_of_period":
        return await _schedule_for_period_end(db, user, subscription, current_plan, new_plan, change_type, meta)

    if proration.requires_payment:
        checkout = await start_checkout(
            db,
            gateway,
            subscription,
            user,
            new_plan,
            proration.net_amount,
            new_plan.interval,
            meta,
            prefix=f"PLAN_{change_type.upper()}",
            item_name=f"Upgrade to {new_plan.name} (prorated)",
            category="plan_change",
            expiry_unit="day",
            expiry_duration=settings.plan_change_expiry_days,
        )
        return PlanChangeResult(
            requires_payment=True,
            change_type=change_type,
            effective=effective,
            subscription=subscription,
            current_plan=current_plan,
            new_plan=new_plan,
            message="Complete payment to activate the new plan",
            proration=proration,
            checkout=checkout,
            transaction_id=checkout.transaction_id,
        )

    # No payment due: switch plans now, keep the period, record the credit
    applied = await attempt_transition(
        db,
        subscription.id,
        subscription.status,
        subscription.status,
        plan_id=new_plan.id,
        intended_plan_id=None,
        cancel_at_period_end=False,
    )
    if not applied:
        raise StateConflictError(
            "Subscription changed concurrently, please retry", current_status=subscription.status.value
        )
    await cancel_scheduled_changes(db, subscription.tenant_id, f"plan_change:{new_plan.id}")
    credit = proration.credit_amount
    meta.credit_amount = str(credit)
    transaction = _audit_transaction(subscription, user, new_plan, TransactionStatus.COMPLETED, meta)
    db.add(transaction)
    await db.flush()
    await db.refresh(subscription)

    logger.info("Plan changed to %s for tenant %s with credit %s", new_plan.id, subscription.tenant_id, credit)
    return PlanChangeResult(
        requires_payment=False,
        change_type=change_type,
        effective=effective,
        subscription=subscription,
        current_plan=current_plan,
        new_plan=new_plan,
        message=f"Plan changed to {new_plan.name}",
        proration=proration,
        credit_amount=credit,
        transaction_id=transaction.id,
    )


def _audit_transaction(
    subscription: Subscription,
    user: User | None,
    plan: SubscriptionPlan,
    status: TransactionStatus,
    meta: TransactionMeta,
    payment_method: str = "credit",
) -> Transaction:
    """Zero-amount ledger record for a change that needed no payment."""
    return Transaction(
        tenant_id=subscription.tenant_id,
        user_id=user.id if user else None,
        subscription_plan_id=plan.id,
        amount=Decimal("0"),
        currency=settings.currency,
        billing_cycle=plan.interval,
        status=status,
        payment_method=payment_method,
        payment_gateway_id=None,
        meta=dump_metadata(meta),
    )


async def _schedule_for_period_end(
    db: AsyncSession,
    user: User,
    subscription: Subscription,
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    change_type: ChangeType,
    meta: PlanChangeMeta,
) -> PlanChangeResult:
    """Stage ``new_plan`` as intended; the deferred sweep promotes it."""
    await cancel_scheduled_changes(db, subscription.tenant_id, f"plan_change:{new_plan.id}")

    applied = await attempt_transition(
        db,
        subscription.id,
        subscription.status,
        subscription.status,
        intended_plan_id=new_plan.id,
        cancel_at_period_end=False,
    )
    if not applied:
        raise StateConflictError(
            "Subscription changed concurrently, please retry", current_status=subscription.status.value
        )
    transaction = _audit_transaction(
        subscription, user, new_plan, TransactionStatus.SCHEDULED, meta, payment_method="scheduled"
    )
    db.add(transaction)
    await db.flush()
    await db.refresh(subscription)

    logger.info(
        "Plan change to %s scheduled for tenant %s at %s",
        new_plan.id,
        subscription.tenant_id,
        subscription.current_period_end,
    )
    return PlanChangeResult(
        requires_payment=False,
        change_type=change_type,
        effective="end_of_period",
        subscription=subscription,
        current_plan=current_plan,
        new_plan=new_plan,
        message=f"Plan will change to {new_plan.name} at the end of the current period",
        scheduled_date=subscription.current_period_end,
        transaction_id=transaction.id,
    )


async def _fresh_acquisition(
    db: AsyncSession,
    gateway: PaymentGateway,
    user: User,
    subscription: Subscription,
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    change_type: ChangeType,
    now: datetime,
) -> PlanChangeResult:
    """Change with no live period: full price, or immediate for a free target."""
    meta = ExpiredPlanChangeMeta(
        subscription_id=str(subscription.id),
        from_plan_id=current_plan.id,
        to_plan_id=new_plan.id,
    )

    if new_plan.is_free:
        # The free tier itself never expires; other zero-priced plans run a normal period
        end = None if new_plan.id == settings.free_plan_id else compute_next_period_end(now, new_plan.interval)
        applied = await attempt_transition(
            db,
            subscription.id,
            subscription.status,
            SubscriptionStatus.ACTIVE,
            plan_id=new_plan.id,
            current_period_start=now,
            current_period_end=end,
            intended_plan_id=None,
            cancel_at_period_end=False,
        )
        if not applied:
            raise StateConflictError(
                "Subscription changed concurrently, please retry", current_status=subscription.status.value
            )
        await cancel_scheduled_changes(db, subscription.tenant_id, f"plan_change:{new_plan.id}")
        transaction = _audit_transaction(subscription, user, new_plan, TransactionStatus.COMPLETED, meta)
        db.add(transaction)
        await db.flush()
        await db.refresh(subscription)
        return PlanChangeResult(
            requires_payment=False,
            change_type=change_type,
            effective="immediate",
            subscription=subscription,
            current_plan=current_plan,
            new_plan=new_plan,
            message=f"Switched to {new_plan.name}",
            transaction_id=transaction.id,
        )

    checkout = await start_checkout(
        db,
        gateway,
        subscription,
        user,
        new_plan,
        new_plan.price,
        new_plan.interval,
        meta,
        prefix="PLAN_CHANGE",
        item_name=f"{new_plan.name} Plan",
        category="plan_change",
        expiry_unit="day",
        expiry_duration=settings.plan_change_expiry_days,
    )
    return PlanChangeResult(
        requires_payment=True,
        change_type=change_type,
        effective="immediate",
        subscription=subscription,
        current_plan=current_plan,
        new_plan=new_plan,
        message="Complete payment to activate the new plan",
        checkout=checkout,
        transaction_id=checkout.transaction_id,
    )
