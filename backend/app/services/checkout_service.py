"""Checkout service — hosted-checkout sessions, renewals, and abandoned checkouts.

Every payment-requiring flow goes through :func:`start_checkout`. The
gateway token is requested before anything is written, so a
:class:`GatewayError` leaves no transaction behind; the caller simply
re-initiates with a fresh order id.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    AuthorizationError,
    GatewayError,
    StateConflictError,
    ValidationError,
)
from app.billing.metadata import CheckoutMeta, RenewalMeta, TransactionMeta, annotate, dump_metadata
from app.billing.midtrans_client import (
    CheckoutCustomer,
    CheckoutItem,
    CheckoutRequest,
    PaymentGateway,
    generate_order_id,
)
from app.billing.periods import compute_next_period_end, utcnow
from app.billing.plans import PlanInterval, cycle_price, gateway_amount
from app.billing.state_machine import (
    attempt_transaction_transition,
    attempt_transition,
    derive_time_status,
)
from app.config import settings
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from app.models.user import User
from app.services.subscription_service import (
    cancel_scheduled_changes,
    days_remaining,
    ensure_tenant_scope,
    get_plan,
    get_subscription,
    get_subscription_for_tenant,
    list_transactions,
)

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    snap_token: str
    order_id: str
    amount: int
    transaction_id: uuid.UUID
    plan_id: str
    plan_name: str
    billing_cycle: PlanInterval


@dataclass
class RenewalInfo:
    can_renew: bool
    reason: str | None
    plan_id: str
    plan_name: str
    amount: Decimal
    current_period_end: datetime | None
    days_until_expiry: int | None


@dataclass
class PendingCheckout:
    intended_plan_id: str
    intended_plan_name: str
    transaction_id: uuid.UUID | None
    order_id: str | None
    amount: Decimal | None
    created_at: datetime | None


async def cancel_gateway_orders(gateway: PaymentGateway, order_ids: list[str]) -> None:
    """Best-effort cancellation of superseded or abandoned gateway orders."""
    for order_id in order_ids:
        try:
            await gateway.cancel_transaction(order_id)
        except GatewayError as e:
            # The order expires on its own; a late payment is caught by reconciliation
            logger.warning("Could not cancel gateway order %s: %s", order_id, e.message)


async def _supersede_pending(
    db: AsyncSession, tenant_id: uuid.UUID, superseded_by: str
) -> list[str]:
    """Cancel the tenant's pending transactions; return their gateway order ids."""
    order_ids: list[str] = []
    for pending in await list_transactions(db, tenant_id, TransactionStatus.PENDING):
        applied = await attempt_transaction_transition(
            db,
            pending.id,
            TransactionStatus.PENDING,
            TransactionStatus.CANCELLED,
            meta=annotate(pending.meta, superseded_by=superseded_by),
        )
        if applied and pending.payment_gateway_id:
            order_ids.append(pending.payment_gateway_id)
    return order_ids


async def start_checkout(
    db: AsyncSession,
    gateway: PaymentGateway,
    subscription: Subscription,
    user: User,
    plan: SubscriptionPlan,
    amount: Decimal,
    billing_cycle: PlanInterval,
    meta: TransactionMeta,
    *,
    prefix: str,
    item_name: str,
    category: str = "subscription",
    expiry_unit: str = "minute",
    expiry_duration: int | None = None,
) -> CheckoutResult:
    """Open a hosted checkout for ``amount`` and stage ``plan`` as intended.

    On success the subscription is PENDING_CHECKOUT with ``intended_plan_id``
    set, and exactly one PENDING transaction backs it.
    """
    order_id = generate_order_id(prefix)
    gross = max(gateway_amount(amount), 1)

    request = CheckoutRequest(
        order_id=order_id,
        amount=gross,
        currency=settings.currency,
        customer=CheckoutCustomer.from_name(user.name, user.email),
        items=[CheckoutItem(id=plan.id, price=gross, name=item_name, category=category)],
        callback_base_url=f"{settings.frontend_url}/subscription",
        expiry_unit=expiry_unit,
        expiry_duration=expiry_duration or settings.checkout_expiry_minutes,
        custom_fields=(str(subscription.tenant_id), str(user.id), plan.id),
    )
    snap_token = await gateway.create_checkout_token(request)

    superseded = await _supersede_pending(db, subscription.tenant_id, order_id)
    # The checkout replaces any staged end-of-period change
    await cancel_scheduled_changes(db, subscription.tenant_id, order_id)
    match meta:
        case CheckoutMeta():
            meta = meta.model_copy(update={"supersedes": superseded})

    transaction = Transaction(
        tenant_id=subscription.tenant_id,
        user_id=user.id,
        subscription_plan_id=plan.id,
        amount=amount,
        currency=settings.currency,
        billing_cycle=billing_cycle,
        status=TransactionStatus.PENDING,
        payment_gateway_id=order_id,
        meta=dump_metadata(meta),
    )
    db.add(transaction)
    await db.flush()

    applied = await attempt_transition(
        db,
        subscription.id,
        subscription.status,
        SubscriptionStatus.PENDING_CHECKOUT,
        intended_plan_id=plan.id,
    )
    if not applied:
        raise StateConflictError(
            "Subscription changed concurrently, please retry",
            current_status=subscription.status.value,
        )
    await db.refresh(subscription)

    await cancel_gateway_orders(gateway, superseded)
    logger.info(
        "Checkout %s opened for tenant %s: plan %s, %s %s",
        order_id,
        subscription.tenant_id,
        plan.id,
        gross,
        settings.currency,
    )
    return CheckoutResult(
        snap_token=snap_token,
        order_id=order_id,
        amount=gross,
        transaction_id=transaction.id,
        plan_id=plan.id,
        plan_name=plan.name,
        billing_cycle=billing_cycle,
    )


# ---------------------------------------------------------------------------
# Re-initiated checkout
# ---------------------------------------------------------------------------


async def create_checkout_token(
    db: AsyncSession,
    gateway: PaymentGateway,
    user: User,
    plan_id: str,
    billing_cycle: PlanInterval,
) -> CheckoutResult:
    """Issue a new checkout for the plan the subscription is waiting on.

    A re-initiated plan change keeps the amount of the checkout it replaces
    (the proration is not replayed); otherwise the plan's cycle price is used.
    """
    subscription = await get_subscription_for_tenant(db, user.tenant_id, for_update=True)
    ensure_tenant_scope(subscription, user)

    if subscription.status is not SubscriptionStatus.PENDING_CHECKOUT:
        raise StateConflictError(
            "Please initiate the plan change from your dashboard first",
            current_status=subscription.status.value,
        )
    if subscription.intended_plan_id != plan_id:
        raise AuthorizationError(
            "You can only checkout your intended plan",
            context={"intended_plan_id": subscription.intended_plan_id},
        )

    plan = await get_plan(db, plan_id)
    if not plan.is_active:
        raise ValidationError("Plan is no longer available", field="planId")

    previous = [
        tx
        for tx in await list_transactions(db, user.tenant_id, TransactionStatus.PENDING, plan_id)
        if tx.billing_cycle is billing_cycle
    ]
    if previous:
        amount = previous[0].amount
    else:
        amount = cycle_price(plan.price, plan.interval, billing_cycle, settings.yearly_discount)
        if amount is None:
            raise ValidationError(
                f"{plan.name} is billed {plan.interval.value.lower()} only", field="billingCycle"
            )
    if amount <= 0:
        raise ValidationError("Free plans do not need checkout", field="planId")

    label = "Annual" if billing_cycle is PlanInterval.YEARLY else "Monthly"
    return await start_checkout(
        db,
        gateway,
        subscription,
        user,
        plan,
        amount,
        billing_cycle,
        CheckoutMeta(subscription_id=str(subscription.id)),
        prefix="SUB",
        item_name=f"{plan.name} - {label}",
    )


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


async def renewal_info(
    db: AsyncSession, user: User, subscription_id: uuid.UUID, now: datetime | None = None
) -> RenewalInfo:
    """Whether the current plan can be renewed now, and for how much."""
    now = now or utcnow()
    subscription = await get_subscription(db, subscription_id)
    ensure_tenant_scope(subscription, user)
    plan = subscription.plan
    days = days_remaining(subscription, now)

    reason = None
    if plan.is_free or subscription.current_period_end is None:
        reason = "The free plan does not need renewal"
    elif subscription.status is SubscriptionStatus.PENDING_CHECKOUT:
        reason = "Complete or abandon the pending checkout first"
    elif subscription.cancel_at_period_end:
        reason = "Subscription is set to downgrade at period end"
    elif days is not None and days > settings.renewal_window_days:
        reason = f"Renewal opens {settings.renewal_window_days} days before the period ends"

    return RenewalInfo(
        can_renew=reason is None,
        reason=reason,
        plan_id=plan.id,
        plan_name=plan.name,
        amount=plan.price,
        current_period_end=subscription.current_period_end,
        days_until_expiry=days,
    )


async def request_renewal(
    db: AsyncSession,
    gateway: PaymentGateway,
    user: User,
    subscription_id: uuid.UUID,
    now: datetime | None = None,
) -> CheckoutResult:
    """Open a checkout that renews the current plan for another period."""
    now = now or utcnow()
    info = await renewal_info(db, user, subscription_id, now)
    subscription = await get_subscription(db, subscription_id, for_update=True)
    if not info.can_renew:
        raise StateConflictError(
            info.reason or "Subscription cannot be renewed",
            current_status=subscription.status.value,
            days_until_expiry=info.days_until_expiry,
        )

    plan = subscription.plan
    renewal_start = max(subscription.current_period_end, now)
    meta = RenewalMeta(
        subscription_id=str(subscription.id),
        renewal_period_start=renewal_start,
        renewal_period_end=compute_next_period_end(renewal_start, plan.interval),
    )
    return await start_checkout(
        db,
        gateway,
        subscription,
        user,
        plan,
        plan.price,
        plan.interval,
        meta,
        prefix="RENEWAL",
        item_name=f"{plan.name} Renewal",
        category="renewal",
    )


# ---------------------------------------------------------------------------
# Pending checkout
# ---------------------------------------------------------------------------


async def get_pending_checkout(db: AsyncSession, user: User) -> PendingCheckout | None:
    subscription = await get_subscription_for_tenant(db, user.tenant_id)
    if subscription.status is not SubscriptionStatus.PENDING_CHECKOUT or subscription.intended_plan is None:
        return None

    pending = await list_transactions(
        db, user.tenant_id, TransactionStatus.PENDING, subscription.intended_plan_id
    )
    latest = pending[0] if pending else None
    return PendingCheckout(
        intended_plan_id=subscription.intended_plan.id,
        intended_plan_name=subscription.intended_plan.name,
        transaction_id=latest.id if latest else None,
        order_id=latest.payment_gateway_id if latest else None,
        amount=latest.amount if latest else None,
        created_at=latest.created_at if latest else None,
    )


async def abandon_pending_checkout(
    db: AsyncSession, gateway: PaymentGateway, user: User, now: datetime | None = None
) -> Subscription:
    """Drop an unfinished checkout and return to the time-derived status."""
    now = now or utcnow()
    subscription = await get_subscription_for_tenant(db, user.tenant_id, for_update=True)
    ensure_tenant_scope(subscription, user)

    if subscription.status is not SubscriptionStatus.PENDING_CHECKOUT:
        raise StateConflictError("No pending checkout to cancel", current_status=subscription.status.value)

    order_ids = await _supersede_pending(db, subscription.tenant_id, "abandoned")
    await attempt_transition(
        db,
        subscription.id,
        SubscriptionStatus.PENDING_CHECKOUT,
        derive_time_status(subscription.current_period_end, now, settings.grace_period_days),
        intended_plan_id=None,
    )
    await db.refresh(subscription)
    await cancel_gateway_orders(gateway, order_ids)
    logger.info("Pending checkout abandoned for tenant %s", subscription.tenant_id)
    return subscription
