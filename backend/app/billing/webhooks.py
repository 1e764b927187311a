"""Midtrans payment notification handling and poll-based reconciliation.

Both entry points end in :func:`apply_gateway_status`, so a webhook and a
reconcile call for the same order have identical effects. The transaction's
own PENDING → terminal transition is the idempotency guard: only the caller
that wins it touches the subscription.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import AuthorizationError, SignatureError, ValidationError
from app.billing.metadata import annotate
from app.billing.midtrans_client import PaymentGateway
from app.billing.periods import utcnow
from app.billing.state_machine import (
    attempt_transaction_transition,
    attempt_transition,
    derive_time_status,
)
from app.config import settings
from app.models.subscription import Subscription
from app.models.subscription_enums import SubscriptionStatus, TransactionStatus
from app.models.transaction import Transaction
from app.services.subscription_service import (
    activate_from_transaction,
    get_or_create_subscription,
    get_transaction_by_order,
)

logger = logging.getLogger(__name__)

FAILURE_STATUSES = frozenset(
    {TransactionStatus.FAILED, TransactionStatus.CANCELLED, TransactionStatus.EXPIRED}
)

# Never persisted alongside the gateway payload
_REDACTED_KEYS = frozenset({"signature_key"})


@dataclass
class ReconcileOutcome:
    """What applying a gateway status did to a transaction."""

    transaction: Transaction
    gateway_status: str
    status: TransactionStatus
    applied: bool
    activated: bool = False


def provider_status(payload: dict[str, Any]) -> str:
    """Effective Midtrans status; a card capture under fraud review is still pending."""
    status = str(payload.get("transaction_status") or "")
    if status == "capture" and payload.get("fraud_status") == "challenge":
        return "pending"
    return status


async def apply_gateway_status(
    db: AsyncSession,
    gateway: PaymentGateway,
    transaction: Transaction,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> ReconcileOutcome:
    """Persist a gateway status for ``transaction`` and apply its effects."""
    now = now or utcnow()
    gateway_status = provider_status(payload)
    mapped = gateway.map_status(gateway_status)
    order_id = transaction.payment_gateway_id

    meta = annotate(
        transaction.meta,
        gateway_status=gateway_status,
        gateway_payload={k: v for k, v in payload.items() if k not in _REDACTED_KEYS},
        reconciled_at=now,
    )
    subscription = await get_or_create_subscription(db, transaction.tenant_id)

    if mapped is TransactionStatus.PAID:
        if await attempt_transaction_transition(
            db, transaction.id, TransactionStatus.PENDING, TransactionStatus.PAID, meta=meta
        ):
            await activate_from_transaction(db, subscription, transaction, now)
            return ReconcileOutcome(transaction, gateway_status, TransactionStatus.PAID, applied=True, activated=True)

        if transaction.status in FAILURE_STATUSES and not transaction.meta.get("late_payment"):
            # Money arrived for an order we already gave up on; flag it for a refund
            await attempt_transaction_transition(
                db,
                transaction.id,
                transaction.status,
                transaction.status,
                meta=annotate(meta, late_payment=True),
            )
            logger.error(
                "Late payment for %s order %s (tenant %s); not applied, refund required",
                transaction.status.value,
                order_id,
                transaction.tenant_id,
            )
        else:
            logger.info("Order %s already %s, ignoring repeated payment status", order_id, transaction.status.value)
        return ReconcileOutcome(transaction, gateway_status, transaction.status, applied=False)

    if mapped in FAILURE_STATUSES:
        applied = await attempt_transaction_transition(
            db, transaction.id, TransactionStatus.PENDING, mapped, meta=meta
        )
        if applied and subscription.intended_plan_id == transaction.subscription_plan_id:
            await attempt_transition(
                db,
                subscription.id,
                SubscriptionStatus.PENDING_CHECKOUT,
                derive_time_status(subscription.current_period_end, now, settings.grace_period_days),
                Subscription.intended_plan_id == transaction.subscription_plan_id,
                intended_plan_id=None,
            )
        if applied:
            logger.info("Order %s %s for tenant %s", order_id, mapped.value, transaction.tenant_id)
        return ReconcileOutcome(transaction, gateway_status, transaction.status, applied=applied)

    # Still pending at the gateway: just remember what it said
    applied = await attempt_transaction_transition(
        db, transaction.id, TransactionStatus.PENDING, TransactionStatus.PENDING, meta=meta
    )
    return ReconcileOutcome(transaction, gateway_status, transaction.status, applied=applied)


async def handle_notification(
    db: AsyncSession,
    gateway: PaymentGateway,
    notification: dict[str, Any],
    now: datetime | None = None,
) -> ReconcileOutcome:
    """Verify and apply an HTTP notification pushed by Midtrans."""
    if not gateway.verify_notification_signature(notification):
        logger.warning("Rejected payment notification with invalid signature")
        raise SignatureError("Invalid signature")

    order_id = notification.get("order_id")
    if not order_id:
        raise ValidationError("order_id is required", field="order_id")

    transaction = await get_transaction_by_order(db, str(order_id))
    logger.info(
        "Payment notification for order %s: %s",
        order_id,
        notification.get("transaction_status"),
    )
    return await apply_gateway_status(db, gateway, transaction, notification, now)


async def reconcile_order(
    db: AsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    tenant_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> ReconcileOutcome:
    """Poll the gateway for ``order_id`` and apply whatever it reports.

    With ``tenant_id`` set, orders of other tenants are refused before the
    gateway is contacted.
    """
    transaction = await get_transaction_by_order(db, order_id)
    if tenant_id is not None and transaction.tenant_id != tenant_id:
        raise AuthorizationError("Unauthorized access to transaction")
    status = await gateway.get_transaction_status(order_id)
    logger.info("Reconciling order %s: gateway says %s", order_id, status.transaction_status)
    payload = {
        **status.raw,
        "order_id": order_id,
        "transaction_status": status.transaction_status,
        "status_code": status.status_code,
    }
    return await apply_gateway_status(db, gateway, transaction, payload, now)
