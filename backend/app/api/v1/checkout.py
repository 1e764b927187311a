"""Checkout API endpoints — re-initiated checkout and poll-based reconciliation."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_admin, get_current_active_user, get_db, get_gateway
from app.billing.midtrans_client import PaymentGateway
from app.billing.webhooks import reconcile_order
from app.models.user import User
from app.schemas.billing import (
    CheckoutTokenRequest,
    CheckoutTokenResponse,
    ReconcileRequest,
    ReconcileResponse,
)
from app.services.checkout_service import create_checkout_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/checkout", tags=["checkout"])


@router.post("/create-token", response_model=CheckoutTokenResponse)
async def create_token(
    body: CheckoutTokenRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_billing_admin),
) -> CheckoutTokenResponse:
    """Issue a fresh checkout token for the subscription's intended plan."""
    checkout = await create_checkout_token(db, gateway, current_user, body.plan_id, body.billing_cycle)
    return CheckoutTokenResponse.model_validate(checkout)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    body: ReconcileRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_active_user),
) -> ReconcileResponse:
    """Ask the gateway for an order's live status and apply it.

    Called by the checkout return page so activation does not wait on the
    notification.
    """
    outcome = await reconcile_order(db, gateway, body.order_id, tenant_id=current_user.tenant_id)
    return ReconcileResponse(
        order_id=body.order_id,
        transaction_id=outcome.transaction.id,
        status=outcome.status.value,
        gateway_status=outcome.gateway_status,
    )
