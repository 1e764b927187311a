"""Subscription API endpoints — current plan, plan changes, cancellation, renewal."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_admin, get_current_active_user, get_db, get_gateway
from app.billing.midtrans_client import PaymentGateway
from app.billing.periods import utcnow
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import (
    CheckoutTokenResponse,
    PendingCheckoutResponse,
    PlanChangeOption,
    PlanChangePreviewResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanResponse,
    PlansListResponse,
    ProrationResponse,
    RenewalInfoResponse,
    RenewalRequest,
    SubscriptionResponse,
)
from app.services import checkout_service, plan_change_service, subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])


def subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        tenant_id=subscription.tenant_id,
        plan=PlanResponse.model_validate(subscription.plan),
        status=subscription.status.value,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        intended_plan=PlanResponse.model_validate(subscription.intended_plan) if subscription.intended_plan else None,
        cancel_at_period_end=subscription.cancel_at_period_end,
        days_remaining=subscription_service.days_remaining(subscription, utcnow()),
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(db: AsyncSession = Depends(get_db)) -> PlansListResponse:
    """List purchasable plans (public — no auth required)."""
    plans = await subscription_service.list_active_plans(db)
    return PlansListResponse(plans=[PlanResponse.model_validate(p) for p in plans])


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Current subscription of the caller's tenant, with a stale status refreshed."""
    subscription = await subscription_service.get_or_create_subscription(db, current_user.tenant_id)
    subscription = await subscription_service.refresh_status(db, subscription)
    return subscription_response(subscription)


# ---------------------------------------------------------------------------
# Plan changes
# ---------------------------------------------------------------------------


@router.post("/change-plan", response_model=PlanChangeResponse)
async def change_plan(
    body: PlanChangeRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_billing_admin),
) -> PlanChangeResponse:
    """Upgrade or downgrade, immediately or at the end of the current period."""
    result = await plan_change_service.request_plan_change(
        db,
        gateway,
        current_user,
        body.subscription_id,
        body.new_plan_id,
        body.effective_date,
    )
    checkout = result.checkout
    return PlanChangeResponse(
        requires_payment=result.requires_payment,
        change_type=result.change_type,
        effective_date=result.effective,
        current_plan=result.current_plan.name,
        new_plan=result.new_plan.name,
        message=result.message,
        snap_token=checkout.snap_token if checkout else None,
        order_id=checkout.order_id if checkout else None,
        amount=checkout.amount if checkout else None,
        prorated_amount=result.proration.net_amount if result.proration and result.requires_payment else None,
        credit_amount=result.credit_amount,
        scheduled_date=result.scheduled_date,
        transaction_id=result.transaction_id,
        calculation=ProrationResponse.model_validate(result.proration) if result.proration else None,
        subscription=subscription_response(result.subscription),
    )


@router.get("/change-plan/preview", response_model=PlanChangePreviewResponse)
async def preview_change_plan(
    subscription_id: uuid.UUID = Query(alias="subscriptionId"),
    new_plan_id: str = Query(alias="newPlanId", min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PlanChangePreviewResponse:
    """Proration breakdown and available options, without side effects."""
    preview = await plan_change_service.preview_plan_change(db, current_user, subscription_id, new_plan_id)
    return PlanChangePreviewResponse(
        current_plan=PlanResponse.model_validate(preview.current_plan),
        new_plan=PlanResponse.model_validate(preview.new_plan),
        change_type=preview.change_type,
        current_period_start=preview.period_start,
        current_period_end=preview.period_end,
        calculation=ProrationResponse.model_validate(preview.proration) if preview.proration else None,
        immediate=PlanChangeOption(
            available=True,
            requires_payment=preview.immediate_requires_payment,
            amount=preview.immediate_amount,
            effective_at=None,
        ),
        end_of_period=PlanChangeOption(
            available=preview.end_of_period_available,
            requires_payment=False,
            amount=0,
            effective_at=preview.period_end if preview.end_of_period_available else None,
        ),
    )


# ---------------------------------------------------------------------------
# Cancel at period end
# ---------------------------------------------------------------------------


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_billing_admin),
) -> SubscriptionResponse:
    """Downgrade to the free plan when the current period ends."""
    subscription = await subscription_service.cancel_at_period_end(db, current_user)
    return subscription_response(subscription)


@router.delete("/cancel", response_model=SubscriptionResponse)
async def undo_cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_billing_admin),
) -> SubscriptionResponse:
    """Keep the current plan after all."""
    subscription = await subscription_service.undo_cancel_at_period_end(db, current_user)
    return subscription_response(subscription)


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


@router.get("/renew", response_model=RenewalInfoResponse)
async def renewal_info(
    subscription_id: uuid.UUID = Query(alias="subscriptionId"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> RenewalInfoResponse:
    """Whether the current plan can be renewed now."""
    info = await checkout_service.renewal_info(db, current_user, subscription_id)
    return RenewalInfoResponse.model_validate(info)


@router.post("/renew", response_model=CheckoutTokenResponse)
async def renew_subscription(
    body: RenewalRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_billing_admin),
) -> CheckoutTokenResponse:
    """Open a checkout that renews the current plan."""
    checkout = await checkout_service.request_renewal(db, gateway, current_user, body.subscription_id)
    return CheckoutTokenResponse.model_validate(checkout)


# ---------------------------------------------------------------------------
# Pending checkout
# ---------------------------------------------------------------------------


@router.get("/pending-checkout", response_model=PendingCheckoutResponse)
async def get_pending_checkout(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PendingCheckoutResponse:
    pending = await checkout_service.get_pending_checkout(db, current_user)
    if pending is None:
        return PendingCheckoutResponse(has_pending_checkout=False)
    return PendingCheckoutResponse(
        has_pending_checkout=True,
        intended_plan_id=pending.intended_plan_id,
        intended_plan_name=pending.intended_plan_name,
        transaction_id=pending.transaction_id,
        order_id=pending.order_id,
        amount=pending.amount,
        created_at=pending.created_at,
    )


@router.delete("/pending-checkout", response_model=SubscriptionResponse)
async def abandon_pending_checkout(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_billing_admin),
) -> SubscriptionResponse:
    """Abandon an unfinished checkout and revert to the previous plan state."""
    subscription = await checkout_service.abandon_pending_checkout(db, gateway, current_user)
    return subscription_response(subscription)
