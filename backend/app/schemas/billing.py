"""Pydantic v2 request/response schemas for subscription, checkout and sweep endpoints.

Field names are snake_case in Python and camelCase on the wire.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.billing.plans import PlanInterval


class _Request(BaseModel):
    """Unknown or malformed fields are rejected before any business logic runs."""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class PlanChangeRequest(_Request):
    """Upgrade or downgrade the subscription to another plan."""

    subscription_id: uuid.UUID
    new_plan_id: str = Field(min_length=1, max_length=64)
    effective_date: Literal["immediate", "end_of_period"] = "immediate"


class CheckoutTokenRequest(_Request):
    """Re-initiate checkout for the subscription's intended plan."""

    plan_id: str = Field(min_length=1, max_length=64)
    billing_cycle: PlanInterval = PlanInterval.MONTHLY

    @field_validator("billing_cycle", mode="before")
    @classmethod
    def parse_cycle(cls, value: Any) -> Any:
        """Accept ``monthly``/``yearly`` in any case."""
        return PlanInterval.parse(value) if isinstance(value, str) else value


class ReconcileRequest(_Request):
    order_id: str = Field(min_length=1, max_length=100)


class RenewalRequest(_Request):
    subscription_id: uuid.UUID


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PlanResponse(_Response):
    """Plan details for display."""

    id: str
    name: str
    description: str | None
    price: Decimal
    interval: PlanInterval
    max_users: int | None  # None = unlimited
    max_ingredients: int | None
    max_batches: int | None
    features: dict[str, Any] | None


class PlansListResponse(_Response):
    plans: list[PlanResponse]


class SubscriptionResponse(_Response):
    """Current subscription of the caller's tenant."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    plan: PlanResponse
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    intended_plan: PlanResponse | None
    cancel_at_period_end: bool
    days_remaining: int | None  # None = never expires


class ProrationResponse(_Response):
    total_days_in_period: int
    remaining_days: int
    used_days: int
    current_plan_price: Decimal
    new_plan_price: Decimal
    unused_amount: Decimal
    new_plan_prorated: Decimal
    net_amount: Decimal


class PlanChangeResponse(_Response):
    """Checkout details when payment is due, otherwise the applied/staged change."""

    requires_payment: bool
    change_type: Literal["upgrade", "downgrade"]
    effective_date: Literal["immediate", "end_of_period"]
    current_plan: str
    new_plan: str
    message: str
    snap_token: str | None = None
    order_id: str | None = None
    amount: int | None = None
    prorated_amount: Decimal | None = None
    credit_amount: Decimal | None = None
    scheduled_date: datetime | None = None
    transaction_id: uuid.UUID | None = None
    calculation: ProrationResponse | None = None
    subscription: SubscriptionResponse | None = None


class PlanChangeOption(_Response):
    available: bool
    requires_payment: bool
    amount: Decimal
    effective_at: datetime | None


class PlanChangePreviewResponse(_Response):
    current_plan: PlanResponse
    new_plan: PlanResponse
    change_type: Literal["upgrade", "downgrade"]
    current_period_start: datetime | None
    current_period_end: datetime | None
    calculation: ProrationResponse | None
    immediate: PlanChangeOption
    end_of_period: PlanChangeOption


class CheckoutTokenResponse(_Response):
    snap_token: str
    order_id: str
    amount: int
    plan_name: str
    billing_cycle: PlanInterval


class ReconcileResponse(_Response):
    ok: bool = True
    order_id: str
    transaction_id: uuid.UUID
    status: str
    gateway_status: str


class RenewalInfoResponse(_Response):
    can_renew: bool
    reason: str | None
    plan_id: str
    plan_name: str
    amount: Decimal
    current_period_end: datetime | None
    days_until_expiry: int | None


class PendingCheckoutResponse(_Response):
    has_pending_checkout: bool
    intended_plan_id: str | None = None
    intended_plan_name: str | None = None
    transaction_id: uuid.UUID | None = None
    order_id: str | None = None
    amount: Decimal | None = None
    created_at: datetime | None = None


class SweepFailure(_Response):
    subscription_id: str
    error: str


class SweepResponse(_Response):
    sweep: str
    candidates: int
    processed: int
    skipped: int
    failed: int
    failures: list[SweepFailure]
