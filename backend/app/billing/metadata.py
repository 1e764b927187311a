"""Typed transaction metadata — one model per kind of billing operation.

The ``transactions.metadata`` JSON column always holds one of these,
tagged by ``type``, so reconciliation and sweeps can match on the kind of
operation instead of probing optional keys.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _BaseMeta(BaseModel):
    """Fields shared by every kind; the annotations added after creation."""

    model_config = ConfigDict(extra="forbid")

    # Gateway bookkeeping
    gateway_status: str | None = None
    gateway_payload: dict[str, Any] | None = None
    reconciled_at: datetime | None = None

    # Deferred activation bookkeeping
    scheduled_activation_handled: bool | None = None
    activated_at: datetime | None = None

    # Checkout supersession / late payments
    superseded_by: str | None = None
    late_payment: bool = False


class PlanChangeMeta(_BaseMeta):
    """Mid-period upgrade or downgrade of a live subscription."""

    type: Literal["plan_change"] = "plan_change"
    change_type: Literal["upgrade", "downgrade"]
    effective: Literal["immediate", "end_of_period"]
    subscription_id: str
    from_plan_id: str
    to_plan_id: str
    proration: dict[str, int | str] | None = None
    credit_amount: str | None = None


class ExpiredPlanChangeMeta(_BaseMeta):
    """Plan change on an expired (or period-less) subscription, priced in full."""

    type: Literal["expired_plan_change"] = "expired_plan_change"
    subscription_id: str
    from_plan_id: str
    to_plan_id: str


class CheckoutMeta(_BaseMeta):
    """Checkout re-initiated for the subscription's intended plan."""

    type: Literal["checkout"] = "checkout"
    subscription_id: str
    supersedes: list[str] = Field(default_factory=list)


class RenewalMeta(_BaseMeta):
    """Paid renewal of the current plan."""

    type: Literal["renewal"] = "renewal"
    subscription_id: str
    renewal_period_start: datetime
    renewal_period_end: datetime


class ScheduledDowngradeMeta(_BaseMeta):
    """Audit record of a cancel-at-period-end downgrade to the free plan."""

    type: Literal["scheduled_downgrade"] = "scheduled_downgrade"
    from_plan_id: str
    to_plan_id: str
    original_period_end: datetime | None
    reason: str = "Scheduled downgrade at period end"


TransactionMeta = Annotated[
    Union[PlanChangeMeta, ExpiredPlanChangeMeta, CheckoutMeta, RenewalMeta, ScheduledDowngradeMeta],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[TransactionMeta] = TypeAdapter(TransactionMeta)


def parse_metadata(data: dict[str, Any]) -> TransactionMeta:
    return _adapter.validate_python(data)


def dump_metadata(meta: _BaseMeta) -> dict[str, Any]:
    return meta.model_dump(mode="json", exclude_none=True)


def annotate(data: dict[str, Any], **updates: Any) -> dict[str, Any]:
    """Return a new metadata dict with ``updates`` applied (validated)."""
    meta = parse_metadata(data)
    merged = meta.model_validate({**meta.model_dump(), **updates})
    return dump_metadata(merged)
