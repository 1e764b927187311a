"""Subscription model — billing state per tenant."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from app.models.subscription_enums import SubscriptionStatus


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a tenant's plan, billing period, and staged plan changes."""

    __tablename__ = "subscriptions"

    # Foreign key — one subscription per tenant (UNIQUE enforces one-to-one)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Plan & status
    plan_id: Mapped[str] = mapped_column(ForeignKey("subscription_plans.id"), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False, length=32),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    # Billing period (end is NULL on the non-expiring free plan)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    # Staged changes
    intended_plan_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("subscription_plans.id"), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    plan: Mapped["SubscriptionPlan"] = relationship(foreign_keys=[plan_id], lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    intended_plan: Mapped["SubscriptionPlan | None"] = relationship(  # type: ignore[name-defined]  # noqa: F821
        foreign_keys=[intended_plan_id], lazy="selectin"
    )

    def is_expired(self, now: datetime) -> bool:
        """True once the period end has passed; never for the free tier."""
        return self.current_period_end is not None and self.current_period_end <= now

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, "
            f"plan_id={self.plan_id!r}, status={self.status.value})>"
        )
