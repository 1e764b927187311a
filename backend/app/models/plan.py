"""SubscriptionPlan model — the plan catalogue."""

from decimal import Decimal

from sqlalchemy import JSON, Boolean, Enum, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.plans import PlanInterval
from app.database import Base, TimestampMixin


class SubscriptionPlan(TimestampMixin, Base):
    """A purchasable plan. Referenced plans are deactivated, never deleted."""

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. "starter-plan"
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    interval: Mapped[PlanInterval] = mapped_column(
        Enum(PlanInterval, native_enum=False, length=16),
        nullable=False,
        default=PlanInterval.MONTHLY,
    )
    max_users: Mapped[int | None] = mapped_column(default=None)  # None = unlimited
    max_ingredients: Mapped[int | None] = mapped_column(default=None)
    max_batches: Mapped[int | None] = mapped_column(default=None)
    features: Mapped[dict | None] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def is_free(self) -> bool:
        return self.price <= 0

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id!r}, price={self.price}, interval={self.interval.value})>"
