"""Transaction model — append-mostly ledger of payment attempts."""

import uuid
from decimal import Decimal

from sqlalchemy import JSON, Enum, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.billing.metadata import TransactionMeta, parse_metadata
from app.billing.plans import PlanInterval
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from app.models.subscription_enums import TransactionStatus


class Transaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One payment attempt (or zero-amount audit record) for a tenant."""

    __tablename__ = "transactions"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # NULL for system-initiated records (sweeps)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    subscription_plan_id: Mapped[str] = mapped_column(
        ForeignKey("subscription_plans.id"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="IDR")
    billing_cycle: Mapped[PlanInterval] = mapped_column(
        Enum(PlanInterval, native_enum=False, length=16),
        nullable=False,
        default=PlanInterval.MONTHLY,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False, length=32),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="midtrans")

    # Gateway order id; NULL for records that never went through checkout
    payment_gateway_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)

    # "metadata" is reserved on declarative classes, hence the attribute name
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    # Relationships
    subscription_plan: Mapped["SubscriptionPlan"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    @property
    def details(self) -> TransactionMeta:
        """Typed view of ``meta`` (discriminated on its ``type`` key)."""
        return parse_metadata(self.meta)

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, order={self.payment_gateway_id!r}, "
            f"status={self.status.value}, amount={self.amount})>"
        )
