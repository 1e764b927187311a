"""Plan catalogue definitions — intervals, pricing rules, and seed data."""

import enum
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal


class PlanInterval(str, enum.Enum):
    """Billing interval of a plan (and billing cycle of a transaction)."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @classmethod
    def parse(cls, value: "str | PlanInterval") -> "PlanInterval":
        """Accept ``monthly``/``yearly`` in any case."""
        return cls(str(getattr(value, "value", value)).upper())


@dataclass(frozen=True)
class PlanDefinition:
    """Catalogue entry used to seed ``subscription_plans``."""

    id: str
    name: str
    description: str
    price: Decimal
    interval: PlanInterval
    max_users: int | None  # None = unlimited
    max_ingredients: int | None  # None = unlimited
    max_batches: int | None  # None = unlimited
    features: dict[str, bool] = field(default_factory=dict)


DEFAULT_PLANS: list[PlanDefinition] = [
    PlanDefinition(
        id="free-plan",
        name="Free",
        description="Free plan for getting started",
        price=Decimal("0"),
        interval=PlanInterval.MONTHLY,
        max_users=1,
        max_ingredients=10,
        max_batches=5,
        features={"inventory": True, "recipes": True, "batches": True},
    ),
    PlanDefinition(
        id="starter-plan",
        name="Starter",
        description="Perfect for small craft breweries",
        price=Decimal("29.99"),
        interval=PlanInterval.MONTHLY,
        max_users=5,
        max_ingredients=100,
        max_batches=50,
        features={
            "inventory": True,
            "recipes": True,
            "batches": True,
            "basicReports": True,
            "emailSupport": True,
        },
    ),
    PlanDefinition(
        id="professional-plan",
        name="Professional",
        description="For growing breweries with advanced needs",
        price=Decimal("79.99"),
        interval=PlanInterval.MONTHLY,
        max_users=20,
        max_ingredients=500,
        max_batches=200,
        features={
            "inventory": True,
            "recipes": True,
            "batches": True,
            "basicReports": True,
            "advancedReports": True,
            "analytics": True,
            "qrScanning": True,
        },
    ),
    PlanDefinition(
        id="enterprise-plan",
        name="Enterprise",
        description="For large breweries with unlimited needs",
        price=Decimal("199.99"),
        interval=PlanInterval.MONTHLY,
        max_users=None,
        max_ingredients=None,
        max_batches=None,
        features={
            "inventory": True,
            "recipes": True,
            "batches": True,
            "advancedReports": True,
            "analytics": True,
            "multiLocation": True,
            "sla": True,
        },
    ),
]


def cycle_price(
    price: Decimal,
    interval: PlanInterval,
    billing_cycle: PlanInterval,
    yearly_discount: Decimal,
) -> Decimal | None:
    """Price of one ``billing_cycle`` of a plan billed per ``interval``.

    A monthly plan bought yearly costs twelve months less the yearly
    discount. A yearly plan cannot be bought monthly (returns None).
    """
    if interval is billing_cycle:
        return Decimal(price)
    if interval is PlanInterval.MONTHLY and billing_cycle is PlanInterval.YEARLY:
        yearly = Decimal(price) * 12 * (Decimal(1) - Decimal(yearly_discount))
        return yearly.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return None


def gateway_amount(amount: Decimal) -> int:
    """Whole currency units sent to the gateway (IDR has no minor unit)."""
    return int(Decimal(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))
