"""Proration arithmetic for mid-period plan changes."""

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")
_SECONDS_PER_DAY = 24 * 60 * 60


def _ceil_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / _SECONDS_PER_DAY)


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Proration:
    """Result of :func:`calculate_proration`.

    ``net_amount`` > 0 means the tenant owes that much now; otherwise
    ``credit_amount`` is carried to the next cycle.
    """

    total_days_in_period: int
    remaining_days: int
    used_days: int
    current_plan_price: Decimal
    new_plan_price: Decimal
    unused_amount: Decimal
    new_plan_prorated: Decimal
    net_amount: Decimal

    @property
    def requires_payment(self) -> bool:
        return self.net_amount > 0

    @property
    def credit_amount(self) -> Decimal:
        return -self.net_amount if self.net_amount < 0 else Decimal("0.00")

    def as_dict(self) -> dict[str, int | str]:
        """JSON-safe form stored in transaction metadata."""
        return {key: value if isinstance(value, int) else str(value) for key, value in asdict(self).items()}


def calculate_proration(
    current_plan_price: Decimal,
    new_plan_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> Proration:
    """Compute unused credit, prorated new-plan cost and the net difference.

    Day counts are rounded up. ``remaining_days`` is clamped to the period,
    and a degenerate period counts as one day. Money values are computed at
    full precision and rounded half-up to cents only at the end, so swapping
    the two prices negates ``net_amount`` exactly.
    """
    current_plan_price = Decimal(current_plan_price)
    new_plan_price = Decimal(new_plan_price)

    total_days = max(_ceil_days(period_start, period_end), 1)
    remaining_days = min(max(_ceil_days(now, period_end), 0), total_days)

    unused = current_plan_price / total_days * remaining_days
    prorated = new_plan_price / total_days * remaining_days

    return Proration(
        total_days_in_period=total_days,
        remaining_days=remaining_days,
        used_days=total_days - remaining_days,
        current_plan_price=current_plan_price,
        new_plan_price=new_plan_price,
        unused_amount=_money(unused),
        new_plan_prorated=_money(prorated),
        net_amount=_money(prorated - unused),
    )
