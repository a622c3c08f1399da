"""
Proration for mid-cycle plan or billing-period changes.

Pure: the result depends only on the arguments.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from backoffice.core.errors import ValidationError
from backoffice.models.billing import BILLING_PERIODS, ensure_utc, to_cents

_SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class ProrationResult:
    is_upgrade: bool
    remaining_fraction: Decimal
    days_remaining: int
    credit_amount: Decimal  # unused value of the current plan, unrounded
    charge_amount: Decimal  # cost of the new plan for the remaining time, unrounded
    net_amount: Decimal  # charge - credit, rounded to cents

    def to_dict(self) -> dict:
        return {
            "is_upgrade": self.is_upgrade,
            "remaining_fraction": str(self.remaining_fraction),
            "days_remaining": self.days_remaining,
            "credit_amount": str(self.credit_amount),
            "charge_amount": str(self.charge_amount),
            "net_amount": str(self.net_amount),
        }


def calculate_proration(
    current_plan_price: Decimal,
    new_plan_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    current_date: datetime,
    billing_period: str,
) -> ProrationResult:
    """
    Compute the credit and charge for switching plans at current_date.

    remaining_fraction = (period_end - current_date) / (period_end - period_start),
    clamped to [0, 1]. Both prices must be for the same billing_period.
    """
    if billing_period not in BILLING_PERIODS:
        raise ValidationError(f"Unknown billing period: {billing_period}")

    current_price = Decimal(current_plan_price)
    new_price = Decimal(new_plan_price)
    if current_price < 0 or new_price < 0:
        raise ValidationError("Plan prices must be non-negative")

    start = ensure_utc(period_start)
    end = ensure_utc(period_end)
    now = ensure_utc(current_date)
    if end <= start:
        raise ValidationError("period_end must be after period_start")

    total_seconds = Decimal(str((end - start).total_seconds()))
    remaining_seconds = Decimal(str((end - now).total_seconds()))
    fraction = remaining_seconds / total_seconds
    fraction = max(Decimal(0), min(Decimal(1), fraction))

    credit = current_price * fraction
    charge = new_price * fraction
    days_remaining = int(max(Decimal(0), remaining_seconds) / _SECONDS_PER_DAY)

    return ProrationResult(
        is_upgrade=new_price > current_price,
        remaining_fraction=fraction,
        days_remaining=days_remaining,
        credit_amount=credit,
        charge_amount=charge,
        net_amount=to_cents(charge - credit),
    )
