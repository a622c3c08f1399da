"""
Shared billing value helpers: UTC timestamps, billing periods, money rounding.
"""

import calendar
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Literal, Optional

BillingPeriod = Literal["monthly", "annual"]
BILLING_PERIODS = ("monthly", "annual")

CENTS = Decimal("0.01")


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_period(value: datetime, billing_period: str) -> datetime:
    if billing_period == "monthly":
        return add_months(value, 1)
    if billing_period == "annual":
        return add_months(value, 12)
    raise ValueError(f"Unknown billing period: {billing_period}")


def first_of_next_month(value: datetime) -> datetime:
    start = value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return add_months(start, 1)


def to_cents(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def grace_deadline(period_end: Optional[datetime], now: datetime, grace_days: int) -> datetime:
    base = max(period_end, now) if period_end else now
    return base + timedelta(days=grace_days)
