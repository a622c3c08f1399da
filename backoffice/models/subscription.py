"""
backoffice/models/subscription.py

Subscription model and its status vocabulary.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict

from backoffice.core.database import OPEN_SUBSCRIPTION_STATUSES

PENDING_PAYMENT = "pending_payment"
TRIALING = "trialing"
ACTIVE = "active"
PAST_DUE = "past_due"
CANCELLED = "cancelled"
EXPIRED = "expired"

OPEN_STATUSES = frozenset(OPEN_SUBSCRIPTION_STATUSES)
TERMINAL_STATUSES = frozenset({CANCELLED, EXPIRED})
# Statuses whose plan entitlements are honoured (past_due = grace period)
ENTITLED_STATUSES = frozenset({ACTIVE, TRIALING, PAST_DUE})


class Subscription(BaseModel):
    """
    A user's instance of a plan over a billing period.

    Mutated only through the lifecycle manager; every update bumps version.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    billing_period: str
    status: str
    unit_price: Decimal
    currency: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    grace_until: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    # Billing period requested for the next renewal; the current window keeps billing_period
    pending_billing_period: Optional[str] = None
    transaction_id: Optional[str] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in (ACTIVE, TRIALING)

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES
