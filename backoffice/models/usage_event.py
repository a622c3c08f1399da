"""
backoffice/models/usage_event.py

Usage models for feature metering.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """One metered use of a feature, appended to the usage event log."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    feature_key: str
    quantity: int = 1
    occurred_at: datetime


class FeatureUsageRecord(BaseModel):
    """
    Derived usage counter for a (user, feature) pair.

    Cache only: losing it never grants access the plan does not give.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    feature_key: str
    current_usage: int
    limit: Optional[int] = None
    period_start: datetime
    reset_at: datetime
