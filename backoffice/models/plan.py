"""
backoffice/models/plan.py

Plan model: a purchasable tier with prices per billing period and a feature
entitlement map.
"""

from decimal import Decimal
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, field_validator

from backoffice.models.billing import BILLING_PERIODS


class FeatureEntitlement(BaseModel):
    """
    A plan's declaration that a feature is enabled, optionally capped.

    limit=None means unbounded. Seed data and admin input may use -1 for
    "unlimited"; it is normalized to None. A limit of 0 is a real zero limit.
    """
    model_config = ConfigDict(frozen=True)

    enabled: bool
    limit: Optional[int] = None
    description: Optional[str] = None

    @field_validator("limit")
    @classmethod
    def _normalize_limit(cls, value: Optional[int]) -> Optional[int]:
        if value is None or value == -1:
            return None
        if value < 0:
            raise ValueError("limit must be >= 0, -1 or null")
        return value

    @property
    def unbounded(self) -> bool:
        return self.limit is None


class Plan(BaseModel):
    """
    Plan represents a purchasable tier.

    Prices are per billing period in the plan's currency. Once a live
    subscription references a plan, its prices and features are frozen.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: Optional[str] = None
    price_monthly: Decimal
    price_annual: Decimal
    currency: str
    trial_days: int = 0
    is_active: bool = True
    sort_order: int = 0
    features: Dict[str, FeatureEntitlement] = {}

    @field_validator("price_monthly", "price_annual")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("price must be >= 0")
        return value

    @field_validator("currency")
    @classmethod
    def _currency_code(cls, value: str) -> str:
        if len(value) != 3:
            raise ValueError("currency must be a 3-letter code")
        return value.upper()

    def price_for(self, billing_period: str) -> Decimal:
        if billing_period not in BILLING_PERIODS:
            raise ValueError(f"Unknown billing period: {billing_period}")
        return self.price_monthly if billing_period == "monthly" else self.price_annual

    def feature(self, key: str) -> Optional[FeatureEntitlement]:
        return self.features.get(key)
