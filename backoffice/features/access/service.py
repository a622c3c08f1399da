"""
backoffice/features/access/service.py

Feature control service.

Handles:
- Plan-based feature access checks (entitlement from the subscription's plan)
- Soft usage limits via the usage meter
- Upgrade suggestions (cheapest active plan that would allow the feature)
- Per-user entitlement cache, invalidated by lifecycle listeners
"""

from dataclasses import asdict, dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from backoffice.core.config import settings
from backoffice.features.plans.service import PlanCatalog
from backoffice.features.usage.service import UsageMeter
from backoffice.models.plan import FeatureEntitlement, Plan
from backoffice.models.subscription import Subscription
from backoffice.models.usage_event import FeatureUsageRecord

logger = logging.getLogger("backoffice")

REASON_NO_SUBSCRIPTION = "No active subscription"
REASON_PLAN_MISSING = "Plan not found"
REASON_NOT_IN_PLAN = "Feature not included in current plan"
REASON_LIMIT_EXCEEDED = "Feature usage limit exceeded"


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    reason: Optional[str] = None
    limit: Optional[int] = None
    current_usage: Optional[int] = None
    upgrade_required: bool = False
    suggested_plan: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FeatureControlService:
    def __init__(
        self,
        *,
        catalog: PlanCatalog,
        current_subscription: Callable[[str], Optional[Subscription]],
        usage: UsageMeter,
        cache_ttl_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
        max_cached_users: int = 10_000,
    ):
        self.catalog = catalog
        self._current_subscription = current_subscription
        self.usage = usage
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else settings.ENTITLEMENT_CACHE_TTL_SECONDS
        )
        self._monotonic = monotonic
        self.max_cached_users = max_cached_users
        self._cache: Dict[str, Tuple[float, Optional[Plan], bool]] = {}
        self._lock = threading.Lock()

    # Entitlement cache ---------------------------------------------------

    def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)

    def _entitled_plan(self, user_id: str) -> Tuple[Optional[Plan], bool]:
        """(plan, has_entitled_subscription) for the user, cached for the TTL."""
        now = self._monotonic()
        with self._lock:
            cached = self._cache.get(user_id)
            if cached and cached[0] > now:
                return cached[1], cached[2]

        subscription = self._current_subscription(user_id)
        entitled = bool(subscription and subscription.is_entitled)
        plan = self.catalog.get_plan(subscription.plan_id) if entitled else None

        with self._lock:
            self._cache.pop(user_id, None)
            if len(self._cache) >= self.max_cached_users:
                self._evict(now)
            self._cache[user_id] = (now + self.cache_ttl_seconds, plan, entitled)
        return plan, entitled

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the oldest ones, until there is room for one more."""
        for user_id in [u for u, entry in self._cache.items() if entry[0] <= now]:
            del self._cache[user_id]
        while self._cache and len(self._cache) >= self.max_cached_users:
            self._cache.pop(next(iter(self._cache)))

    # Access --------------------------------------------------------------

    def check_access(self, user_id: str, feature: str) -> AccessDecision:
        plan, entitled = self._entitled_plan(user_id)
        if not entitled:
            return AccessDecision(
                has_access=False,
                reason=REASON_NO_SUBSCRIPTION,
                upgrade_required=True,
                suggested_plan=self.suggest_plan(feature),
            )
        if plan is None:
            return AccessDecision(has_access=False, reason=REASON_PLAN_MISSING)

        entitlement = plan.feature(feature)
        if entitlement is None or not entitlement.enabled:
            return AccessDecision(
                has_access=False,
                reason=REASON_NOT_IN_PLAN,
                upgrade_required=True,
                suggested_plan=self.suggest_plan(feature),
            )

        if entitlement.unbounded:
            return AccessDecision(has_access=True, limit=None)

        current_usage = self.usage.current_usage(user_id, feature)
        if current_usage >= entitlement.limit:
            logger.info(
                "[access] limit reached",
                extra={"user_id": user_id, "feature": feature, "limit": entitlement.limit, "usage": current_usage},
            )
            return AccessDecision(
                has_access=False,
                reason=REASON_LIMIT_EXCEEDED,
                limit=entitlement.limit,
                current_usage=current_usage,
                upgrade_required=True,
                suggested_plan=self.suggest_plan(feature, exceeded_limit=entitlement.limit),
            )
        return AccessDecision(has_access=True, limit=entitlement.limit, current_usage=current_usage)

    def suggest_plan(self, feature: str, exceeded_limit: Optional[int] = None) -> Optional[str]:
        """Cheapest active plan enabling the feature, with a higher limit when one was exceeded."""
        candidates = sorted(self.catalog.list_plans(active_only=True), key=lambda p: (p.price_monthly, p.sort_order))
        for plan in candidates:
            entitlement = plan.feature(feature)
            if not entitlement or not entitlement.enabled:
                continue
            if exceeded_limit is None or entitlement.unbounded or entitlement.limit > exceeded_limit:
                return plan.plan_id
        return None

    # Usage ---------------------------------------------------------------

    def track_usage(self, user_id: str, feature: str, increment: int = 1) -> FeatureUsageRecord:
        plan, _ = self._entitled_plan(user_id)
        entitlement = plan.feature(feature) if plan else None
        return self.usage.record(user_id, feature, increment, limit=entitlement.limit if entitlement else None)

    def get_available_features(self, user_id: str) -> Dict[str, FeatureEntitlement]:
        plan, entitled = self._entitled_plan(user_id)
        if not entitled or plan is None:
            return {}
        return {key: value for key, value in plan.features.items() if value.enabled}

    def get_usage_stats(self, user_id: str) -> Dict[str, FeatureUsageRecord]:
        return {
            key: self.usage.snapshot(user_id, key, limit=entitlement.limit)
            for key, entitlement in self.get_available_features(user_id).items()
        }

    def reset_usage(self, user_id: str, feature: Optional[str] = None) -> int:
        return self.usage.reset(user_id, feature)

    def get_feature_comparison(self) -> Dict[str, Any]:
        return self.catalog.get_feature_comparison()
