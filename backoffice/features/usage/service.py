"""
Usage metering.

Counters are a cache keyed by (user_id, feature_key). Each counter's period
starts at its first use and resets on the first day of the following month.
A cache miss rebuilds the counter from the usage event log, so losing the
cache never lowers a user's recorded usage.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import func, insert, select

from backoffice.core.database import SessionScope, get_db_session, usage_events
from backoffice.core.errors import ValidationError
from backoffice.models.billing import ensure_utc, first_of_next_month, utc_now
from backoffice.models.usage_event import FeatureUsageRecord, UsageEvent

logger = logging.getLogger("backoffice")


class UsageEventLog(Protocol):
    def append(self, event: UsageEvent) -> None:
        ...

    def totals_since(self, user_id: str, feature_key: str, since: datetime) -> Tuple[int, Optional[datetime]]:
        """Sum of quantities and earliest occurrence at or after since."""
        ...

    def feature_keys_since(self, user_id: str, since: datetime) -> List[str]:
        ...


class SqlUsageEventLog:
    def __init__(self, sessions: SessionScope = get_db_session):
        self._sessions = sessions

    def append(self, event: UsageEvent) -> None:
        with self._sessions() as session:
            session.execute(insert(usage_events).values(**event.model_dump()))

    def totals_since(self, user_id: str, feature_key: str, since: datetime) -> Tuple[int, Optional[datetime]]:
        with self._sessions() as session:
            row = session.execute(
                select(func.coalesce(func.sum(usage_events.c.quantity), 0), func.min(usage_events.c.occurred_at))
                .where(usage_events.c.user_id == user_id)
                .where(usage_events.c.feature_key == feature_key)
                .where(usage_events.c.occurred_at >= since)
            ).first()
        return int(row[0] or 0), ensure_utc(row[1])

    def feature_keys_since(self, user_id: str, since: datetime) -> List[str]:
        with self._sessions() as session:
            rows = session.execute(
                select(usage_events.c.feature_key)
                .where(usage_events.c.user_id == user_id)
                .where(usage_events.c.occurred_at >= since)
                .distinct()
            ).all()
        return [r.feature_key for r in rows]


@dataclass
class _Counter:
    usage: int
    period_start: datetime
    reset_at: datetime


def _month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UsageMeter:
    def __init__(
        self,
        event_log: Optional[UsageEventLog] = None,
        clock: Callable[[], datetime] = utc_now,
        max_counters: int = 50_000,
    ):
        self.event_log = event_log
        self.clock = clock
        self.max_counters = max_counters
        self._counters: Dict[Tuple[str, str], _Counter] = {}
        self._lock = threading.Lock()

    def _load(self, user_id: str, feature_key: str, now: datetime) -> _Counter:
        """Cached counter for the current period, rebuilding or rolling it over as needed."""
        key = (user_id, feature_key)
        counter = self._counters.get(key)
        if counter is not None and now < counter.reset_at:
            self._remember(key, counter, now)
            return counter

        usage, first_use = 0, None
        if self.event_log is not None and counter is None:
            # Periods always end on a month boundary, so the current one began this month
            usage, first_use = self.event_log.totals_since(user_id, feature_key, _month_start(now))
        period_start = first_use or now
        counter = _Counter(usage=max(usage, 0), period_start=period_start, reset_at=first_of_next_month(period_start))
        self._remember(key, counter, now)
        return counter

    def _remember(self, key: Tuple[str, str], counter: _Counter, now: datetime) -> None:
        """Store counter as the most recently used entry, evicting when over max_counters."""
        self._counters.pop(key, None)
        self._counters[key] = counter
        if len(self._counters) <= self.max_counters:
            return
        for stale in [k for k, c in self._counters.items() if c.reset_at <= now]:
            del self._counters[stale]
        if self.event_log is None:
            # Without the event log a live counter is the only record of its usage
            return
        while len(self._counters) > self.max_counters:
            self._counters.pop(next(iter(self._counters)))

    def current_usage(self, user_id: str, feature_key: str) -> int:
        with self._lock:
            return self._load(user_id, feature_key, self.clock()).usage

    def record(self, user_id: str, feature_key: str, increment: int = 1, limit: Optional[int] = None) -> FeatureUsageRecord:
        if increment < 1:
            raise ValidationError("increment must be a positive integer")
        now = self.clock()
        with self._lock:
            counter = self._load(user_id, feature_key, now)
            if self.event_log is not None:
                self.event_log.append(
                    UsageEvent(user_id=user_id, feature_key=feature_key, quantity=increment, occurred_at=now)
                )
            counter.usage += increment
            return self._record(user_id, feature_key, counter, limit)

    def snapshot(self, user_id: str, feature_key: str, limit: Optional[int] = None) -> FeatureUsageRecord:
        with self._lock:
            counter = self._load(user_id, feature_key, self.clock())
            return self._record(user_id, feature_key, counter, limit)

    def reset(self, user_id: str, feature_key: Optional[str] = None) -> int:
        """
        Zero counters for a user (one feature, or every feature used this period).

        The event log gets a compensating entry so a rebuild agrees.
        Returns the number of counters reset.
        """
        now = self.clock()
        with self._lock:
            if feature_key:
                keys = [(user_id, feature_key)]
            else:
                cached = {k for k in self._counters if k[0] == user_id}
                if self.event_log is not None:
                    cached.update((user_id, f) for f in self.event_log.feature_keys_since(user_id, _month_start(now)))
                keys = sorted(cached)

            for key in keys:
                counter = self._load(key[0], key[1], now)
                if counter.usage and self.event_log is not None:
                    self.event_log.append(
                        UsageEvent(user_id=key[0], feature_key=key[1], quantity=-counter.usage, occurred_at=now)
                    )
                self._remember(key, _Counter(usage=0, period_start=now, reset_at=first_of_next_month(now)), now)

        logger.info("[usage] reset", extra={"user_id": user_id, "feature": feature_key, "counters": len(keys)})
        return len(keys)

    def clear_cache(self) -> None:
        with self._lock:
            self._counters.clear()

    @staticmethod
    def _record(user_id: str, feature_key: str, counter: _Counter, limit: Optional[int]) -> FeatureUsageRecord:
        return FeatureUsageRecord(
            user_id=user_id,
            feature_key=feature_key,
            current_usage=counter.usage,
            limit=limit,
            period_start=counter.period_start,
            reset_at=counter.reset_at,
        )
