"""
Scheduled subscription sweeps.

Each run records a job_runs row with its stats. Every step goes through the
lifecycle manager's conditional transitions, so overlapping runs are safe:
the loser of a race counts a conflict and moves on.
"""
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from sqlalchemy import insert

from backoffice.core.config import settings
from backoffice.core.database import SessionScope, get_db_session, job_runs
from backoffice.core.errors import ConflictError, GatewayError, StateError
from backoffice.features.subscriptions.lifecycle import SubscriptionLifecycle
from backoffice.models.billing import utc_now
from backoffice.models.subscription import ACTIVE, PAST_DUE, TRIALING

logger = logging.getLogger("backoffice")

JOB_NAME = "subscriptions.sweep"


def run_sweeps(
    lifecycle: SubscriptionLifecycle,
    now: Optional[datetime] = None,
    sessions: SessionScope = get_db_session,
) -> Dict[str, Any]:
    """
    Run all subscription sweeps once.

    Order matters: stale checkouts first, then period-end cancellations,
    unpaid period ends, renewals, and finally grace-period expiry.
    """
    now = now or lifecycle.clock()
    started_at = utc_now()
    stats: Dict[str, Any] = {
        "subscriptions_expired": 0,
        "transactions_failed": 0,
        "cancelled_at_period_end": 0,
        "marked_past_due": 0,
        "renewals_started": 0,
        "renewal_failures": 0,
        "grace_expired": 0,
        "conflicts": 0,
    }

    try:
        stale = lifecycle.expire_stale_pending(now - timedelta(hours=settings.PENDING_CHECKOUT_TTL_HOURS))
        stats["subscriptions_expired"] = stale["subscriptions_expired"]
        stats["transactions_failed"] = stale["transactions_failed"]

        ending = lifecycle.find_subscriptions([ACTIVE, TRIALING], period_end_before=now, cancel_at_period_end=True)
        for subscription in ending:
            if _attempt(stats, lifecycle.complete_scheduled_cancellation, subscription):
                stats["cancelled_at_period_end"] += 1

        unpaid = lifecycle.find_subscriptions([ACTIVE, TRIALING], period_end_before=now, cancel_at_period_end=False)
        for subscription in unpaid:
            if _attempt(stats, lifecycle.mark_past_due, subscription):
                stats["marked_past_due"] += 1

        window_end = now + timedelta(days=settings.RENEWAL_WINDOW_DAYS)
        due = lifecycle.find_subscriptions(
            [ACTIVE, TRIALING, PAST_DUE], period_end_before=window_end, cancel_at_period_end=False
        )
        for subscription in due:
            if subscription.status == PAST_DUE and subscription.grace_until and subscription.grace_until <= now:
                continue
            try:
                lifecycle.renew(subscription.id)
                stats["renewals_started"] += 1
            except GatewayError:
                stats["renewal_failures"] += 1
            except (ConflictError, StateError):
                stats["conflicts"] += 1

        lapsed = lifecycle.find_subscriptions([PAST_DUE], grace_before=now)
        for subscription in lapsed:
            if _attempt(stats, lifecycle.expire, subscription, "grace_period_ended"):
                stats["grace_expired"] += 1
    except Exception as e:
        _record_run(sessions, started_at, "failed", stats, error=str(e))
        logger.exception("[sweeps] run failed", extra={"stats": stats})
        raise

    _record_run(sessions, started_at, "success", stats)
    logger.info("[sweeps] run complete", extra={"stats": stats})
    return {**stats, "timestamp": now.isoformat()}


def _attempt(stats: Dict[str, Any], fn, *args) -> bool:
    try:
        fn(*args)
        return True
    except ConflictError:
        stats["conflicts"] += 1
        return False


def _record_run(sessions: SessionScope, started_at: datetime, status: str, stats: Dict[str, Any], error: Optional[str] = None) -> None:
    with sessions() as session:
        session.execute(
            insert(job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=utc_now(),
                status=status,
                stats_json=dict(stats),
                error=error,
            )
        )
