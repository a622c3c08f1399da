"""
Subscription notifications.

Email delivery is handled outside the billing core; the default notifier
records the notification in the log.
"""

import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger("backoffice")

PAYMENT_REQUIRED = "payment_required"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_ACTIVATED = "subscription_activated"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
SUBSCRIPTION_EXPIRED = "subscription_expired"


class SubscriptionNotifier(Protocol):
    def notify(self, kind: str, user_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        ...


class LoggingNotifier:
    def notify(self, kind: str, user_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        logger.info(
            f"[notify] {kind}",
            extra={"user_id": user_id, "notification": kind, "details": details or {}},
        )
