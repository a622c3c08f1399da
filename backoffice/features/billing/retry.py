"""
Bounded retry for outbound gateway calls.

Only transient failures are retried: timeouts, transport errors, HTTP 429
and 5xx. Everything else surfaces on the first attempt.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx

from backoffice.core.config import settings
from backoffice.core.errors import GatewayError

logger = logging.getLogger("backoffice")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    @classmethod
    def from_settings(cls, cfg=None) -> "RetryPolicy":
        cfg = cfg or settings
        return cls(
            max_attempts=max(1, int(cfg.GATEWAY_MAX_ATTEMPTS)),
            base_delay_seconds=float(cfg.GATEWAY_BACKOFF_BASE_SECONDS),
            max_delay_seconds=float(cfg.GATEWAY_BACKOFF_MAX_SECONDS),
        )


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped."""
    delay = policy.base_delay_seconds * (2 ** max(0, attempt - 1))
    return min(delay, policy.max_delay_seconds)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, GatewayError):
        return exc.transient
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def call_with_retry(
    fn: Callable[[], T],
    *,
    operation: str,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run fn, retrying transient failures up to policy.max_attempts.

    The last transient failure is re-raised as GatewayError(transient=True).
    """
    policy = policy or RetryPolicy.from_settings()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "[gateway] retries exhausted",
                    extra={"operation": operation, "attempts": attempt, "error": str(exc)},
                )
                if isinstance(exc, GatewayError):
                    raise
                raise GatewayError(f"{operation} failed after {attempt} attempts: {exc}", transient=True) from exc
            delay = compute_backoff(attempt, policy)
            logger.info(
                "[gateway] transient failure, retrying",
                extra={"operation": operation, "attempt": attempt, "delay_seconds": delay},
            )
            sleep(delay)
