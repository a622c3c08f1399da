"""Subscription sweep worker.

Usage:
    python -m backoffice.workers.subscription_sweeper --once
    python -m backoffice.workers.subscription_sweeper --loop

Environment flags:
- BACKOFFICE_SWEEP_LOOP_SECONDS (default 300)
- PENDING_CHECKOUT_TTL_HOURS, RENEWAL_WINDOW_DAYS, GRACE_PERIOD_DAYS (see core.config)
"""
from __future__ import annotations

import argparse
import os
import time

from backoffice.api.deps import get_services
from backoffice.core.config import settings
from backoffice.core.logging import configure_logging
from backoffice.features.subscriptions.jobs import run_sweeps


DEFAULT_LOOP_SECONDS = int(os.getenv("BACKOFFICE_SWEEP_LOOP_SECONDS", "300") or 300)


def _sweep_once() -> dict:
    services = get_services()
    return run_sweeps(services.lifecycle, sessions=services.sessions)


def main() -> None:
    parser = argparse.ArgumentParser(description="Subscription sweep worker")
    parser.add_argument("--once", action="store_true", help="Run all sweeps once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between runs (when --loop)",
    )
    args = parser.parse_args()
    configure_logging(settings.ENV, settings.LOG_LEVEL)

    if args.once:
        stats = _sweep_once()
        print(f"[sweeper] {stats}")
        return

    # Default to loop mode when not explicitly once
    print(f"[sweeper] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            stats = _sweep_once()
            print(f"[sweeper] {stats}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[sweeper] Stopped")


if __name__ == "__main__":
    main()
