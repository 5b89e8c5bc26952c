"""Subscription scheduler worker.

Usage:
    python -m billing_engine.workers.scheduler_worker --once
    python -m billing_engine.workers.scheduler_worker

Environment:
- SCHEDULER_INTERVAL_SECONDS (default 300)
- SCHEDULER_BATCH_LIMIT (default 500)
- DATABASE_URL (unset: in-memory stores, useful only with --once in dev)
"""
from __future__ import annotations

import argparse
import logging
import time

from billing_engine.core.config import settings
from billing_engine.core.errors import PersistenceUnavailableError
from billing_engine.core.logging import configure_logging
from billing_engine.features.subscriptions.scheduler import scan_due
from billing_engine.main import build_service

logger = logging.getLogger("billing_engine.workers.scheduler")


def main() -> None:
    parser = argparse.ArgumentParser(description="Subscription due-transition scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    parser.add_argument("--limit", type=int, default=settings.SCHEDULER_BATCH_LIMIT, help="Subscriptions per scan")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.SCHEDULER_INTERVAL_SECONDS,
        help="Seconds to sleep between scans",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV)
    service = build_service()

    if args.once:
        report = scan_due(service, limit=args.limit)
        print(f"[scheduler] {report.as_dict()}")
        return

    print(f"[scheduler] Starting loop (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop.")
    try:
        while True:
            try:
                report = scan_due(service, limit=args.limit)
                if report.total_dispatched:
                    print(f"[scheduler] Dispatched {report.total_dispatched} transitions")
            except PersistenceUnavailableError as e:
                logger.error("scheduler.persistence_unavailable", extra={"error_code": e.code, "error": e.message})
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[scheduler] Stopped")


if __name__ == "__main__":
    main()
