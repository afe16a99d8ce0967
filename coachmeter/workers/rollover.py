"""Scheduled period rollover worker.

Usage:
    python -m coachmeter.workers.rollover --once
    python -m coachmeter.workers.rollover --loop
    python -m coachmeter.workers.rollover --once --now 2026-03-01T00:00:00Z

Environment flags:
- ROLLOVER_INTERVAL_SECONDS (default 3600)
"""
from __future__ import annotations

import argparse
import time
from datetime import datetime
from typing import Optional

from coachmeter.core.clock import parse_now, utc_now
from coachmeter.core.config import settings
from coachmeter.core.database import init_engine
from coachmeter.core.logging import configure_logging, log_event
from coachmeter.features.periods.service import advance_expired_periods
from coachmeter.models.usage import RolloverReport


def run_rollover_job(now: Optional[datetime] = None) -> RolloverReport:
    """One rollover pass; `now` defaults to the wall clock."""
    report = advance_expired_periods(now or utc_now())
    level = "warning" if report.failed_ids else "info"
    log_event(
        level,
        "[rollover-worker] pass complete",
        event_type="rollover",
        extra={"count": report.count, "failed": len(report.failed_ids)},
        logger_name="coachmeter.workers.rollover",
    )
    return report


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Coaching period rollover worker")
    parser.add_argument("--once", action="store_true", help="Run a single rollover pass and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--now", default=None, help="ISO timestamp to roll over against (with --once)")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.ROLLOVER_INTERVAL_SECONDS,
        help="Seconds to sleep between passes (when --loop)",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    init_engine()

    if args.once or not args.loop:
        report = run_rollover_job(parse_now(args.now))
        print(f"[rollover-worker] Advanced: {report.count}, failed: {len(report.failed_ids)}")
        return

    print(f"[rollover-worker] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            report = run_rollover_job()
            if report.count:
                print(f"[rollover-worker] Advanced {report.count} periods")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[rollover-worker] Stopped")


if __name__ == "__main__":
    main()
