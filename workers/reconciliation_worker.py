"""
Reconciliation background worker.

Runs the ledger and transfer reconciliation once a day at the configured
UTC hour.
"""
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from config import get_settings
from core.reconciliation import ReconciliationEngine
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(engine: Optional[ReconciliationEngine] = None) -> dict:
    """Reconcile yesterday and log a warning when anything disagrees."""
    logger.info("daily_reconciliation_started")
    engine = engine or ReconciliationEngine()

    result = await engine.reconcile_yesterday()

    logger.info(
        "daily_reconciliation_completed",
        date=result["date"],
        discrepancy_cents=result["discrepancy_cents"],
        discrepancy_count=result["discrepancy_count"],
        ledger_drift_count=result["ledger_drift_count"],
    )
    if result["discrepancy_count"] > 0:
        logger.warning(
            "reconciliation_discrepancies_detected",
            date=result["date"],
            discrepancy_cents=result["discrepancy_cents"],
            discrepancy_count=result["discrepancy_count"],
            ledger_drift_count=result["ledger_drift_count"],
        )
    return result


def seconds_until_next_run(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Seconds from now until the next occurrence of target_hour:00 UTC.

    Args:
        target_hour: Hour of day to run (24-hour format)
        now: Current time, for tests
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def start_reconciliation_worker(target_hour: Optional[int] = None) -> None:
    """Run reconciliation daily until SIGINT or SIGTERM."""
    setup_logging()
    if target_hour is None:
        target_hour = get_settings().reconciliation_hour

    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    engine = ReconciliationEngine()
    try:
        while running:
            remaining = seconds_until_next_run(target_hour)
            logger.info("reconciliation_next_run_scheduled", seconds_until=remaining)

            # Sleep in short slices so a shutdown signal is noticed promptly.
            while remaining > 0 and running:
                sleep_time = min(remaining, 60)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(engine)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day (UTC) to run reconciliation"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
