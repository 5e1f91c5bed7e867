"""
Payout recovery worker.

Finds withdrawals left in transfer_initiated, transfer_confirmed or debited
by a crash or a Stripe outage and rolls them forward. Every payout step is
idempotent, so resuming is safe even if the original run is still alive.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from core.ledger import LedgerError
from core.payouts import PayoutError, PayoutService
from database.connection import get_session_factory
from monitoring.logging import setup_logging
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def recover_stuck_withdrawals(
    payout_service: Optional[PayoutService] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    stale_after_seconds: Optional[int] = None,
) -> Dict[str, int]:
    """
    Resume every stale in-flight withdrawal once.

    Returns:
        Dict[str, int]: Counts of found, completed and still failing withdrawals
    """
    settings = get_settings()
    payout_service = payout_service or PayoutService()
    session_factory = session_factory or get_session_factory()
    if stale_after_seconds is None:
        stale_after_seconds = settings.payout_stale_after_seconds

    async with session_factory() as db:
        stale_ids = await payout_service.find_stale_withdrawals(db, stale_after_seconds)

    summary = {"found": len(stale_ids), "completed": 0, "failed": 0}
    if not stale_ids:
        return summary

    logger.info("payout_recovery_found_stale", count=len(stale_ids))
    metrics.record_payouts_resumed(len(stale_ids))

    for withdrawal_id in stale_ids:
        # Fresh session per withdrawal so one failure cannot poison the rest.
        async with session_factory() as db:
            try:
                result = await payout_service.resume_withdrawal(db, withdrawal_id)
            except (PayoutError, LedgerError) as e:
                summary["failed"] += 1
                logger.warning(
                    "payout_recovery_attempt_failed",
                    withdrawal_id=str(withdrawal_id),
                    error=str(e),
                )
                continue
        if result["success"]:
            summary["completed"] += 1

    logger.info("payout_recovery_pass_finished", **summary)
    return summary


async def start_payout_recovery_worker(interval_seconds: Optional[int] = None) -> None:
    """Run recovery passes on a fixed interval until SIGINT or SIGTERM."""
    setup_logging()
    if interval_seconds is None:
        interval_seconds = get_settings().payout_recovery_interval_seconds

    logger.info("payout_recovery_worker_starting", interval_seconds=interval_seconds)

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payout_recovery_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    payout_service = PayoutService()
    try:
        while not stop.is_set():
            try:
                await recover_stuck_withdrawals(payout_service)
            except Exception as e:
                logger.error("payout_recovery_pass_error", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        logger.info("payout_recovery_worker_stopped")


def main() -> None:
    asyncio.run(start_payout_recovery_worker())


if __name__ == "__main__":
    main()
