"""
Reconciliation of the ledger and of Stripe payouts.

Runs daily to detect:
- Wallets whose balance disagrees with the sum of their ledger entries
- Stripe transfers with no completed withdrawal behind them
- Completed withdrawals with no Stripe transfer
- Amount mismatches between the two
"""
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection import get_session_factory
from database.models import (
    EntryDirection,
    LedgerEntry,
    ReconciliationStatus,
    Wallet,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)
from integrations.stripe_client import StripeClient
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_STORED_DISCREPANCIES = 100

# Statuses in which Stripe has accepted the transfer.
PAID_OUT_STATUSES = (
    WithdrawalStatus.TRANSFER_CONFIRMED.value,
    WithdrawalStatus.DEBITED.value,
    WithdrawalStatus.COMPLETED.value,
)


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


class ReconciliationEngine:
    """Daily consistency checks over wallets, ledger entries and transfers."""

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            stripe_client: Optional Stripe client
            session_factory: Optional session factory (defaults to the app's)
        """
        self.stripe_client = stripe_client or StripeClient()
        self.session_factory = session_factory or get_session_factory()

    @staticmethod
    async def find_ledger_drift(db: AsyncSession) -> List[Dict[str, Any]]:
        """
        Compare every wallet balance with the net of its ledger entries.

        Returns:
            List[Dict[str, Any]]: One ledger_drift item per mismatching wallet
        """
        signed_amount = case(
            (LedgerEntry.direction == EntryDirection.CREDIT.value, LedgerEntry.amount_cents),
            else_=-LedgerEntry.amount_cents,
        )
        entry_totals = (
            select(
                LedgerEntry.user_id.label("user_id"),
                func.sum(signed_amount).label("net_cents"),
            )
            .group_by(LedgerEntry.user_id)
            .subquery()
        )
        result = await db.execute(
            select(
                Wallet.user_id,
                Wallet.balance_cents,
                func.coalesce(entry_totals.c.net_cents, 0),
            ).outerjoin(entry_totals, entry_totals.c.user_id == Wallet.user_id)
        )

        drift = []
        for user_id, balance_cents, net_cents in result.all():
            if int(balance_cents) != int(net_cents):
                drift.append(
                    {
                        "type": "ledger_drift",
                        "user_id": str(user_id),
                        "wallet_balance_cents": int(balance_cents),
                        "ledger_net_cents": int(net_cents),
                    }
                )
        return drift

    async def _fetch_stripe_transfers(
        self, start_timestamp: int, end_timestamp: int
    ) -> Dict[str, int]:
        """Net amount of every unreversed transfer created in the window, by id."""
        transfers: Dict[str, int] = {}
        starting_after = None

        logger.info(
            "fetching_stripe_transfers",
            start_timestamp=start_timestamp,
            end_timestamp=end_timestamp,
        )

        while True:
            try:
                page = await self.stripe_client.list_transfers(
                    limit=100,
                    starting_after=starting_after,
                    created_gte=start_timestamp,
                    created_lte=end_timestamp,
                )
            except Exception as e:
                logger.error("stripe_fetch_error", error=str(e))
                raise ReconciliationError(f"Failed to fetch Stripe data: {str(e)}") from e

            for transfer in page.data:
                net = transfer.amount - (getattr(transfer, "amount_reversed", 0) or 0)
                if net > 0:
                    transfers[transfer.id] = net

            if not page.has_more or not page.data:
                break
            starting_after = page.data[-1].id

        return transfers

    @staticmethod
    async def _paid_out_withdrawals(
        db: AsyncSession, start: datetime, end: datetime, transfer_ids: List[str]
    ) -> Dict[str, Withdrawal]:
        """
        Withdrawals whose transfer belongs to the day.

        A withdrawal counts for the day its transfer was created, even when it
        completed later. Rows without a transfer time fall back to processed_at,
        and any transfer Stripe listed for the day is matched by id.
        """
        in_window = or_(
            and_(Withdrawal.transferred_at >= start, Withdrawal.transferred_at < end),
            and_(
                Withdrawal.transferred_at.is_(None),
                Withdrawal.processed_at >= start,
                Withdrawal.processed_at < end,
            ),
        )
        if transfer_ids:
            in_window = or_(in_window, Withdrawal.stripe_transfer_id.in_(transfer_ids))

        result = await db.execute(
            select(Withdrawal).where(
                Withdrawal.status.in_(PAID_OUT_STATUSES),
                Withdrawal.stripe_transfer_id.isnot(None),
                in_window,
            )
        )
        return {w.stripe_transfer_id: w for w in result.scalars().all()}

    @staticmethod
    def _compare_transfers(
        stripe_transfers: Dict[str, int], withdrawals: Dict[str, Withdrawal]
    ) -> List[Dict[str, Any]]:
        discrepancies: List[Dict[str, Any]] = []
        for transfer_id, stripe_amount in stripe_transfers.items():
            withdrawal = withdrawals.get(transfer_id)
            if withdrawal is None:
                discrepancies.append(
                    {
                        "type": "missing_in_database",
                        "transfer_id": transfer_id,
                        "stripe_amount": stripe_amount,
                    }
                )
            elif withdrawal.amount_cents != stripe_amount:
                discrepancies.append(
                    {
                        "type": "amount_mismatch",
                        "withdrawal_id": str(withdrawal.id),
                        "transfer_id": transfer_id,
                        "database_amount": withdrawal.amount_cents,
                        "stripe_amount": stripe_amount,
                    }
                )
        for transfer_id, withdrawal in withdrawals.items():
            if transfer_id not in stripe_transfers:
                discrepancies.append(
                    {
                        "type": "missing_in_stripe",
                        "withdrawal_id": str(withdrawal.id),
                        "transfer_id": transfer_id,
                        "database_amount": withdrawal.amount_cents,
                    }
                )
        return discrepancies

    @staticmethod
    async def _status_row(db: AsyncSession, day: datetime) -> ReconciliationStatus:
        result = await db.execute(
            select(ReconciliationStatus).where(ReconciliationStatus.reconciliation_date == day)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = ReconciliationStatus(reconciliation_date=day, status="in_progress", started_at=utcnow())
            db.add(row)
        else:
            row.status = "in_progress"
            row.started_at = utcnow()
            row.completed_at = None
        await db.commit()
        return row

    async def reconcile_date(self, reconciliation_date: date) -> Dict[str, Any]:
        """
        Reconcile the ledger and the transfers of one UTC day.

        Args:
            reconciliation_date: Date to reconcile

        Returns:
            Dict[str, Any]: Totals and the discrepancies found

        Raises:
            ReconciliationError: If Stripe or the database could not be read
        """
        started = time.perf_counter()
        log = logger.bind(date=reconciliation_date.isoformat())
        log.info("reconciliation_started")

        start = datetime.combine(reconciliation_date, datetime.min.time(), tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        async with self.session_factory() as db:
            recon_status = await self._status_row(db, start.replace(tzinfo=None))
            status_id = recon_status.id
            try:
                drift = await self.find_ledger_drift(db)
                stripe_transfers = await self._fetch_stripe_transfers(
                    int(start.timestamp()), int(end.timestamp()) - 1
                )
                withdrawals = await self._paid_out_withdrawals(
                    db, start, end, list(stripe_transfers)
                )
                transfer_discrepancies = self._compare_transfers(stripe_transfers, withdrawals)

                database_total = sum(w.amount_cents for w in withdrawals.values())
                stripe_total = sum(stripe_transfers.values())
                discrepancy_cents = abs(database_total - stripe_total)
                discrepancies = drift + transfer_discrepancies

                recon_status.ledger_drift_count = len(drift)
                recon_status.stripe_total_cents = stripe_total
                recon_status.database_total_cents = database_total
                recon_status.discrepancy_cents = discrepancy_cents
                recon_status.discrepancy_count = len(discrepancies)
                recon_status.status = "completed"
                recon_status.completed_at = utcnow()
                recon_status.details = {
                    "database": {"count": len(withdrawals), "total_cents": database_total},
                    "stripe": {"count": len(stripe_transfers), "total_cents": stripe_total},
                    "discrepancies": discrepancies[:MAX_STORED_DISCREPANCIES],
                }
                await db.commit()
            except Exception as e:
                log.error("reconciliation_failed", error=str(e))
                await db.rollback()
                recon_status = await db.get(ReconciliationStatus, status_id)
                recon_status.status = "failed"
                recon_status.completed_at = utcnow()
                recon_status.details = {"error": str(e)}
                await db.commit()
                if isinstance(e, ReconciliationError):
                    raise
                raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        metrics.set_reconciliation_metrics(
            discrepancies_count=len(discrepancies),
            discrepancy_cents=discrepancy_cents,
            ledger_drift_count=len(drift),
            duration_seconds=time.perf_counter() - started,
        )
        log.info(
            "reconciliation_completed",
            ledger_drift=len(drift),
            discrepancy_cents=discrepancy_cents,
            total_discrepancies=len(discrepancies),
        )

        return {
            "date": reconciliation_date.isoformat(),
            "database_total_cents": database_total,
            "database_count": len(withdrawals),
            "stripe_total_cents": stripe_total,
            "stripe_count": len(stripe_transfers),
            "discrepancy_cents": discrepancy_cents,
            "ledger_drift_count": len(drift),
            "discrepancy_count": len(discrepancies),
            "discrepancies": discrepancies,
        }

    async def reconcile_yesterday(self) -> Dict[str, Any]:
        """Reconcile the previous UTC day."""
        yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
        return await self.reconcile_date(yesterday)
