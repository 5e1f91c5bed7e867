"""
Withdrawals and the payout dispatcher.

A withdrawal moves through pending, transfer_initiated, transfer_confirmed,
debited and completed, each transition committed before the next external
call. The transfer, debit and completion run as a saga: a failed debit
reverses the transfer, and every step skips work already recorded on the
row so a crashed payout can be resumed safely.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, NoReturn, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core import ledger
from core.money import AmountError, AmountLike, from_cents, to_cents, to_decimal
from core.saga import Saga, SagaFailedError
from database.models import (
    IN_FLIGHT_WITHDRAWAL_STATUSES,
    Submission,
    SubmissionStatus,
    User,
    Withdrawal,
    WithdrawalSource,
    WithdrawalStatus,
    utcnow,
)
from integrations.stripe_client import StripeClient, StripeError, StripeErrorType
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (WithdrawalStatus.COMPLETED.value, WithdrawalStatus.FAILED.value)


class PayoutError(Exception):
    """Base exception for withdrawals and payouts."""

    pass


class PayoutValidationError(PayoutError):
    pass


class PayoutUserNotFoundError(PayoutError):
    pass


class PayoutAccountMissingError(PayoutError):
    """Raised when the recipient has no Connect account."""

    pass


class WithdrawalNotFoundError(PayoutError):
    pass


class WithdrawalStateError(PayoutError):
    """Raised when a withdrawal is not in a state the operation accepts."""

    pass


class PayoutTransferError(PayoutError):
    """
    Raised when Stripe did not accept the transfer.

    retryable is True when the outcome is unknown (network or Stripe outage,
    or a database error after Stripe answered): the withdrawal stays in
    transfer_initiated and is resumed later with the same idempotency key.
    Stripe replays a stored 500 for that key until it expires after 24 hours,
    so such withdrawals keep resuming into the same error until then.
    """

    def __init__(self, message: str, withdrawal_id: uuid.UUID, retryable: bool = False):
        super().__init__(message)
        self.withdrawal_id = withdrawal_id
        self.retryable = retryable


class PayoutService:
    """Creates, processes and resumes withdrawals."""

    def __init__(self, stripe_client: Optional[StripeClient] = None):
        self.settings = get_settings()
        self.stripe_client = stripe_client or StripeClient()

    @staticmethod
    async def _reload(db: AsyncSession, withdrawal_id: uuid.UUID) -> Optional[Withdrawal]:
        result = await db.execute(
            select(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get(self, db: AsyncSession, withdrawal_id: uuid.UUID) -> Withdrawal:
        withdrawal = await self._reload(db, withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    @staticmethod
    def _summary(withdrawal: Withdrawal) -> Dict[str, Any]:
        return {
            "success": withdrawal.status == WithdrawalStatus.COMPLETED.value,
            "transferId": withdrawal.stripe_transfer_id,
            "withdrawalId": withdrawal.id,
            "status": withdrawal.status,
        }

    def _validate_amount(self, amount: AmountLike) -> int:
        try:
            value = to_decimal(amount)
        except AmountError as e:
            raise PayoutValidationError(str(e)) from e
        if value <= 0:
            raise PayoutValidationError("Amount must be positive")
        if value < self.settings.min_payout_amount:
            raise PayoutValidationError(
                f"Minimum payout is {self.settings.min_payout_amount}"
            )
        return to_cents(value)

    async def request_withdrawal(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: AmountLike,
        source: WithdrawalSource = WithdrawalSource.USER_REQUEST,
        submission_id: Optional[uuid.UUID] = None,
    ) -> Withdrawal:
        """
        Record a pending withdrawal after checking it is payable.

        The balance is not touched here; the debit happens once the transfer
        has been accepted.

        Raises:
            PayoutValidationError: If the amount is unusable
            PayoutUserNotFoundError: If the user does not exist
            PayoutAccountMissingError: If the user has no Connect account
            InsufficientFundsError: If the balance does not cover the amount
        """
        amount_cents = self._validate_amount(amount)

        user = await db.get(User, user_id)
        if user is None:
            raise PayoutUserNotFoundError(f"User {user_id} not found")
        if not user.stripe_account_id:
            raise PayoutAccountMissingError(f"User {user_id} has no payout account")

        await ledger.ensure_wallet(db, user_id)
        balance = await ledger.get_balance(db, user_id)
        if amount_cents > balance:
            metrics.record_insufficient_funds()
            logger.warning(
                "withdrawal_rejected_insufficient_funds",
                user_id=str(user_id),
                amount_cents=amount_cents,
                balance_cents=balance,
            )
            raise ledger.InsufficientFundsError(user_id, amount_cents, balance)

        withdrawal = Withdrawal(
            user_id=user_id,
            amount_cents=amount_cents,
            status=WithdrawalStatus.PENDING.value,
            source=source.value,
            submission_id=submission_id,
        )
        db.add(withdrawal)
        await db.commit()

        logger.info(
            "withdrawal_requested",
            withdrawal_id=str(withdrawal.id),
            user_id=str(user_id),
            amount_cents=amount_cents,
            source=source.value,
        )
        return withdrawal

    async def process_withdrawal(
        self, db: AsyncSession, withdrawal_id: uuid.UUID
    ) -> Dict[str, Any]:
        """
        Claim a pending withdrawal and pay it out.

        The claim is a conditional update on status='pending', so only one
        caller ever processes a given withdrawal.

        Returns:
            Dict[str, Any]: success, transferId, withdrawalId and status

        Raises:
            WithdrawalNotFoundError: If the withdrawal does not exist
            WithdrawalStateError: If it is not pending
            PayoutTransferError: If Stripe did not accept the transfer
            InsufficientFundsError: If the debit failed (the transfer has been
                reversed)
        """
        withdrawal = await self._get(db, withdrawal_id)

        result = await db.execute(
            update(Withdrawal)
            .where(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status == WithdrawalStatus.PENDING.value,
            )
            .values(
                status=WithdrawalStatus.TRANSFER_INITIATED.value,
                attempts=Withdrawal.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            current = await self._get(db, withdrawal_id)
            raise WithdrawalStateError(
                f"Withdrawal {withdrawal_id} is {current.status}, expected pending"
            )
        await db.commit()

        logger.info(
            "withdrawal_claimed",
            withdrawal_id=str(withdrawal_id),
            user_id=str(withdrawal.user_id),
            amount_cents=withdrawal.amount_cents,
        )
        return await self._run_payout(db, withdrawal_id)

    async def resume_withdrawal(
        self, db: AsyncSession, withdrawal_id: uuid.UUID
    ) -> Dict[str, Any]:
        """
        Roll an interrupted withdrawal forward from its persisted state.

        Terminal withdrawals are reported as they are. In-flight ones are
        claimed optimistically on their attempt counter before the saga runs
        again.
        """
        withdrawal = await self._get(db, withdrawal_id)
        if withdrawal.status == WithdrawalStatus.PENDING.value:
            return await self.process_withdrawal(db, withdrawal_id)
        if withdrawal.status in TERMINAL_STATUSES:
            return self._summary(withdrawal)

        result = await db.execute(
            update(Withdrawal)
            .where(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status == withdrawal.status,
                Withdrawal.attempts == withdrawal.attempts,
            )
            .values(attempts=Withdrawal.attempts + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise WithdrawalStateError(f"Withdrawal {withdrawal_id} is being processed")
        await db.commit()

        logger.info(
            "withdrawal_resumed",
            withdrawal_id=str(withdrawal_id),
            status=withdrawal.status,
            attempts=withdrawal.attempts + 1,
        )
        return await self._run_payout(db, withdrawal_id)

    async def _run_payout(self, db: AsyncSession, withdrawal_id: uuid.UUID) -> Dict[str, Any]:
        async def transfer(ctx: Dict[str, Any]) -> str:
            withdrawal = await self._get(db, withdrawal_id)
            if withdrawal.stripe_transfer_id:
                return withdrawal.stripe_transfer_id

            user = await db.get(User, withdrawal.user_id)
            if user is None or not user.stripe_account_id:
                raise PayoutAccountMissingError(
                    f"User {withdrawal.user_id} has no payout account"
                )

            stripe_transfer = await self.stripe_client.create_transfer(
                amount_cents=withdrawal.amount_cents,
                currency=self.settings.currency,
                destination=user.stripe_account_id,
                idempotency_key=f"withdrawal:{withdrawal.id}:transfer",
                metadata={
                    "withdrawal_id": str(withdrawal.id),
                    "user_id": str(withdrawal.user_id),
                    "submission_id": str(withdrawal.submission_id or ""),
                    "type": "clipper_payout",
                },
            )
            created = getattr(stripe_transfer, "created", None)
            withdrawal.stripe_transfer_id = stripe_transfer.id
            withdrawal.transferred_at = (
                datetime.fromtimestamp(created, tz=timezone.utc) if created else utcnow()
            )
            withdrawal.status = WithdrawalStatus.TRANSFER_CONFIRMED.value
            await db.commit()
            return stripe_transfer.id

        async def reverse_transfer(ctx: Dict[str, Any], transfer_id: str) -> None:
            try:
                reversal = await self.stripe_client.reverse_transfer(
                    transfer_id,
                    idempotency_key=f"withdrawal:{withdrawal_id}:reversal",
                    metadata={"withdrawal_id": str(withdrawal_id)},
                )
            except StripeError:
                metrics.record_payout_reversal("failed")
                raise
            withdrawal = await self._get(db, withdrawal_id)
            withdrawal.stripe_reversal_id = reversal.id
            await db.commit()
            metrics.record_payout_reversal("reversed")

        async def debit(ctx: Dict[str, Any]) -> None:
            withdrawal = await self._get(db, withdrawal_id)
            if withdrawal.status in (
                WithdrawalStatus.DEBITED.value,
                WithdrawalStatus.COMPLETED.value,
            ):
                return
            try:
                await ledger.debit(
                    db,
                    withdrawal.user_id,
                    withdrawal.amount_cents,
                    reference_type="withdrawal",
                    reference_id=str(withdrawal.id),
                    description=f"Payout {withdrawal.stripe_transfer_id}",
                )
                withdrawal.status = WithdrawalStatus.DEBITED.value
                await db.commit()
            except ledger.DuplicateLedgerEntryError:
                await db.rollback()
                withdrawal = await self._get(db, withdrawal_id)
                withdrawal.status = WithdrawalStatus.DEBITED.value
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        async def refund_debit(ctx: Dict[str, Any], _: None) -> None:
            withdrawal = await self._get(db, withdrawal_id)
            try:
                await ledger.credit(
                    db,
                    withdrawal.user_id,
                    withdrawal.amount_cents,
                    reference_type="withdrawal_refund",
                    reference_id=str(withdrawal.id),
                    description="Payout rolled back",
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        async def complete(ctx: Dict[str, Any]) -> None:
            withdrawal = await self._get(db, withdrawal_id)
            if withdrawal.status == WithdrawalStatus.COMPLETED.value:
                return
            now = utcnow()
            try:
                withdrawal.status = WithdrawalStatus.COMPLETED.value
                withdrawal.processed_at = now
                if withdrawal.submission_id is not None:
                    submission = await db.get(Submission, withdrawal.submission_id)
                    if submission is not None:
                        submission.status = SubmissionStatus.PAID.value
                        submission.paid_at = now
                        submission.payout_amount_cents = withdrawal.amount_cents
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        saga = Saga(name="withdrawal_payout", saga_id=str(withdrawal_id))
        saga.add_step("transfer", transfer, reverse_transfer)
        saga.add_step("debit", debit, refund_debit)
        saga.add_step("complete", complete)

        try:
            await saga.execute()
        except SagaFailedError as e:
            await self._handle_failure(db, withdrawal_id, e)

        withdrawal = await self._get(db, withdrawal_id)
        if withdrawal.status != WithdrawalStatus.COMPLETED.value:
            logger.warning(
                "withdrawal_not_completed",
                withdrawal_id=str(withdrawal_id),
                status=withdrawal.status,
            )
            return self._summary(withdrawal)

        metrics.record_payout(withdrawal.source, "completed", withdrawal.amount_cents)
        logger.info(
            "withdrawal_completed",
            withdrawal_id=str(withdrawal_id),
            user_id=str(withdrawal.user_id),
            amount_cents=withdrawal.amount_cents,
            transfer_id=withdrawal.stripe_transfer_id,
        )
        return self._summary(withdrawal)

    @staticmethod
    def _transfer_rejected(cause: Exception) -> bool:
        """True when the transfer step failed in a way that moved no money."""
        if isinstance(cause, PayoutAccountMissingError):
            return True
        return isinstance(cause, StripeError) and cause.error_type == StripeErrorType.PERMANENT

    async def _handle_failure(
        self, db: AsyncSession, withdrawal_id: uuid.UUID, error: SagaFailedError
    ) -> NoReturn:
        """Record the failure on the withdrawal and raise what the caller should see."""
        cause = error.cause
        log = logger.bind(withdrawal_id=str(withdrawal_id), step=error.failed_step)

        if error.failed_step == "transfer" and not self._transfer_rejected(cause):
            # Stripe may hold the transfer; only a replay of the same key can tell.
            await db.rollback()
            log.warning(
                "payout_transfer_outcome_unknown",
                error=str(cause),
                error_type=type(cause).__name__,
            )
            raise PayoutTransferError(
                "Payout could not be confirmed with Stripe, it will be retried",
                withdrawal_id,
                retryable=True,
            ) from cause

        reason = f"{error.failed_step}: {cause}"
        if error.uncompensated:
            reason += f"; compensation failed for {', '.join(error.uncompensated)}"
            log.error("payout_requires_manual_review", reason=reason)

        await db.rollback()
        await db.execute(
            update(Withdrawal)
            .where(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status.not_in(TERMINAL_STATUSES),
            )
            .values(
                status=WithdrawalStatus.FAILED.value,
                failure_reason=reason,
                processed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        withdrawal = await self._get(db, withdrawal_id)
        metrics.record_payout(withdrawal.source, "failed", withdrawal.amount_cents)
        log.warning("withdrawal_failed", reason=reason)

        if isinstance(cause, StripeError):
            raise PayoutTransferError(
                "Payout transfer was rejected by Stripe", withdrawal_id
            ) from cause
        raise cause

    async def payout_clipper(
        self,
        db: AsyncSession,
        clipper_id: uuid.UUID,
        amount: AmountLike,
        submission_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Pay a clipper immediately, optionally settling a submission.

        Returns:
            Dict[str, Any]: success, transferId, amount, newBalance and
                withdrawalId
        """
        if submission_id is not None:
            submission = await db.get(Submission, submission_id)
            if submission is None or submission.clipper_id != clipper_id:
                raise PayoutValidationError(
                    f"Submission {submission_id} does not belong to clipper {clipper_id}"
                )
            if submission.status == SubmissionStatus.PAID.value:
                raise WithdrawalStateError(f"Submission {submission_id} is already paid")

        withdrawal = await self.request_withdrawal(
            db,
            clipper_id,
            amount,
            source=WithdrawalSource.SUBMISSION_PAYOUT,
            submission_id=submission_id,
        )
        result = await self.process_withdrawal(db, withdrawal.id)
        new_balance = await ledger.get_balance(db, clipper_id)

        return {
            "success": True,
            "transferId": result["transferId"],
            "withdrawalId": withdrawal.id,
            "amount": from_cents(withdrawal.amount_cents),
            "newBalance": from_cents(new_balance),
        }

    async def list_withdrawals(
        self, db: AsyncSession, user_id: uuid.UUID, limit: int = 50
    ) -> List[Withdrawal]:
        result = await db.execute(
            select(Withdrawal)
            .where(Withdrawal.user_id == user_id)
            .order_by(Withdrawal.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stale_withdrawals(
        self, db: AsyncSession, older_than_seconds: int, limit: int = 100
    ) -> List[uuid.UUID]:
        """Ids of in-flight withdrawals untouched for longer than the threshold."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        result = await db.execute(
            select(Withdrawal.id)
            .where(
                Withdrawal.status.in_(IN_FLIGHT_WITHDRAWAL_STATUSES),
                Withdrawal.updated_at < cutoff,
            )
            .order_by(Withdrawal.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())
