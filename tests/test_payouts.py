"""
Tests for withdrawals and the transfer-then-debit payout saga.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
import stripe
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core import ledger
from core.payouts import (
    PayoutAccountMissingError,
    PayoutService,
    PayoutTransferError,
    PayoutValidationError,
    WithdrawalNotFoundError,
    WithdrawalStateError,
)
from core.saga import Saga
from database.models import LedgerEntry, Withdrawal, WithdrawalStatus, utcnow
from integrations.stripe_client import StripeClient, StripeError, StripeErrorType
from monitoring.metrics import metrics

ACCOUNT = "acct_clipper_1"


async def _withdrawal(session_factory: Any, withdrawal_id: uuid.UUID) -> Withdrawal:
    async with session_factory() as db:
        return await db.get(Withdrawal, withdrawal_id)


class TestWithdrawalRequest:
    """Validation when a withdrawal is requested."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_creates_pending_withdrawal_without_debit(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any, balance_of: Any
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)

        withdrawal = await PayoutService(mock_stripe_client).request_withdrawal(
            test_db, user_id, Decimal("30.00")
        )

        assert withdrawal.status == WithdrawalStatus.PENDING.value
        assert withdrawal.amount_cents == 3000
        assert await balance_of(user_id) == 5000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_above_balance_rejected(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any
    ) -> None:
        user_id = await make_user(balance_cents=2000, stripe_account_id=ACCOUNT)

        with pytest.raises(ledger.InsufficientFundsError):
            await PayoutService(mock_stripe_client).request_withdrawal(test_db, user_id, "30.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_without_connect_account_rejected(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any
    ) -> None:
        user_id = await make_user(balance_cents=5000)

        with pytest.raises(PayoutAccountMissingError):
            await PayoutService(mock_stripe_client).request_withdrawal(test_db, user_id, "10.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "0.50", "abc"])
    async def test_request_invalid_amount_rejected(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any, amount: str
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)

        with pytest.raises(PayoutValidationError):
            await PayoutService(mock_stripe_client).request_withdrawal(test_db, user_id, amount)


class TestPayoutSaga:
    """Processing withdrawals."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_withdrawal_completes_after_transfer_and_debit(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        result = await service.process_withdrawal(test_db, withdrawal.id)

        assert result == {
            "success": True,
            "transferId": "tr_test_123",
            "withdrawalId": withdrawal.id,
            "status": "completed",
        }
        assert await balance_of(user_id) == 2000
        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.stripe_transfer_id == "tr_test_123"
        assert stored.processed_at is not None

        kwargs = mock_stripe_client.create_transfer.call_args.kwargs
        assert kwargs["amount_cents"] == 3000
        assert kwargs["destination"] == ACCOUNT
        assert kwargs["idempotency_key"] == f"withdrawal:{withdrawal.id}:transfer"
        mock_stripe_client.reverse_transfer.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transfer_time_taken_from_stripe(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        session_factory: Any,
    ) -> None:
        created = datetime(2026, 3, 14, 23, 59, tzinfo=timezone.utc)
        mock_stripe_client.create_transfer.return_value = SimpleNamespace(
            id="tr_test_123", amount=3000, created=int(created.timestamp())
        )
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        await service.process_withdrawal(test_db, withdrawal.id)

        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.transferred_at.replace(tzinfo=None) == datetime(2026, 3, 14, 23, 59)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_transfer_error_fails_without_debit(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        mock_stripe_client.create_transfer.side_effect = StripeError(
            "Insufficient platform balance", StripeErrorType.PERMANENT
        )
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        with pytest.raises(PayoutTransferError) as exc_info:
            await service.process_withdrawal(test_db, withdrawal.id)

        assert exc_info.value.retryable is False
        assert await balance_of(user_id) == 5000
        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.status == WithdrawalStatus.FAILED.value
        assert "Insufficient platform balance" in stored.failure_reason

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_transfer_error_leaves_withdrawal_in_flight(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        mock_stripe_client.create_transfer.side_effect = StripeError(
            "Connection reset", StripeErrorType.TRANSIENT
        )
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        with pytest.raises(PayoutTransferError) as exc_info:
            await service.process_withdrawal(test_db, withdrawal.id)

        assert exc_info.value.retryable is True
        assert await balance_of(user_id) == 5000
        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.status == WithdrawalStatus.TRANSFER_INITIATED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unfinished_saga_is_not_reported_completed(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any, mocker: Any
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")
        mocker.patch.object(Saga, "execute", mocker.AsyncMock(return_value={}))
        record_payout = mocker.patch.object(metrics, "record_payout")

        result = await service.process_withdrawal(test_db, withdrawal.id)

        assert result["success"] is False
        assert result["status"] == WithdrawalStatus.TRANSFER_INITIATED.value
        record_payout.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debit_failure_reverses_transfer(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
    ) -> None:
        """Balance drained between request and payout: transfer is reversed."""
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        async with session_factory() as db:
            await ledger.debit(db, user_id, 4000, "campaign", "drain")
            await db.commit()

        with pytest.raises(ledger.InsufficientFundsError):
            await service.process_withdrawal(test_db, withdrawal.id)

        mock_stripe_client.reverse_transfer.assert_awaited_once()
        args, kwargs = mock_stripe_client.reverse_transfer.call_args
        assert args[0] == "tr_test_123"
        assert kwargs["idempotency_key"] == f"withdrawal:{withdrawal.id}:reversal"

        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.status == WithdrawalStatus.FAILED.value
        assert stored.stripe_reversal_id == "trr_test_123"
        assert await balance_of(user_id) == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_reversal_is_flagged_for_review(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        session_factory: Any,
    ) -> None:
        user_id = await make_user(balance_cents=1000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "10.00")
        async with session_factory() as db:
            await ledger.debit(db, user_id, 1000, "campaign", "drain")
            await db.commit()
        mock_stripe_client.reverse_transfer.side_effect = StripeError(
            "Transfer already paid out", StripeErrorType.PERMANENT
        )

        with pytest.raises(ledger.InsufficientFundsError):
            await service.process_withdrawal(test_db, withdrawal.id)

        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.status == WithdrawalStatus.FAILED.value
        assert "compensation failed for transfer" in stored.failure_reason

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processing_twice_is_rejected(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any, balance_of: Any
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")
        await service.process_withdrawal(test_db, withdrawal.id)

        with pytest.raises(WithdrawalStateError):
            await service.process_withdrawal(test_db, withdrawal.id)

        assert mock_stripe_client.create_transfer.await_count == 1
        assert await balance_of(user_id) == 2000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_withdrawal(self, test_db: Any, mock_stripe_client: Any) -> None:
        with pytest.raises(WithdrawalNotFoundError):
            await PayoutService(mock_stripe_client).process_withdrawal(test_db, uuid.uuid4())


class TestPayoutResume:
    """Rolling interrupted withdrawals forward."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_after_transient_error_reuses_idempotency_key(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        mock_stripe_client.create_transfer.side_effect = [
            StripeError("Timeout", StripeErrorType.TRANSIENT),
            SimpleNamespace(id="tr_retry_1"),
        ]
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        with pytest.raises(PayoutTransferError):
            await service.process_withdrawal(test_db, withdrawal.id)
        result = await service.resume_withdrawal(test_db, withdrawal.id)

        assert result["status"] == "completed"
        assert result["transferId"] == "tr_retry_1"
        keys = {c.kwargs["idempotency_key"] for c in mock_stripe_client.create_transfer.call_args_list}
        assert keys == {f"withdrawal:{withdrawal.id}:transfer"}
        assert await balance_of(user_id) == 2000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_error_after_transfer_is_resumed_not_failed(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Stripe accepted the transfer but recording it failed."""
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")

        real_commit = AsyncSession.commit
        failed_once = []

        async def commit(session: AsyncSession) -> None:
            if mock_stripe_client.create_transfer.await_count and not failed_once:
                failed_once.append(True)
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            await real_commit(session)

        monkeypatch.setattr(AsyncSession, "commit", commit)

        with pytest.raises(PayoutTransferError) as exc_info:
            await service.process_withdrawal(test_db, withdrawal.id)

        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, OperationalError)
        mock_stripe_client.reverse_transfer.assert_not_called()
        stored = await _withdrawal(session_factory, withdrawal.id)
        assert stored.status == WithdrawalStatus.TRANSFER_INITIATED.value
        assert stored.stripe_transfer_id is None
        assert await balance_of(user_id) == 5000

        stale = await service.find_stale_withdrawals(test_db, older_than_seconds=-60)
        assert withdrawal.id in stale

        result = await service.resume_withdrawal(test_db, withdrawal.id)

        assert result["status"] == "completed"
        assert result["transferId"] == "tr_test_123"
        keys = {c.kwargs["idempotency_key"] for c in mock_stripe_client.create_transfer.call_args_list}
        assert keys == {f"withdrawal:{withdrawal.id}:transfer"}
        assert await balance_of(user_id) == 2000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_after_crash_post_debit_does_not_debit_twice(
        self,
        test_db: Any,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
    ) -> None:
        """A row left in 'debited' only needs completing."""
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")
        async with session_factory() as db:
            await ledger.debit(db, user_id, 3000, "withdrawal", str(withdrawal.id))
            await db.execute(
                update(Withdrawal)
                .where(Withdrawal.id == withdrawal.id)
                .values(
                    status=WithdrawalStatus.DEBITED.value,
                    stripe_transfer_id="tr_before_crash",
                    attempts=1,
                )
            )
            await db.commit()

        result = await service.resume_withdrawal(test_db, withdrawal.id)

        assert result["status"] == "completed"
        assert result["transferId"] == "tr_before_crash"
        mock_stripe_client.create_transfer.assert_not_called()
        assert await balance_of(user_id) == 2000
        async with session_factory() as db:
            debits = (
                await db.execute(
                    select(LedgerEntry).where(
                        LedgerEntry.reference_id == str(withdrawal.id),
                        LedgerEntry.direction == "debit",
                    )
                )
            ).scalars().all()
        assert len(debits) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_terminal_withdrawal_reports_it(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        withdrawal = await service.request_withdrawal(test_db, user_id, "30.00")
        await service.process_withdrawal(test_db, withdrawal.id)

        result = await service.resume_withdrawal(test_db, withdrawal.id)

        assert result["status"] == "completed"
        assert mock_stripe_client.create_transfer.await_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_stale_withdrawals(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        stale = await service.request_withdrawal(test_db, user_id, "10.00")
        fresh = await service.request_withdrawal(test_db, user_id, "10.00")
        await test_db.execute(
            update(Withdrawal)
            .where(Withdrawal.id == stale.id)
            .values(
                status=WithdrawalStatus.TRANSFER_INITIATED.value,
                updated_at=utcnow() - timedelta(hours=1),
            )
        )
        await test_db.execute(
            update(Withdrawal)
            .where(Withdrawal.id == fresh.id)
            .values(status=WithdrawalStatus.TRANSFER_INITIATED.value)
        )
        await test_db.commit()

        found = await service.find_stale_withdrawals(test_db, older_than_seconds=600)

        assert found == [stale.id]


class TestPayoutRaceConditions:
    """Concurrent attempts on one withdrawal."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_processing_pays_once(
        self,
        make_user: Any,
        mock_stripe_client: Any,
        balance_of: Any,
        session_factory: Any,
    ) -> None:
        user_id = await make_user(balance_cents=5000, stripe_account_id=ACCOUNT)
        service = PayoutService(mock_stripe_client)
        async with session_factory() as db:
            withdrawal = await service.request_withdrawal(db, user_id, "30.00")

        async def process() -> Any:
            async with session_factory() as db:
                return await service.process_withdrawal(db, withdrawal.id)

        results = await asyncio.gather(*(process() for _ in range(3)), return_exceptions=True)

        completed = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, WithdrawalStateError)]
        assert len(completed) == 1
        assert len(rejected) == 2
        assert mock_stripe_client.create_transfer.await_count == 1
        assert await balance_of(user_id) == 2000


class TestClipperPayout:
    """Immediate clipper payouts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_clipper_returns_new_balance(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any
    ) -> None:
        clipper_id = await make_user(balance_cents=10000, stripe_account_id=ACCOUNT)

        result = await PayoutService(mock_stripe_client).payout_clipper(
            test_db, clipper_id, "45.50"
        )

        assert result["success"] is True
        assert result["transferId"] == "tr_test_123"
        assert result["amount"] == Decimal("45.50")
        assert result["newBalance"] == Decimal("54.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_clipper_rejects_foreign_submission(
        self, test_db: Any, make_user: Any, mock_stripe_client: Any
    ) -> None:
        clipper_id = await make_user(balance_cents=10000, stripe_account_id=ACCOUNT)

        with pytest.raises(PayoutValidationError):
            await PayoutService(mock_stripe_client).payout_clipper(
                test_db, clipper_id, "10.00", submission_id=uuid.uuid4()
            )


def test_permanent_stripe_errors_are_classified() -> None:
    error = stripe.InvalidRequestError("No such destination", param="destination")
    assert StripeClient.classify_error(error) == StripeErrorType.PERMANENT
