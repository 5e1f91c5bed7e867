"""
Wallet ledger primitives.

Every balance change goes through credit() or debit(). Both run as a single
atomic UPDATE against the wallet row and append an immutable LedgerEntry in
the same transaction, so concurrent writers never lose an update and a debit
can never take a balance below zero. Callers own the transaction: they
commit on success and roll back on any LedgerError.
"""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import EntryDirection, LedgerEntry, Wallet
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger operations."""

    pass


class InsufficientFundsError(LedgerError):
    """Raised when a debit exceeds the available balance."""

    def __init__(self, user_id: uuid.UUID, requested_cents: int, available_cents: int):
        super().__init__(
            f"Insufficient funds: requested {requested_cents} cents, "
            f"available {available_cents} cents"
        )
        self.user_id = user_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents


class DuplicateLedgerEntryError(LedgerError):
    """Raised when a reference has already moved money in this direction."""

    pass


class WalletNotFoundError(LedgerError):
    """Raised when a user has no wallet."""

    pass


async def ensure_wallet(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    """Return the user's wallet, creating an empty one if needed."""
    wallet = await db.get(Wallet, user_id)
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance_cents=0)
        db.add(wallet)
        await db.flush()
        logger.info("wallet_created", user_id=str(user_id))
    return wallet


async def _read_balance(db: AsyncSession, user_id: uuid.UUID) -> Optional[int]:
    result = await db.execute(
        select(Wallet.balance_cents).where(Wallet.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
    """
    Read the authoritative balance for a user.

    Raises:
        WalletNotFoundError: If the user has no wallet
    """
    balance = await _read_balance(db, user_id)
    if balance is None:
        raise WalletNotFoundError(f"No wallet for user {user_id}")
    return balance


async def _ensure_new_reference(
    db: AsyncSession, reference_type: str, reference_id: str, direction: EntryDirection
) -> None:
    result = await db.execute(
        select(LedgerEntry.id).where(
            LedgerEntry.reference_type == reference_type,
            LedgerEntry.reference_id == reference_id,
            LedgerEntry.direction == direction.value,
        )
    )
    if result.scalar_one_or_none() is not None:
        raise DuplicateLedgerEntryError(
            f"{direction.value} already recorded for {reference_type}:{reference_id}"
        )


async def _append_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    direction: EntryDirection,
    amount_cents: int,
    balance_after: int,
    reference_type: str,
    reference_id: str,
    description: Optional[str],
) -> LedgerEntry:
    entry = LedgerEntry(
        user_id=user_id,
        direction=direction.value,
        amount_cents=amount_cents,
        balance_after_cents=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as e:
        # A concurrent writer recorded the same reference first.
        raise DuplicateLedgerEntryError(
            f"{direction.value} already recorded for {reference_type}:{reference_id}"
        ) from e
    return entry


async def credit(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount_cents: int,
    reference_type: str,
    reference_id: str,
    description: Optional[str] = None,
) -> LedgerEntry:
    """
    Add funds to a wallet.

    Args:
        db: Database session (caller commits)
        user_id: Wallet owner
        amount_cents: Positive amount in cents
        reference_type: Kind of business event (payment_intent, submission, ...)
        reference_id: Identifier of the business event
        description: Optional human readable note

    Returns:
        LedgerEntry: The appended entry

    Raises:
        LedgerError: If the amount is not positive
        DuplicateLedgerEntryError: If the reference was already credited
        WalletNotFoundError: If the user has no wallet
    """
    if amount_cents <= 0:
        raise LedgerError("Credit amount must be positive")

    await _ensure_new_reference(db, reference_type, reference_id, EntryDirection.CREDIT)

    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance_cents=Wallet.balance_cents + amount_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise WalletNotFoundError(f"No wallet for user {user_id}")

    balance_after = await get_balance(db, user_id)
    entry = await _append_entry(
        db,
        user_id,
        EntryDirection.CREDIT,
        amount_cents,
        balance_after,
        reference_type,
        reference_id,
        description,
    )

    metrics.record_ledger_mutation(EntryDirection.CREDIT.value, reference_type, amount_cents)
    logger.info(
        "ledger_credited",
        user_id=str(user_id),
        amount_cents=amount_cents,
        balance_after_cents=balance_after,
        reference=f"{reference_type}:{reference_id}",
    )
    return entry


async def debit(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount_cents: int,
    reference_type: str,
    reference_id: str,
    description: Optional[str] = None,
) -> LedgerEntry:
    """
    Remove funds from a wallet if and only if the balance covers them.

    The balance check and the subtraction are one conditional UPDATE; when no
    row matches, nothing has changed.

    Raises:
        LedgerError: If the amount is not positive
        InsufficientFundsError: If the balance is lower than the amount
        DuplicateLedgerEntryError: If the reference was already debited
        WalletNotFoundError: If the user has no wallet
    """
    if amount_cents <= 0:
        raise LedgerError("Debit amount must be positive")

    await _ensure_new_reference(db, reference_type, reference_id, EntryDirection.DEBIT)

    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance_cents >= amount_cents)
        .values(balance_cents=Wallet.balance_cents - amount_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        available = await get_balance(db, user_id)
        logger.warning(
            "ledger_debit_rejected",
            user_id=str(user_id),
            amount_cents=amount_cents,
            available_cents=available,
            reference=f"{reference_type}:{reference_id}",
        )
        metrics.record_insufficient_funds()
        raise InsufficientFundsError(user_id, amount_cents, available)

    balance_after = await get_balance(db, user_id)
    entry = await _append_entry(
        db,
        user_id,
        EntryDirection.DEBIT,
        amount_cents,
        balance_after,
        reference_type,
        reference_id,
        description,
    )

    metrics.record_ledger_mutation(EntryDirection.DEBIT.value, reference_type, amount_cents)
    logger.info(
        "ledger_debited",
        user_id=str(user_id),
        amount_cents=amount_cents,
        balance_after_cents=balance_after,
        reference=f"{reference_type}:{reference_id}",
    )
    return entry


async def list_entries(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50
) -> List[LedgerEntry]:
    """Most recent ledger entries for a user, newest first."""
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
