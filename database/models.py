"""SQLAlchemy database models for the KLIPZ ledger and payout system."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp column."""
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Roles a marketplace user can hold."""

    STREAMER = "streamer"
    CLIPPER = "clipper"
    ADMIN = "admin"


class EntryDirection(str, Enum):
    """Direction of a ledger entry."""

    CREDIT = "credit"
    DEBIT = "debit"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class SubmissionStatus(str, Enum):
    """Lifecycle of a clip submission."""

    PENDING = "pending"
    APPROVED = "approved"
    READY_FOR_PAYMENT = "ready_for_payment"
    PAID = "paid"
    REJECTED = "rejected"


class WithdrawalStatus(str, Enum):
    """
    Durable payout workflow states.

    pending -> transfer_initiated -> transfer_confirmed -> debited -> completed,
    with failed reachable from any non-terminal state.
    """

    PENDING = "pending"
    TRANSFER_INITIATED = "transfer_initiated"
    TRANSFER_CONFIRMED = "transfer_confirmed"
    DEBITED = "debited"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.TRANSFER_INITIATED.value,
    WithdrawalStatus.TRANSFER_CONFIRMED.value,
    WithdrawalStatus.DEBITED.value,
)


class WithdrawalSource(str, Enum):
    USER_REQUEST = "user_request"
    SUBMISSION_PAYOUT = "submission_payout"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Marketplace users.

    There is deliberately no balance column here: the wallet row is the only
    place a balance lives.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    stripe_account_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("role IN ('streamer', 'clipper', 'admin')", name="valid_role"),
    )

    def __repr__(self) -> str:
        """String representation of User."""
        return f"<User(id={self.id}, role={self.role})>"


class Wallet(Base):
    """
    One row per user holding the authoritative balance in cents.

    Mutated only through the atomic statements in core.ledger.
    """

    __tablename__ = "wallets"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), primary_key=True
    )
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="non_negative_balance"),
    )

    def __repr__(self) -> str:
        """String representation of Wallet."""
        return f"<Wallet(user_id={self.user_id}, balance_cents={self.balance_cents})>"


class LedgerEntry(Base):
    """
    Immutable audit trail of every balance mutation.

    The (reference_type, reference_id, direction) triple is unique, so the
    same business event can never move money twice.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_entry_amount"),
        CheckConstraint("direction IN ('credit', 'debit')", name="valid_direction"),
        UniqueConstraint(
            "reference_type", "reference_id", "direction", name="uq_ledger_reference"
        ),
        Index("idx_ledger_entries_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of LedgerEntry."""
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, "
            f"{self.direction}={self.amount_cents})>"
        )


class Campaign(Base):
    """Promotional campaign funded up front from a streamer's wallet."""

    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    streamer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    cpm_rate: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    budget_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    required_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CampaignStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("budget_cents > 0", name="positive_budget"),
        CheckConstraint("spent_cents >= 0 AND spent_cents <= budget_cents", name="within_budget"),
        CheckConstraint("status IN ('active', 'closed')", name="valid_campaign_status"),
    )

    def __repr__(self) -> str:
        """String representation of Campaign."""
        return f"<Campaign(id={self.id}, title={self.title!r}, status={self.status})>"


class Submission(Base):
    """A clip posted by a clipper against a campaign."""

    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.id"), nullable=False, index=True
    )
    clipper_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    clip_url: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="tiktok")
    views: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    earnings_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=SubmissionStatus.PENDING.value, index=True
    )
    payout_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_validated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("views >= 0", name="non_negative_views"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'ready_for_payment', 'paid', 'rejected')",
            name="valid_submission_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Submission."""
        return f"<Submission(id={self.id}, views={self.views}, status={self.status})>"


class Withdrawal(Base):
    """
    Persisted payout intent.

    Each status transition is committed before the next external call, so a
    crashed payout can be resumed from the row alone.
    """

    __tablename__ = "withdrawals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=WithdrawalStatus.PENDING.value, index=True
    )
    source: Mapped[str] = mapped_column(
        String(30), nullable=False, default=WithdrawalSource.USER_REQUEST.value
    )
    submission_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("submissions.id"), nullable=True
    )
    stripe_transfer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    # When Stripe created the transfer; reconciliation matches on this day.
    transferred_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stripe_reversal_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_withdrawal_amount"),
        CheckConstraint(
            "status IN ('pending', 'transfer_initiated', 'transfer_confirmed', "
            "'debited', 'completed', 'failed')",
            name="valid_withdrawal_status",
        ),
        Index("idx_withdrawals_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of Withdrawal."""
        return (
            f"<Withdrawal(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class WebhookEvent(Base):
    """Stripe event ids that have already been applied."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return f"<WebhookEvent(event_id={self.event_id}, type={self.event_type})>"


class ReconciliationStatus(Base):
    """
    Daily reconciliation status tracking table.

    Stores the results of reconciliation runs comparing wallet balances with
    their ledger entries, and completed withdrawals with Stripe transfers.
    """

    __tablename__ = "reconciliation_status"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    reconciliation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, unique=True
    )
    ledger_drift_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stripe_total_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    database_total_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discrepancy_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discrepancy_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationStatus."""
        return (
            f"<ReconciliationStatus(id={self.id}, date={self.reconciliation_date}, "
            f"status={self.status})>"
        )
