"""Database package for the KLIPZ ledger."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Campaign,
    LedgerEntry,
    ReconciliationStatus,
    Submission,
    User,
    Wallet,
    WebhookEvent,
    Withdrawal,
)

__all__ = [
    "Base",
    "User",
    "Wallet",
    "LedgerEntry",
    "Campaign",
    "Submission",
    "Withdrawal",
    "WebhookEvent",
    "ReconciliationStatus",
    "get_db",
    "get_session_factory",
    "init_db",
    "close_db",
]
