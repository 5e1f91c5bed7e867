"""Background workers for async processing."""
from .payout_recovery import start_payout_recovery_worker
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["start_payout_recovery_worker", "start_reconciliation_worker"]
