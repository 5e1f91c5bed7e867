"""Core ledger, deposit, Connect, payout and settlement logic."""
