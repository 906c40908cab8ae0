"""
Bank Ledger

Ledger engine for a terminal banking simulator: atomic deposits, withdrawals
and transfers over a durable store, with an append-only transaction history.
"""

__version__ = "1.0.0"
