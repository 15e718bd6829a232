"""
Banka Wallet Core

Custodial wallet ledger and settlement engine: per-user balances, an
immutable transaction ledger, webhook-driven settlement of external
payment rails, a transfer tax engine, and scheduled savings auto-charges.
"""

__version__ = "1.0.0"
