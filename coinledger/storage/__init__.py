# Storage module
"""Persistence services for the trading ledger."""

from coinledger.storage.storage import (
    ILedgerSession,
    ILedgerStore,
    SqliteLedgerSession,
    SqliteLedgerStore,
)

__all__ = ["ILedgerSession", "ILedgerStore", "SqliteLedgerSession", "SqliteLedgerStore"]
