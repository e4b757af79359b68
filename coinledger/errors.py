"""Exception hierarchy for the ledger.

Execution failures carry a stable ``code`` so callers (the order service,
the sweeper report, the CLI) can map them to rejection reasons without
inspecting message text.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""


class ConfigError(LedgerError):
    """Invalid configuration value in the environment."""


class ValidationError(LedgerError):
    """Bad input rejected before any mutation."""

    code = "invalid_input"


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"


class InvalidPrice(ValidationError):
    code = "invalid_price"


class ExecutionError(LedgerError):
    """Business-rule or data-integrity failure while executing an order.

    The order is left ``pending``; nothing was persisted.
    """

    code = "execution_failed"

    def __init__(self, message: str, order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.order_id = order_id


class InsufficientFunds(ExecutionError):
    code = "insufficient_balance"

    def __init__(
        self,
        required: Decimal,
        available: Decimal,
        order_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Insufficient balance: need {required}, have {available}",
            order_id=order_id,
        )
        self.required = required
        self.available = available


class InsufficientHoldings(ExecutionError):
    code = "insufficient_holdings"

    def __init__(
        self,
        required: Decimal,
        held: Decimal,
        order_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Insufficient holdings: need {required}, have {held}",
            order_id=order_id,
        )
        self.required = required
        self.held = held


class NotFound(ExecutionError):
    code = "not_found"


class ProfileNotFound(NotFound):
    code = "profile_not_found"


class OrderNotFound(NotFound):
    code = "order_not_found"


class OrderNotPending(ExecutionError):
    code = "invalid_state"


class InvalidTransition(LedgerError):
    """Status change out of a terminal state."""

    code = "invalid_state"


class OracleUnavailable(LedgerError):
    """Price could not be obtained (network, rate limit, unknown symbol)."""

    code = "no_price_data"


class StalePrice(OracleUnavailable):
    """Cached price is older than the accepted age."""

    code = "stale_price"


class StoreWriteFailure(LedgerError):
    """The ledger store failed to read or persist a unit of work."""

    code = "store_failure"


class DuplicateRecord(StoreWriteFailure):
    """A unique constraint rejected the write."""

    code = "duplicate_record"
