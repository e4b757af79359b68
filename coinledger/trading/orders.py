"""Order service for the trading ledger.

This module provides the operations exposed to callers (CLI, API layer):
- Order placement with input validation and funds/holdings pre-checks
- Direct execution of a pending order at a caller-supplied price
- Immediate market orders priced by the oracle
- Cancellation and limit-order sweeps

Failures are reported as an OrderResult with a rejection reason and a
human-readable message rather than raised to the caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from coinledger.data.providers import IPriceOracle
from coinledger.data.symbols import normalize_coin_id, resolve_market_symbol
from coinledger.errors import (
    InsufficientFunds,
    InsufficientHoldings,
    InvalidPrice,
    InvalidQuantity,
    LedgerError,
    OracleUnavailable,
    ProfileNotFound,
    StoreWriteFailure,
    ValidationError,
)
from coinledger.models import Order, OrderMode, OrderSide, Transaction
from coinledger.storage import ILedgerStore
from coinledger.trading.executor import OrderExecutor
from coinledger.trading.status import OrderStatusMachine
from coinledger.trading.sweeper import LimitOrderSweeper, SweepReport

logger = logging.getLogger(__name__)


class OrderOutcome(Enum):
    """Outcome of an order request."""
    EXECUTED = "executed"
    ALREADY_EXECUTED = "already_executed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class OrderRejectionReason(Enum):
    """Reason for order rejection."""
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_HOLDINGS = "insufficient_holdings"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    INVALID_INPUT = "invalid_input"
    NO_PRICE_DATA = "no_price_data"
    STALE_PRICE = "stale_price"
    PROFILE_NOT_FOUND = "profile_not_found"
    ORDER_NOT_FOUND = "order_not_found"
    INVALID_STATE = "invalid_state"
    STORE_FAILURE = "store_failure"


def rejection_reason_for(error: LedgerError) -> OrderRejectionReason:
    """Map an exception to its rejection reason."""
    try:
        return OrderRejectionReason(getattr(error, "code", ""))
    except ValueError:
        if isinstance(error, StoreWriteFailure):
            return OrderRejectionReason.STORE_FAILURE
        return OrderRejectionReason.INVALID_INPUT


@dataclass
class OrderResult:
    """Result of an order request.

    Attributes:
        status: EXECUTED, ALREADY_EXECUTED, CANCELLED or REJECTED
        order_id: The order the request was about, if known
        transaction: The transaction record if the order was executed
        rejection_reason: The reason for rejection if the order was rejected
        completed: True if the order's status is now completed
        message: Human-readable message describing the result
    """
    status: OrderOutcome
    order_id: Optional[str] = None
    transaction: Optional[Transaction] = None
    rejection_reason: Optional[OrderRejectionReason] = None
    completed: bool = False
    message: str = ""

    def to_dict(self) -> dict:
        txn = self.transaction
        return {
            "status": self.status.value,
            "order_id": self.order_id,
            "transaction_id": txn.id if txn else None,
            "price_per_unit": str(txn.price_per_unit) if txn else None,
            "total_amount": str(txn.total_amount) if txn else None,
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
            "completed": self.completed,
            "message": self.message,
        }


def _rejected(error: LedgerError, order_id: Optional[str] = None) -> OrderResult:
    return OrderResult(
        status=OrderOutcome.REJECTED,
        order_id=order_id,
        rejection_reason=rejection_reason_for(error),
        message=str(error),
    )


def _positive(value, name: str, error_cls) -> Decimal:
    try:
        dec = Decimal(str(value))
    except InvalidOperation:
        raise error_cls(f"{name} must be a number, got {value!r}")
    if not dec.is_finite() or dec <= 0:
        raise error_cls(f"{name} must be greater than zero")
    return dec


class IOrderService(ABC):
    """Interface for order operations."""

    @abstractmethod
    def execute_order(self, order_id: str, execution_price: Decimal) -> OrderResult:
        """Execute a pending order at the given price and mark it completed."""
        ...

    @abstractmethod
    def sweep_pending_limit_orders(self) -> SweepReport:
        """Evaluate all pending limit orders against live prices."""
        ...


class OrderService(IOrderService):
    """Order operations over the ledger store.

    Execution always runs the executor first and the status transition
    second, for both the direct path and the limit-order sweep.
    """

    def __init__(
        self,
        store: ILedgerStore,
        oracle: IPriceOracle,
        fee_rate: Optional[Decimal] = None,
        order_timeout_s: float = 10.0,
        max_workers: int = 4,
    ) -> None:
        """Initialize order service.

        Args:
            store: Ledger store
            oracle: Price source for market orders and sweeps
            fee_rate: Trading fee rate (defaults to the executor's)
            order_timeout_s: Per-order price lookup bound during sweeps
            max_workers: Concurrent price lookups during sweeps
        """
        self._store = store
        self._oracle = oracle
        self.executor = (
            OrderExecutor(store, fee_rate) if fee_rate is not None else OrderExecutor(store)
        )
        self.status = OrderStatusMachine(store)
        self.sweeper = LimitOrderSweeper(
            store,
            oracle,
            self.executor,
            self.status,
            order_timeout_s=order_timeout_s,
            max_workers=max_workers,
        )

    def place_order(
        self,
        user_id: str,
        coin_id: str,
        coin_symbol: str,
        side: OrderSide | str,
        quantity: Decimal,
        mode: OrderMode | str = OrderMode.MARKET,
        limit_price: Optional[Decimal] = None,
        current_price: Optional[Decimal] = None,
    ) -> Order:
        """Validate and record a new pending order.

        Limit orders are priced at their limit, market orders at
        ``current_price``. Buys require a balance covering the order
        value plus the trading fee and sells require enough holdings at
        placement time; both are checked again at execution.

        Raises:
            ValidationError: On malformed input
            ProfileNotFound: If the user has no profile
            InsufficientFunds: If a buy exceeds the current balance
            InsufficientHoldings: If a sell exceeds the current holding
        """
        try:
            side = OrderSide(side.lower() if isinstance(side, str) else side)
            mode = OrderMode(mode.lower() if isinstance(mode, str) else mode)
        except ValueError as e:
            raise ValidationError(str(e))
        cid = normalize_coin_id(coin_id)
        if not cid:
            raise ValidationError("coin_id is required")
        qty = _positive(quantity, "Quantity", InvalidQuantity)
        if mode is OrderMode.LIMIT:
            if limit_price is None:
                raise InvalidPrice("Limit orders require a limit price")
            price = _positive(limit_price, "Limit price", InvalidPrice)
        else:
            if limit_price is not None:
                raise ValidationError("Market orders do not take a limit price")
            if current_price is None:
                raise InvalidPrice("Market orders require the current price")
            price = _positive(current_price, "Current price", InvalidPrice)

        order = Order(
            user_id=user_id,
            coin_id=cid,
            coin_symbol=(coin_symbol or cid).strip().upper(),
            side=side,
            mode=mode,
            quantity=qty,
            total_amount=qty * price,
            limit_price=price if mode is OrderMode.LIMIT else None,
        )
        with self._store.unit_of_work() as session:
            if side is OrderSide.BUY:
                profile = session.get_profile(user_id)
                if profile is None:
                    raise ProfileNotFound(f"User {user_id} not found")
                required = order.total_amount + self.executor.trading_fee(order.total_amount)
                if profile.balance < required:
                    raise InsufficientFunds(required, profile.balance)
            else:
                holding = session.find_holding(user_id, cid)
                held = holding.quantity if holding else Decimal("0")
                if held < qty:
                    raise InsufficientHoldings(qty, held)
            session.insert_order(order)

        logger.info(
            f"Placed {mode.value} {side.value} order {order.id}: {qty} {cid} "
            f"(total {order.total_amount})"
        )
        return order

    def execute_order(self, order_id: str, execution_price: Decimal) -> OrderResult:
        """Execute a pending order and mark it completed.

        Args:
            order_id: Order to execute
            execution_price: Price per unit supplied by the caller

        Returns:
            OrderResult with EXECUTED (or ALREADY_EXECUTED on a repeat call),
            REJECTED status with reason if execution fails
        """
        try:
            receipt = self.executor.execute(order_id, execution_price)
        except LedgerError as e:
            logger.info(f"Order {order_id} rejected: {e}")
            return _rejected(e, order_id)

        try:
            completed = self.status.mark_completed(
                order_id, receipt.price_per_unit, receipt.total_amount
            )
        except StoreWriteFailure as e:
            logger.error(f"Order {order_id} executed but status update failed: {e}")
            return OrderResult(
                status=OrderOutcome.ALREADY_EXECUTED if receipt.replayed else OrderOutcome.EXECUTED,
                order_id=order_id,
                transaction=receipt.transaction,
                completed=False,
                message=f"Executed, but the order status could not be updated: {e}",
            )

        txn = receipt.transaction
        if receipt.replayed:
            return OrderResult(
                status=OrderOutcome.ALREADY_EXECUTED,
                order_id=order_id,
                transaction=txn,
                completed=True,
                message=f"Order {order_id} was already executed at {txn.price_per_unit}",
            )
        verb = "Bought" if txn.type is OrderSide.BUY else "Sold"
        return OrderResult(
            status=OrderOutcome.EXECUTED,
            order_id=order_id,
            transaction=txn,
            completed=completed,
            message=f"{verb} {txn.quantity} {txn.coin_symbol} at {txn.price_per_unit}",
        )

    def submit_market_order(
        self,
        user_id: str,
        coin_id: str,
        coin_symbol: str,
        side: OrderSide | str,
        quantity: Decimal,
    ) -> OrderResult:
        """Place and immediately execute a market order at the oracle price."""
        symbol = resolve_market_symbol(coin_id)
        if symbol is None:
            return OrderResult(
                status=OrderOutcome.REJECTED,
                rejection_reason=OrderRejectionReason.NO_PRICE_DATA,
                message=f"Coin {coin_id!r} is not supported",
            )
        try:
            quote = self._oracle.get_price(symbol)
            if not quote.last_price.is_finite() or quote.last_price <= 0:
                raise OracleUnavailable(f"No valid price available for {symbol}")
            order = self.place_order(
                user_id, coin_id, coin_symbol, side, quantity,
                mode=OrderMode.MARKET, current_price=quote.last_price,
            )
        except LedgerError as e:
            return _rejected(e)

        result = self.execute_order(order.id, quote.last_price)
        if result.status is OrderOutcome.REJECTED:
            # Market orders are never swept; a rejected one must not stay pending.
            try:
                self.status.cancel(order.id)
            except LedgerError as e:
                logger.error(f"Could not cancel rejected market order {order.id}: {e}")
        return result

    def cancel_order(self, order_id: str, user_id: Optional[str] = None) -> OrderResult:
        """Cancel a pending order."""
        try:
            self.status.cancel(order_id, user_id=user_id)
        except LedgerError as e:
            return _rejected(e, order_id)
        return OrderResult(
            status=OrderOutcome.CANCELLED,
            order_id=order_id,
            message="Order cancelled successfully",
        )

    def sweep_pending_limit_orders(self) -> SweepReport:
        return self.sweeper.sweep()
