"""Order executor.

Turns a priced pending order into balance, holding and transaction
mutations inside a single store unit of work. The executor never touches
the order's status; callers transition the order afterwards through the
status machine, so a crash between the two steps leaves a pending order
that already owns its transaction. Re-executing such an order is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from coinledger.data.symbols import normalize_coin_id
from coinledger.errors import (
    DuplicateRecord,
    InsufficientFunds,
    InsufficientHoldings,
    InvalidPrice,
    InvalidQuantity,
    OrderNotFound,
    OrderNotPending,
    ProfileNotFound,
)
from coinledger.models import (
    Holding,
    Order,
    OrderSide,
    OrderStatus,
    Transaction,
    utcnow,
)
from coinledger.storage import ILedgerSession, ILedgerStore
from coinledger.util.env import DEFAULT_FEE_RATE

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReceipt:
    """Outcome of a successful execute() call.

    Attributes:
        transaction: The order's transaction record
        replayed: True if the order had already been executed and nothing
            was mutated by this call
    """
    transaction: Transaction
    replayed: bool = False

    @property
    def total_amount(self) -> Decimal:
        return self.transaction.total_amount

    @property
    def price_per_unit(self) -> Decimal:
        return self.transaction.price_per_unit


class OrderExecutor:
    """Executes orders against the ledger store exactly once."""

    def __init__(self, store: ILedgerStore, fee_rate: Decimal = DEFAULT_FEE_RATE) -> None:
        """Initialize the executor.

        Args:
            store: Ledger store providing the unit of work
            fee_rate: Trading fee charged on both sides (0.001 = 0.1%)
        """
        self._store = store
        self._fee_rate = fee_rate

    @property
    def fee_rate(self) -> Decimal:
        return self._fee_rate

    def trading_fee(self, total_amount: Decimal) -> Decimal:
        return total_amount * self._fee_rate

    def execute(self, order_id: str, execution_price: Decimal) -> ExecutionReceipt:
        """Execute a pending order at the given price.

        Args:
            order_id: Order to execute
            execution_price: Price per unit to fill at

        Returns:
            ExecutionReceipt with the order's transaction

        Raises:
            InvalidPrice: If execution_price is not positive
            InvalidQuantity: If the stored order quantity is not positive
            OrderNotFound: If the order does not exist
            OrderNotPending: If the order is completed or cancelled and has
                no transaction
            ProfileNotFound: If the order's user has no profile
            InsufficientFunds: If a buy would overdraw the balance
            InsufficientHoldings: If a sell exceeds the held quantity
            StoreWriteFailure: If the store fails; nothing is persisted
        """
        try:
            execution_price = Decimal(str(execution_price))
        except InvalidOperation:
            raise InvalidPrice(f"Execution price {execution_price!r} is not a number")
        if not execution_price.is_finite() or execution_price <= 0:
            raise InvalidPrice(f"Execution price must be greater than zero, got {execution_price}")

        try:
            with self._store.unit_of_work() as session:
                existing = session.get_transaction_for_order(order_id)
                if existing is not None:
                    logger.info(f"Order {order_id} already executed by transaction {existing.id}; skipping")
                    return ExecutionReceipt(transaction=existing, replayed=True)

                order = session.get_order(order_id)
                if order is None:
                    raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
                if order.status is not OrderStatus.PENDING:
                    raise OrderNotPending(
                        f"Order {order_id} is {order.status.value}, only pending orders execute",
                        order_id=order_id,
                    )
                if order.quantity <= 0:
                    raise InvalidQuantity(f"Order {order_id} has non-positive quantity {order.quantity}")

                if order.side is OrderSide.BUY:
                    transaction = self._execute_buy(session, order, execution_price)
                else:
                    transaction = self._execute_sell(session, order, execution_price)
                session.insert_transaction(transaction)
        except DuplicateRecord:
            # A concurrent execution recorded the transaction first; ours was rolled back.
            with self._store.unit_of_work(readonly=True) as session:
                existing = session.get_transaction_for_order(order_id)
            if existing is None:
                raise
            logger.warning(f"Order {order_id} was executed concurrently; treating as replay")
            return ExecutionReceipt(transaction=existing, replayed=True)

        return ExecutionReceipt(transaction=transaction)

    def _execute_buy(self, session: ILedgerSession, order: Order, price: Decimal) -> Transaction:
        total_amount = price * order.quantity
        total_cost = total_amount + self.trading_fee(total_amount)
        coin_id = normalize_coin_id(order.coin_id)

        profile = session.get_profile(order.user_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {order.user_id} not found", order_id=order.id)
        new_balance = profile.balance - total_cost
        if new_balance < 0:
            logger.error(
                f"Insufficient balance for user {order.user_id}. "
                f"Required: {total_cost}, Available: {profile.balance}"
            )
            raise InsufficientFunds(total_cost, profile.balance, order_id=order.id)
        session.update_balance(order.user_id, new_balance)

        now = utcnow()
        holding = session.find_holding(order.user_id, coin_id)
        if holding is not None:
            total_qty = holding.quantity + order.quantity
            new_avg = (holding.total_cost + total_amount) / total_qty
            session.update_holding(holding.id, total_qty, new_avg, now)
        else:
            session.insert_holding(
                Holding(
                    user_id=order.user_id,
                    coin_id=coin_id,
                    coin_symbol=order.coin_symbol,
                    quantity=order.quantity,
                    average_buy_price=price,
                    last_updated=now,
                )
            )

        logger.info(
            f"BUY executed for order {order.id}: {order.quantity} {coin_id} @ {price}, "
            f"deducted {total_cost}, new balance {new_balance}"
        )
        return self._transaction(order, coin_id, price, total_amount, now)

    def _execute_sell(self, session: ILedgerSession, order: Order, price: Decimal) -> Transaction:
        total_amount = price * order.quantity
        proceeds = total_amount - self.trading_fee(total_amount)
        coin_id = normalize_coin_id(order.coin_id)

        profile = session.get_profile(order.user_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {order.user_id} not found", order_id=order.id)

        holding = session.find_holding(order.user_id, coin_id)
        held = holding.quantity if holding is not None else Decimal("0")
        if holding is None or held < order.quantity:
            logger.error(
                f"Insufficient holdings for user {order.user_id}. "
                f"Selling: {order.quantity}, Held: {held}"
            )
            raise InsufficientHoldings(order.quantity, held, order_id=order.id)

        now = utcnow()
        remaining = held - order.quantity
        if remaining <= 0:
            session.delete_holding(holding.id)
        else:
            session.update_holding(holding.id, remaining, holding.average_buy_price, now)

        new_balance = profile.balance + proceeds
        session.update_balance(order.user_id, new_balance)

        logger.info(
            f"SELL executed for order {order.id}: {order.quantity} {coin_id} @ {price}, "
            f"credited {proceeds}, new balance {new_balance}"
        )
        return self._transaction(order, coin_id, price, total_amount, now)

    @staticmethod
    def _transaction(
        order: Order, coin_id: str, price: Decimal, total_amount: Decimal, when
    ) -> Transaction:
        return Transaction(
            user_id=order.user_id,
            order_id=order.id,
            type=order.side,
            coin_id=coin_id,
            coin_symbol=order.coin_symbol,
            quantity=order.quantity,
            price_per_unit=price,
            total_amount=total_amount,
            transaction_date=when,
        )
