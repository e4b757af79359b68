"""Limit-order sweeper.

One sweep evaluates every pending limit order against the live market
price and executes those whose limit condition holds. Orders are handled
independently: a failed price lookup or a rejected execution is recorded
in the report and the sweep moves on.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Union

from coinledger.data.providers import IPriceOracle, PriceQuote
from coinledger.data.symbols import normalize_coin_id, resolve_market_symbol
from coinledger.errors import (
    LedgerError,
    OracleUnavailable,
    OrderNotPending,
    StoreWriteFailure,
)
from coinledger.models import Order, OrderSide
from coinledger.storage import ILedgerStore
from coinledger.trading.executor import OrderExecutor
from coinledger.trading.status import OrderStatusMachine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Summary of one sweep.

    Attributes:
        checked: Number of pending limit orders examined
        executed: Number of orders executed and completed
        waiting: Orders whose limit condition is not met yet
        skipped: Reasons for orders that could not be evaluated
        errors: Reasons for orders whose execution or completion failed
        executed_order_ids: Ids of the completed orders
    """
    checked: int = 0
    executed: int = 0
    waiting: int = 0
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    executed_order_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def limit_condition_met(side: OrderSide, current_price: Decimal, limit_price: Decimal) -> bool:
    """Fill only at a price at least as good as requested."""
    if side is OrderSide.BUY:
        return current_price <= limit_price
    return current_price >= limit_price


_PriceResult = Union[PriceQuote, Exception]


class LimitOrderSweeper:
    """Scans pending limit orders and executes the ones that are in the money."""

    def __init__(
        self,
        store: ILedgerStore,
        oracle: IPriceOracle,
        executor: OrderExecutor,
        status_machine: OrderStatusMachine,
        order_timeout_s: float = 10.0,
        max_workers: int = 4,
        symbol_resolver: Callable[[str], Optional[str]] = resolve_market_symbol,
    ) -> None:
        """Initialize the sweeper.

        Args:
            store: Ledger store to read pending orders from
            oracle: Price source for market symbols
            executor: Executor applying fills to the ledger
            status_machine: Completes orders after execution
            order_timeout_s: Upper bound on each price lookup
            max_workers: Number of concurrent price lookups
            symbol_resolver: Maps a coin id to a market symbol (None if unsupported)
        """
        self._store = store
        self._oracle = oracle
        self._executor = executor
        self._status = status_machine
        self._order_timeout_s = order_timeout_s
        self._max_workers = max(1, max_workers)
        self._resolve = symbol_resolver

    def sweep(self) -> SweepReport:
        """Run one pass over all pending limit orders."""
        report = SweepReport()
        try:
            with self._store.unit_of_work(readonly=True) as session:
                orders = session.list_pending_limit_orders()
        except StoreWriteFailure as e:
            logger.error(f"Error fetching pending orders: {e}")
            report.errors.append(f"Failed to fetch pending orders: {e}")
            return report

        if not orders:
            logger.debug("No pending limit orders")
            return report

        symbols = {order.id: self._resolve(normalize_coin_id(order.coin_id)) for order in orders}
        prices = self._fetch_prices(s for s in symbols.values() if s)

        for order in orders:
            report.checked += 1
            symbol = symbols[order.id]
            try:
                self._process(order, symbol, prices.get(symbol) if symbol else None, report)
            except Exception as e:
                logger.exception(f"Error processing order {order.id}")
                report.errors.append(f"Order {order.id}: {e}")

        logger.info(
            f"Sweep finished: checked={report.checked} executed={report.executed} "
            f"waiting={report.waiting} skipped={len(report.skipped)} errors={len(report.errors)}"
        )
        return report

    def _fetch_prices(self, symbols: Iterable[str]) -> Dict[str, _PriceResult]:
        """Look up each distinct symbol once, at most ``max_workers`` at a time."""
        unique = sorted(set(symbols))
        results: Dict[str, _PriceResult] = {}
        for start in range(0, len(unique), self._max_workers):
            results.update(self._fetch_batch(unique[start:start + self._max_workers]))
        return results

    def _fetch_batch(self, batch: List[str]) -> Dict[str, _PriceResult]:
        """Run one batch of lookups under a shared deadline.

        Each batch gets its own pool, so a lookup abandoned at the deadline
        never holds a worker needed by a later batch.
        """
        results: Dict[str, _PriceResult] = {}
        pool = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="sweep-price")
        try:
            futures = {sym: pool.submit(self._oracle.get_price, sym) for sym in batch}
            wait(futures.values(), timeout=self._order_timeout_s)
            for sym, future in futures.items():
                if not future.done():
                    logger.warning(f"Price lookup for {sym} timed out after {self._order_timeout_s}s")
                    results[sym] = OracleUnavailable(
                        f"price lookup timed out after {self._order_timeout_s}s"
                    )
                    continue
                error = future.exception()
                if error is not None:
                    logger.warning(f"Price lookup for {sym} failed: {error}")
                    results[sym] = error
                else:
                    results[sym] = future.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _process(
        self,
        order: Order,
        symbol: Optional[str],
        price: Optional[_PriceResult],
        report: SweepReport,
    ) -> None:
        coin_id = normalize_coin_id(order.coin_id)
        if symbol is None:
            msg = f"Order {order.id}: coin {coin_id!r} not supported (symbol not found)"
            logger.info(msg)
            report.skipped.append(msg)
            return
        if price is None or isinstance(price, Exception):
            msg = f"Order {order.id}: price unavailable for {symbol}: {price}"
            logger.info(msg)
            report.skipped.append(msg)
            return

        current = price.last_price
        limit = order.limit_price
        if not current.is_finite() or current <= 0 or limit is None or limit <= 0:
            msg = f"Order {order.id}: invalid prices - current: {current}, limit: {limit}"
            logger.warning(msg)
            report.skipped.append(msg)
            return

        if not limit_condition_met(order.side, current, limit):
            logger.debug(
                f"Order {order.id}: {order.side.value} limit {limit} not met at {current}"
            )
            report.waiting += 1
            return

        logger.info(
            f"Executing {order.side.value} limit order {order.id} at {current} (limit {limit})"
        )
        try:
            receipt = self._executor.execute(order.id, current)
        except OrderNotPending as e:
            report.skipped.append(f"Order {order.id}: {e}")
            return
        except LedgerError as e:
            logger.error(f"Execution failed for order {order.id}: {e}")
            report.errors.append(f"Order {order.id}: {e}")
            return

        try:
            completed = self._status.mark_completed(
                order.id, receipt.price_per_unit, receipt.total_amount
            )
        except StoreWriteFailure as e:
            logger.error(f"Failed to update order status {order.id}: {e}")
            report.errors.append(
                f"Order {order.id}: executed but status update failed ({e}); "
                "left pending for reconciliation"
            )
            return

        if completed:
            report.executed += 1
            report.executed_order_ids.append(order.id)
        else:
            report.skipped.append(f"Order {order.id}: no longer pending after execution")
