"""Explicit reconciliation passes.

These never run as part of a sweep or an execution; an operator (or a
scheduled job) invokes them to repair state left behind by partial
failures.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from coinledger.errors import StoreWriteFailure
from coinledger.storage import ILedgerStore
from coinledger.trading.status import OrderStatusMachine

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    checked: int = 0
    completed_order_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class LedgerReconciler:
    def __init__(self, store: ILedgerStore, status_machine: Optional[OrderStatusMachine] = None) -> None:
        self._store = store
        self._status = status_machine or OrderStatusMachine(store)

    def reconcile_pending_orders(self) -> ReconciliationReport:
        """Complete pending orders that already own a transaction.

        Such orders were executed but their status update failed. They are
        completed with the price, total and date recorded on the transaction.
        """
        report = ReconciliationReport()
        with self._store.unit_of_work(readonly=True) as session:
            pairs = session.list_pending_orders_with_transactions()

        for order, txn in pairs:
            report.checked += 1
            try:
                if self._status.mark_completed(
                    order.id, txn.price_per_unit, txn.total_amount, txn.transaction_date
                ):
                    report.completed_order_ids.append(order.id)
            except StoreWriteFailure as e:
                logger.error(f"Failed to reconcile order {order.id}: {e}")
                report.errors.append(f"Order {order.id}: {e}")

        if report.completed_order_ids:
            logger.info(f"Reconciled {len(report.completed_order_ids)} pending orders with transactions")
        return report

    def cleanup_zero_holdings(self, user_id: Optional[str] = None) -> int:
        """Delete holdings whose quantity is zero or negative.

        Returns:
            Number of holdings deleted
        """
        deleted = 0
        with self._store.unit_of_work() as session:
            for holding in session.list_holdings(user_id):
                if holding.quantity <= 0:
                    session.delete_holding(holding.id)
                    deleted += 1
                    logger.info(
                        f"Cleanup: deleted holding {holding.id} ({holding.user_id}/{holding.coin_id})"
                    )
        return deleted
