"""Order status machine: pending -> completed | cancelled."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from coinledger.errors import InvalidTransition, OrderNotFound
from coinledger.models import OrderStatus, utcnow
from coinledger.storage import ILedgerStore

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


class OrderStatusMachine:
    """Guards order status transitions.

    Every transition is a conditional write on ``status = 'pending'``, so a
    second sweep, a direct execution or a cancellation racing on the same
    order can only ever move it out of ``pending`` once.
    """

    def __init__(self, store: ILedgerStore) -> None:
        self._store = store

    def mark_completed(
        self,
        order_id: str,
        execution_price: Decimal,
        total_amount: Decimal,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Transition a pending order to completed.

        Must only be called after the executor succeeded for this order.
        If the order is no longer pending this is a silent no-op.

        Returns:
            True if this call completed the order
        """
        with self._store.unit_of_work() as session:
            changed = session.complete_order(
                order_id, execution_price, total_amount, completed_at or utcnow()
            )
        if changed:
            logger.info(f"Order {order_id} completed at {execution_price} (total {total_amount})")
        else:
            logger.debug(f"Order {order_id} not pending; completion skipped")
        return changed

    def cancel(self, order_id: str, user_id: Optional[str] = None) -> None:
        """Cancel a pending order.

        Args:
            order_id: Order to cancel
            user_id: If given, the order must belong to this user

        Raises:
            OrderNotFound: If the order does not exist (or is not the user's)
            InvalidTransition: If the order is already completed or cancelled
        """
        with self._store.unit_of_work() as session:
            order = session.get_order(order_id)
            if order is None or (user_id is not None and order.user_id != user_id):
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
            if not can_transition(order.status, OrderStatus.CANCELLED):
                raise InvalidTransition(
                    f"Cannot cancel order in '{order.status.value}' status. "
                    "Only pending orders can be cancelled."
                )
            session.cancel_order(order_id)
        logger.info(f"Order {order_id} cancelled")
