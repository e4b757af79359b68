# Trading module
"""Order execution, limit-order sweeping, status transitions and valuation."""

from .executor import ExecutionReceipt, OrderExecutor
from .status import OrderStatusMachine, can_transition
from .sweeper import LimitOrderSweeper, SweepReport, limit_condition_met
from .orders import (
    OrderOutcome,
    OrderRejectionReason,
    OrderResult,
    IOrderService,
    OrderService,
)
from .reconcile import LedgerReconciler, ReconciliationReport
from .portfolio import HoldingValue, PortfolioCalculator, PortfolioSummary

__all__ = [
    "ExecutionReceipt",
    "OrderExecutor",
    "OrderStatusMachine",
    "can_transition",
    "LimitOrderSweeper",
    "SweepReport",
    "limit_condition_met",
    "OrderOutcome",
    "OrderRejectionReason",
    "OrderResult",
    "IOrderService",
    "OrderService",
    "LedgerReconciler",
    "ReconciliationReport",
    "HoldingValue",
    "PortfolioCalculator",
    "PortfolioSummary",
]
