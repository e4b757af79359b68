"""Data models for the trading ledger."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class OrderSide(Enum):
    """Direction of an order (also the transaction type)."""
    BUY = "buy"
    SELL = "sell"


class OrderMode(Enum):
    """How an order is priced."""
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(Enum):
    """Lifecycle state of an order."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


@dataclass
class Profile:
    """A user's cash account.

    Attributes:
        id: Opaque user identifier
        balance: Available cash, never negative
    """
    id: str
    balance: Decimal


@dataclass
class Order:
    """A user's trade intent.

    Attributes:
        id: Unique order identifier (UUID)
        user_id: Owner of the order
        coin_id: Normalized coin identifier (e.g., "bitcoin")
        coin_symbol: Display symbol (e.g., "BTC")
        side: BUY or SELL
        mode: MARKET or LIMIT
        quantity: Amount of coin to trade
        total_amount: quantity × price, recomputed at execution
        limit_price: Threshold price, set only for limit orders
        status: Current lifecycle state
        price_per_unit: Execution price once completed
        created_at: Placement time
        completed_at: Completion time, if completed
    """
    user_id: str
    coin_id: str
    coin_symbol: str
    side: OrderSide
    mode: OrderMode
    quantity: Decimal
    total_amount: Decimal
    limit_price: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.PENDING
    price_per_unit: Optional[Decimal] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Holding:
    """A user's position in one coin.

    Attributes:
        user_id: Owner of the position
        coin_id: Normalized coin identifier
        coin_symbol: Display symbol
        quantity: Amount held, always positive while the row exists
        average_buy_price: Volume-weighted average purchase price
        last_updated: Time of the last mutation
    """
    user_id: str
    coin_id: str
    coin_symbol: str
    quantity: Decimal
    average_buy_price: Decimal
    last_updated: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def total_cost(self) -> Decimal:
        """Calculate total cost basis for this holding."""
        return self.quantity * self.average_buy_price


@dataclass
class Transaction:
    """Immutable audit record of an executed order.

    Attributes:
        id: Unique transaction identifier (UUID)
        user_id: Owner of the order
        order_id: The executed order; at most one transaction per order
        type: BUY or SELL
        coin_id: Normalized coin identifier
        coin_symbol: Display symbol
        quantity: Amount traded
        price_per_unit: Execution price per unit
        total_amount: quantity × price_per_unit, before fees
        transaction_date: Time of execution
    """
    user_id: str
    order_id: str
    type: OrderSide
    coin_id: str
    coin_symbol: str
    quantity: Decimal
    price_per_unit: Decimal
    total_amount: Decimal
    transaction_date: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
