"""Ledger store interfaces and implementations.

Provides the abstract unit-of-work interface over the four ledger entities
(profiles, orders, holdings, transactions) and a SQLite implementation.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import ContextManager, Iterator, List, Optional, Tuple

from coinledger.data.symbols import normalize_coin_id
from coinledger.errors import DuplicateRecord, StoreWriteFailure
from coinledger.models import (
    Holding,
    Order,
    OrderMode,
    OrderSide,
    OrderStatus,
    Profile,
    Transaction,
)

logger = logging.getLogger(__name__)


class ILedgerSession(ABC):
    """Row-level access to the ledger inside one unit of work.

    Every read and write made through a session belongs to the same
    store transaction; nothing is visible to other sessions until the
    unit of work commits.
    """

    # profiles ----------------------------------------------------------
    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Profile]:
        ...

    @abstractmethod
    def save_profile(self, profile: Profile) -> None:
        """Insert the profile or overwrite its balance."""
        ...

    @abstractmethod
    def update_balance(self, user_id: str, balance: Decimal) -> None:
        ...

    # orders ------------------------------------------------------------
    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    def insert_order(self, order: Order) -> None:
        ...

    @abstractmethod
    def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        mode: Optional[OrderMode] = None,
    ) -> List[Order]:
        ...

    @abstractmethod
    def list_pending_limit_orders(self) -> List[Order]:
        """Pending limit orders that carry a limit price."""
        ...

    @abstractmethod
    def complete_order(
        self,
        order_id: str,
        price_per_unit: Decimal,
        total_amount: Decimal,
        completed_at: datetime,
    ) -> bool:
        """Mark a pending order completed.

        Returns:
            True if the order was pending and is now completed, False if
            it was missing or already in a terminal state
        """
        ...

    @abstractmethod
    def cancel_order(self, order_id: str) -> bool:
        """Mark a pending order cancelled; same contract as complete_order."""
        ...

    # holdings ----------------------------------------------------------
    @abstractmethod
    def find_holding(self, user_id: str, coin_id: str) -> Optional[Holding]:
        """Find a holding by coin id, ignoring case and surrounding whitespace."""
        ...

    @abstractmethod
    def list_holdings(self, user_id: Optional[str] = None) -> List[Holding]:
        ...

    @abstractmethod
    def insert_holding(self, holding: Holding) -> None:
        ...

    @abstractmethod
    def update_holding(
        self,
        holding_id: str,
        quantity: Decimal,
        average_buy_price: Decimal,
        last_updated: datetime,
    ) -> None:
        ...

    @abstractmethod
    def delete_holding(self, holding_id: str) -> None:
        ...

    # transactions ------------------------------------------------------
    @abstractmethod
    def get_transaction_for_order(self, order_id: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> None:
        """Record a transaction.

        Raises:
            DuplicateRecord: If the order already has a transaction
        """
        ...

    @abstractmethod
    def list_transactions(self, user_id: Optional[str] = None) -> List[Transaction]:
        ...

    @abstractmethod
    def list_pending_orders_with_transactions(self) -> List[Tuple[Order, Transaction]]:
        """Pending orders that already own a transaction."""
        ...


class ILedgerStore(ABC):
    """Abstract base class for ledger stores."""

    @abstractmethod
    def unit_of_work(self, readonly: bool = False) -> ContextManager[ILedgerSession]:
        """Open an atomic unit of work.

        The block's writes are committed together when it exits normally
        and rolled back together when it raises.

        Raises:
            StoreWriteFailure: If the store cannot begin or commit
        """
        ...


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        balance TEXT NOT NULL CHECK (CAST(balance AS REAL) >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        coin_id TEXT NOT NULL,
        coin_symbol TEXT NOT NULL,
        side TEXT NOT NULL CHECK (side IN ('buy', 'sell')),
        mode TEXT NOT NULL CHECK (mode IN ('market', 'limit')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'completed', 'cancelled')),
        quantity TEXT NOT NULL,
        limit_price TEXT,
        price_per_unit TEXT,
        total_amount TEXT NOT NULL,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, mode)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS holdings (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        coin_id TEXT NOT NULL,
        coin_symbol TEXT NOT NULL,
        quantity TEXT NOT NULL,
        average_buy_price TEXT NOT NULL,
        last_updated TEXT NOT NULL
    )
    """,
    "DROP INDEX IF EXISTS ux_holdings_user_coin",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_holdings_user_coin_id
        ON holdings(user_id, lower(trim(coin_id, ' ' || char(9, 10, 11, 12, 13))))
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        order_id TEXT NOT NULL UNIQUE REFERENCES orders(id),
        type TEXT NOT NULL CHECK (type IN ('buy', 'sell')),
        coin_id TEXT NOT NULL,
        coin_symbol TEXT NOT NULL,
        quantity TEXT NOT NULL,
        price_per_unit TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        transaction_date TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, transaction_date)",
)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _order_from_row(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        user_id=row["user_id"],
        coin_id=row["coin_id"],
        coin_symbol=row["coin_symbol"],
        side=OrderSide(row["side"]),
        mode=OrderMode(row["mode"]),
        status=OrderStatus(row["status"]),
        quantity=Decimal(row["quantity"]),
        limit_price=_dec(row["limit_price"]),
        price_per_unit=_dec(row["price_per_unit"]),
        total_amount=Decimal(row["total_amount"]),
        created_at=_ts(row["created_at"]),
        completed_at=_ts(row["completed_at"]),
    )


def _holding_from_row(row: sqlite3.Row) -> Holding:
    return Holding(
        id=row["id"],
        user_id=row["user_id"],
        coin_id=row["coin_id"],
        coin_symbol=row["coin_symbol"],
        quantity=Decimal(row["quantity"]),
        average_buy_price=Decimal(row["average_buy_price"]),
        last_updated=_ts(row["last_updated"]),
    )


def _transaction_from_row(row: sqlite3.Row, prefix: str = "") -> Transaction:
    return Transaction(
        id=row[f"{prefix}id"],
        user_id=row[f"{prefix}user_id"],
        order_id=row[f"{prefix}order_id"],
        type=OrderSide(row[f"{prefix}type"]),
        coin_id=row[f"{prefix}coin_id"],
        coin_symbol=row[f"{prefix}coin_symbol"],
        quantity=Decimal(row[f"{prefix}quantity"]),
        price_per_unit=Decimal(row[f"{prefix}price_per_unit"]),
        total_amount=Decimal(row[f"{prefix}total_amount"]),
        transaction_date=_ts(row[f"{prefix}transaction_date"]),
    )


class SqliteLedgerSession(ILedgerSession):
    """Session bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_profile(self, user_id: str) -> Optional[Profile]:
        row = self._conn.execute(
            "SELECT id, balance FROM profiles WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None
        return Profile(id=row["id"], balance=Decimal(row["balance"]))

    def save_profile(self, profile: Profile) -> None:
        self._conn.execute(
            "INSERT INTO profiles(id, balance) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET balance = excluded.balance",
            (profile.id, str(profile.balance)),
        )

    def update_balance(self, user_id: str, balance: Decimal) -> None:
        self._conn.execute(
            "UPDATE profiles SET balance = ? WHERE id = ?", (str(balance), user_id)
        )

    def get_order(self, order_id: str) -> Optional[Order]:
        row = self._conn.execute(
            "SELECT * FROM orders WHERE id = ?", (order_id,)
        ).fetchone()
        return _order_from_row(row) if row is not None else None

    def insert_order(self, order: Order) -> None:
        try:
            self._conn.execute(
                "INSERT INTO orders(id, user_id, coin_id, coin_symbol, side, mode, status, "
                "quantity, limit_price, price_per_unit, total_amount, created_at, completed_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    order.id,
                    order.user_id,
                    normalize_coin_id(order.coin_id),
                    order.coin_symbol,
                    order.side.value,
                    order.mode.value,
                    order.status.value,
                    str(order.quantity),
                    _str(order.limit_price),
                    _str(order.price_per_unit),
                    str(order.total_amount),
                    order.created_at.isoformat(),
                    order.completed_at.isoformat() if order.completed_at else None,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(f"Order {order.id} already exists") from e

    def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        mode: Optional[OrderMode] = None,
    ) -> List[Order]:
        clauses = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if mode is not None:
            clauses.append("mode = ?")
            params.append(mode.value)
        sql = "SELECT * FROM orders"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"
        return [_order_from_row(r) for r in self._conn.execute(sql, params)]

    def list_pending_limit_orders(self) -> List[Order]:
        rows = self._conn.execute(
            "SELECT * FROM orders WHERE status = 'pending' AND mode = 'limit' "
            "AND limit_price IS NOT NULL ORDER BY created_at"
        )
        return [_order_from_row(r) for r in rows]

    def complete_order(
        self,
        order_id: str,
        price_per_unit: Decimal,
        total_amount: Decimal,
        completed_at: datetime,
    ) -> bool:
        cur = self._conn.execute(
            "UPDATE orders SET status = 'completed', price_per_unit = ?, total_amount = ?, "
            "completed_at = ? WHERE id = ? AND status = 'pending'",
            (str(price_per_unit), str(total_amount), completed_at.isoformat(), order_id),
        )
        return cur.rowcount == 1

    def cancel_order(self, order_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE orders SET status = 'cancelled' WHERE id = ? AND status = 'pending'",
            (order_id,),
        )
        return cur.rowcount == 1

    def find_holding(self, user_id: str, coin_id: str) -> Optional[Holding]:
        row = self._conn.execute(
            "SELECT * FROM holdings WHERE user_id = ? AND normalize_coin_id(coin_id) = ?",
            (user_id, normalize_coin_id(coin_id)),
        ).fetchone()
        return _holding_from_row(row) if row is not None else None

    def list_holdings(self, user_id: Optional[str] = None) -> List[Holding]:
        if user_id is None:
            rows = self._conn.execute("SELECT * FROM holdings ORDER BY user_id, coin_id")
        else:
            rows = self._conn.execute(
                "SELECT * FROM holdings WHERE user_id = ? ORDER BY coin_id", (user_id,)
            )
        return [_holding_from_row(r) for r in rows]

    def insert_holding(self, holding: Holding) -> None:
        try:
            self._conn.execute(
                "INSERT INTO holdings(id, user_id, coin_id, coin_symbol, quantity, "
                "average_buy_price, last_updated) VALUES (?,?,?,?,?,?,?)",
                (
                    holding.id,
                    holding.user_id,
                    normalize_coin_id(holding.coin_id),
                    holding.coin_symbol,
                    str(holding.quantity),
                    str(holding.average_buy_price),
                    holding.last_updated.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(
                f"Holding for {holding.user_id}/{holding.coin_id} already exists"
            ) from e

    def update_holding(
        self,
        holding_id: str,
        quantity: Decimal,
        average_buy_price: Decimal,
        last_updated: datetime,
    ) -> None:
        self._conn.execute(
            "UPDATE holdings SET quantity = ?, average_buy_price = ?, last_updated = ? "
            "WHERE id = ?",
            (str(quantity), str(average_buy_price), last_updated.isoformat(), holding_id),
        )

    def delete_holding(self, holding_id: str) -> None:
        self._conn.execute("DELETE FROM holdings WHERE id = ?", (holding_id,))

    def get_transaction_for_order(self, order_id: str) -> Optional[Transaction]:
        row = self._conn.execute(
            "SELECT * FROM transactions WHERE order_id = ?", (order_id,)
        ).fetchone()
        return _transaction_from_row(row) if row is not None else None

    def insert_transaction(self, transaction: Transaction) -> None:
        try:
            self._conn.execute(
                "INSERT INTO transactions(id, user_id, order_id, type, coin_id, coin_symbol, "
                "quantity, price_per_unit, total_amount, transaction_date) "
                "VALUES (?,?,?,?,?,?,?,?,?,?)",
                (
                    transaction.id,
                    transaction.user_id,
                    transaction.order_id,
                    transaction.type.value,
                    normalize_coin_id(transaction.coin_id),
                    transaction.coin_symbol,
                    str(transaction.quantity),
                    str(transaction.price_per_unit),
                    str(transaction.total_amount),
                    transaction.transaction_date.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise DuplicateRecord(
                    f"Order {transaction.order_id} already has a transaction"
                ) from e
            raise StoreWriteFailure(
                f"Transaction for order {transaction.order_id} rejected: {e}"
            ) from e

    def list_transactions(self, user_id: Optional[str] = None) -> List[Transaction]:
        if user_id is None:
            rows = self._conn.execute("SELECT * FROM transactions ORDER BY transaction_date")
        else:
            rows = self._conn.execute(
                "SELECT * FROM transactions WHERE user_id = ? ORDER BY transaction_date",
                (user_id,),
            )
        return [_transaction_from_row(r) for r in rows]

    def list_pending_orders_with_transactions(self) -> List[Tuple[Order, Transaction]]:
        rows = self._conn.execute(
            """
            SELECT o.*,
                   t.id AS t_id, t.user_id AS t_user_id, t.order_id AS t_order_id,
                   t.type AS t_type, t.coin_id AS t_coin_id, t.coin_symbol AS t_coin_symbol,
                   t.quantity AS t_quantity, t.price_per_unit AS t_price_per_unit,
                   t.total_amount AS t_total_amount, t.transaction_date AS t_transaction_date
            FROM orders o JOIN transactions t ON t.order_id = o.id
            WHERE o.status = 'pending'
            ORDER BY o.created_at
            """
        )
        return [(_order_from_row(r), _transaction_from_row(r, prefix="t_")) for r in rows]


class SqliteLedgerStore(ILedgerStore):
    """SQLite-backed ledger store.

    Each unit of work runs on its own connection inside a ``BEGIN
    IMMEDIATE`` transaction, so concurrent writers (sweeps overlapping with
    direct executions, in threads or processes) are serialized by the
    database's write lock. The database must be a file; an in-memory
    database would not be shared between connections.
    """

    def __init__(self, path: str | Path = "ledger.db", busy_timeout_s: float = 10.0) -> None:
        """Open (and if needed create) the ledger database.

        Args:
            path: Database file path
            busy_timeout_s: How long a unit of work waits for the write lock
        """
        self.path = Path(path)
        self._busy_timeout_s = busy_timeout_s
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                for statement in _SCHEMA:
                    conn.execute(statement)
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize ledger at '{self.path}': {e}")
            raise StoreWriteFailure(f"Cannot initialize ledger: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self._busy_timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        # Holding lookups match coin ids exactly as the Python normalizer does.
        conn.create_function("normalize_coin_id", 1, normalize_coin_id, deterministic=True)
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def unit_of_work(self, readonly: bool = False) -> Iterator[SqliteLedgerSession]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot open ledger: {e}") from e
        try:
            conn.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
            yield SqliteLedgerSession(conn)
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            logger.error(f"Ledger unit of work failed: {e}")
            raise StoreWriteFailure(str(e)) from e
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()
