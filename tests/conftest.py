from __future__ import annotations

import tempfile
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, Optional

import pytest

from coinledger.data.providers import IPriceOracle, PriceQuote
from coinledger.errors import OracleUnavailable
from coinledger.models import Holding, Order, OrderMode, OrderSide, Profile
from coinledger.storage import SqliteLedgerStore


USER_ID = "user-1"


class MockPriceOracle(IPriceOracle):
    """Oracle returning configurable prices; unknown symbols are unavailable."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None) -> None:
        self._prices = {k.upper(): v for k, v in (prices or {}).items()}
        self.calls: list[str] = []

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol.upper()] = price

    def get_price(self, symbol: str) -> PriceQuote:
        self.calls.append(symbol)
        price = self._prices.get(symbol.upper())
        if price is None:
            raise OracleUnavailable(f"No price for {symbol}")
        return PriceQuote(symbol=symbol.upper(), last_price=price)


@contextmanager
def temp_store() -> Iterator[SqliteLedgerStore]:
    """Fresh ledger in a temporary directory (usable inside Hypothesis tests)."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield SqliteLedgerStore(Path(tmpdir) / "ledger.db")


def seed_profile(store, balance: Decimal, user_id: str = USER_ID) -> None:
    with store.unit_of_work() as session:
        session.save_profile(Profile(id=user_id, balance=balance))


def seed_holding(
    store,
    coin_id: str,
    quantity: Decimal,
    average_buy_price: Decimal,
    user_id: str = USER_ID,
    coin_symbol: str = "BTC",
) -> None:
    with store.unit_of_work() as session:
        session.insert_holding(
            Holding(
                user_id=user_id,
                coin_id=coin_id,
                coin_symbol=coin_symbol,
                quantity=quantity,
                average_buy_price=average_buy_price,
            )
        )


def seed_order(
    store,
    side: OrderSide,
    quantity: Decimal,
    price: Decimal,
    coin_id: str = "bitcoin",
    mode: OrderMode = OrderMode.LIMIT,
    user_id: str = USER_ID,
    coin_symbol: str = "BTC",
) -> Order:
    order = Order(
        user_id=user_id,
        coin_id=coin_id,
        coin_symbol=coin_symbol,
        side=side,
        mode=mode,
        quantity=quantity,
        total_amount=quantity * price,
        limit_price=price if mode is OrderMode.LIMIT else None,
    )
    with store.unit_of_work() as session:
        session.insert_order(order)
    return order


def get_balance(store, user_id: str = USER_ID) -> Decimal:
    with store.unit_of_work(readonly=True) as session:
        return session.get_profile(user_id).balance


def get_holding(store, coin_id: str, user_id: str = USER_ID) -> Optional[Holding]:
    with store.unit_of_work(readonly=True) as session:
        return session.find_holding(user_id, coin_id)


def get_order(store, order_id: str) -> Order:
    with store.unit_of_work(readonly=True) as session:
        return session.get_order(order_id)


def count_transactions(store, user_id: str = USER_ID) -> int:
    with store.unit_of_work(readonly=True) as session:
        return len(session.list_transactions(user_id))


@pytest.fixture
def store(tmp_path):
    return SqliteLedgerStore(tmp_path / "ledger.db")


@pytest.fixture
def oracle():
    return MockPriceOracle()
