"""Property-based tests for the order executor.

Covers the balance and holding arithmetic of buys and sells, rejection
without side effects, and exactly-once execution per order.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st, assume

from coinledger.errors import (
    InsufficientFunds,
    InsufficientHoldings,
    InvalidPrice,
    InvalidQuantity,
    OrderNotFound,
    OrderNotPending,
    ProfileNotFound,
)
from coinledger.models import OrderSide, OrderStatus
from coinledger.trading import OrderExecutor, OrderStatusMachine

from conftest import (
    USER_ID,
    count_transactions,
    get_balance,
    get_holding,
    get_order,
    seed_holding,
    seed_order,
    seed_profile,
    temp_store,
)


FEE = Decimal("0.001")

balance_strategy = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("10000000"),
    places=2,
    allow_nan=False,
    allow_infinity=False
)

quantity_strategy = st.decimals(
    min_value=Decimal("0.001"),
    max_value=Decimal("1000"),
    places=8,
    allow_nan=False,
    allow_infinity=False
)

price_strategy = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("100000"),
    places=2,
    allow_nan=False,
    allow_infinity=False
)


@given(balance=balance_strategy, quantity=quantity_strategy, price=price_strategy)
@settings(max_examples=50, deadline=None)
def test_buy_debits_total_plus_fee(balance: Decimal, quantity: Decimal, price: Decimal):
    """
    A buy debits exactly price × quantity plus the fee and records the
    holding at the execution price.
    """
    total = price * quantity
    total_cost = total + total * FEE
    assume(total_cost <= balance)

    with temp_store() as store:
        seed_profile(store, balance)
        order = seed_order(store, OrderSide.BUY, quantity, price)

        receipt = OrderExecutor(store).execute(order.id, price)

        assert not receipt.replayed
        assert receipt.total_amount == total
        assert get_balance(store) == balance - total_cost, \
            "Balance should drop by total_amount plus fee"
        holding = get_holding(store, "bitcoin")
        assert holding is not None
        assert holding.quantity == quantity
        assert holding.average_buy_price == price
        assert get_balance(store) >= 0


@given(balance=balance_strategy, quantity=quantity_strategy, price=price_strategy)
@settings(max_examples=50, deadline=None)
def test_insufficient_funds_leaves_state_untouched(
    balance: Decimal, quantity: Decimal, price: Decimal
):
    """
    A buy whose cost including the fee exceeds the balance is rejected and
    nothing is persisted.
    """
    total = price * quantity
    assume(total + total * FEE > balance)

    with temp_store() as store:
        seed_profile(store, balance)
        order = seed_order(store, OrderSide.BUY, quantity, price)

        with pytest.raises(InsufficientFunds) as exc:
            OrderExecutor(store).execute(order.id, price)

        assert exc.value.order_id == order.id
        assert get_balance(store) == balance
        assert get_holding(store, "bitcoin") is None
        assert count_transactions(store) == 0
        assert get_order(store, order.id).status is OrderStatus.PENDING


@given(
    held=quantity_strategy,
    fraction=st.sampled_from([Decimal("0.25"), Decimal("0.5"), Decimal("1")]),
    price=price_strategy,
)
@settings(max_examples=50, deadline=None)
def test_sell_credits_proceeds_and_removes_empty_holding(
    held: Decimal, fraction: Decimal, price: Decimal
):
    """
    A sell credits price × quantity minus the fee; the holding row is
    deleted exactly when nothing remains.
    """
    quantity = held * fraction
    assume(quantity > 0)

    with temp_store() as store:
        seed_profile(store, Decimal("0"))
        seed_holding(store, "bitcoin", held, Decimal("50"))
        order = seed_order(store, OrderSide.SELL, quantity, price)

        OrderExecutor(store).execute(order.id, price)

        total = price * quantity
        assert get_balance(store) == total - total * FEE
        holding = get_holding(store, "bitcoin")
        remaining = held - quantity
        if remaining <= 0:
            assert holding is None, "Empty holding should be deleted"
        else:
            assert holding.quantity == remaining
            assert holding.average_buy_price == Decimal("50"), \
                "Selling must not change the average buy price"


@given(quantity=quantity_strategy, price=price_strategy)
@settings(max_examples=30, deadline=None)
def test_execute_is_idempotent(quantity: Decimal, price: Decimal):
    """
    Executing the same order twice mutates the ledger once; the second call
    is a replay returning the original transaction.
    """
    with temp_store() as store:
        seed_profile(store, Decimal("1000000000"))
        order = seed_order(store, OrderSide.BUY, quantity, price)
        executor = OrderExecutor(store)

        first = executor.execute(order.id, price)
        balance_after_first = get_balance(store)
        second = executor.execute(order.id, price * 2)

        assert second.replayed
        assert second.transaction.id == first.transaction.id
        assert second.price_per_unit == price
        assert get_balance(store) == balance_after_first
        assert get_holding(store, "bitcoin").quantity == quantity
        assert count_transactions(store) == 1


def test_replay_after_completion_does_not_raise(store):
    seed_profile(store, Decimal("1000"))
    order = seed_order(store, OrderSide.BUY, Decimal("1"), Decimal("100"))
    executor = OrderExecutor(store)
    receipt = executor.execute(order.id, Decimal("100"))
    OrderStatusMachine(store).mark_completed(order.id, receipt.price_per_unit, receipt.total_amount)

    again = executor.execute(order.id, Decimal("100"))

    assert again.replayed
    assert count_transactions(store) == 1


def test_weighted_average_buy_price(store):
    seed_profile(store, Decimal("10000"))
    seed_holding(store, "bitcoin", Decimal("2"), Decimal("100"))
    order = seed_order(store, OrderSide.BUY, Decimal("3"), Decimal("120"))

    OrderExecutor(store).execute(order.id, Decimal("120"))

    holding = get_holding(store, "bitcoin")
    assert holding.quantity == Decimal("5")
    assert holding.average_buy_price == Decimal("112")
    assert get_balance(store) == Decimal("10000") - Decimal("360") - Decimal("0.360")


def test_sell_matches_legacy_unnormalized_holding(store):
    seed_profile(store, Decimal("0"))
    conn = sqlite3.connect(store.path)
    with conn:
        conn.execute(
            "INSERT INTO holdings(id, user_id, coin_id, coin_symbol, quantity, "
            "average_buy_price, last_updated) VALUES (?,?,?,?,?,?,?)",
            ("legacy-1", USER_ID, "BTC", "BTC", "2", "10", "2024-01-01T00:00:00+00:00"),
        )
    conn.close()
    order = seed_order(store, OrderSide.SELL, Decimal("1"), Decimal("20"), coin_id="btc ")

    OrderExecutor(store).execute(order.id, Decimal("20"))

    holding = get_holding(store, "btc")
    assert holding.id == "legacy-1"
    assert holding.quantity == Decimal("1")
    assert get_balance(store) == Decimal("20") - Decimal("0.020")


@pytest.mark.parametrize("legacy_coin_id", ["BTC\t", "\nbtc", " BTC\r\n"])
def test_sell_matches_legacy_holding_with_control_whitespace(store, legacy_coin_id):
    seed_profile(store, Decimal("0"))
    conn = sqlite3.connect(store.path)
    with conn:
        conn.execute(
            "INSERT INTO holdings(id, user_id, coin_id, coin_symbol, quantity, "
            "average_buy_price, last_updated) VALUES (?,?,?,?,?,?,?)",
            ("legacy-1", USER_ID, legacy_coin_id, "BTC", "2", "10", "2024-01-01T00:00:00+00:00"),
        )
    conn.close()
    order = seed_order(store, OrderSide.SELL, Decimal("1"), Decimal("20"), coin_id="btc")

    receipt = OrderExecutor(store).execute(order.id, Decimal("20"))

    assert not receipt.replayed
    holding = get_holding(store, "btc")
    assert holding.id == "legacy-1"
    assert holding.quantity == Decimal("1")
    assert get_balance(store) == Decimal("20") - Decimal("0.020")


def test_buy_extends_legacy_holding_instead_of_duplicating(store):
    seed_profile(store, Decimal("1000"))
    conn = sqlite3.connect(store.path)
    with conn:
        conn.execute(
            "INSERT INTO holdings(id, user_id, coin_id, coin_symbol, quantity, "
            "average_buy_price, last_updated) VALUES (?,?,?,?,?,?,?)",
            ("legacy-1", USER_ID, " Bitcoin", "BTC", "1", "100", "2024-01-01T00:00:00+00:00"),
        )
    conn.close()
    order = seed_order(store, OrderSide.BUY, Decimal("1"), Decimal("100"))

    OrderExecutor(store).execute(order.id, Decimal("100"))

    with store.unit_of_work(readonly=True) as session:
        holdings = session.list_holdings(USER_ID)
    assert len(holdings) == 1
    assert holdings[0].quantity == Decimal("2")


def test_sell_more_than_held_is_rejected(store):
    seed_profile(store, Decimal("5"))
    seed_holding(store, "bitcoin", Decimal("1"), Decimal("100"))
    order = seed_order(store, OrderSide.SELL, Decimal("2"), Decimal("100"))

    with pytest.raises(InsufficientHoldings):
        OrderExecutor(store).execute(order.id, Decimal("100"))

    assert get_holding(store, "bitcoin").quantity == Decimal("1")
    assert get_balance(store) == Decimal("5")
    assert count_transactions(store) == 0


def test_sell_without_holding_is_rejected(store):
    seed_profile(store, Decimal("5"))
    order = seed_order(store, OrderSide.SELL, Decimal("1"), Decimal("100"))

    with pytest.raises(InsufficientHoldings):
        OrderExecutor(store).execute(order.id, Decimal("100"))


def test_missing_profile_is_rejected(store):
    order = seed_order(store, OrderSide.BUY, Decimal("1"), Decimal("100"))

    with pytest.raises(ProfileNotFound):
        OrderExecutor(store).execute(order.id, Decimal("100"))
    assert count_transactions(store) == 0


def test_missing_order_is_rejected(store):
    with pytest.raises(OrderNotFound):
        OrderExecutor(store).execute("no-such-order", Decimal("100"))


def test_cancelled_order_is_not_executed(store):
    seed_profile(store, Decimal("1000"))
    order = seed_order(store, OrderSide.BUY, Decimal("1"), Decimal("100"))
    OrderStatusMachine(store).cancel(order.id)

    with pytest.raises(OrderNotPending):
        OrderExecutor(store).execute(order.id, Decimal("100"))
    assert get_balance(store) == Decimal("1000")


def test_non_positive_quantity_is_rejected(store):
    seed_profile(store, Decimal("1000"))
    order = seed_order(store, OrderSide.BUY, Decimal("0"), Decimal("100"))

    with pytest.raises(InvalidQuantity):
        OrderExecutor(store).execute(order.id, Decimal("100"))


@pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1"), "abc", float("nan"), Decimal("Infinity")])
def test_invalid_execution_price_is_rejected(store, price):
    seed_profile(store, Decimal("1000"))
    order = seed_order(store, OrderSide.BUY, Decimal("1"), Decimal("100"))

    with pytest.raises(InvalidPrice):
        OrderExecutor(store).execute(order.id, price)
    assert get_balance(store) == Decimal("1000")


def test_custom_fee_rate(store):
    seed_profile(store, Decimal("1000"))
    order = seed_order(store, OrderSide.BUY, Decimal("2"), Decimal("100"))
    executor = OrderExecutor(store, fee_rate=Decimal("0.01"))

    executor.execute(order.id, Decimal("100"))

    assert executor.trading_fee(Decimal("200")) == Decimal("2.00")
    assert get_balance(store) == Decimal("798.00")


def test_concurrent_executions_apply_once(store):
    seed_profile(store, Decimal("1000"))
    order = seed_order(store, OrderSide.BUY, Decimal("1"), Decimal("100"))
    executor = OrderExecutor(store)

    with ThreadPoolExecutor(max_workers=4) as pool:
        receipts = list(pool.map(lambda _: executor.execute(order.id, Decimal("100")), range(8)))

    assert sum(1 for r in receipts if not r.replayed) == 1
    assert len({r.transaction.id for r in receipts}) == 1
    assert count_transactions(store) == 1
    assert get_balance(store) == Decimal("1000") - Decimal("100") - Decimal("0.100")
