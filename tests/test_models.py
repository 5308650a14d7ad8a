"""Canonical model tests."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from exchangekit.models import (
    BookSide,
    OrderResult,
    OrderStatus,
    PriceLevel,
    Ticker,
    Trade,
    TradeFlags,
    merge_order_results,
)


def test_merge_weights_average_price():
    a = OrderResult(order_id="1", symbol="BTC-USD", side="BUY", amount=1, amount_filled=1, average_price=10)
    b = OrderResult(order_id="1", symbol="BTC-USD", side="BUY", amount=3, amount_filled=3, average_price=20)
    merged = a.merge(b)
    assert merged.amount == 4
    assert merged.amount_filled == 4
    assert merged.average_price == 17.5
    assert merged.status is OrderStatus.FILLED


def test_merge_partial_fill_and_fees_and_date():
    early = datetime(2024, 1, 1, tzinfo=timezone.utc)
    late = datetime(2024, 1, 2, tzinfo=timezone.utc)
    a = OrderResult(order_id="1", amount=5, amount_filled=1, average_price=10, fees=0.1,
                    fees_currency="USD", order_date=late)
    b = OrderResult(order_id="1", amount=5, amount_filled=1, average_price=12, fees=0.2, order_date=early)
    merged = merge_order_results([a, b])
    assert merged.status is OrderStatus.FILLED_PARTIALLY
    assert merged.average_price == 11
    assert merged.fees == pytest.approx(0.3)
    assert merged.fees_currency == "USD"
    assert merged.order_date == early


def test_merge_mismatch_rejected():
    a = OrderResult(order_id="1", side="BUY")
    with pytest.raises(ValueError):
        a.merge(OrderResult(order_id="2", side="BUY"))
    with pytest.raises(ValueError):
        a.merge(OrderResult(order_id="1", side="SELL"))
    with pytest.raises(ValueError):
        merge_order_results([])


def test_trade_flags_and_ordering():
    t1 = Trade(symbol="S", timestamp=1000, id="9", price=1, amount=1, side="BUY",
               flags=TradeFlags.IS_BUY | TradeFlags.IS_FROM_SNAPSHOT)
    t2 = Trade(symbol="S", timestamp=1000, id="10", price=1, amount=1, side="SELL",
               flags=TradeFlags.IS_FROM_SNAPSHOT | TradeFlags.IS_LAST_FROM_SNAPSHOT)
    t3 = Trade(symbol="S", timestamp=999, price=1, amount=1, side="SELL")
    assert t1.is_buy and t1.is_from_snapshot and not t1.is_last_from_snapshot
    assert t2.is_last_from_snapshot
    assert t3.id == "-1"
    assert sorted([t2, t1, t3], key=lambda t: t.sort_key) == [t3, t1, t2]


def test_trade_sort_key_with_non_numeric_ids():
    odd = Trade(symbol="S", timestamp=1000, id="--5", price=1, amount=1, side="BUY")
    digit = Trade(symbol="S", timestamp=1000, id="²", price=1, amount=1, side="BUY")
    plain = Trade(symbol="S", timestamp=1000, id="3", price=1, amount=1, side="BUY")
    assert odd.sort_key == (1000, -1, "--5")
    assert digit.sort_key == (1000, -1, "²")
    assert sorted([plain, digit, odd], key=lambda t: t.sort_key) == [odd, digit, plain]


def test_models_are_frozen_and_validated():
    ticker = Ticker(symbol="S", bid=1, ask=3)
    assert ticker.mid == 2
    with pytest.raises(ValidationError):
        ticker.bid = 2
    with pytest.raises(ValidationError):
        PriceLevel(price=0, amount=1)
    with pytest.raises(ValidationError):
        Trade(symbol="S", timestamp=1, price=1, amount=1, side="HOLD")


def test_book_side_parse():
    assert BookSide.parse("buy") is BookSide.BID
    assert BookSide.parse("asks") is BookSide.ASK
    with pytest.raises(ValueError):
        BookSide.parse("middle")
