"""Canonical schema (Pydantic) - Market, Ticker, Trade, OrderBook, Order."""

from exchangekit.models.market import Market, Ticker
from exchangekit.models.order import (
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderType,
    merge_order_results,
)
from exchangekit.models.orderbook import BookSide, BookState, OrderBookSnapshot, PriceLevel
from exchangekit.models.trade import NO_TRADE_ID, Trade, TradeFlags

__all__ = [
    "Market",
    "Ticker",
    "Trade",
    "TradeFlags",
    "NO_TRADE_ID",
    "BookSide",
    "BookState",
    "PriceLevel",
    "OrderBookSnapshot",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    "OrderType",
    "merge_order_results",
]
