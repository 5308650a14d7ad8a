"""Mutable L2 order book - two sorted price maps plus sequence/state metadata."""

from __future__ import annotations

import operator
import time
from itertools import islice
from threading import Lock
from typing import Iterable

import structlog
from sortedcontainers import SortedDict

from exchangekit.models.orderbook import BookSide, BookState, OrderBookSnapshot, PriceLevel

log = structlog.get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class OrderBook:
    """In-memory L2 book for one market. price -> amount; bids descending, asks ascending.

    Written by exactly one stream. The writer holds ``lock`` while mutating;
    readers copy under the same lock via ``to_snapshot``.
    """

    __slots__ = (
        "symbol",
        "exchange",
        "bids",
        "asks",
        "sequence",
        "last_updated",
        "is_from_snapshot",
        "state",
        "lock",
    )

    def __init__(self, symbol: str, exchange: str = "") -> None:
        self.symbol = symbol
        self.exchange = exchange
        self.bids: SortedDict = SortedDict(operator.neg)
        self.asks: SortedDict = SortedDict()
        self.sequence: int | None = None
        self.last_updated: int | None = None
        self.is_from_snapshot = False
        self.state = BookState.UNINITIALIZED
        self.lock = Lock()

    def _side(self, side: BookSide) -> SortedDict:
        return self.bids if side is BookSide.BID else self.asks

    @staticmethod
    def _valid(price: float, amount: float) -> bool:
        return price > 0 and amount >= 0

    def replace_side(self, side: BookSide, levels: Iterable[tuple[float, float]]) -> int:
        """Swap in a new side built from ``levels``. Zero amounts are skipped. Returns rejected count."""
        fresh = SortedDict(operator.neg) if side is BookSide.BID else SortedDict()
        rejected = 0
        for price, amount in levels:
            price, amount = float(price), float(amount)
            if not self._valid(price, amount):
                rejected += 1
                log.warning("orderbook_invalid_level", symbol=self.symbol, side=side.value, price=price, amount=amount)
                continue
            if amount > 0:
                fresh[price] = amount
        if side is BookSide.BID:
            self.bids = fresh
        else:
            self.asks = fresh
        self.last_updated = _now_ms()
        return rejected

    def set_level(self, side: BookSide, price: float, amount: float) -> bool:
        """Insert/replace a level, or remove it when amount is 0. False if the level is invalid."""
        price, amount = float(price), float(amount)
        if not self._valid(price, amount):
            log.warning("orderbook_invalid_level", symbol=self.symbol, side=side.value, price=price, amount=amount)
            return False
        book_side = self._side(side)
        if amount == 0:
            book_side.pop(price, None)
        else:
            book_side[price] = amount
        self.last_updated = _now_ms()
        return True

    def clear(self) -> None:
        self.bids = SortedDict(operator.neg)
        self.asks = SortedDict()
        self.sequence = None
        self.is_from_snapshot = False

    @property
    def best_bid(self) -> float | None:
        return self.bids.peekitem(0)[0] if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks.peekitem(0)[0] if self.asks else None

    @property
    def mid_price(self) -> float | None:
        bb, ba = self.best_bid, self.best_ask
        if bb is not None and ba is not None:
            return (bb + ba) / 2.0
        return bb or ba

    @property
    def spread(self) -> float | None:
        bb, ba = self.best_bid, self.best_ask
        if bb is not None and ba is not None:
            return ba - bb
        return None

    def depth_at_levels(self, n: int = 5) -> tuple[list[tuple[float, float]], list[tuple[float, float]]]:
        """Return (top N bids, top N asks) as [(price, amount), ...]."""
        return (list(islice(self.bids.items(), n)), list(islice(self.asks.items(), n)))

    def imbalance(self, levels: int = 5) -> float | None:
        """(bid volume - ask volume) / total over the top N levels, in [-1, 1]."""
        bid_list, ask_list = self.depth_at_levels(levels)
        bid_vol = sum(a for _, a in bid_list)
        ask_vol = sum(a for _, a in ask_list)
        total = bid_vol + ask_vol
        if total == 0:
            return None
        return (bid_vol - ask_vol) / total

    def to_snapshot(self, max_depth: int | None = None) -> OrderBookSnapshot:
        """Copy current state. Takes the book lock, so never call it while holding it."""
        with self.lock:
            bids = islice(self.bids.items(), max_depth)
            asks = islice(self.asks.items(), max_depth)
            return OrderBookSnapshot(
                symbol=self.symbol,
                exchange=self.exchange,
                bids=[PriceLevel(price=p, amount=a) for p, a in bids],
                asks=[PriceLevel(price=p, amount=a) for p, a in asks],
                sequence=self.sequence,
                last_updated=self.last_updated,
                is_from_snapshot=self.is_from_snapshot,
                state=self.state,
            )

    def __repr__(self) -> str:
        return (
            f"OrderBook({self.symbol!r}, state={self.state.value}, seq={self.sequence}, "
            f"bids={len(self.bids)}, asks={len(self.asks)})"
        )
