"""PriceLevel, OrderBookSnapshot - canonical orderbook views."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class BookSide(str, Enum):
    BID = "BID"
    ASK = "ASK"

    @classmethod
    def parse(cls, value: str | BookSide) -> BookSide:
        """Accept BID/ASK as well as the BUY/SELL and bids/asks spellings exchanges use."""
        if isinstance(value, BookSide):
            return value
        v = str(value).strip().upper()
        if v in ("BID", "BIDS", "BUY", "B"):
            return cls.BID
        if v in ("ASK", "ASKS", "SELL", "S", "A"):
            return cls.ASK
        raise ValueError(f"unknown book side: {value!r}")


class BookState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    LIVE = "LIVE"
    STALE = "STALE"
    CLOSED = "CLOSED"


class PriceLevel(BaseModel):
    """Single price level (price -> amount). Amount 0 means remove."""

    price: float = Field(..., gt=0)
    amount: float = Field(..., ge=0)


class OrderBookSnapshot(BaseModel):
    """Point-in-time copy of an order book. Bids descending, asks ascending."""

    symbol: str
    exchange: str = ""
    bids: list[PriceLevel] = Field(default_factory=list)
    asks: list[PriceLevel] = Field(default_factory=list)
    sequence: int | None = None
    last_updated: int | None = None  # ms epoch
    is_from_snapshot: bool = True
    state: BookState = BookState.LIVE

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None
