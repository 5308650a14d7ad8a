"""Typed stream events produced by protocol frame parsers, plus the channel registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from exchangekit.models.market import Ticker
from exchangekit.models.trade import Trade

ChannelId = Union[int, str]


class StreamKind(str, Enum):
    ORDER_BOOK = "ORDER_BOOK"
    TICKER = "TICKER"
    TRADES = "TRADES"


@dataclass(frozen=True)
class Subscription:
    """Logical stream: (kind, symbol). max_depth applies to order books only."""

    kind: StreamKind
    symbol: str
    max_depth: int = 20

    @property
    def key(self) -> tuple[StreamKind, str]:
        return (self.kind, self.symbol)


@dataclass
class ChannelBound:
    """Exchange acknowledged a subscription and assigned it a channel id or topic."""

    channel_id: ChannelId
    subscription: Subscription


@dataclass
class ChannelUnbound:
    channel_id: ChannelId


@dataclass
class BookUpdate:
    """Snapshot or delta for one book. Levels are (price, amount); amount 0 removes.

    Either ``symbol`` or ``channel_id`` identifies the book. ``sequence`` is the
    last update id carried by the message and ``first_sequence`` the first one
    when the exchange batches a range of ids into one message.
    """

    symbol: str | None = None
    channel_id: ChannelId | None = None
    bids: list[tuple[float, float]] = field(default_factory=list)
    asks: list[tuple[float, float]] = field(default_factory=list)
    is_snapshot: bool = False
    sequence: int | None = None
    first_sequence: int | None = None
    timestamp: int | None = None  # ms epoch


@dataclass
class TickerUpdate:
    ticker: Ticker
    channel_id: ChannelId | None = None


@dataclass
class TradeUpdate:
    trades: list[Trade]
    symbol: str | None = None
    channel_id: ChannelId | None = None


@dataclass
class Authenticated:
    """Login accepted."""


@dataclass
class AuthFailure:
    message: str


@dataclass
class Heartbeat:
    pass


@dataclass
class StreamErrorEvent:
    """Exchange reported an error on the stream (bad subscription, etc.)."""

    message: str
    payload: Any = None


StreamEvent = Union[
    ChannelBound,
    ChannelUnbound,
    BookUpdate,
    TickerUpdate,
    TradeUpdate,
    Authenticated,
    AuthFailure,
    Heartbeat,
    StreamErrorEvent,
]


class ChannelRegistry:
    """Channel id -> Subscription for one live connection. Cleared on disconnect."""

    def __init__(self) -> None:
        self._by_channel: dict[ChannelId, Subscription] = {}

    def bind(self, channel_id: ChannelId, subscription: Subscription) -> None:
        self._by_channel[channel_id] = subscription

    def unbind(self, channel_id: ChannelId) -> Subscription | None:
        return self._by_channel.pop(channel_id, None)

    def resolve(self, channel_id: ChannelId) -> Subscription | None:
        return self._by_channel.get(channel_id)

    def channel_for(self, subscription: Subscription) -> ChannelId | None:
        for cid, sub in self._by_channel.items():
            if sub.key == subscription.key:
                return cid
        return None

    def clear(self) -> None:
        self._by_channel.clear()

    def __len__(self) -> int:
        return len(self._by_channel)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._by_channel
