"""Stream multiplexer tests against a scripted in-memory connection."""

import asyncio
import json

import pytest

from exchangekit.errors import AuthError, ProtocolError
from exchangekit.ingestion.base import Credentials, ExchangeProtocol
from exchangekit.ingestion.events import (
    Authenticated,
    AuthFailure,
    BookUpdate,
    ChannelBound,
    StreamErrorEvent,
    StreamKind,
    Subscription,
    TickerUpdate,
    TradeUpdate,
)
from exchangekit.ingestion.multiplexer import StreamMultiplexer
from exchangekit.models.market import Ticker
from exchangekit.models.orderbook import BookState, OrderBookSnapshot, PriceLevel
from exchangekit.models.trade import Trade
from exchangekit.orderbook.engine import BookConvention, OrderBookEngine, SequenceMode

BOOK = Subscription(StreamKind.ORDER_BOOK, "BTC-USD")
TRADES = Subscription(StreamKind.TRADES, "BTC-USD")


class DemoStreamProtocol(ExchangeProtocol):
    """Tiny JSON dialect: every frame has a ``type``; data frames carry a ``channel``."""

    name = "demo"
    ws_url = "wss://demo.test/ws"

    def subscribe_messages(self, subscriptions):
        return [{"op": "subscribe", "args": [f"{s.kind.value}:{s.symbol}" for s in subscriptions]}]

    def unsubscribe_messages(self, subscriptions, channels):
        return [{"op": "unsubscribe", "args": [f"{s.kind.value}:{s.symbol}" for s in subscriptions]}]

    def login_messages(self, credentials, nonce_provider):
        if credentials is None:
            return []
        return [{"op": "login", "key": credentials.public_key}]

    def parse_frame(self, frame, channels):
        kind = frame["type"]
        if kind == "subscribed":
            sub = Subscription(StreamKind(frame["kind"]), frame["symbol"])
            return [ChannelBound(frame["channel"], sub)]
        if kind == "book":
            return [
                BookUpdate(
                    channel_id=frame["channel"],
                    bids=[tuple(level) for level in frame.get("bids", [])],
                    asks=[tuple(level) for level in frame.get("asks", [])],
                    is_snapshot=frame.get("snapshot", False),
                    sequence=frame.get("seq"),
                )
            ]
        if kind == "ticker":
            return [TickerUpdate(Ticker(symbol=frame["symbol"], bid=frame["bid"], ask=frame["ask"]))]
        if kind == "trade":
            sub = channels.resolve(frame["channel"])
            trade = Trade(symbol=sub.symbol if sub else "", timestamp=frame["ts"], id=str(frame["id"]),
                          price=frame["price"], amount=frame["amount"], side=frame["side"])
            return [TradeUpdate([trade], channel_id=frame["channel"])]
        if kind == "auth_ok":
            return [Authenticated()]
        if kind == "auth_failed":
            return [AuthFailure(frame["reason"])]
        if kind == "error":
            return [StreamErrorEvent(frame["message"], frame)]
        raise ProtocolError(f"unknown frame type {kind!r}")


class FakeConnection:
    """Async context manager standing in for a websocket; frames are fed through a queue."""

    def __init__(self, frames=()):
        self.frames: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.closed = False
        for frame in frames:
            self.push(frame)

    def push(self, frame):
        if isinstance(frame, (dict, list)):
            frame = json.dumps(frame)
        self.frames.put_nowait(frame)

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        item = await self.frames.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True
        self.frames.put_nowait(ConnectionError("closed"))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True


def _connector(connections):
    def connect(url):
        if not connections:
            raise OSError("no more connections")
        return connections.pop(0)

    return connect


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _bids(engine, symbol="BTC-USD"):
    return [(lev.price, lev.amount) for lev in engine.get_current_snapshot(symbol).bids]


def _mux(engine, connections, **kwargs):
    kwargs.setdefault("reconnect_base_delay_sec", 0.01)
    return StreamMultiplexer(DemoStreamProtocol(), engine, connector=_connector(connections), **kwargs)


@pytest.mark.asyncio
async def test_routes_books_tickers_trades_and_drops_bad_frames():
    conn = FakeConnection([
        {"type": "subscribed", "channel": 1, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        {"type": "subscribed", "channel": 2, "kind": "TRADES", "symbol": "BTC-USD"},
        {"type": "book", "channel": 1, "snapshot": True, "bids": [[100, 2]], "asks": [[101, 3]]},
        "not json at all",
        {"type": "book", "channel": 99, "bids": [[1, 1]]},
        {"type": "mystery"},
        {"type": "book", "channel": 1, "bids": [[100, 5]], "asks": [[101, 0]]},
        {"type": "ticker", "symbol": "BTC-USD", "bid": 100, "ask": 101},
        {"type": "trade", "channel": 2, "ts": 1000, "id": 7, "price": 100.5, "amount": 0.1, "side": "BUY"},
        {"type": "error", "message": "bad channel"},
    ])
    engine = OrderBookEngine("demo")
    mux = _mux(engine, [conn])
    tickers, trades = [], []
    mux.on_ticker(tickers.append)
    mux.on_trades(lambda symbol, batch: trades.append((symbol, batch)))
    await mux.subscribe(BOOK)
    await mux.subscribe(TRADES)

    mux.start()
    await _until(lambda: mux.msg_count == 10)
    assert mux.connected
    assert conn.sent == [{"op": "subscribe", "args": ["ORDER_BOOK:BTC-USD", "TRADES:BTC-USD"]}]
    assert _bids(engine) == [(100, 5)]
    assert engine.get_current_snapshot("BTC-USD").asks == []
    assert [t.mid for t in tickers] == [100.5]
    assert trades[0][0] == "BTC-USD"
    assert trades[0][1][0].id == "7"
    assert mux.dropped_frames == 3
    assert mux.reconnects == 0

    status = mux.get_status()
    assert status["connected"] is True
    assert status["channels"] == 2
    assert status["orderbook"]["books"] == {"BTC-USD": "LIVE"}

    await mux.stop()
    assert conn.closed
    assert not mux.connected
    assert engine.closed
    assert engine.state("BTC-USD") is BookState.CLOSED


@pytest.mark.asyncio
async def test_disconnect_marks_stale_and_reconnect_resyncs():
    first = FakeConnection([
        {"type": "subscribed", "channel": 1, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        {"type": "book", "channel": 1, "snapshot": True, "bids": [[100, 1]], "asks": [[101, 1]], "seq": 900},
        ConnectionError("dropped"),
    ])
    second = FakeConnection([
        {"type": "subscribed", "channel": 5, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        # not flagged as a snapshot: the first book message after reconnect is the baseline
        {"type": "book", "channel": 5, "bids": [[90, 2]], "asks": [[91, 2]], "seq": 3},
    ])
    engine = OrderBookEngine("demo", sequence_mode=SequenceMode.MONOTONIC)
    states = []
    engine.add_listener(lambda snap: states.append(snap.state))
    mux = _mux(engine, [first, second])
    await mux.subscribe(BOOK)

    mux.start()
    await _until(lambda: mux.msg_count == 4)
    assert states == [BookState.LIVE, BookState.STALE, BookState.LIVE]
    assert mux.reconnects == 1
    assert second.sent == [{"op": "subscribe", "args": ["ORDER_BOOK:BTC-USD"]}]
    snap = engine.get_current_snapshot("BTC-USD")
    assert _bids(engine) == [(90, 2)]
    assert snap.sequence == 3
    assert 1 not in mux.channels
    assert 5 in mux.channels
    await mux.stop()


@pytest.mark.asyncio
async def test_sequence_gap_triggers_resubscribe():
    conn = FakeConnection([
        {"type": "subscribed", "channel": 1, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        {"type": "book", "channel": 1, "snapshot": True, "bids": [[100, 1]], "seq": 1},
        {"type": "book", "channel": 1, "bids": [[100, 2]], "seq": 2},
        {"type": "book", "channel": 1, "bids": [[100, 3]], "seq": 5},
    ])
    engine = OrderBookEngine("demo", sequence_mode=SequenceMode.CONTIGUOUS)
    mux = _mux(engine, [conn])
    await mux.subscribe(BOOK)

    mux.start()
    await _until(lambda: len(conn.sent) == 3)
    assert engine.state("BTC-USD") is BookState.STALE
    assert conn.sent[1] == {"op": "unsubscribe", "args": ["ORDER_BOOK:BTC-USD"]}
    assert conn.sent[2] == {"op": "subscribe", "args": ["ORDER_BOOK:BTC-USD"]}

    conn.push({"type": "subscribed", "channel": 2, "kind": "ORDER_BOOK", "symbol": "BTC-USD"})
    conn.push({"type": "book", "channel": 2, "bids": [[99, 4]], "seq": 40})
    await _until(lambda: engine.state("BTC-USD") is BookState.LIVE)
    assert _bids(engine) == [(99, 4)]
    await mux.stop()


@pytest.mark.asyncio
async def test_rest_baseline_loaded_after_deltas_buffered():
    fetched = []

    async def fetch(symbol):
        fetched.append(symbol)
        return OrderBookSnapshot(symbol=symbol, bids=[PriceLevel(price=100, amount=1)],
                                 asks=[PriceLevel(price=101, amount=1)], sequence=10)

    conn = FakeConnection([
        {"type": "subscribed", "channel": 1, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        {"type": "book", "channel": 1, "bids": [[100, 7]], "seq": 9},
        {"type": "book", "channel": 1, "bids": [[100, 3]], "seq": 11},
    ])
    engine = OrderBookEngine("demo", convention=BookConvention.REST_SNAPSHOT_THEN_DELTAS,
                             sequence_mode=SequenceMode.MONOTONIC, snapshot_fetcher=fetch)
    mux = _mux(engine, [conn])
    await mux.subscribe(BOOK)

    mux.start()
    await _until(lambda: mux.msg_count == 3 and engine.state("BTC-USD") is BookState.LIVE)
    assert fetched == ["BTC-USD"]
    assert _bids(engine) == [(100, 3)]
    assert engine.get_current_snapshot("BTC-USD").sequence == 11
    await mux.stop()


@pytest.mark.asyncio
async def test_repeated_auth_failures_are_fatal():
    first = FakeConnection([{"type": "auth_failed", "reason": "bad key"}, ConnectionError("closed by server")])
    second = FakeConnection([{"type": "auth_failed", "reason": "bad key"}])
    engine = OrderBookEngine("demo")
    mux = _mux(engine, [first, second], credentials=Credentials("pub", "secret"), max_auth_failures=2)

    with pytest.raises(AuthError, match="bad key"):
        await asyncio.wait_for(mux.run(), timeout=2.0)
    assert first.sent == [{"op": "login", "key": "pub"}]
    assert second.sent == [{"op": "login", "key": "pub"}]
    assert not mux.connected


@pytest.mark.asyncio
async def test_successful_login_resets_auth_failures():
    conn = FakeConnection([
        {"type": "auth_failed", "reason": "clock skew"},
        {"type": "auth_ok"},
        {"type": "auth_failed", "reason": "clock skew"},
    ])
    mux = _mux(OrderBookEngine("demo"), [conn], credentials=Credentials("pub", "secret"), max_auth_failures=2)
    mux.start()
    await _until(lambda: mux.msg_count == 3)
    assert mux.connected
    await mux.stop()


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe_while_connected():
    conn = FakeConnection()
    engine = OrderBookEngine("demo")
    mux = _mux(engine, [conn])
    mux.start()
    await _until(lambda: mux.connected)

    await mux.subscribe(BOOK)
    await mux.subscribe(BOOK)
    assert conn.sent == [{"op": "subscribe", "args": ["ORDER_BOOK:BTC-USD"]}]
    conn.push({"type": "subscribed", "channel": 3, "kind": "ORDER_BOOK", "symbol": "BTC-USD"})
    conn.push({"type": "book", "channel": 3, "bids": [[10, 1]]})
    await _until(lambda: engine.state("BTC-USD") is BookState.LIVE)

    await mux.unsubscribe(BOOK)
    assert conn.sent[-1] == {"op": "unsubscribe", "args": ["ORDER_BOOK:BTC-USD"]}
    assert engine.get_book("BTC-USD") is None
    assert 3 not in mux.channels
    assert mux.subscriptions == []

    # frames still in flight for a dropped book are ignored
    conn.push({"type": "book", "channel": 3, "bids": [[10, 2]]})
    await _until(lambda: mux.msg_count == 3)
    assert engine.get_book("BTC-USD") is None
    await mux.stop()


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    mux = _mux(OrderBookEngine("demo"), [], reconnect_max_retries=2)
    await asyncio.wait_for(mux.run(), timeout=2.0)
    assert mux.reconnects == 2
    assert not mux.connected


@pytest.mark.asyncio
async def test_book_frame_with_bad_level_is_dropped_and_connection_kept():
    conn = FakeConnection([
        {"type": "subscribed", "channel": 1, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        {"type": "book", "channel": 1, "snapshot": True, "bids": [[100, 1]], "asks": [[101, 1]], "seq": 1},
        {"type": "book", "channel": 1, "bids": [[99, 2], ["abc", 1]], "seq": 2},
        {"type": "book", "channel": 1, "bids": [[98, 4]], "seq": 3},
    ])
    engine = OrderBookEngine("demo")
    mux = _mux(engine, [conn])
    await mux.subscribe(BOOK)

    mux.start()
    await _until(lambda: mux.msg_count == 4)
    assert mux.dropped_frames == 1
    assert mux.connected
    assert mux.reconnects == 0
    snap = engine.get_current_snapshot("BTC-USD")
    assert snap.state is BookState.LIVE
    assert _bids(engine) == [(100, 1), (98, 4)]
    assert snap.sequence == 3
    await mux.stop()


@pytest.mark.asyncio
async def test_failing_snapshot_fetcher_is_retried_on_next_delta():
    calls = []

    async def fetch(symbol):
        calls.append(symbol)
        if len(calls) == 1:
            raise ValueError("malformed snapshot body")
        return OrderBookSnapshot(symbol=symbol, bids=[PriceLevel(price=100, amount=1)],
                                 asks=[PriceLevel(price=101, amount=1)], sequence=10)

    conn = FakeConnection([
        {"type": "subscribed", "channel": 1, "kind": "ORDER_BOOK", "symbol": "BTC-USD"},
        {"type": "book", "channel": 1, "bids": [[100, 7]], "seq": 11},
    ])
    engine = OrderBookEngine("demo", convention=BookConvention.REST_SNAPSHOT_THEN_DELTAS,
                             snapshot_fetcher=fetch)
    mux = _mux(engine, [conn])
    await mux.subscribe(BOOK)

    mux.start()
    await _until(lambda: len(calls) == 1 and not mux._baseline_inflight)
    assert engine.state("BTC-USD") is BookState.UNINITIALIZED
    assert mux.connected

    conn.push({"type": "book", "channel": 1, "bids": [[100, 3]], "seq": 12})
    await _until(lambda: engine.state("BTC-USD") is BookState.LIVE)
    assert len(calls) == 2
    assert _bids(engine) == [(100, 3)]
    assert engine.get_current_snapshot("BTC-USD").sequence == 12
    assert mux.reconnects == 0
    await mux.stop()
