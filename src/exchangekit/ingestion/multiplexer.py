"""Exchange WebSocket multiplexer - connect, login, subscribe, route frames, reconnect."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import time
from typing import TYPE_CHECKING, Any, AsyncContextManager, Callable, Coroutine

import structlog
import websockets

from exchangekit.errors import AuthError, ExchangeError, ProtocolError
from exchangekit.ingestion.events import (
    Authenticated,
    AuthFailure,
    BookUpdate,
    ChannelBound,
    ChannelRegistry,
    ChannelUnbound,
    Heartbeat,
    StreamErrorEvent,
    StreamEvent,
    StreamKind,
    Subscription,
    TickerUpdate,
    TradeUpdate,
)
from exchangekit.orderbook.engine import BookConvention

if TYPE_CHECKING:
    from exchangekit.auth.nonce import NonceProvider
    from exchangekit.config.settings import Settings
    from exchangekit.ingestion.base import Credentials, StreamProtocol
    from exchangekit.models.market import Ticker
    from exchangekit.models.trade import Trade
    from exchangekit.orderbook.engine import OrderBookEngine

log = structlog.get_logger(__name__)

Connector = Callable[[str], AsyncContextManager[Any]]
TickerHandler = Callable[["Ticker"], Any]
TradeHandler = Callable[[str, "list[Trade]"], Any]

# errors a protocol parser may raise on a frame it cannot make sense of
_FRAME_ERRORS = (ProtocolError, KeyError, IndexError, TypeError, ValueError)


def websocket_connector(ping_interval_sec: float = 20.0) -> Connector:
    """Connector backed by ``websockets.connect`` with keepalive pings."""
    interval = ping_interval_sec or None

    def connect(url: str) -> AsyncContextManager[Any]:
        return websockets.connect(
            url,
            ping_interval=interval,
            ping_timeout=interval,
            close_timeout=5,
        )

    return connect


class StreamMultiplexer:
    """One WebSocket connection per exchange, carrying every subscribed stream.

    Book updates go to the OrderBookEngine; tickers and trades go to the
    registered handlers. On disconnect every book goes STALE; on reconnect
    login and subscriptions are replayed and each book waits for a fresh
    baseline.
    """

    def __init__(
        self,
        protocol: StreamProtocol,
        engine: OrderBookEngine,
        *,
        credentials: Credentials | None = None,
        nonce_provider: NonceProvider | None = None,
        connector: Connector | None = None,
        reconnect_base_delay_sec: float = 1.0,
        reconnect_max_delay_sec: float = 60.0,
        reconnect_max_retries: int = 0,
        ping_interval_sec: float = 20.0,
        recv_timeout_sec: float = 30.0,
        max_auth_failures: int = 3,
    ):
        self.protocol = protocol
        self.engine = engine
        self.credentials = credentials
        self.nonce_provider = nonce_provider
        self.connector = connector or websocket_connector(ping_interval_sec)
        self.reconnect_base_delay_sec = reconnect_base_delay_sec
        self.reconnect_max_delay_sec = reconnect_max_delay_sec
        self.reconnect_max_retries = reconnect_max_retries
        self.recv_timeout_sec = recv_timeout_sec
        self.max_auth_failures = max_auth_failures
        self.channels = ChannelRegistry()
        self._subscriptions: dict[tuple[StreamKind, str], Subscription] = {}
        self._ticker_handlers: list[TickerHandler] = []
        self._trade_handlers: list[TradeHandler] = []
        self._ws: Any = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._side_tasks: set[asyncio.Task] = set()
        self._baseline_inflight: set[str] = set()
        self._start_ts: float | None = None
        self._auth_failures = 0
        self.msg_count = 0
        self.dropped_frames = 0
        self.reconnects = 0
        engine.add_stale_listener(self._on_stale)

    @classmethod
    def from_settings(
        cls,
        protocol: StreamProtocol,
        engine: OrderBookEngine,
        settings: Settings,
        **kwargs: Any,
    ) -> StreamMultiplexer:
        options = settings.stream_options()
        options.update(kwargs)
        return cls(protocol, engine, **options)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    # Subscriptions and handlers

    async def subscribe(self, subscription: Subscription) -> None:
        """Add a stream. Sent now if connected, otherwise on the next connect."""
        if subscription.key in self._subscriptions:
            return
        self._subscriptions[subscription.key] = subscription
        if subscription.kind is StreamKind.ORDER_BOOK:
            self.engine.book(subscription.symbol)
        log.info("ws_subscription_added", kind=subscription.kind.value, symbol=subscription.symbol)
        ws = self._ws
        if ws is not None:
            if subscription.kind is StreamKind.ORDER_BOOK:
                self.engine.expect_snapshot(subscription.symbol)
            await self._send_all(ws, self.protocol.subscribe_messages([subscription]))

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Drop a stream. Its book (if any) is closed and removed from the engine."""
        sub = self._subscriptions.pop(subscription.key, None)
        if sub is None:
            return
        ws = self._ws
        if ws is not None:
            await self._send_all(ws, self.protocol.unsubscribe_messages([sub], self.channels))
        channel_id = self.channels.channel_for(sub)
        if channel_id is not None:
            self.channels.unbind(channel_id)
        if sub.kind is StreamKind.ORDER_BOOK:
            self.engine.remove(sub.symbol)
        log.info("ws_subscription_removed", kind=sub.kind.value, symbol=sub.symbol)

    def on_ticker(self, callback: TickerHandler) -> None:
        self._ticker_handlers.append(callback)

    def on_trades(self, callback: TradeHandler) -> None:
        """``callback(symbol, trades)`` for every trade batch. Must not block."""
        self._trade_handlers.append(callback)

    # Connection loop

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run until ``stop_event`` is set, ``stop()`` is called or retries run out.

        Raises AuthError after ``max_auth_failures`` consecutive login failures.
        """
        if stop_event is not None:
            self._stop_event = stop_event
        stop = self._stop_event
        delay = self.reconnect_base_delay_sec
        retries = 0
        self._start_ts = time.time()

        while not stop.is_set():
            try:
                async with self.connector(self.protocol.ws_url) as ws:
                    self._ws = ws
                    delay = self.reconnect_base_delay_sec
                    retries = 0
                    log.info("ws_connected", exchange=self.protocol.name, subscriptions=len(self._subscriptions))
                    self.engine.begin_resync()
                    await self._on_connected(ws)
                    await self._receive_loop(ws, stop)
            except asyncio.CancelledError:
                log.info("ws_cancelled", exchange=self.protocol.name)
                raise
            except AuthError:
                log.error("ws_auth_failed", exchange=self.protocol.name, failures=self._auth_failures)
                raise
            except Exception as e:
                self._on_disconnected()
                if stop.is_set():
                    break
                log.warning("ws_error", exchange=self.protocol.name, error=str(e), delay=delay)
                if self.reconnect_max_retries and retries >= self.reconnect_max_retries:
                    log.error("ws_max_retries_reached", exchange=self.protocol.name)
                    break
                retries += 1
                self.reconnects += 1
                await self._sleep_unless_stopped(delay, stop)
                delay = min(delay * 2, self.reconnect_max_delay_sec)
            finally:
                self._on_disconnected()

        log.info("ws_ingestion_stopped", exchange=self.protocol.name, total_messages=self.msg_count)

    def start(self) -> asyncio.Task:
        """Run in a background task. Returns the task."""
        if self._task is None or self._task.done():
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self.run(self._stop_event))
        return self._task

    async def stop(self) -> None:
        """Stop the loop, close the socket, close every book and end subscriber streams."""
        self._stop_event.set()
        ws = self._ws
        if ws is not None:
            await ws.close()
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=10.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()
            except AuthError:
                pass
        self._cancel_side_tasks()
        self.engine.close()

    async def _sleep_unless_stopped(self, delay: float, stop: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _on_connected(self, ws: Any) -> None:
        # auth failures count across reconnects until a login succeeds
        await self._send_all(ws, self.protocol.login_messages(self.credentials, self.nonce_provider))
        subs = list(self._subscriptions.values())
        if subs:
            await self._send_all(ws, self.protocol.subscribe_messages(subs))
            log.info("ws_subscribed", exchange=self.protocol.name, streams=len(subs))

    def _on_disconnected(self) -> None:
        was_connected = self._ws is not None
        self._ws = None
        self.channels.clear()
        self._cancel_side_tasks()
        if was_connected:
            self.engine.mark_all_stale()
            log.info("ws_disconnected", exchange=self.protocol.name)

    async def _receive_loop(self, ws: Any, stop: asyncio.Event) -> None:
        while not stop.is_set():
            raw = await asyncio.wait_for(ws.recv(), timeout=self.recv_timeout_sec)
            self.msg_count += 1
            self.handle_raw(raw)

    async def _send_all(self, ws: Any, messages: list[Any]) -> None:
        for msg in messages:
            await ws.send(msg if isinstance(msg, (str, bytes)) else json.dumps(msg))

    # Frame routing

    def handle_raw(self, raw: str | bytes) -> None:
        """Decode and route one frame. Frames that cannot be parsed are logged and dropped."""
        try:
            frame = self.protocol.decode_frame(raw)
            events = self.protocol.parse_frame(frame, self.channels)
        except _FRAME_ERRORS as e:
            self.dropped_frames += 1
            log.warning("ws_malformed_frame", exchange=self.protocol.name, error=str(e))
            return
        for event in events:
            try:
                self._route(event)
            except _FRAME_ERRORS as e:
                self.dropped_frames += 1
                log.warning("ws_bad_event_dropped", exchange=self.protocol.name,
                            event_type=type(event).__name__, error=str(e))

    def _route(self, event: StreamEvent) -> None:
        if isinstance(event, BookUpdate):
            self._route_book(event)
        elif isinstance(event, TickerUpdate):
            for callback in list(self._ticker_handlers):
                self._call(callback, event.ticker)
        elif isinstance(event, TradeUpdate):
            symbol = self._resolve_symbol(event.symbol, event.channel_id)
            if symbol is None:
                self.dropped_frames += 1
                return
            for callback in list(self._trade_handlers):
                self._call(callback, symbol, event.trades)
        elif isinstance(event, ChannelBound):
            self.channels.bind(event.channel_id, event.subscription)
            log.debug("ws_channel_bound", channel=event.channel_id, symbol=event.subscription.symbol)
        elif isinstance(event, ChannelUnbound):
            self.channels.unbind(event.channel_id)
        elif isinstance(event, Authenticated):
            self._auth_failures = 0
            log.info("ws_authenticated", exchange=self.protocol.name)
        elif isinstance(event, AuthFailure):
            self._auth_failures += 1
            log.warning("ws_auth_failure", exchange=self.protocol.name, message=event.message,
                        failures=self._auth_failures)
            if self._auth_failures >= self.max_auth_failures:
                raise AuthError(event.message, exchange=self.protocol.name or None)
        elif isinstance(event, StreamErrorEvent):
            log.warning("ws_exchange_error", exchange=self.protocol.name, message=event.message)
        elif isinstance(event, Heartbeat):
            pass

    def _resolve_symbol(self, symbol: str | None, channel_id: Any) -> str | None:
        if symbol:
            return symbol
        if channel_id is not None:
            sub = self.channels.resolve(channel_id)
            if sub is not None:
                return sub.symbol
        log.warning("ws_unknown_channel", exchange=self.protocol.name, channel=channel_id)
        return None

    def _route_book(self, update: BookUpdate) -> None:
        symbol = self._resolve_symbol(update.symbol, update.channel_id)
        if symbol is None:
            self.dropped_frames += 1
            return
        if (StreamKind.ORDER_BOOK, symbol) not in self._subscriptions:
            self.dropped_frames += 1
            log.debug("ws_unsubscribed_book_dropped", symbol=symbol)
            return
        if update.symbol != symbol:
            update = dataclasses.replace(update, symbol=symbol)
        self.engine.apply_update(update)
        if self.engine.needs_baseline(symbol):
            self._request_baseline(symbol)

    def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            log.exception("ws_handler_failed", exchange=self.protocol.name)

    # Re-sync

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    def _cancel_side_tasks(self) -> None:
        for task in list(self._side_tasks):
            task.cancel()
        self._side_tasks.clear()
        self._baseline_inflight.clear()

    def _request_baseline(self, symbol: str) -> None:
        if symbol in self._baseline_inflight:
            return
        if not self.engine.has_snapshot_fetcher:
            log.error("orderbook_no_snapshot_fetcher", symbol=symbol)
            return
        self._baseline_inflight.add(symbol)
        self._spawn(self._load_baseline(symbol))

    async def _load_baseline(self, symbol: str) -> None:
        try:
            await self.engine.sync_from_rest(symbol)
        except ExchangeError as e:
            log.warning("orderbook_rest_resync_failed", symbol=symbol, error=str(e))
            await asyncio.sleep(self.reconnect_base_delay_sec)
        except Exception:
            log.exception("orderbook_rest_resync_failed", symbol=symbol)
            await asyncio.sleep(self.reconnect_base_delay_sec)
        finally:
            self._baseline_inflight.discard(symbol)

    def _on_stale(self, symbol: str, gap: Any) -> None:
        if self._ws is None:
            return
        if self.engine.convention is BookConvention.REST_SNAPSHOT_THEN_DELTAS:
            self._request_baseline(symbol)
            return
        sub = self._subscriptions.get((StreamKind.ORDER_BOOK, symbol))
        if sub is not None:
            self._spawn(self._resubscribe(sub))

    async def _resubscribe(self, subscription: Subscription) -> None:
        ws = self._ws
        if ws is None:
            return
        log.info("orderbook_resubscribe", symbol=subscription.symbol)
        self.engine.expect_snapshot(subscription.symbol)
        await self._send_all(ws, self.protocol.unsubscribe_messages([subscription], self.channels))
        channel_id = self.channels.channel_for(subscription)
        if channel_id is not None:
            self.channels.unbind(channel_id)
        await self._send_all(ws, self.protocol.subscribe_messages([subscription]))

    def get_status(self) -> dict[str, Any]:
        """Return current status: connection, counters, elapsed_sec, msgs_per_sec, books."""
        elapsed = (time.time() - self._start_ts) if self._start_ts else 0
        return {
            "exchange": self.protocol.name,
            "connected": self.connected,
            "subscriptions": len(self._subscriptions),
            "channels": len(self.channels),
            "msg_count": self.msg_count,
            "dropped_frames": self.dropped_frames,
            "reconnects": self.reconnects,
            "elapsed_sec": round(elapsed, 1),
            "msgs_per_sec": round(self.msg_count / elapsed, 2) if elapsed > 0 else 0,
            "orderbook": self.engine.get_status(),
        }
