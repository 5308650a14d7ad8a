"""L2 order book engine - apply snapshots/deltas per market, validate sequences, fan out snapshots."""

from __future__ import annotations

import asyncio
import dataclasses
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Iterable

import structlog

from exchangekit.errors import ProtocolError, SequenceGapError
from exchangekit.ingestion.events import BookUpdate
from exchangekit.models.orderbook import BookSide, BookState, OrderBookSnapshot
from exchangekit.orderbook.book import OrderBook

if TYPE_CHECKING:
    from exchangekit.config.settings import Settings

log = structlog.get_logger(__name__)

SnapshotFetcher = Callable[[str], Awaitable[OrderBookSnapshot]]
BookListener = Callable[[OrderBookSnapshot], Any]
StaleListener = Callable[[str, "SequenceGapError | None"], Any]


class BookConvention(str, Enum):
    """How an exchange delivers books. Configured per exchange, never inferred."""

    # first book message is the full book, deltas follow
    SNAPSHOT_THEN_DELTAS = "SNAPSHOT_THEN_DELTAS"
    # only deltas on the wire; baseline comes from a REST snapshot
    REST_SNAPSHOT_THEN_DELTAS = "REST_SNAPSHOT_THEN_DELTAS"
    # every message is a full book
    FULL_BOOK_ALWAYS = "FULL_BOOK_ALWAYS"


class SequenceMode(str, Enum):
    # ids not comparable: arrival order is trusted, the recorded sequence never moves back
    NONE = "NONE"
    # ids increase but may skip: drop stale, never flag gaps
    MONOTONIC = "MONOTONIC"
    # ids increase by one per update: drop stale, flag gaps
    CONTIGUOUS = "CONTIGUOUS"


def _coerce_levels(levels: Iterable[Any], exchange: str | None = None) -> list[tuple[float, float]]:
    """(price, amount) pairs as floats. Raises ProtocolError on the first unusable row."""
    out: list[tuple[float, float]] = []
    for level in levels:
        try:
            price, amount = level
            out.append((float(price), float(amount)))
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"bad book level: {level!r}", exchange=exchange) from e
    return out


class _Subscriber:
    __slots__ = ("queue", "max_depth")

    def __init__(self, max_depth: int | None, maxsize: int) -> None:
        self.queue: asyncio.Queue[OrderBookSnapshot | None] = asyncio.Queue(maxsize=maxsize)
        self.max_depth = max_depth

    def offer(self, item: OrderBookSnapshot | None) -> None:
        """Enqueue without blocking; the oldest pending snapshot gives way when full."""
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(item)


class OrderBookEngine:
    """One OrderBook per market for a single exchange.

    Exactly one stream writes into an engine, and it does so from the event
    loop thread; subscriber queues are asyncio queues. Readers on other
    threads use ``get_current_snapshot``, which copies under the book lock.
    """

    def __init__(
        self,
        exchange: str = "",
        *,
        convention: BookConvention = BookConvention.SNAPSHOT_THEN_DELTAS,
        sequence_mode: SequenceMode = SequenceMode.MONOTONIC,
        snapshot_fetcher: SnapshotFetcher | None = None,
        max_buffered_deltas: int = 1000,
        subscriber_queue_size: int = 100,
    ) -> None:
        self.exchange = exchange
        self.convention = convention
        self.sequence_mode = sequence_mode
        self._snapshot_fetcher = snapshot_fetcher
        self.max_buffered_deltas = max_buffered_deltas
        self.subscriber_queue_size = subscriber_queue_size
        self._books: dict[str, OrderBook] = {}
        self._pending: dict[str, list[BookUpdate]] = {}
        self._awaiting_snapshot: set[str] = set()
        self._warned_delta_before_snapshot: set[str] = set()
        self._subscribers: dict[str, list[_Subscriber]] = {}
        self._listeners: list[BookListener] = []
        self._stale_listeners: list[StaleListener] = []
        self._closed = False
        self.applied_updates = 0
        self.dropped_updates = 0

    @classmethod
    def from_settings(cls, exchange: str, settings: Settings, **kwargs: Any) -> OrderBookEngine:
        options: dict[str, Any] = {"subscriber_queue_size": settings.subscriber_queue_size}
        options.update(kwargs)
        return cls(exchange, **options)

    # Books

    def book(self, symbol: str) -> OrderBook:
        """Get or create the book for ``symbol``."""
        book = self._books.get(symbol)
        if book is None:
            book = OrderBook(symbol, self.exchange)
            if self._closed:
                book.state = BookState.CLOSED
            self._books[symbol] = book
        return book

    def get_book(self, symbol: str) -> OrderBook | None:
        return self._books.get(symbol)

    def symbols(self) -> list[str]:
        return list(self._books)

    def state(self, symbol: str) -> BookState:
        book = self._books.get(symbol)
        return book.state if book is not None else BookState.UNINITIALIZED

    def get_current_snapshot(self, symbol: str, max_depth: int | None = None) -> OrderBookSnapshot | None:
        book = self._books.get(symbol)
        return book.to_snapshot(max_depth) if book is not None else None

    # Listeners

    def add_listener(self, callback: BookListener) -> None:
        """Call ``callback(snapshot)`` after every change. Must not block."""
        self._listeners.append(callback)

    def remove_listener(self, callback: BookListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def add_stale_listener(self, callback: StaleListener) -> None:
        """Call ``callback(symbol, gap)`` when a book goes stale on a sequence gap."""
        self._stale_listeners.append(callback)

    # Snapshots

    def apply_snapshot(
        self,
        symbol: str,
        side: BookSide | str,
        entries: Iterable[tuple[float, float]],
        sequence: int | None = None,
    ) -> None:
        """Replace one side of a book. The book goes LIVE.

        Raises ProtocolError, leaving the book untouched, if any entry is not numeric.
        """
        book_side = BookSide.parse(side)
        levels = _coerce_levels(entries, self.exchange or None)
        book = self.book(symbol)
        if book.state is BookState.CLOSED:
            self.dropped_updates += 1
            return
        with book.lock:
            book.replace_side(book_side, levels)
            if sequence is not None:
                book.sequence = sequence
            book.is_from_snapshot = True
            book.state = BookState.LIVE
        self._after_snapshot(book)

    def apply_book_snapshot(self, snapshot: OrderBookSnapshot) -> None:
        """Replace both sides of a book from a canonical snapshot."""
        self._apply_full(
            snapshot.symbol,
            [(lev.price, lev.amount) for lev in snapshot.bids],
            [(lev.price, lev.amount) for lev in snapshot.asks],
            snapshot.sequence,
        )

    def _apply_full(
        self,
        symbol: str,
        bids: Iterable[tuple[float, float]],
        asks: Iterable[tuple[float, float]],
        sequence: int | None,
    ) -> None:
        book = self.book(symbol)
        if book.state is BookState.CLOSED:
            self.dropped_updates += 1
            return
        with book.lock:
            book.replace_side(BookSide.BID, bids)
            book.replace_side(BookSide.ASK, asks)
            # a snapshot starts a new sequence baseline, even a lower one after reconnect
            book.sequence = sequence
            book.is_from_snapshot = True
            book.state = BookState.LIVE
        self._after_snapshot(book)

    def _after_snapshot(self, book: OrderBook) -> None:
        self._awaiting_snapshot.discard(book.symbol)
        self._warned_delta_before_snapshot.discard(book.symbol)
        self.applied_updates += 1
        log.debug("orderbook_snapshot_applied", symbol=book.symbol, sequence=book.sequence,
                  bids=len(book.bids), asks=len(book.asks))
        self._publish(book)

    def load_baseline(self, snapshot: OrderBookSnapshot) -> None:
        """Seed a book from a REST snapshot, then replay buffered deltas newer than it."""
        self.apply_book_snapshot(snapshot)
        pending = self._pending.pop(snapshot.symbol, [])
        for update in pending:
            if (
                update.sequence is not None
                and snapshot.sequence is not None
                and update.sequence <= snapshot.sequence
            ):
                self.dropped_updates += 1
                continue
            self._apply_delta_update(snapshot.symbol, update)
        if pending:
            log.debug("orderbook_buffered_replayed", symbol=snapshot.symbol, buffered=len(pending))

    @property
    def has_snapshot_fetcher(self) -> bool:
        return self._snapshot_fetcher is not None

    def needs_baseline(self, symbol: str) -> bool:
        if self.convention is not BookConvention.REST_SNAPSHOT_THEN_DELTAS:
            return False
        return self.state(symbol) in (BookState.UNINITIALIZED, BookState.STALE)

    async def sync_from_rest(self, symbol: str) -> OrderBookSnapshot | None:
        """Fetch a REST snapshot through the configured fetcher and load it as baseline."""
        if self._snapshot_fetcher is None:
            raise RuntimeError("sync_from_rest requires a snapshot_fetcher")
        snapshot = await self._snapshot_fetcher(symbol)
        if snapshot.symbol != symbol:
            snapshot = snapshot.model_copy(update={"symbol": symbol})
        self.load_baseline(snapshot)
        log.info("orderbook_rest_baseline_loaded", symbol=symbol, sequence=snapshot.sequence)
        return self.get_current_snapshot(symbol)

    # Deltas

    def apply_delta(
        self,
        symbol: str,
        side: BookSide | str,
        price: float,
        amount: float,
        sequence: int | None = None,
        first_sequence: int | None = None,
    ) -> bool:
        """Apply one price level change. Amount 0 removes the level. Returns True if applied."""
        level = [(price, amount)]
        is_bid = BookSide.parse(side) is BookSide.BID
        update = BookUpdate(
            symbol=symbol,
            bids=level if is_bid else [],
            asks=[] if is_bid else level,
            sequence=sequence,
            first_sequence=first_sequence,
        )
        return self.apply_update(update)

    def apply_update(self, update: BookUpdate) -> bool:
        """Route a stream BookUpdate according to the convention. Returns True if the book changed.

        Levels are checked before anything is written: one non-numeric level
        raises ProtocolError and the whole update is discarded.
        """
        symbol = update.symbol
        if not symbol:
            raise ValueError("BookUpdate has no symbol; resolve channel ids before applying")
        if self._closed:
            self.dropped_updates += 1
            return False
        exchange = self.exchange or None
        try:
            update = dataclasses.replace(
                update,
                bids=_coerce_levels(update.bids, exchange),
                asks=_coerce_levels(update.asks, exchange),
            )
        except ProtocolError:
            self.dropped_updates += 1
            raise
        treat_as_full = (
            update.is_snapshot
            or self.convention is BookConvention.FULL_BOOK_ALWAYS
            or (
                self.convention is BookConvention.SNAPSHOT_THEN_DELTAS
                and symbol in self._awaiting_snapshot
            )
        )
        if treat_as_full:
            self._apply_full(symbol, update.bids, update.asks, update.sequence)
            return True
        return self._apply_delta_update(symbol, update)

    def _apply_delta_update(self, symbol: str, update: BookUpdate) -> bool:
        book = self.book(symbol)
        rest_convention = self.convention is BookConvention.REST_SNAPSHOT_THEN_DELTAS

        if rest_convention and book.state in (BookState.UNINITIALIZED, BookState.STALE):
            self._buffer(symbol, update)
            return False
        if book.state is BookState.UNINITIALIZED:
            if symbol not in self._warned_delta_before_snapshot:
                self._warned_delta_before_snapshot.add(symbol)
                log.warning(
                    "orderbook_delta_before_snapshot",
                    symbol=symbol,
                    msg="Deltas before first book snapshot (normal at startup); later deltas suppressed.",
                )
            self.dropped_updates += 1
            return False
        if book.state is not BookState.LIVE:
            self.dropped_updates += 1
            return False

        if self.sequence_mode is not SequenceMode.NONE and update.sequence is not None and book.sequence is not None:
            if update.sequence <= book.sequence:
                self.dropped_updates += 1
                log.debug("orderbook_stale_delta_dropped", symbol=symbol, last=book.sequence, got=update.sequence)
                return False
            if self.sequence_mode is SequenceMode.CONTIGUOUS:
                first = update.first_sequence if update.first_sequence is not None else update.sequence
                if first > book.sequence + 1:
                    self.dropped_updates += 1
                    gap = SequenceGapError(symbol, book.sequence, first, exchange=self.exchange or None)
                    self._mark_stale(book, gap, notify=True)
                    return False

        with book.lock:
            for price, amount in update.bids:
                book.set_level(BookSide.BID, price, amount)
            for price, amount in update.asks:
                book.set_level(BookSide.ASK, price, amount)
            if update.sequence is not None and (book.sequence is None or update.sequence > book.sequence):
                book.sequence = update.sequence
            book.is_from_snapshot = False
        self.applied_updates += 1
        self._publish(book)
        return True

    def _buffer(self, symbol: str, update: BookUpdate) -> None:
        pending = self._pending.setdefault(symbol, [])
        if len(pending) >= self.max_buffered_deltas:
            pending.pop(0)
            self.dropped_updates += 1
            log.warning("orderbook_buffer_overflow", symbol=symbol, limit=self.max_buffered_deltas)
        pending.append(update)

    # Lifecycle

    def _mark_stale(self, book: OrderBook, gap: SequenceGapError | None, notify: bool) -> None:
        if book.state is not BookState.LIVE:
            return
        with book.lock:
            book.state = BookState.STALE
        if gap is not None:
            log.warning("orderbook_sequence_gap", symbol=book.symbol, last=gap.last_sequence, got=gap.got_sequence)
        else:
            log.info("orderbook_stale", symbol=book.symbol)
        self._publish(book)
        if notify:
            for callback in list(self._stale_listeners):
                try:
                    callback(book.symbol, gap)
                except Exception:
                    log.exception("orderbook_stale_listener_failed", symbol=book.symbol)

    def mark_stale(self, symbol: str, notify: bool = True) -> None:
        book = self._books.get(symbol)
        if book is not None:
            self._mark_stale(book, None, notify)

    def mark_all_stale(self) -> None:
        """Disconnect: every LIVE book goes STALE. Stale listeners are not called."""
        for book in list(self._books.values()):
            self._mark_stale(book, None, notify=False)

    def begin_resync(self) -> None:
        """After a reconnect: the next update per book is treated as a fresh snapshot.

        Buffered deltas from the previous session are discarded; exchanges do
        not keep sequence continuity across sessions.
        """
        self._pending.clear()
        for symbol in list(self._books):
            self.expect_snapshot(symbol)

    def expect_snapshot(self, symbol: str) -> None:
        """Treat the next update for ``symbol`` as a full book (after a per-book resubscribe)."""
        book = self._books.get(symbol)
        if book is not None and book.state is not BookState.CLOSED:
            self._awaiting_snapshot.add(symbol)

    def remove(self, symbol: str) -> None:
        """Drop a book (unsubscribe). Its subscriber streams end."""
        book = self._books.pop(symbol, None)
        self._pending.pop(symbol, None)
        self._awaiting_snapshot.discard(symbol)
        if book is not None:
            with book.lock:
                book.state = BookState.CLOSED
        for sub in self._subscribers.pop(symbol, []):
            sub.offer(None)

    def close(self) -> None:
        """Teardown: all books CLOSED, all subscriber streams end."""
        if self._closed:
            return
        self._closed = True
        for book in self._books.values():
            with book.lock:
                book.state = BookState.CLOSED
            self._publish(book)
        for subs in self._subscribers.values():
            for sub in subs:
                sub.offer(None)
        self._subscribers.clear()
        self._pending.clear()
        log.info("orderbook_engine_closed", exchange=self.exchange, books=len(self._books))

    @property
    def closed(self) -> bool:
        return self._closed

    # Fan-out

    def _publish(self, book: OrderBook) -> None:
        subs = self._subscribers.get(book.symbol)
        if not subs and not self._listeners:
            return
        by_depth: dict[int | None, OrderBookSnapshot] = {}
        for sub in subs or []:
            if sub.max_depth not in by_depth:
                by_depth[sub.max_depth] = book.to_snapshot(sub.max_depth)
            sub.offer(by_depth[sub.max_depth])
        if self._listeners:
            full = by_depth.get(None) or book.to_snapshot()
            for callback in list(self._listeners):
                try:
                    callback(full)
                except Exception:
                    log.exception("orderbook_listener_failed", symbol=book.symbol)

    async def subscribe(self, symbol: str, max_depth: int | None = 20) -> AsyncIterator[OrderBookSnapshot]:
        """Yield a snapshot (capped at ``max_depth`` levels per side) after each change.

        Starts with the current book if it is LIVE. Ends when the book is
        removed or the engine is closed. Slow consumers skip intermediate
        snapshots rather than stall the stream.
        """
        if self._closed:
            return
        sub = _Subscriber(max_depth, self.subscriber_queue_size)
        self._subscribers.setdefault(symbol, []).append(sub)
        try:
            book = self._books.get(symbol)
            if book is not None and book.state is BookState.LIVE:
                yield book.to_snapshot(max_depth)
            while True:
                item = await sub.queue.get()
                if item is None:
                    return
                yield item
        finally:
            subs = self._subscribers.get(symbol)
            if subs and sub in subs:
                subs.remove(sub)

    def get_status(self) -> dict[str, Any]:
        return {
            "exchange": self.exchange,
            "books": {s: b.state.value for s, b in self._books.items()},
            "applied_updates": self.applied_updates,
            "dropped_updates": self.dropped_updates,
            "buffered": {s: len(p) for s, p in self._pending.items()},
        }
