"""Nonce generation - strictly increasing per provider, safe across threads and tasks."""

from __future__ import annotations

import time
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Callable

import structlog

if TYPE_CHECKING:
    from exchangekit.config.settings import Settings

log = structlog.get_logger(__name__)


class NonceStyle(str, Enum):
    UNIX_SECONDS = "UNIX_SECONDS"
    UNIX_SECONDS_STRING = "UNIX_SECONDS_STRING"
    UNIX_MILLISECONDS = "UNIX_MILLISECONDS"
    UNIX_MILLISECONDS_STRING = "UNIX_MILLISECONDS_STRING"
    # unix seconds at which the request stops being valid
    EXPIRES = "EXPIRES"


_STRING_STYLES = (NonceStyle.UNIX_SECONDS_STRING, NonceStyle.UNIX_MILLISECONDS_STRING)
_SECOND_STYLES = (NonceStyle.UNIX_SECONDS, NonceStyle.UNIX_SECONDS_STRING, NonceStyle.EXPIRES)


class NonceProvider:
    """Issues nonces in the configured style, never repeating or going backwards.

    The clock reading is shifted by ``offset_ms`` (local minus server time) so
    exchanges that reject requests from the future can be satisfied. If the
    shifted clock does not advance past the last issued value (same tick, or
    the wall clock stepped back), the last value plus one is issued instead.
    """

    def __init__(
        self,
        style: NonceStyle | str = NonceStyle.UNIX_MILLISECONDS,
        *,
        offset_ms: int = 0,
        expires_in_sec: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.style = style if isinstance(style, NonceStyle) else NonceStyle(style.upper())
        self.expires_in_sec = expires_in_sec
        self._offset_ms = offset_ms
        self._clock = clock
        self._last: int | None = None
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> NonceProvider:
        return cls(
            settings.nonce_style,
            offset_ms=settings.nonce_offset_ms,
            expires_in_sec=settings.nonce_expires_in_sec,
        )

    @property
    def offset_ms(self) -> int:
        return self._offset_ms

    @offset_ms.setter
    def offset_ms(self, value: int) -> None:
        with self._lock:
            self._offset_ms = int(value)

    @property
    def last(self) -> int | None:
        return self._last

    def sync_with_server(self, server_time_ms: int) -> int:
        """Learn the clock offset from a server timestamp. Returns the new offset."""
        local_ms = int(self._clock() * 1000)
        offset = local_ms - int(server_time_ms)
        self.offset_ms = offset
        log.debug("nonce_offset_synced", offset_ms=offset)
        return offset

    def _candidate(self) -> int:
        now_ms = int(self._clock() * 1000) - self._offset_ms
        if self.style in _SECOND_STYLES:
            value = now_ms // 1000
            if self.style is NonceStyle.EXPIRES:
                value += self.expires_in_sec
            return value
        return now_ms

    def next(self) -> int | str:
        """Return the next nonce. Every call consumes a value."""
        with self._lock:
            value = self._candidate()
            if self._last is not None and value <= self._last:
                value = self._last + 1
            self._last = value
        if self.style in _STRING_STYLES:
            return str(value)
        return value
