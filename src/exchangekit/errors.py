"""Exception taxonomy shared by the REST pipeline and the stream multiplexer."""

from __future__ import annotations

from typing import Any


class ExchangeError(Exception):
    """Base error. Carries the exchange name, HTTP status and raw payload when known."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        exchange: str | None = None,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.exchange = exchange
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        prefix = f"[{self.exchange}] " if self.exchange else ""
        if self.status_code is not None:
            return f"{prefix}{self.status_code}: {self.message}"
        return f"{prefix}{self.message}"


class TransportError(ExchangeError):
    """Connection failure or timeout. Safe to retry."""

    retryable = True


class AuthError(ExchangeError):
    """Missing or rejected credentials. Fatal for the session."""


class ExchangeLogicError(ExchangeError):
    """Well-formed response reporting a business failure (e.g. insufficient funds)."""


class ProtocolError(ExchangeError):
    """Response or frame with an unexpected shape."""


class RateLimitExceeded(ExchangeError):
    """Local gate timed out, or the exchange rejected the call for rate reasons."""

    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class SequenceGapError(ExchangeError):
    """Missed order book updates. Handed to stale listeners, never raised to callers."""

    def __init__(self, symbol: str, last_sequence: int | None, got_sequence: int, **kwargs: Any) -> None:
        super().__init__(
            f"sequence gap on {symbol}: last={last_sequence} got={got_sequence}", **kwargs
        )
        self.symbol = symbol
        self.last_sequence = last_sequence
        self.got_sequence = got_sequence
