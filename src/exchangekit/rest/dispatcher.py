"""REST dispatch pipeline - rate gate, nonce, signing, HTTP, envelope validation."""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import urlencode

import httpx
import structlog

from exchangekit.auth.nonce import NonceProvider
from exchangekit.errors import (
    AuthError,
    ExchangeError,
    ExchangeLogicError,
    ProtocolError,
    RateLimitExceeded,
    TransportError,
)
from exchangekit.ingestion.base import ApiRequest, Credentials, PayloadEncoding, RestProtocol
from exchangekit.rest.rate_limit import RateGate, backoff_on_429

if TYPE_CHECKING:
    from exchangekit.config.settings import Settings

log = structlog.get_logger(__name__)

_QUERY_METHODS = ("GET", "DELETE")
_RETRYABLE_STATUS = (502, 503, 504)


class RequestState(str, Enum):
    BEGIN = "BEGIN"
    FINISHED = "FINISHED"
    ERROR = "ERROR"


RequestObserver = Callable[[RequestState, Any], None]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _form(payload: dict[str, Any]) -> str:
    return urlencode([(k, _stringify(v)) for k, v in payload.items() if v is not None])


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class RequestDispatcher:
    """Issue public and authenticated calls for one exchange.

    One instance per exchange: the rate gate and nonce provider it holds are
    shared by every task that calls ``execute``. Use as an async context
    manager, or call ``aclose`` when done.
    """

    def __init__(
        self,
        protocol: RestProtocol,
        *,
        credentials: Credentials | None = None,
        rate_gate: RateGate | None = None,
        nonce_provider: NonceProvider | None = None,
        timeout: float = 30.0,
        user_agent: str = "exchangekit",
        rate_limit_retries: int = 0,
        rate_gate_timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_request_state: RequestObserver | None = None,
    ) -> None:
        self.protocol = protocol
        self.credentials = credentials
        self.rate_gate = rate_gate
        self.nonce_provider = nonce_provider or NonceProvider()
        self.timeout = timeout
        self.user_agent = user_agent
        self.rate_limit_retries = rate_limit_retries
        self.rate_gate_timeout = rate_gate_timeout
        self.on_request_state = on_request_state
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, protocol: RestProtocol, settings: Settings, **kwargs: Any) -> RequestDispatcher:
        options: dict[str, Any] = {
            "rate_gate": RateGate.from_settings(settings),
            "nonce_provider": NonceProvider.from_settings(settings),
            "timeout": settings.http_timeout_sec,
            "user_agent": settings.user_agent,
            "rate_limit_retries": settings.rate_limit_retries,
            "rate_gate_timeout": settings.rate_gate_timeout_sec,
        }
        options.update(kwargs)
        return cls(protocol, **options)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> RequestDispatcher:
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def exchange(self) -> str | None:
        return getattr(self.protocol, "name", "") or None

    def _notify(self, state: RequestState, info: Any) -> None:
        if self.on_request_state is None:
            return
        try:
            self.on_request_state(state, info)
        except Exception:
            log.exception("request_observer_failed", state=state.value)

    async def execute(
        self,
        path: str,
        base_url: str | None = None,
        payload: dict[str, Any] | None = None,
        method: str | None = None,
        requires_auth: bool = False,
    ) -> Any:
        """Run one call through the pipeline and return the unwrapped JSON result.

        Raises AuthError, RateLimitExceeded, TransportError, ExchangeLogicError
        or ProtocolError. Only exchange-side 429s are retried, and only
        ``rate_limit_retries`` times.
        """
        if requires_auth and self.credentials is None:
            raise AuthError("API keys required for authenticated request", exchange=self.exchange)
        attempt = 0
        while True:
            try:
                return await self._execute_once(path, base_url, payload, method, requires_auth)
            except RateLimitExceeded as e:
                if e.status_code != 429 or attempt >= self.rate_limit_retries:
                    raise
                delay = e.retry_after if e.retry_after is not None else backoff_on_429(attempt)
                log.warning("rest_rate_limited_retry", path=path, attempt=attempt + 1, delay=delay)
                await asyncio.sleep(delay)
                attempt += 1

    def build_request(
        self,
        path: str,
        base_url: str | None = None,
        payload: dict[str, Any] | None = None,
        method: str | None = None,
        requires_auth: bool = False,
    ) -> ApiRequest:
        """Nonce, encode, canonicalize, sign. Consumes a nonce when the call is authenticated."""
        if requires_auth and self.credentials is None:
            raise AuthError("API keys required for authenticated request", exchange=self.exchange)
        if path and not path.startswith("/"):
            path = "/" + path
        request = ApiRequest(
            method=(method or self.protocol.default_method).upper(),
            base_url=base_url or self.protocol.base_url,
            path=path,
            payload=dict(payload or {}),
            requires_auth=requires_auth,
        )
        request.headers["User-Agent"] = self.user_agent
        if requires_auth and self.protocol.uses_nonce:
            request.nonce = self.nonce_provider.next()
            if self.protocol.nonce_field:
                request.payload[self.protocol.nonce_field] = request.nonce
        self._encode(request)
        if requires_auth:
            message = self.protocol.canonicalize(request)
            signature = self.protocol.signer.sign(self.credentials.private_key, message)
            self.protocol.apply_auth(request, self.credentials, signature)
        return request

    def _encode(self, request: ApiRequest) -> None:
        if request.method in _QUERY_METHODS:
            request.query = _form(request.payload)
            request.body = None
            return
        if not request.payload:
            return
        if self.protocol.payload_encoding is PayloadEncoding.FORM:
            request.body = _form(request.payload)
            request.headers["Content-Type"] = "application/x-www-form-urlencoded"
        else:
            request.body = json.dumps(request.payload, separators=(",", ":"))
            request.headers["Content-Type"] = "application/json"

    async def _execute_once(
        self,
        path: str,
        base_url: str | None,
        payload: dict[str, Any] | None,
        method: str | None,
        requires_auth: bool,
    ) -> Any:
        if self.rate_gate is not None and not await self.rate_gate.wait_to_proceed(self.rate_gate_timeout):
            raise RateLimitExceeded("local rate gate timed out", exchange=self.exchange)

        request = self.build_request(path, base_url, payload, method, requires_auth)
        self._notify(RequestState.BEGIN, request)
        try:
            result = await self._send(request)
        except ExchangeError as e:
            self._notify(RequestState.ERROR, e)
            raise
        self._notify(RequestState.FINISHED, result)
        return result

    async def _send(self, request: ApiRequest) -> Any:
        client = self._get_client()
        log.debug("rest_request", method=request.method, path=request.path, auth=request.requires_auth)
        try:
            response = await client.request(
                request.method,
                request.url,
                content=request.body,
                headers=request.headers,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"timeout calling {request.path}: {e}", exchange=self.exchange) from e
        except httpx.TransportError as e:
            raise TransportError(f"transport error calling {request.path}: {e}", exchange=self.exchange) from e

        self._check_status(request, response)
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(
                f"non-JSON response from {request.path}",
                exchange=self.exchange,
                status_code=response.status_code,
                payload=response.text[:500],
            ) from e
        return self.protocol.parse_envelope(data)

    def _check_status(self, request: ApiRequest, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        body = response.text[:500]
        kwargs = {"exchange": self.exchange, "status_code": status, "payload": body}
        log.warning("rest_http_error", method=request.method, path=request.path, status=status)
        if status == 429:
            raise RateLimitExceeded(body or "rate limited", retry_after=_retry_after(response), **kwargs)
        if status in (401, 403):
            raise AuthError(body or "unauthorized", **kwargs)
        if status in _RETRYABLE_STATUS:
            raise TransportError(body or f"server unavailable ({status})", **kwargs)
        raise ExchangeLogicError(body or f"HTTP {status}", **kwargs)
