"""Exchange protocol strategy - the per-exchange seam of the REST pipeline and stream multiplexer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from exchangekit.auth.signing import HmacSigner, Signer
from exchangekit.errors import ProtocolError
from exchangekit.rest.envelope import check_json_response

if TYPE_CHECKING:
    from exchangekit.auth.nonce import NonceProvider
    from exchangekit.ingestion.events import ChannelRegistry, StreamEvent, Subscription


class PayloadEncoding(str, Enum):
    JSON = "JSON"
    FORM = "FORM"


@dataclass(frozen=True)
class Credentials:
    """API key pair (and passphrase for exchanges that use one). Never printed in full."""

    public_key: str
    private_key: str
    passphrase: str | None = None

    def __repr__(self) -> str:
        masked = self.public_key[:4] + "..." if self.public_key else ""
        return f"Credentials(public_key={masked!r})"


@dataclass
class ApiRequest:
    """One outbound REST call as it moves through the dispatch pipeline.

    ``payload`` holds the caller's parameters (plus the nonce, when the
    protocol puts it there). The dispatcher fills ``query`` for GET/DELETE or
    ``body`` otherwise before the protocol canonicalizes and signs.
    """

    method: str
    base_url: str
    path: str
    payload: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    requires_auth: bool = False
    nonce: int | str | None = None
    query: str = ""
    body: str | None = None

    @property
    def url(self) -> str:
        url = self.base_url.rstrip("/") + self.path
        return f"{url}?{self.query}" if self.query else url

    @property
    def path_with_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


class RestProtocol(Protocol):
    """What the RequestDispatcher needs from an exchange."""

    name: str
    base_url: str
    default_method: str
    payload_encoding: PayloadEncoding
    uses_nonce: bool
    nonce_field: str | None
    signer: Signer

    def canonicalize(self, request: ApiRequest) -> str: ...
    def apply_auth(self, request: ApiRequest, credentials: Credentials, signature: str) -> None: ...
    def parse_envelope(self, data: Any) -> Any: ...


class StreamProtocol(Protocol):
    """What the StreamMultiplexer needs from an exchange."""

    name: str
    ws_url: str

    def decode_frame(self, raw: str | bytes) -> Any: ...
    def parse_frame(self, frame: Any, channels: ChannelRegistry) -> list[StreamEvent]: ...
    def subscribe_messages(self, subscriptions: list[Subscription]) -> list[Any]: ...
    def unsubscribe_messages(self, subscriptions: list[Subscription], channels: ChannelRegistry) -> list[Any]: ...
    def login_messages(self, credentials: Credentials | None, nonce_provider: NonceProvider | None) -> list[Any]: ...


class ExchangeProtocol:
    """Base strategy with the conventions most exchanges share. Override what differs.

    REST defaults: nonce in the payload under ``nonce``, HMAC-SHA256 hex over
    ``nonce + METHOD + path[?query] + body``, key/signature/nonce in
    ``X-API-*`` headers, generic envelope checks. Streaming needs
    ``subscribe_messages`` and ``parse_frame`` from the subclass.
    """

    name: str = ""
    base_url: str = ""
    ws_url: str = ""
    default_method: str = "GET"
    payload_encoding: PayloadEncoding = PayloadEncoding.JSON
    uses_nonce: bool = True
    nonce_field: str | None = "nonce"
    signer: Signer = HmacSigner("sha256", "hex")

    # REST

    def canonicalize(self, request: ApiRequest) -> str:
        nonce = "" if request.nonce is None else str(request.nonce)
        return f"{nonce}{request.method.upper()}{request.path_with_query}{request.body or ''}"

    def apply_auth(self, request: ApiRequest, credentials: Credentials, signature: str) -> None:
        request.headers["X-API-KEY"] = credentials.public_key
        request.headers["X-API-SIGN"] = signature
        if request.nonce is not None:
            request.headers["X-API-NONCE"] = str(request.nonce)
        if credentials.passphrase:
            request.headers["X-API-PASSPHRASE"] = credentials.passphrase

    def parse_envelope(self, data: Any) -> Any:
        return check_json_response(data, exchange=self.name or None)

    # Streaming

    def decode_frame(self, raw: str | bytes) -> Any:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"malformed frame: {e}", exchange=self.name or None) from e

    def parse_frame(self, frame: Any, channels: ChannelRegistry) -> list[StreamEvent]:
        raise NotImplementedError(f"{type(self).__name__} does not support streaming")

    def subscribe_messages(self, subscriptions: list[Subscription]) -> list[Any]:
        raise NotImplementedError(f"{type(self).__name__} does not support streaming")

    def unsubscribe_messages(self, subscriptions: list[Subscription], channels: ChannelRegistry) -> list[Any]:
        return []

    def login_messages(self, credentials: Credentials | None, nonce_provider: NonceProvider | None) -> list[Any]:
        return []
