"""Request signing primitives. Pure functions; canonicalization is the protocol's job."""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Mapping, Protocol
from urllib.parse import urlencode

_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}


def _key_bytes(secret: str | bytes) -> bytes:
    return secret if isinstance(secret, bytes) else secret.encode("utf-8")


def _msg_bytes(message: str | bytes) -> bytes:
    return message if isinstance(message, bytes) else message.encode("utf-8")


def hmac_digest(secret: str | bytes, message: str | bytes, algorithm: str = "sha256") -> bytes:
    try:
        digestmod = _ALGORITHMS[algorithm.lower()]
    except KeyError:
        raise ValueError(f"unsupported HMAC algorithm: {algorithm}") from None
    return hmac.new(_key_bytes(secret), _msg_bytes(message), digestmod).digest()


def hmac_sha256(secret: str | bytes, message: str | bytes) -> str:
    return hmac_digest(secret, message, "sha256").hex()


def hmac_sha384(secret: str | bytes, message: str | bytes) -> str:
    return hmac_digest(secret, message, "sha384").hex()


def hmac_sha512(secret: str | bytes, message: str | bytes) -> str:
    return hmac_digest(secret, message, "sha512").hex()


def md5_hex(message: str | bytes) -> str:
    return hashlib.md5(_msg_bytes(message)).hexdigest()


def canonical_query(params: Mapping[str, Any] | None) -> str:
    """Sorted, url-encoded query string. None values are left out."""
    if not params:
        return ""
    items = sorted((str(k), str(v)) for k, v in params.items() if v is not None)
    return urlencode(items)


class Signer(Protocol):
    """Anything that turns (secret, canonical message) into a signature string."""

    def sign(self, secret: str | bytes, message: str | bytes) -> str: ...


class HmacSigner:
    """HMAC signer with configurable hash, output encoding and secret encoding."""

    __slots__ = ("algorithm", "encoding", "secret_is_base64")

    def __init__(self, algorithm: str = "sha256", encoding: str = "hex", secret_is_base64: bool = False) -> None:
        if algorithm.lower() not in _ALGORITHMS:
            raise ValueError(f"unsupported HMAC algorithm: {algorithm}")
        if encoding not in ("hex", "base64"):
            raise ValueError(f"unsupported signature encoding: {encoding}")
        self.algorithm = algorithm.lower()
        self.encoding = encoding
        self.secret_is_base64 = secret_is_base64

    def sign(self, secret: str | bytes, message: str | bytes) -> str:
        key = base64.b64decode(secret) if self.secret_is_base64 else secret
        digest = hmac_digest(key, message, self.algorithm)
        if self.encoding == "base64":
            return base64.b64encode(digest).decode("ascii")
        return digest.hex()

    def __repr__(self) -> str:
        return f"HmacSigner({self.algorithm!r}, {self.encoding!r})"
