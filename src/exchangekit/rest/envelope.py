"""Generic JSON response envelope checks shared by most exchanges."""

from __future__ import annotations

import json
from typing import Any

from exchangekit.errors import ExchangeLogicError, ProtocolError

_ERROR_KEYS = ("error", "errorCode", "error_code")
_STATUS_KEYS = ("status", "Status")
_SUCCESS_KEYS = ("success", "Success")
_RESULT_KEYS = ("result", "data", "return", "Result", "Data", "Return")


def _present(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    # numeric error codes: 0 means ok
    return value != 0


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _error_message(data: dict[str, Any]) -> str:
    for key in ("message", "msg", "error_message", "errorMessage", *_ERROR_KEYS):
        value = data.get(key)
        if _present(value):
            if isinstance(value, (list, dict)):
                return json.dumps(value)
            return str(value)
    return json.dumps(data)


def check_json_response(data: Any, exchange: str | None = None) -> Any:
    """Raise ExchangeLogicError if ``data`` signals an error; otherwise unwrap it.

    Error signals: a non-empty ``error`` / ``errorCode`` / ``error_code``, a
    ``status`` of ``"error"``, or a ``success`` flag that is not true. The
    ``result`` / ``data`` / ``return`` member is returned when present, else
    the whole document. Arrays pass through unchanged.
    """
    if data is None:
        raise ProtocolError("No result from server", exchange=exchange)
    if not isinstance(data, dict):
        return data
    failed = (
        any(_present(data.get(k)) for k in _ERROR_KEYS)
        or any(str(data.get(k, "")).lower() == "error" for k in _STATUS_KEYS)
        or any(k in data and not _truthy(data[k]) for k in _SUCCESS_KEYS)
    )
    if failed:
        raise ExchangeLogicError(_error_message(data), exchange=exchange, payload=data)
    for key in _RESULT_KEYS:
        if key in data and data[key] is not None:
            return data[key]
    return data
