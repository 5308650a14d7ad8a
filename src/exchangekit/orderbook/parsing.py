"""Common wire shapes -> (price, amount) levels and canonical snapshots."""

from __future__ import annotations

from typing import Any, Iterable

from exchangekit.errors import ProtocolError
from exchangekit.models.orderbook import OrderBookSnapshot, PriceLevel


def _float(value: Any) -> float:
    if value is None:
        raise ProtocolError("missing numeric field")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"not a number: {value!r}") from e


def levels_from_arrays(
    rows: Iterable[Any] | None,
    *,
    price_index: int = 0,
    amount_index: int = 1,
    max_count: int | None = None,
) -> list[tuple[float, float]]:
    """Parse ``[[price, amount, ...], ...]`` (some exchanges put amount first)."""
    out: list[tuple[float, float]] = []
    for row in rows or []:
        if not isinstance(row, (list, tuple)) or len(row) <= max(price_index, amount_index):
            raise ProtocolError(f"bad level row: {row!r}")
        out.append((_float(row[price_index]), _float(row[amount_index])))
        if max_count is not None and len(out) >= max_count:
            break
    return out


def levels_from_dicts(
    rows: Iterable[Any] | None,
    *,
    price_key: str = "price",
    amount_keys: tuple[str, ...] = ("amount", "quantity", "size"),
    max_count: int | None = None,
) -> list[tuple[float, float]]:
    """Parse ``[{"price": .., "amount"|"quantity"|"size": ..}, ...]``."""
    out: list[tuple[float, float]] = []
    for row in rows or []:
        if not isinstance(row, dict):
            raise ProtocolError(f"bad level row: {row!r}")
        amount = next((row[k] for k in amount_keys if k in row), None)
        out.append((_float(row.get(price_key)), _float(amount)))
        if max_count is not None and len(out) >= max_count:
            break
    return out


def snapshot_from_levels(
    symbol: str,
    bids: list[tuple[float, float]],
    asks: list[tuple[float, float]],
    *,
    exchange: str = "",
    sequence: int | None = None,
    max_depth: int | None = None,
) -> OrderBookSnapshot:
    """Build a sorted canonical snapshot; zero-amount levels are left out."""
    bid_rows = sorted(((p, a) for p, a in bids if a > 0), reverse=True)[:max_depth]
    ask_rows = sorted((p, a) for p, a in asks if a > 0)[:max_depth]
    return OrderBookSnapshot(
        symbol=symbol,
        exchange=exchange,
        bids=[PriceLevel(price=p, amount=a) for p, a in bid_rows],
        asks=[PriceLevel(price=p, amount=a) for p, a in ask_rows],
        sequence=sequence,
    )
