"""Market, Ticker - canonical entities."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Market(BaseModel):
    """Canonical market - exchange-agnostic. Refreshed wholesale by adapters."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    exchange: str = ""
    base_currency: str
    quote_currency: str
    active: bool = True
    price_step: float | None = Field(None, gt=0)
    quantity_step: float | None = Field(None, gt=0)
    min_trade_size: float | None = Field(None, ge=0)
    max_trade_size: float | None = Field(None, ge=0)
    min_price: float | None = Field(None, ge=0)
    max_price: float | None = Field(None, ge=0)
    extra: dict[str, Any] = Field(default_factory=dict)


class Ticker(BaseModel):
    """Best bid/ask/last and volume at a point in time. Never partially mutated."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    exchange: str = ""
    bid: float = Field(0.0, ge=0)
    ask: float = Field(0.0, ge=0)
    last: float = Field(0.0, ge=0)
    base_volume: float = Field(0.0, ge=0)
    quote_volume: float = Field(0.0, ge=0)
    timestamp: int | None = None  # ms epoch

    @property
    def mid(self) -> float | None:
        if self.bid > 0 and self.ask > 0:
            return (self.bid + self.ask) / 2.0
        return None
