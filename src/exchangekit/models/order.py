"""OrderRequest, OrderResult - order DTOs and fill merging."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP = "STOP"


class OrderStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    FILLED = "FILLED"
    FILLED_PARTIALLY = "FILLED_PARTIALLY"
    PENDING = "PENDING"
    CANCELED = "CANCELED"
    ERROR = "ERROR"


class OrderRequest(BaseModel):
    """Order to submit to an exchange."""

    symbol: str
    amount: float = Field(..., gt=0)
    price: float | None = Field(None, gt=0)
    side: str = Field(..., pattern="^(BUY|SELL)$")
    order_type: OrderType = OrderType.LIMIT
    extra: dict[str, Any] = Field(default_factory=dict)


class OrderResult(BaseModel):
    """Exchange-side outcome of an order, possibly folded from several fills."""

    order_id: str | None = None
    symbol: str | None = None
    side: str | None = Field(None, pattern="^(BUY|SELL)$")
    status: OrderStatus = OrderStatus.UNKNOWN
    message: str | None = None
    amount: float = Field(0.0, ge=0)
    amount_filled: float = Field(0.0, ge=0)
    average_price: float = Field(0.0, ge=0)
    fees: float = 0.0
    fees_currency: str | None = None
    order_date: datetime | None = None

    def merge(self, other: OrderResult) -> OrderResult:
        """Fold another fill of the same order into a new result.

        Amounts, filled amounts and fees are summed; the average price is
        weighted by filled amount (or by order amount when nothing is filled).
        Order id, symbol and side must agree wherever both sides set them.
        """
        for name in ("order_id", "symbol", "side"):
            mine, theirs = getattr(self, name), getattr(other, name)
            if mine is not None and theirs is not None and mine != theirs:
                raise ValueError(f"cannot merge orders with different {name}: {mine!r} != {theirs!r}")

        filled_total = self.amount_filled + other.amount_filled
        if filled_total > 0:
            w_self, w_other, total = self.amount_filled, other.amount_filled, filled_total
        else:
            w_self, w_other, total = self.amount, other.amount, self.amount + other.amount
        if total > 0:
            avg = (self.average_price * w_self + other.average_price * w_other) / total
        else:
            avg = 0.0

        amount = self.amount + other.amount
        dates = [d for d in (self.order_date, other.order_date) if d is not None]
        if self.fees_currency and other.fees_currency and self.fees_currency != other.fees_currency:
            raise ValueError("cannot merge fees in different currencies")
        return OrderResult(
            order_id=self.order_id or other.order_id,
            symbol=self.symbol or other.symbol,
            side=self.side or other.side,
            status=_merged_status(self.status, other.status, amount, filled_total),
            message=other.message or self.message,
            amount=amount,
            amount_filled=filled_total,
            average_price=avg,
            fees=self.fees + other.fees,
            fees_currency=self.fees_currency or other.fees_currency,
            order_date=min(dates) if dates else None,
        )


def _merged_status(a: OrderStatus, b: OrderStatus, amount: float, filled: float) -> OrderStatus:
    if OrderStatus.ERROR in (a, b):
        return OrderStatus.ERROR
    if filled > 0 and filled >= amount:
        return OrderStatus.FILLED
    if filled > 0:
        return OrderStatus.FILLED_PARTIALLY
    if OrderStatus.CANCELED in (a, b):
        return OrderStatus.CANCELED
    if OrderStatus.PENDING in (a, b):
        return OrderStatus.PENDING
    return OrderStatus.UNKNOWN


def merge_order_results(results: list[OrderResult]) -> OrderResult:
    """Fold a list of partial fills into one logical result."""
    if not results:
        raise ValueError("no order results to merge")
    merged = results[0]
    for r in results[1:]:
        merged = merged.merge(r)
    return merged
