"""Trade - canonical executed trade."""

from __future__ import annotations

from enum import IntFlag

from pydantic import BaseModel, ConfigDict, Field

NO_TRADE_ID = "-1"


class TradeFlags(IntFlag):
    NONE = 0
    IS_BUY = 1
    IS_FROM_SNAPSHOT = 2
    IS_LAST_FROM_SNAPSHOT = 4


class Trade(BaseModel):
    """Executed trade print. Ordered by (timestamp, id)."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: int  # ms epoch
    id: str = NO_TRADE_ID
    price: float = Field(..., ge=0)
    amount: float = Field(..., ge=0)
    side: str = Field(..., pattern="^(BUY|SELL)$")
    flags: TradeFlags = TradeFlags.NONE

    @property
    def is_buy(self) -> bool:
        return self.side == "BUY"

    @property
    def is_from_snapshot(self) -> bool:
        return bool(self.flags & TradeFlags.IS_FROM_SNAPSHOT)

    @property
    def is_last_from_snapshot(self) -> bool:
        return bool(self.flags & TradeFlags.IS_LAST_FROM_SNAPSHOT)

    @property
    def sort_key(self) -> tuple[int, int, str]:
        # numeric ids compare numerically, others fall back to string order
        try:
            numeric = int(self.id)
        except ValueError:
            numeric = -1
        return (self.timestamp, numeric, self.id)
