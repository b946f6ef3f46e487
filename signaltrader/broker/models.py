"""Broker data models — the order handed to a broker sink and its result."""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class TradeOrder:
    """An approved, sized binary-option order.

    Immutable once handed to the broker sink.
    """

    order_id: str
    channel_id: str
    action: str  # "CALL" or "PUT"
    asset: str
    amount: float
    expiration_seconds: int
    broker: str
    confidence: int
    risk_level: str  # "low", "medium" or "high"
    timeframe: Optional[str] = None
    constraints: dict[str, Any] = field(default_factory=dict)
    martingale_step: int = 0

    @property
    def sequence_key(self) -> tuple[str, str]:
        """Martingale sequence key — one recovery sequence per channel and asset."""
        return (self.channel_id, self.asset)


@dataclass(frozen=True)
class TradeOutcome:
    """Result returned by the broker sink once a trade has settled."""

    success: bool
    trade_id: str
    profit: float
    duration_ms: int = 0

    @property
    def result(self) -> str:
        """``"win"``, ``"loss"`` or ``"breakeven"`` from the realized profit."""
        if self.profit > 0:
            return "win"
        if self.profit < 0:
            return "loss"
        return "breakeven"
