"""Signal data models — typed representations for the signal pipeline."""

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from signaltrader.broker.models import TradeOrder


CALL = "CALL"
PUT = "PUT"
ACTIONS = (CALL, PUT)


@dataclass(frozen=True)
class InboundMessage:
    """A raw message received from a Telegram channel."""

    channel_id: str
    text: str
    timestamp: int  # epoch milliseconds
    message_id: Optional[int] = None


@dataclass(frozen=True)
class RawSignalFields:
    """Structured fields extracted from one message.

    ``reasoning`` is ``"fallback"`` when the deterministic keyword
    extractor produced the fields instead of the language model.
    """

    is_signal: bool
    action: Optional[str] = None  # "CALL" or "PUT"
    asset: Optional[str] = None
    timeframe: Optional[str] = None
    expiration_seconds: Optional[int] = None
    broker: Optional[str] = None
    constraints: dict[str, Any] = field(default_factory=dict)
    extractor_confidence: float = 0.0
    reasoning: str = ""

    @property
    def is_fallback(self) -> bool:
        return self.reasoning == "fallback"


@dataclass(frozen=True)
class Rejected:
    """A business rejection — expected outcome, never raised."""

    reason: str
    channel_id: str = ""
    confidence: Optional[int] = None


Decision = Union[TradeOrder, Rejected]


@dataclass
class SignalAnalysis:
    """The pipeline's full verdict for one message."""

    analysis_id: str
    message: InboundMessage
    fields: RawSignalFields
    confidence: int
    decision: Decision
    recommendations: list[str] = field(default_factory=list)
    analysis_time_ms: float = 0.0
    created_at: float = 0.0

    @property
    def approved(self) -> bool:
        return isinstance(self.decision, TradeOrder)
