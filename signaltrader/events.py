"""Typed pipeline events and the listener interface.

The dispatcher publishes one event per notable step; listeners receive
them synchronously in registration order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from signaltrader.broker.models import TradeOrder, TradeOutcome
from signaltrader.signals.models import InboundMessage, Rejected

logger = logging.getLogger("signaltrader")


@dataclass(frozen=True)
class SignalRejected:
    message: InboundMessage
    rejection: Rejected


@dataclass(frozen=True)
class OrderPlaced:
    order: TradeOrder


@dataclass(frozen=True)
class TradeClosed:
    order: TradeOrder
    outcome: TradeOutcome


@dataclass(frozen=True)
class ExecutionFailed:
    """The broker raised or reported ``success=False``.  Never resubmitted."""

    order: TradeOrder
    error: str
    outcome: Optional[TradeOutcome] = None


@dataclass(frozen=True)
class PipelineFailed:
    """Abnormal pipeline error (not a business rejection)."""

    message: InboundMessage
    error: str


PipelineEvent = Union[SignalRejected, OrderPlaced, TradeClosed, ExecutionFailed, PipelineFailed]


class EventListener(Protocol):
    def __call__(self, event: PipelineEvent) -> None:
        ...


class EventBus:
    """Fan-out of pipeline events to registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def publish(self, event: PipelineEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.error("Event listener %r failed on %s: %s",
                             listener, type(event).__name__, exc)
