"""Confidence scoring and per-channel signal history.

The score is a clamped sum of four terms:

    base          extractor confidence (50 when absent)
    completeness  20 × (0.6 × required_ratio + 0.4 × optional_ratio)
    historical    (win_rate − 0.5) × 20, only with enough channel history
    clarity       +10 / +5 / 0 / −5 by message word count

``success_count`` counts signals whose confidence met the threshold.  It is
a proxy, not a realized win rate; realized results are tracked separately
in the ``realized_*`` fields and do not feed the score.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from signaltrader.config import ChannelSettings, TradingConfig, validate_channel_changes
from signaltrader.signals.models import RawSignalFields

logger = logging.getLogger("signaltrader")

_REQUIRED_FIELDS = ("action", "asset")
_OPTIONAL_FIELDS = ("timeframe", "expiration_seconds", "broker")
_COMPLETENESS_POINTS = 20.0
_HISTORICAL_POINTS = 20.0


@dataclass
class ChannelPerformance:
    """Running signal statistics for one channel."""

    total_count: int = 0
    success_count: int = 0
    average_confidence: float = 0.0
    last_signal_at: Optional[float] = None
    realized_trades: int = 0
    realized_wins: int = 0
    realized_pnl: float = 0.0

    @property
    def win_rate(self) -> float:
        """Threshold-met rate as a percentage (0–100)."""
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count * 100.0

    @property
    def realized_win_rate(self) -> float:
        if self.realized_trades == 0:
            return 0.0
        return self.realized_wins / self.realized_trades * 100.0


@dataclass
class ChannelRecord:
    """Identity, settings and history of a signal channel."""

    channel_id: str
    name: str = ""
    broker: Optional[str] = None
    min_confidence: float = 70.0
    martingale_enabled: bool = False
    performance: ChannelPerformance = field(default_factory=ChannelPerformance)


def completeness_bonus(fields: RawSignalFields) -> float:
    """Up to 20 points for populated parameters (60 % required, 40 % optional)."""
    required = sum(getattr(fields, f) is not None for f in _REQUIRED_FIELDS)
    optional = sum(getattr(fields, f) is not None for f in _OPTIONAL_FIELDS)
    ratio = 0.6 * required / len(_REQUIRED_FIELDS) + 0.4 * optional / len(_OPTIONAL_FIELDS)
    return _COMPLETENESS_POINTS * ratio


def clarity_adjustment(text: str) -> int:
    """Short messages score higher than long narrative ones."""
    words = len(text.split())
    if words < 10:
        return 10
    if words < 20:
        return 5
    if words < 30:
        return 0
    return -5


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class ConfidenceModel:
    """Owns every ``ChannelRecord`` and computes blended confidence.

    Args:
        trading: Supplies ``confidence_threshold`` and
                 ``min_historical_signals``.
        clock: Wall-clock source for ``last_signal_at``.
    """

    def __init__(self, trading: TradingConfig, clock=time.time) -> None:
        self._trading = trading
        self._clock = clock
        self._channels: dict[str, ChannelRecord] = {}

    def update_trading_config(self, trading: TradingConfig) -> None:
        self._trading = trading
        for record in self._channels.values():
            self._drop_unsupported_broker(record)

    def _drop_unsupported_broker(self, record: ChannelRecord) -> None:
        broker = record.broker
        if broker is None:
            return
        if broker in self._trading.brokers and broker in self._trading.broker_limits:
            return
        logger.warning("Channel '%s' broker '%s' is not supported — using the default broker",
                       record.channel_id, broker)
        record.broker = None

    # ── Channel registry ─────────────────────────────────────────────────

    @property
    def channels(self) -> dict[str, ChannelRecord]:
        """Map of channel id → ``ChannelRecord``."""
        return dict(self._channels)

    def register_channel(self, settings: ChannelSettings) -> ChannelRecord:
        """Create or update a channel from static settings, keeping its history."""
        record = self._channels.get(settings.channel_id)
        if record is None:
            record = ChannelRecord(channel_id=settings.channel_id)
            self._channels[settings.channel_id] = record
        record.name = settings.name or record.name
        record.broker = settings.broker
        record.min_confidence = settings.min_confidence
        record.martingale_enabled = settings.martingale_enabled
        return record

    def restore(self, record: ChannelRecord) -> None:
        """Install a persisted record.

        A broker that is no longer supported is cleared so the channel
        falls back to the default broker.
        """
        self._drop_unsupported_broker(record)
        self._channels[record.channel_id] = record

    def get_channel(self, channel_id: str) -> ChannelRecord:
        """Return the record for *channel_id*, creating it on first sight."""
        record = self._channels.get(channel_id)
        if record is None:
            record = ChannelRecord(
                channel_id=channel_id,
                name=channel_id,
                min_confidence=self._trading.confidence_threshold,
                martingale_enabled=self._trading.martingale.enabled,
            )
            self._channels[channel_id] = record
        return record

    def update_channel(self, channel_id: str, **changes) -> ChannelRecord:
        """Update mutable channel settings (not history).

        Raises ``KeyError`` for unknown channels and ``ConfigurationError``
        for unknown settings or invalid values.  Nothing is applied unless
        every value is valid.
        """
        record = self._channels[channel_id]
        typed = validate_channel_changes(changes, self._trading)
        for key, value in typed.items():
            setattr(record, key, value)
        return record

    # ── Scoring ──────────────────────────────────────────────────────────

    def historical_bonus(self, channel_id: str) -> float:
        """−10…+10 from the channel's threshold-met rate; 0 without enough history."""
        record = self._channels.get(channel_id)
        if record is None:
            return 0.0
        perf = record.performance
        if perf.total_count < self._trading.min_historical_signals or perf.total_count == 0:
            return 0.0
        return (perf.win_rate / 100.0 - 0.5) * _HISTORICAL_POINTS

    def score(self, channel_id: str, fields: RawSignalFields, text: str) -> int:
        """Blend extractor confidence, completeness, history and clarity into 0–100."""
        if not fields.is_signal:
            return 0

        base = _clamp(fields.extractor_confidence or 50.0)
        total = (
            base
            + completeness_bonus(fields)
            + self.historical_bonus(channel_id)
            + clarity_adjustment(text)
        )
        return int(round(_clamp(total)))

    # ── Recording ────────────────────────────────────────────────────────

    def record_outcome(self, channel_id: str, confidence: float, met_threshold: bool) -> None:
        """Fold one processed signal into the channel's history."""
        perf = self.get_channel(channel_id).performance
        perf.total_count += 1
        if met_threshold:
            perf.success_count += 1
        n = perf.total_count
        perf.average_confidence = (perf.average_confidence * (n - 1) + confidence) / n
        perf.last_signal_at = self._clock()

    def record_signal(self, channel_id: str, confidence: float) -> bool:
        """Record a scored signal against the global threshold.

        Returns whether the threshold was met.
        """
        met = confidence >= self._trading.confidence_threshold
        self.record_outcome(channel_id, confidence, met)
        return met

    def record_trade_result(self, channel_id: str, profit: float) -> None:
        """Fold a realized broker outcome into the channel's realized stats."""
        perf = self.get_channel(channel_id).performance
        perf.realized_trades += 1
        if profit > 0:
            perf.realized_wins += 1
        perf.realized_pnl = round(perf.realized_pnl + profit, 2)
