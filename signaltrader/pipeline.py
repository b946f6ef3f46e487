"""signaltrader — Signal pipeline (message → decision).

Connects extraction, confidence scoring and the risk gate into a single
``process`` call.  Returns a ``TradeOrder`` or a ``Rejected`` value;
abnormal failures raise ``PipelineError``.
"""

import logging
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from signaltrader.broker.models import TradeOrder, TradeOutcome
from signaltrader.config import ChannelSettings, TradingConfig, update_trading_config
from signaltrader.risk.account import AccountRiskState
from signaltrader.risk.gate import RiskGate
from signaltrader.risk.martingale import MartingaleSequencer
from signaltrader.risk.position_sizer import stake_for_confidence
from signaltrader.signals.cache import AnalysisCache
from signaltrader.signals.confidence import ChannelRecord, ConfidenceModel
from signaltrader.signals.extractor import SignalExtractor
from signaltrader.signals.models import (
    Decision,
    InboundMessage,
    RawSignalFields,
    Rejected,
    SignalAnalysis,
)

logger = logging.getLogger("signaltrader")

REASON_NOT_A_SIGNAL = "not a signal"
REASON_LOW_CONFIDENCE = "low confidence"

_TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}
_DEFAULT_EXPIRATION = 300


class PipelineError(RuntimeError):
    """Abnormal failure while scoring or gating a signal.  Should alert."""


def default_expiration(timeframe: Optional[str]) -> int:
    """Expiration implied by a timeframe; 5 minutes when unknown."""
    return _TIMEFRAME_SECONDS.get(timeframe or "", _DEFAULT_EXPIRATION)


def risk_level(confidence: float) -> str:
    if confidence >= 85:
        return "low"
    if confidence >= 70:
        return "medium"
    return "high"


def recommendations(fields: RawSignalFields, confidence: int) -> list[str]:
    """Human-readable notes attached to each analysis."""
    if not fields.is_signal:
        return ["This message does not appear to be a trading signal"]

    notes = []
    if confidence >= 80:
        notes.append("High confidence signal - consider executing")
    elif confidence >= 60:
        notes.append("Medium confidence signal - exercise caution")
    else:
        notes.append("Low confidence signal - avoid trading")
    if not fields.asset:
        notes.append("Asset not clearly identified")
    if not fields.timeframe:
        notes.append("Timeframe not specified")
    if not fields.expiration_seconds:
        notes.append("Expiration time not specified")
    return notes


@dataclass
class PipelineStats:
    """Running counters for the status API."""

    total_analyzed: int = 0
    cache_hits: int = 0
    fallback_extractions: int = 0
    approved: int = 0
    rejected: int = 0
    errors: int = 0
    average_analysis_ms: float = 0.0
    average_confidence: float = 0.0

    def record(self, analysis: SignalAnalysis) -> None:
        self.total_analyzed += 1
        if analysis.approved:
            self.approved += 1
        else:
            self.rejected += 1
        n = self.total_analyzed
        self.average_analysis_ms = (
            self.average_analysis_ms * (n - 1) + analysis.analysis_time_ms
        ) / n
        self.average_confidence = (
            self.average_confidence * (n - 1) + analysis.confidence
        ) / n


class SignalPipeline:
    """Orchestrates one message through extraction, scoring and the gate.

    Args:
        trading: Trading configuration (validated).
        extractor: Signal extractor (owns the model client).
        account: Account risk state.  Defaults to a zero balance.
        confidence_model: Defaults to a fresh model over *trading*.
        sequencer: Defaults to a fresh sequencer over ``trading.martingale``.
        cache: Defaults to a cache sized from *trading*.
        clock: Monotonic clock used for analysis timing.
    """

    def __init__(
        self,
        trading: TradingConfig,
        extractor: SignalExtractor,
        account: Optional[AccountRiskState] = None,
        confidence_model: Optional[ConfidenceModel] = None,
        sequencer: Optional[MartingaleSequencer] = None,
        cache: Optional[AnalysisCache] = None,
        clock=time.monotonic,
    ) -> None:
        self._trading = trading
        self._extractor = extractor
        self._account = account or AccountRiskState()
        self._confidence = confidence_model or ConfidenceModel(trading)
        self._sequencer = sequencer or MartingaleSequencer(trading.martingale)
        self._gate = RiskGate(self._sequencer)
        self._cache = cache or AnalysisCache(
            ttl_seconds=trading.cache_ttl_seconds,
            max_entries=trading.cache_max_entries,
        )
        self._clock = clock
        self.stats = PipelineStats()

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def trading(self) -> TradingConfig:
        return self._trading

    @property
    def account(self) -> AccountRiskState:
        return self._account

    @property
    def confidence_model(self) -> ConfidenceModel:
        return self._confidence

    @property
    def sequencer(self) -> MartingaleSequencer:
        return self._sequencer

    @property
    def cache(self) -> AnalysisCache:
        return self._cache

    # ── Runtime configuration ────────────────────────────────────────────

    def update_trading_config(self, **changes) -> TradingConfig:
        """Apply validated runtime changes to every component.

        Raises ``ConfigurationError`` and leaves the current settings in
        place when the changes are invalid.
        """
        trading = update_trading_config(self._trading, **changes)
        self._trading = trading
        self._extractor.update_trading_config(trading)
        self._confidence.update_trading_config(trading)
        self._sequencer.update_config(trading.martingale)
        self._cache.configure(trading.cache_ttl_seconds, trading.cache_max_entries)
        self._cache.purge_expired()
        logger.info("Trading config updated: %s", ", ".join(sorted(changes)))
        return trading

    def register_channels(self, channels: list[ChannelSettings]) -> None:
        for settings in channels:
            self._confidence.register_channel(settings)
            logger.info("Registered channel '%s' (%s)", settings.channel_id,
                        settings.name or "unnamed")

    # ── Processing ───────────────────────────────────────────────────────

    async def process(
        self,
        message: InboundMessage,
        utc_now: Optional[datetime] = None,
    ) -> Decision:
        """Turn one inbound message into a ``TradeOrder`` or ``Rejected``.

        Identical messages (same text, channel and timestamp) inside the
        cache window return the cached decision without calling the model.

        Raises:
            PipelineError: If scoring or the risk gate fails abnormally.
        """
        cached = self._cache.get(message)
        if cached is not None:
            self.stats.cache_hits += 1
            logger.debug("Cache hit for message %s on '%s'",
                         message.message_id, message.channel_id)
            return cached.decision

        started = self._clock()
        channel = self._confidence.get_channel(message.channel_id)
        fields = await self._extractor.extract(message.text, channel.name or None)
        if fields.is_fallback:
            self.stats.fallback_extractions += 1

        try:
            confidence, decision = self._decide(message, fields, channel, utc_now)
        except Exception as exc:
            self.stats.errors += 1
            logger.error("Pipeline error on channel '%s': %s", message.channel_id, exc)
            raise PipelineError(
                f"Failed to process message from '{message.channel_id}': {exc}"
            ) from exc

        analysis = SignalAnalysis(
            analysis_id=f"analysis_{uuid.uuid4().hex[:12]}",
            message=message,
            fields=fields,
            confidence=confidence,
            decision=decision,
            recommendations=recommendations(fields, confidence),
            analysis_time_ms=(self._clock() - started) * 1000.0,
            created_at=time.time(),
        )
        self._cache.put(message, analysis)
        self.stats.record(analysis)

        if isinstance(decision, Rejected):
            logger.info("Signal from '%s' rejected: %s (confidence %s)",
                        message.channel_id, decision.reason, confidence)
        else:
            logger.info(
                "Signal from '%s' approved: %s %s %.2f for %ds on %s (confidence %d)",
                decision.channel_id, decision.action, decision.asset,
                decision.amount, decision.expiration_seconds, decision.broker,
                confidence,
            )
        return decision

    def _decide(
        self,
        message: InboundMessage,
        fields: RawSignalFields,
        channel: ChannelRecord,
        utc_now: Optional[datetime],
    ) -> tuple[int, Decision]:
        if not fields.is_signal:
            return 0, Rejected(REASON_NOT_A_SIGNAL, channel_id=message.channel_id, confidence=0)

        confidence = self._confidence.score(message.channel_id, fields, message.text)
        if confidence < channel.min_confidence:
            decision: Decision = Rejected(
                REASON_LOW_CONFIDENCE, channel_id=message.channel_id, confidence=confidence
            )
        else:
            decision = self._gate_candidate(message, fields, confidence, channel, utc_now)
        # Channel history only counts messages that reached a decision.
        self._confidence.record_signal(message.channel_id, confidence)
        return confidence, decision

    def _gate_candidate(
        self,
        message: InboundMessage,
        fields: RawSignalFields,
        confidence: int,
        channel: ChannelRecord,
        utc_now: Optional[datetime],
    ) -> Decision:
        candidate = self._build_candidate(message, fields, confidence, channel)
        self._account.roll_over(utc_now)
        verdict = self._gate.assess(
            candidate,
            self._account,
            self._trading,
            martingale_enabled=channel.martingale_enabled,
        )
        if not verdict.approved:
            return Rejected(verdict.reason, channel_id=message.channel_id, confidence=confidence)

        order = replace(
            candidate,
            amount=verdict.final_amount,
            martingale_step=verdict.martingale_step,
        )
        self._account.open_trade(
            order.order_id, order.amount, channel_id=order.channel_id, asset=order.asset
        )
        return order

    def _build_candidate(
        self,
        message: InboundMessage,
        fields: RawSignalFields,
        confidence: int,
        channel: ChannelRecord,
    ) -> TradeOrder:
        return TradeOrder(
            order_id=uuid.uuid4().hex,
            channel_id=message.channel_id,
            action=fields.action or "",
            asset=fields.asset or "",
            amount=stake_for_confidence(confidence),
            expiration_seconds=fields.expiration_seconds or default_expiration(fields.timeframe),
            broker=fields.broker or channel.broker or self._trading.default_broker,
            confidence=confidence,
            risk_level=risk_level(confidence),
            timeframe=fields.timeframe,
            constraints=dict(fields.constraints),
        )

    # ── Outcome feedback ─────────────────────────────────────────────────

    def record_outcome(self, order: TradeOrder, outcome: TradeOutcome) -> None:
        """Apply a settled trade to account, martingale and channel state."""
        self._account.close_trade(order.order_id, outcome.profit)
        if not outcome.success:
            return

        channel = self._confidence.get_channel(order.channel_id)
        self._confidence.record_trade_result(order.channel_id, outcome.profit)
        if channel.martingale_enabled and self._trading.martingale.enabled:
            self._sequencer.record_outcome(order.sequence_key, order.amount, outcome.profit)

    def record_execution_failure(self, order: TradeOrder) -> None:
        """Broker call raised: release the slot and charge the stake as lost."""
        self._account.close_trade(order.order_id, -order.amount)
