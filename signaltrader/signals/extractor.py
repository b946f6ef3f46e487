"""Signal extraction — language-model parsing with a deterministic fallback.

``SignalExtractor.extract`` never raises for model trouble: transport
errors, timeouts and malformed JSON all degrade to the keyword extractor.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from signaltrader.config import TradingConfig
from signaltrader.signals.models import ACTIONS, CALL, PUT, RawSignalFields

logger = logging.getLogger("signaltrader")

# Alphanumerics, whitespace, common punctuation and currency symbols.
_DISALLOWED_CHARS = re.compile(r"[^\w\s\-.:()/%$€£¥]")
_WHITESPACE = re.compile(r"\s+")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_EXPIRATION = re.compile(
    r"(\d+)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h)\b"
)

_CALL_WORDS = ("call", "buy", "up")
_PUT_WORDS = ("put", "sell", "down")

_REQUIRED_KEYS = ("isSignal", "action", "asset", "confidence")

FALLBACK_CONFIDENCE = 50

_PROMPT_TEMPLATE = """Analyze this trading signal message and extract the following parameters.
{context}
Message: "{message}"

Return a JSON object with exactly these fields:
- isSignal: boolean (true if this is a trading signal, false otherwise)
- action: string ("CALL", "PUT", or null if not clear)
- asset: string (one of: {assets}; or null)
- timeframe: string (one of: {timeframes}; or null)
- expiration: number (expiration time in seconds, or null if not specified)
- confidence: number (0-100, how confident you are this is a valid signal)
- broker: string (one of: {brokers}; or null if not specified)
- constraints: object (any special constraints mentioned)
- reasoning: string (brief explanation of your analysis)

If any parameter cannot be determined, use null.
Respond only with valid JSON."""


class CompletionClient(Protocol):
    """Anything with an async ``complete`` returning an object with ``content``."""

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float,
                       timeout: Optional[float]) -> Any:
        ...


@dataclass(frozen=True)
class ProcessedText:
    """A message after whitespace and character clean-up."""

    original: str
    cleaned: str
    lower: str

    @property
    def words(self) -> list[str]:
        return self.lower.split()


def preprocess(text: str) -> ProcessedText:
    """Strip disallowed characters, collapse whitespace, lower-case a copy.

    The original text is kept untouched for auditing.
    """
    cleaned = _DISALLOWED_CHARS.sub(" ", text)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return ProcessedText(original=text, cleaned=cleaned, lower=cleaned.lower())


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(word)}(?!\w)", text) is not None


def parse_expiration(text: str) -> Optional[int]:
    """Parse the first ``<number><unit>`` duration in *text* into seconds."""
    match = _EXPIRATION.search(text)
    if not match:
        return None
    value = int(match.group(1))
    unit = match.group(2)
    if unit.startswith("s"):
        return value
    if unit.startswith("m"):
        return value * 60
    return value * 3600


class SignalExtractor:
    """Turns message text into validated ``RawSignalFields``.

    Args:
        trading: Supported enumerations and keyword set.
        client: Language-model client.  ``None`` runs fallback-only.
        timeout: Hard timeout per model call, in seconds.
        max_retries: Model attempts before falling back.
        retry_delay: Base backoff delay in seconds; doubles each attempt.
    """

    def __init__(
        self,
        trading: TradingConfig,
        client: Optional[CompletionClient] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._trading = trading
        self._client = client
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

    def update_trading_config(self, trading: TradingConfig) -> None:
        self._trading = trading

    # ── Public API ───────────────────────────────────────────────────────

    async def extract(self, text: str, channel_context: Optional[str] = None) -> RawSignalFields:
        """Extract signal fields from *text*.

        Args:
            text: Raw message text.
            channel_context: Optional channel description included in the
                             prompt (e.g. the channel's display name).
        """
        processed = preprocess(text)
        if self._client is None:
            return self.fallback_extract(processed)

        prompt = self.build_prompt(processed, channel_context)
        for attempt in range(self._max_retries):
            try:
                completion = await asyncio.wait_for(
                    self._client.complete(
                        prompt,
                        max_tokens=500,
                        temperature=0.3,
                        timeout=self._timeout,
                    ),
                    timeout=self._timeout,
                )
                return self.parse_completion(completion.content)
            except asyncio.TimeoutError:
                logger.warning(
                    "Model call timed out after %.1fs (attempt %d/%d)",
                    self._timeout, attempt + 1, self._max_retries,
                )
            except (ValueError, TypeError) as exc:
                # Malformed output goes straight to fallback, no retry.
                logger.warning("Model output rejected: %s — using fallback", exc)
                return self.fallback_extract(processed)
            except Exception as exc:
                logger.warning(
                    "Model call failed (%s) — attempt %d/%d",
                    exc, attempt + 1, self._max_retries,
                )

            if attempt + 1 < self._max_retries:
                await asyncio.sleep(self._retry_delay * (2 ** attempt))

        logger.warning("Model unavailable after %d attempts — using fallback",
                       self._max_retries)
        return self.fallback_extract(processed)

    def build_prompt(self, processed: ProcessedText, channel_context: Optional[str] = None) -> str:
        context = f"Channel: {channel_context}\n" if channel_context else ""
        return _PROMPT_TEMPLATE.format(
            context=context,
            message=processed.original.replace('"', "'"),
            assets=", ".join(self._trading.assets),
            timeframes=", ".join(self._trading.timeframes),
            brokers=", ".join(self._trading.brokers),
        )

    # ── Primary path ─────────────────────────────────────────────────────

    def parse_completion(self, content: str) -> RawSignalFields:
        """Parse model output into validated fields.

        Raises:
            ValueError: If the text is not a JSON object or lacks a
                        required key (``json.JSONDecodeError`` is a
                        ``ValueError``).
        """
        payload = json.loads(_CODE_FENCE.sub("", content.strip()))
        if not isinstance(payload, dict):
            raise ValueError("model output is not a JSON object")
        missing = [k for k in _REQUIRED_KEYS if k not in payload]
        if missing:
            raise ValueError(f"model output missing key(s): {', '.join(missing)}")
        return self.validate(payload)

    def validate(self, params: dict) -> RawSignalFields:
        """Clamp model output to the supported enumerations.

        Unsupported values become ``None``.  When ``isSignal`` is false every
        dependent field is cleared regardless of what the model returned.
        """
        is_signal = params.get("isSignal") is True

        action = params.get("action")
        action = action.upper() if isinstance(action, str) else None
        if action not in ACTIONS:
            action = None

        asset = self._match_choice(params.get("asset"), self._trading.assets, str.upper)
        timeframe = self._match_choice(params.get("timeframe"), self._trading.timeframes, str.lower)
        broker = self._match_choice(params.get("broker"), self._trading.brokers, str.lower)

        expiration = params.get("expiration")
        if isinstance(expiration, bool) or not isinstance(expiration, (int, float)) or expiration <= 0:
            expiration = None
        else:
            expiration = int(expiration)

        confidence = params.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = 0.0
        confidence = max(0.0, min(100.0, float(confidence)))

        constraints = params.get("constraints")
        if not isinstance(constraints, dict):
            constraints = {}

        reasoning = params.get("reasoning")
        reasoning = reasoning if isinstance(reasoning, str) else ""

        if not is_signal:
            return RawSignalFields(is_signal=False, reasoning=reasoning)

        return RawSignalFields(
            is_signal=True,
            action=action,
            asset=asset,
            timeframe=timeframe,
            expiration_seconds=expiration,
            broker=broker,
            constraints=constraints,
            extractor_confidence=confidence,
            reasoning=reasoning,
        )

    @staticmethod
    def _match_choice(value, choices, normalize) -> Optional[str]:
        if not isinstance(value, str):
            return None
        value = normalize(value.strip())
        for choice in choices:
            if normalize(choice) == value:
                return choice
        return None

    # ── Fallback path ────────────────────────────────────────────────────

    def fallback_extract(self, processed: ProcessedText) -> RawSignalFields:
        """Deterministic keyword-and-regex extraction.

        Confidence is fixed at ``FALLBACK_CONFIDENCE``; ``reasoning`` is
        ``"fallback"``.
        """
        text = processed.lower

        if not any(_contains_word(text, kw) for kw in self._trading.signal_keywords):
            return RawSignalFields(is_signal=False, reasoning="fallback")

        action = None
        if any(_contains_word(text, w) for w in _CALL_WORDS):
            action = CALL
        elif any(_contains_word(text, w) for w in _PUT_WORDS):
            action = PUT

        asset = None
        for candidate in self._trading.assets:
            lowered = candidate.lower()
            if lowered in text or lowered.replace("/", "") in text:
                asset = candidate
                break

        timeframe = None
        for candidate in self._trading.timeframes:
            if _contains_word(text, candidate.lower()):
                timeframe = candidate
                break

        return RawSignalFields(
            is_signal=True,
            action=action,
            asset=asset,
            timeframe=timeframe,
            expiration_seconds=parse_expiration(text),
            broker=None,
            constraints={},
            extractor_confidence=float(FALLBACK_CONFIDENCE),
            reasoning="fallback",
        )
