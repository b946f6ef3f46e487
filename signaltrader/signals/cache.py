"""Analysis cache — TTL + LRU bound, keyed by message content."""

import hashlib
import time
from collections import OrderedDict
from typing import Callable, Optional

from signaltrader.signals.models import InboundMessage, SignalAnalysis


def cache_key(message: InboundMessage) -> str:
    """SHA-256 of text, channel id and timestamp."""
    raw = f"{message.text}|{message.channel_id}|{message.timestamp}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AnalysisCache:
    """Holds recent ``SignalAnalysis`` results so duplicates are not re-analyzed.

    Args:
        ttl_seconds: Entry lifetime.
        max_entries: LRU bound; the least recently used entry is evicted
                     when the bound is exceeded.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, SignalAnalysis]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, message: InboundMessage) -> Optional[SignalAnalysis]:
        """Return the cached analysis for *message*, or ``None`` if absent or expired."""
        key = cache_key(message)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, analysis = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return analysis

    def put(self, message: InboundMessage, analysis: SignalAnalysis) -> None:
        key = cache_key(message)
        self._entries[key] = (self._clock(), analysis)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [k for k, (ts, _) in self._entries.items() if now - ts >= self._ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def configure(self, ttl_seconds: float, max_entries: int) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
