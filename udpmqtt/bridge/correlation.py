"""Event correlation table used to measure ping round-trip latency.

An entry is recorded when the bridge sends a ping and consumed the first time
an envelope with the same id comes back from the broker. Entries that never
see a reply stay until the process exits unless a bound is configured.
"""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Dict, Optional

logger = logging.getLogger("udpmqtt.bridge.correlation")


class CorrelationTable:
    """Thread-safe map of event id -> capture timestamp.

    Timestamps are plain floats (seconds, typically ``time.monotonic()``);
    the table never reads a clock itself.

    Args:
        max_entries: Optional cap on pending entries. When exceeded the
            oldest entry is evicted.
        ttl: Optional age limit in seconds. Stale entries are evicted on every
            ``record`` and ``take_elapsed`` call.
    """

    def __init__(self, max_entries: Optional[int] = None, ttl: Optional[float] = None):
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")
        self.max_entries = max_entries
        self.ttl = ttl
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()
        self.evicted = 0

    def record(self, event_id: str, at: float) -> None:
        """Insert or overwrite the entry for ``event_id``."""
        with self._lock:
            self._entries.pop(event_id, None)
            self._entries[event_id] = at
            self._evict(at)

    def take_elapsed(self, event_id: str, now: float) -> Optional[float]:
        """Remove the entry for ``event_id`` and return ``now - recorded_at``.

        Returns None when the id was never recorded (or already consumed).
        """
        with self._lock:
            self._evict(now)
            recorded_at = self._entries.pop(event_id, None)
        if recorded_at is None:
            return None
        return now - recorded_at

    def pending(self) -> Dict[str, float]:
        """Snapshot of the entries still waiting for a reply."""
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, event_id: object) -> bool:
        with self._lock:
            return event_id in self._entries

    def _evict(self, now: float) -> None:
        # caller holds the lock
        if self.ttl is not None:
            while self._entries:
                oldest_id, oldest_at = next(iter(self._entries.items()))
                if now - oldest_at <= self.ttl:
                    break
                self._entries.popitem(last=False)
                self.evicted += 1
                logger.debug("Evicted expired correlation entry %s", oldest_id)

        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                oldest_id, _ = self._entries.popitem(last=False)
                self.evicted += 1
                logger.debug("Evicted correlation entry %s (table full)", oldest_id)
