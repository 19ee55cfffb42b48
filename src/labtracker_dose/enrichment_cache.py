"""Bounded, expiring cache of successful enrichment results.

Owned by a single orchestrator. Also tracks which fingerprints have already
been charged against the usage quota. Charges do not expire with cached
results: a fingerprint stays charged until it falls out of the (larger)
charge bound or the cache is reset.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from .models import DosePrior


@dataclass(frozen=True)
class EnrichmentCacheEntry:
    merged_priors: tuple[DosePrior, ...]
    assisted_markers: tuple[str, ...]
    offline_fallback: bool = False


class EnrichmentCache:
    """LRU + TTL cache keyed by request fingerprint.

    No method awaits, so every operation is atomic on the event loop.
    """

    def __init__(
        self,
        max_entries: int = 256,
        ttl_seconds: float = 6 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
        max_charged: int | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        max_charged = max_charged if max_charged is not None else max(4096, max_entries)
        if max_charged < max_entries:
            raise ValueError("max_charged must be at least max_entries")
        self.max_entries = max_entries
        self.max_charged = max_charged
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, EnrichmentCacheEntry]] = OrderedDict()
        self._charged: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        return isinstance(fingerprint, str) and self.get(fingerprint) is not None

    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [key for key, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]:
            del self._entries[key]

    def get(self, fingerprint: str) -> EnrichmentCacheEntry | None:
        item = self._entries.get(fingerprint)
        if item is None:
            return None
        stored_at, entry = item
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[fingerprint]
            return None
        self._entries.move_to_end(fingerprint)
        return entry

    def put(self, fingerprint: str, entry: EnrichmentCacheEntry) -> None:
        self._entries[fingerprint] = (self._clock(), entry)
        self._entries.move_to_end(fingerprint)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def discard(self, fingerprint: str) -> None:
        self._entries.pop(fingerprint, None)

    def mark_charged(self, fingerprint: str) -> bool:
        """Record a quota charge; False when this fingerprint was already charged."""
        if fingerprint in self._charged:
            return False
        self._charged[fingerprint] = None
        while len(self._charged) > self.max_charged:
            self._charged.popitem(last=False)
        return True

    def release_charge(self, fingerprint: str) -> None:
        """Undo a ``mark_charged`` whose quota write failed."""
        self._charged.pop(fingerprint, None)

    def is_charged(self, fingerprint: str) -> bool:
        return fingerprint in self._charged

    def reset(self) -> None:
        self._entries.clear()
        self._charged.clear()
