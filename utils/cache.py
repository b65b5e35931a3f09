import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from schemas import CacheEntry, CacheStatistics, Fingerprint, ProviderVerdict

logger = logging.getLogger(__name__)

_Key = Tuple[Fingerprint, str]


class VerdictCache:
    """In-memory (fingerprint, provider) -> verdict store with per-entry expiry."""

    def __init__(self, max_entries: int = 10000, enabled: bool = True,
                 clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[_Key, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, fingerprint: Fingerprint, provider: str) -> Optional[ProviderVerdict]:
        if not self.enabled:
            return None
        key = (fingerprint, provider)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.verdict.as_cached()

    def put(self, fingerprint: Fingerprint, provider: str, verdict: ProviderVerdict,
            ttl_seconds: float) -> None:
        if not self.enabled or ttl_seconds <= 0:
            return
        now = self._clock()
        key = (fingerprint, provider)
        entry = CacheEntry(verdict=verdict, expires_at=now + ttl_seconds)
        with self._lock:
            self._entries[key] = entry
            if len(self._entries) > self.max_entries:
                self._trim(now, keep=key)

    def invalidate(self, fingerprint: Optional[Fingerprint] = None,
                   provider: Optional[str] = None) -> int:
        """Drop one entry, every entry for a fingerprint, or everything."""
        with self._lock:
            if fingerprint is None:
                removed = len(self._entries)
                self._entries.clear()
            elif provider is not None:
                removed = 1 if self._entries.pop((fingerprint, provider), None) else 0
            else:
                keys = [k for k in self._entries if k[0] == fingerprint]
                for k in keys:
                    del self._entries[k]
                removed = len(keys)
        logger.debug(f"Invalidated {removed} cache entries")
        return removed

    def sweep(self) -> int:
        """Reclaim expired entries, then trim the oldest if over max_entries."""
        with self._lock:
            removed = self._trim(self._clock())
        if removed:
            logger.info(f"Cache sweep removed {removed} entries")
        return removed

    # must be called with _lock held
    def _trim(self, now: float, keep: Optional[_Key] = None) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now and k != keep]
        for k in expired:
            del self._entries[k]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            candidates = [k for k in self._entries if k != keep]
            oldest = sorted(candidates, key=lambda k: self._entries[k].verdict.query_time)
            for k in oldest[:overflow]:
                del self._entries[k]
        return len(expired) + max(0, overflow)

    def statistics(self) -> CacheStatistics:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.items())
            hits, misses = self._hits, self._misses
        by_source: Dict[str, int] = {}
        valid = 0
        for (_, provider), e in entries:
            if e.expires_at > now:
                valid += 1
                by_source[provider] = by_source.get(provider, 0) + 1
        return CacheStatistics(
            total_entries=len(entries),
            valid_entries=valid,
            expired_entries=len(entries) - valid,
            entries_by_source=by_source,
            max_entries=self.max_entries,
            hits=hits,
            misses=misses,
        )

    def __len__(self) -> int:
        return len(self._entries)
