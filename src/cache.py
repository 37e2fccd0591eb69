"""In-memory response cache: TTL expiry, LFU eviction with LRU tiebreak, hit/miss stats.

One instance is shared by every session in the process, so all state is
guarded by a threading.Lock. Unknown or expired keys are misses, never errors.
"""

import asyncio
import hashlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from config.config_loader import CacheConfig

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float
    access_count: int = 0
    last_access: float = 0.0

    def expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass
class CacheStats:
    size: int
    hit_rate: float        # percentage, two decimals
    hits: int
    misses: int


def make_cache_key(*parts: object) -> str:
    """Stable SHA-256 key over the given parts (prompt, model, persona, round...)."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(str(part).encode("utf-8"))
        digest.update(b"\x1f")
    return f"ai_response_{digest.hexdigest()[:32]}"


class ResponseCache:
    """Key/value store for model responses."""

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_config(cls, config: CacheConfig) -> "ResponseCache":
        return cls(max_entries=config.max_entries, default_ttl=config.ttl_sec)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_least_used()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                ttl=ttl if ttl is not None else self._default_ttl,
                last_access=now,
            )

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expired(now):
                del self._entries[key]
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_access = now
            self._hits += 1
            return entry.value

    def has(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.expired(now):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = round(self._hits / total * 100, 2) if total else 0.0
            return CacheStats(size=len(self._entries), hit_rate=hit_rate, hits=self._hits, misses=self._misses)

    def hot_keys(self, limit: int = 10) -> list[tuple[str, int]]:
        """Most accessed keys as (key, access_count), busiest first."""
        with self._lock:
            ranked = sorted(self._entries.values(), key=lambda e: e.access_count, reverse=True)
            return [(e.key, e.access_count) for e in ranked[:limit]]

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_sec: float) -> None:
        """Sweep periodically until the task is cancelled."""
        while True:
            await asyncio.sleep(interval_sec)
            self.sweep()

    def _evict_least_used(self) -> None:
        # Caller holds the lock.
        victim = min(self._entries.values(), key=lambda e: (e.access_count, e.last_access))
        del self._entries[victim.key]
        logger.debug("Cache evicted least used entry %s", victim.key)
