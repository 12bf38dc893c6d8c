"""Short-TTL response cache keyed by (source, minute bucket)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

BUCKET_SECONDS = 60
DEFAULT_TTL_SECONDS = 3600.0


@dataclass
class CacheEntry:
    """Memoized fetch result."""

    key: str
    source_id: str
    payload: Any
    inserted_at: float


def cache_key(source_id: str, now: float) -> str:
    """At most one live fetch per source per minute: ``{source}_{floor(now/60)}``."""
    return f"{source_id}_{int(now // BUCKET_SECONDS)}"


class ResponseCache:
    """Thread-safe memoization of fetch results.

    Expired entries are purged lazily on insert. ``latest`` ignores the TTL so a
    failed fetch can still fall back to the last good payload.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._latest: dict[str, CacheEntry] = {}   # source id → newest entry

    def now(self) -> float:
        return self._clock()

    def key_for(self, source_id: str) -> str:
        return cache_key(source_id, self._clock())

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.payload if entry is not None else None

    def put(self, key: str, value: Any, source_id: Optional[str] = None) -> None:
        now = self._clock()
        source_id = source_id or key.rsplit("_", 1)[0]
        entry = CacheEntry(key=key, source_id=source_id, payload=value, inserted_at=now)
        with self._lock:
            self._entries[key] = entry
            self._latest[source_id] = entry
            self._purge(now)

    def latest(self, source_id: str) -> Optional[CacheEntry]:
        """Newest entry for a source, even if it is older than the TTL."""
        with self._lock:
            return self._latest.get(source_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._latest.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if now - e.inserted_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache purged %d expired entr%s", len(expired), "y" if len(expired) == 1 else "ies")
