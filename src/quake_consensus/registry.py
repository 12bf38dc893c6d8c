"""Source registry: which sources exist, which are reachable, how healthy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, Optional

from quake_consensus.clients.proxy_client import ProxyClient
from quake_consensus.sources import (
    ACTIVE,
    DEGRADED,
    UNREACHABLE,
    SourceConfig,
    SourceHealth,
)

logger = logging.getLogger(__name__)


class SourceRegistry:
    """Static descriptors plus the mutable health map.

    The health map is shared between concurrent fetch completions, so every
    update goes through ``_lock`` and touches one source at a time.
    """

    def __init__(self, configs: Iterable[SourceConfig] = ()):
        self._lock = Lock()
        self._sources: dict[str, SourceConfig] = {}
        self._health: dict[str, SourceHealth] = {}
        self._active: set[str] = set()
        self.register_sources(configs)

    def register_sources(self, configs: Iterable[SourceConfig]) -> None:
        """Load static descriptors. Performs no I/O."""
        with self._lock:
            for config in configs:
                if not 0.0 <= config.reliability <= 1.0:
                    raise ValueError(
                        f"{config.id}: base reliability {config.reliability} outside [0, 1]"
                    )
                self._sources[config.id] = config
                self._health.setdefault(config.id, SourceHealth())

    def get(self, source_id: str) -> Optional[SourceConfig]:
        return self._sources.get(source_id)

    def sources(self) -> list[SourceConfig]:
        return list(self._sources.values())

    def active_sources(self) -> list[SourceConfig]:
        with self._lock:
            return [s for sid, s in self._sources.items() if sid in self._active]

    def health(self, source_id: str) -> SourceHealth:
        """Copy of the current health, safe to read without the lock."""
        with self._lock:
            return replace(self._health[source_id])

    def health_snapshot(self) -> dict[str, SourceHealth]:
        with self._lock:
            return {sid: replace(h) for sid, h in self._health.items()}

    async def probe(self, source: SourceConfig, client: ProxyClient, timeout_seconds: float = 10.0) -> bool:
        """Connectivity check. Success activates the source with success rate 1.0."""
        ok = await client.probe(source, timeout_seconds=timeout_seconds)

        with self._lock:
            health = self._health.setdefault(source.id, SourceHealth())
            if ok:
                health.status = ACTIVE
                health.success_rate = 1.0
                health.consecutive_failures = 0
                health.last_contact = datetime.now(timezone.utc)
                self._active.add(source.id)
            else:
                health.status = UNREACHABLE
                self._active.discard(source.id)
        return ok

    async def initialize(self, client: ProxyClient, timeout_seconds: float = 10.0) -> int:
        """Probe every registered source concurrently; returns the active count."""
        sources = self.sources()
        results = await asyncio.gather(
            *(self.probe(s, client, timeout_seconds) for s in sources),
        )
        active = sum(1 for ok in results if ok)
        logger.info("Active data sources: %d/%d", active, len(sources))
        for source, ok in zip(sources, results):
            if not ok:
                logger.warning("Data source unavailable: %s (%s)", source.name, source.id)
        return active

    def adjust_success_rate(self, source_id: str, delta: float) -> SourceHealth:
        """Nudge one source's rolling success rate, clamped to [0, 1]."""
        with self._lock:
            health = self._health.setdefault(source_id, SourceHealth())
            health.success_rate = min(1.0, max(0.0, health.success_rate + delta))
            if delta >= 0:
                health.status = ACTIVE
                health.consecutive_failures = 0
                health.last_contact = datetime.now(timezone.utc)
            else:
                health.consecutive_failures += 1
                health.status = DEGRADED if health.success_rate > 0 else UNREACHABLE
            return replace(health)
