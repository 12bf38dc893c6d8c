"""Verification engine: periodic cycles plus the real-time verification path.

One ``VerificationEngine`` owns the registry, cache, scorer and event bus.
A cycle moves idle → fetching → correlating → scoring → consensus-built →
idle; a failure at any stage drops back to idle with the partial results kept
in ``last_partial``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import httpx

from quake_consensus.adapters import FetchOutcome, build_adapters
from quake_consensus.cache import ResponseCache
from quake_consensus.clients.proxy_client import ProxyClient
from quake_consensus.config import Settings
from quake_consensus.consensus import ConsensusBuilder
from quake_consensus.correlator import correlate, correlate_pair
from quake_consensus.events import EngineEvent, EventBus
from quake_consensus.models import (
    ConsensusSummary,
    Discrepancy,
    Event,
    RealtimeVerification,
    SystemStatus,
    VerificationResult,
)
from quake_consensus.parsers import EventParser, P2PQuakeParser, ValidationError
from quake_consensus.registry import SourceRegistry
from quake_consensus.reliability import ReliabilityScorer
from quake_consensus.sources import SOURCES, SourceConfig

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CORRELATING = "correlating"
    SCORING = "scoring"
    CONSENSUS_BUILT = "consensus-built"


class VerificationEngine:
    """Multi-source correlation and consensus service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sources: Optional[Iterable[SourceConfig]] = None,
        client: Optional[httpx.AsyncClient] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or Settings()
        s = self.settings

        self.registry = SourceRegistry(SOURCES.values() if sources is None else sources)
        self.cache = ResponseCache(s.cache_ttl_seconds, clock or time.time)
        self.scorer = ReliabilityScorer(self.registry)
        self.builder = ConsensusBuilder(min_confidence=s.min_confidence_threshold)
        self.bus = bus or EventBus()
        self.client = ProxyClient(
            s.proxy_base_url,
            timeout_seconds=s.request_timeout_seconds,
            max_retries=s.max_retries,
            retry_backoff_base=s.retry_backoff_base,
            client=client,
        )
        self.adapters = build_adapters(self.client)

        self.state = EngineState.IDLE
        self.history: deque[VerificationResult] = deque(maxlen=s.history_limit)
        self.last_partial: dict[str, Any] = {}

        self._initialized = False
        self._cycle_count = 0
        self._last_verification: Optional[datetime] = None
        self._cycle_lock = asyncio.Lock()
        self._fetch_locks: dict[str, asyncio.Lock] = {}
        self._task: Optional[asyncio.Task] = None
        self._live_parser = P2PQuakeParser()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def initialize(self) -> int:
        """Probe all configured sources; returns how many are active."""
        active = await self.registry.initialize(self.client, self.settings.probe_timeout_seconds)
        self._initialized = True
        if active == 0:
            logger.warning("No data sources available")
        return active

    async def start_verification(self) -> None:
        """Initialize sources and start the periodic verification loop."""
        if self._task is not None and not self._task.done():
            return
        await self.initialize()
        self._task = asyncio.create_task(self._run_periodic(), name="quake-verification")
        logger.info(
            "Periodic verification started (every %.0fs)",
            self.settings.verification_interval_seconds,
        )

    async def stop_verification(self) -> None:
        """Cancel the periodic loop and release the HTTP client."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.client.close()
        self.state = EngineState.IDLE

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> VerificationEngine:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop_verification()

    def on(self, event: EngineEvent | str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Subscribe to verificationComplete / discrepancyDetected / consensusUpdate."""
        return self.bus.subscribe(event, callback)

    async def _run_periodic(self) -> None:
        while True:
            try:
                if self._cycle_lock.locked():
                    logger.info("Previous verification cycle still running, skipping tick")
                else:
                    await self.perform_verification_cycle()
            except Exception as exc:
                logger.error("Verification loop error: %s", exc)

            await asyncio.sleep(self.settings.verification_interval_seconds)

    # ── Fetching ──────────────────────────────────────────────────────────

    async def fetch_source(self, source: SourceConfig) -> FetchOutcome:
        """Fetch one source through the minute-bucketed cache.

        A per-source lock makes concurrent callers in the same bucket share a
        single network call.
        """
        lock = self._fetch_locks.setdefault(source.id, asyncio.Lock())
        async with lock:
            key = self.cache.key_for(source.id)
            cached = self._cache_get(key)
            if cached is not None:
                return replace(cached, from_cache=True)

            outcome = await self._fetch_live(source)
            if outcome.ok:
                self.scorer.record_success(source.id)
                self._cache_put(key, outcome, source.id)
                return outcome

            self.scorer.record_failure(source.id)
            return self._stale_fallback(source, outcome)

    async def gather_sources(self, sources: Iterable[SourceConfig]) -> dict[str, FetchOutcome]:
        """Fetch every source concurrently; one failure never fails the rest."""
        sources = list(sources)
        results = await asyncio.gather(
            *(self.fetch_source(s) for s in sources), return_exceptions=True,
        )

        outcomes: dict[str, FetchOutcome] = {}
        for source, result in zip(sources, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("[%s] unexpected fetch error: %r", source.id, result)
                self.scorer.record_failure(source.id)
                result = FetchOutcome.failure(source.id, repr(result))
            outcomes[source.id] = result
        return outcomes

    async def _fetch_live(self, source: SourceConfig) -> FetchOutcome:
        adapter = self.adapters.get(source.category)
        if adapter is None:
            return FetchOutcome.failure(source.id, f"no adapter for category {source.category!r}")

        s = self.settings
        deadline = s.request_timeout_seconds * (s.max_retries + 1) + s.retry_backoff_base ** s.max_retries
        try:
            return await asyncio.wait_for(adapter.fetch(source), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("[%s] fetch timed out after %.0fs", source.id, deadline)
            return FetchOutcome.failure(source.id, "timeout")

    def _stale_fallback(self, source: SourceConfig, failed: FetchOutcome) -> FetchOutcome:
        try:
            entry = self.cache.latest(source.id)
        except Exception as exc:
            logger.warning("[%s] cache read failed, bypassing: %s", source.id, exc)
            return failed
        if entry is None:
            return failed

        age = self.cache.now() - entry.inserted_at
        logger.warning(
            "[%s] fetch failed (%s), serving stale cache from %.0fs ago with reduced confidence",
            source.id, failed.error, age,
        )
        return FetchOutcome(
            source_id=source.id,
            ok=False,
            events=[replace(e, degraded=True) for e in entry.payload.events],
            degraded=True,
            from_cache=True,
            stale=True,
            error=failed.error,
            fetched_at=entry.payload.fetched_at,
        )

    def _cache_get(self, key: str) -> Optional[FetchOutcome]:
        try:
            return self.cache.get(key)
        except Exception as exc:
            logger.warning("Cache read failed for %s, bypassing: %s", key, exc)
            return None

    def _cache_put(self, key: str, outcome: FetchOutcome, source_id: str) -> None:
        try:
            self.cache.put(key, outcome, source_id=source_id)
        except Exception as exc:
            logger.warning("Cache write failed for %s, bypassing: %s", key, exc)

    # ── Periodic cycle ────────────────────────────────────────────────────

    async def perform_verification_cycle(self) -> VerificationResult:
        """Fetch → correlate → score → build consensus → record → notify.

        With no active source the cycle is skipped: the returned result has
        ``source_count == 0`` and full agreement, and is not added to history.
        """
        if not self._initialized:
            await self.initialize()

        active = self.registry.active_sources()
        if not active:
            logger.warning("No data sources available, skipping verification cycle")
            self.bus.publish(EngineEvent.NO_DATA_SOURCES, self.get_system_status())
            return VerificationResult(
                timestamp=datetime.now(timezone.utc),
                source_count=0,
                agreement=1.0,
                consensus=None,
                reliability={},
            )

        async with self._cycle_lock:
            partial: dict[str, Any] = {}
            self.last_partial = partial
            try:
                result = await self._run_cycle(active, partial)
            except Exception:
                logger.exception("Verification cycle failed during %s", self.state.value)
                return VerificationResult(
                    timestamp=datetime.now(timezone.utc),
                    source_count=len(partial.get("results", {})),
                    agreement=partial["report"].agreement if "report" in partial else 1.0,
                    consensus=None,
                    reliability=self.scorer.scores(),
                )
            finally:
                self.state = EngineState.IDLE

            self.history.append(result)
            self._cycle_count += 1
            self._last_verification = result.timestamp

        self.bus.publish(EngineEvent.VERIFICATION_COMPLETE, result)
        if result.consensus is not None:
            self.bus.publish(EngineEvent.CONSENSUS_UPDATE, result.consensus)
        for discrepancy in result.discrepancies:
            self.bus.publish(EngineEvent.DISCREPANCY_DETECTED, discrepancy)

        logger.info(
            "Verification complete: %d source(s), agreement %.1f%%, %d consensus event(s)",
            result.source_count, result.agreement * 100,
            len(result.consensus.events) if result.consensus else 0,
        )
        return result

    async def _run_cycle(self, active: list[SourceConfig], partial: dict[str, Any]) -> VerificationResult:
        s = self.settings

        self.state = EngineState.FETCHING
        outcomes = await self.gather_sources(active)
        responding = [o for o in outcomes.values() if o.ok or o.stale]
        results = {sid: o.events for sid, o in outcomes.items() if o.events}
        partial["outcomes"] = outcomes
        partial["results"] = results

        self.state = EngineState.CORRELATING
        report = correlate(results, s.time_window, s.max_distance_km, s.required_agreement)
        partial["report"] = report

        self.state = EngineState.SCORING
        assessment = self.scorer.assess(
            report.agreement,
            [src.id for src in active],
            discrepancy_count=len(report.discrepancies),
        )
        partial["assessment"] = assessment

        events = self.builder.build(results, report.matches, assessment.scores)
        summary = ConsensusSummary(
            events=events,
            source_ids=sorted(results),
            reliability=assessment.overall,
        )
        self.state = EngineState.CONSENSUS_BUILT
        partial["consensus"] = summary

        return VerificationResult(
            timestamp=datetime.now(timezone.utc),
            source_count=len(responding),
            agreement=report.agreement,
            consensus=summary,
            reliability=dict(assessment.scores),
            overall_reliability=assessment.overall,
            discrepancies=report.discrepancies,
            recommendations=assessment.recommendations,
        )

    # ── Real-time path ────────────────────────────────────────────────────

    async def verify_realtime(self, live_event: Event) -> Optional[RealtimeVerification]:
        """Check one live event against freshly fetched external data.

        Uses the tighter real-time window and distance ceiling. When the mean
        agreement falls below ``required_agreement`` every disagreeing source
        is published as a discrepancy right away.

        Raises:
            ValidationError: the live event itself is malformed.
        """
        errors = EventParser.validate(live_event)
        if errors:
            raise ValidationError(errors)

        s = self.settings
        try:
            if not self._initialized:
                await self.initialize()
            outcomes = await self.gather_sources(self.registry.active_sources())

            pairs = []
            for source_id, outcome in outcomes.items():
                if not outcome.events or source_id == live_event.source_id:
                    continue
                pair = correlate_pair(
                    live_event.source_id, [live_event], source_id, outcome.events,
                    s.realtime_time_window, s.realtime_max_distance_km,
                )
                pairs.append(pair)
                self.scorer.score_source(source_id, pair.agreement)
        except Exception:
            logger.exception("Real-time verification failed for %s", live_event.event_id)
            return None

        agreement = sum(p.agreement for p in pairs) / len(pairs) if pairs else 1.0
        discrepancies = [
            Discrepancy(
                source_a=p.source_a,
                source_b=p.source_b,
                agreement=p.agreement,
                cause=p.cause,
                matches=list(p.matches),
            )
            for p in pairs if p.agreement < s.required_agreement
        ]
        verification = RealtimeVerification(
            event=live_event,
            agreement=agreement,
            pairs=pairs,
            discrepancies=discrepancies,
            required_agreement=s.required_agreement,
        )

        if verification.has_discrepancy:
            logger.warning(
                "Real-time discrepancy for %s: agreement %.2f across %d source(s)",
                live_event.event_id, agreement, len(pairs),
            )
            for discrepancy in discrepancies:
                self.bus.publish(EngineEvent.DISCREPANCY_DETECTED, discrepancy)
        return verification

    async def handle_live_message(self, message: dict) -> Optional[RealtimeVerification]:
        """Entry point for the live feed hook; non-earthquake messages are ignored."""
        event = self._live_parser.parse_message(message)
        if event is None:
            return None
        return await self.verify_realtime(event)

    # ── Status ────────────────────────────────────────────────────────────

    def get_system_status(self) -> SystemStatus:
        active = len(self.registry.active_sources())
        if not self._initialized:
            status = "initializing"
        elif active == 0:
            status = "no_data_sources"
        else:
            status = "ok"

        return SystemStatus(
            active_source_count=active,
            last_verification_timestamp=self._last_verification,
            overall_reliability=self.scorer.overall(),
            cache_size=len(self.cache),
            verification_cycle_count=self._cycle_count,
            state=self.state.value,
            status=status,
        )
