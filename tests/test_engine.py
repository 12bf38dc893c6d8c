"""End-to-end engine tests against a fake proxy (httpx.MockTransport)."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from quake_consensus.engine import EngineState, VerificationEngine
from quake_consensus.events import EngineEvent, EventBus
from quake_consensus.models import MAGNITUDE_MISMATCH
from quake_consensus.parsers import ValidationError

from conftest import T0, events_json, make_event, source, usgs_geojson

QUAKE = {"id": "q1", "lat": 38.10, "lon": 142.40, "depth": 24.0, "mag": 7.0, "time": T0}

HTML_BULLETIN = """
<table>
  <tr><th>Date/Time</th><th>Lat</th><th>Lon</th><th>Depth</th><th>Mag</th></tr>
  <tr><td>2024/01/15 12:00:10</td><td>38.12N</td><td>142.38E</td><td>25</td><td>6.9</td></tr>
</table>
"""


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _engine(proxy, settings, *sources, clock=None) -> VerificationEngine:
    return VerificationEngine(settings, sources=sources, client=proxy.client(), clock=clock)


def _three_agreeing(proxy):
    proxy.json("usgs", usgs_geojson(QUAKE))
    proxy.json("emsc", usgs_geojson({**QUAKE, "id": "e1", "lat": 38.15, "mag": 7.1}))
    proxy.json("jma_eqvol", events_json({**QUAKE, "id": "j1", "mag": 6.9,
                                         "time": T0 + timedelta(seconds=20)}))
    return (
        source("usgs", reliability=0.95, format="geojson"),
        source("emsc", reliability=0.90, format="geojson"),
        source("jma_eqvol", category="seismic", reliability=0.98),
    )


# ── Periodic cycle ───────────────────────────────────────────────────────


class TestVerificationCycle:
    @pytest.mark.asyncio
    async def test_agreeing_sources(self, proxy, settings):
        async with _engine(proxy, settings, *_three_agreeing(proxy)) as engine:
            assert await engine.initialize() == 3
            result = await engine.perform_verification_cycle()

        assert result.source_count == 3
        assert result.agreement > 0.9
        assert result.discrepancies == []
        assert result.consensus.methodology == "weighted_consensus"
        assert len(result.consensus.events) == 1
        ce = result.consensus.events[0]
        assert ce.source_count == 3
        assert 6.9 <= ce.magnitude <= 7.1
        assert not ce.low_confidence
        assert set(result.reliability) == {"usgs", "emsc", "jma_eqvol"}
        assert len(engine.history) == 1
        assert engine.state == EngineState.IDLE

    @pytest.mark.asyncio
    async def test_no_sources_skips_cycle(self, proxy, settings):
        proxy.unreachable.update({"usgs", "emsc"})
        seen = []
        async with _engine(proxy, settings, source("usgs"), source("emsc")) as engine:
            engine.on(EngineEvent.NO_DATA_SOURCES, seen.append)
            result = await engine.perform_verification_cycle()
            status = engine.get_system_status()

        assert result.source_count == 0
        assert result.agreement == 1.0
        assert result.consensus is None
        assert len(engine.history) == 0
        assert len(seen) == 1
        assert status.status == "no_data_sources"
        assert status.active_source_count == 0

    @pytest.mark.asyncio
    async def test_single_source(self, proxy, settings):
        proxy.json("usgs", usgs_geojson(QUAKE, {**QUAKE, "id": "q2", "lat": -20.0, "lon": -70.0}))
        async with _engine(proxy, settings, source("usgs", format="geojson")) as engine:
            result = await engine.perform_verification_cycle()

        assert result.source_count == 1
        assert result.agreement == 1.0
        assert result.discrepancies == []
        assert len(result.consensus.events) == 2

    @pytest.mark.asyncio
    async def test_failed_source_tolerated(self, proxy, settings):
        configs = _three_agreeing(proxy)
        async with _engine(proxy, settings, *configs) as engine:
            await engine.initialize()
            proxy.fail("emsc")
            result = await engine.perform_verification_cycle()
            emsc_health = engine.registry.health("emsc")

        assert result.source_count == 2
        assert result.agreement > 0.9
        assert emsc_health.success_rate == pytest.approx(0.9)
        assert emsc_health.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_magnitude_discrepancy_published(self, proxy, settings):
        proxy.json("usgs", usgs_geojson(QUAKE))
        proxy.json("emsc", usgs_geojson({**QUAKE, "id": "e1", "mag": 3.0}))
        discrepancies, completed = [], []
        async with _engine(proxy, settings,
                           source("usgs", format="geojson"),
                           source("emsc", format="geojson")) as engine:
            engine.on(EngineEvent.DISCREPANCY_DETECTED, discrepancies.append)
            engine.on("verificationComplete", completed.append)
            result = await engine.perform_verification_cycle()

        assert result.agreement < 0.6
        assert len(discrepancies) == 1
        assert discrepancies[0].cause == MAGNITUDE_MISMATCH
        assert completed == [result]
        assert "investigate_discrepancies" in result.recommendations

    @pytest.mark.asyncio
    async def test_html_fallback_is_degraded(self, proxy, settings):
        proxy.json("usgs", usgs_geojson(QUAKE))
        proxy.html("jma_eqvol", HTML_BULLETIN)
        async with _engine(proxy, settings,
                           source("usgs", format="geojson"),
                           source("jma_eqvol", category="seismic")) as engine:
            outcome = await engine.fetch_source(engine.registry.get("jma_eqvol"))
            result = await engine.perform_verification_cycle()

        assert outcome.ok and outcome.degraded
        assert outcome.events[0].degraded
        ce = result.consensus.events[0]
        assert ce.degraded_inputs == 1
        assert ce.weights[outcome.events[0].event_id] < ce.weights["usgs:q1"]

    @pytest.mark.asyncio
    async def test_stage_failure_keeps_partial_results(self, proxy, settings, monkeypatch):
        async with _engine(proxy, settings, *_three_agreeing(proxy)) as engine:
            def boom(*args, **kwargs):
                raise RuntimeError("merge exploded")

            monkeypatch.setattr(engine.builder, "build", boom)
            result = await engine.perform_verification_cycle()

        assert result.consensus is None
        assert result.agreement > 0.9
        assert "report" in engine.last_partial
        assert "consensus" not in engine.last_partial
        assert len(engine.history) == 0
        assert engine.state == EngineState.IDLE


# ── Cache behavior ───────────────────────────────────────────────────────


class TestFetchCaching:
    @pytest.mark.asyncio
    async def test_one_fetch_per_minute(self, proxy, settings):
        clock = FakeClock()
        async with _engine(proxy, settings, *_three_agreeing(proxy), clock=clock) as engine:
            await engine.perform_verification_cycle()
            await engine.perform_verification_cycle()
            assert proxy.calls["usgs"] == 1

            clock.now += 60
            await engine.perform_verification_cycle()
            assert proxy.calls["usgs"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_call(self, proxy, settings):
        proxy.json("usgs", usgs_geojson(QUAKE))
        usgs = source("usgs", format="geojson")
        async with _engine(proxy, settings, usgs, clock=FakeClock()) as engine:
            first, second = await asyncio.gather(engine.fetch_source(usgs), engine.fetch_source(usgs))

        assert proxy.calls["usgs"] == 1
        assert first.events[0].event_id == second.events[0].event_id
        assert first.from_cache != second.from_cache

    @pytest.mark.asyncio
    async def test_stale_cache_after_failure(self, proxy, settings):
        clock = FakeClock()
        proxy.json("usgs", usgs_geojson(QUAKE))
        usgs = source("usgs", format="geojson")
        async with _engine(proxy, settings, usgs, clock=clock) as engine:
            await engine.initialize()
            fresh = await engine.fetch_source(usgs)

            proxy.fail("usgs")
            clock.now += 120
            stale = await engine.fetch_source(usgs)
            health = engine.registry.health("usgs")

        assert fresh.ok and not fresh.degraded
        assert not stale.ok
        assert stale.stale and stale.degraded
        assert all(e.degraded for e in stale.events)
        assert not fresh.events[0].degraded
        assert health.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_failure_without_cache(self, proxy, settings):
        proxy.fail("usgs")
        usgs = source("usgs", format="geojson")
        async with _engine(proxy, settings, usgs, clock=FakeClock()) as engine:
            outcome = await engine.fetch_source(usgs)

        assert not outcome.ok
        assert outcome.events == []
        assert "usgs" in outcome.error

    @pytest.mark.asyncio
    async def test_malformed_payload_counts_as_fetch_failure(self, proxy, settings):
        configs = _three_agreeing(proxy)
        async with _engine(proxy, settings, *configs, clock=FakeClock()) as engine:
            await engine.initialize()
            proxy.json("emsc", '{"type": "FeatureCollection", "features": [')
            outcome = await engine.fetch_source(engine.registry.get("emsc"))
            emsc_health = engine.registry.health("emsc")
            result = await engine.perform_verification_cycle()

        assert not outcome.ok
        assert outcome.events == []
        assert emsc_health.success_rate == pytest.approx(0.9)
        assert emsc_health.consecutive_failures == 1
        assert result.source_count == 2
        assert result.consensus.source_ids == ["jma_eqvol", "usgs"]
        assert len(result.consensus.events) == 1

    @pytest.mark.asyncio
    async def test_broken_cache_is_bypassed(self, proxy, settings, monkeypatch):
        proxy.json("usgs", usgs_geojson(QUAKE))
        usgs = source("usgs", format="geojson")

        def broken(*args, **kwargs):
            raise RuntimeError("cache unavailable")

        async with _engine(proxy, settings, usgs, clock=FakeClock()) as engine:
            monkeypatch.setattr(engine.cache, "get", broken)
            monkeypatch.setattr(engine.cache, "put", broken)
            first = await engine.fetch_source(usgs)
            second = await engine.fetch_source(usgs)

        assert first.ok and second.ok
        assert not second.from_cache
        assert [e.event_id for e in first.events] == ["usgs:q1"]
        assert proxy.calls["usgs"] == 2


# ── Real-time path ───────────────────────────────────────────────────────


class TestRealtime:
    LIVE = {
        "code": 551,
        "id": "live1",
        "earthquake": {
            "time": "2024/01/15 21:00:30",
            "hypocenter": {"name": "Off Miyagi", "latitude": 38.1, "longitude": 142.4,
                           "depth": 20, "magnitude": 7.0},
            "domesticTsunami": "None",
        },
    }

    @pytest.mark.asyncio
    async def test_confirmed_event(self, proxy, settings):
        async with _engine(proxy, settings, *_three_agreeing(proxy)) as engine:
            verification = await engine.handle_live_message(self.LIVE)

        assert verification is not None
        assert not verification.has_discrepancy
        assert len(verification.pairs) == 3
        assert verification.agreement > 0.9

    @pytest.mark.asyncio
    async def test_disagreeing_source_published(self, proxy, settings):
        proxy.json("usgs", usgs_geojson(QUAKE))
        proxy.json("emsc", usgs_geojson({**QUAKE, "id": "e1", "mag": 3.0}))
        published = []
        async with _engine(proxy, settings,
                           source("usgs", format="geojson"),
                           source("emsc", format="geojson")) as engine:
            engine.on(EngineEvent.DISCREPANCY_DETECTED, published.append)
            verification = await engine.handle_live_message(self.LIVE)
            emsc_score = engine.scorer.scores()["emsc"]

        assert verification.has_discrepancy
        assert verification.agreement == pytest.approx(0.5, abs=0.05)
        assert [d.source_b for d in published] == ["emsc"]
        assert published[0].cause == MAGNITUDE_MISMATCH
        assert emsc_score == pytest.approx(0.9 * 0.9)

    @pytest.mark.asyncio
    async def test_realtime_distance_is_tighter(self, proxy, settings):
        # ~170 km away: inside the periodic ceiling, outside the real-time one
        proxy.json("usgs", usgs_geojson({**QUAKE, "lat": 39.6}))
        async with _engine(proxy, settings, source("usgs", format="geojson")) as engine:
            verification = await engine.handle_live_message(self.LIVE)

        assert verification.pairs[0].match_count == 0
        assert verification.has_discrepancy

    @pytest.mark.asyncio
    async def test_non_earthquake_message_ignored(self, proxy, settings):
        async with _engine(proxy, settings, source("usgs", format="geojson")) as engine:
            assert await engine.handle_live_message({"code": 556}) is None
        assert sum(proxy.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_invalid_live_event(self, proxy, settings):
        async with _engine(proxy, settings, source("usgs", format="geojson")) as engine:
            with pytest.raises(ValidationError):
                await engine.verify_realtime(make_event(source="p2p", lat=95.0))

    @pytest.mark.asyncio
    async def test_no_external_data(self, proxy, settings):
        proxy.unreachable.add("usgs")
        async with _engine(proxy, settings, source("usgs", format="geojson")) as engine:
            verification = await engine.verify_realtime(make_event(source="p2p"))

        assert verification.agreement == 1.0
        assert verification.pairs == []


# ── Lifecycle, bus and status ────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_periodic_loop(self, proxy, settings):
        settings.verification_interval_seconds = 0.01
        engine = _engine(proxy, settings, *_three_agreeing(proxy))
        await engine.start_verification()
        assert engine.running
        for _ in range(200):
            if engine.history:
                break
            await asyncio.sleep(0.01)
        await engine.stop_verification()

        assert not engine.running
        assert len(engine.history) >= 1
        status = engine.get_system_status()
        assert status.verification_cycle_count == len(engine.history)
        assert status.last_verification_timestamp == engine.history[-1].timestamp
        assert status.state == "idle"

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, proxy, settings):
        settings.history_limit = 2
        clock = FakeClock()
        async with _engine(proxy, settings, *_three_agreeing(proxy), clock=clock) as engine:
            for _ in range(4):
                await engine.perform_verification_cycle()
                clock.now += 60
            assert len(engine.history) == 2
            assert engine.get_system_status().verification_cycle_count == 4

    @pytest.mark.asyncio
    async def test_status_before_initialize(self, proxy, settings):
        async with _engine(proxy, settings, source("usgs")) as engine:
            status = engine.get_system_status()
        assert status.status == "initializing"
        assert status.last_verification_timestamp is None


class TestEventBus:
    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(payload):
            raise RuntimeError("handler bug")

        bus.subscribe(EngineEvent.CONSENSUS_UPDATE, broken)
        bus.subscribe(EngineEvent.CONSENSUS_UPDATE, received.append)

        assert bus.publish(EngineEvent.CONSENSUS_UPDATE, "summary") == 1
        assert received == ["summary"]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe("discrepancyDetected", received.append)
        assert bus.handler_count(EngineEvent.DISCREPANCY_DETECTED) == 1
        unsubscribe()
        bus.publish(EngineEvent.DISCREPANCY_DETECTED, "x")
        assert received == []

    def test_unknown_event_name(self):
        with pytest.raises(ValueError):
            EventBus().subscribe("somethingElse", print)
