"""Tests for source registry health and reliability scoring."""

from __future__ import annotations

import random

import pytest

from quake_consensus.registry import SourceRegistry
from quake_consensus.reliability import (
    ADD_MORE_SOURCES,
    INVESTIGATE_DISCREPANCIES,
    RELIABILITY_CEILING,
    RELIABILITY_FLOOR,
    ReliabilityScorer,
    agreement_adjustment,
    clamp_reliability,
)
from quake_consensus.sources import ACTIVE, DEGRADED, UNREACHABLE

from conftest import source


def _scorer(*configs, success_rate: float = 1.0) -> ReliabilityScorer:
    registry = SourceRegistry(configs)
    for config in configs:
        registry.adjust_success_rate(config.id, success_rate)
    return ReliabilityScorer(registry)


# ── Registry ─────────────────────────────────────────────────────────────


class TestRegistry:
    def test_register_validates_prior(self):
        with pytest.raises(ValueError):
            SourceRegistry([source("bad", reliability=1.5)])

    def test_new_source_is_unreachable(self):
        registry = SourceRegistry([source("usgs")])
        health = registry.health("usgs")
        assert health.status == UNREACHABLE
        assert health.success_rate == 0.0
        assert registry.active_sources() == []

    def test_success_rate_clamped(self):
        registry = SourceRegistry([source("usgs")])
        assert registry.adjust_success_rate("usgs", 5.0).success_rate == 1.0
        assert registry.adjust_success_rate("usgs", -5.0).success_rate == 0.0

    def test_failure_marks_degraded_then_unreachable(self):
        registry = SourceRegistry([source("usgs")])
        registry.adjust_success_rate("usgs", 1.0)
        health = registry.adjust_success_rate("usgs", -0.1)
        assert health.status == DEGRADED
        assert health.consecutive_failures == 1
        health = registry.adjust_success_rate("usgs", -1.0)
        assert health.status == UNREACHABLE
        assert health.consecutive_failures == 2

    def test_success_resets_failures(self):
        registry = SourceRegistry([source("usgs")])
        registry.adjust_success_rate("usgs", -0.1)
        health = registry.adjust_success_rate("usgs", 0.05)
        assert health.status == ACTIVE
        assert health.consecutive_failures == 0
        assert health.last_contact is not None

    def test_health_is_a_copy(self):
        registry = SourceRegistry([source("usgs")])
        registry.health("usgs").success_rate = 0.9
        assert registry.health("usgs").success_rate == 0.0


# ── Scoring ──────────────────────────────────────────────────────────────


class TestAdjustment:
    def test_bands(self):
        assert agreement_adjustment(0.9) == 1.05
        assert agreement_adjustment(0.8) == 1.0
        assert agreement_adjustment(0.5) == 1.0
        assert agreement_adjustment(0.3) == 0.9
        assert agreement_adjustment(None) == 1.0

    def test_clamp(self):
        assert clamp_reliability(-1) == RELIABILITY_FLOOR
        assert clamp_reliability(2) == RELIABILITY_CEILING
        assert clamp_reliability(0.42) == 0.42


class TestReliabilityScorer:
    def test_effective_reliability(self):
        scorer = _scorer(source("usgs", reliability=0.9))
        assert scorer.effective_reliability("usgs") == pytest.approx(0.9)
        assert scorer.effective_reliability("usgs", 0.95) == pytest.approx(0.945)
        assert scorer.effective_reliability("usgs", 0.2) == pytest.approx(0.81)

    def test_never_exceeds_ceiling(self):
        scorer = _scorer(source("jma", reliability=0.98))
        assert scorer.effective_reliability("jma", 1.0) == RELIABILITY_CEILING

    def test_floor_for_dead_source(self):
        scorer = _scorer(source("usgs"), success_rate=0.0)
        assert scorer.effective_reliability("usgs") == RELIABILITY_FLOOR

    def test_unknown_source(self):
        with pytest.raises(KeyError):
            _scorer(source("usgs")).effective_reliability("nope")

    def test_failures_penalized_faster_than_successes(self):
        scorer = _scorer(source("usgs"), success_rate=0.5)
        after_success = scorer.record_success("usgs")
        scorer.record_failure("usgs")
        after_failure = scorer.record_failure("usgs")
        assert after_success == pytest.approx(0.55)
        assert after_failure == pytest.approx(0.35)

    def test_bounds_hold_for_any_sequence(self):
        rng = random.Random(42)
        configs = [source(f"s{i}", reliability=rng.random()) for i in range(4)]
        scorer = _scorer(*configs, success_rate=rng.random())

        for _ in range(500):
            sid = rng.choice(configs).id
            if rng.random() < 0.5:
                scorer.record_success(sid)
            else:
                scorer.record_failure(sid)
            score = scorer.score_source(sid, rng.random())
            assert RELIABILITY_FLOOR <= score <= RELIABILITY_CEILING
            assert 0.0 <= scorer.registry.health(sid).success_rate <= 1.0

    def test_stored_agreement_reused(self):
        scorer = _scorer(source("usgs", reliability=0.9))
        scorer.score_source("usgs", 0.95)
        assert scorer.effective_reliability("usgs") == pytest.approx(0.945)
        assert scorer.scores() == {"usgs": pytest.approx(0.945)}


class TestAssess:
    def test_healthy_cycle(self):
        scorer = _scorer(source("usgs", reliability=0.95), source("emsc", reliability=0.9))
        assessment = scorer.assess(0.9, ["usgs", "emsc"])
        assert set(assessment.scores) == {"usgs", "emsc"}
        assert assessment.overall == pytest.approx((0.9975 + 0.945) / 2)
        assert assessment.recommendations == []

    def test_recommendations(self):
        scorer = _scorer(source("weak", reliability=0.4))
        assessment = scorer.assess(0.3, ["weak"], discrepancy_count=2)
        assert ADD_MORE_SOURCES in assessment.recommendations
        assert INVESTIGATE_DISCREPANCIES in assessment.recommendations

    def test_defaults_to_active_sources(self):
        scorer = _scorer(source("usgs"))
        assert scorer.assess(0.9).scores == {}
        assert scorer.overall() == 0.0
