"""Per-source trust scores blending a static prior with observed behavior."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Iterable, Optional

from quake_consensus.models import ReliabilityAssessment
from quake_consensus.registry import SourceRegistry

logger = logging.getLogger(__name__)

RELIABILITY_FLOOR = 0.1
RELIABILITY_CEILING = 1.0

# Failures are penalized faster than successes are rewarded
SUCCESS_STEP = 0.05
FAILURE_STEP = 0.10

HIGH_AGREEMENT = 0.8
LOW_AGREEMENT = 0.5
AGREEMENT_BONUS = 1.05
AGREEMENT_PENALTY = 0.9

# Recommendations
ADD_MORE_SOURCES = "add_more_sources"
INVESTIGATE_DISCREPANCIES = "investigate_discrepancies"
OVERALL_RELIABILITY_TARGET = 0.7


def clamp_reliability(value: float) -> float:
    return max(RELIABILITY_FLOOR, min(RELIABILITY_CEILING, value))


def agreement_adjustment(agreement: Optional[float]) -> float:
    if agreement is None:
        return 1.0
    if agreement > HIGH_AGREEMENT:
        return AGREEMENT_BONUS
    if agreement < LOW_AGREEMENT:
        return AGREEMENT_PENALTY
    return 1.0


class ReliabilityScorer:
    """Maintains the current reliability of every registered source.

    Success rates live in the registry's health map; the scorer owns the last
    computed score per source and the agreement that produced it, so each
    cycle starts from the state the previous one left behind.
    """

    def __init__(self, registry: SourceRegistry):
        self.registry = registry
        self._lock = Lock()
        self._scores: dict[str, float] = {}
        self._agreement: dict[str, float] = {}

    def record_success(self, source_id: str) -> float:
        health = self.registry.adjust_success_rate(source_id, SUCCESS_STEP)
        return health.success_rate

    def record_failure(self, source_id: str) -> float:
        health = self.registry.adjust_success_rate(source_id, -FAILURE_STEP)
        logger.debug("[%s] success rate now %.2f", source_id, health.success_rate)
        return health.success_rate

    def effective_reliability(self, source_id: str, agreement: Optional[float] = None) -> float:
        """clamp(base * success_rate * agreement_adjustment, 0.1, 1.0)."""
        source = self.registry.get(source_id)
        if source is None:
            raise KeyError(f"unknown source {source_id!r}")
        if agreement is None:
            with self._lock:
                agreement = self._agreement.get(source_id)
        success_rate = self.registry.health(source_id).success_rate
        return clamp_reliability(source.reliability * success_rate * agreement_adjustment(agreement))

    def score_source(self, source_id: str, agreement: Optional[float]) -> float:
        """Recompute one source from its own agreement and store the result."""
        score = self.effective_reliability(source_id, agreement)
        with self._lock:
            self._scores[source_id] = score
            if agreement is not None:
                self._agreement[source_id] = agreement
        return score

    def assess(
        self,
        agreement: float,
        source_ids: Optional[Iterable[str]] = None,
        discrepancy_count: int = 0,
    ) -> ReliabilityAssessment:
        """Score every source against the cycle's overall agreement."""
        if source_ids is None:
            source_ids = [s.id for s in self.registry.active_sources()]

        scores = {sid: self.score_source(sid, agreement) for sid in source_ids}
        overall = sum(scores.values()) / len(scores) if scores else 0.0

        recommendations: list[str] = []
        if overall < OVERALL_RELIABILITY_TARGET:
            recommendations.append(ADD_MORE_SOURCES)
        if discrepancy_count > 0:
            recommendations.append(INVESTIGATE_DISCREPANCIES)

        return ReliabilityAssessment(scores=scores, overall=overall, recommendations=recommendations)

    def scores(self) -> dict[str, float]:
        with self._lock:
            return dict(self._scores)

    def overall(self) -> float:
        with self._lock:
            if not self._scores:
                return 0.0
            return sum(self._scores.values()) / len(self._scores)
