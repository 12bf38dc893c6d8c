"""Weighted consensus merging of correlated events."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Mapping, Optional, Sequence

from quake_consensus.geo import location_label, normalize_longitude
from quake_consensus.models import ConsensusEvent, CorrelationMatch, Event
from quake_consensus.sources import category_weight

# Degraded (HTML / stale) events count for half as much as a clean JSON report
DEGRADED_WEIGHT_FACTOR = 0.5
# Reliability assumed for a source with no score yet
DEFAULT_RELIABILITY = 0.5
# Confidence emitted for a cluster whose total weight is zero
CONFIDENCE_FLOOR = 0.01


class ConsensusBuilder:
    """Fuse clusters of mutually-correlated events into ConsensusEvents."""

    def __init__(
        self,
        min_confidence: float = 0.7,
        degraded_factor: float = DEGRADED_WEIGHT_FACTOR,
        category_weights: Optional[Mapping[str, float]] = None,
    ):
        self.min_confidence = min_confidence
        self.degraded_factor = degraded_factor
        self.category_weights = category_weights

    def event_weight(self, event: Event, reliability: float) -> float:
        """sourceWeight(category) * reliability, halved for degraded data."""
        if self.category_weights is not None:
            prior = self.category_weights.get(event.category, category_weight(event.category))
        else:
            prior = category_weight(event.category)
        weight = prior * reliability
        if event.degraded:
            weight *= self.degraded_factor
        return weight

    def build(
        self,
        results: Mapping[str, Sequence[Event]],
        matches: Sequence[CorrelationMatch],
        reliability: Mapping[str, float],
    ) -> list[ConsensusEvent]:
        """One consensus event per cluster.

        Clusters are the connected components of the match graph. When fewer
        than two sources supplied data every event passes through on its own.
        """
        supplied = {sid: events for sid, events in results.items() if events}
        if len(supplied) < 2:
            clusters = [[e] for events in supplied.values() for e in events]
        else:
            clusters = cluster_matches(matches)

        consensus: list[ConsensusEvent] = []
        for members in clusters:
            weighted = [
                (e, self.event_weight(e, reliability.get(e.source_id, DEFAULT_RELIABILITY)))
                for e in members
            ]
            consensus.append(self.merge(weighted))

        consensus.sort(key=lambda c: c.origin_time_utc, reverse=True)
        return consensus

    def merge(self, members: Sequence[tuple[Event, float]]) -> ConsensusEvent:
        """Weighted average of latitude, longitude, depth, magnitude and time.

        ``confidence = min(1, total weight)``. A zero total weight falls back to
        an unweighted average with ``CONFIDENCE_FLOOR`` confidence.
        """
        if not members:
            raise ValueError("cannot merge an empty cluster")

        total_weight = sum(w for _, w in members)
        if total_weight > 0:
            weighted = list(members)
            confidence = min(1.0, total_weight)
        else:
            weighted = [(e, 1.0) for e, _ in members]
            confidence = CONFIDENCE_FLOOR

        lat = _weighted_mean([(e.latitude, w) for e, w in weighted])
        lon = normalize_longitude(_weighted_mean(_unwrapped_longitudes(weighted)))
        depth = _weighted_mean([(e.depth_km, w) for e, w in weighted if e.depth_km is not None])
        magnitude = _weighted_mean([(e.magnitude, w) for e, w in weighted if e.magnitude is not None])
        epoch_ms = _weighted_mean([(e.epoch_ms, w) for e, w in weighted])

        event_ids = sorted(e.event_id for e, _ in members)
        source_ids = sorted({e.source_id for e, _ in members})

        return ConsensusEvent(
            consensus_id=_consensus_id(event_ids),
            origin_time_utc=datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc),
            latitude=lat,
            longitude=lon,
            depth_km=depth,
            magnitude=magnitude,
            place=location_label(lat, lon),
            confidence=confidence,
            source_count=len(source_ids),
            source_ids=source_ids,
            event_ids=event_ids,
            weights={e.event_id: w for e, w in members},
            low_confidence=confidence < self.min_confidence,
            degraded_inputs=sum(1 for e, _ in members if e.degraded),
        )


def cluster_matches(matches: Sequence[CorrelationMatch]) -> list[list[Event]]:
    """Connected components of events linked by matches (union-find)."""
    parent: dict[str, str] = {}
    events: dict[str, Event] = {}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for match in matches:
        for event in (match.event_a, match.event_b):
            if event.event_id not in parent:
                parent[event.event_id] = event.event_id
                events[event.event_id] = event
        root_a, root_b = find(match.event_a.event_id), find(match.event_b.event_id)
        if root_a != root_b:
            parent[root_b] = root_a

    groups: dict[str, list[Event]] = {}
    for event_id, event in events.items():
        groups.setdefault(find(event_id), []).append(event)
    return list(groups.values())


def _weighted_mean(values: Sequence[tuple[float, float]]) -> Optional[float]:
    if not values:
        return None
    total = sum(w for _, w in values)
    if total <= 0:
        return sum(v for v, _ in values) / len(values)
    return sum(v * w for v, w in values) / total


def _unwrapped_longitudes(weighted: Sequence[tuple[Event, float]]) -> list[tuple[float, float]]:
    """Shift western longitudes by 360° when a cluster straddles the antimeridian."""
    lons = [e.longitude for e, _ in weighted]
    if max(lons) - min(lons) <= 180:
        return [(e.longitude, w) for e, w in weighted]
    return [(e.longitude + 360 if e.longitude < 0 else e.longitude, w) for e, w in weighted]


def _consensus_id(event_ids: Sequence[str]) -> str:
    """Stable consensus ID from the member event IDs."""
    content = "|".join(event_ids)
    return "CE-" + hashlib.sha256(content.encode()).hexdigest()[:16]
