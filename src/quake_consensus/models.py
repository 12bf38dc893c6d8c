"""Data models for multi-source event verification."""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Optional

# Discrepancy causes
LOCATION_MISMATCH = "location_mismatch"
MAGNITUDE_MISMATCH = "magnitude_mismatch"
TIME_MISMATCH = "time_mismatch"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class Event:
    """A single occurrence as reported by one source, normalized."""

    event_id: str               # "{source}:{source_event_id}"
    source_id: str
    origin_time_utc: datetime   # Always UTC
    latitude: float             # WGS84, [-90, 90]
    longitude: float            # WGS84, [-180, 180]

    depth_km: Optional[float] = None
    magnitude: Optional[float] = None
    place: Optional[str] = None

    category: str = "earthquake"
    tsunami_threat: Optional[str] = None

    # Recovered from a non-primary parse path (HTML, stale cache)
    degraded: bool = False
    fetched_at: datetime = field(default_factory=_utcnow)

    @property
    def epoch_ms(self) -> float:
        return self.origin_time_utc.timestamp() * 1000.0

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> Event:
        d = json.loads(raw)
        for key in ("origin_time_utc", "fetched_at"):
            if d.get(key) is not None:
                d[key] = datetime.fromisoformat(d[key])
        return cls(**d)


@dataclass
class CorrelationMatch:
    """Two events from different sources judged to be the same occurrence."""

    event_a: Event
    event_b: Event
    time_agreement: float
    location_agreement: float
    magnitude_agreement: float
    time_diff_seconds: float
    distance_km: float

    @property
    def agreement(self) -> float:
        return (self.time_agreement + self.location_agreement + self.magnitude_agreement) / 3

    @property
    def contradicted(self) -> bool:
        """True when one axis disagrees completely."""
        return min(self.time_agreement, self.location_agreement, self.magnitude_agreement) <= 0.0

    def to_dict(self) -> dict:
        d = _jsonable(asdict(self))
        d["agreement"] = self.agreement
        d["contradicted"] = self.contradicted
        return d


@dataclass
class SourcePairAgreement:
    """Aggregate agreement between the result sets of two sources."""

    source_a: str
    source_b: str
    agreement: float
    time_agreement: float = 0.0
    location_agreement: float = 0.0
    magnitude_agreement: float = 0.0
    matches: list[CorrelationMatch] = field(default_factory=list)
    cause: Optional[str] = None   # weakest axis, set when the pair disagrees

    @property
    def match_count(self) -> int:
        return len(self.matches)


@dataclass
class Discrepancy:
    """Sources that disagree beyond the configured tolerance."""

    source_a: str
    source_b: str
    agreement: float
    cause: str
    matches: list[CorrelationMatch] = field(default_factory=list)
    detected_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "source_a": self.source_a,
            "source_b": self.source_b,
            "agreement": self.agreement,
            "cause": self.cause,
            "matches": [m.to_dict() for m in self.matches],
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class CorrelationReport:
    """Result of correlating every source pair in one cycle."""

    agreement: float
    pairs: list[SourcePairAgreement] = field(default_factory=list)
    discrepancies: list[Discrepancy] = field(default_factory=list)
    comparison: str = "correlated"   # or "insufficient_data"

    @property
    def matches(self) -> list[CorrelationMatch]:
        return [m for pair in self.pairs for m in pair.matches]


@dataclass
class ConsensusEvent:
    """Confidence-weighted fusion of a cluster of correlated events."""

    consensus_id: str
    origin_time_utc: datetime
    latitude: float
    longitude: float
    depth_km: Optional[float]
    magnitude: Optional[float]
    place: str
    confidence: float
    source_count: int

    source_ids: list[str] = field(default_factory=list)
    event_ids: list[str] = field(default_factory=list)
    weights: dict[str, float] = field(default_factory=dict)   # event_id → weight
    low_confidence: bool = False
    degraded_inputs: int = 0

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass
class ConsensusSummary:
    """All consensus events produced by one cycle."""

    events: list[ConsensusEvent]
    source_ids: list[str]
    reliability: float
    methodology: str = "weighted_consensus"
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "events": [e.to_dict() for e in self.events],
            "source_ids": list(self.source_ids),
            "reliability": self.reliability,
            "methodology": self.methodology,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ReliabilityAssessment:
    """Per-source trust snapshot after a cycle."""

    scores: dict[str, float]
    overall: float
    recommendations: list[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Outcome of one periodic verification cycle."""

    timestamp: datetime
    source_count: int
    agreement: float
    consensus: Optional[ConsensusSummary]
    reliability: dict[str, float]
    overall_reliability: float = 0.0
    discrepancies: list[Discrepancy] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "source_count": self.source_count,
            "agreement": self.agreement,
            "consensus": self.consensus.to_dict() if self.consensus else None,
            "reliability": dict(self.reliability),
            "overall_reliability": self.overall_reliability,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "recommendations": list(self.recommendations),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class RealtimeVerification:
    """A live event checked against freshly fetched external data."""

    event: Event
    agreement: float
    pairs: list[SourcePairAgreement] = field(default_factory=list)
    discrepancies: list[Discrepancy] = field(default_factory=list)
    required_agreement: float = 0.6

    @property
    def has_discrepancy(self) -> bool:
        return self.agreement < self.required_agreement


@dataclass
class SystemStatus:
    """Snapshot returned by VerificationEngine.get_system_status()."""

    active_source_count: int
    last_verification_timestamp: Optional[datetime]
    overall_reliability: float
    cache_size: int
    verification_cycle_count: int
    state: str = "idle"
    status: str = "ok"          # "ok" or "no_data_sources"

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))
