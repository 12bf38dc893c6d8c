"""Spatio-temporal correlation of events reported by independent sources.

For every unordered pair of source result sets, every event pair within the
time window and distance ceiling becomes a ``CorrelationMatch`` scored on
three axes (time, location, magnitude). Nothing here mutates source state.
"""

from __future__ import annotations

import itertools
from datetime import timedelta
from typing import Mapping, Optional, Sequence

from quake_consensus.geo import haversine_km
from quake_consensus.models import (
    LOCATION_MISMATCH,
    MAGNITUDE_MISMATCH,
    TIME_MISMATCH,
    CorrelationMatch,
    CorrelationReport,
    Discrepancy,
    Event,
    SourcePairAgreement,
)

# Cross-check defaults
DEFAULT_TIME_WINDOW = timedelta(minutes=15)
DEFAULT_MAX_DISTANCE_KM = 500.0
# Tighter real-time path
REALTIME_TIME_WINDOW = timedelta(minutes=10)
REALTIME_MAX_DISTANCE_KM = 100.0

# Location agreement falls to zero at this distance regardless of the ceiling
LOCATION_SCALE_KM = 500.0
# Magnitude agreement falls to zero at this many magnitude units
MAGNITUDE_SCALE = 2.0

REQUIRED_AGREEMENT = 0.6


def time_agreement(time_diff_seconds: float, time_window: timedelta) -> float:
    return max(0.0, 1.0 - time_diff_seconds / time_window.total_seconds())


def location_agreement(distance_km: float) -> float:
    return max(0.0, 1.0 - distance_km / LOCATION_SCALE_KM)


def magnitude_agreement(mag_a: Optional[float], mag_b: Optional[float]) -> float:
    """Neutral 1.0 unless both events carry a magnitude."""
    if mag_a is None or mag_b is None:
        return 1.0
    return max(0.0, 1.0 - abs(mag_a - mag_b) / MAGNITUDE_SCALE)


def score_pair(
    a: Event,
    b: Event,
    time_window: timedelta = DEFAULT_TIME_WINDOW,
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
) -> Optional[CorrelationMatch]:
    """Score two events, or None when they fall outside the window/ceiling."""
    dt = abs((a.origin_time_utc - b.origin_time_utc).total_seconds())
    if dt > time_window.total_seconds():
        return None

    dist = haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
    if dist > max_distance_km:
        return None

    return CorrelationMatch(
        event_a=a,
        event_b=b,
        time_agreement=time_agreement(dt, time_window),
        location_agreement=location_agreement(dist),
        magnitude_agreement=magnitude_agreement(a.magnitude, b.magnitude),
        time_diff_seconds=dt,
        distance_km=dist,
    )


def correlate_pair(
    source_a: str,
    events_a: Sequence[Event],
    source_b: str,
    events_b: Sequence[Event],
    time_window: timedelta = DEFAULT_TIME_WINDOW,
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
) -> SourcePairAgreement:
    """Aggregate agreement between two sources' result sets.

    The aggregate is the mean agreement over all matches, where a contradicted
    match (one axis at zero) counts as zero. With no match at all the
    aggregate is zero and the cause is ``time_mismatch`` if nothing shared the
    time window, otherwise ``location_mismatch``.
    """
    matches: list[CorrelationMatch] = []
    any_in_window = False
    window_s = time_window.total_seconds()

    for a, b in itertools.product(events_a, events_b):
        if abs((a.origin_time_utc - b.origin_time_utc).total_seconds()) <= window_s:
            any_in_window = True
        match = score_pair(a, b, time_window, max_distance_km)
        if match is not None:
            matches.append(match)

    if not matches:
        return SourcePairAgreement(
            source_a=source_a,
            source_b=source_b,
            agreement=0.0,
            cause=LOCATION_MISMATCH if any_in_window else TIME_MISMATCH,
        )

    n = len(matches)
    avg_time = sum(m.time_agreement for m in matches) / n
    avg_location = sum(m.location_agreement for m in matches) / n
    avg_magnitude = sum(m.magnitude_agreement for m in matches) / n
    agreement = sum(0.0 if m.contradicted else m.agreement for m in matches) / n

    return SourcePairAgreement(
        source_a=source_a,
        source_b=source_b,
        agreement=agreement,
        time_agreement=avg_time,
        location_agreement=avg_location,
        magnitude_agreement=avg_magnitude,
        matches=matches,
        cause=_weakest_axis(avg_time, avg_location, avg_magnitude),
    )


def correlate(
    results: Mapping[str, Sequence[Event]],
    time_window: timedelta = DEFAULT_TIME_WINDOW,
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
    required_agreement: float = REQUIRED_AGREEMENT,
) -> CorrelationReport:
    """Correlate every unordered pair of sources that supplied data.

    Overall agreement is the mean of the pairwise aggregates, or 1.0 when fewer
    than two sources supplied any event.
    """
    supplied = [(sid, events) for sid, events in results.items() if events]
    if len(supplied) < 2:
        return CorrelationReport(agreement=1.0, comparison="insufficient_data")

    pairs: list[SourcePairAgreement] = []
    discrepancies: list[Discrepancy] = []

    for (sid_a, events_a), (sid_b, events_b) in itertools.combinations(supplied, 2):
        pair = correlate_pair(sid_a, events_a, sid_b, events_b, time_window, max_distance_km)
        pairs.append(pair)
        if pair.agreement < required_agreement:
            discrepancies.append(Discrepancy(
                source_a=sid_a,
                source_b=sid_b,
                agreement=pair.agreement,
                cause=pair.cause or TIME_MISMATCH,
                matches=list(pair.matches),
            ))

    agreement = sum(p.agreement for p in pairs) / len(pairs)
    return CorrelationReport(agreement=agreement, pairs=pairs, discrepancies=discrepancies)


def _weakest_axis(avg_time: float, avg_location: float, avg_magnitude: float) -> str:
    # Ties resolve location → magnitude → time
    return min(
        ((avg_location, LOCATION_MISMATCH), (avg_magnitude, MAGNITUDE_MISMATCH), (avg_time, TIME_MISMATCH)),
        key=lambda item: item[0],
    )[1]
