"""Parsers for the generic ``{"events": [...]}`` JSON used by bulletin feeds."""

from __future__ import annotations

import json
from datetime import datetime, timezone, tzinfo

from quake_consensus.geo import normalize_longitude
from quake_consensus.models import Event
from quake_consensus.parsers.base import EventParser, ParseError, parse_timestamp, safe_float

_TSUNAMI_THREATS = ("none", "local", "regional", "pacific", "ocean", "unknown")


class EventsJSONParser(EventParser):
    """Normalize a list of loosely-shaped event dicts.

    Each item needs an id (or one is derived), a time and a coordinate pair,
    either flat (``latitude``/``longitude``), nested under ``coordinates`` as
    a dict, or as a GeoJSON-style ``[lon, lat, depth]`` list. Items missing
    time or coordinates are skipped rather than defaulted. Times without an
    offset are read in ``default_tz``.
    """

    category = "seismic"

    def __init__(self, source_id: str, default_tz: tzinfo = timezone.utc):
        self.source_id = source_id
        self.default_tz = default_tz

    def parse(self, raw_payload: str, fetched_at: datetime) -> list[Event]:
        try:
            data = json.loads(raw_payload)
        except ValueError as exc:
            raise ParseError(f"{self.source_id}: invalid JSON") from exc

        if isinstance(data, dict):
            items = data.get("events")
        else:
            items = data
        if not isinstance(items, list):
            raise ParseError(f"{self.source_id}: no 'events' list in payload")

        events: list[Event] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            try:
                events.append(self._parse_item(item, index, fetched_at))
            except (AttributeError, KeyError, TypeError, ValueError, IndexError):
                continue

        return events

    def _parse_item(self, item: dict, index: int, fetched_at: datetime) -> Event:
        lat, lon, depth = _coordinates(item)
        if lat is None or lon is None:
            raise ValueError("missing coordinates")

        origin_time = parse_timestamp(item["time"], default_tz=self.default_tz)
        source_event_id = item.get("id") or f"{int(origin_time.timestamp())}-{index}"

        return Event(
            event_id=f"{self.source_id}:{source_event_id}",
            source_id=self.source_id,
            origin_time_utc=origin_time,
            latitude=float(lat),
            longitude=normalize_longitude(float(lon)),
            depth_km=safe_float(depth),
            magnitude=safe_float(item.get("magnitude", item.get("mag"))),
            place=item.get("location") or item.get("place"),
            category=self.category,
            tsunami_threat=self._threat(item),
            fetched_at=fetched_at,
        )

    def _threat(self, item: dict) -> str | None:
        return None


class SeismicEventsParser(EventsJSONParser):
    """Seismic bulletin events: magnitude, epicenter, depth, location label."""

    category = "seismic"


class TsunamiEventsParser(EventsJSONParser):
    """Tsunami events: threat classification and coordinates, magnitude optional."""

    category = "tsunami"

    def _threat(self, item: dict) -> str | None:
        raw = item.get("tsunamiThreat") or item.get("threat") or "unknown"
        threat = str(raw).lower()
        return threat if threat in _TSUNAMI_THREATS else "unknown"


def _coordinates(item: dict) -> tuple:
    """(lat, lon, depth) from flat keys, a ``coordinates`` dict or a [lon, lat, depth] list."""
    coords = item.get("coordinates")
    if isinstance(coords, (list, tuple)):
        lon, lat = coords[0], coords[1]
        depth = coords[2] if len(coords) > 2 else None
    elif isinstance(coords, dict):
        lat, lon, depth = coords.get("latitude"), coords.get("longitude"), coords.get("depth")
    else:
        lat = lon = depth = None

    return (
        item.get("latitude", lat),
        item.get("longitude", lon),
        item.get("depth", depth),
    )
