"""Parser for USGS GeoJSON earthquake feed."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from quake_consensus.geo import normalize_longitude
from quake_consensus.models import Event
from quake_consensus.parsers.base import EventParser, ParseError, safe_float


class USGSGeoJSONParser(EventParser):
    """Parse USGS GeoJSON response → list of Event."""

    def __init__(self, source_id: str = "usgs"):
        self.source_id = source_id

    def parse(self, raw_payload: str, fetched_at: datetime) -> list[Event]:
        try:
            data = json.loads(raw_payload)
            features = data["features"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ParseError(f"{self.source_id}: not a GeoJSON FeatureCollection") from exc
        if not isinstance(features, list):
            raise ParseError(f"{self.source_id}: 'features' is not a list")

        events: list[Event] = []
        for feature in features:
            try:
                events.append(self._parse_feature(feature, fetched_at))
            except (AttributeError, KeyError, TypeError, ValueError, IndexError):
                continue

        return events

    def _parse_feature(self, feature: dict, fetched_at: datetime) -> Event:
        props = feature["properties"]
        coords = feature["geometry"]["coordinates"]

        source_event_id = feature["id"]
        origin_time = datetime.fromtimestamp(props["time"] / 1000, tz=timezone.utc)

        return Event(
            event_id=f"{self.source_id}:{source_event_id}",
            source_id=self.source_id,
            origin_time_utc=origin_time,
            latitude=float(coords[1]),
            longitude=normalize_longitude(float(coords[0])),
            depth_km=safe_float(coords[2]) if len(coords) > 2 else None,
            magnitude=safe_float(props.get("mag")),
            place=props.get("place"),
            category="earthquake",
            tsunami_threat="possible" if props.get("tsunami") else None,
            fetched_at=fetched_at,
        )
