"""Parser for EMSC (SeismicPortal) GeoJSON earthquake feed."""

from __future__ import annotations

import json
from datetime import datetime

from quake_consensus.geo import normalize_longitude
from quake_consensus.models import Event
from quake_consensus.parsers.base import EventParser, ParseError, parse_timestamp, safe_float


class EMSCGeoJSONParser(EventParser):
    """Parse EMSC/SeismicPortal GeoJSON response → list of Event.

    Accepts both a FeatureCollection and the single-feature envelopes
    (``{"action": ..., "data": {...}}``) pushed by the realtime service.
    """

    def __init__(self, source_id: str = "emsc"):
        self.source_id = source_id

    def parse(self, raw_payload: str, fetched_at: datetime) -> list[Event]:
        try:
            data = json.loads(raw_payload)
        except ValueError as exc:
            raise ParseError(f"{self.source_id}: invalid JSON") from exc

        if isinstance(data, list):
            features = [item.get("data", item) for item in data if isinstance(item, dict)]
        elif isinstance(data, dict) and "features" in data:
            features = data["features"]
        elif isinstance(data, dict) and "data" in data:
            features = [data["data"]]
        else:
            raise ParseError(f"{self.source_id}: unexpected payload shape")
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

        # EMSC uses "unid" as the event identifier
        source_event_id = props.get("unid") or props.get("source_id") or feature.get("id", "")
        if not source_event_id:
            raise ValueError("missing event id")

        return Event(
            event_id=f"{self.source_id}:{source_event_id}",
            source_id=self.source_id,
            origin_time_utc=parse_timestamp(props["time"]),
            latitude=float(coords[1]),
            longitude=normalize_longitude(float(coords[0])),
            depth_km=safe_float(coords[2]) if len(coords) > 2 else None,
            magnitude=safe_float(props.get("mag")),
            # EMSC uses "flynn_region" for the region name
            place=props.get("flynn_region") or props.get("place"),
            category="earthquake",
            fetched_at=fetched_at,
        )
