"""Parser for P2P earthquake information push messages (live feed)."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from quake_consensus.models import Event
from quake_consensus.parsers.base import JST, EventParser, ParseError, parse_timestamp, safe_float

CODE_EARTHQUAKE = 551


class P2PQuakeParser(EventParser):
    """Turn code-551 earthquake messages into Events.

    The feed marks unknown values with ``-1`` (depth, magnitude) and ``-200``
    (coordinates); unknown depth/magnitude become ``None`` and messages
    without a hypocenter position are dropped.
    """

    def __init__(self, source_id: str = "p2p"):
        self.source_id = source_id

    def parse(self, raw_payload: str, fetched_at: datetime) -> list[Event]:
        try:
            message = json.loads(raw_payload)
        except ValueError as exc:
            raise ParseError(f"{self.source_id}: invalid JSON message") from exc
        event = self.parse_message(message, fetched_at)
        return [event] if event is not None else []

    def parse_message(self, message: dict, fetched_at: datetime | None = None) -> Event | None:
        if message.get("code") != CODE_EARTHQUAKE:
            return None

        quake = message.get("earthquake") or {}
        hypo = quake.get("hypocenter") or {}
        lat = safe_float(hypo.get("latitude"))
        lon = safe_float(hypo.get("longitude"))
        if lat is None or lon is None or lat <= -200 or lon <= -200:
            return None

        try:
            origin_time = parse_timestamp(quake["time"], default_tz=JST)
        except (KeyError, ValueError):
            return None

        depth = safe_float(hypo.get("depth"))
        magnitude = safe_float(hypo.get("magnitude"))
        tsunami = quake.get("domesticTsunami")

        return Event(
            event_id=f"{self.source_id}:{message.get('id') or int(origin_time.timestamp())}",
            source_id=self.source_id,
            origin_time_utc=origin_time,
            latitude=lat,
            longitude=lon,
            depth_km=depth if depth is not None and depth >= 0 else None,
            magnitude=magnitude if magnitude is not None and magnitude >= 0 else None,
            place=hypo.get("name") or None,
            category="live",
            tsunami_threat=tsunami.lower() if tsunami and tsunami != "None" else None,
            fetched_at=fetched_at or datetime.now(timezone.utc),
        )
