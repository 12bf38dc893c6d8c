"""Best-effort extractor for sources that answer with an HTML page.

Everything this parser yields is tagged ``degraded``: the page layout is not a
contract, so the values are lower-confidence than a JSON feed. When no table
with usable columns is found the result is an empty list, never placeholder
data.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone, tzinfo

from bs4 import BeautifulSoup

from quake_consensus.geo import normalize_longitude
from quake_consensus.models import Event
from quake_consensus.parsers.base import JST, EventParser, parse_timestamp

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"[-+]?\d+(?:\.\d+)?")

# header keyword → field; each header cell maps to the first field it matches
_COLUMN_KEYWORDS = (
    ("latitude", ("lat",)),
    ("longitude", ("lon", "lng")),
    ("depth", ("depth",)),
    ("magnitude", ("mag",)),
    ("time", ("time", "date", "origin")),
    ("place", ("region", "location", "place", "epicenter", "area")),
)


class HTMLTableParser(EventParser):
    """Extract events from ``<table>`` rows with recognizable headers.

    Times are read in ``default_tz`` unless the time column header names its
    zone (UTC or JST).
    """

    degraded = True

    def __init__(self, source_id: str, category: str = "seismic", default_tz: tzinfo = timezone.utc):
        self.source_id = source_id
        self.category = category
        self.default_tz = default_tz

    def parse(self, raw_payload: str, fetched_at: datetime) -> list[Event]:
        soup = BeautifulSoup(raw_payload, "html.parser")
        events: list[Event] = []

        for table in soup.find_all("table"):
            rows = table.find_all("tr")
            if not rows:
                continue
            columns, time_header = _map_columns(rows[0])
            if not {"time", "latitude", "longitude"} <= columns.keys():
                continue
            tz = _header_timezone(time_header, self.default_tz)

            for index, row in enumerate(rows[1:]):
                cells = [c.get_text(" ", strip=True) for c in row.find_all(["td", "th"])]
                try:
                    events.append(self._parse_row(cells, columns, index, fetched_at, tz))
                except (IndexError, ValueError):
                    continue

        if not events:
            logger.warning("[%s] HTML response contained no extractable events", self.source_id)
        return events

    def _parse_row(
        self, cells: list[str], columns: dict[str, int], index: int, fetched_at: datetime, tz: tzinfo,
    ) -> Event:
        origin_time = parse_timestamp(cells[columns["time"]], default_tz=tz)
        lat = _coordinate(cells[columns["latitude"]], negative="S")
        lon = _coordinate(cells[columns["longitude"]], negative="W")

        depth = _optional_number(cells, columns.get("depth"))
        magnitude = _optional_number(cells, columns.get("magnitude"))
        place = cells[columns["place"]] if "place" in columns and columns["place"] < len(cells) else None

        return Event(
            event_id=f"{self.source_id}:html-{int(origin_time.timestamp())}-{index}",
            source_id=self.source_id,
            origin_time_utc=origin_time,
            latitude=lat,
            longitude=normalize_longitude(lon),
            depth_km=depth,
            magnitude=magnitude,
            place=place or None,
            category=self.category,
            degraded=True,
            fetched_at=fetched_at,
        )


def _map_columns(header_row) -> tuple[dict[str, int], str]:
    columns: dict[str, int] = {}
    time_header = ""
    for position, cell in enumerate(header_row.find_all(["th", "td"])):
        label = cell.get_text(" ", strip=True).lower()
        for field_name, keywords in _COLUMN_KEYWORDS:
            if field_name not in columns and any(k in label for k in keywords):
                columns[field_name] = position
                if field_name == "time":
                    time_header = label
                break
    return columns, time_header


def _header_timezone(label: str, default: tzinfo) -> tzinfo:
    if "utc" in label or "gmt" in label:
        return timezone.utc
    if "jst" in label:
        return JST
    return default


def _coordinate(text: str, negative: str) -> float:
    match = _NUMBER.search(text)
    if match is None:
        raise ValueError(f"no coordinate in {text!r}")
    value = float(match.group())
    if text.strip().upper().endswith(negative):
        value = -abs(value)
    return value


def _optional_number(cells: list[str], position: int | None) -> float | None:
    if position is None or position >= len(cells):
        return None
    match = _NUMBER.search(cells[position])
    return float(match.group()) if match else None
