"""Source descriptors for the partner earthquake/tsunami feeds."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

# Health states
ACTIVE = "active"
DEGRADED = "degraded"
UNREACHABLE = "unreachable"

CATEGORIES = ("earthquake", "tsunami", "seismic")


@dataclass(frozen=True)
class SourceConfig:
    """Static description of one external data provider."""

    id: str
    name: str
    category: str               # "earthquake", "tsunami" or "seismic"
    reliability: float          # Base trust prior, [0, 1]
    region: str                 # Coverage, e.g. "global", "japan", "pacific"
    original_url: str = ""
    format: str = "json"        # "geojson" or "json"; HTML is always a fallback

    @property
    def proxy_path(self) -> str:
        return f"/api/proxy/{self.id}"

    def endpoint(self, base_url: str) -> str:
        return base_url.rstrip("/") + self.proxy_path


@dataclass
class SourceHealth:
    """Dynamic per-source state, mutated after every fetch attempt."""

    status: str = UNREACHABLE
    success_rate: float = 0.0
    last_contact: Optional[datetime] = None
    consecutive_failures: int = 0


SOURCES: dict[str, SourceConfig] = {
    "usgs": SourceConfig(
        id="usgs",
        name="USGS Earthquake Hazards",
        category="earthquake",
        reliability=0.95,
        region="global",
        original_url="https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary/significant_hour.geojson",
        format="geojson",
    ),
    "emsc": SourceConfig(
        id="emsc",
        name="EMSC Seismic Portal",
        category="earthquake",
        reliability=0.90,
        region="global",
        original_url="https://www.seismicportal.eu/realtime_ws/events",
        format="geojson",
    ),
    "jma_eqvol": SourceConfig(
        id="jma_eqvol",
        name="JMA Earthquake and Volcano Department",
        category="seismic",
        reliability=0.98,
        region="japan",
        original_url="https://www.data.jma.go.jp/svd/eqev/data/bulletin/hypo.html",
    ),
    "noaa_tsunami": SourceConfig(
        id="noaa_tsunami",
        name="NOAA Tsunami Warning Center",
        category="tsunami",
        reliability=0.92,
        region="pacific",
        original_url="https://www.tsunami.noaa.gov/events/",
    ),
}

# A-priori authority of each category of source (independent of measured reliability)
CATEGORY_WEIGHTS: dict[str, float] = {
    "seismic": 0.35,
    "earthquake": 0.30,
    "tsunami": 0.25,
    "live": 0.25,
    "prediction": 0.10,
}
DEFAULT_CATEGORY_WEIGHT = 0.10


def category_weight(category: str) -> float:
    return CATEGORY_WEIGHTS.get(category, DEFAULT_CATEGORY_WEIGHT)
