"""Shared fixtures: event factory and a fake proxy server on httpx.MockTransport."""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone

import httpx
import pytest

from quake_consensus.config import Settings
from quake_consensus.models import Event
from quake_consensus.sources import SourceConfig

T0 = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
PROXY = "http://proxy.test"


def make_event(uid="a", source="usgs", time_utc=None, lat=35.0, lon=139.0,
               depth=10.0, mag=5.0, category="earthquake", degraded=False) -> Event:
    return Event(
        event_id=f"{source}:{uid}",
        source_id=source,
        origin_time_utc=time_utc or T0,
        latitude=lat,
        longitude=lon,
        depth_km=depth,
        magnitude=mag,
        category=category,
        degraded=degraded,
    )


def usgs_geojson(*quakes: dict) -> str:
    """GeoJSON body; each quake dict has id, lat, lon, depth, mag, time (datetime)."""
    return json.dumps({
        "type": "FeatureCollection",
        "features": [{
            "type": "Feature",
            "id": q["id"],
            "properties": {
                "mag": q.get("mag"),
                "place": q.get("place", "Somewhere"),
                "time": int(q["time"].timestamp() * 1000),
            },
            "geometry": {"type": "Point", "coordinates": [q["lon"], q["lat"], q.get("depth", 10.0)]},
        } for q in quakes],
    })


def events_json(*quakes: dict) -> str:
    return json.dumps({"events": [{
        "id": q["id"],
        "time": q["time"].isoformat(),
        "magnitude": q.get("mag"),
        "location": q.get("place", "Somewhere"),
        "coordinates": {"latitude": q["lat"], "longitude": q["lon"]},
        "depth": q.get("depth"),
        "tsunamiThreat": q.get("threat"),
    } for q in quakes]})


class FakeProxy:
    """Routes ``/api/proxy/{id}`` to canned responses and counts GETs per source."""

    def __init__(self):
        self.routes: dict[str, tuple[int, str, str]] = {}
        self.unreachable: set[str] = set()
        self.head_allowed = True
        self.calls: Counter = Counter()

    def json(self, source_id: str, body: str, status: int = 200) -> None:
        self.routes[source_id] = (status, "application/json", body)

    def html(self, source_id: str, body: str) -> None:
        self.routes[source_id] = (200, "text/html; charset=utf-8", body)

    def fail(self, source_id: str, status: int = 503) -> None:
        self.routes[source_id] = (status, "text/plain", "unavailable")

    def handler(self, request: httpx.Request) -> httpx.Response:
        source_id = request.url.path.rsplit("/", 1)[-1]
        if source_id in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "HEAD":
            if not self.head_allowed:
                return httpx.Response(405)
            return httpx.Response(200 if source_id in self.routes else 404)

        self.calls[source_id] += 1
        if source_id not in self.routes:
            return httpx.Response(404, text="not found")
        status, content_type, body = self.routes[source_id]
        return httpx.Response(status, headers={"content-type": content_type}, text=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def settings() -> Settings:
    return Settings(proxy_base_url=PROXY, max_retries=0, request_timeout_seconds=5.0)


def source(id: str, category: str = "earthquake", reliability: float = 0.9,
           format: str = "json") -> SourceConfig:
    return SourceConfig(id=id, name=id.upper(), category=category,
                        reliability=reliability, region="global", format=format)
