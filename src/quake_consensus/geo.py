"""Geographic utility functions — pure Python, no external deps."""

from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0

# Rough bounding box of the Japanese archipelago (lat_min, lat_max, lon_min, lon_max)
_JAPAN_BOX = (20.0, 46.5, 122.0, 154.0)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points on Earth in kilometers.

    Uses the Haversine formula. Inputs are WGS84 decimal degrees.
    """
    rlat1, rlon1 = math.radians(lat1), math.radians(lon1)
    rlat2, rlon2 = math.radians(lat2), math.radians(lon2)

    dlat = rlat2 - rlat1
    dlon = rlon2 - rlon1

    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def normalize_longitude(lon: float) -> float:
    """Wrap a longitude into [-180, 180]."""
    if lon > 180:
        return lon - 360
    if lon < -180:
        return lon + 360
    return lon


def location_label(lat: float, lon: float) -> str:
    """Coarse, latitude-banded region name for a consensus centroid.

    Not a reverse geocoder: inside the Japan box the bands follow the main
    island regions, elsewhere they are plain climate-zone style bands.
    """
    lat_min, lat_max, lon_min, lon_max = _JAPAN_BOX
    if lat_min <= lat <= lat_max and lon_min <= lon <= lon_max:
        if lat > 45:
            return "Hokkaido region"
        if lat > 40:
            return "Tohoku region"
        if lat > 35:
            return "Kanto region"
        if lat > 30:
            return "Chubu-Kinki region"
        return "Western Japan region"

    hemisphere = "Northern" if lat >= 0 else "Southern"
    abs_lat = abs(lat)
    if abs_lat > 66.5:
        band = "polar"
    elif abs_lat > 45:
        band = "high latitudes"
    elif abs_lat > 23.5:
        band = "mid latitudes"
    else:
        return "Tropical belt"
    return f"{hemisphere} {band}"
