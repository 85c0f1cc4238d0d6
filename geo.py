"""
Geospatial Index

Great-circle distances use the haversine formula on a sphere of radius
Config.EARTH_RADIUS_KM. Against the WGS84 ellipsoid that is off by up to
about 0.5%, which is fine for ranking relief hubs.

`nearby` scans every hub per query. That holds up to a few thousand hubs; a
grid or R-tree would only change the speed, not the results.
"""

import math
from typing import Iterable, List, Optional, Tuple

from config import Config
from errors import ValidationError
from schemas import GeoPoint, Hub


def haversine_km(lat1, lon1, lat2, lon2):
    R = Config.EARTH_RADIUS_KM
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Reported distance between two points, rounded to DISTANCE_PRECISION."""
    return round(haversine_km(a.lat, a.lon, b.lat, b.lon), Config.DISTANCE_PRECISION)


def nearby(
    point: GeoPoint,
    hubs: Iterable[Hub],
    radius_km: float,
    max_results: Optional[int] = None,
) -> List[Tuple[Hub, float]]:
    """Hubs within `radius_km` of `point` as (hub, distance_km), closest first.

    Equal distances are ordered by hub id so the answer is deterministic.
    """
    if radius_km < 0:
        raise ValidationError("radius_km must not be negative", radius_km=radius_km)
    if max_results is not None and max_results <= 0:
        raise ValidationError("max_results must be positive", max_results=max_results)

    found = []
    for hub in hubs:
        raw = haversine_km(point.lat, point.lon, hub.lat, hub.lon)
        if raw > radius_km:
            continue
        found.append((hub, round(raw, Config.DISTANCE_PRECISION)))

    found.sort(key=lambda pair: (pair[1], pair[0].id))
    if max_results is not None:
        found = found[:max_results]
    return found
