"""
Matching Scorer

score = round(100 * (COVERAGE_WEIGHT * coverage + PROXIMITY_WEIGHT * proximity))

coverage: share of distinct requested items the hub can supply in full.
proximity: 1 at the request location, falling linearly to 0 at the cutoff.

More coverage never lowers the score and more distance never raises it.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from config import Config
from geo import nearby
from schemas import GeoPoint, Hub, find_item


@dataclass(frozen=True)
class Candidate:
    hub: Hub
    distance_km: float
    score: int


def coverage(request_items: Dict[str, int], inventory: Dict[str, int]) -> float:
    if not request_items:
        return 1.0
    covered = 0
    for name, qty in request_items.items():
        key = find_item(inventory, name)
        if key is not None and inventory[key] >= qty:
            covered += 1
    return covered / len(request_items)


def proximity(distance_km: float, cutoff_km: Optional[float] = None) -> float:
    cutoff = Config.MATCH_CUTOFF_KM if cutoff_km is None else cutoff_km
    if cutoff <= 0:
        return 0.0
    return max(0.0, 1.0 - distance_km / cutoff)


def score(request_items: Dict[str, int], hub_inventory: Dict[str, int], distance_km: float) -> int:
    raw = 100 * (
        Config.COVERAGE_WEIGHT * coverage(request_items, hub_inventory)
        + Config.PROXIMITY_WEIGHT * proximity(distance_km)
    )
    return max(0, min(100, int(round(raw))))


def rank_hubs(
    request_items: Dict[str, int],
    point: GeoPoint,
    hubs: Iterable[Hub],
    cutoff_km: Optional[float] = None,
) -> List[Candidate]:
    """Hubs within the cutoff, best score first, then closest, then by id."""
    cutoff = Config.MATCH_CUTOFF_KM if cutoff_km is None else cutoff_km
    candidates = [
        Candidate(hub=hub, distance_km=dist, score=score(request_items, hub.inventory, dist))
        for hub, dist in nearby(point, hubs, cutoff)
    ]
    candidates.sort(key=lambda c: (-c.score, c.distance_km, c.hub.id))
    return candidates


def best_match(
    request_items: Dict[str, int],
    point: GeoPoint,
    hubs: Iterable[Hub],
    cutoff_km: Optional[float] = None,
) -> Optional[Candidate]:
    ranked = rank_hubs(request_items, point, hubs, cutoff_km)
    return ranked[0] if ranked else None
