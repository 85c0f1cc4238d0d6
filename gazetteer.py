"""
Gazetteer Resolver

Turns a free-text disaster report ("Earthquake hits Tokyo causing widespread
damage") into a place, its coordinates, a disaster type and a severity, using
fixed keyword tables only. Same text in, same answer out.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from errors import NotFound
from schemas import DisasterType, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Place:
    name: str
    lat: float
    lon: float
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Resolution:
    location_name: str
    lat: float
    lon: float
    disaster_type: DisasterType
    severity: Severity


KNOWN_PLACES: List[Place] = [
    # Japan
    Place("Tokyo", 35.6762, 139.6503),
    Place("Yokohama", 35.4437, 139.6380),
    Place("Osaka", 34.6937, 135.5023),
    Place("Kyoto", 35.0116, 135.7681),
    Place("Kobe", 34.6901, 135.1956),
    Place("Sendai", 38.2682, 140.8694),
    Place("Fukushima", 37.7608, 140.4747),
    Place("Hiroshima", 34.3853, 132.4553),
    # India
    Place("Bengaluru", 12.9716, 77.5946, ("Bangalore",)),
    Place("Mumbai", 19.0760, 72.8777, ("Bombay",)),
    Place("Delhi", 28.7041, 77.1025, ("New Delhi",)),
    Place("Chennai", 13.0827, 80.2707, ("Madras",)),
    Place("Kolkata", 22.5726, 88.3639, ("Calcutta",)),
    Place("Hyderabad", 17.3850, 78.4867),
    Place("Kerala", 10.8505, 76.2711),
    Place("Assam", 26.2006, 92.9376),
    Place("Odisha", 20.9517, 85.0985, ("Orissa",)),
    # Rest of Asia
    Place("Kathmandu", 27.7172, 85.3240),
    Place("Dhaka", 23.8103, 90.4125),
    Place("Manila", 14.5995, 120.9842),
    Place("Jakarta", -6.2088, 106.8456),
    Place("Bangkok", 13.7563, 100.5018),
    Place("Istanbul", 41.0082, 28.9784),
    Place("Karachi", 24.8607, 67.0011),
    # Americas
    Place("New York", 40.7128, -74.0060, ("NYC", "New York City")),
    Place("Los Angeles", 34.0522, -118.2437),
    Place("San Francisco", 37.7749, -122.4194),
    Place("Houston", 29.7604, -95.3698),
    Place("Miami", 25.7617, -80.1918),
    Place("New Orleans", 29.9511, -90.0715),
    Place("Mexico City", 19.4326, -99.1332),
    Place("Port-au-Prince", 18.5944, -72.3074),
    Place("Lima", -12.0464, -77.0428),
    Place("Santiago", -33.4489, -70.6693),
    # Europe, Africa, Oceania
    Place("London", 51.5074, -0.1278),
    Place("Athens", 37.9838, 23.7275),
    Place("Nairobi", -1.2921, 36.8219),
    Place("Sydney", -33.8688, 151.2093),
    Place("Christchurch", -43.5321, 172.6362),
]

DISASTER_KEYWORDS: Dict[DisasterType, Sequence[str]] = {
    DisasterType.earthquake: ("earthquake", "quake", "tremor", "tremors", "seismic", "aftershock"),
    DisasterType.flood: ("flood", "floods", "flooding", "flooded", "flash flood", "inundated", "deluge"),
    DisasterType.hurricane: ("hurricane", "cyclone", "typhoon", "tropical storm"),
    DisasterType.wildfire: ("wildfire", "wildfires", "bushfire", "forest fire", "fire", "fires", "blaze"),
}

# Checked from the most severe level down; no cue means medium
SEVERITY_CUES: List[Tuple[Severity, Sequence[str]]] = [
    (Severity.critical, (
        "catastrophic", "devastating", "devastated", "massive", "deadly", "death toll",
        "hundreds dead", "thousands dead", "state of emergency", "magnitude 7", "magnitude 8",
    )),
    (Severity.high, (
        "widespread damage", "widespread", "severe", "major", "destroyed", "collapsed",
        "evacuated", "evacuation", "casualties", "injured",
    )),
    (Severity.low, (
        "minor", "small", "slight", "light", "no damage", "no injuries", "contained",
    )),
]


def _pattern(phrase: str) -> re.Pattern:
    # word boundaries on both ends; inner whitespace may vary
    words = [re.escape(w) for w in phrase.split()]
    return re.compile(r"(?<!\w)" + r"\s+".join(words) + r"(?!\w)", re.IGNORECASE)


def _first_match(text: str, phrases: Sequence[str]) -> Optional[Tuple[int, int]]:
    """Return (offset, -length) of the earliest phrase found, or None."""
    best = None
    for phrase in phrases:
        m = _pattern(phrase).search(text)
        if m is None:
            continue
        key = (m.start(), -len(m.group(0)))
        if best is None or key < best:
            best = key
    return best


class Gazetteer:
    """
    Keyword resolver over a fixed table of places.

    Any object with the same `resolve` / `locate` methods can stand in for it
    (the ledger takes it as a constructor argument).
    """

    def __init__(self, places: Optional[Sequence[Place]] = None):
        self.places = list(places if places is not None else KNOWN_PLACES)

    def find_place(self, text: str) -> Optional[Place]:
        best_place = None
        best_key = None
        for place in self.places:
            key = _first_match(text, (place.name,) + place.aliases)
            if key is None:
                continue
            if best_key is None or key < best_key:
                best_key, best_place = key, place
        return best_place

    def locate(self, name: str) -> Place:
        place = self.find_place(name or "")
        if place is None:
            raise NotFound(f"Unknown location: {name}", location_name=name)
        return place

    def resolve(self, text: str) -> Resolution:
        place = self.find_place(text or "")
        if place is None:
            logger.info("No known location in text: %r", text)
            raise NotFound("Could not detect a known location in the text", text=text)
        resolution = Resolution(
            location_name=place.name,
            lat=place.lat,
            lon=place.lon,
            disaster_type=detect_disaster_type(text),
            severity=detect_severity(text),
        )
        logger.debug("Resolved %r -> %s", text, resolution)
        return resolution


def detect_disaster_type(text: str) -> DisasterType:
    best_type = DisasterType.other
    best_key = None
    for disaster_type, keywords in DISASTER_KEYWORDS.items():
        key = _first_match(text, keywords)
        if key is None:
            continue
        if best_key is None or key < best_key:
            best_key, best_type = key, disaster_type
    return best_type


def detect_severity(text: str) -> Severity:
    for severity, cues in SEVERITY_CUES:
        if _first_match(text, cues) is not None:
            return severity
    return Severity.medium
