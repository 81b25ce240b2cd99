"""Dataclasses describing stored activities and the structure derived from them."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

LatLon = Tuple[float, float]

DIRECTION_SAME = "same"
DIRECTION_REVERSE = "reverse"

_METERS_PER_DEGREE_LAT = 111_320.0


@dataclass(slots=True)
class Bounds:
    """Axis-aligned lat/lng rectangle (inclusive edges)."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def from_points(cls, points: Iterable[Sequence[float]]) -> "Bounds":
        lats: List[float] = []
        lngs: List[float] = []
        for point in points:
            lats.append(float(point[0]))
            lngs.append(float(point[1]))
        if not lats:
            raise ValueError("Cannot compute bounds of an empty point set")
        return cls(min(lats), max(lats), min(lngs), max(lngs))

    def intersects(self, other: "Bounds") -> bool:
        return not (
            other.min_lat > self.max_lat
            or other.max_lat < self.min_lat
            or other.min_lng > self.max_lng
            or other.max_lng < self.min_lng
        )

    def contains(self, other: "Bounds") -> bool:
        return (
            self.min_lat <= other.min_lat
            and self.max_lat >= other.max_lat
            and self.min_lng <= other.min_lng
            and self.max_lng >= other.max_lng
        )

    def expanded(self, meters: float) -> "Bounds":
        """Grow the rectangle by ``meters`` on every side."""

        if meters <= 0:
            return Bounds(self.min_lat, self.max_lat, self.min_lng, self.max_lng)
        d_lat = meters / _METERS_PER_DEGREE_LAT
        widest = max(abs(self.min_lat), abs(self.max_lat))
        cos_lat = max(math.cos(math.radians(min(widest, 89.0))), 1e-6)
        d_lng = meters / (_METERS_PER_DEGREE_LAT * cos_lat)
        return Bounds(
            self.min_lat - d_lat,
            self.max_lat + d_lat,
            self.min_lng - d_lng,
            self.max_lng + d_lng,
        )

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_lat, self.max_lat, self.min_lng, self.max_lng)


@dataclass(slots=True)
class ActivityRecord:
    """Stored activity metadata (never includes the track itself)."""

    id: str
    sport_type: str
    point_count: int
    distance_m: float
    bounds: Bounds
    name: Optional[str] = None
    start_date: Optional[int] = None
    created_at: float = 0.0
    has_time_stream: bool = False


@dataclass(slots=True)
class ActivityMetrics:
    """Caller-supplied summary metrics for one activity."""

    activity_id: str
    name: Optional[str] = None
    date: Optional[int] = None
    distance: Optional[float] = None
    moving_time: Optional[float] = None
    elapsed_time: Optional[float] = None
    elevation_gain: Optional[float] = None
    avg_hr: Optional[float] = None
    avg_power: Optional[float] = None
    sport_type: Optional[str] = None


@dataclass(slots=True)
class SectionPortion:
    """One activity's traversal of a section polyline."""

    activity_id: str
    start_index: int
    end_index: int
    distance_m: float
    direction: str = DIRECTION_SAME


@dataclass(slots=True)
class Section:
    """A stretch of road or trail shared by several activities."""

    id: str
    sport_type: str
    scale: str
    polyline: List[LatLon]
    representative_activity_id: str
    activity_ids: List[str]
    portions: List[SectionPortion]
    visit_count: int
    distance_m: float
    confidence: float
    average_spread: float
    bounds: Bounds
    name: Optional[str] = None
    reference_user_defined: bool = False
    auto_name: Optional[str] = None


@dataclass(slots=True)
class SectionSummary:
    """Polyline-free projection of a section row."""

    id: str
    sport_type: str
    scale: str
    visit_count: int
    activity_count: int
    distance_m: float
    confidence: float
    bounds: Bounds
    representative_activity_id: str
    name: Optional[str] = None


@dataclass(slots=True)
class CustomSection:
    """A user-drawn stretch of one activity."""

    id: str
    name: str
    polyline: List[LatLon]
    source_activity_id: Optional[str]
    start_index: Optional[int]
    end_index: Optional[int]
    sport_type: str
    distance_m: float
    created_at: float


@dataclass(slots=True)
class CustomSectionMatch:
    """One occurrence of a custom section inside another activity."""

    section_id: str
    activity_id: str
    start_index: int
    end_index: int
    direction: str
    distance_m: float
    trace: List[LatLon] = field(default_factory=list)


@dataclass(slots=True)
class ActivityMatch:
    """How closely a group member follows the group's representative."""

    activity_id: str
    match_percentage: float
    direction: str


@dataclass(slots=True)
class RouteGroup:
    """Activities judged to be the same physical route."""

    id: str
    sport_type: str
    representative_id: str
    activity_ids: List[str]
    consensus_polyline: List[LatLon]
    bounds: Bounds
    distance_m: float
    best_time: Optional[float] = None
    matches: List[ActivityMatch] = field(default_factory=list)
    name: Optional[str] = None


@dataclass(slots=True)
class RouteGroupSummary:
    """Polyline-free projection of a route group row."""

    id: str
    sport_type: str
    representative_id: str
    activity_count: int
    distance_m: float
    bounds: Bounds
    best_time: Optional[float] = None
    name: Optional[str] = None


@dataclass(slots=True)
class EngineStats:
    """Counts reported by the engine facade."""

    activity_count: int
    section_count: int
    custom_section_count: int
    group_count: int
    time_stream_count: int
    oldest_date: Optional[int] = None
    newest_date: Optional[int] = None


def id_sort_key(value: str) -> Tuple[int, int, str]:
    """Order ids numerically when they are integers, lexically otherwise."""

    text = str(value)
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)
