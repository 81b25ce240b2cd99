"""Clustering of whole activities into route groups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from hashlib import sha256
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import shapely
from cachetools import LRUCache

from .config import (
    ROUTE_AMD_TOLERANCE_M,
    ROUTE_AMD_TOLERANCE_RATIO,
    ROUTE_ENDPOINT_THRESHOLD_M,
    ROUTE_MATCH_PERFECT_M,
    ROUTE_MATCH_ZERO_M,
    ROUTE_MAX_DISTANCE_DIFF_RATIO,
    ROUTE_MIN_DISTANCE_M,
    ROUTE_MIN_GROUP_SIZE,
    ROUTE_RESAMPLE_POINTS,
)
from .geometry.preprocessing import (
    MetricArray,
    project_points,
    resample_to_count,
    transformer_for_epsg,
    utm_epsg_for,
)
from .geometry.similarity import amd_to_percentage, select_medoid, symmetric_amd
from .models import (
    DIRECTION_REVERSE,
    DIRECTION_SAME,
    ActivityMatch,
    ActivityRecord,
    Bounds,
    RouteGroup,
    id_sort_key,
)
from .sections.clustering import UnionFind
from .spatial import build_tree
from .storage import TrackStore
from .utils import json_dumps_sorted


@dataclass(slots=True)
class RouteComparison:
    """Outcome of comparing two whole tracks."""

    amd_m: float
    match_percentage: float
    direction: str
    grouped: bool
    reason: str = ""


class RouteGrouper:
    """Group activities that follow the same route end to end."""

    def __init__(
        self,
        store: TrackStore,
        *,
        resample_points: int = ROUTE_RESAMPLE_POINTS,
        amd_tolerance_m: float = ROUTE_AMD_TOLERANCE_M,
        amd_tolerance_ratio: float = ROUTE_AMD_TOLERANCE_RATIO,
        match_perfect_m: float = ROUTE_MATCH_PERFECT_M,
        match_zero_m: float = ROUTE_MATCH_ZERO_M,
        min_distance_m: float = ROUTE_MIN_DISTANCE_M,
        max_distance_diff_ratio: float = ROUTE_MAX_DISTANCE_DIFF_RATIO,
        endpoint_threshold_m: float = ROUTE_ENDPOINT_THRESHOLD_M,
        min_group_size: int = ROUTE_MIN_GROUP_SIZE,
    ) -> None:
        self.store = store
        self.resample_points = max(5, resample_points)
        self.amd_tolerance_m = amd_tolerance_m
        self.amd_tolerance_ratio = amd_tolerance_ratio
        self.match_perfect_m = match_perfect_m
        self.match_zero_m = match_zero_m
        self.min_distance_m = min_distance_m
        self.max_distance_diff_ratio = max_distance_diff_ratio
        self.endpoint_threshold_m = endpoint_threshold_m
        self.min_group_size = max(1, min_group_size)
        self._log = logging.getLogger(self.__class__.__name__)
        self._resampled: LRUCache = LRUCache(maxsize=2048)

    def group(self) -> List[RouteGroup]:
        """Recompute every route group from the stored activities."""

        self._resampled.clear()
        records = [
            r
            for r in self.store.list_activities()
            if r.point_count >= 2 and r.distance_m >= self.min_distance_m
        ]
        tracks = self.store.load_tracks(r.id for r in records)
        by_sport: Dict[str, List[ActivityRecord]] = {}
        for record in records:
            if record.id in tracks:
                by_sport.setdefault(record.sport_type, []).append(record)

        groups: List[RouteGroup] = []
        for sport, items in sorted(by_sport.items()):
            groups.extend(self._group_sport(sport, items, tracks))
        self._resampled.clear()
        self._log.info(
            "Grouped %d activities into %d route groups", len(records), len(groups)
        )
        return groups

    # ------------------------------------------------------------------
    def _group_sport(
        self,
        sport: str,
        records: Sequence[ActivityRecord],
        tracks: Mapping[str, np.ndarray],
    ) -> List[RouteGroup]:
        ordered = sorted(records, key=lambda r: id_sort_key(r.id))
        by_id = {r.id: r for r in ordered}
        uf = UnionFind()
        for record in ordered:
            uf.add(record.id)
        for a_id, b_id in self._candidate_pairs(ordered):
            comparison = self.compare(
                tracks[a_id], tracks[b_id], by_id[a_id].distance_m, by_id[b_id].distance_m
            )
            if comparison.grouped:
                uf.union(a_id, b_id)
            else:
                self._log.debug("%s !~ %s: %s", a_id, b_id, comparison.reason)

        groups: List[RouteGroup] = []
        for members in uf.groups():
            if len(members) < self.min_group_size:
                continue
            groups.append(self._build_group(sport, sorted(members, key=id_sort_key), by_id, tracks))
        groups.sort(key=lambda g: (-len(g.activity_ids), g.id))
        return groups

    def _candidate_pairs(self, ordered: Sequence[ActivityRecord]) -> List[Tuple[str, str]]:
        if len(ordered) < 2:
            return []
        grown = [r.bounds.expanded(self.endpoint_threshold_m) for r in ordered]
        tree = build_tree(grown)
        if tree is None:
            return []
        arr = np.asarray([b.as_tuple() for b in grown], dtype=float)
        hits = tree.query(shapely.box(arr[:, 2], arr[:, 0], arr[:, 3], arr[:, 1]))
        pairs = sorted({(int(i), int(j)) for i, j in zip(hits[0], hits[1]) if int(i) < int(j)})
        return [(ordered[i].id, ordered[j].id) for i, j in pairs]

    def _signature(self, points: np.ndarray, epsg: int) -> MetricArray:
        key = (points.tobytes(), epsg)
        cached = self._resampled.get(key)
        if cached is None:
            cached = resample_to_count(
                project_points(points, transformer_for_epsg(epsg)), self.resample_points
            )
            self._resampled[key] = cached
        return cached

    def compare(
        self,
        a_points: np.ndarray,
        b_points: np.ndarray,
        a_length_m: float,
        b_length_m: float,
    ) -> RouteComparison:
        """Decide whether two tracks are the same route.

        Checks, in order: minimum length, similar total length, matching
        endpoints (in either direction, or both being loops from the same
        start), middle points at 25/50/75 % agreeing, and finally the average
        minimum distance under a tolerance that grows with track length.
        """

        if min(a_length_m, b_length_m) < self.min_distance_m:
            return RouteComparison(float("inf"), 0.0, DIRECTION_SAME, False, "too short")
        longest = max(a_length_m, b_length_m)
        if longest > 0 and abs(a_length_m - b_length_m) / longest > self.max_distance_diff_ratio:
            return RouteComparison(float("inf"), 0.0, DIRECTION_SAME, False, "length differs")

        centre = a_points.mean(axis=0)
        epsg = utm_epsg_for(float(centre[0]), float(centre[1]))
        a = self._signature(a_points, epsg)
        b = self._signature(b_points, epsg)
        threshold = self.endpoint_threshold_m

        def dist(p: np.ndarray, q: np.ndarray) -> float:
            return float(np.linalg.norm(p - q))

        a_loop = dist(a[0], a[-1]) < threshold
        b_loop = dist(b[0], b[-1]) < threshold
        direction = DIRECTION_SAME
        if a_loop and b_loop:
            if dist(a[0], b[0]) > threshold:
                return RouteComparison(float("inf"), 0.0, direction, False, "loop starts differ")
            forward = _middle_gap(a, b)
            backward = _middle_gap(a, b[::-1])
            if backward < forward:
                direction = DIRECTION_REVERSE
        else:
            same_ok = dist(a[0], b[0]) < threshold and dist(a[-1], b[-1]) < threshold
            reverse_ok = dist(a[0], b[-1]) < threshold and dist(a[-1], b[0]) < threshold
            if not same_ok and not reverse_ok:
                return RouteComparison(float("inf"), 0.0, direction, False, "endpoints differ")
            if reverse_ok and not same_ok:
                direction = DIRECTION_REVERSE
        aligned = b[::-1] if direction == DIRECTION_REVERSE else b
        if _middle_gap(a, aligned) > threshold * 2.0:
            return RouteComparison(float("inf"), 0.0, direction, False, "middle points differ")

        amd = symmetric_amd(a, b)
        tolerance = max(self.amd_tolerance_m, self.amd_tolerance_ratio * 0.5 * (a_length_m + b_length_m))
        pct = amd_to_percentage(amd, self.match_perfect_m, self.match_zero_m)
        if amd > tolerance:
            return RouteComparison(amd, pct, direction, False, f"amd {amd:.1f} m > {tolerance:.1f} m")
        return RouteComparison(amd, pct, direction, True)

    def _build_group(
        self,
        sport: str,
        members: List[str],
        by_id: Mapping[str, ActivityRecord],
        tracks: Mapping[str, np.ndarray],
    ) -> RouteGroup:
        centre = np.vstack([tracks[m] for m in members]).mean(axis=0)
        epsg = utm_epsg_for(float(centre[0]), float(centre[1]))
        signatures = {m: self._signature(tracks[m], epsg) for m in members}
        choice = select_medoid(signatures, max_pairwise=len(members))
        representative = choice.member_id
        rep_sig = signatures[representative]
        matches: List[ActivityMatch] = []
        for member in members:
            if member == representative:
                matches.append(ActivityMatch(member, 100.0, DIRECTION_SAME))
                continue
            comparison = self.compare(
                tracks[representative],
                tracks[member],
                by_id[representative].distance_m,
                by_id[member].distance_m,
            )
            pct = amd_to_percentage(
                symmetric_amd(rep_sig, signatures[member]),
                self.match_perfect_m,
                self.match_zero_m,
            )
            matches.append(ActivityMatch(member, round(pct, 2), comparison.direction))
        bounds = by_id[members[0]].bounds
        for member in members[1:]:
            other = by_id[member].bounds
            bounds = Bounds(
                min(bounds.min_lat, other.min_lat),
                max(bounds.max_lat, other.max_lat),
                min(bounds.min_lng, other.min_lng),
                max(bounds.max_lng, other.max_lng),
            )
        return RouteGroup(
            id=route_group_id(sport, members),
            sport_type=sport,
            representative_id=representative,
            activity_ids=members,
            consensus_polyline=[(float(lat), float(lng)) for lat, lng in tracks[representative]],
            bounds=bounds,
            distance_m=by_id[representative].distance_m,
            matches=matches,
        )


def route_group_id(sport: str, members: Sequence[str]) -> str:
    """Id keyed on the group's earliest member, so it is stable as the group grows."""

    anchor = min(members, key=id_sort_key)
    digest = sha256(json_dumps_sorted({"sport": sport, "anchor": anchor}).encode("utf-8"))
    return "route_" + digest.hexdigest()[:16]


def _middle_gap(a: MetricArray, b: MetricArray) -> float:
    """Largest distance between the 25/50/75 % samples of two signatures."""

    if len(a) < 5 or len(b) < 5:
        return 0.0
    gaps = []
    for position in (0.25, 0.5, 0.75):
        gaps.append(float(np.linalg.norm(a[int(len(a) * position)] - b[int(len(b) * position)])))
    return max(gaps)


def best_times(
    groups: Sequence[RouteGroup], durations: Mapping[str, Optional[float]]
) -> None:
    """Fill ``best_time`` from per-activity durations (moving or elapsed)."""

    for group in groups:
        known = [durations[m] for m in group.activity_ids if durations.get(m)]
        group.best_time = float(min(known)) if known else None
