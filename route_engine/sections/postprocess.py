"""Cleanup applied to freshly built sections before they are committed.

Raw detection yields one section per cluster and scale. Postprocessing then
splits out-and-back sections at their turnaround and merges same-scale copies
of one stretch. It folds smaller-scale duplicates into the larger scale and
gives busy sub-stretches a section of their own.  Whenever a step changes a
section's geometry, its portions are re-derived from the contributors' full
tracks by a :class:`PortionMatcher`.
"""

from __future__ import annotations

import logging
import math
from hashlib import sha256
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import LineString, MultiLineString

from ..config import (
    MATCH_COVERAGE_THRESHOLD,
    MATCH_GATE_MAX_M,
    SECTION_FOLD_RATIO,
    SECTION_MAX_GAP_POINTS,
    SECTION_MERGE_DISTANCE_FACTOR,
    SECTION_MERGE_MAX_LENGTH_RATIO,
    SECTION_MERGE_MIN_CONTAINMENT,
    SECTION_SPLIT_DENSITY_RATIO,
    SECTION_SPLIT_MIN_LENGTH_M,
    SECTION_SPLIT_MIN_POINTS,
    ScalePreset,
)
from ..geometry.preprocessing import (
    local_transformer,
    prepare_track,
    project_points,
    track_length_m,
)
from ..geometry.traversal import find_traversals
from ..models import Bounds, LatLon, Section, SectionPortion, id_sort_key
from ..utils import json_dumps_sorted

_LOG = logging.getLogger(__name__)

# ~110 m grid for endpoint quantisation in section ids.
_ID_PRECISION = 3

# Polylines with fewer points are never treated as folded.
_FOLD_MIN_POINTS = 10


def stable_section_id(sport_type: str, scale: str, polyline: Sequence[LatLon]) -> str:
    """Derive an id that survives re-detection of the same stretch.

    The id hashes the sport, the scale and both endpoints rounded to roughly
    a hundred metres; endpoints are ordered so direction does not matter.
    """

    ends = sorted(
        (round(pt[0], _ID_PRECISION), round(pt[1], _ID_PRECISION))
        for pt in (polyline[0], polyline[-1])
    )
    payload = {"sport": sport_type, "scale": scale, "ends": ends}
    return "sec_" + sha256(json_dumps_sorted(payload).encode("utf-8")).hexdigest()[:16]


def section_confidence(activity_count: int, spread_m: float, tolerance_m: float) -> float:
    """Blend contributor count and lateral spread into a 0..1 score."""

    if activity_count <= 0:
        return 0.0
    contributors = 1.0 - 1.0 / activity_count
    if tolerance_m <= 0 or not math.isfinite(spread_m):
        tightness = 0.0
    else:
        tightness = min(max(1.0 - spread_m / tolerance_m, 0.0), 1.0)
    return round(min(max(contributors * (0.5 + 0.5 * tightness), 0.0), 1.0), 4)


class PortionMatcher:
    """Re-derive section portions from whole contributor tracks.

    Every complete pass of a track over a polyline (see
    :func:`~route_engine.geometry.traversal.find_traversals`) becomes one
    portion, so a track that runs a stretch out and back contributes two.
    """

    def __init__(
        self,
        tracks: Mapping[str, np.ndarray],
        *,
        coverage_threshold: float = MATCH_COVERAGE_THRESHOLD,
        gate_m: float = MATCH_GATE_MAX_M,
        max_gap: int = SECTION_MAX_GAP_POINTS,
    ) -> None:
        self.tracks = tracks
        self.coverage_threshold = coverage_threshold
        self.gate_m = gate_m
        self.max_gap = max_gap

    def portions(
        self,
        polyline: Sequence[LatLon],
        activity_ids: Iterable[str],
        tolerance_m: float,
    ) -> List[SectionPortion]:
        if len(polyline) < 2:
            return []
        reference = prepare_track(polyline)
        found: List[SectionPortion] = []
        for activity_id in activity_ids:
            track = self.tracks.get(activity_id)
            if track is None or track.shape[0] < 2:
                continue
            prepared = prepare_track(track, reference.transformer)
            for traversal in find_traversals(
                prepared,
                reference,
                tolerance_m=tolerance_m,
                coverage_threshold=self.coverage_threshold,
                gate_m=self.gate_m,
                max_gap=self.max_gap,
            ):
                start, end = traversal.start_index, traversal.end_index
                found.append(
                    SectionPortion(
                        activity_id=activity_id,
                        start_index=start,
                        end_index=end,
                        distance_m=track_length_m(track[start : end + 1]),
                        direction=traversal.direction,
                    )
                )
        return found

    def density(self, section: Section, tolerance_m: float) -> np.ndarray:
        """Per polyline point, how many contributors pass within ``tolerance_m``."""

        counts = np.zeros(len(section.polyline), dtype=int)
        if not section.polyline:
            return counts
        transformer = local_transformer(section.polyline)
        points = shapely.points(project_points(section.polyline, transformer))
        spans: Dict[str, List[SectionPortion]] = {}
        for portion in section.portions:
            spans.setdefault(portion.activity_id, []).append(portion)
        for activity_id, items in spans.items():
            track = self.tracks.get(activity_id)
            if track is None:
                continue
            lines = [
                LineString(project_points(track[p.start_index : p.end_index + 1], transformer))
                for p in items
                if p.end_index > p.start_index
            ]
            if not lines:
                continue
            near = np.asarray(shapely.distance(points, MultiLineString(lines))) <= tolerance_m
            counts += near.astype(int)
        return counts


def derive_section(
    parent: Section,
    polyline: Sequence[LatLon],
    portions: List[SectionPortion],
    tolerance_m: float,
    *,
    min_activities: int,
) -> Optional[Section]:
    """A new section over ``polyline`` inheriting ``parent``'s representative.

    ``polyline`` must be a slice of the parent polyline. Returns None when
    fewer than ``min_activities`` contributors pass over it, or when the
    representative activity itself does not.
    """

    activity_ids = sorted({p.activity_id for p in portions}, key=id_sort_key)
    if len(activity_ids) < min_activities:
        return None
    if parent.representative_activity_id not in activity_ids:
        return None
    points = list(polyline)
    portions = sorted(portions, key=lambda p: (id_sort_key(p.activity_id), p.start_index))
    return Section(
        id=stable_section_id(parent.sport_type, parent.scale, points),
        sport_type=parent.sport_type,
        scale=parent.scale,
        polyline=points,
        representative_activity_id=parent.representative_activity_id,
        activity_ids=activity_ids,
        portions=portions,
        visit_count=len(portions),
        distance_m=track_length_m(points),
        confidence=section_confidence(len(activity_ids), parent.average_spread, tolerance_m),
        average_spread=parent.average_spread,
        bounds=Bounds.from_points(points),
    )


def absorb_contributors(
    kept: Section,
    other: Section,
    matcher: Optional[PortionMatcher],
    tolerance_m: float,
) -> int:
    """Add ``other``'s extra activities to ``kept`` where they pass over it.

    Returns the number of activities added.
    """

    if matcher is None:
        return 0
    known = set(kept.activity_ids)
    extra = [aid for aid in other.activity_ids if aid not in known]
    if not extra:
        return 0
    found = matcher.portions(kept.polyline, extra, tolerance_m)
    if not found:
        return 0
    added = {p.activity_id for p in found}
    kept.portions.extend(found)
    kept.activity_ids = sorted(known | added, key=id_sort_key)
    kept.visit_count += len(found)
    kept.confidence = section_confidence(
        len(kept.activity_ids), kept.average_spread, tolerance_m
    )
    return len(added)


def containment(
    inner: Sequence[LatLon], outer: Sequence[LatLon], tolerance_m: float
) -> float:
    """Share of ``inner``'s points lying within ``tolerance_m`` of ``outer``."""

    if len(outer) < 2 or not inner:
        return 0.0
    transformer = local_transformer(outer)
    outer_line = LineString(project_points(outer, transformer))
    inner_points = shapely.points(project_points(inner, transformer))
    offsets = np.asarray(shapely.distance(inner_points, outer_line), dtype=float)
    return float(np.mean(offsets <= tolerance_m))


def fold_index(
    polyline: Sequence[LatLon],
    tolerance_m: float,
    *,
    fold_ratio: float = SECTION_FOLD_RATIO,
) -> Optional[int]:
    """Index where ``polyline`` turns back on itself, or None.

    A polyline folds when more than ``fold_ratio`` of its last third retraces
    its first third; the turnaround is the point farthest from the start.
    """

    count = len(polyline)
    third = count // 3
    if count < _FOLD_MIN_POINTS or third < 2:
        return None
    metric = project_points(polyline, local_transformer(polyline))
    head = LineString(metric[:third])
    tail = shapely.points(metric[count - third :])
    retraced = np.asarray(shapely.distance(tail, head), dtype=float) <= tolerance_m
    if float(np.mean(retraced)) <= fold_ratio:
        return None
    reach = np.linalg.norm(metric - metric[0], axis=1)
    turn = int(np.argmax(reach))
    if turn <= 0 or turn >= count - 1:
        return None
    return turn


def split_folding_sections(
    sections: Sequence[Section],
    matcher: PortionMatcher,
    scales: Sequence[ScalePreset],
    *,
    min_activities: int,
    fold_ratio: float = SECTION_FOLD_RATIO,
) -> List[Section]:
    """Replace out-and-back sections with an outbound and a return section.

    Halves shorter than the scale window, or passed by too few contributors,
    are dropped. A folded section with no usable half is kept as it is.
    """

    presets = {preset.name: preset for preset in scales}
    result: List[Section] = []
    for section in sections:
        preset = presets.get(section.scale)
        tolerance = preset.tolerance_m if preset is not None else 0.0
        turn = fold_index(section.polyline, tolerance, fold_ratio=fold_ratio)
        if turn is None:
            result.append(section)
            continue
        halves: List[Section] = []
        for part in (section.polyline[: turn + 1], section.polyline[turn:]):
            if preset is not None and track_length_m(part) < preset.window_m:
                continue
            half = derive_section(
                section,
                part,
                matcher.portions(part, section.activity_ids, tolerance),
                tolerance,
                min_activities=min_activities,
            )
            if half is not None:
                halves.append(half)
        if not halves:
            _LOG.debug("Folding section %s has no usable half; keeping it", section.id)
            result.append(section)
            continue
        _LOG.info(
            "Split folding section %s at point %d into %d sections",
            section.id,
            turn,
            len(halves),
        )
        result.extend(halves)
    return result


def merge_nearby_sections(
    sections: Sequence[Section],
    matcher: Optional[PortionMatcher],
    scales: Sequence[ScalePreset],
    *,
    distance_factor: float = SECTION_MERGE_DISTANCE_FACTOR,
    min_containment: float = SECTION_MERGE_MIN_CONTAINMENT,
    max_length_ratio: float = SECTION_MERGE_MAX_LENGTH_RATIO,
) -> List[Section]:
    """Merge same-scale sections describing one stretch.

    Reversed copies, the two sides of a wide road and GPS drift all end up
    here. The busiest section survives and takes over the contributors of
    the ones merged into it.
    """

    tolerance = {preset.name: preset.tolerance_m for preset in scales}
    ordered = sorted(sections, key=lambda s: (-s.visit_count, -s.distance_m, s.id))
    kept: List[Section] = []
    for candidate in ordered:
        reach = tolerance.get(candidate.scale, 0.0) * distance_factor
        target = next(
            (
                other
                for other in kept
                if other.sport_type == candidate.sport_type
                and other.scale == candidate.scale
                and _similar_length(other, candidate, max_length_ratio)
                and containment(candidate.polyline, other.polyline, reach) > min_containment
            ),
            None,
        )
        if target is None:
            kept.append(candidate)
            continue
        added = absorb_contributors(
            target, candidate, matcher, tolerance.get(target.scale, 0.0)
        )
        _LOG.info(
            "Merged nearby section %s into %s (%d activities added)",
            candidate.id,
            target.id,
            added,
        )
    return kept


def _similar_length(a: Section, b: Section, max_ratio: float) -> bool:
    ratio = a.distance_m / max(b.distance_m, 1.0)
    return 1.0 / max_ratio <= ratio <= max_ratio


def deduplicate_sections(
    sections: Sequence[Section],
    scales: Sequence[ScalePreset],
    *,
    point_ratio: float,
    matcher: Optional[PortionMatcher] = None,
) -> List[Section]:
    """Drop sections that another, larger-scale section already describes.

    A section is a duplicate of a kept one when its box lies inside the kept
    box (grown by the kept scale's tolerance) and at least ``point_ratio`` of
    its points lie within that tolerance of the kept polyline. With a
    ``matcher``, activities of the dropped section that the kept one lacks
    are added to it.
    """

    rank = {preset.name: idx for idx, preset in enumerate(scales)}
    tolerance = {preset.name: preset.tolerance_m for preset in scales}
    ordered = sorted(
        sections,
        key=lambda s: (
            -rank.get(s.scale, -1),
            -s.visit_count,
            -s.distance_m,
            s.id,
        ),
    )
    kept: List[Section] = []
    for candidate in ordered:
        duplicate_of = next(
            (
                other
                for other in kept
                if other.sport_type == candidate.sport_type
                and _is_contained(candidate, other, tolerance.get(other.scale, 0.0), point_ratio)
            ),
            None,
        )
        if duplicate_of is not None:
            added = absorb_contributors(
                duplicate_of, candidate, matcher, tolerance.get(duplicate_of.scale, 0.0)
            )
            _LOG.debug(
                "Dropping section %s (%s) as duplicate of %s (%s), %d activities moved",
                candidate.id,
                candidate.scale,
                duplicate_of.id,
                duplicate_of.scale,
                added,
            )
            continue
        kept.append(candidate)
    return kept


def _is_contained(
    inner: Section, outer: Section, tolerance_m: float, point_ratio: float
) -> bool:
    if not outer.bounds.expanded(tolerance_m).contains(inner.bounds):
        return False
    return containment(inner.polyline, outer.polyline, tolerance_m) >= point_ratio


def dense_spans(
    density: np.ndarray,
    polyline: Sequence[LatLon],
    *,
    density_ratio: float = SECTION_SPLIT_DENSITY_RATIO,
    min_length_m: float = SECTION_SPLIT_MIN_LENGTH_M,
    min_points: int = SECTION_SPLIT_MIN_POINTS,
) -> List[Tuple[int, int]]:
    """Inclusive index ranges carrying far more traffic than the section ends.

    The baseline is the mean density over the first and last tenth of the
    polyline. Once a sliding window reaches ``density_ratio`` times the
    baseline, the span is the run of points at 1.5 times the baseline or more
    that starts inside that window.
    """

    count = int(density.size)
    if count < min_points * 2:
        return []
    edge = max(count // 10, 3)
    baseline = (float(np.mean(density[:edge])) + float(np.mean(density[-edge:]))) / 2.0
    if baseline < 1.0:
        return []
    dense = density >= baseline * 1.5
    window = max(count // 5, min_points)
    half = window // 2
    spans: List[Tuple[int, int]] = []
    idx = window
    while idx < count - window:
        level = float(np.sum(density[idx - half : idx + half])) / window
        if level >= density_ratio * baseline:
            lo = hi = idx - half + int(np.argmax(dense[idx - half : idx + half]))
            while lo > 0 and dense[lo - 1]:
                lo -= 1
            while hi < count - 1 and dense[hi + 1]:
                hi += 1
            if hi - lo >= min_points and track_length_m(polyline[lo : hi + 1]) >= min_length_m:
                spans.append((lo, hi))
                idx = hi + window
                continue
        idx += 1
    return spans


def split_high_variance_sections(
    sections: Sequence[Section],
    matcher: PortionMatcher,
    scales: Sequence[ScalePreset],
    *,
    min_activities: int,
    density_ratio: float = SECTION_SPLIT_DENSITY_RATIO,
    min_length_m: float = SECTION_SPLIT_MIN_LENGTH_M,
    min_points: int = SECTION_SPLIT_MIN_POINTS,
) -> List[Section]:
    """Add a section for every busy sub-stretch; the parents stay."""

    tolerance = {preset.name: preset.tolerance_m for preset in scales}
    result: List[Section] = []
    for section in sections:
        tol = tolerance.get(section.scale, 0.0)
        spans = dense_spans(
            matcher.density(section, tol),
            section.polyline,
            density_ratio=density_ratio,
            min_length_m=min_length_m,
            min_points=min_points,
        )
        for lo, hi in spans:
            part = section.polyline[lo : hi + 1]
            split = derive_section(
                section,
                part,
                matcher.portions(part, section.activity_ids, tol),
                tol,
                min_activities=min_activities,
            )
            if split is None or split.id == section.id:
                continue
            _LOG.info(
                "Split busy stretch %d..%d of section %s into %s (%d activities)",
                lo,
                hi,
                section.id,
                split.id,
                len(split.activity_ids),
            )
            result.append(split)
        result.append(section)
    return result


def assign_auto_names(sections: Sequence[Section]) -> None:
    """Number sections per sport, busiest first: ``"Ride section 1"`` etc."""

    per_sport: Dict[str, List[Section]] = {}
    for section in sections:
        per_sport.setdefault(section.sport_type, []).append(section)
    for sport, items in per_sport.items():
        items.sort(key=lambda s: (-s.visit_count, -s.distance_m, s.id))
        for number, section in enumerate(items, start=1):
            section.auto_name = f"{sport} section {number}"
            if section.name is None:
                section.name = section.auto_name


def resolve_id_collisions(sections: Sequence[Section]) -> None:
    seen: Dict[str, int] = {}
    for section in sorted(sections, key=lambda s: (-s.visit_count, s.id)):
        count = seen.get(section.id, 0)
        seen[section.id] = count + 1
        if count:
            section.id = f"{section.id}-{count + 1}"


def apply_names(sections: Sequence[Section], names: Mapping[str, str]) -> None:
    for section in sections:
        if section.id in names:
            section.name = names[section.id]


def sort_sections(sections: Sequence[Section]) -> List[Section]:
    return sorted(
        sections,
        key=lambda s: (s.sport_type, -s.visit_count, -s.distance_m, id_sort_key(s.id)),
    )
