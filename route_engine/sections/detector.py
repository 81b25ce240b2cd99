"""Multiscale detection of frequently travelled sections.

The detector runs in fixed phases (see :data:`PHASES`).  Progress and
cancellation go through a :class:`ProgressReporter`; cancellation is only
honoured when a new phase starts, never mid-phase.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import shapely
from cachetools import LRUCache
from pyproj import Transformer

from ..config import (
    SECTION_CLUSTER_OVERLAP_RATIO,
    SECTION_DEDUP_POINT_RATIO,
    SECTION_MAX_GAP_POINTS,
    SECTION_MEDOID_MAX_PAIRWISE,
    SECTION_MIN_ACTIVITIES,
    SECTION_RESAMPLE_INTERVAL_M,
    SECTION_SCALES,
    ScalePreset,
)
from ..errors import DetectionError
from ..geometry.codec import array_to_points
from ..geometry.preprocessing import (
    PreparedTrack,
    local_transformer,
    prepare_track,
    project_points,
    track_length_m,
    transformer_for_epsg,
    utm_epsg_for,
)
from ..geometry.similarity import select_medoid
from ..geometry.traversal import lateral_match, progress_direction, shared_runs
from ..models import (
    DIRECTION_REVERSE,
    DIRECTION_SAME,
    ActivityRecord,
    Bounds,
    Section,
    SectionPortion,
    id_sort_key,
)
from ..spatial import build_tree
from ..storage import TrackStore
from .clustering import ClusterCandidate, PairOverlap, cluster_overlaps
from .postprocess import (
    PortionMatcher,
    apply_names,
    assign_auto_names,
    deduplicate_sections,
    merge_nearby_sections,
    resolve_id_collisions,
    section_confidence,
    sort_sections,
    split_folding_sections,
    split_high_variance_sections,
    stable_section_id,
)

PHASE_IDLE = "idle"
PHASE_LOADING = "loading"
PHASE_BUILDING_RTREES = "building_rtrees"
PHASE_FINDING_OVERLAPS = "finding_overlaps"
PHASE_CLUSTERING = "clustering"
PHASE_BUILDING_SECTIONS = "building_sections"
PHASE_POSTPROCESSING = "postprocessing"
PHASE_COMPLETE = "complete"
PHASE_CANCELLED = "cancelled"
PHASE_ERROR = "error"

PHASES = (
    PHASE_LOADING,
    PHASE_BUILDING_RTREES,
    PHASE_FINDING_OVERLAPS,
    PHASE_CLUSTERING,
    PHASE_BUILDING_SECTIONS,
    PHASE_POSTPROCESSING,
    PHASE_COMPLETE,
)
TERMINAL_PHASES = frozenset({PHASE_COMPLETE, PHASE_CANCELLED, PHASE_ERROR})


class DetectionCancelled(Exception):
    """Raised at a phase boundary once cancellation was requested."""


class ProgressReporter:
    """No-op progress sink; the background job overrides these hooks."""

    def enter_phase(self, phase: str, total: int = 0) -> None:
        """Called at every phase boundary; may raise :class:`DetectionCancelled`."""

    def advance(self, count: int = 1) -> None:
        """Called as work inside the current phase completes."""


@dataclass(slots=True)
class _SportCorpus:
    sport_type: str
    records: List[ActivityRecord]
    tracks: Dict[str, np.ndarray]
    pairs: List[Tuple[str, str]]


class SectionDetector:
    """Find stretches shared by several activities at several scales."""

    def __init__(
        self,
        store: TrackStore,
        *,
        scales: Sequence[ScalePreset] = SECTION_SCALES,
        min_activities: int = SECTION_MIN_ACTIVITIES,
        max_gap: int = SECTION_MAX_GAP_POINTS,
        cluster_overlap_ratio: float = SECTION_CLUSTER_OVERLAP_RATIO,
        dedup_point_ratio: float = SECTION_DEDUP_POINT_RATIO,
        medoid_max_pairwise: int = SECTION_MEDOID_MAX_PAIRWISE,
        resample_interval_m: float = SECTION_RESAMPLE_INTERVAL_M,
    ) -> None:
        if not scales:
            raise ValueError("At least one scale preset is required")
        self.store = store
        self.scales = tuple(sorted(scales, key=lambda s: s.window_m))
        self.min_activities = max(2, min_activities)
        self.max_gap = max(0, max_gap)
        self.cluster_overlap_ratio = cluster_overlap_ratio
        self.dedup_point_ratio = dedup_point_ratio
        self.medoid_max_pairwise = max(2, medoid_max_pairwise)
        self.resample_interval_m = resample_interval_m
        self._log = logging.getLogger(self.__class__.__name__)
        self._prepared: LRUCache = LRUCache(maxsize=512)

    # ------------------------------------------------------------------
    def detect(
        self,
        sport_filter: Optional[str] = None,
        *,
        pinned: Optional[Mapping[str, str]] = None,
        names: Optional[Mapping[str, str]] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> List[Section]:
        """Run every phase and return the sections (nothing is persisted).

        Raises:
            DetectionCancelled: When ``reporter`` signals cancellation at a
                phase boundary.
            DetectionError: When a stored track is unusable.
        """

        reporter = reporter or ProgressReporter()
        pinned = dict(pinned or {})
        self._prepared.clear()

        reporter.enter_phase(PHASE_LOADING)
        corpora = self._load(sport_filter)

        total_tracks = sum(len(c.records) for c in corpora)
        reporter.enter_phase(PHASE_BUILDING_RTREES, total_tracks)
        for corpus in corpora:
            corpus.pairs = self._candidate_pairs(corpus.records)
            reporter.advance(len(corpus.records))

        total_pairs = sum(len(c.pairs) for c in corpora)
        reporter.enter_phase(PHASE_FINDING_OVERLAPS, total_pairs)
        overlaps: Dict[Tuple[str, str], List[PairOverlap]] = {}
        for corpus in corpora:
            lengths = {r.id: r.distance_m for r in corpus.records}
            for a_id, b_id in corpus.pairs:
                for scale, found in self._pair_overlaps(corpus, lengths, a_id, b_id):
                    overlaps.setdefault((corpus.sport_type, scale.name), []).extend(found)
                reporter.advance()

        reporter.enter_phase(PHASE_CLUSTERING, len(overlaps))
        clusters: List[Tuple[str, ScalePreset, ClusterCandidate]] = []
        scale_by_name = {s.name: s for s in self.scales}
        for (sport, scale_name), found in sorted(overlaps.items()):
            for candidate in cluster_overlaps(
                found, min_overlap_ratio=self.cluster_overlap_ratio
            ):
                if len(candidate.portions) >= self.min_activities:
                    clusters.append((sport, scale_by_name[scale_name], candidate))
            reporter.advance()

        reporter.enter_phase(PHASE_BUILDING_SECTIONS, len(clusters))
        tracks = {aid: arr for c in corpora for aid, arr in c.tracks.items()}
        sections: List[Section] = []
        for sport, scale, candidate in clusters:
            section = self.build_section(sport, scale, candidate, tracks)
            if section is not None:
                sections.append(section)
            reporter.advance()

        reporter.enter_phase(PHASE_POSTPROCESSING, len(sections))
        matcher = PortionMatcher(tracks, max_gap=self.max_gap)
        sections = split_folding_sections(
            sections, matcher, self.scales, min_activities=self.min_activities
        )
        sections = merge_nearby_sections(sections, matcher, self.scales)
        sections = deduplicate_sections(
            sections, self.scales, point_ratio=self.dedup_point_ratio, matcher=matcher
        )
        sections = split_high_variance_sections(
            sections, matcher, self.scales, min_activities=self.min_activities
        )
        resolve_id_collisions(sections)
        for section in sections:
            pin = pinned.get(section.id)
            if pin is not None and pin in section.activity_ids:
                reanchor_section(section, pin, tracks[pin], user_defined=True)
        assign_auto_names(sections)
        if names:
            apply_names(sections, names)
        reporter.advance(len(sections))
        self._prepared.clear()
        self._log.info(
            "Detected %d sections from %d tracks (%d candidate pairs)",
            len(sections),
            total_tracks,
            total_pairs,
        )
        return sort_sections(sections)

    # ------------------------------------------------------------------
    def _load(self, sport_filter: Optional[str]) -> List[_SportCorpus]:
        records = self.store.list_activities(sport_type=sport_filter)
        smallest = self.scales[0].window_m
        usable = [r for r in records if r.point_count >= 2 and r.distance_m >= smallest]
        skipped = len(records) - len(usable)
        if skipped:
            self._log.debug("Skipping %d tracks shorter than %.0f m", skipped, smallest)
        tracks = self.store.load_tracks(r.id for r in usable)
        by_sport: Dict[str, List[ActivityRecord]] = {}
        for record in usable:
            track = tracks.get(record.id)
            if track is None:
                raise DetectionError(f"Track for activity {record.id} is missing")
            if not np.all(np.isfinite(track)):
                raise DetectionError(f"Track for activity {record.id} has invalid coordinates")
            by_sport.setdefault(record.sport_type, []).append(record)
        return [
            _SportCorpus(
                sport_type=sport,
                records=items,
                tracks={r.id: tracks[r.id] for r in items},
                pairs=[],
            )
            for sport, items in sorted(by_sport.items())
        ]

    def _candidate_pairs(self, records: Sequence[ActivityRecord]) -> List[Tuple[str, str]]:
        """Pairs of activities whose (tolerance-grown) boxes intersect."""

        if len(records) < 2:
            return []
        margin = max(s.tolerance_m for s in self.scales)
        ordered = sorted(records, key=lambda r: id_sort_key(r.id))
        grown = [r.bounds.expanded(margin) for r in ordered]
        tree = build_tree(grown)
        if tree is None:
            return []
        arr = np.asarray([b.as_tuple() for b in grown], dtype=float)
        boxes = shapely.box(arr[:, 2], arr[:, 0], arr[:, 3], arr[:, 1])
        hits = tree.query(boxes)
        pairs = {
            (int(i), int(j)) for i, j in zip(hits[0], hits[1]) if int(i) < int(j)
        }
        return [(ordered[i].id, ordered[j].id) for i, j in sorted(pairs)]

    def _prepared_track(self, activity_id: str, points: np.ndarray, epsg: int) -> PreparedTrack:
        key = (activity_id, epsg)
        prepared = self._prepared.get(key)
        if prepared is None:
            prepared = prepare_track(points, transformer_for_epsg(epsg))
            self._prepared[key] = prepared
        return prepared

    def _pair_overlaps(
        self,
        corpus: _SportCorpus,
        lengths: Mapping[str, float],
        a_id: str,
        b_id: str,
    ) -> Iterable[Tuple[ScalePreset, List[PairOverlap]]]:
        a_points = corpus.tracks[a_id]
        b_points = corpus.tracks[b_id]
        centre = a_points.mean(axis=0)
        epsg = utm_epsg_for(float(centre[0]), float(centre[1]))
        a = self._prepared_track(a_id, a_points, epsg)
        b = self._prepared_track(b_id, b_points, epsg)
        for scale in self.scales:
            if lengths[a_id] < scale.window_m or lengths[b_id] < scale.window_m:
                continue
            runs = shared_runs(
                a,
                b,
                tolerance_m=scale.tolerance_m,
                min_length_m=scale.window_m,
                max_length_m=scale.max_length_m,
                max_gap=self.max_gap,
            )
            if runs:
                self._log.debug(
                    "%s ~ %s: %d shared runs at %s scale", a_id, b_id, len(runs), scale.name
                )
                yield scale, [PairOverlap(a_id, b_id, run) for run in runs]

    # ------------------------------------------------------------------
    def build_section(
        self,
        sport_type: str,
        scale: ScalePreset,
        candidate: ClusterCandidate,
        tracks: Mapping[str, np.ndarray],
    ) -> Optional[Section]:
        """Turn one cluster into a section anchored on its medoid traversal."""

        longest: Dict[str, Tuple[int, int]] = {}
        for activity_id, ranges in candidate.portions.items():
            longest[activity_id] = max(ranges, key=lambda r: (r[1] - r[0], -r[0]))
        all_points = np.vstack(
            [tracks[aid][s : e + 1] for aid, (s, e) in longest.items()]
        )
        transformer = local_transformer(all_points)
        metric = {
            aid: project_points(tracks[aid][s : e + 1], transformer)
            for aid, (s, e) in longest.items()
        }
        choice = select_medoid(
            metric,
            max_pairwise=self.medoid_max_pairwise,
            resample_interval_m=self.resample_interval_m,
        )
        start, end = longest[choice.member_id]
        polyline = tracks[choice.member_id][start : end + 1]
        if polyline.shape[0] < 2:
            return None
        reference = prepare_track(polyline, transformer)
        portions = _portions_for(candidate, tracks, reference, transformer)
        spread = (
            float(np.mean(list(choice.deviations.values())))
            if choice.deviations
            else 0.0
        )
        activity_ids = candidate.activity_ids
        points = array_to_points(polyline)
        return Section(
            id=stable_section_id(sport_type, scale.name, points),
            sport_type=sport_type,
            scale=scale.name,
            polyline=points,
            representative_activity_id=choice.member_id,
            activity_ids=activity_ids,
            portions=portions,
            visit_count=candidate.visit_count,
            distance_m=track_length_m(polyline),
            confidence=section_confidence(len(activity_ids), spread, scale.tolerance_m),
            average_spread=spread,
            bounds=Bounds.from_points(points),
        )


def _portions_for(
    candidate: ClusterCandidate,
    tracks: Mapping[str, np.ndarray],
    reference: PreparedTrack,
    transformer: Transformer,
) -> List[SectionPortion]:
    portions: List[SectionPortion] = []
    for activity_id in candidate.activity_ids:
        for start, end in candidate.portions[activity_id]:
            points = tracks[activity_id][start : end + 1]
            direction = progress_direction(
                lateral_match(project_points(points, transformer), reference).projections
            )
            portions.append(
                SectionPortion(
                    activity_id=activity_id,
                    start_index=int(start),
                    end_index=int(end),
                    distance_m=track_length_m(points),
                    direction=direction,
                )
            )
    return portions


def reanchor_section(
    section: Section,
    activity_id: str,
    track: np.ndarray,
    *,
    user_defined: bool,
) -> bool:
    """Use ``activity_id``'s longest portion as the section polyline.

    Portion directions are re-expressed relative to the new polyline.  Returns
    False when the activity has no usable portion in the section.
    """

    own = [p for p in section.portions if p.activity_id == activity_id]
    if not own:
        return False
    best = max(own, key=lambda p: (p.end_index - p.start_index, -p.start_index))
    polyline = track[best.start_index : best.end_index + 1]
    if polyline.shape[0] < 2:
        return False
    flipped = best.direction != DIRECTION_SAME
    section.polyline = array_to_points(polyline)
    section.representative_activity_id = activity_id
    section.distance_m = track_length_m(polyline)
    section.bounds = Bounds.from_points(section.polyline)
    section.reference_user_defined = user_defined
    if flipped:
        for portion in section.portions:
            portion.direction = (
                DIRECTION_REVERSE if portion.direction == DIRECTION_SAME else DIRECTION_SAME
            )
    return True


def reselect_representative(
    section: Section,
    tracks: Mapping[str, np.ndarray],
    *,
    max_pairwise: int = SECTION_MEDOID_MAX_PAIRWISE,
    resample_interval_m: float = SECTION_RESAMPLE_INTERVAL_M,
) -> bool:
    """Re-run medoid selection over the section's current portions.

    Used when the representative activity is removed or a pinned reference
    is reset. Returns False when no contributor track is available.
    """

    longest: Dict[str, Tuple[int, int]] = {}
    for portion in section.portions:
        if portion.activity_id not in tracks:
            continue
        span = (portion.start_index, portion.end_index)
        current = longest.get(portion.activity_id)
        if current is None or (span[1] - span[0], -span[0]) > (current[1] - current[0], -current[0]):
            longest[portion.activity_id] = span
    if not longest:
        return False
    transformer = local_transformer(
        np.vstack([tracks[aid][s : e + 1] for aid, (s, e) in longest.items()])
    )
    metric = {
        aid: project_points(tracks[aid][s : e + 1], transformer)
        for aid, (s, e) in longest.items()
    }
    choice = select_medoid(
        metric, max_pairwise=max_pairwise, resample_interval_m=resample_interval_m
    )
    if choice.deviations:
        section.average_spread = float(np.mean(list(choice.deviations.values())))
    return reanchor_section(
        section, choice.member_id, tracks[choice.member_id], user_defined=False
    )
