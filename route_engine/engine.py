"""Engine facade: the single stateful entry point over one track store.

Mutations are serialised by a re-entrant write lock and complete before the
call returns. Section detection is the one asynchronous flow; it runs as a
background job that is started, polled and optionally cancelled. Route
groups are recomputed lazily on the first read after they were marked dirty.
"""

from __future__ import annotations

import logging
import math
import time
from threading import RLock
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from .config import (
    MATCH_TOLERANCE_M,
    SECTION_MIN_ACTIVITIES,
    SECTION_SCALES,
    TRACK_CACHE_SIZE,
)
from .errors import (
    EngineAlreadyInitializedError,
    EngineNotInitializedError,
    ValidationError,
)
from .geometry.codec import (
    as_point_array,
    encode_polyline,
    flat_to_points,
    is_valid_coordinate,
    points_to_flat,
)
from .geometry.preprocessing import simplify_latlon, track_length_m
from .grouping import RouteGrouper, best_times
from .jobs import DetectionJob, DetectionProgress, DetectionRunner
from .models import (
    ActivityMetrics,
    Bounds,
    CustomSection,
    CustomSectionMatch,
    EngineStats,
    LatLon,
    RouteGroup,
    RouteGroupSummary,
    Section,
    SectionPortion,
    SectionSummary,
    id_sort_key,
)
from .performance import (
    PerformanceExtractor,
    RoutePerformanceResult,
    SectionPerformanceResult,
)
from .sections.custom import (
    CustomSectionMatcher,
    parse_custom_section,
    validate_identifier,
    validate_name,
)
from .sections.detector import (
    PHASE_IDLE,
    SectionDetector,
    reanchor_section,
    reselect_representative,
)
from .sections.postprocess import section_confidence
from .spatial import ReverseIndex, SpatialIndex
from .storage import CustomMatchUpdate, TrackInput, TrackStore
from .utils import wire_dumps

_SCALE_TOLERANCE = {scale.name: scale.tolerance_m for scale in SECTION_SCALES}

FlatCoords = Sequence[float]


def split_offsets(
    offsets: Sequence[int], count: int, total: int, label: str = "offsets"
) -> List[Tuple[int, int]]:
    """Turn start offsets into ``(start, end)`` slices of a flat buffer.

    ``offsets`` holds one start per entry, optionally followed by the end of
    the last entry. Offsets count items (points or samples), not floats.
    """

    if len(offsets) not in (count, count + 1):
        raise ValidationError(f"{label} must have {count} or {count + 1} entries")
    bounds_list = [int(o) for o in offsets]
    if len(bounds_list) == count:
        bounds_list.append(total)
    if bounds_list and (bounds_list[0] < 0 or bounds_list[-1] > total):
        raise ValidationError(f"{label} reach outside the buffer")
    spans: List[Tuple[int, int]] = []
    for start, end in zip(bounds_list, bounds_list[1:]):
        if end < start:
            raise ValidationError(f"{label} must be non-decreasing")
        spans.append((start, end))
    return spans


class RouteEngine:
    """Coordinates the store, spatial indexes, detection, grouping and matching."""

    def __init__(self, *, track_cache_size: int = TRACK_CACHE_SIZE) -> None:
        self._store: Optional[TrackStore] = None
        self._track_cache_size = track_cache_size
        self._write_lock = RLock()
        self._runner = DetectionRunner()
        self._activity_index: Optional[SpatialIndex] = None
        self._section_index: Optional[SpatialIndex] = None
        self._group_members = ReverseIndex()
        self._group_members_dirty = True
        self._log = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self, path: str) -> bool:
        """Bind to the store at ``path``.

        Returns False when already bound to the same path (no-op).

        Raises:
            EngineAlreadyInitializedError: When bound to a different path.
        """

        with self._write_lock:
            if self._store is not None:
                if self._store.path == path:
                    return False
                raise EngineAlreadyInitializedError(
                    f"Engine is bound to {self._store.path}; close it before opening {path}"
                )
            store = TrackStore(path, track_cache_size=self._track_cache_size)
            self._store = store
            self._activity_index = SpatialIndex(store.activity_bounds, "activities")
            self._section_index = SpatialIndex(store.section_bounds, "sections")
            self._group_members_dirty = True
            self._log.info("Route engine bound to %s", path)
            return True

    def is_initialized(self) -> bool:
        return self._store is not None

    def close(self) -> None:
        self._runner.shutdown()
        with self._write_lock:
            if self._store is not None:
                self._store.close()
            self._store = None
            self._activity_index = None
            self._section_index = None
            self._group_members = ReverseIndex()
            self._group_members_dirty = True

    def clear(self) -> None:
        """Drop every stored row; the engine stays bound."""

        store = self._require_store()
        with self._write_lock:
            self._runner.cancel()
            store.clear()
            self._mark_dirty(activities=True, sections=True)

    @property
    def store(self) -> TrackStore:
        return self._require_store()

    def _require_store(self) -> TrackStore:
        store = self._store
        if store is None:
            raise EngineNotInitializedError("Route engine is not initialized")
        return store

    def _mark_dirty(self, *, activities: bool = False, sections: bool = False) -> None:
        if activities and self._activity_index is not None:
            self._activity_index.mark_dirty()
            self._group_members_dirty = True
        if sections and self._section_index is not None:
            self._section_index.mark_dirty()

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def add_activities(
        self,
        ids: Sequence[str],
        flat_coords: FlatCoords,
        offsets: Sequence[int],
        sport_types: Sequence[str],
    ) -> int:
        """Ingest activities from one flat ``[lat, lng, ...]`` buffer.

        Re-adding an id replaces it. The whole batch is validated before the
        store is touched; returns the number of activities written.
        """

        store = self._require_store()
        if len(flat_coords) % 2:
            raise ValidationError("Coordinate buffer must have an even length")
        if len(sport_types) != len(ids):
            raise ValidationError("ids and sport_types must have the same length")
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate activity id in batch")
        coords = np.asarray(flat_coords, dtype=float).reshape(-1, 2)
        spans = split_offsets(offsets, len(ids), coords.shape[0])
        batch: List[TrackInput] = []
        for activity_id, sport, (start, end) in zip(ids, sport_types, spans):
            validate_identifier(activity_id, "activity id")
            validate_identifier(sport, "sport type")
            points = coords[start:end]
            if points.shape[0] < 2:
                raise ValidationError(f"Activity {activity_id} needs at least two points")
            if not _valid_points(points):
                raise ValidationError(f"Activity {activity_id} has invalid coordinates")
            batch.append(
                TrackInput(
                    id=activity_id,
                    sport_type=sport,
                    points=points.copy(),
                    distance_m=track_length_m(points),
                )
            )
        if not batch:
            return 0

        with self._write_lock:
            previously = store.existing_ids(ids)
            pending = set(store.changed_ids(batch))
            replaced = [item.id for item in batch if item.id in pending and item.id in previously]
            updated, deleted = self._section_patches(set(replaced)) if replaced else ([], [])
            fresh = [item for item in batch if item.id in pending]
            matches = self._custom_match_updates(
                {item.id: item.points for item in fresh},
                {item.id: item.sport_type for item in fresh},
            )
            changed = store.upsert_activities(
                batch,
                updated_sections=updated,
                deleted_section_ids=deleted,
                custom_matches=matches,
            )
            self._mark_dirty(activities=True, sections=bool(replaced))
        self._log.info(
            "Stored %d activities (%d new or changed, %d replaced)",
            len(batch),
            len(changed),
            len(replaced),
        )
        return len(batch)

    def remove_activities(self, ids: Iterable[str]) -> int:
        """Delete activities and patch every section that depended on them."""

        store = self._require_store()
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return 0
        with self._write_lock:
            existing = store.existing_ids(wanted)
            if not existing:
                return 0
            updated, deleted = self._section_patches(existing)
            removed = store.remove_activities(
                sorted(existing, key=id_sort_key),
                updated_sections=updated,
                deleted_section_ids=deleted,
            )
            self._mark_dirty(activities=True, sections=True)
        self._log.info(
            "Removed %d activities; %d sections updated, %d deleted",
            len(removed),
            len(updated),
            len(deleted),
        )
        return len(removed)

    def cleanup_old_activities(self, retention_days: int) -> int:
        """Remove activities older than ``retention_days``; ``<= 0`` keeps all."""

        store = self._require_store()
        if retention_days <= 0:
            return 0
        cutoff = time.time() - retention_days * 86_400
        stale = store.activities_older_than(cutoff)
        if not stale:
            return 0
        return self.remove_activities(stale)

    def _section_patches(self, removed: Set[str]) -> Tuple[List[Section], List[str]]:
        """Sections rewritten or dropped once ``removed`` stop contributing."""

        store = self._require_store()
        affected: Set[str] = set()
        for activity_id in removed:
            affected.update(store.sections_for_activity(activity_id))
        updated: List[Section] = []
        deleted: List[str] = []
        for section_id in sorted(affected):
            section = store.get_section(section_id)
            if section is None:
                continue
            remaining = [a for a in section.activity_ids if a not in removed]
            if len(remaining) < SECTION_MIN_ACTIVITIES:
                deleted.append(section_id)
                continue
            section.activity_ids = remaining
            section.portions = [p for p in section.portions if p.activity_id not in removed]
            section.visit_count = len(section.portions)
            if section.representative_activity_id in removed:
                tracks = store.load_tracks(remaining)
                if not reselect_representative(section, tracks):
                    deleted.append(section_id)
                    continue
            section.confidence = section_confidence(
                len(remaining),
                section.average_spread,
                _SCALE_TOLERANCE.get(section.scale, MATCH_TOLERANCE_M),
            )
            updated.append(section)
        return updated, deleted

    def set_activity_metrics(self, metrics: Sequence[ActivityMetrics]) -> int:
        """Store caller-supplied metrics; unknown activity ids are rejected."""

        store = self._require_store()
        items = list(metrics)
        for item in items:
            validate_identifier(item.activity_id, "activity id")
            if item.name is not None:
                validate_name(item.name)
        unknown = {m.activity_id for m in items} - store.existing_ids(m.activity_id for m in items)
        if unknown:
            raise ValidationError(f"Unknown activity ids: {sorted(unknown, key=id_sort_key)}")
        with self._write_lock:
            count = store.set_metrics(items)
            store.mark_groups_dirty()
        return count

    def set_time_streams_flat(
        self, ids: Sequence[str], flat_times: Sequence[float], offsets: Sequence[int]
    ) -> int:
        """Attach cumulative-seconds streams, one sample per GPS point."""

        store = self._require_store()
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate activity id in batch")
        times = np.asarray(flat_times, dtype=float)
        spans = split_offsets(offsets, len(ids), times.shape[0])
        records = {r.id: r for r in store.list_activities(ids=ids)}
        streams: Dict[str, np.ndarray] = {}
        for activity_id, (start, end) in zip(ids, spans):
            record = records.get(activity_id)
            if record is None:
                raise ValidationError(f"Unknown activity id: {activity_id}")
            stream = times[start:end]
            if stream.shape[0] != record.point_count:
                raise ValidationError(
                    f"Time stream for {activity_id} has {stream.shape[0]} samples "
                    f"for {record.point_count} points"
                )
            if not np.all(np.isfinite(stream)) or np.any(np.diff(stream) < 0):
                raise ValidationError(f"Time stream for {activity_id} must be finite and non-decreasing")
            streams[activity_id] = stream.copy()
        with self._write_lock:
            return store.set_time_streams(streams)

    def get_activities_missing_time_streams(self, ids: Iterable[str]) -> List[str]:
        wanted = list(dict.fromkeys(ids))
        present = self._require_store().time_stream_ids(wanted)
        return [aid for aid in wanted if aid not in present]

    def get_activity_ids(self, sport_type: Optional[str] = None) -> List[str]:
        return sorted(self._require_store().activity_ids(sport_type), key=id_sort_key)

    def get_activity_count(self) -> int:
        return self._require_store().activity_count()

    def get_gps_track(self, activity_id: str) -> List[float]:
        track = self._require_store().load_track(activity_id)
        return points_to_flat(track) if track is not None else []

    def get_gps_track_encoded(self, activity_id: str) -> str:
        track = self._require_store().load_track(activity_id)
        return encode_polyline(track) if track is not None else ""

    def get_simplified_gps_track(self, activity_id: str, tolerance_m: float) -> List[float]:
        track = self._require_store().load_track(activity_id)
        if track is None:
            return []
        return points_to_flat(simplify_latlon(track, tolerance_m))

    def get_all_activity_bounds(self) -> Dict[str, Bounds]:
        self._require_store()
        return self._activity_index.bounds()

    def query_viewport(
        self, min_lat: float, max_lat: float, min_lng: float, max_lng: float
    ) -> List[str]:
        """Activity ids whose bounding box intersects the viewport."""

        self._require_store()
        return self._activity_index.query(_viewport(min_lat, max_lat, min_lng, max_lng))

    def query_sections_viewport(
        self, min_lat: float, max_lat: float, min_lng: float, max_lng: float
    ) -> List[str]:
        self._require_store()
        return self._section_index.query(_viewport(min_lat, max_lat, min_lng, max_lng))

    # ------------------------------------------------------------------
    # Section detection
    # ------------------------------------------------------------------
    def _detector(self) -> SectionDetector:
        return SectionDetector(self._require_store())

    def start_section_detection(self, sport_filter: Optional[str] = None) -> bool:
        """Start a background detection run; False when one is already running."""

        store = self._require_store()
        if sport_filter is not None:
            validate_identifier(sport_filter, "sport filter")
        job = DetectionJob(
            self._detector(),
            lambda sections: self._commit_sections(sections, sport_filter),
            sport_filter=sport_filter,
            pinned=store.all_section_references(),
            names=store.all_section_names(),
        )
        return self._runner.start(job)

    def poll_section_detection(self) -> str:
        job = self._runner.job
        return job.phase if job is not None else PHASE_IDLE

    def get_section_detection_progress(self) -> DetectionProgress:
        job = self._runner.job
        if job is None:
            return DetectionProgress(PHASE_IDLE, 0, 0)
        return job.progress()

    def cancel_section_detection(self) -> bool:
        return self._runner.cancel()

    def wait_for_section_detection(self, timeout: Optional[float] = None) -> str:
        """Block until the current run ends and return its terminal phase."""

        phase = self._runner.wait(timeout)
        return phase if phase is not None else PHASE_IDLE

    def detect_potentials(self, sport_filter: Optional[str] = None) -> List[Section]:
        """Run detection synchronously without persisting anything."""

        store = self._require_store()
        return self._detector().detect(
            sport_filter,
            pinned=store.all_section_references(),
            names=store.all_section_names(),
        )

    def _commit_sections(self, sections: List[Section], sport_filter: Optional[str]) -> None:
        store = self._require_store()
        with self._write_lock:
            referenced = {aid for s in sections for aid in s.activity_ids}
            live = store.existing_ids(referenced)
            kept: List[Section] = []
            for section in sections:
                if set(section.activity_ids) <= live:
                    kept.append(section)
                    continue
                gone = set(section.activity_ids) - live
                section.activity_ids = [a for a in section.activity_ids if a in live]
                section.portions = [p for p in section.portions if p.activity_id in live]
                section.visit_count = len(section.portions)
                if len(section.activity_ids) < SECTION_MIN_ACTIVITIES:
                    continue
                if section.representative_activity_id in gone and not reselect_representative(
                    section, store.load_tracks(section.activity_ids)
                ):
                    continue
                kept.append(section)
            matches: List[CustomMatchUpdate] = []
            if store.custom_section_count():
                records = store.list_activities(sport_type=sport_filter)
                matches = self._custom_match_updates(
                    store.load_tracks(r.id for r in records),
                    {r.id: r.sport_type for r in records},
                    sport_filter=sport_filter,
                )
            store.replace_sections(
                kept,
                sport_types=[sport_filter] if sport_filter is not None else None,
                custom_matches=matches,
            )
            self._mark_dirty(sections=True)
        self._log.info("Committed %d detected sections", len(kept))

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------
    def get_sections(self, sport_type: Optional[str] = None) -> List[Section]:
        return self._require_store().list_sections(sport_type)

    def get_section_count(self) -> int:
        return self._require_store().section_count()

    def get_section_summaries(self, sport_type: Optional[str] = None) -> List[SectionSummary]:
        return self._require_store().section_summaries(sport_type)

    def get_section_by_id(self, section_id: str) -> Optional[Section]:
        return self._require_store().get_section(section_id)

    def get_section_polyline(self, section_id: str) -> List[float]:
        section = self.get_section_by_id(section_id)
        return points_to_flat(section.polyline) if section is not None else []

    def get_section_polyline_encoded(self, section_id: str) -> str:
        section = self.get_section_by_id(section_id)
        return encode_polyline(section.polyline) if section is not None else ""

    def get_sections_for_activity(self, activity_id: str) -> List[Section]:
        store = self._require_store()
        found = []
        for section_id in store.sections_for_activity(activity_id):
            section = store.get_section(section_id)
            if section is not None:
                found.append(section)
        return found

    def set_section_name(self, section_id: str, name: Optional[str]) -> bool:
        """Set (or clear with ``None``/empty) the user name of a section."""

        validate_identifier(section_id, "section id")
        if name is not None:
            validate_name(name)
        with self._write_lock:
            self._require_store().set_section_name(section_id, name or None)
        return True

    def get_section_name(self, section_id: str) -> Optional[str]:
        store = self._require_store()
        name = store.get_section_name(section_id)
        if name is not None:
            return name
        section = store.get_section(section_id)
        return section.auto_name if section is not None else None

    def get_all_section_names(self) -> Dict[str, str]:
        return self._require_store().all_section_names()

    def set_section_reference(self, section_id: str, activity_id: str) -> bool:
        """Pin ``activity_id``'s traversal as the section polyline.

        Returns False for an unknown section.

        Raises:
            ValidationError: When the activity does not contribute to it.
        """

        store = self._require_store()
        validate_identifier(section_id, "section id")
        validate_identifier(activity_id, "activity id")
        with self._write_lock:
            section = store.get_section(section_id)
            if section is None:
                return False
            track = store.load_track(activity_id)
            if track is None or activity_id not in section.activity_ids:
                raise ValidationError(
                    f"Activity {activity_id} does not contribute to section {section_id}"
                )
            if not reanchor_section(section, activity_id, track, user_defined=True):
                raise ValidationError(f"Activity {activity_id} has no usable portion")
            store.set_section_reference(section_id, activity_id, section)
            self._mark_dirty(sections=True)
        return True

    def reset_section_reference(self, section_id: str) -> bool:
        """Drop a pin and fall back to the automatically chosen medoid."""

        store = self._require_store()
        with self._write_lock:
            section = store.get_section(section_id)
            if section is None:
                return False
            if reselect_representative(section, store.load_tracks(section.activity_ids)):
                store.set_section_reference(section_id, None, section)
            else:
                store.set_section_reference(section_id, None)
            self._mark_dirty(sections=True)
        return True

    def get_section_reference(self, section_id: str) -> Optional[str]:
        section = self.get_section_by_id(section_id)
        return section.representative_activity_id if section is not None else None

    def is_section_reference_user_defined(self, section_id: str) -> bool:
        section = self.get_section_by_id(section_id)
        return bool(section and section.reference_user_defined)

    def match_and_add_activity_to_sections(self, activity_id: str) -> List[str]:
        """Attach a newly added activity to existing sections it traverses."""

        store = self._require_store()
        record = store.get_activity(activity_id)
        track = store.load_track(activity_id)
        if record is None or track is None:
            return []
        matcher = CustomSectionMatcher(store)
        updated: List[Section] = []
        with self._write_lock:
            for section_id in self._section_index.query(record.bounds.expanded(MATCH_TOLERANCE_M)):
                section = store.get_section(section_id)
                if (
                    section is None
                    or section.sport_type != record.sport_type
                    or activity_id in section.activity_ids
                ):
                    continue
                found = matcher.traversals(section.polyline, track)
                if not found:
                    continue
                for traversal in found:
                    section.portions.append(
                        SectionPortion(
                            activity_id=activity_id,
                            start_index=traversal.start_index,
                            end_index=traversal.end_index,
                            distance_m=track_length_m(
                                track[traversal.start_index : traversal.end_index + 1]
                            ),
                            direction=traversal.direction,
                        )
                    )
                section.activity_ids.append(activity_id)
                section.visit_count = len(section.portions)
                section.confidence = section_confidence(
                    len(section.activity_ids),
                    section.average_spread,
                    _SCALE_TOLERANCE.get(section.scale, MATCH_TOLERANCE_M),
                )
                updated.append(section)
            store.patch_sections(updated, [])
        return [s.id for s in updated]

    def extract_section_trace(self, activity_id: str, polyline_flat: FlatCoords) -> List[float]:
        """Flat sub-trace of the activity that traverses ``polyline_flat``."""

        track = self._require_store().load_track(activity_id)
        if track is None:
            return []
        polyline = _flat_polyline(polyline_flat)
        return points_to_flat(CustomSectionMatcher(self.store).extract_trace(track, polyline))

    # ------------------------------------------------------------------
    # Route groups
    # ------------------------------------------------------------------
    def _ensure_groups(self) -> None:
        store = self._require_store()
        if store.groups_dirty():
            with self._write_lock:
                if store.groups_dirty():
                    groups = RouteGrouper(store).group()
                    members = [aid for g in groups for aid in g.activity_ids]
                    metrics = store.get_metrics(members)
                    best_times(
                        groups,
                        {
                            aid: (m.moving_time or m.elapsed_time)
                            for aid, m in metrics.items()
                        },
                    )
                    store.replace_groups(groups)
                    self._group_members_dirty = True
        if self._group_members_dirty:
            self._group_members.rebuild(
                (g.id, g.activity_ids) for g in store.list_groups()
            )
            self._group_members_dirty = False

    def mark_for_recomputation(self) -> None:
        """Recompute route groups on the next read."""

        self._require_store().mark_groups_dirty()

    def get_groups(self, sport_type: Optional[str] = None) -> List[RouteGroup]:
        self._ensure_groups()
        return self._require_store().list_groups(sport_type)

    def get_group_count(self) -> int:
        self._ensure_groups()
        return self._require_store().group_count()

    def get_group_summaries(self) -> List[RouteGroupSummary]:
        self._ensure_groups()
        return self._require_store().group_summaries()

    def get_group_by_id(self, group_id: str) -> Optional[RouteGroup]:
        self._ensure_groups()
        return self._require_store().get_group(group_id)

    def get_group_for_activity(self, activity_id: str) -> Optional[RouteGroup]:
        self._ensure_groups()
        found = self._group_members.get(activity_id)
        return self._require_store().get_group(found[0]) if found else None

    def get_consensus_route(self, group_id: str) -> List[float]:
        group = self.get_group_by_id(group_id)
        return points_to_flat(group.consensus_polyline) if group is not None else []

    def set_route_name(self, route_id: str, name: Optional[str]) -> bool:
        validate_identifier(route_id, "route id")
        if name is not None:
            validate_name(name)
        with self._write_lock:
            self._require_store().set_route_name(route_id, name or None)
        return True

    def get_route_name(self, route_id: str) -> Optional[str]:
        return self._require_store().get_route_name(route_id)

    def get_all_route_names(self) -> Dict[str, str]:
        return self._require_store().all_route_names()

    def get_route_performances(
        self, group_id: str, current_activity_id: Optional[str] = None
    ) -> Optional[RoutePerformanceResult]:
        group = self.get_group_by_id(group_id)
        if group is None:
            return None
        return PerformanceExtractor(self.store).route_performances(group, current_activity_id)

    # ------------------------------------------------------------------
    # Custom sections
    # ------------------------------------------------------------------
    def add_custom_section(
        self, payload: Union[str, bytes, Mapping[str, object]]
    ) -> CustomSection:
        """Validate, store and match a caller-supplied custom section."""

        store = self._require_store()
        section = parse_custom_section(payload)
        if section.source_activity_id is not None and not store.existing_ids(
            [section.source_activity_id]
        ):
            raise ValidationError(f"Unknown source activity: {section.source_activity_id}")
        with self._write_lock:
            store.save_custom_section(section)
            self._match_custom(section, store.activity_ids(section.sport_type))
        return section

    def create_section_from_indices(
        self,
        activity_id: str,
        start_index: int,
        end_index: int,
        sport_type: str,
        name: str,
    ) -> CustomSection:
        store = self._require_store()
        section = CustomSectionMatcher(store).create_from_indices(
            activity_id, start_index, end_index, sport_type, name
        )
        with self._write_lock:
            store.save_custom_section(section)
            self._match_custom(section, store.activity_ids(sport_type))
        return section

    def remove_custom_section(self, section_id: str) -> bool:
        with self._write_lock:
            return self._require_store().delete_custom_section(section_id)

    def get_custom_sections(self) -> List[CustomSection]:
        return self._require_store().list_custom_sections()

    def get_custom_section_matches(self, section_id: str) -> List[CustomSectionMatch]:
        return self._require_store().get_custom_matches(section_id)

    def match_custom_section(
        self, section_id: str, activity_ids: Iterable[str]
    ) -> List[CustomSectionMatch]:
        """Match a stored custom section against the given activities."""

        store = self._require_store()
        section = store.get_custom_section(section_id)
        if section is None:
            return []
        with self._write_lock:
            return self._match_custom(section, activity_ids)

    def _match_custom(
        self, section: CustomSection, activity_ids: Iterable[str]
    ) -> List[CustomSectionMatch]:
        ids = list(dict.fromkeys(activity_ids))
        matches = CustomSectionMatcher(self.store).match(section, ids)
        self.store.replace_custom_matches(section.id, ids, matches)
        return matches

    def _custom_match_updates(
        self,
        tracks: Mapping[str, np.ndarray],
        sports: Mapping[str, str],
        *,
        sport_filter: Optional[str] = None,
    ) -> List[CustomMatchUpdate]:
        """Fresh matches of every custom section against in-memory ``tracks``.

        Nothing is written; callers hand the result to the store together
        with the rest of their change.
        """

        if not tracks:
            return []
        store = self._require_store()
        matcher = CustomSectionMatcher(store)
        updates: List[CustomMatchUpdate] = []
        for section in store.list_custom_sections():
            if sport_filter is not None and section.sport_type != sport_filter:
                continue
            ids = sorted(
                (aid for aid in tracks if sports.get(aid) == section.sport_type),
                key=id_sort_key,
            )
            if ids:
                updates.append(
                    CustomMatchUpdate(section.id, ids, matcher.match_tracks(section, tracks, ids))
                )
        return updates

    # ------------------------------------------------------------------
    # Performances & stats
    # ------------------------------------------------------------------
    def get_section_performances(self, section_id: str) -> Optional[SectionPerformanceResult]:
        """Timed traversals of a detected or custom section."""

        store = self._require_store()
        extractor = PerformanceExtractor(store)
        section = store.get_section(section_id)
        if section is not None:
            return extractor.section_performances(
                section.polyline, section.activity_ids, section_distance=section.distance_m
            )
        custom = store.get_custom_section(section_id)
        if custom is None:
            return None
        matched = [m.activity_id for m in store.get_custom_matches(section_id)]
        return extractor.section_performances(
            custom.polyline, matched, section_distance=custom.distance_m
        )

    def get_stats(self) -> EngineStats:
        store = self._require_store()
        self._ensure_groups()
        oldest, newest = store.date_range()
        return EngineStats(
            activity_count=store.activity_count(),
            section_count=store.section_count(),
            custom_section_count=store.custom_section_count(),
            group_count=store.group_count(),
            time_stream_count=store.time_stream_count(),
            oldest_date=oldest,
            newest_date=newest,
        )

    # ------------------------------------------------------------------
    # camelCase JSON views
    # ------------------------------------------------------------------
    def get_sections_json(self, sport_type: Optional[str] = None) -> str:
        return wire_dumps(self.get_sections(sport_type))

    def get_section_summaries_json(self, sport_type: Optional[str] = None) -> str:
        return wire_dumps(self.get_section_summaries(sport_type))

    def get_section_by_id_json(self, section_id: str) -> str:
        return wire_dumps(self.get_section_by_id(section_id))

    def get_groups_json(self, sport_type: Optional[str] = None) -> str:
        return wire_dumps(self.get_groups(sport_type))

    def get_group_summaries_json(self) -> str:
        return wire_dumps(self.get_group_summaries())

    def get_group_by_id_json(self, group_id: str) -> str:
        return wire_dumps(self.get_group_by_id(group_id))

    def get_custom_sections_json(self) -> str:
        return wire_dumps(self.get_custom_sections())

    def get_section_performances_json(self, section_id: str) -> str:
        return wire_dumps(self.get_section_performances(section_id))

    def get_route_performances_json(
        self, group_id: str, current_activity_id: Optional[str] = None
    ) -> str:
        return wire_dumps(self.get_route_performances(group_id, current_activity_id))

    def get_section_detection_progress_json(self) -> str:
        return wire_dumps(self.get_section_detection_progress())

    def get_stats_json(self) -> str:
        return wire_dumps(self.get_stats())


def _valid_points(points: np.ndarray) -> bool:
    return all(is_valid_coordinate(float(lat), float(lng)) for lat, lng in points)


def _viewport(min_lat: float, max_lat: float, min_lng: float, max_lng: float) -> Bounds:
    values = (min_lat, max_lat, min_lng, max_lng)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
        raise ValidationError("Viewport bounds must be finite numbers")
    if min_lat > max_lat or min_lng > max_lng:
        raise ValidationError("Viewport minimum exceeds maximum")
    return Bounds(float(min_lat), float(max_lat), float(min_lng), float(max_lng))


def _flat_polyline(flat: FlatCoords) -> List[LatLon]:
    try:
        points = flat_to_points(flat)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if as_point_array(points).shape[0] < 2:
        raise ValidationError("Polyline needs at least two points")
    return points
