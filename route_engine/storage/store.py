"""Durable SQLite-backed storage for tracks and everything derived from them.

Every public method runs in exactly one transaction: it either applies all of
its changes or, on any SQLAlchemy failure, none of them, in which case a
:class:`~route_engine.errors.StorageError` is raised.  Access is serialised by
a re-entrant lock so the store can be shared between the caller's thread and
the background detection job.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from threading import RLock
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set

import numpy as np
from cachetools import LRUCache
from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import SQL_ECHO, TRACK_CACHE_SIZE
from ..errors import StorageError
from ..models import (
    ActivityMatch,
    ActivityMetrics,
    ActivityRecord,
    Bounds,
    CustomSection,
    CustomSectionMatch,
    RouteGroup,
    RouteGroupSummary,
    Section,
    SectionPortion,
    SectionSummary,
)
from .schema import (
    ActivityMetricsRow,
    ActivityRow,
    Base,
    CustomSectionMatchRow,
    CustomSectionRow,
    EngineStateRow,
    GpsTrackRow,
    RouteGroupRow,
    RouteNameRow,
    SectionActivityRow,
    SectionNameRow,
    SectionReferenceRow,
    SectionRow,
    TimeStreamRow,
)

_LOG = logging.getLogger(__name__)

GROUPS_DIRTY_KEY = "groups_dirty"


@dataclass(slots=True)
class TrackInput:
    """One activity to ingest."""

    id: str
    sport_type: str
    points: np.ndarray
    distance_m: float
    name: Optional[str] = None
    start_date: Optional[int] = None


@dataclass(slots=True)
class CustomMatchUpdate:
    """Replacement matches of one custom section for a set of activities."""

    section_id: str
    activity_ids: List[str]
    matches: List[CustomSectionMatch]


def pack_array(array: np.ndarray) -> bytes:
    return np.ascontiguousarray(array, dtype="<f8").tobytes()


def unpack_points(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f8").reshape(-1, 2).copy()


def unpack_values(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f8").copy()


def _enable_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _bounds_of(row) -> Bounds:
    return Bounds(row.min_lat, row.max_lat, row.min_lng, row.max_lng)


def _set_bounds(row, bounds: Bounds) -> None:
    row.min_lat, row.max_lat, row.min_lng, row.max_lng = bounds.as_tuple()


class TrackStore:
    """Activities, tracks, sections, groups and names in one SQLite file."""

    def __init__(
        self,
        path: str,
        *,
        track_cache_size: int = TRACK_CACHE_SIZE,
        echo: bool = SQL_ECHO,
    ) -> None:
        self.path = path
        if path == ":memory:":
            self._engine = create_engine(
                "sqlite://",
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(
                f"sqlite:///{path}",
                echo=echo,
                connect_args={"check_same_thread": False},
            )
        event.listen(self._engine, "connect", _enable_foreign_keys)
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Unable to open store at {path}: {exc}") from exc
        self._sessions = sessionmaker(
            bind=self._engine, autoflush=False, expire_on_commit=False
        )
        self._lock = RLock()
        self._track_cache: Optional[LRUCache] = (
            LRUCache(maxsize=track_cache_size) if track_cache_size > 0 else None
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._lock:
            session = self._sessions()
            try:
                with session.begin():
                    yield session
            except SQLAlchemyError as exc:
                _LOG.error("Store transaction failed: %s", exc)
                raise StorageError(str(exc)) from exc
            finally:
                session.close()

    def close(self) -> None:
        with self._lock:
            self._engine.dispose()
            self._invalidate_tracks()

    def clear(self) -> None:
        """Delete every row of every table."""

        with self._transaction() as session:
            for table in reversed(Base.metadata.sorted_tables):
                session.execute(table.delete())
        self._invalidate_tracks()

    def _invalidate_tracks(self, ids: Optional[Iterable[str]] = None) -> None:
        if self._track_cache is None:
            return
        with self._lock:
            if ids is None:
                self._track_cache.clear()
                return
            for activity_id in ids:
                self._track_cache.pop(activity_id, None)

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def changed_ids(self, batch: Sequence[TrackInput]) -> List[str]:
        """Ids in ``batch`` that are new or whose stored track differs."""

        with self._transaction() as session:
            stored = {
                row.activity_id: row.points
                for row in session.scalars(
                    select(GpsTrackRow).where(
                        GpsTrackRow.activity_id.in_([item.id for item in batch])
                    )
                )
            }
        return [
            item.id for item in batch if stored.get(item.id) != pack_array(item.points)
        ]

    def upsert_activities(
        self,
        batch: Sequence[TrackInput],
        *,
        updated_sections: Sequence[Section] = (),
        deleted_section_ids: Sequence[str] = (),
        custom_matches: Sequence[CustomMatchUpdate] = (),
    ) -> List[str]:
        """Insert or replace activities; return ids whose track changed.

        A replaced track with a different point count drops its time stream,
        which would no longer line up with the points. Section patches and
        custom-section matches computed for the batch are written in the same
        transaction.
        """

        changed: List[str] = []
        now = time.time()
        with self._transaction() as session:
            for item in batch:
                blob = pack_array(item.points)
                bounds = Bounds.from_points(item.points)
                row = session.get(ActivityRow, item.id)
                track = session.get(GpsTrackRow, item.id)
                if row is None:
                    row = ActivityRow(id=item.id, created_at=now)
                    session.add(row)
                    changed.append(item.id)
                elif track is None or track.points != blob:
                    changed.append(item.id)
                if row.point_count is not None and row.point_count != len(item.points):
                    session.execute(
                        delete(TimeStreamRow).where(TimeStreamRow.activity_id == item.id)
                    )
                row.sport_type = item.sport_type
                row.point_count = int(len(item.points))
                row.distance_m = float(item.distance_m)
                if item.name is not None:
                    row.name = item.name
                if item.start_date is not None:
                    row.start_date = int(item.start_date)
                _set_bounds(row, bounds)
                session.flush()
                if track is None:
                    session.add(GpsTrackRow(activity_id=item.id, points=blob))
                elif track.points != blob:
                    track.points = blob
            if deleted_section_ids:
                self._delete_sections(session, deleted_section_ids)
            for section in updated_sections:
                self._write_section(session, section)
            for update in custom_matches:
                self._write_custom_matches(session, update)
            if changed:
                self._put_state(session, GROUPS_DIRTY_KEY, "1")
        self._invalidate_tracks(changed)
        return changed

    def remove_activities(
        self,
        ids: Sequence[str],
        *,
        updated_sections: Sequence[Section] = (),
        deleted_section_ids: Sequence[str] = (),
    ) -> List[str]:
        """Delete activities and apply the section patches computed for them.

        Everything happens in one transaction, so sections never point at an
        activity that is gone.
        """

        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return []
        with self._transaction() as session:
            existing = list(
                session.scalars(select(ActivityRow.id).where(ActivityRow.id.in_(wanted)))
            )
            if not existing:
                return []
            for model in (GpsTrackRow, TimeStreamRow, ActivityMetricsRow):
                session.execute(delete(model).where(model.activity_id.in_(existing)))
            session.execute(delete(ActivityRow).where(ActivityRow.id.in_(existing)))
            session.execute(
                delete(CustomSectionMatchRow).where(
                    CustomSectionMatchRow.activity_id.in_(existing)
                )
            )
            session.execute(
                delete(SectionReferenceRow).where(
                    SectionReferenceRow.activity_id.in_(existing)
                )
            )
            if deleted_section_ids:
                self._delete_sections(session, deleted_section_ids)
            for section in updated_sections:
                self._write_section(session, section)
            self._put_state(session, GROUPS_DIRTY_KEY, "1")
        self._invalidate_tracks(existing)
        return existing

    def activity_ids(self, sport_type: Optional[str] = None) -> List[str]:
        with self._transaction() as session:
            query = select(ActivityRow.id)
            if sport_type is not None:
                query = query.where(ActivityRow.sport_type == sport_type)
            return list(session.scalars(query.order_by(ActivityRow.id)))

    def existing_ids(self, ids: Iterable[str]) -> Set[str]:
        wanted = list(ids)
        if not wanted:
            return set()
        with self._transaction() as session:
            return set(
                session.scalars(select(ActivityRow.id).where(ActivityRow.id.in_(wanted)))
            )

    def activity_count(self) -> int:
        with self._transaction() as session:
            return int(session.scalar(select(func.count()).select_from(ActivityRow)))

    def list_activities(
        self,
        *,
        sport_type: Optional[str] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[ActivityRecord]:
        with self._transaction() as session:
            query = select(ActivityRow)
            if sport_type is not None:
                query = query.where(ActivityRow.sport_type == sport_type)
            if ids is not None:
                query = query.where(ActivityRow.id.in_(list(ids)))
            rows = list(session.scalars(query.order_by(ActivityRow.id)))
            timed = set(session.scalars(select(TimeStreamRow.activity_id)))
            return [
                ActivityRecord(
                    id=row.id,
                    sport_type=row.sport_type,
                    point_count=row.point_count,
                    distance_m=row.distance_m,
                    bounds=_bounds_of(row),
                    name=row.name,
                    start_date=row.start_date,
                    created_at=row.created_at,
                    has_time_stream=row.id in timed,
                )
                for row in rows
            ]

    def get_activity(self, activity_id: str) -> Optional[ActivityRecord]:
        found = self.list_activities(ids=[activity_id])
        return found[0] if found else None

    def activity_bounds(self) -> Dict[str, Bounds]:
        with self._transaction() as session:
            rows = session.execute(
                select(
                    ActivityRow.id,
                    ActivityRow.min_lat,
                    ActivityRow.max_lat,
                    ActivityRow.min_lng,
                    ActivityRow.max_lng,
                )
            ).all()
            return {row.id: _bounds_of(row) for row in rows}

    def activities_older_than(self, cutoff_epoch: float) -> List[str]:
        with self._transaction() as session:
            rows = session.execute(
                select(ActivityRow.id, ActivityRow.start_date, ActivityRow.created_at)
            ).all()
        stale = []
        for row in rows:
            stamp = row.start_date if row.start_date is not None else row.created_at
            if stamp < cutoff_epoch:
                stale.append(row.id)
        return stale

    def load_track(self, activity_id: str) -> Optional[np.ndarray]:
        found = self.load_tracks([activity_id])
        return found.get(activity_id)

    def load_tracks(self, ids: Iterable[str]) -> Dict[str, np.ndarray]:
        """Return decoded ``(n, 2)`` lat/lng arrays for the ids that exist."""

        wanted = list(dict.fromkeys(ids))
        result: Dict[str, np.ndarray] = {}
        with self._lock:
            missing = []
            for activity_id in wanted:
                cached = (
                    self._track_cache.get(activity_id)
                    if self._track_cache is not None
                    else None
                )
                if cached is not None:
                    result[activity_id] = cached
                else:
                    missing.append(activity_id)
            if missing:
                with self._transaction() as session:
                    rows = session.execute(
                        select(GpsTrackRow.activity_id, GpsTrackRow.points).where(
                            GpsTrackRow.activity_id.in_(missing)
                        )
                    ).all()
                for row in rows:
                    array = unpack_points(row.points)
                    array.flags.writeable = False
                    result[row.activity_id] = array
                    if self._track_cache is not None:
                        self._track_cache[row.activity_id] = array
        return result

    # ------------------------------------------------------------------
    # Metrics & time streams
    # ------------------------------------------------------------------
    def set_metrics(self, metrics: Sequence[ActivityMetrics]) -> int:
        with self._transaction() as session:
            for item in metrics:
                session.merge(ActivityMetricsRow(**asdict(item)))
                if item.name is not None or item.date is not None:
                    row = session.get(ActivityRow, item.activity_id)
                    if row is not None:
                        if item.name is not None:
                            row.name = item.name
                        if item.date is not None:
                            row.start_date = int(item.date)
        return len(metrics)

    def get_metrics(self, ids: Iterable[str]) -> Dict[str, ActivityMetrics]:
        wanted = list(ids)
        with self._transaction() as session:
            rows = session.scalars(
                select(ActivityMetricsRow).where(ActivityMetricsRow.activity_id.in_(wanted))
            )
            return {
                row.activity_id: ActivityMetrics(
                    activity_id=row.activity_id,
                    name=row.name,
                    date=row.date,
                    distance=row.distance,
                    moving_time=row.moving_time,
                    elapsed_time=row.elapsed_time,
                    elevation_gain=row.elevation_gain,
                    avg_hr=row.avg_hr,
                    avg_power=row.avg_power,
                    sport_type=row.sport_type,
                )
                for row in rows
            }

    def set_time_streams(self, streams: Dict[str, np.ndarray]) -> int:
        with self._transaction() as session:
            for activity_id, times in streams.items():
                session.merge(
                    TimeStreamRow(
                        activity_id=activity_id,
                        times=pack_array(times),
                        point_count=int(len(times)),
                    )
                )
        return len(streams)

    def load_time_streams(self, ids: Iterable[str]) -> Dict[str, np.ndarray]:
        wanted = list(ids)
        with self._transaction() as session:
            rows = session.execute(
                select(TimeStreamRow.activity_id, TimeStreamRow.times).where(
                    TimeStreamRow.activity_id.in_(wanted)
                )
            ).all()
        return {row.activity_id: unpack_values(row.times) for row in rows}

    def time_stream_ids(self, ids: Iterable[str]) -> Set[str]:
        wanted = list(ids)
        with self._transaction() as session:
            return set(
                session.scalars(
                    select(TimeStreamRow.activity_id).where(
                        TimeStreamRow.activity_id.in_(wanted)
                    )
                )
            )

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------
    def replace_sections(
        self,
        sections: Sequence[Section],
        *,
        sport_types: Optional[Iterable[str]] = None,
        custom_matches: Sequence[CustomMatchUpdate] = (),
    ) -> None:
        """Swap in a new detection result (optionally for some sports only).

        ``custom_matches`` are rewritten in the same transaction, so a failed
        commit leaves both the previous sections and matches in place.
        """

        with self._transaction() as session:
            query = select(SectionRow.id)
            if sport_types is not None:
                query = query.where(SectionRow.sport_type.in_(list(sport_types)))
            self._delete_sections(session, list(session.scalars(query)))
            session.flush()
            for section in sections:
                self._write_section(session, section)
            for update in custom_matches:
                self._write_custom_matches(session, update)

    def patch_sections(
        self, updated: Sequence[Section], deleted_ids: Sequence[str]
    ) -> None:
        """Rewrite and delete sections in a single transaction."""

        if not updated and not deleted_ids:
            return
        with self._transaction() as session:
            self._delete_sections(session, deleted_ids)
            for section in updated:
                self._write_section(session, section)

    def get_section(self, section_id: str) -> Optional[Section]:
        with self._transaction() as session:
            row = session.get(SectionRow, section_id)
            if row is None:
                return None
            return self._section_from_row(session, row)

    def list_sections(self, sport_type: Optional[str] = None) -> List[Section]:
        with self._transaction() as session:
            query = select(SectionRow)
            if sport_type is not None:
                query = query.where(SectionRow.sport_type == sport_type)
            rows = session.scalars(query.order_by(SectionRow.id))
            return [self._section_from_row(session, row) for row in rows]

    def sections_for_activity(self, activity_id: str) -> List[str]:
        with self._transaction() as session:
            return list(
                session.scalars(
                    select(SectionActivityRow.section_id)
                    .where(SectionActivityRow.activity_id == activity_id)
                    .order_by(SectionActivityRow.section_id)
                )
            )

    def section_summaries(self, sport_type: Optional[str] = None) -> List[SectionSummary]:
        """Metadata-only projection; polylines and portions are never selected."""

        with self._transaction() as session:
            query = select(
                SectionRow.id,
                SectionRow.sport_type,
                SectionRow.scale,
                SectionRow.visit_count,
                SectionRow.activity_count,
                SectionRow.distance_m,
                SectionRow.confidence,
                SectionRow.representative_activity_id,
                SectionRow.min_lat,
                SectionRow.max_lat,
                SectionRow.min_lng,
                SectionRow.max_lng,
                func.coalesce(SectionNameRow.name, SectionRow.auto_name).label("name"),
            ).outerjoin(SectionNameRow, SectionNameRow.section_id == SectionRow.id)
            if sport_type is not None:
                query = query.where(SectionRow.sport_type == sport_type)
            rows = session.execute(query.order_by(SectionRow.id)).all()
        return [
            SectionSummary(
                id=row.id,
                sport_type=row.sport_type,
                scale=row.scale,
                visit_count=row.visit_count,
                activity_count=row.activity_count,
                distance_m=row.distance_m,
                confidence=row.confidence,
                bounds=_bounds_of(row),
                representative_activity_id=row.representative_activity_id,
                name=row.name,
            )
            for row in rows
        ]

    def section_bounds(self) -> Dict[str, Bounds]:
        with self._transaction() as session:
            rows = session.execute(
                select(
                    SectionRow.id,
                    SectionRow.min_lat,
                    SectionRow.max_lat,
                    SectionRow.min_lng,
                    SectionRow.max_lng,
                )
            ).all()
            return {row.id: _bounds_of(row) for row in rows}

    def section_count(self) -> int:
        with self._transaction() as session:
            return int(session.scalar(select(func.count()).select_from(SectionRow)))

    def _write_section(self, session: Session, section: Section) -> None:
        row = session.get(SectionRow, section.id)
        if row is None:
            row = SectionRow(id=section.id, created_at=time.time())
            session.add(row)
        row.sport_type = section.sport_type
        row.scale = section.scale
        row.polyline = pack_array(np.asarray(section.polyline, dtype=float))
        row.representative_activity_id = section.representative_activity_id
        row.activity_ids = json.dumps(list(section.activity_ids))
        row.portions = json.dumps([asdict(p) for p in section.portions])
        row.visit_count = int(section.visit_count)
        row.activity_count = len(section.activity_ids)
        row.distance_m = float(section.distance_m)
        row.confidence = float(section.confidence)
        row.average_spread = float(section.average_spread)
        row.auto_name = section.auto_name
        _set_bounds(row, section.bounds)
        session.flush()
        session.execute(
            delete(SectionActivityRow).where(SectionActivityRow.section_id == section.id)
        )
        for activity_id in dict.fromkeys(section.activity_ids):
            session.add(SectionActivityRow(section_id=section.id, activity_id=activity_id))

    @staticmethod
    def _delete_sections(session: Session, ids: Sequence[str]) -> None:
        if not ids:
            return
        ids = list(ids)
        session.execute(
            delete(SectionActivityRow).where(SectionActivityRow.section_id.in_(ids))
        )
        session.execute(delete(SectionRow).where(SectionRow.id.in_(ids)))

    @staticmethod
    def _section_from_row(session: Session, row: SectionRow) -> Section:
        name_row = session.get(SectionNameRow, row.id)
        ref_row = session.get(SectionReferenceRow, row.id)
        return Section(
            id=row.id,
            sport_type=row.sport_type,
            scale=row.scale,
            polyline=[(float(lat), float(lng)) for lat, lng in unpack_points(row.polyline)],
            representative_activity_id=row.representative_activity_id,
            activity_ids=list(json.loads(row.activity_ids)),
            portions=[SectionPortion(**item) for item in json.loads(row.portions)],
            visit_count=row.visit_count,
            distance_m=row.distance_m,
            confidence=row.confidence,
            average_spread=row.average_spread,
            bounds=_bounds_of(row),
            name=name_row.name if name_row is not None else row.auto_name,
            reference_user_defined=(
                ref_row is not None
                and ref_row.activity_id == row.representative_activity_id
            ),
            auto_name=row.auto_name,
        )

    # ------------------------------------------------------------------
    # Names & pinned references (independent of detection runs)
    # ------------------------------------------------------------------
    def set_section_name(self, section_id: str, name: Optional[str]) -> None:
        self._set_name(SectionNameRow, "section_id", section_id, name)

    def get_section_name(self, section_id: str) -> Optional[str]:
        with self._transaction() as session:
            row = session.get(SectionNameRow, section_id)
            return row.name if row is not None else None

    def all_section_names(self) -> Dict[str, str]:
        with self._transaction() as session:
            return {row.section_id: row.name for row in session.scalars(select(SectionNameRow))}

    def set_route_name(self, route_id: str, name: Optional[str]) -> None:
        self._set_name(RouteNameRow, "route_id", route_id, name)

    def get_route_name(self, route_id: str) -> Optional[str]:
        with self._transaction() as session:
            row = session.get(RouteNameRow, route_id)
            return row.name if row is not None else None

    def all_route_names(self) -> Dict[str, str]:
        with self._transaction() as session:
            return {row.route_id: row.name for row in session.scalars(select(RouteNameRow))}

    def _set_name(self, model, key_field: str, key: str, name: Optional[str]) -> None:
        with self._transaction() as session:
            if name is None:
                session.execute(delete(model).where(getattr(model, key_field) == key))
            else:
                session.merge(model(**{key_field: key, "name": name}))

    def set_section_reference(
        self, section_id: str, activity_id: Optional[str], section: Optional[Section] = None
    ) -> None:
        """Pin (or unpin with ``None``) a section's reference activity.

        When ``section`` is given, its re-anchored geometry is written in the
        same transaction.
        """

        with self._transaction() as session:
            if activity_id is None:
                session.execute(
                    delete(SectionReferenceRow).where(
                        SectionReferenceRow.section_id == section_id
                    )
                )
            else:
                session.merge(
                    SectionReferenceRow(section_id=section_id, activity_id=activity_id)
                )
            if section is not None:
                self._write_section(session, section)

    def all_section_references(self) -> Dict[str, str]:
        with self._transaction() as session:
            return {
                row.section_id: row.activity_id
                for row in session.scalars(select(SectionReferenceRow))
            }

    # ------------------------------------------------------------------
    # Route groups
    # ------------------------------------------------------------------
    def replace_groups(self, groups: Sequence[RouteGroup]) -> None:
        with self._transaction() as session:
            session.execute(delete(RouteGroupRow))
            for group in groups:
                row = RouteGroupRow(
                    id=group.id,
                    sport_type=group.sport_type,
                    representative_id=group.representative_id,
                    activity_ids=json.dumps(list(group.activity_ids)),
                    matches=json.dumps([asdict(m) for m in group.matches]),
                    activity_count=len(group.activity_ids),
                    distance_m=float(group.distance_m),
                    best_time=group.best_time,
                )
                _set_bounds(row, group.bounds)
                session.add(row)
            self._put_state(session, GROUPS_DIRTY_KEY, "0")

    def list_groups(self, sport_type: Optional[str] = None) -> List[RouteGroup]:
        with self._transaction() as session:
            query = select(RouteGroupRow)
            if sport_type is not None:
                query = query.where(RouteGroupRow.sport_type == sport_type)
            rows = list(session.scalars(query.order_by(RouteGroupRow.id)))
            names = {r.route_id: r.name for r in session.scalars(select(RouteNameRow))}
            return [self._group_from_row(session, row, names.get(row.id)) for row in rows]

    def get_group(self, group_id: str) -> Optional[RouteGroup]:
        with self._transaction() as session:
            row = session.get(RouteGroupRow, group_id)
            if row is None:
                return None
            name_row = session.get(RouteNameRow, group_id)
            return self._group_from_row(
                session, row, name_row.name if name_row is not None else None
            )

    def group_summaries(self) -> List[RouteGroupSummary]:
        with self._transaction() as session:
            rows = session.execute(
                select(
                    RouteGroupRow.id,
                    RouteGroupRow.sport_type,
                    RouteGroupRow.representative_id,
                    RouteGroupRow.activity_count,
                    RouteGroupRow.distance_m,
                    RouteGroupRow.best_time,
                    RouteGroupRow.min_lat,
                    RouteGroupRow.max_lat,
                    RouteGroupRow.min_lng,
                    RouteGroupRow.max_lng,
                    RouteNameRow.name,
                )
                .outerjoin(RouteNameRow, RouteNameRow.route_id == RouteGroupRow.id)
                .order_by(RouteGroupRow.id)
            ).all()
        return [
            RouteGroupSummary(
                id=row.id,
                sport_type=row.sport_type,
                representative_id=row.representative_id,
                activity_count=row.activity_count,
                distance_m=row.distance_m,
                bounds=_bounds_of(row),
                best_time=row.best_time,
                name=row.name,
            )
            for row in rows
        ]

    def group_count(self) -> int:
        with self._transaction() as session:
            return int(session.scalar(select(func.count()).select_from(RouteGroupRow)))

    def _group_from_row(
        self, session: Session, row: RouteGroupRow, name: Optional[str]
    ) -> RouteGroup:
        track = session.get(GpsTrackRow, row.representative_id)
        consensus = (
            [(float(lat), float(lng)) for lat, lng in unpack_points(track.points)]
            if track is not None
            else []
        )
        return RouteGroup(
            id=row.id,
            sport_type=row.sport_type,
            representative_id=row.representative_id,
            activity_ids=list(json.loads(row.activity_ids)),
            consensus_polyline=consensus,
            bounds=_bounds_of(row),
            distance_m=row.distance_m,
            best_time=row.best_time,
            matches=[ActivityMatch(**item) for item in json.loads(row.matches)],
            name=name,
        )

    # ------------------------------------------------------------------
    # Custom sections
    # ------------------------------------------------------------------
    def save_custom_section(self, section: CustomSection) -> None:
        with self._transaction() as session:
            session.merge(
                CustomSectionRow(
                    id=section.id,
                    name=section.name,
                    polyline=pack_array(np.asarray(section.polyline, dtype=float)),
                    source_activity_id=section.source_activity_id,
                    start_index=section.start_index,
                    end_index=section.end_index,
                    sport_type=section.sport_type,
                    distance_m=section.distance_m,
                    created_at=section.created_at,
                )
            )

    def delete_custom_section(self, section_id: str) -> bool:
        with self._transaction() as session:
            session.execute(
                delete(CustomSectionMatchRow).where(
                    CustomSectionMatchRow.section_id == section_id
                )
            )
            result = session.execute(
                delete(CustomSectionRow).where(CustomSectionRow.id == section_id)
            )
            return bool(result.rowcount)

    def get_custom_section(self, section_id: str) -> Optional[CustomSection]:
        with self._transaction() as session:
            row = session.get(CustomSectionRow, section_id)
            return self._custom_from_row(row) if row is not None else None

    def list_custom_sections(self) -> List[CustomSection]:
        with self._transaction() as session:
            rows = session.scalars(
                select(CustomSectionRow).order_by(
                    CustomSectionRow.created_at, CustomSectionRow.id
                )
            )
            return [self._custom_from_row(row) for row in rows]

    def custom_section_count(self) -> int:
        with self._transaction() as session:
            return int(session.scalar(select(func.count()).select_from(CustomSectionRow)))

    def replace_custom_matches(
        self,
        section_id: str,
        activity_ids: Iterable[str],
        matches: Sequence[CustomSectionMatch],
    ) -> None:
        """Replace stored matches of ``section_id`` for the given activities."""

        update = CustomMatchUpdate(section_id, list(activity_ids), list(matches))
        with self._transaction() as session:
            self._write_custom_matches(session, update)

    @staticmethod
    def _write_custom_matches(session: Session, update: CustomMatchUpdate) -> None:
        session.execute(
            delete(CustomSectionMatchRow).where(
                CustomSectionMatchRow.section_id == update.section_id,
                CustomSectionMatchRow.activity_id.in_(update.activity_ids),
            )
        )
        session.flush()
        for match in update.matches:
            session.add(
                CustomSectionMatchRow(
                    section_id=match.section_id,
                    activity_id=match.activity_id,
                    start_index=match.start_index,
                    end_index=match.end_index,
                    direction=match.direction,
                    distance_m=match.distance_m,
                    trace=pack_array(np.asarray(match.trace, dtype=float)),
                )
            )

    def get_custom_matches(self, section_id: str) -> List[CustomSectionMatch]:
        with self._transaction() as session:
            rows = session.scalars(
                select(CustomSectionMatchRow)
                .where(CustomSectionMatchRow.section_id == section_id)
                .order_by(CustomSectionMatchRow.activity_id, CustomSectionMatchRow.start_index)
            )
            return [
                CustomSectionMatch(
                    section_id=row.section_id,
                    activity_id=row.activity_id,
                    start_index=row.start_index,
                    end_index=row.end_index,
                    direction=row.direction,
                    distance_m=row.distance_m,
                    trace=[(float(a), float(b)) for a, b in unpack_points(row.trace)],
                )
                for row in rows
            ]

    @staticmethod
    def _custom_from_row(row: CustomSectionRow) -> CustomSection:
        return CustomSection(
            id=row.id,
            name=row.name,
            polyline=[(float(lat), float(lng)) for lat, lng in unpack_points(row.polyline)],
            source_activity_id=row.source_activity_id,
            start_index=row.start_index,
            end_index=row.end_index,
            sport_type=row.sport_type,
            distance_m=row.distance_m,
            created_at=row.created_at,
        )

    # ------------------------------------------------------------------
    # Engine state & stats
    # ------------------------------------------------------------------
    def groups_dirty(self) -> bool:
        with self._transaction() as session:
            row = session.get(EngineStateRow, GROUPS_DIRTY_KEY)
            if row is None:
                return True
            return row.value == "1"

    def mark_groups_dirty(self) -> None:
        with self._transaction() as session:
            self._put_state(session, GROUPS_DIRTY_KEY, "1")

    @staticmethod
    def _put_state(session: Session, key: str, value: str) -> None:
        session.merge(EngineStateRow(key=key, value=value))

    def date_range(self) -> tuple[Optional[int], Optional[int]]:
        with self._transaction() as session:
            row = session.execute(
                select(func.min(ActivityRow.start_date), func.max(ActivityRow.start_date))
            ).one()
            return row[0], row[1]

    def time_stream_count(self) -> int:
        with self._transaction() as session:
            return int(session.scalar(select(func.count()).select_from(TimeStreamRow)))
