"""Traversal timing for sections and route groups.

Laps are located by nearest-point matching of each activity against the
polyline (every complete pass, so out-and-backs and repeats yield several
laps) and timed from the activity's time stream:
``time[end_index] - time[start_index]``.  Per-activity and per-direction
summaries are aggregated with pandas.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .config import (
    MATCH_COVERAGE_THRESHOLD,
    MATCH_GATE_MAX_M,
    MATCH_TOLERANCE_M,
    SECTION_MAX_GAP_POINTS,
)
from .geometry.codec import as_point_array
from .geometry.preprocessing import prepare_track, track_length_m
from .geometry.traversal import find_traversals
from .models import (
    DIRECTION_REVERSE,
    DIRECTION_SAME,
    ActivityMetrics,
    ActivityRecord,
    RouteGroup,
    id_sort_key,
)
from .storage import TrackStore

LAP_COLUMNS = ["activity_id", "time", "pace", "distance", "direction", "start_index"]


@dataclass(slots=True)
class SectionLap:
    """One timed traversal; ``pace`` is metres per second."""

    id: str
    activity_id: str
    time: float
    pace: float
    distance: float
    direction: str
    start_index: int
    end_index: int


@dataclass(slots=True)
class SectionPerformanceRecord:
    """All laps of one activity over one polyline."""

    activity_id: str
    activity_name: Optional[str]
    activity_date: Optional[int]
    laps: List[SectionLap]
    lap_count: int
    best_time: float
    best_pace: float
    avg_time: float
    avg_pace: float
    direction: str
    section_distance: float


@dataclass(slots=True)
class DirectionStats:
    avg_time: Optional[float]
    last_activity: Optional[int]
    count: int


@dataclass(slots=True)
class SectionPerformanceResult:
    """Leaderboard-style view of every timed traversal of a polyline."""

    records: List[SectionPerformanceRecord] = field(default_factory=list)
    best_record: Optional[SectionPerformanceRecord] = None
    best_forward_record: Optional[SectionPerformanceRecord] = None
    best_reverse_record: Optional[SectionPerformanceRecord] = None
    forward_stats: Optional[DirectionStats] = None
    reverse_stats: Optional[DirectionStats] = None
    visit_count: int = 0
    untimed_activity_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class RoutePerformance:
    """One member of a route group, with metrics and timed traversal."""

    activity_id: str
    name: Optional[str]
    date: Optional[int]
    speed: Optional[float]
    duration: Optional[float]
    moving_time: Optional[float]
    distance: Optional[float]
    elevation_gain: Optional[float]
    avg_hr: Optional[float]
    avg_power: Optional[float]
    is_current: bool
    direction: str
    match_percentage: float
    route_time: Optional[float] = None


@dataclass(slots=True)
class RoutePerformanceResult:
    performances: List[RoutePerformance] = field(default_factory=list)
    best: Optional[RoutePerformance] = None
    current_rank: Optional[int] = None


class PerformanceExtractor:
    """Compute laps and summaries from stored tracks and time streams."""

    def __init__(
        self,
        store: TrackStore,
        *,
        tolerance_m: float = MATCH_TOLERANCE_M,
        coverage_threshold: float = MATCH_COVERAGE_THRESHOLD,
        gate_m: float = MATCH_GATE_MAX_M,
        max_gap: int = SECTION_MAX_GAP_POINTS,
    ) -> None:
        self.store = store
        self.tolerance_m = tolerance_m
        self.coverage_threshold = coverage_threshold
        self.gate_m = gate_m
        self.max_gap = max_gap
        self._log = logging.getLogger(self.__class__.__name__)

    def laps_for(
        self,
        activity_id: str,
        polyline: Sequence[Sequence[float]],
        track: np.ndarray,
        times: np.ndarray,
    ) -> List[SectionLap]:
        """Every disjoint timed pass of ``track`` over ``polyline``.

        Raises:
            ValueError: If ``times`` does not have one entry per track point.
        """

        if len(times) != len(track):
            raise ValueError(
                f"Time stream for {activity_id} has {len(times)} samples for {len(track)} points"
            )
        reference_points = as_point_array(polyline)
        if reference_points.shape[0] < 2 or track.shape[0] < 2:
            return []
        reference = prepare_track(reference_points)
        prepared = prepare_track(track, reference.transformer)
        laps: List[SectionLap] = []
        for traversal in find_traversals(
            prepared,
            reference,
            tolerance_m=self.tolerance_m,
            coverage_threshold=self.coverage_threshold,
            gate_m=self.gate_m,
            max_gap=self.max_gap,
        ):
            start, end = traversal.start_index, traversal.end_index
            elapsed = float(times[end] - times[start])
            if not math.isfinite(elapsed) or elapsed <= 0:
                self._log.debug(
                    "Skipping lap %s[%d:%d] with non-positive duration", activity_id, start, end
                )
                continue
            distance = track_length_m(track[start : end + 1])
            laps.append(
                SectionLap(
                    id=f"{activity_id}:{start}-{end}",
                    activity_id=activity_id,
                    time=elapsed,
                    pace=distance / elapsed,
                    distance=distance,
                    direction=traversal.direction,
                    start_index=start,
                    end_index=end,
                )
            )
        return laps

    def section_performances(
        self,
        polyline: Sequence[Sequence[float]],
        activity_ids: Iterable[str],
        *,
        section_distance: Optional[float] = None,
    ) -> SectionPerformanceResult:
        """Time every activity over ``polyline``; untimed ones only count as visits."""

        ids = list(dict.fromkeys(activity_ids))
        if section_distance is None:
            section_distance = track_length_m(polyline) if len(polyline) >= 2 else 0.0
        streams = self.store.load_time_streams(ids)
        timed_ids = [aid for aid in ids if aid in streams]
        tracks = self.store.load_tracks(timed_ids)
        laps: List[SectionLap] = []
        for activity_id in timed_ids:
            track = tracks.get(activity_id)
            if track is None:
                continue
            laps.extend(self.laps_for(activity_id, polyline, track, streams[activity_id]))
        records_meta = {r.id: r for r in self.store.list_activities(ids=timed_ids)}
        metrics = self.store.get_metrics(timed_ids)
        result = summarise_laps(laps, records_meta, metrics, section_distance)
        result.visit_count = len(ids)
        result.untimed_activity_ids = sorted(
            (aid for aid in ids if aid not in streams), key=id_sort_key
        )
        return result

    def route_performances(
        self, group: RouteGroup, current_activity_id: Optional[str] = None
    ) -> RoutePerformanceResult:
        """Metrics for each group member plus its timed pass of the consensus route."""

        ids = list(group.activity_ids)
        metrics = self.store.get_metrics(ids)
        records = {r.id: r for r in self.store.list_activities(ids=ids)}
        streams = self.store.load_time_streams(ids)
        tracks = self.store.load_tracks(streams.keys())
        matches = {m.activity_id: m for m in group.matches}
        performances: List[RoutePerformance] = []
        for activity_id in ids:
            record = records.get(activity_id)
            if record is None:
                continue
            metric = metrics.get(activity_id) or ActivityMetrics(activity_id=activity_id)
            route_time = None
            if activity_id in streams and activity_id in tracks:
                laps = self.laps_for(
                    activity_id, group.consensus_polyline, tracks[activity_id], streams[activity_id]
                )
                if laps:
                    route_time = min(lap.time for lap in laps)
            distance = metric.distance if metric.distance is not None else record.distance_m
            duration = metric.elapsed_time if metric.elapsed_time is not None else route_time
            moving = metric.moving_time
            speed_basis = moving or duration
            match = matches.get(activity_id)
            performances.append(
                RoutePerformance(
                    activity_id=activity_id,
                    name=metric.name or record.name,
                    date=metric.date if metric.date is not None else record.start_date,
                    speed=(distance / speed_basis) if distance and speed_basis else None,
                    duration=duration,
                    moving_time=moving,
                    distance=distance,
                    elevation_gain=metric.elevation_gain,
                    avg_hr=metric.avg_hr,
                    avg_power=metric.avg_power,
                    is_current=activity_id == current_activity_id,
                    direction=match.direction if match else DIRECTION_SAME,
                    match_percentage=match.match_percentage if match else 100.0,
                    route_time=route_time,
                )
            )
        performances.sort(key=lambda p: (p.date is None, p.date or 0, id_sort_key(p.activity_id)))
        ranked = [p for p in performances if _route_duration(p) is not None]
        ranked.sort(key=lambda p: (_route_duration(p), id_sort_key(p.activity_id)))
        best = ranked[0] if ranked else None
        current_rank = next(
            (idx for idx, p in enumerate(ranked, start=1) if p.is_current), None
        )
        return RoutePerformanceResult(
            performances=performances, best=best, current_rank=current_rank
        )


def _route_duration(perf: RoutePerformance) -> Optional[float]:
    if perf.route_time is not None:
        return perf.route_time
    return perf.moving_time or perf.duration


def summarise_laps(
    laps: Sequence[SectionLap],
    records: Mapping[str, ActivityRecord],
    metrics: Mapping[str, ActivityMetrics],
    section_distance: float,
) -> SectionPerformanceResult:
    """Aggregate laps into per-activity records and per-direction statistics."""

    if not laps:
        return SectionPerformanceResult()
    df = pd.DataFrame(
        [[lap.activity_id, lap.time, lap.pace, lap.distance, lap.direction, lap.start_index] for lap in laps],
        columns=LAP_COLUMNS,
    )
    per_activity = df.groupby("activity_id", sort=False).agg(
        lap_count=("time", "size"),
        best_time=("time", "min"),
        avg_time=("time", "mean"),
        best_pace=("pace", "max"),
        avg_pace=("pace", "mean"),
        forward=("direction", lambda s: int((s == DIRECTION_SAME).sum())),
    )

    def _meta(activity_id: str):
        metric = metrics.get(activity_id)
        record = records.get(activity_id)
        name = (metric.name if metric else None) or (record.name if record else None)
        date = metric.date if metric and metric.date is not None else None
        if date is None and record is not None:
            date = record.start_date
        return name, date

    laps_by_activity: Dict[str, List[SectionLap]] = {}
    for lap in sorted(laps, key=lambda l: l.start_index):
        laps_by_activity.setdefault(lap.activity_id, []).append(lap)

    by_id: Dict[str, SectionPerformanceRecord] = {}
    for activity_id, row in per_activity.iterrows():
        name, date = _meta(activity_id)
        lap_count = int(row["lap_count"])
        forward = int(row["forward"])
        by_id[activity_id] = SectionPerformanceRecord(
            activity_id=activity_id,
            activity_name=name,
            activity_date=date,
            laps=laps_by_activity[activity_id],
            lap_count=lap_count,
            best_time=float(row["best_time"]),
            best_pace=float(row["best_pace"]),
            avg_time=float(row["avg_time"]),
            avg_pace=float(row["avg_pace"]),
            direction=DIRECTION_SAME if forward * 2 >= lap_count else DIRECTION_REVERSE,
            section_distance=section_distance,
        )

    records_sorted = sorted(
        by_id.values(),
        key=lambda r: (r.activity_date is None, r.activity_date or 0, id_sort_key(r.activity_id)),
    )
    result = SectionPerformanceResult(records=records_sorted)
    result.best_record = _best_of(df, by_id)
    result.best_forward_record = _best_of(df[df["direction"] == DIRECTION_SAME], by_id)
    result.best_reverse_record = _best_of(df[df["direction"] == DIRECTION_REVERSE], by_id)
    result.forward_stats = _direction_stats(df, DIRECTION_SAME, by_id)
    result.reverse_stats = _direction_stats(df, DIRECTION_REVERSE, by_id)
    return result


def _best_of(
    df: pd.DataFrame, by_id: Mapping[str, SectionPerformanceRecord]
) -> Optional[SectionPerformanceRecord]:
    if df.empty:
        return None
    ordered = df.sort_values(["time", "activity_id"], kind="mergesort")
    return by_id[ordered.iloc[0]["activity_id"]]


def _direction_stats(
    df: pd.DataFrame, direction: str, by_id: Mapping[str, SectionPerformanceRecord]
) -> DirectionStats:
    subset = df[df["direction"] == direction]
    if subset.empty:
        return DirectionStats(avg_time=None, last_activity=None, count=0)
    dates = [
        by_id[aid].activity_date
        for aid in subset["activity_id"].unique()
        if by_id[aid].activity_date is not None
    ]
    return DirectionStats(
        avg_time=float(subset["time"].mean()),
        last_activity=max(dates) if dates else None,
        count=int(len(subset)),
    )
