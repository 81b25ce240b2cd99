"""Lateral proximity matching of one track against a reference polyline.

Every matcher in the engine is built from the same primitive: project each
point of a track onto a reference line, keep the points whose lateral offset
stays under a tolerance, and reason about the resulting runs.  Section
detection uses it to find shared stretches between two activities, the custom
section matcher and the performance extractor use it to find traversals of a
fixed polyline in both directions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import shapely

from ..models import DIRECTION_REVERSE, DIRECTION_SAME
from .preprocessing import MetricArray, PreparedTrack

IndexRun = Tuple[int, int]


@dataclass(slots=True)
class LateralMatch:
    """Per-point offsets from, and positions along, a reference line."""

    offsets: MetricArray
    projections: MetricArray


@dataclass(slots=True)
class SharedRun:
    """A stretch two tracks have in common, as index ranges on both."""

    a_start: int
    a_end: int
    b_start: int
    b_end: int
    direction: str
    length_m: float
    mean_offset_m: float


@dataclass(slots=True)
class Traversal:
    """A complete pass of a track over a reference polyline."""

    start_index: int
    end_index: int
    direction: str
    coverage: float
    mean_offset_m: float
    max_offset_m: float


def lateral_match(points: MetricArray, reference: PreparedTrack) -> LateralMatch:
    """Project metric ``points`` onto ``reference`` (which must have a line)."""

    if reference.line is None:
        raise ValueError("Reference track needs at least two points")
    if points.shape[0] == 0:
        empty = np.zeros(0, dtype=float)
        return LateralMatch(empty, empty)
    geoms = shapely.points(points)
    offsets = np.asarray(shapely.distance(geoms, reference.line), dtype=float)
    projections = np.asarray(
        shapely.line_locate_point(reference.line, geoms), dtype=float
    )
    return LateralMatch(offsets=offsets, projections=projections)


def near_runs(mask: np.ndarray, max_gap: int) -> List[IndexRun]:
    """Return inclusive index runs of ``mask``, bridging short False gaps.

    Runs always start and end on a True sample; up to ``max_gap`` consecutive
    False samples inside a run are absorbed.
    """

    runs: List[IndexRun] = []
    indices = np.flatnonzero(mask)
    if indices.size == 0:
        return runs
    start = prev = int(indices[0])
    for idx in indices[1:]:
        idx = int(idx)
        if idx - prev - 1 > max_gap:
            runs.append((start, prev))
            start = idx
        prev = idx
    runs.append((start, prev))
    return runs


def progress_direction(projections: MetricArray) -> str:
    """Classify movement along a reference line from successive projections."""

    if projections.size < 2:
        return DIRECTION_SAME
    deltas = np.diff(projections)
    forward = float(np.sum(deltas[deltas > 0]))
    backward = float(-np.sum(deltas[deltas < 0]))
    return DIRECTION_SAME if forward >= backward else DIRECTION_REVERSE


def shared_runs(
    a: PreparedTrack,
    b: PreparedTrack,
    *,
    tolerance_m: float,
    min_length_m: float,
    max_length_m: float,
    max_gap: int,
) -> List[SharedRun]:
    """Find every stretch of ``a`` lying within ``tolerance_m`` of ``b``.

    A stretch qualifies when a window of ``min_length_m`` fits inside it, i.e.
    the run of on-tolerance points of ``a`` is at least that long.  The
    matching range on ``b`` is then confirmed from b's side so that detours of
    ``b`` between the two ends are trimmed away.
    """

    if a.line is None or b.line is None:
        return []
    a_on_b = lateral_match(a.metric, b)
    a_near = a_on_b.offsets <= tolerance_m
    if not a_near.any():
        return []
    b_on_a = lateral_match(b.metric, a)
    b_runs = near_runs(b_on_a.offsets <= tolerance_m, max_gap)
    results: List[SharedRun] = []
    for a_start, a_end in near_runs(a_near, max_gap):
        length = float(a.cumulative_m[a_end] - a.cumulative_m[a_start])
        if length < min_length_m or length > max_length_m:
            continue
        window = a_on_b.projections[a_start : a_end + 1]
        lo = float(np.min(window))
        hi = float(np.max(window))
        b_start = int(np.searchsorted(b.cumulative_m, lo, side="left"))
        b_end = int(np.searchsorted(b.cumulative_m, hi, side="right")) - 1
        b_start = min(max(b_start, 0), len(b) - 1)
        b_end = min(max(b_end, b_start), len(b) - 1)
        confirmed = _best_overlap(b_runs, (b_start, b_end))
        if confirmed is None:
            continue
        b_start, b_end = confirmed
        if b_end <= b_start or a_end <= a_start:
            continue
        results.append(
            SharedRun(
                a_start=a_start,
                a_end=a_end,
                b_start=b_start,
                b_end=b_end,
                direction=progress_direction(window),
                length_m=length,
                mean_offset_m=float(np.mean(a_on_b.offsets[a_start : a_end + 1])),
            )
        )
    return results


def find_traversals(
    track: PreparedTrack,
    reference: PreparedTrack,
    *,
    tolerance_m: float,
    coverage_threshold: float,
    gate_m: float,
    max_gap: int,
) -> List[Traversal]:
    """Locate every complete pass of ``track`` over ``reference``.

    A pass runs from one end gate of the reference to the other while staying
    within ``tolerance_m``.  Entering at the start gate and leaving at the end
    gate is a ``same`` pass; the opposite order is ``reverse``.  Inside each
    gate visit the sample closest to the polyline end is used. When an
    out-and-back turns inside a gate, the return pass starts on the sample
    after the turnaround so consecutive passes never share a point.
    """

    if reference.line is None or track.metric.shape[0] < 2:
        return []
    length = reference.length_m
    if length <= 0:
        return []
    gate = max(min(gate_m, length * 0.25), 1e-6)
    match = lateral_match(track.metric, reference)
    near = match.offsets <= tolerance_m
    results: List[Traversal] = []
    for run_start, run_end in near_runs(near, max_gap):
        visits = _gate_visits(
            match, near, run_start, run_end, length=length, gate=gate
        )
        last_end = -1
        for (gate_a, idx_a), (gate_b, idx_b) in zip(visits, visits[1:]):
            if idx_a == last_end:
                idx_a += 1
            if gate_a == gate_b or idx_b <= idx_a:
                continue
            span = match.projections[idx_a : idx_b + 1]
            coverage = float((np.max(span) - np.min(span)) / length)
            if coverage < coverage_threshold:
                continue
            offsets = match.offsets[idx_a : idx_b + 1]
            results.append(
                Traversal(
                    start_index=idx_a,
                    end_index=idx_b,
                    direction=DIRECTION_SAME if gate_a == "start" else DIRECTION_REVERSE,
                    coverage=min(coverage, 1.0),
                    mean_offset_m=float(np.mean(offsets)),
                    max_offset_m=float(np.max(offsets)),
                )
            )
            last_end = idx_b
    return results


def _gate_visits(
    match: LateralMatch,
    near: np.ndarray,
    run_start: int,
    run_end: int,
    *,
    length: float,
    gate: float,
) -> List[Tuple[str, int]]:
    """Collapse consecutive in-gate samples into (gate, best index) visits."""

    visits: List[Tuple[str, int]] = []
    current: Optional[str] = None
    best_idx = -1
    best_score = float("inf")
    for idx in range(run_start, run_end + 1):
        label: Optional[str] = None
        score = float("inf")
        if near[idx]:
            proj = float(match.projections[idx])
            if proj <= gate:
                label, score = "start", proj + float(match.offsets[idx])
            elif proj >= length - gate:
                label, score = "end", (length - proj) + float(match.offsets[idx])
        if label != current:
            if current is not None:
                visits.append((current, best_idx))
            current = label
            best_idx, best_score = idx, score
        elif label is not None and score < best_score:
            best_idx, best_score = idx, score
    if current is not None:
        visits.append((current, best_idx))
    return visits


def _best_overlap(runs: List[IndexRun], target: IndexRun) -> Optional[IndexRun]:
    best: Optional[IndexRun] = None
    best_size = 0
    for start, end in runs:
        lo = max(start, target[0])
        hi = min(end, target[1])
        size = hi - lo
        if size > best_size:
            best, best_size = (lo, hi), size
    return best
