"""Similarity scoring for comparing tracks and picking cluster medoids."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import shapely
from shapely.geometry import LineString

from ..models import id_sort_key
from .preprocessing import MetricArray, resample_by_distance


@dataclass(slots=True)
class MedoidChoice:
    """Winning member of a cluster and its deviation from the others."""

    member_id: str
    total_deviation_m: float
    mean_deviation_m: float
    deviations: Dict[str, float]


def average_min_distance(points: MetricArray, reference: MetricArray) -> float:
    """Mean distance from each of ``points`` to the polyline ``reference``."""

    if points.shape[0] == 0 or reference.shape[0] == 0:
        return float("inf")
    geoms = shapely.points(points)
    if reference.shape[0] == 1:
        target = shapely.points(reference[0])
    else:
        target = LineString(reference)
    return float(np.mean(shapely.distance(geoms, target)))


def symmetric_amd(a: MetricArray, b: MetricArray) -> float:
    """Average of the two directed average-minimum-distances."""

    return 0.5 * (average_min_distance(a, b) + average_min_distance(b, a))


def amd_to_percentage(amd_m: float, perfect_m: float, zero_m: float) -> float:
    """Map an average minimum distance onto a 0-100 match score."""

    if not np.isfinite(amd_m) or amd_m >= zero_m:
        return 0.0
    if amd_m <= perfect_m:
        return 100.0
    return float(100.0 * (zero_m - amd_m) / (zero_m - perfect_m))


def select_medoid(
    members: Mapping[str, MetricArray],
    *,
    max_pairwise: int,
    resample_interval_m: Optional[float] = None,
) -> MedoidChoice:
    """Pick the member with the lowest total deviation to the others.

    Members are compared with :func:`symmetric_amd`.  Past ``max_pairwise``
    members each one is scored against an evenly spaced sample of the others
    (by sorted id) and totals are normalised by the number of comparisons.
    Ties resolve to the lowest id.
    """

    if not members:
        raise ValueError("Cannot choose a medoid from an empty cluster")
    ordered = sorted(members, key=id_sort_key)
    if len(ordered) == 1:
        only = ordered[0]
        return MedoidChoice(only, 0.0, 0.0, {only: 0.0})

    sampled: Dict[str, MetricArray] = {}
    for member_id in ordered:
        points = members[member_id]
        if resample_interval_m and points.shape[0] >= 2:
            points = resample_by_distance(points, resample_interval_m)
        sampled[member_id] = points

    pair_cache: Dict[tuple, float] = {}

    def _pair(a: str, b: str) -> float:
        key = (a, b) if id_sort_key(a) <= id_sort_key(b) else (b, a)
        if key not in pair_cache:
            pair_cache[key] = symmetric_amd(sampled[key[0]], sampled[key[1]])
        return pair_cache[key]

    totals: Dict[str, float] = {}
    means: Dict[str, float] = {}
    for member_id in ordered:
        others = [other for other in ordered if other != member_id]
        others = _spread_sample(others, max(1, max_pairwise - 1))
        distances = [_pair(member_id, other) for other in others]
        totals[member_id] = float(np.sum(distances))
        means[member_id] = float(np.mean(distances))

    score_key = means if len(ordered) > max_pairwise else totals
    winner = min(ordered, key=lambda m: (round(score_key[m], 6), id_sort_key(m)))
    return MedoidChoice(
        member_id=winner,
        total_deviation_m=totals[winner],
        mean_deviation_m=means[winner],
        deviations={m: _pair(winner, m) for m in ordered if m != winner},
    )


def _spread_sample(items: Sequence[str], limit: int) -> List[str]:
    if len(items) <= limit:
        return list(items)
    picks = np.linspace(0, len(items) - 1, num=limit).round().astype(int)
    return [items[i] for i in sorted(set(picks.tolist()))]
