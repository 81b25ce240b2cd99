"""Route grouping of whole activities."""

from __future__ import annotations

from typing import Dict

import numpy as np
import pytest

from route_engine.geometry.preprocessing import track_length_m
from route_engine.grouping import RouteGrouper, best_times, route_group_id
from route_engine.models import DIRECTION_REVERSE, DIRECTION_SAME
from route_engine.storage import TrackInput, TrackStore

from conftest import track

ROUTE = [(0.0, 0.0), (1500.0, 0.0), (1500.0, 1200.0)]


def _jitter(points: np.ndarray, seed: int, scale: float = 1e-5) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return points + rng.normal(0.0, scale, size=points.shape)


def _populate(store: TrackStore, tracks: Dict[str, np.ndarray], sport: str = "Run") -> None:
    store.upsert_activities(
        [
            TrackInput(id=aid, sport_type=sport, points=pts, distance_m=track_length_m(pts))
            for aid, pts in tracks.items()
        ]
    )


def test_same_route_is_grouped(store: TrackStore) -> None:
    base = track(ROUTE)
    _populate(
        store,
        {
            "1": _jitter(base, 1),
            "2": _jitter(base, 2),
            "3": _jitter(base[::-1].copy(), 3),
            "4": track([(0.0, 3000.0), (1500.0, 3000.0), (1500.0, 4200.0)]),
        },
    )
    groups = RouteGrouper(store).group()
    assert len(groups) == 1
    group = groups[0]
    assert group.activity_ids == ["1", "2", "3"]
    assert group.id.startswith("route_")
    assert group.representative_id in group.activity_ids
    directions = {m.activity_id: m.direction for m in group.matches}
    assert directions[group.representative_id] == DIRECTION_SAME
    assert directions["3"] == (
        DIRECTION_SAME if group.representative_id == "3" else DIRECTION_REVERSE
    )
    assert all(m.match_percentage > 90.0 for m in group.matches)
    assert group.distance_m == pytest.approx(2700.0, rel=0.05)


def test_group_id_is_stable_as_group_grows(store: TrackStore) -> None:
    base = track(ROUTE)
    _populate(store, {"1": _jitter(base, 1), "2": _jitter(base, 2)})
    before = RouteGrouper(store).group()[0].id
    _populate(store, {"3": _jitter(base, 3)})
    after = RouteGrouper(store).group()[0]
    assert after.id == before
    assert after.activity_ids == ["1", "2", "3"]
    assert before == route_group_id("Run", ["2", "1"])


def test_short_and_mismatched_tracks_are_not_grouped(store: TrackStore) -> None:
    short = track([(0.0, 0.0), (300.0, 0.0)])
    _populate(
        store,
        {
            "1": short,
            "2": short.copy(),
            "3": track(ROUTE),
            "4": track([(0.0, 0.0), (1500.0, 0.0), (1500.0, 2500.0)]),
        },
    )
    assert RouteGrouper(store).group() == []


def test_compare_reports_reasons() -> None:
    grouper = RouteGrouper(store=None)
    a = track(ROUTE)
    detour = track([(0.0, 0.0), (0.0, 1200.0), (1500.0, 1200.0)])
    length = track_length_m(a)
    assert grouper.compare(a, a, length, length).grouped
    assert grouper.compare(a, a, 100.0, 100.0).reason == "too short"
    assert grouper.compare(a, a, length, length * 2).reason == "length differs"
    result = grouper.compare(a, detour, length, track_length_m(detour))
    assert not result.grouped
    assert result.reason == "middle points differ"


def test_loops_from_same_start_are_grouped() -> None:
    grouper = RouteGrouper(store=None)
    loop = track([(0.0, 0.0), (1000.0, 0.0), (1000.0, 1000.0), (0.0, 1000.0), (0.0, 0.0)])
    backwards = loop[::-1].copy()
    length = track_length_m(loop)
    result = grouper.compare(loop, backwards, length, length)
    assert result.grouped
    assert result.direction == DIRECTION_REVERSE


def test_best_times_uses_known_durations(store: TrackStore) -> None:
    base = track(ROUTE)
    _populate(store, {"1": _jitter(base, 1), "2": _jitter(base, 2)})
    groups = RouteGrouper(store).group()
    best_times(groups, {"1": 900.0, "2": None})
    assert groups[0].best_time == 900.0
    best_times(groups, {})
    assert groups[0].best_time is None
