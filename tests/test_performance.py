"""Lap extraction and performance summaries."""

from __future__ import annotations

import numpy as np
import pytest

from route_engine.geometry.preprocessing import track_length_m
from route_engine.models import ActivityMetrics, DIRECTION_REVERSE, DIRECTION_SAME
from route_engine.performance import PerformanceExtractor, SectionLap, summarise_laps
from route_engine.storage import TrackInput, TrackStore

from conftest import track

OUT_AND_BACK = [(0.0, 0.0), (2000.0, 0.0), (2000.0, 5.0), (0.0, 5.0)]
SEGMENT = [(200.0, 0.0), (1500.0, 0.0)]


def _lap(activity_id: str, seconds: float, direction: str = DIRECTION_SAME, start: int = 0) -> SectionLap:
    return SectionLap(
        id=f"{activity_id}:{start}",
        activity_id=activity_id,
        time=seconds,
        pace=1000.0 / seconds,
        distance=1000.0,
        direction=direction,
        start_index=start,
        end_index=start + 10,
    )


def test_out_and_back_gives_two_timed_laps(store: TrackStore) -> None:
    points = track(OUT_AND_BACK)
    store.upsert_activities(
        [TrackInput(id="1", sport_type="Run", points=points, distance_m=track_length_m(points))]
    )
    store.set_time_streams({"1": np.arange(len(points), dtype=float) * 3.0})
    result = PerformanceExtractor(store).section_performances(track(SEGMENT), ["1"])

    assert len(result.records) == 1
    record = result.records[0]
    assert record.lap_count == 2
    assert all(lap.time > 0 for lap in record.laps)
    assert [lap.direction for lap in record.laps] == [DIRECTION_SAME, DIRECTION_REVERSE]
    assert record.laps[0].time == pytest.approx(390.0, abs=15.0)
    assert result.forward_stats.count == 1
    assert result.reverse_stats.count == 1
    assert result.visit_count == 1
    assert result.untimed_activity_ids == []


def test_untimed_activities_are_listed(store: TrackStore) -> None:
    points = track(OUT_AND_BACK)
    store.upsert_activities(
        [TrackInput(id="1", sport_type="Run", points=points, distance_m=track_length_m(points))]
    )
    result = PerformanceExtractor(store).section_performances(track(SEGMENT), ["1"])
    assert result.records == []
    assert result.untimed_activity_ids == ["1"]
    assert result.visit_count == 1


def test_laps_require_aligned_time_stream(store: TrackStore) -> None:
    points = track(OUT_AND_BACK)
    with pytest.raises(ValueError):
        PerformanceExtractor(store).laps_for("1", track(SEGMENT), points, np.zeros(3))


def test_summarise_picks_best_per_direction() -> None:
    laps = [
        _lap("1", 300.0),
        _lap("1", 280.0, DIRECTION_REVERSE, start=50),
        _lap("2", 250.0),
    ]
    metrics = {"2": ActivityMetrics("2", name="Tempo", date=1_700_000_100)}
    result = summarise_laps(laps, {}, metrics, 1000.0)

    assert result.best_record.activity_id == "2"
    assert result.best_forward_record.activity_id == "2"
    assert result.best_reverse_record.activity_id == "1"
    first = next(r for r in result.records if r.activity_id == "1")
    assert first.lap_count == 2
    assert first.best_time == 280.0
    assert first.avg_time == pytest.approx(290.0)
    assert first.direction == DIRECTION_SAME
    assert result.forward_stats.count == 2
    assert result.forward_stats.avg_time == pytest.approx(275.0)
    assert result.forward_stats.last_activity == 1_700_000_100
    assert [r.activity_id for r in result.records] == ["2", "1"]
    assert result.records[0].activity_name == "Tempo"


def test_summarise_without_laps() -> None:
    result = summarise_laps([], {}, {}, 500.0)
    assert result.records == []
    assert result.best_record is None
