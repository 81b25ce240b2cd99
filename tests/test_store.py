"""Tests for the SQLite track store."""

from __future__ import annotations

import numpy as np
import pytest

from route_engine.errors import StorageError
from route_engine.geometry.preprocessing import track_length_m
from route_engine.models import ActivityMetrics, Bounds, Section, SectionPortion
from route_engine.storage import TrackInput, TrackStore

from conftest import track


def _input(activity_id: str, points: np.ndarray, sport: str = "Run") -> TrackInput:
    return TrackInput(
        id=activity_id,
        sport_type=sport,
        points=points,
        distance_m=track_length_m(points),
    )


def _section(section_id: str, activity_ids, points) -> Section:
    polyline = [(float(a), float(b)) for a, b in points]
    return Section(
        id=section_id,
        sport_type="Run",
        scale="short",
        polyline=polyline,
        representative_activity_id=activity_ids[0],
        activity_ids=list(activity_ids),
        portions=[
            SectionPortion(aid, 0, len(points) - 1, track_length_m(points)) for aid in activity_ids
        ],
        visit_count=len(activity_ids),
        distance_m=track_length_m(points),
        confidence=0.5,
        average_spread=2.0,
        bounds=Bounds.from_points(polyline),
    )


def test_upsert_is_idempotent(store: TrackStore) -> None:
    points = track([(0.0, 0.0), (500.0, 0.0)])
    assert store.upsert_activities([_input("1", points)]) == ["1"]
    assert store.upsert_activities([_input("1", points)]) == []
    assert store.activity_count() == 1
    record = store.get_activity("1")
    assert record is not None
    assert record.point_count == len(points)
    assert record.bounds == Bounds.from_points(points)


def test_replacing_track_with_new_length_drops_time_stream(store: TrackStore) -> None:
    points = track([(0.0, 0.0), (500.0, 0.0)])
    store.upsert_activities([_input("1", points)])
    store.set_time_streams({"1": np.arange(len(points), dtype=float)})
    assert store.time_stream_ids(["1"]) == {"1"}

    longer = track([(0.0, 0.0), (800.0, 0.0)])
    assert store.upsert_activities([_input("1", longer)]) == ["1"]
    assert store.time_stream_ids(["1"]) == set()
    np.testing.assert_allclose(store.load_track("1"), longer)


def test_loaded_tracks_are_read_only(store: TrackStore) -> None:
    store.upsert_activities([_input("1", track([(0.0, 0.0), (100.0, 0.0)]))])
    loaded = store.load_track("1")
    with pytest.raises(ValueError):
        loaded[0, 0] = 0.0


def test_metrics_and_names(store: TrackStore) -> None:
    store.upsert_activities([_input("1", track([(0.0, 0.0), (100.0, 0.0)]))])
    store.set_metrics([ActivityMetrics("1", name="Morning run", date=1_700_000_000, moving_time=600.0)])
    metrics = store.get_metrics(["1"])
    assert metrics["1"].moving_time == 600.0
    assert store.get_activity("1").name == "Morning run"

    store.set_route_name("route_x", "Loop")
    assert store.get_route_name("route_x") == "Loop"
    store.set_route_name("route_x", None)
    assert store.get_route_name("route_x") is None


def test_section_round_trip_and_summaries(store: TrackStore) -> None:
    points = track([(0.0, 0.0), (300.0, 0.0)])
    store.upsert_activities([_input("1", points), _input("2", points)])
    store.replace_sections([_section("sec_a", ["1", "2"], points)])
    store.set_section_name("sec_a", "Riverside")

    loaded = store.get_section("sec_a")
    assert loaded.activity_ids == ["1", "2"]
    assert loaded.name == "Riverside"
    assert loaded.portions[0].activity_id == "1"

    summaries = store.section_summaries()
    assert [s.id for s in summaries] == ["sec_a"]
    assert summaries[0].activity_count == 2
    assert summaries[0].name == "Riverside"
    assert store.sections_for_activity("2") == ["sec_a"]


def test_names_survive_section_replacement(store: TrackStore) -> None:
    points = track([(0.0, 0.0), (300.0, 0.0)])
    store.upsert_activities([_input("1", points), _input("2", points)])
    store.replace_sections([_section("sec_a", ["1", "2"], points)])
    store.set_section_name("sec_a", "Riverside")
    store.replace_sections([])
    assert store.section_count() == 0
    assert store.all_section_names() == {"sec_a": "Riverside"}


def test_remove_activities_applies_section_patches(store: TrackStore) -> None:
    points = track([(0.0, 0.0), (300.0, 0.0)])
    store.upsert_activities([_input(i, points) for i in ("1", "2", "3")])
    store.replace_sections(
        [_section("sec_a", ["1", "2"], points), _section("sec_b", ["1", "2", "3"], points)]
    )
    patched = store.get_section("sec_b")
    patched.activity_ids = ["2", "3"]
    patched.portions = [p for p in patched.portions if p.activity_id != "1"]

    removed = store.remove_activities(
        ["1", "missing"], updated_sections=[patched], deleted_section_ids=["sec_a"]
    )
    assert removed == ["1"]
    assert store.get_section("sec_a") is None
    assert store.get_section("sec_b").activity_ids == ["2", "3"]
    assert store.sections_for_activity("1") == []
    assert store.load_track("1") is None


def test_failed_transaction_rolls_back(store: TrackStore) -> None:
    points = track([(0.0, 0.0), (300.0, 0.0)])
    store.upsert_activities([_input("1", points)])
    broken = _section("sec_a", ["1"], points)
    broken.sport_type = None  # violates NOT NULL
    with pytest.raises(StorageError):
        store.replace_sections([_section("sec_ok", ["1"], points), broken])
    assert store.section_count() == 0


def test_clear_removes_everything(store: TrackStore) -> None:
    store.upsert_activities([_input("1", track([(0.0, 0.0), (100.0, 0.0)]))])
    store.set_section_name("sec_a", "x")
    store.clear()
    assert store.activity_count() == 0
    assert store.all_section_names() == {}
    assert store.load_track("1") is None


def test_store_persists_across_instances(tmp_path) -> None:
    path = str(tmp_path / "persist.db")
    points = track([(0.0, 0.0), (200.0, 0.0)])
    first = TrackStore(path)
    first.upsert_activities([_input("7", points, sport="Ride")])
    first.close()

    second = TrackStore(path)
    try:
        assert second.activity_ids("Ride") == ["7"]
        np.testing.assert_allclose(second.load_track("7"), points)
    finally:
        second.close()
