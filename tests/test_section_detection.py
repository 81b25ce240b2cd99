"""End-to-end multiscale section detection on synthetic activities."""

from __future__ import annotations

from typing import Dict, List

import numpy as np
import pytest

from route_engine.geometry.preprocessing import track_length_m
from route_engine.models import DIRECTION_REVERSE, DIRECTION_SAME
from route_engine.sections.detector import (
    PHASE_BUILDING_RTREES,
    PHASE_CLUSTERING,
    PHASE_LOADING,
    PHASES,
    DetectionCancelled,
    ProgressReporter,
    SectionDetector,
    reselect_representative,
)
from route_engine.storage import TrackInput, TrackStore

from conftest import crossing_tracks, track


class _Recorder(ProgressReporter):
    def __init__(self, cancel_at: str = "") -> None:
        self.phases: List[str] = []
        self.cancel_at = cancel_at

    def enter_phase(self, phase: str, total: int = 0) -> None:
        if phase == self.cancel_at:
            raise DetectionCancelled(phase)
        self.phases.append(phase)


def _westbound() -> np.ndarray:
    """Travels the shared road east to west, arriving and leaving diagonally."""

    return track([(3500.0, 1000.0), (2500.0, 2.0), (0.0, 2.0), (-1000.0, -1000.0)])


def _populate(store: TrackStore, tracks: Dict[str, np.ndarray], sport: str = "Run") -> None:
    store.upsert_activities(
        [
            TrackInput(id=aid, sport_type=sport, points=pts, distance_m=track_length_m(pts))
            for aid, pts in tracks.items()
        ]
    )


def test_crossing_activities_share_one_section(store: TrackStore) -> None:
    tracks = crossing_tracks()
    _populate(store, tracks)
    sections = SectionDetector(store).detect()

    assert len(sections) == 1
    section = sections[0]
    assert section.activity_ids == ["1", "2"]
    assert section.visit_count == 2
    assert section.scale == "long"
    assert section.id.startswith("sec_")
    assert 0.0 < section.confidence <= 1.0
    assert section.distance_m == pytest.approx(2500.0, rel=0.1)

    # The polyline is an exact sub-path of the representative's own track.
    rep = section.representative_activity_id
    portion = max(
        (p for p in section.portions if p.activity_id == rep),
        key=lambda p: p.end_index - p.start_index,
    )
    np.testing.assert_array_equal(
        np.asarray(section.polyline), tracks[rep][portion.start_index : portion.end_index + 1]
    )


def test_detection_is_deterministic(store: TrackStore) -> None:
    _populate(store, crossing_tracks())
    first = SectionDetector(store).detect()
    second = SectionDetector(store).detect()
    assert [s.id for s in first] == [s.id for s in second]
    assert first[0].polyline == second[0].polyline
    assert first[0].representative_activity_id == second[0].representative_activity_id


def test_reverse_traversal_joins_section(store: TrackStore) -> None:
    tracks = crossing_tracks()
    tracks["3"] = _westbound()
    _populate(store, tracks)
    sections = SectionDetector(store).detect()
    assert len(sections) == 1
    section = sections[0]
    assert section.activity_ids == ["1", "2", "3"]
    directions = {p.activity_id: p.direction for p in section.portions}
    assert directions["3"] != directions["1"]
    assert DIRECTION_REVERSE in directions.values()


def test_out_and_back_is_split_at_the_turnaround(store: TrackStore) -> None:
    _populate(
        store,
        {
            "1": track([(0.0, 0.0), (2000.0, 0.0), (0.0, 0.0)]),
            "2": track([(0.0, 3.0), (2000.0, 3.0), (0.0, 3.0)]),
        },
    )
    sections = SectionDetector(store).detect()

    assert len(sections) == 1
    section = sections[0]
    assert section.distance_m == pytest.approx(2000.0, rel=0.05)
    assert section.activity_ids == ["1", "2"]
    assert section.visit_count == 4
    assert {(p.activity_id, p.direction) for p in section.portions} == {
        ("1", DIRECTION_SAME),
        ("1", DIRECTION_REVERSE),
        ("2", DIRECTION_SAME),
        ("2", DIRECTION_REVERSE),
    }
    first, second = sorted(
        (p for p in section.portions if p.activity_id == "1"), key=lambda p: p.start_index
    )
    assert first.end_index < second.start_index


def test_sports_are_detected_separately(store: TrackStore) -> None:
    tracks = crossing_tracks()
    _populate(store, {"1": tracks["1"]}, sport="Run")
    _populate(store, {"2": tracks["2"]}, sport="Ride")
    assert SectionDetector(store).detect() == []


def test_sport_filter(store: TrackStore) -> None:
    _populate(store, crossing_tracks(), sport="Ride")
    assert SectionDetector(store).detect("Run") == []
    assert len(SectionDetector(store).detect("Ride")) == 1


def test_unrelated_activities_produce_nothing(store: TrackStore) -> None:
    _populate(
        store,
        {
            "1": track([(0.0, 0.0), (2000.0, 0.0)]),
            "2": track([(0.0, 5000.0), (2000.0, 5000.0)]),
        },
    )
    assert SectionDetector(store).detect() == []


def test_phases_are_reported_in_order(store: TrackStore) -> None:
    _populate(store, crossing_tracks())
    recorder = _Recorder()
    SectionDetector(store).detect(reporter=recorder)
    assert recorder.phases == list(PHASES[:-1])


def test_cancellation_stops_at_phase_boundary(store: TrackStore) -> None:
    _populate(store, crossing_tracks())
    recorder = _Recorder(cancel_at=PHASE_CLUSTERING)
    with pytest.raises(DetectionCancelled):
        SectionDetector(store).detect(reporter=recorder)
    assert recorder.phases[:2] == [PHASE_LOADING, PHASE_BUILDING_RTREES]
    assert PHASE_CLUSTERING not in recorder.phases


def test_pinned_reference_and_names_are_applied(store: TrackStore) -> None:
    tracks = crossing_tracks()
    _populate(store, tracks)
    section_id = SectionDetector(store).detect()[0].id
    sections = SectionDetector(store).detect(
        pinned={section_id: "2"}, names={section_id: "Canal road"}
    )
    section = sections[0]
    assert section.representative_activity_id == "2"
    assert section.reference_user_defined
    assert section.name == "Canal road"
    assert section.auto_name == "Run section 1"


def test_reselect_after_losing_representative(store: TrackStore) -> None:
    tracks = crossing_tracks()
    tracks["3"] = _westbound()
    _populate(store, tracks)
    section = SectionDetector(store).detect()[0]
    removed = section.representative_activity_id
    section.portions = [p for p in section.portions if p.activity_id != removed]
    section.activity_ids = [a for a in section.activity_ids if a != removed]
    remaining = {aid: tracks[aid] for aid in section.activity_ids}
    assert reselect_representative(section, remaining)
    assert section.representative_activity_id in remaining
    assert not section.reference_user_defined
