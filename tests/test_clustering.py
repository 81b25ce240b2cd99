"""Union-find clustering and section postprocessing."""

from __future__ import annotations

import pytest

from route_engine.config import SECTION_SCALES
from route_engine.geometry.traversal import SharedRun
from route_engine.models import DIRECTION_REVERSE, DIRECTION_SAME, Bounds, Section, SectionPortion
from route_engine.sections.clustering import (
    PairOverlap,
    UnionFind,
    cluster_overlaps,
    merge_ranges,
    ranges_overlap,
)
from route_engine.sections.postprocess import (
    PortionMatcher,
    assign_auto_names,
    deduplicate_sections,
    dense_spans,
    fold_index,
    merge_nearby_sections,
    resolve_id_collisions,
    section_confidence,
    sort_sections,
    split_folding_sections,
    split_high_variance_sections,
    stable_section_id,
)

from conftest import track


def _run(a, b) -> SharedRun:
    return SharedRun(a[0], a[1], b[0], b[1], "same", 500.0, 3.0)


def _section(section_id, scale, activity_ids, vertices, visits=None) -> Section:
    polyline = [(float(lat), float(lng)) for lat, lng in track(vertices)]
    return Section(
        id=section_id,
        sport_type="Run",
        scale=scale,
        polyline=polyline,
        representative_activity_id=activity_ids[0],
        activity_ids=list(activity_ids),
        portions=[],
        visit_count=visits if visits is not None else len(activity_ids),
        distance_m=500.0,
        confidence=0.5,
        average_spread=1.0,
        bounds=Bounds.from_points(polyline),
    )


def test_union_find_groups() -> None:
    uf = UnionFind()
    for item in "abcde":
        uf.add(item)
    uf.union("a", "b")
    uf.union("c", "d")
    uf.union("b", "d")
    groups = sorted(sorted(g) for g in uf.groups())
    assert groups == [["a", "b", "c", "d"], ["e"]]
    assert uf.find("a") == uf.find("c")


def test_range_helpers() -> None:
    assert ranges_overlap((0, 10), (5, 20), 0.5)
    assert not ranges_overlap((0, 10), (9, 30), 0.5)
    assert not ranges_overlap((0, 10), (11, 20), 0.1)
    assert merge_ranges([(5, 8), (0, 3), (4, 4), (20, 25)]) == [(0, 8), (20, 25)]


def test_cluster_overlaps_chains_shared_activity() -> None:
    overlaps = [
        PairOverlap("1", "2", _run((10, 50), (100, 140))),
        PairOverlap("2", "3", _run((105, 145), (0, 40))),
        PairOverlap("1", "4", _run((300, 340), (0, 40))),
    ]
    candidates = cluster_overlaps(overlaps, min_overlap_ratio=0.5)
    assert len(candidates) == 2
    chained = candidates[0]
    assert chained.activity_ids == ["1", "2", "3"]
    assert chained.portions["2"] == [(100, 145)]
    assert chained.visit_count == 3
    assert candidates[1].activity_ids == ["1", "4"]


def test_repeated_traversal_counts_each_visit() -> None:
    overlaps = [
        PairOverlap("1", "2", _run((10, 50), (0, 40))),
        PairOverlap("1", "2", _run((200, 240), (0, 40))),
    ]
    candidates = cluster_overlaps(overlaps, min_overlap_ratio=0.5)
    assert len(candidates) == 1
    assert candidates[0].portions["1"] == [(10, 50), (200, 240)]
    assert candidates[0].visit_count == 3


def test_stable_section_id_ignores_direction() -> None:
    polyline = [(45.0, 7.0), (45.01, 7.01)]
    first = stable_section_id("Run", "short", polyline)
    assert first.startswith("sec_")
    assert first == stable_section_id("Run", "short", polyline[::-1])
    assert first != stable_section_id("Ride", "short", polyline)
    assert first != stable_section_id("Run", "long", polyline)


def test_section_confidence_bounds() -> None:
    assert section_confidence(0, 1.0, 20.0) == 0.0
    low = section_confidence(2, 15.0, 20.0)
    high = section_confidence(10, 1.0, 20.0)
    assert 0.0 < low < high <= 1.0


def test_smaller_scale_duplicate_is_dropped() -> None:
    road = [(0.0, 0.0), (1000.0, 0.0)]
    short = _section("sec_short", "short", ["1", "2"], [(100.0, 0.0), (900.0, 0.0)])
    long = _section("sec_long", "long", ["1", "2"], road)
    other = _section("sec_other", "short", ["1", "2"], [(0.0, 2000.0), (800.0, 2000.0)])
    kept = deduplicate_sections([short, long, other], SECTION_SCALES, point_ratio=0.9)
    assert {s.id for s in kept} == {"sec_long", "sec_other"}


def test_duplicate_with_extra_activities_is_dropped() -> None:
    short = _section("sec_short", "short", ["1", "2", "3"], [(100.0, 0.0), (900.0, 0.0)])
    long = _section("sec_long", "long", ["1", "2"], [(0.0, 0.0), (1000.0, 0.0)])
    kept = deduplicate_sections([short, long], SECTION_SCALES, point_ratio=0.9)
    assert [s.id for s in kept] == ["sec_long"]
    assert kept[0].activity_ids == ["1", "2"]


def test_duplicate_contributors_move_to_kept_section() -> None:
    short = _section("sec_short", "short", ["1", "2", "3"], [(100.0, 0.0), (900.0, 0.0)])
    long = _section("sec_long", "long", ["1", "2"], [(0.0, 0.0), (1000.0, 0.0)])
    matcher = PortionMatcher({"3": track([(-200.0, 2.0), (1200.0, 2.0)])})
    kept = deduplicate_sections([short, long], SECTION_SCALES, point_ratio=0.9, matcher=matcher)
    assert [s.id for s in kept] == ["sec_long"]
    assert kept[0].activity_ids == ["1", "2", "3"]
    assert kept[0].visit_count == 3
    moved = [p for p in kept[0].portions if p.activity_id == "3"]
    assert len(moved) == 1
    assert moved[0].direction == DIRECTION_SAME


def test_names_collisions_and_ordering() -> None:
    a = _section("sec_x", "short", ["1", "2"], [(0.0, 0.0), (500.0, 0.0)], visits=2)
    b = _section("sec_x", "short", ["1", "2", "3"], [(0.0, 0.0), (500.0, 0.0)], visits=5)
    resolve_id_collisions([a, b])
    assert b.id == "sec_x"
    assert a.id == "sec_x-2"
    assign_auto_names([a, b])
    assert b.auto_name == "Run section 1"
    assert a.name == "Run section 2"
    assert [s.id for s in sort_sections([a, b])] == ["sec_x", "sec_x-2"]


def test_confidence_rejects_bad_spread() -> None:
    assert section_confidence(3, float("nan"), 20.0) == pytest.approx(
        (1.0 - 1.0 / 3) * 0.5, abs=1e-4
    )


# --- Geometry-changing postprocessing ---------------------------------
OUT_AND_BACK = [(0.0, 0.0), (1000.0, 0.0), (0.0, 0.0)]


def _latlon(vertices):
    return [(float(lat), float(lng)) for lat, lng in track(vertices)]


def _portion(activity_id, start, end, direction=DIRECTION_SAME) -> SectionPortion:
    return SectionPortion(activity_id, start, end, 0.0, direction)


def test_fold_index_finds_turnaround() -> None:
    assert fold_index(_latlon(OUT_AND_BACK), 20.0) == 100
    assert fold_index(_latlon([(0.0, 0.0), (2000.0, 0.0)]), 20.0) is None
    assert fold_index(_latlon([(0.0, 0.0), (30.0, 0.0)]), 20.0) is None


def test_out_and_back_section_splits_into_one_way_halves() -> None:
    tracks = {
        "1": track(OUT_AND_BACK),
        "2": track([(0.0, 3.0), (1000.0, 3.0), (0.0, 3.0)]),
    }
    folded = _section("sec_fold", "short", ["1", "2"], OUT_AND_BACK)
    halves = split_folding_sections(
        [folded], PortionMatcher(tracks), SECTION_SCALES, min_activities=2
    )

    assert len(halves) == 2
    outbound, inbound = halves
    assert outbound.polyline[-1] == inbound.polyline[0]
    for half in halves:
        assert half.activity_ids == ["1", "2"]
        assert half.representative_activity_id == "1"
        assert half.distance_m == pytest.approx(1000.0, rel=0.02)
        assert half.visit_count == 4
        assert {(p.activity_id, p.direction) for p in half.portions} == {
            ("1", DIRECTION_SAME),
            ("1", DIRECTION_REVERSE),
            ("2", DIRECTION_SAME),
            ("2", DIRECTION_REVERSE),
        }


def test_one_way_section_is_not_split() -> None:
    road = _section("sec_road", "short", ["1", "2"], [(0.0, 0.0), (1000.0, 0.0)])
    assert split_folding_sections(
        [road], PortionMatcher({}), SECTION_SCALES, min_activities=2
    ) == [road]


def test_reversed_copy_merges_into_busier_section() -> None:
    forward = _section("sec_a", "short", ["1", "2"], [(0.0, 0.0), (1000.0, 0.0)], visits=3)
    backward = _section("sec_b", "short", ["2", "3"], [(1000.0, 6.0), (0.0, 6.0)])
    other_scale = _section("sec_long", "long", ["1", "2"], [(0.0, 0.0), (1000.0, 0.0)])
    elsewhere = _section("sec_far", "short", ["1", "2"], [(0.0, 3000.0), (1000.0, 3000.0)])
    matcher = PortionMatcher({"3": track([(1100.0, 4.0), (-100.0, 4.0)])})

    kept = merge_nearby_sections(
        [backward, forward, other_scale, elsewhere], matcher, SECTION_SCALES
    )

    assert {s.id for s in kept} == {"sec_a", "sec_long", "sec_far"}
    assert forward.activity_ids == ["1", "2", "3"]
    assert forward.visit_count == 4
    assert [p.direction for p in forward.portions if p.activity_id == "3"] == [
        DIRECTION_REVERSE
    ]


def test_busy_stretch_becomes_its_own_section() -> None:
    tracks = {"1": track([(0.0, 0.0), (1000.0, 0.0)])}
    for aid in ("2", "3", "4"):
        tracks[aid] = track([(300.0, 0.0), (700.0, 0.0)])
    section = _section("sec_road", "short", ["1", "2", "3", "4"], [(0.0, 0.0), (1000.0, 0.0)])
    section.portions = [_portion("1", 0, 100)] + [
        _portion(aid, 0, 40) for aid in ("2", "3", "4")
    ]
    matcher = PortionMatcher(tracks)

    density = matcher.density(section, 20.0)
    assert density[5] == 1
    assert density[50] == 4
    assert len(dense_spans(density, section.polyline)) == 1

    result = split_high_variance_sections([section], matcher, SECTION_SCALES, min_activities=2)
    assert len(result) == 2
    split, parent = result
    assert parent is section
    assert split.activity_ids == ["1", "2", "3", "4"]
    assert split.scale == "short"
    assert 380.0 <= split.distance_m <= 480.0


def test_even_traffic_is_not_split() -> None:
    tracks = {aid: track([(0.0, 0.0), (1000.0, 0.0)]) for aid in ("1", "2")}
    section = _section("sec_road", "short", ["1", "2"], [(0.0, 0.0), (1000.0, 0.0)])
    section.portions = [_portion("1", 0, 100), _portion("2", 0, 100)]
    result = split_high_variance_sections(
        [section], PortionMatcher(tracks), SECTION_SCALES, min_activities=2
    )
    assert result == [section]
