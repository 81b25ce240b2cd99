"""Polyline codec, flat buffers and the camelCase wire format."""

from __future__ import annotations

import json
import math

import numpy as np
import pytest

from route_engine.geometry.codec import (
    as_point_array,
    decode_polyline,
    encode_polyline,
    flat_to_points,
    is_valid_coordinate,
    points_to_flat,
)
from route_engine.models import Bounds, SectionSummary, id_sort_key
from route_engine.utils import camel_to_snake, snake_to_camel, to_wire, wire_dumps

from conftest import track


def test_encode_empty_polyline_round_trips() -> None:
    assert encode_polyline([]) == ""
    assert decode_polyline("") == []


def test_single_point_round_trips() -> None:
    decoded = decode_polyline(encode_polyline([(45.12345, 7.54321)]))
    assert decoded == [pytest.approx((45.12345, 7.54321))]


def test_long_polyline_round_trips_within_precision() -> None:
    rng = np.random.default_rng(3)
    points = track([(0.0, 0.0), (60_000.0, 0.0)], spacing=5.0)
    points = points + rng.normal(0.0, 1e-4, size=points.shape)
    assert len(points) > 10_000
    decoded = np.asarray(decode_polyline(encode_polyline(points)))
    assert decoded.shape == points.shape
    assert np.max(np.abs(decoded - points)) <= 1e-5 + 1e-12


def test_flat_buffer_helpers() -> None:
    flat = [45.0, 7.0, 45.1, 7.1]
    points = flat_to_points(flat)
    assert points == [(45.0, 7.0), (45.1, 7.1)]
    assert points_to_flat(points) == flat
    with pytest.raises(ValueError):
        flat_to_points([1.0, 2.0, 3.0])
    assert as_point_array([]).shape == (0, 2)


def test_coordinate_validation() -> None:
    assert is_valid_coordinate(45.0, 7.0)
    assert not is_valid_coordinate(91.0, 7.0)
    assert not is_valid_coordinate(45.0, -181.0)
    assert not is_valid_coordinate(math.nan, 7.0)


def test_case_conversion() -> None:
    assert snake_to_camel("representative_activity_id") == "representativeActivityId"
    assert camel_to_snake("sourceActivityId") == "source_activity_id"


def test_to_wire_uses_camel_case_keys() -> None:
    summary = SectionSummary(
        id="sec_1",
        sport_type="Run",
        scale="short",
        visit_count=3,
        activity_count=2,
        distance_m=420.0,
        confidence=0.5,
        bounds=Bounds(45.0, 45.1, 7.0, 7.1),
        representative_activity_id="1",
    )
    wire = to_wire(summary)
    assert wire["sportType"] == "Run"
    assert wire["representativeActivityId"] == "1"
    assert wire["bounds"] == {"minLat": 45.0, "maxLat": 45.1, "minLng": 7.0, "maxLng": 7.1}
    assert "sport_type" not in wire


def test_wire_dumps_maps_non_finite_to_null() -> None:
    payload = json.loads(wire_dumps({"value": float("nan"), "items": [np.float64(1.5)]}))
    assert payload == {"value": None, "items": [1.5]}


def test_id_sort_key_orders_numbers_numerically() -> None:
    assert sorted(["10", "2", "b", "a", "1"], key=id_sort_key) == ["1", "2", "10", "a", "b"]
