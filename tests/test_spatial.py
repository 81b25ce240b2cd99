"""Bounding-box index behaviour."""

from __future__ import annotations

from typing import Dict

import numpy as np
import pytest

from route_engine.models import Bounds
from route_engine.spatial import ReverseIndex, SpatialIndex


def _random_bounds(rng: np.random.Generator, count: int) -> Dict[str, Bounds]:
    out: Dict[str, Bounds] = {}
    for idx in range(count):
        lat = rng.uniform(44.0, 46.0)
        lng = rng.uniform(6.0, 8.0)
        out[str(idx)] = Bounds(lat, lat + rng.uniform(0.0, 0.2), lng, lng + rng.uniform(0.0, 0.2))
    return out


def test_query_matches_brute_force() -> None:
    rng = np.random.default_rng(11)
    entries = _random_bounds(rng, 200)
    index = SpatialIndex(lambda: entries, "test")
    for _ in range(50):
        lat = rng.uniform(43.8, 46.2)
        lng = rng.uniform(5.8, 8.2)
        viewport = Bounds(lat, lat + rng.uniform(0.0, 0.5), lng, lng + rng.uniform(0.0, 0.5))
        expected = sorted(
            (key for key, box in entries.items() if box.intersects(viewport)), key=int
        )
        assert index.query(viewport) == expected


def test_edges_touching_count_as_intersecting() -> None:
    entries = {"a": Bounds(45.0, 45.1, 7.0, 7.1), "tiny": Bounds(45.2, 45.2001, 7.2, 7.2001)}
    index = SpatialIndex(lambda: entries)
    assert index.query(Bounds(45.1, 45.15, 7.1, 7.15)) == ["a"]
    assert index.query(Bounds(45.2, 45.3, 7.2, 7.3)) == ["tiny"]
    assert index.query(Bounds(46.0, 46.1, 7.0, 7.1)) == []


def test_rebuild_is_lazy_until_marked_dirty() -> None:
    entries = {"1": Bounds(45.0, 45.1, 7.0, 7.1)}
    calls = []

    def loader():
        calls.append(1)
        return dict(entries)

    index = SpatialIndex(loader)
    assert len(index) == 1
    assert len(index) == 1
    assert len(calls) == 1

    entries["2"] = Bounds(45.5, 45.6, 7.5, 7.6)
    assert index.query(Bounds(45.5, 45.6, 7.5, 7.6)) == []
    index.mark_dirty()
    assert index.query(Bounds(45.5, 45.6, 7.5, 7.6)) == ["2"]
    assert len(calls) == 2


def test_failed_load_keeps_index_dirty() -> None:
    state = {"fail": True}

    def loader():
        if state["fail"]:
            raise RuntimeError("store offline")
        return {"1": Bounds(45.0, 45.1, 7.0, 7.1)}

    index = SpatialIndex(loader)
    with pytest.raises(RuntimeError):
        index.query(Bounds(45.0, 45.1, 7.0, 7.1))
    assert index.is_dirty
    state["fail"] = False
    assert index.query(Bounds(45.0, 45.1, 7.0, 7.1)) == ["1"]


def test_empty_index() -> None:
    index = SpatialIndex(dict)
    assert index.query(Bounds(0.0, 1.0, 0.0, 1.0)) == []
    assert index.bounds() == {}


def test_reverse_index() -> None:
    reverse = ReverseIndex()
    reverse.rebuild([("g1", ["1", "2"]), ("g2", ["2", "3"])])
    assert reverse.get("2") == ["g1", "g2"]
    assert reverse.get("9") == []
