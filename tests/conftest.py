"""Global pytest fixtures & helpers.

Adds project root to path and provides synthetic GPS track factories so the
tests can describe geometry in metres around a fixed origin.
"""
from __future__ import annotations

import math
import os
import sys
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from route_engine.engine import RouteEngine
from route_engine.storage import TrackStore


ORIGIN_LAT = 45.0
ORIGIN_LNG = 7.0
METERS_PER_DEG_LAT = 111_320.0


# --- Factory helpers -------------------------------------------------
def to_latlon(xy: np.ndarray) -> np.ndarray:
    """Convert local (east, north) metres into (lat, lng) rows."""

    xy = np.asarray(xy, dtype=float)
    lat = ORIGIN_LAT + xy[:, 1] / METERS_PER_DEG_LAT
    lng = ORIGIN_LNG + xy[:, 0] / (METERS_PER_DEG_LAT * math.cos(math.radians(ORIGIN_LAT)))
    return np.column_stack((lat, lng))


def metric_path(vertices: Sequence[Tuple[float, float]], spacing: float = 10.0) -> np.ndarray:
    """Densify a polyline given in metres so points sit ``spacing`` apart."""

    out: List[Tuple[float, float]] = [tuple(vertices[0])]
    for (x0, y0), (x1, y1) in zip(vertices, vertices[1:]):
        length = math.hypot(x1 - x0, y1 - y0)
        steps = max(1, int(round(length / spacing)))
        for step in range(1, steps + 1):
            t = step / steps
            out.append((x0 + (x1 - x0) * t, y0 + (y1 - y0) * t))
    return np.asarray(out, dtype=float)


def track(vertices: Sequence[Tuple[float, float]], spacing: float = 10.0) -> np.ndarray:
    """Lat/lng track following ``vertices`` (metres) with even spacing."""

    return to_latlon(metric_path(vertices, spacing))


def flat_batch(tracks: Iterable[np.ndarray]) -> Tuple[List[float], List[int]]:
    """Pack tracks into one flat ``[lat, lng, ...]`` buffer plus point offsets."""

    flat: List[float] = []
    offsets: List[int] = []
    count = 0
    for points in tracks:
        offsets.append(count)
        flat.extend(float(v) for v in np.asarray(points, dtype=float).ravel())
        count += len(points)
    return flat, offsets


def add_tracks(engine: RouteEngine, tracks: Dict[str, np.ndarray], sport: str = "Run") -> int:
    ids = list(tracks)
    flat, offsets = flat_batch(tracks[i] for i in ids)
    return engine.add_activities(ids, flat, offsets, [sport] * len(ids))


def crossing_tracks() -> Dict[str, np.ndarray]:
    """Two activities sharing a 2.5 km road, arriving and leaving on opposite sides."""

    return {
        "1": track([(0.0, 1500.0), (0.0, 0.0), (2500.0, 0.0), (2500.0, 1500.0)]),
        "2": track([(0.0, -1500.0), (0.0, 0.0), (2500.0, 0.0), (2500.0, -1500.0)]),
    }


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def store():
    store = TrackStore(":memory:", track_cache_size=16)
    yield store
    store.close()


@pytest.fixture
def engine(tmp_path):
    engine = RouteEngine()
    engine.initialize(str(tmp_path / "engine.db"))
    yield engine
    engine.close()
