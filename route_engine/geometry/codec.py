"""Conversions between flat coordinate buffers, point lists and encoded polylines."""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence

import numpy as np
import polyline

from ..models import LatLon

POLYLINE_PRECISION = 5


def encode_polyline(points: Iterable[Sequence[float]]) -> str:
    """Encode (lat, lng) pairs as a Google polyline string."""

    coords = [(float(pt[0]), float(pt[1])) for pt in points]
    if not coords:
        return ""
    return polyline.encode(coords, POLYLINE_PRECISION)


def decode_polyline(encoded: str) -> List[LatLon]:
    """Decode an encoded polyline string into a list of (lat, lng) tuples."""

    if not encoded:
        return []
    try:
        decoded = polyline.decode(encoded, POLYLINE_PRECISION)
    except (ValueError, TypeError, IndexError) as exc:
        raise ValueError("Unable to decode polyline") from exc
    return [(float(lat), float(lng)) for lat, lng in decoded]


def flat_to_points(flat: Sequence[float]) -> List[LatLon]:
    """Convert ``[lat0, lng0, lat1, lng1, ...]`` into (lat, lng) tuples."""

    if len(flat) % 2:
        raise ValueError("Flat coordinate buffer must have an even length")
    return [(float(flat[i]), float(flat[i + 1])) for i in range(0, len(flat), 2)]


def points_to_flat(points: Iterable[Sequence[float]]) -> List[float]:
    flat: List[float] = []
    for pt in points:
        flat.append(float(pt[0]))
        flat.append(float(pt[1]))
    return flat


def as_point_array(points: Iterable[Sequence[float]]) -> np.ndarray:
    """Return an ``(n, 2)`` float64 array of (lat, lng) rows."""

    array = np.asarray(list(points), dtype=float)
    if array.size == 0:
        return np.empty((0, 2), dtype=float)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError("Expected a sequence of (lat, lng) pairs")
    return array


def array_to_points(array: np.ndarray) -> List[LatLon]:
    return [(float(lat), float(lng)) for lat, lng in array]


def is_valid_coordinate(lat: float, lng: float) -> bool:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
