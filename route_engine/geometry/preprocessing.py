"""Projection, distance and resampling utilities for GPS tracks."""

from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from cachetools import LRUCache, cached
from numpy.typing import NDArray
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError
from shapely.geometry import LineString

from ..models import LatLon
from .codec import as_point_array

MetricArray = NDArray[np.float64]

EARTH_RADIUS_M = 6_371_008.8


@dataclass(slots=True)
class PreparedTrack:
    """Metric representation of a lat/lng track in a shared local CRS."""

    latlon: MetricArray
    metric: MetricArray
    cumulative_m: MetricArray
    transformer: Transformer
    line: Optional[LineString]

    @property
    def length_m(self) -> float:
        return float(self.cumulative_m[-1]) if self.cumulative_m.size else 0.0

    def __len__(self) -> int:
        return int(self.metric.shape[0])


def haversine_steps(points: Iterable[Sequence[float]]) -> MetricArray:
    """Great-circle distance in metres between successive (lat, lng) points."""

    array = as_point_array(points)
    if array.shape[0] < 2:
        return np.zeros(0, dtype=float)
    lat = np.radians(array[:, 0])
    lng = np.radians(array[:, 1])
    d_lat = np.diff(lat)
    d_lng = np.diff(lng)
    a = (
        np.sin(d_lat / 2.0) ** 2
        + np.cos(lat[:-1]) * np.cos(lat[1:]) * np.sin(d_lng / 2.0) ** 2
    )
    return 2.0 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def haversine_m(a: Sequence[float], b: Sequence[float]) -> float:
    return float(haversine_steps([a, b])[0])


def track_length_m(points: Iterable[Sequence[float]]) -> float:
    return float(np.sum(haversine_steps(points)))


def utm_epsg_for(lat: float, lng: float) -> int:
    """Return the EPSG code of the UTM zone containing (lat, lng)."""

    zone = int((lng + 180.0) // 6.0) + 1
    zone = max(1, min(zone, 60))
    return (32600 if lat >= 0 else 32700) + zone


@cached(cache=LRUCache(maxsize=64), lock=RLock())
def transformer_for_epsg(epsg: int) -> Transformer:
    """Build (once per zone) a WGS84 to projected-CRS transformer."""

    try:
        target_crs = CRS.from_epsg(epsg)
    except CRSError:
        target_crs = CRS.from_epsg(3857)
    return Transformer.from_crs(CRS.from_epsg(4326), target_crs, always_xy=True)


def local_transformer(points: Iterable[Sequence[float]]) -> Transformer:
    """Transformer for the UTM zone centred on the mean of ``points``."""

    array = as_point_array(points)
    if array.shape[0] == 0:
        raise ValueError("Cannot build a projection for an empty point set")
    mean_lat = float(np.mean(array[:, 0]))
    mean_lng = float(np.mean(array[:, 1]))
    return transformer_for_epsg(utm_epsg_for(mean_lat, mean_lng))


def project_points(
    points: Iterable[Sequence[float]], transformer: Transformer
) -> MetricArray:
    """Project (lat, lng) rows through an existing transformer."""

    array = as_point_array(points)
    if array.shape[0] == 0:
        return np.empty((0, 2), dtype=float)
    xs, ys = transformer.transform(array[:, 1], array[:, 0])
    return np.column_stack((xs, ys)).astype(float, copy=False)


def unproject_points(metric: MetricArray, transformer: Transformer) -> List[LatLon]:
    if metric.shape[0] == 0:
        return []
    lngs, lats = transformer.transform(metric[:, 0], metric[:, 1], direction="INVERSE")
    return [(float(lat), float(lng)) for lat, lng in zip(lats, lngs)]


def reproject_to_local_crs(
    points: Iterable[Sequence[float]],
) -> Tuple[MetricArray, Transformer]:
    """Project lat/lng points into a local metric coordinate system."""

    array = as_point_array(points)
    if array.shape[0] == 0:
        raise ValueError("Cannot reproject an empty point collection")
    transformer = local_transformer(array)
    return project_points(array, transformer), transformer


def cumulative_distances(metric: MetricArray) -> MetricArray:
    if metric.shape[0] == 0:
        return np.zeros(0, dtype=float)
    steps = np.linalg.norm(np.diff(metric, axis=0), axis=1)
    return np.concatenate(([0.0], np.cumsum(steps)))


def prepare_track(
    points: Iterable[Sequence[float]],
    transformer: Optional[Transformer] = None,
) -> PreparedTrack:
    """Project a track and precompute what the matchers need from it."""

    latlon = as_point_array(points)
    if latlon.shape[0] == 0:
        raise ValueError("Track has no GPS points")
    if transformer is None:
        transformer = local_transformer(latlon)
    metric = project_points(latlon, transformer)
    cumulative = cumulative_distances(metric)
    line = LineString(metric) if metric.shape[0] >= 2 else None
    return PreparedTrack(
        latlon=latlon,
        metric=metric,
        cumulative_m=cumulative,
        transformer=transformer,
        line=line,
    )


def simplify_points(
    points: Iterable[Sequence[float]], tolerance_m: float
) -> MetricArray:
    """Simplify metric coordinates while preserving endpoints and overall shape."""

    array = np.asarray(list(points), dtype=float)
    if len(array) < 3 or tolerance_m <= 0:
        return array
    line = LineString(array)
    simplified = line.simplify(tolerance_m, preserve_topology=False)
    return np.asarray(simplified.coords, dtype=float)


def simplify_latlon(
    points: Sequence[Sequence[float]], tolerance_m: float
) -> List[LatLon]:
    """Douglas-Peucker simplification of a lat/lng track with a metric tolerance."""

    array = as_point_array(points)
    if array.shape[0] < 3 or tolerance_m <= 0:
        return [(float(lat), float(lng)) for lat, lng in array]
    metric, transformer = reproject_to_local_crs(array)
    return unproject_points(simplify_points(metric, tolerance_m), transformer)


def resample_by_distance(
    points: Iterable[Sequence[float]], interval_m: float
) -> MetricArray:
    """Resample coordinates so successive points are spaced by ``interval_m`` metres."""

    if interval_m <= 0:
        raise ValueError("interval_m must be greater than zero")
    array = np.asarray(list(points), dtype=float)
    if len(array) <= 1:
        return array.copy()
    cumulative = cumulative_distances(array)
    total_length = cumulative[-1]
    if total_length == 0:
        return array[:1].copy()
    target = np.append(np.arange(0.0, total_length, interval_m), total_length)
    x = np.interp(target, cumulative, array[:, 0])
    y = np.interp(target, cumulative, array[:, 1])
    return np.column_stack((x, y))


def resample_to_count(points: Iterable[Sequence[float]], count: int) -> MetricArray:
    """Resample coordinates to exactly ``count`` points evenly spaced by distance."""

    if count < 2:
        raise ValueError("count must be at least 2")
    array = np.asarray(list(points), dtype=float)
    if len(array) == 0:
        return array
    if len(array) == 1:
        return np.repeat(array, count, axis=0)
    cumulative = cumulative_distances(array)
    total_length = cumulative[-1]
    if total_length == 0:
        return np.repeat(array[:1], count, axis=0)
    target = np.linspace(0.0, total_length, num=count)
    x = np.interp(target, cumulative, array[:, 0])
    y = np.interp(target, cumulative, array[:, 1])
    return np.column_stack((x, y))
