"""Geometry helpers shared by the detectors and matchers."""

from .codec import (
    decode_polyline,
    encode_polyline,
    flat_to_points,
    points_to_flat,
)
from .preprocessing import (
    PreparedTrack,
    haversine_m,
    prepare_track,
    simplify_latlon,
    track_length_m,
)
from .traversal import SharedRun, Traversal, find_traversals, shared_runs

__all__ = [
    "PreparedTrack",
    "SharedRun",
    "Traversal",
    "decode_polyline",
    "encode_polyline",
    "find_traversals",
    "flat_to_points",
    "haversine_m",
    "points_to_flat",
    "prepare_track",
    "shared_runs",
    "simplify_latlon",
    "track_length_m",
]
