"""Central configuration for the route engine.

All values are constants imported by the rest of the package. Every tunable
can be overridden from the environment (optionally via a local `.env`) using
the ``ROUTE_ENGINE_`` prefix, e.g. ``ROUTE_ENGINE_MATCH_TOLERANCE_M=25``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

_PREFIX = "ROUTE_ENGINE_"


def _env_str(key: str, default: str) -> str:
    value = os.getenv(_PREFIX + key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_float(key: str, default: float) -> float:
    value = os.getenv(_PREFIX + key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(_PREFIX + key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(_PREFIX + key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env from the current directory or any parent folder.
load_dotenv()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
# SQLite file used by the CLI when no --store argument is given.
STORE_PATH = _env_str("STORE_PATH", "route_engine.db")

# Decoded GPS tracks kept in memory (LRU). 0 disables the cache.
TRACK_CACHE_SIZE = _env_int("TRACK_CACHE_SIZE", 256)

# Echo SQL statements to the log (debugging only).
SQL_ECHO = _env_bool("SQL_ECHO", False)

# Activities older than this many days are removed by the CLI cleanup
# command when --days is omitted. 0 keeps everything.
DEFAULT_RETENTION_DAYS = _env_int("DEFAULT_RETENTION_DAYS", 0)


# ---------------------------------------------------------------------------
# Section detection
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScalePreset:
    """One detection granularity: shared runs must be ``window_m`` long and
    stay within ``tolerance_m`` laterally; longer than ``max_length_m`` is
    treated as a whole route rather than a section."""

    name: str
    window_m: float
    tolerance_m: float
    max_length_m: float


# Ordered smallest to largest; deduplication prefers later entries.
SECTION_SCALES: Tuple[ScalePreset, ...] = (
    ScalePreset(
        "short",
        _env_float("SECTION_SHORT_WINDOW_M", 150.0),
        _env_float("SECTION_SHORT_TOLERANCE_M", 20.0),
        _env_float("SECTION_SHORT_MAX_LENGTH_M", 2000.0),
    ),
    ScalePreset(
        "medium",
        _env_float("SECTION_MEDIUM_WINDOW_M", 400.0),
        _env_float("SECTION_MEDIUM_TOLERANCE_M", 35.0),
        _env_float("SECTION_MEDIUM_MAX_LENGTH_M", 5000.0),
    ),
    ScalePreset(
        "long",
        _env_float("SECTION_LONG_WINDOW_M", 1500.0),
        _env_float("SECTION_LONG_TOLERANCE_M", 50.0),
        _env_float("SECTION_LONG_MAX_LENGTH_M", 15000.0),
    ),
)

# Distinct activities required before a cluster becomes a section.
SECTION_MIN_ACTIVITIES = _env_int("SECTION_MIN_ACTIVITIES", 2)

# Consecutive off-tolerance samples tolerated inside one shared run.
SECTION_MAX_GAP_POINTS = _env_int("SECTION_MAX_GAP_POINTS", 3)

# Two portions of the same activity describe the same stretch when their
# index ranges overlap by at least this share of the shorter one.
SECTION_CLUSTER_OVERLAP_RATIO = _env_float("SECTION_CLUSTER_OVERLAP_RATIO", 0.5)

# Share of a section's points that must lie on another section before the
# smaller-scale one is discarded as a duplicate.
SECTION_DEDUP_POINT_RATIO = _env_float("SECTION_DEDUP_POINT_RATIO", 0.9)

# A section folds back on itself (out-and-back) when more than this share of
# its last third lies within tolerance of its first third; it is then split
# at the turnaround into an outbound and a return section.
SECTION_FOLD_RATIO = _env_float("SECTION_FOLD_RATIO", 0.5)

# Same-scale sections are merged (reversed, parallel or drifted copies) when
# more than SECTION_MERGE_MIN_CONTAINMENT of one lies within
# SECTION_MERGE_DISTANCE_FACTOR x tolerance of the other and their lengths
# differ by less than SECTION_MERGE_MAX_LENGTH_RATIO.
SECTION_MERGE_DISTANCE_FACTOR = _env_float("SECTION_MERGE_DISTANCE_FACTOR", 2.0)
SECTION_MERGE_MIN_CONTAINMENT = _env_float("SECTION_MERGE_MIN_CONTAINMENT", 0.4)
SECTION_MERGE_MAX_LENGTH_RATIO = _env_float("SECTION_MERGE_MAX_LENGTH_RATIO", 3.0)

# A stretch carrying this many times the contributors seen at the section
# ends becomes an extra section of its own when it is long enough.
SECTION_SPLIT_DENSITY_RATIO = _env_float("SECTION_SPLIT_DENSITY_RATIO", 2.0)
SECTION_SPLIT_MIN_LENGTH_M = _env_float("SECTION_SPLIT_MIN_LENGTH_M", 100.0)
SECTION_SPLIT_MIN_POINTS = _env_int("SECTION_SPLIT_MIN_POINTS", 10)

# Above this many contributors the medoid is scored against an evenly spaced
# sample of the others instead of all of them.
SECTION_MEDOID_MAX_PAIRWISE = _env_int("SECTION_MEDOID_MAX_PAIRWISE", 12)

# Sampling interval used when comparing contributor traces.
SECTION_RESAMPLE_INTERVAL_M = _env_float("SECTION_RESAMPLE_INTERVAL_M", 10.0)


# ---------------------------------------------------------------------------
# Route grouping
# ---------------------------------------------------------------------------
# Points each route is resampled to before comparison.
ROUTE_RESAMPLE_POINTS = _env_int("ROUTE_RESAMPLE_POINTS", 50)

# Average minimum distance tolerated between two tracks of one route. The
# effective tolerance grows with track length by ROUTE_AMD_TOLERANCE_RATIO.
ROUTE_AMD_TOLERANCE_M = _env_float("ROUTE_AMD_TOLERANCE_M", 60.0)
ROUTE_AMD_TOLERANCE_RATIO = _env_float("ROUTE_AMD_TOLERANCE_RATIO", 0.01)

# Mapping of average minimum distance to a 0-100 match percentage.
ROUTE_MATCH_PERFECT_M = _env_float("ROUTE_MATCH_PERFECT_M", 30.0)
ROUTE_MATCH_ZERO_M = _env_float("ROUTE_MATCH_ZERO_M", 250.0)

# Tracks shorter than this never form route groups.
ROUTE_MIN_DISTANCE_M = _env_float("ROUTE_MIN_DISTANCE_M", 500.0)

# Maximum relative difference in track length within one group.
ROUTE_MAX_DISTANCE_DIFF_RATIO = _env_float("ROUTE_MAX_DISTANCE_DIFF_RATIO", 0.2)

# Start and end points must agree within this distance (either direction).
ROUTE_ENDPOINT_THRESHOLD_M = _env_float("ROUTE_ENDPOINT_THRESHOLD_M", 200.0)

# Groups with fewer members are not reported.
ROUTE_MIN_GROUP_SIZE = _env_int("ROUTE_MIN_GROUP_SIZE", 2)


# ---------------------------------------------------------------------------
# Traversal matching & performance
# ---------------------------------------------------------------------------
# Lateral distance within which an activity point counts as on a polyline.
MATCH_TOLERANCE_M = _env_float("MATCH_TOLERANCE_M", 30.0)

# Share of a polyline's length a traversal must cover.
MATCH_COVERAGE_THRESHOLD = _env_float("MATCH_COVERAGE_THRESHOLD", 0.8)

# Upper bound on the start/end gate radius; short polylines use a quarter of
# their own length.
MATCH_GATE_MAX_M = _env_float("MATCH_GATE_MAX_M", 40.0)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------
MAX_NAME_LENGTH = _env_int("MAX_NAME_LENGTH", 255)
MAX_ID_LENGTH = _env_int("MAX_ID_LENGTH", 255)

# Serialized custom-section payloads above this size are rejected.
MAX_CUSTOM_SECTION_BYTES = _env_int("MAX_CUSTOM_SECTION_BYTES", 100_000)
