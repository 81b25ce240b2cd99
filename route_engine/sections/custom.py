"""User-drawn sections: validation, creation and direction-aware matching."""

from __future__ import annotations

import json
import logging
import math
import re
import secrets
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from ..config import (
    MATCH_COVERAGE_THRESHOLD,
    MATCH_GATE_MAX_M,
    MATCH_TOLERANCE_M,
    MAX_CUSTOM_SECTION_BYTES,
    MAX_ID_LENGTH,
    MAX_NAME_LENGTH,
    SECTION_MAX_GAP_POINTS,
)
from ..errors import ValidationError
from ..geometry.codec import array_to_points, as_point_array, decode_polyline, is_valid_coordinate
from ..geometry.preprocessing import prepare_track, track_length_m
from ..geometry.traversal import Traversal, find_traversals
from ..models import CustomSection, CustomSectionMatch, LatLon
from ..storage import TrackStore
from ..utils import camel_to_snake

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_PAYLOAD_FIELDS = {
    "id",
    "name",
    "polyline",
    "sourceActivityId",
    "startIndex",
    "endIndex",
    "sportType",
    "distanceM",
    "createdAt",
}
_REQUIRED_FIELDS = {"id", "name", "polyline", "sportType"}


def validate_identifier(value: Any, field: str = "id") -> str:
    """Non-empty, bounded, free of control characters."""

    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string")
    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(f"{field} exceeds {MAX_ID_LENGTH} characters")
    if _CONTROL_CHARS.search(value):
        raise ValidationError(f"{field} contains control characters")
    return value


def validate_name(value: Any, field: str = "name") -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    if len(value) > MAX_NAME_LENGTH:
        raise ValidationError(f"{field} exceeds {MAX_NAME_LENGTH} characters")
    if _CONTROL_CHARS.search(value):
        raise ValidationError(f"{field} contains control characters")
    return value


def validate_polyline(points: Sequence[Sequence[float]], field: str = "polyline") -> List[LatLon]:
    cleaned: List[LatLon] = []
    for point in points:
        if not isinstance(point, (list, tuple)) or len(point) != 2:
            raise ValidationError(f"{field} entries must be [lat, lng] pairs")
        try:
            lat, lng = float(point[0]), float(point[1])
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{field} contains a non-numeric coordinate") from exc
        if not is_valid_coordinate(lat, lng):
            raise ValidationError(f"{field} contains an out-of-range coordinate")
        cleaned.append((lat, lng))
    if len(cleaned) < 2:
        raise ValidationError(f"{field} needs at least two points")
    return cleaned


def new_custom_section_id() -> str:
    return f"custom_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def parse_custom_section(
    payload: Union[str, bytes, Mapping[str, Any]],
) -> CustomSection:
    """Validate a camelCase custom-section payload.

    The serialized payload is size-bounded before it is parsed; every field
    is then checked.  ``polyline`` may be a list of ``[lat, lng]`` pairs or an
    encoded polyline string.
    """

    if isinstance(payload, Mapping):
        try:
            raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ValidationError("Custom section payload is not JSON-serializable") from exc
    else:
        raw = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    if len(raw) > MAX_CUSTOM_SECTION_BYTES:
        raise ValidationError(
            f"Custom section payload exceeds {MAX_CUSTOM_SECTION_BYTES} bytes"
        )
    try:
        data: Any = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Custom section payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("Custom section payload must be a JSON object")
    unknown = set(data) - _PAYLOAD_FIELDS
    if unknown:
        raise ValidationError(f"Unknown custom section fields: {sorted(unknown)}")
    missing = _REQUIRED_FIELDS - set(data)
    if missing:
        raise ValidationError(f"Missing custom section fields: {sorted(missing)}")

    fields: Dict[str, Any] = {camel_to_snake(key): value for key, value in data.items()}
    section_id = validate_identifier(fields["id"])
    name = validate_name(fields["name"])
    sport_type = validate_identifier(fields["sport_type"], "sportType")
    polyline_value = fields["polyline"]
    if isinstance(polyline_value, str):
        try:
            polyline_value = decode_polyline(polyline_value)
        except ValueError as exc:
            raise ValidationError("polyline is not a valid encoded polyline") from exc
    if not isinstance(polyline_value, (list, tuple)):
        raise ValidationError("polyline must be a list of [lat, lng] pairs")
    polyline = validate_polyline(polyline_value)

    source = fields.get("source_activity_id")
    if source is not None:
        source = validate_identifier(source, "sourceActivityId")
    start_index = _optional_index(fields.get("start_index"), "startIndex")
    end_index = _optional_index(fields.get("end_index"), "endIndex")
    if start_index is not None and end_index is not None and end_index <= start_index:
        raise ValidationError("endIndex must be greater than startIndex")
    created_at = fields.get("created_at")
    if created_at is None:
        created_at = time.time()
    elif not isinstance(created_at, (int, float)) or not math.isfinite(created_at):
        raise ValidationError("createdAt must be a finite number")

    return CustomSection(
        id=section_id,
        name=name,
        polyline=polyline,
        source_activity_id=source,
        start_index=start_index,
        end_index=end_index,
        sport_type=sport_type,
        distance_m=track_length_m(polyline),
        created_at=float(created_at),
    )


def _optional_index(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    return value


class CustomSectionMatcher:
    """Find occurrences of a fixed polyline inside stored activities."""

    def __init__(
        self,
        store: TrackStore,
        *,
        tolerance_m: float = MATCH_TOLERANCE_M,
        coverage_threshold: float = MATCH_COVERAGE_THRESHOLD,
        gate_m: float = MATCH_GATE_MAX_M,
        max_gap: int = SECTION_MAX_GAP_POINTS,
    ) -> None:
        self.store = store
        self.tolerance_m = tolerance_m
        self.coverage_threshold = coverage_threshold
        self.gate_m = gate_m
        self.max_gap = max_gap
        self._log = logging.getLogger(self.__class__.__name__)

    def create_from_indices(
        self,
        activity_id: str,
        start_index: int,
        end_index: int,
        sport_type: str,
        name: str,
    ) -> CustomSection:
        """Slice a stored track by index range into a new custom section."""

        validate_identifier(activity_id, "activityId")
        validate_identifier(sport_type, "sportType")
        validate_name(name)
        track = self.store.load_track(activity_id)
        if track is None:
            raise ValidationError(f"Activity {activity_id} does not exist")
        if isinstance(start_index, bool) or isinstance(end_index, bool):
            raise ValidationError("Indices must be integers")
        if not (0 <= start_index < end_index < len(track)):
            raise ValidationError(
                f"Invalid index range {start_index}..{end_index} for {len(track)} points"
            )
        points = array_to_points(track[start_index : end_index + 1])
        return CustomSection(
            id=new_custom_section_id(),
            name=name,
            polyline=points,
            source_activity_id=activity_id,
            start_index=int(start_index),
            end_index=int(end_index),
            sport_type=sport_type,
            distance_m=track_length_m(points),
            created_at=time.time(),
        )

    def traversals(
        self, polyline: Sequence[Sequence[float]], track: np.ndarray
    ) -> List[Traversal]:
        """Every complete pass of ``track`` over ``polyline``, either direction."""

        reference_points = as_point_array(polyline)
        if reference_points.shape[0] < 2 or track.shape[0] < 2:
            return []
        reference = prepare_track(reference_points)
        prepared = prepare_track(track, reference.transformer)
        return find_traversals(
            prepared,
            reference,
            tolerance_m=self.tolerance_m,
            coverage_threshold=self.coverage_threshold,
            gate_m=self.gate_m,
            max_gap=self.max_gap,
        )

    def match(
        self, section: CustomSection, activity_ids: Iterable[str]
    ) -> List[CustomSectionMatch]:
        """Match ``section`` against each activity; unknown ids are skipped."""

        ids = list(dict.fromkeys(activity_ids))
        return self.match_tracks(section, self.store.load_tracks(ids), ids)

    def match_tracks(
        self,
        section: CustomSection,
        tracks: Mapping[str, np.ndarray],
        activity_ids: Optional[Iterable[str]] = None,
    ) -> List[CustomSectionMatch]:
        """Match ``section`` against tracks already in memory (nothing is loaded)."""

        ids = list(dict.fromkeys(activity_ids if activity_ids is not None else tracks))
        matches: List[CustomSectionMatch] = []
        for activity_id in ids:
            track = tracks.get(activity_id)
            if track is None:
                continue
            for traversal in self.traversals(section.polyline, track):
                trace = array_to_points(
                    track[traversal.start_index : traversal.end_index + 1]
                )
                matches.append(
                    CustomSectionMatch(
                        section_id=section.id,
                        activity_id=activity_id,
                        start_index=traversal.start_index,
                        end_index=traversal.end_index,
                        direction=traversal.direction,
                        distance_m=track_length_m(trace),
                        trace=trace,
                    )
                )
        self._log.debug(
            "Custom section %s matched %d times across %d activities",
            section.id,
            len(matches),
            len(ids),
        )
        return matches

    def extract_trace(
        self, track: np.ndarray, polyline: Sequence[Sequence[float]]
    ) -> List[LatLon]:
        """The best-aligned sub-trace of ``track`` over ``polyline`` (or empty)."""

        found = self.traversals(polyline, track)
        if not found:
            return []
        best = min(found, key=lambda t: (t.mean_offset_m, t.start_index))
        return array_to_points(track[best.start_index : best.end_index + 1])
