"""Input validation: identifiers, names and custom section payloads."""

from __future__ import annotations

import json

import pytest

from route_engine.config import MAX_CUSTOM_SECTION_BYTES, MAX_NAME_LENGTH
from route_engine.errors import ValidationError
from route_engine.geometry.codec import encode_polyline
from route_engine.sections.custom import (
    parse_custom_section,
    validate_identifier,
    validate_name,
)

POLYLINE = [[45.0, 7.0], [45.001, 7.0], [45.002, 7.001]]


def _payload(**overrides):
    payload = {
        "id": "custom_1",
        "name": "Hill repeat",
        "polyline": POLYLINE,
        "sportType": "Run",
        "sourceActivityId": "42",
        "startIndex": 3,
        "endIndex": 9,
        "createdAt": 1_700_000_000.0,
    }
    payload.update(overrides)
    return payload


def test_parse_camel_case_payload() -> None:
    section = parse_custom_section(_payload())
    assert section.id == "custom_1"
    assert section.sport_type == "Run"
    assert section.source_activity_id == "42"
    assert (section.start_index, section.end_index) == (3, 9)
    assert section.polyline[0] == (45.0, 7.0)
    assert section.distance_m > 200.0


def test_parse_accepts_json_text_and_encoded_polyline() -> None:
    text = json.dumps(_payload(polyline=encode_polyline(POLYLINE)))
    section = parse_custom_section(text)
    assert len(section.polyline) == 3
    assert section.polyline[-1] == pytest.approx((45.002, 7.001))


@pytest.mark.parametrize("key", ["sport_type", "source_activity_id", "colour"])
def test_unknown_keys_are_rejected(key: str) -> None:
    payload = _payload()
    payload[key] = "x"
    with pytest.raises(ValidationError, match="Unknown"):
        parse_custom_section(payload)


def test_missing_required_field() -> None:
    payload = _payload()
    del payload["sportType"]
    with pytest.raises(ValidationError, match="Missing"):
        parse_custom_section(payload)


def test_oversized_payload_is_rejected_before_parsing() -> None:
    blob = "{" + " " * (MAX_CUSTOM_SECTION_BYTES + 1) + "}"
    with pytest.raises(ValidationError, match="exceeds"):
        parse_custom_section(blob)


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "bad\x00name"},
        {"id": "id\x1f"},
        {"name": "n" * (MAX_NAME_LENGTH + 1)},
        {"polyline": [[45.0, 7.0]]},
        {"polyline": [[95.0, 7.0], [45.0, 7.0]]},
        {"polyline": [[45.0, "east"], [45.0, 7.0]]},
        {"startIndex": -1},
        {"startIndex": 9, "endIndex": 3},
        {"startIndex": True},
        {"createdAt": "yesterday"},
    ],
)
def test_invalid_fields_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        parse_custom_section(_payload(**overrides))


def test_invalid_json_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_custom_section("{not json")
    with pytest.raises(ValidationError):
        parse_custom_section("[1, 2]")


def test_identifier_and_name_rules() -> None:
    assert validate_identifier("123") == "123"
    assert validate_name("") == ""
    for bad in ("", "   ", None, 12, "tab\x07"):
        with pytest.raises(ValidationError):
            validate_identifier(bad)
    with pytest.raises(ValidationError):
        validate_name(5)


def test_validation_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        validate_identifier("")
