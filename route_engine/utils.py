"""General utility helpers shared across modules.

Also defines the single wire-format convention of the engine: JSON keys are
camelCase.  :func:`to_wire` is the only place snake_case attribute names are
translated; inbound payloads are expected in camelCase and nothing else.
"""

from __future__ import annotations

import dataclasses
import json
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camel_to_snake(name: str) -> str:
    out = []
    for char in name:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


def _normalise_value(value: Any) -> Any:
    """Convert objects to JSON-friendly representations."""

    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    if isinstance(value, set):
        return sorted(_normalise_value(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_normalise_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _normalise_value(val) for key, val in value.items()}
    if hasattr(value, "item") and callable(value.item):
        # numpy scalars
        return value.item()
    return value


def json_dumps_sorted(value: Any) -> str:
    """Return canonical JSON for hashing / comparisons."""

    normalised = _normalise_value(value)
    return json.dumps(normalised, sort_keys=True, separators=(",", ":"))


def to_wire(value: Any) -> Any:
    """Convert dataclasses (recursively) into camelCase JSON-ready structures."""

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            snake_to_camel(f.name): to_wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, dict):
        return {str(key): to_wire(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(item) for item in value]
    return _normalise_value(value)


def wire_dumps(value: Any) -> str:
    return json.dumps(to_wire(value), separators=(",", ":"))
