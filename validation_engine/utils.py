"""Shared utility functions used across validation_engine modules."""
from __future__ import annotations

import json
import math
from typing import Any

_MISSING = object()


def json_parse(value: str | bytes | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return {} if default is _MISSING else default


def to_number(value: Any) -> float:
    """Coerce a server value to a finite float; anything unusable becomes 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    return num if math.isfinite(num) else 0.0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    """Round like a JavaScript ``Math.round`` (halves go up, not to even)."""
    return math.floor(value + 0.5)


def unwrap_data(payload: Any) -> Any:
    """Strip any ``{"data": ...}`` envelopes from a response body."""
    while isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    return payload
