"""Scrubbing of request payloads before they reach DEBUG logs.

Requests carry live positions of vehicles that transport children and
commuters, rider display names, and whatever credentials the upstream
auth provider forwards.  Credentials are dropped, names are masked, and
coordinates are rounded to roughly a city block.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

_DROP_KEYS: frozenset[str] = frozenset({"authorization", "cookie", "password", "token", "accesstoken"})
_MASK_KEYS: frozenset[str] = frozenset({"displayname", "display_name"})
_COORDINATE_KEYS: frozenset[str] = frozenset({"lat", "lng", "lon", "latitude", "longitude"})

# ~110 m at the equator.
_COORDINATE_DECIMALS = 3
_MAX_DEPTH = 16


def _mask(text: str) -> str:
    return f"{text[:1]}***" if text else text


def _scrub_entry(key: str, value: Any, max_string: int, depth: int) -> Any:
    lowered = key.lower()
    if lowered in _DROP_KEYS:
        return "<redacted>"
    if lowered in _MASK_KEYS and isinstance(value, str):
        return _mask(value)
    if lowered in _COORDINATE_KEYS and isinstance(value, (int, float)) and not isinstance(value, bool):
        return round(float(value), _COORDINATE_DECIMALS)
    return _scrub(value, max_string, depth + 1)


def _scrub(value: Any, max_string: int, depth: int) -> Any:
    if depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    if isinstance(value, Mapping):
        return {str(k): _scrub_entry(str(k), v, max_string, depth) for k, v in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_scrub(item, max_string, depth + 1) for item in value]
    return f"<{type(value).__name__}>"


def redact_for_log(value: Any, *, max_string: int = 256) -> Any:
    """Scrubbed copy of *value* (mappings, sequences, models) for debug logs."""
    return _scrub(value, max_string, 0)
