"""Base model shared by all tripcoord records.

Every record inherits from :class:`TripCoordModel` which provides:

* ``alias_generator=to_camel`` so the wire format is camelCase while
  Python code uses snake_case.
* ``frozen=True``: records are immutable values; a change is a new record
  produced with ``model_copy(update=...)``.
* A :data:`UtcDatetime` annotated type that coerces naive datetimes and
  epoch numbers (seconds or milliseconds) to aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds) or datetime to UTC.

    Strings are left to pydantic's ISO-8601 parsing.
    """
    if value is None:
        return value
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    return value


UtcDatetime = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch numbers and naive datetimes to aware UTC."""


class TripCoordModel(BaseModel):
    """Base for tripcoord records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
