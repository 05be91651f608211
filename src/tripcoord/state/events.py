"""Change notifications emitted by the stores.

Listeners receive these after a write has been applied.  They describe
*what* changed, never the derived consequence; subscribers recompute.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeKind(StrEnum):
    TRIP = "trip"
    WAIT = "wait"
    ABSENCE = "absence"


class ChangeAction(StrEnum):
    UPSERT = "upsert"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A single accepted write."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    action: ChangeAction = ChangeAction.UPSERT
    trip_id: str = Field(..., description="Trip the record belongs to")
    carrier_id: str | None = None
    rider_id: str | None = None
    stop_id: str | None = Field(default=None, description="Stop the fact refers to, if any")
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("trip_id")
    @classmethod
    def _normalize_trip_id(cls, value: str) -> str:
        trip_id = value.strip()
        if not trip_id:
            raise ValueError("trip_id must be non-empty")
        return trip_id

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
