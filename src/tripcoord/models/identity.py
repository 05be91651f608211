"""Caller identity supplied by the external auth provider."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from tripcoord.models._base import TripCoordModel


class Role(StrEnum):
    OPERATOR = "operator"
    RIDER = "rider"


class Actor(TripCoordModel):
    """Authenticated identity and role of whoever is calling."""

    identity: str = Field(min_length=1)
    role: Role

    @classmethod
    def operator(cls, identity: str) -> Actor:
        return cls(identity=identity, role=Role.OPERATOR)

    @classmethod
    def rider(cls, identity: str) -> Actor:
        return cls(identity=identity, role=Role.RIDER)
