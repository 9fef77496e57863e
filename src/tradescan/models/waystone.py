"""Waystone observation and waystone state models.

Waystone observations come from two sources with different trust:

* ``ui``: explicit metadata pushed from the in-game waystone screen.
  Name and owner are always present and authoritative.
* ``chunk``: passive sightings while scanning a chunk. Usually only a
  position; name and owner are opportunistic.

They are modelled as a discriminated union on ``source`` so a single
merge path can dispatch on the variant.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import Field, field_validator

from tradescan.models._base import TradeScanModel, UtcTimestamp
from tradescan.models.position import ChunkKey, Dimension, Position


class WaystoneSource(StrEnum):
    UI = "ui"
    CHUNK = "chunk"


class _WaystoneObservationBase(TradeScanModel):
    dimension: Dimension
    x: int
    y: int
    z: int
    chunk_x: int | None = None
    chunk_z: int | None = None

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: object) -> Dimension:
        return Dimension.parse(value)

    @property
    def position(self) -> Position:
        return Position(self.dimension, self.x, self.y, self.z)

    @property
    def chunk(self) -> ChunkKey:
        if self.chunk_x is not None and self.chunk_z is not None:
            return ChunkKey(self.dimension, self.chunk_x, self.chunk_z)
        return self.position.chunk


class UiWaystoneObservation(_WaystoneObservationBase):
    source: Literal["ui"] = "ui"
    name: str = Field(min_length=1)
    owner: str = Field(min_length=1)

    @property
    def is_nameable(self) -> bool:
        return True


class ChunkWaystoneObservation(_WaystoneObservationBase):
    source: Literal["chunk"] = "chunk"
    name: str | None = None
    owner: str | None = None

    @property
    def is_nameable(self) -> bool:
        return bool(self.name) and bool(self.owner)


WaystoneObservation = Annotated[
    UiWaystoneObservation | ChunkWaystoneObservation,
    Field(discriminator="source"),
]


class WaystoneState(TradeScanModel):
    """One stored version of the waystone at a position."""

    id: int
    dimension: Dimension
    x: int
    y: int
    z: int
    chunk_x: int
    chunk_z: int
    name: str
    owner: str
    source: WaystoneSource
    first_seen_at: UtcTimestamp
    first_seen_scan_id: int
    last_seen_at: UtcTimestamp
    last_seen_scan_id: int
    is_current: bool = True

    @property
    def position(self) -> Position:
        return Position(self.dimension, self.x, self.y, self.z)

    @property
    def chunk(self) -> ChunkKey:
        return ChunkKey(self.dimension, self.chunk_x, self.chunk_z)

    @property
    def is_nameable(self) -> bool:
        return bool(self.name) and bool(self.owner)


class WaystoneRef(TradeScanModel):
    """Reference to a waystone as seen from a shop.

    ``distance_sq`` is the squared Euclidean distance to the shop the
    reference was resolved for; ``None`` when resolved without a shop.
    """

    id: int
    dimension: Dimension
    x: int
    y: int
    z: int
    name: str
    owner: str
    distance_sq: int | None = None

    @property
    def position(self) -> Position:
        return Position(self.dimension, self.x, self.y, self.z)
