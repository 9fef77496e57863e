"""Shop observation and shop state models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field, field_validator

from tradescan.models._base import TradeScanModel, UtcTimestamp
from tradescan.models.position import ChunkKey, Dimension, Position
from tradescan.models.waystone import WaystoneRef


class ShopAction(StrEnum):
    SELL = "sell"
    BUY = "buy"
    OUT_OF_STOCK = "out of stock"

    @classmethod
    def parse(cls, value: object) -> ShopAction:
        if isinstance(value, ShopAction):
            return value
        lowered = str(value).strip().lower().replace("_", " ")
        try:
            return cls(lowered)
        except ValueError:
            raise ValueError("action must be one of: buy, sell, out of stock") from None


class ShopObservation(TradeScanModel):
    """One reported sighting of a shop sign.

    ``price``, ``amount`` and ``action`` may be missing; such an
    observation is incomplete (see :attr:`is_complete`) and must never be
    stored. ``chunk_x``/``chunk_z`` are optional explicit chunk
    coordinates; when absent the chunk derives from the position.
    """

    dimension: Dimension
    x: int
    y: int
    z: int
    owner: str
    item: str
    price: float | None = None
    amount: int | None = None
    action: ShopAction | None = None
    chunk_x: int | None = None
    chunk_z: int | None = None

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: object) -> Dimension:
        return Dimension.parse(value)

    @field_validator("action", mode="before")
    @classmethod
    def _parse_action(cls, value: object) -> ShopAction | None:
        if value is None:
            return None
        return ShopAction.parse(value)

    @property
    def position(self) -> Position:
        return Position(self.dimension, self.x, self.y, self.z)

    @property
    def chunk(self) -> ChunkKey:
        if self.chunk_x is not None and self.chunk_z is not None:
            return ChunkKey(self.dimension, self.chunk_x, self.chunk_z)
        return self.position.chunk

    @property
    def is_complete(self) -> bool:
        return self.price is not None and self.amount is not None and self.action is not None


class ShopState(TradeScanModel):
    """One stored version of the shop at a position.

    Exactly one version per position has ``is_current`` set; all other
    versions are immutable history. ``nearest_waystone`` is a derived
    cache and only meaningful on the current version.
    """

    id: int
    dimension: Dimension
    x: int
    y: int
    z: int
    chunk_x: int
    chunk_z: int
    owner: str
    item: str
    price: float
    amount: int
    action: ShopAction
    first_seen_at: UtcTimestamp
    first_seen_scan_id: int
    last_seen_at: UtcTimestamp
    last_seen_scan_id: int
    is_current: bool = True
    nearest_waystone: WaystoneRef | None = Field(default=None)

    @property
    def position(self) -> Position:
        return Position(self.dimension, self.x, self.y, self.z)

    @property
    def chunk(self) -> ChunkKey:
        return ChunkKey(self.dimension, self.chunk_x, self.chunk_z)
