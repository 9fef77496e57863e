"""Filters and read projections used by the query surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator

from tradescan.models._base import TradeScanModel
from tradescan.models.position import Dimension
from tradescan.models.shop import ShopAction
from tradescan.models.waystone import WaystoneSource


def _optional_dimension(value: object) -> Dimension | None:
    if value is None or value == "":
        return None
    return Dimension.parse(value)


class ShopFilter(TradeScanModel):
    """Filter for active shops. Unset fields do not constrain."""

    dimension: Dimension | None = None
    item: str | None = None
    """Case-insensitive exact item match."""
    owner: str | None = None
    action: ShopAction | None = None
    chunk_x: int | None = None
    chunk_z: int | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: object) -> Dimension | None:
        return _optional_dimension(value)


class WaystoneFilter(TradeScanModel):
    """Filter for active waystones. Unset fields do not constrain."""

    dimension: Dimension | None = None
    name: str | None = None
    owner: str | None = None
    source: WaystoneSource | None = None
    chunk_x: int | None = None
    chunk_z: int | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: object) -> Dimension | None:
        return _optional_dimension(value)


class ChunkSummary(TradeScanModel):
    """Per-chunk scan coverage and object counts.

    ``last_observed_*`` count what the newest scan of the chunk confirmed;
    ``ever_observed_*`` count distinct objects over the whole history.
    """

    dimension: Dimension
    chunk_x: int
    chunk_z: int
    total_scans: int = 0
    latest_scanned_at: datetime | None = None
    minutes_since_last_scan: int | None = None
    last_observed_shops: int = 0
    last_observed_waystones: int = 0
    ever_observed_shops: int = 0
    ever_observed_waystones: int = 0
    active_shops: int = 0
    active_waystones: int = 0
