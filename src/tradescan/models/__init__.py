"""Domain models for scans, shops and waystones."""

from tradescan.models._base import TradeScanModel, UtcTimestamp, from_epoch_ms, parse_timestamp, to_epoch_ms
from tradescan.models.position import ChunkKey, Dimension, Position, chunk_coord
from tradescan.models.query import ChunkSummary, ShopFilter, WaystoneFilter
from tradescan.models.scan import Scan
from tradescan.models.shop import ShopAction, ShopObservation, ShopState
from tradescan.models.waystone import (
    ChunkWaystoneObservation,
    UiWaystoneObservation,
    WaystoneObservation,
    WaystoneRef,
    WaystoneSource,
    WaystoneState,
)

__all__ = [
    "ChunkKey",
    "ChunkSummary",
    "ChunkWaystoneObservation",
    "Dimension",
    "Position",
    "Scan",
    "ShopAction",
    "ShopFilter",
    "ShopObservation",
    "ShopState",
    "TradeScanModel",
    "UiWaystoneObservation",
    "UtcTimestamp",
    "WaystoneFilter",
    "WaystoneObservation",
    "WaystoneRef",
    "WaystoneSource",
    "WaystoneState",
    "chunk_coord",
    "from_epoch_ms",
    "parse_timestamp",
    "to_epoch_ms",
]
