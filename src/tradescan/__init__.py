"""tradescan - position-based reconciliation of shop and waystone scans."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tradescan")
except PackageNotFoundError:
    __version__ = "0+local"
from tradescan.config import ScanServiceConfig
from tradescan.exceptions import (
    ConfigError,
    ConsistencyViolation,
    DuplicateScanError,
    ScanValidationError,
    StorageError,
    TradeScanError,
)
from tradescan.models import (
    ChunkKey,
    ChunkSummary,
    ChunkWaystoneObservation,
    Dimension,
    Position,
    Scan,
    ShopAction,
    ShopFilter,
    ShopObservation,
    ShopState,
    UiWaystoneObservation,
    WaystoneFilter,
    WaystoneRef,
    WaystoneSource,
    WaystoneState,
)
from tradescan.service import ScanService
from tradescan.state.nearest import RecomputeScope
from tradescan.state.store import StateStore

__all__ = [
    "__version__",
    "ChunkKey",
    "ChunkSummary",
    "ChunkWaystoneObservation",
    "ConfigError",
    "ConsistencyViolation",
    "Dimension",
    "DuplicateScanError",
    "Position",
    "RecomputeScope",
    "Scan",
    "ScanService",
    "ScanServiceConfig",
    "ScanValidationError",
    "ShopAction",
    "ShopFilter",
    "ShopObservation",
    "ShopState",
    "StateStore",
    "StorageError",
    "TradeScanError",
    "UiWaystoneObservation",
    "WaystoneFilter",
    "WaystoneRef",
    "WaystoneSource",
    "WaystoneState",
]
