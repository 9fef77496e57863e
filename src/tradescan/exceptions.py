"""Custom exception hierarchy for tradescan."""

from __future__ import annotations


class TradeScanError(Exception):
    """Base exception for all tradescan errors."""


class ConfigError(TradeScanError):
    """Invalid or missing configuration."""


class ScanValidationError(TradeScanError):
    """Incoming scan payload is incomplete or malformed.

    Raised only by the ingestion layer. The reconciliation core assumes
    validated input and never raises this itself.
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class DuplicateScanError(TradeScanError):
    """A scan with the same natural key was already recorded.

    Recoverable: nothing from the rejected scan has been written.
    """

    def __init__(
        self,
        message: str = "duplicate scan data",
        *,
        sender_id: str = "",
    ) -> None:
        self.sender_id = sender_id
        super().__init__(message)


class ConsistencyViolation(TradeScanError):
    """Stored state breaks the one-active-version-per-position invariant.

    Indicates prior corruption. The enclosing ingest transaction is
    aborted and the error propagates to the caller.
    """

    def __init__(self, message: str, *, entity: str = "", position: object = None) -> None:
        self.entity = entity
        self.position = position
        super().__init__(message)


class StorageError(TradeScanError):
    """Transaction or I/O failure in the underlying SQLite store."""
