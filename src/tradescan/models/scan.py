"""Scan (ingest event) model."""

from __future__ import annotations

from pydantic import Field, field_validator

from tradescan.models._base import TradeScanModel, UtcTimestamp
from tradescan.models.position import ChunkKey, Dimension


class Scan(TradeScanModel):
    """One ingest event.

    Append-only: once recorded a scan is only ever read back, as the
    provenance of ``first_seen_scan_id`` / ``last_seen_scan_id``. The
    natural key is ``(sender_id, dimension, chunk_x, chunk_z, scanned_at)``.
    """

    id: int | None = None
    """Row id; ``None`` until the scan has been recorded."""
    sender_id: str = Field(min_length=1)
    dimension: Dimension
    chunk_x: int
    chunk_z: int
    scanned_at: UtcTimestamp

    @field_validator("sender_id")
    @classmethod
    def _strip_sender(cls, value: str) -> str:
        sender = value.strip()
        if not sender:
            raise ValueError("sender_id must be non-empty")
        return sender

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: object) -> Dimension:
        return Dimension.parse(value)

    @property
    def chunk(self) -> ChunkKey:
        return ChunkKey(self.dimension, self.chunk_x, self.chunk_z)
