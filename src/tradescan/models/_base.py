"""Base model and timestamp helpers shared by all tradescan models.

Every model inherits from :class:`TradeScanModel` which provides:

* ``frozen=True`` so states read back from the store are immutable
  snapshots (history rows never change, active rows are re-read).
* ``alias_generator=to_camel`` so payload keys such as ``chunkX`` map
  to ``chunk_x`` fields while Python callers keep using field names.

Timestamps are timezone-aware UTC datetimes in Python and integer
epoch milliseconds in storage; :data:`UtcTimestamp` coerces both.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def to_epoch_ms(value: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def parse_timestamp(value: Any) -> Any:
    """Coerce epoch seconds/milliseconds or a datetime into a UTC datetime.

    Values pydantic can handle on its own (ISO strings) are passed through.
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


UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch ints (seconds or ms) to UTC datetimes."""


class TradeScanModel(BaseModel):
    """Base for tradescan domain models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
