"""Scan payload validation.

Turns raw JSON bodies (as posted by the game client mod) into a
:class:`ScanBatch`: a :class:`~tradescan.models.scan.Scan` plus typed
shop and waystone observations. This is the only place that raises
:class:`~tradescan.exceptions.ScanValidationError`; everything downstream
assumes validated input.

Two payload shapes are accepted:

- chunk scans (``/v1/scan``): shops and passive waystone sightings for
  one chunk, with scan dimension/chunk derivable from the first object;
- waystone pushes (``/v1/scan-waystone``): one authoritative waystone
  read from the in-game UI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from tradescan.exceptions import ScanValidationError
from tradescan.ingestion.normalize import parse_block_position, require_float, require_int, safe_str
from tradescan.models.position import Dimension
from tradescan.models.scan import Scan
from tradescan.models.shop import ShopAction, ShopObservation
from tradescan.models.waystone import ChunkWaystoneObservation, UiWaystoneObservation, WaystoneObservation

_logger = logging.getLogger(__name__)

TPayload = TypeVar("TPayload", bound=BaseModel)


@dataclass(frozen=True, slots=True)
class ScanBatch:
    """A validated scan ready for :meth:`ScanService.ingest_scan`."""

    scan: Scan
    shops: list[ShopObservation] = field(default_factory=list)
    waystones: list[WaystoneObservation] = field(default_factory=list)


class _PayloadModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )


def _optional_dimension(value: Any) -> Dimension | None:
    if value is None or value == "":
        return None
    return Dimension.parse(value)


def _list_or_empty(value: Any, label: str) -> Any:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{label} must be an array")
    return value


class ShopPayload(_PayloadModel):
    owner: str
    item: str
    position: tuple[int, int, int]
    dimension: Dimension | None = None
    price: float | None = None
    amount: int | None = None
    action: ShopAction | None = None

    @field_validator("owner", "item", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("owner and item are required")
        return text

    @field_validator("position", mode="before")
    @classmethod
    def _parse_position(cls, value: Any) -> tuple[int, int, int]:
        return parse_block_position(value)

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: Any) -> Dimension | None:
        return _optional_dimension(value)

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, value: Any) -> float | None:
        return require_float(value, "price")

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> int | None:
        return require_int(value, "amount")

    @field_validator("action", mode="before")
    @classmethod
    def _parse_action(cls, value: Any) -> ShopAction | None:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("action must be a string when provided")
        return ShopAction.parse(value)


class WaystoneSightingPayload(_PayloadModel):
    position: tuple[int, int, int]
    dimension: Dimension | None = None
    name: str | None = None
    owner: str | None = None

    @field_validator("position", mode="before")
    @classmethod
    def _parse_position(cls, value: Any) -> tuple[int, int, int]:
        return parse_block_position(value)

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: Any) -> Dimension | None:
        return _optional_dimension(value)

    @field_validator("name", "owner", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        return safe_str(value)


class ScanPayload(_PayloadModel):
    sender_id: str
    dimension: Dimension | None = None
    chunk_x: int | None = None
    chunk_z: int | None = None
    shops: list[ShopPayload] = []
    waystones: list[WaystoneSightingPayload] = []

    @field_validator("sender_id", mode="before")
    @classmethod
    def _require_sender(cls, value: Any) -> str:
        sender = safe_str(value)
        if sender is None:
            raise ValueError("senderId is required")
        return sender

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: Any) -> Dimension | None:
        return _optional_dimension(value)

    @field_validator("chunk_x", "chunk_z", mode="before")
    @classmethod
    def _parse_chunk(cls, value: Any) -> int | None:
        return require_int(value, "chunkX and chunkZ")

    @field_validator("shops", mode="before")
    @classmethod
    def _parse_shops(cls, value: Any) -> Any:
        return _list_or_empty(value, "shops")

    @field_validator("waystones", mode="before")
    @classmethod
    def _parse_waystones(cls, value: Any) -> Any:
        return _list_or_empty(value, "waystones")


class WaystonePushPayload(_PayloadModel):
    sender_id: str
    position: tuple[int, int, int]
    dimension: Dimension
    chunk_x: int
    chunk_z: int
    name: str
    owner: str

    @field_validator("sender_id", mode="before")
    @classmethod
    def _require_sender(cls, value: Any) -> str:
        sender = safe_str(value)
        if sender is None:
            raise ValueError("senderId is required")
        return sender

    @field_validator("position", mode="before")
    @classmethod
    def _parse_position(cls, value: Any) -> tuple[int, int, int]:
        return parse_block_position(value)

    @field_validator("dimension", mode="before")
    @classmethod
    def _parse_dimension(cls, value: Any) -> Dimension:
        if value is None or value == "":
            raise ValueError("dimension is required")
        return Dimension.parse(value)

    @field_validator("chunk_x", "chunk_z", mode="before")
    @classmethod
    def _parse_chunk(cls, value: Any) -> int:
        parsed = require_int(value, "chunkX and chunkZ")
        if parsed is None:
            raise ValueError("chunkX and chunkZ are required")
        return parsed

    @field_validator("name", "owner", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("name and owner are required")
        return text


def _format_loc(loc: tuple[int | str, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def _validate(model: type[TPayload], body: Any) -> TPayload:
    if not isinstance(body, dict):
        raise ScanValidationError("request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        error = exc.errors()[0]
        path = _format_loc(tuple(error.get("loc", ())))
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        raise ScanValidationError(f"{path}: {message}" if path else message, field=path) from exc


def parse_scan_payload(body: Any, *, received_at: datetime) -> ScanBatch:
    """Validate a chunk-scan body.

    Scan dimension and chunk are taken from the body when present, else
    derived from the first shop, else from the first waystone sighting.
    """
    payload = _validate(ScanPayload, body)
    dimension = payload.dimension

    shops: list[ShopObservation] = []
    for index, shop in enumerate(payload.shops):
        shop_dimension = shop.dimension or dimension
        if shop_dimension is None:
            raise ScanValidationError(
                f"shops[{index}] missing dimension; provide scan dimension or per-shop dimension",
                field=f"shops[{index}].dimension",
            )
        x, y, z = shop.position
        shops.append(
            ShopObservation(
                dimension=shop_dimension,
                x=x,
                y=y,
                z=z,
                owner=shop.owner,
                item=shop.item,
                price=shop.price,
                amount=shop.amount,
                action=shop.action,
            )
        )

    waystones: list[WaystoneObservation] = []
    for index, sighting in enumerate(payload.waystones):
        waystone_dimension = sighting.dimension or dimension
        if waystone_dimension is None:
            raise ScanValidationError(
                f"waystones[{index}] missing dimension; provide scan dimension or per-waystone dimension",
                field=f"waystones[{index}].dimension",
            )
        x, y, z = sighting.position
        waystones.append(
            ChunkWaystoneObservation(
                dimension=waystone_dimension,
                x=x,
                y=y,
                z=z,
                name=sighting.name,
                owner=sighting.owner,
            )
        )

    chunk_x, chunk_z = payload.chunk_x, payload.chunk_z
    if dimension is None or chunk_x is None or chunk_z is None:
        first = shops[0] if shops else (waystones[0] if waystones else None)
        if first is not None:
            derived = first.position.chunk
            if dimension is None:
                dimension = first.dimension
            if chunk_x is None:
                chunk_x = derived.chunk_x
            if chunk_z is None:
                chunk_z = derived.chunk_z

    if dimension is None or chunk_x is None or chunk_z is None:
        raise ScanValidationError(
            "dimension, chunkX, and chunkZ are required when they cannot be derived from shops or waystones"
        )

    scan = Scan(
        sender_id=payload.sender_id,
        dimension=dimension,
        chunk_x=chunk_x,
        chunk_z=chunk_z,
        scanned_at=received_at,
    )
    _logger.debug(
        "Parsed scan sender=%s chunk=%s/%d/%d shops=%d waystones=%d",
        scan.sender_id,
        scan.dimension,
        chunk_x,
        chunk_z,
        len(shops),
        len(waystones),
    )
    return ScanBatch(scan=scan, shops=shops, waystones=waystones)


def parse_waystone_payload(body: Any, *, received_at: datetime) -> ScanBatch:
    """Validate a UI waystone push into a single ``ui`` observation.

    ``chunkX``/``chunkZ`` name the sender's chunk and only key the scan.
    """
    payload = _validate(WaystonePushPayload, body)
    x, y, z = payload.position
    observation = UiWaystoneObservation(
        dimension=payload.dimension,
        x=x,
        y=y,
        z=z,
        name=payload.name,
        owner=payload.owner,
    )
    scan = Scan(
        sender_id=payload.sender_id,
        dimension=payload.dimension,
        chunk_x=payload.chunk_x,
        chunk_z=payload.chunk_z,
        scanned_at=received_at,
    )
    return ScanBatch(scan=scan, shops=[], waystones=[observation])
