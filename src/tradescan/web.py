"""aiohttp.web adapter exposing ingest and query endpoints.

Handlers only translate HTTP to service calls. Every blocking store call
runs in a worker thread so the event loop keeps serving requests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from aiohttp import web

from tradescan._constants import (
    CHUNK_LIMIT_DEFAULT,
    CHUNK_LIMIT_MAX,
    ITEM_LIMIT_DEFAULT,
    ITEM_LIMIT_MAX,
    MAINTENANCE_RETRY_AFTER_S,
)
from tradescan.config import ScanServiceConfig
from tradescan.exceptions import DuplicateScanError, ScanValidationError, TradeScanError
from tradescan.ingestion import ScanBatch, parse_scan_payload, parse_waystone_payload
from tradescan.models._base import to_epoch_ms
from tradescan.models.position import Dimension
from tradescan.models.query import ChunkSummary
from tradescan.models.shop import ShopState
from tradescan.service import ScanService
from tradescan.state.nearest import RecomputeScope

_logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

SERVICE_KEY = web.AppKey("service", ScanService)
CONFIG_KEY = web.AppKey("config", ScanServiceConfig)
CLOCK_KEY: web.AppKey[Clock] = web.AppKey("clock")

_MAINTENANCE_ERROR = "Service temporarily unavailable due to maintenance"


class InvalidQueryError(ValueError):
    """A query string parameter is missing or malformed."""


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _error(status: int, message: str, headers: dict[str, str] | None = None) -> web.Response:
    return web.json_response({"ok": False, "error": message}, status=status, headers=headers)


# ----------------------------------------------------------------------
# Middlewares
# ----------------------------------------------------------------------


@web.middleware
async def maintenance_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.app[CONFIG_KEY].maintenance_mode and request.path != "/healthz":
        _logger.warning("Maintenance mode, rejecting %s %s", request.method, request.path)
        return _error(503, _MAINTENANCE_ERROR, {"Retry-After": str(MAINTENANCE_RETRY_AFTER_S)})
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPNotFound:
        _logger.warning("Not found: %s %s", request.method, request.path)
        return _error(404, "Not found")
    except web.HTTPRequestEntityTooLarge:
        return _error(413, "request body too large")
    except (ScanValidationError, InvalidQueryError) as exc:
        _logger.debug("Rejected %s %s: %s", request.method, request.path, exc)
        return _error(400, str(exc))
    except DuplicateScanError as exc:
        return _error(409, str(exc))
    except web.HTTPException:
        raise
    except TradeScanError:
        _logger.exception("Request failed: %s %s", request.method, request.path)
        return _error(500, "internal error")


# ----------------------------------------------------------------------
# Request helpers
# ----------------------------------------------------------------------


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError as exc:
        raise ScanValidationError("request body must be valid JSON") from exc


def _query_dimension(request: web.Request) -> Dimension | None:
    raw = request.query.get("dimension", "").strip()
    if not raw:
        return None
    try:
        return Dimension.parse(raw)
    except ValueError as exc:
        raise InvalidQueryError(str(exc)) from exc


def _query_number(request: web.Request, name: str, message: str) -> float | None:
    raw = request.query.get(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise InvalidQueryError(message) from None
    if math.isnan(value) or math.isinf(value):
        raise InvalidQueryError(message)
    return value


def _query_bool(request: web.Request, name: str) -> bool | None:
    raw = request.query.get(name, "").strip().lower()
    if raw in {"true", "1"}:
        return True
    if raw in {"false", "0"}:
        return False
    return None


def _shop_entry(shop: ShopState) -> dict[str, Any]:
    nearest = shop.nearest_waystone
    return {
        "owner": shop.owner,
        "price": shop.price,
        "amount": shop.amount,
        "coords": shop.position.as_list(),
        "dimension": shop.dimension.value,
        "lastSeenAt": to_epoch_ms(shop.last_seen_at),
        "nearestWaystone": (
            {
                "name": nearest.name,
                "position": nearest.position.as_list(),
                "distanceSq": nearest.distance_sq,
            }
            if nearest is not None
            else None
        ),
    }


def _chunk_entry(summary: ChunkSummary) -> dict[str, Any]:
    return {
        "dimension": summary.dimension.value,
        "chunkX": summary.chunk_x,
        "chunkZ": summary.chunk_z,
        "totalScans": summary.total_scans,
        "latestScannedAt": to_epoch_ms(summary.latest_scanned_at) if summary.latest_scanned_at else None,
        "minutesSinceLastScan": summary.minutes_since_last_scan,
        "lastObservedCount": summary.last_observed_shops,
        "everObservedDistinct": summary.ever_observed_shops,
        "lastObservedWaystones": summary.last_observed_waystones,
        "everObservedWaystones": summary.ever_observed_waystones,
        "activeShops": summary.active_shops,
        "activeWaystones": summary.active_waystones,
    }


async def _ingest(request: web.Request, batch: ScanBatch, *, skip_shop_reconcile: bool = False) -> int:
    service = request.app[SERVICE_KEY]
    return await asyncio.to_thread(
        service.ingest_scan,
        batch.scan,
        batch.shops,
        batch.waystones,
        skip_shop_reconcile=skip_shop_reconcile,
    )


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


async def handle_healthz(request: web.Request) -> web.Response:
    if request.app[CONFIG_KEY].maintenance_mode:
        return web.json_response({"ok": False, "maintenance": True})
    return web.json_response({"ok": True})


async def handle_mod_version(request: web.Request) -> web.Response:
    return web.json_response({"min_version": request.app[CONFIG_KEY].min_mod_version})


async def handle_scan(request: web.Request) -> web.Response:
    body = await _read_json(request)
    batch = parse_scan_payload(body, received_at=request.app[CLOCK_KEY]())
    scan_id = await _ingest(request, batch)
    return web.json_response(
        {
            "ok": True,
            "scanId": scan_id,
            "dimension": batch.scan.dimension.value,
            "chunkX": batch.scan.chunk_x,
            "chunkZ": batch.scan.chunk_z,
            "observed": len(batch.shops),
            "observedWaystones": len(batch.waystones),
        },
        status=201,
    )


async def handle_scan_waystone(request: web.Request) -> web.Response:
    body = await _read_json(request)
    batch = parse_waystone_payload(body, received_at=request.app[CLOCK_KEY]())
    scan_id = await _ingest(request, batch, skip_shop_reconcile=True)
    waystone = batch.waystones[0]
    return web.json_response(
        {
            "ok": True,
            "scanId": scan_id,
            "dimension": batch.scan.dimension.value,
            "chunkX": batch.scan.chunk_x,
            "chunkZ": batch.scan.chunk_z,
            "observedWaystones": 1,
            "waystone": {
                "position": waystone.position.as_list(),
                "name": waystone.name,
                "owner": waystone.owner,
            },
        },
        status=201,
    )


async def handle_item(request: web.Request) -> web.Response:
    item = request.query.get("item", "").strip()
    if not item:
        raise InvalidQueryError("item query param is required")
    dimension = _query_dimension(request)
    raw_limit = _query_number(request, "limit", "limit must be a positive number when provided")
    if raw_limit is not None and raw_limit <= 0:
        raise InvalidQueryError("limit must be a positive number when provided")
    limit = ITEM_LIMIT_DEFAULT if raw_limit is None else max(1, min(int(raw_limit), ITEM_LIMIT_MAX))

    service = request.app[SERVICE_KEY]
    sellers = await asyncio.to_thread(service.top_sellers, item, dimension, limit)
    buyers = await asyncio.to_thread(service.top_buyers, item, dimension, limit)
    latest = await asyncio.to_thread(service.latest_observed, item, dimension)
    return web.json_response(
        {
            "ok": True,
            "item": item,
            "refreshedAt": to_epoch_ms(latest) if latest is not None else None,
            "topSellers": [_shop_entry(shop) for shop in sellers],
            "topBuyers": [_shop_entry(shop) for shop in buyers],
        }
    )


async def handle_items(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    items = await asyncio.to_thread(service.list_items)
    latest = await asyncio.to_thread(service.latest_observed)
    refreshed_at = latest if latest is not None else request.app[CLOCK_KEY]()
    return web.json_response(
        {
            "ok": True,
            "refreshedAt": to_epoch_ms(refreshed_at),
            "items": [{"name": item} for item in items],
        }
    )


async def handle_chunks(request: web.Request) -> web.Response:
    message = "numeric query params must be valid numbers"
    dimension = _query_dimension(request)
    stale_minutes = _query_number(request, "staleMinutes", message)
    min_ever = _query_number(request, "minEver", message)
    min_ever_waystones = _query_number(request, "minEverWaystones", message)
    raw_limit = _query_number(request, "limit", message)
    raw_offset = _query_number(request, "offset", message)
    limit = CHUNK_LIMIT_DEFAULT if raw_limit is None else max(0, min(int(raw_limit), CHUNK_LIMIT_MAX))
    offset = 0 if raw_offset is None else max(0, int(raw_offset))

    service = request.app[SERVICE_KEY]
    summaries = await asyncio.to_thread(
        service.chunk_summaries,
        dimension,
        stale_minutes=math.ceil(stale_minutes) if stale_minutes is not None else None,
        min_ever_shops=math.ceil(min_ever) if min_ever is not None else None,
        min_ever_waystones=math.ceil(min_ever_waystones) if min_ever_waystones is not None else None,
        has_waystones=_query_bool(request, "hasWaystones"),
        limit=limit,
        offset=offset,
        now=request.app[CLOCK_KEY](),
    )
    return web.json_response({"chunks": [_chunk_entry(summary) for summary in summaries]})


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


async def _repair_nearest(app: web.Application) -> None:
    if not app[CONFIG_KEY].repair_on_startup:
        return
    try:
        count = await asyncio.to_thread(app[SERVICE_KEY].recompute_nearest, RecomputeScope.ALL)
    except TradeScanError:
        _logger.exception("Failed to recompute nearest waystones on startup")
        return
    _logger.info("Recomputed nearest waystones on startup for %d shops", count)


async def _close_service(app: web.Application) -> None:
    app[SERVICE_KEY].close()


def create_app(
    service: ScanService,
    config: ScanServiceConfig | None = None,
    *,
    clock: Clock | None = None,
) -> web.Application:
    """Build the web application around an open :class:`ScanService`.

    The service is closed when the application shuts down.
    """
    config = config or ScanServiceConfig()
    app = web.Application(
        client_max_size=config.max_body_bytes,
        middlewares=[error_middleware, maintenance_middleware],
    )
    app[SERVICE_KEY] = service
    app[CONFIG_KEY] = config
    app[CLOCK_KEY] = clock or _utc_now

    app.router.add_get("/healthz", handle_healthz)
    app.router.add_get("/v1/mod-version", handle_mod_version)
    app.router.add_post("/v1/scan", handle_scan)
    app.router.add_post("/v1/scan-waystone", handle_scan_waystone)
    app.router.add_get("/v1/item", handle_item)
    app.router.add_get("/v1/items", handle_items)
    app.router.add_get("/v1/chunks", handle_chunks)

    if not config.maintenance_mode:
        app.on_startup.append(_repair_nearest)
    app.on_cleanup.append(_close_service)
    return app


def run(config: ScanServiceConfig) -> None:
    """Open the store and serve until interrupted."""
    service = ScanService.open(config)
    app = create_app(service, config)
    _logger.info("Scan service listening on %s:%d", config.host, config.port)
    web.run_app(app, host=config.host, port=config.port, print=None)
