from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta

import pytest
from aiohttp.test_utils import TestClient, TestServer

from tradescan.config import ScanServiceConfig
from tradescan.ingestion import parse_scan_payload
from tradescan.models import Dimension, Position
from tradescan.service import ScanService
from tradescan.state.store import StateStore
from tradescan.web import create_app

pytestmark = pytest.mark.web

class _TickingClock:
    """Advances one second per call so every request gets a distinct scan time."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

@contextlib.asynccontextmanager
async def _client(
    service: ScanService | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
    **config: object,
) -> AsyncIterator[TestClient]:
    config.setdefault("repair_on_startup", False)
    app = create_app(
        service or ScanService(StateStore.open()),
        ScanServiceConfig(**config),
        clock=clock or _TickingClock(),
    )
    async with TestClient(TestServer(app)) as client:
        yield client

SCAN_BODY = {
    "senderId": "player-1",
    "dimension": "overworld",
    "shops": [
        {"owner": "A", "item": "Diamond", "position": [0, 64, 0], "price": 5, "amount": 2, "action": "sell"},
        {"owner": "B", "item": "Diamond", "position": [3, 64, 0], "price": 9, "amount": 1, "action": "buy"},
    ],
    "waystones": [{"position": [0, 64, 10], "name": "W1", "owner": "ann"}],
}

WAYSTONE_BODY = {
    "senderId": "player-1",
    "position": [100, 64, 20],
    "dimension": "overworld",
    "chunkX": 6,
    "chunkZ": 1,
    "name": "W2",
    "owner": "bob",
}

@pytest.mark.asyncio
async def test_healthz_and_mod_version() -> None:
    async with _client(min_mod_version="1.2.0") as client:
        health = await client.get("/healthz")
        version = await client.get("/v1/mod-version")

        assert health.status == 200
        assert await health.json() == {"ok": True}
        assert await version.json() == {"min_version": "1.2.0"}

@pytest.mark.asyncio
async def test_scan_then_item_lookup() -> None:
    async with _client() as client:
        created = await client.post("/v1/scan", json=SCAN_BODY)
        assert created.status == 201
        body = await created.json()
        assert body["ok"] is True
        assert (body["dimension"], body["chunkX"], body["chunkZ"]) == ("overworld", 0, 0)
        assert (body["observed"], body["observedWaystones"]) == (2, 1)

        resp = await client.get("/v1/item", params={"item": "diamond"})
        assert resp.status == 200
        item = await resp.json()

    seller = item["topSellers"][0]
    assert seller["owner"] == "A"
    assert seller["price"] == 5.0
    assert seller["coords"] == [0, 64, 0]
    assert seller["nearestWaystone"] == {"name": "W1", "position": [0, 64, 10], "distanceSq": 100}
    assert [buyer["owner"] for buyer in item["topBuyers"]] == ["B"]
    assert item["refreshedAt"] == seller["lastSeenAt"]

@pytest.mark.asyncio
async def test_duplicate_scan_returns_conflict() -> None:
    fixed = datetime(2026, 1, 1, tzinfo=UTC)
    async with _client(clock=lambda: fixed) as client:
        first = await client.post("/v1/scan", json=SCAN_BODY)
        second = await client.post("/v1/scan", json=SCAN_BODY)

        assert first.status == 201
        assert second.status == 409
        assert await second.json() == {"ok": False, "error": "duplicate scan data"}

@pytest.mark.asyncio
async def test_invalid_payloads_return_bad_request() -> None:
    async with _client() as client:
        missing_sender = await client.post("/v1/scan", json={"shops": []})
        not_json = await client.post("/v1/scan", data=b"{oops", headers={"Content-Type": "application/json"})

        assert missing_sender.status == 400
        body = await missing_sender.json()
        assert body["ok"] is False
        assert "senderId" in body["error"]
        assert not_json.status == 400

@pytest.mark.asyncio
async def test_waystone_push_annotates_without_pruning_shops() -> None:
    service = ScanService(StateStore.open())
    async with _client(service) as client:
        await client.post("/v1/scan", json={**SCAN_BODY, "waystones": []})
        pushed = await client.post("/v1/scan-waystone", json={**WAYSTONE_BODY, "chunkX": 0, "chunkZ": 0})

        assert pushed.status == 201
        body = await pushed.json()
        assert body["waystone"] == {"position": [100, 64, 20], "name": "W2", "owner": "bob"}

        shops = service.query_active_shops()
        assert len(shops) == 2
        nearest = service.nearest_waystone(Position(Dimension.OVERWORLD, 0, 64, 0))
        assert nearest is not None and nearest.name == "W2"

@pytest.mark.asyncio
async def test_item_query_validation() -> None:
    async with _client() as client:
        missing = await client.get("/v1/item")
        bad_limit = await client.get("/v1/item", params={"item": "x", "limit": "0"})
        bad_dimension = await client.get("/v1/item", params={"item": "x", "dimension": "mars"})

        assert missing.status == 400
        assert (await missing.json())["error"] == "item query param is required"
        assert bad_limit.status == 400
        assert bad_dimension.status == 400

@pytest.mark.asyncio
async def test_item_limit_is_capped() -> None:
    shops = [
        {"owner": f"o{i}", "item": "Stone", "position": [i, 64, 0], "price": i + 1, "amount": 1, "action": "sell"}
        for i in range(12)
    ]
    async with _client() as client:
        await client.post("/v1/scan", json={"senderId": "p", "dimension": "overworld", "shops": shops})

        default = await (await client.get("/v1/item", params={"item": "stone"})).json()
        capped = await (await client.get("/v1/item", params={"item": "stone", "limit": "50"})).json()

    assert [entry["price"] for entry in default["topSellers"]] == [1.0, 2.0, 3.0]
    assert len(capped["topSellers"]) == 10

@pytest.mark.asyncio
async def test_items_and_chunks() -> None:
    async with _client() as client:
        await client.post("/v1/scan", json=SCAN_BODY)
        await client.post("/v1/scan-waystone", json=WAYSTONE_BODY)

        items = await (await client.get("/v1/items")).json()
        chunks = await (await client.get("/v1/chunks")).json()
        with_waystones = await (await client.get("/v1/chunks", params={"hasWaystones": "true"})).json()
        bad = await client.get("/v1/chunks", params={"staleMinutes": "soon"})
        assert (await bad.json())["error"] == "numeric query params must be valid numbers"

    assert items["ok"] is True
    assert items["items"] == [{"name": "Diamond"}]
    by_chunk = {(c["chunkX"], c["chunkZ"]): c for c in chunks["chunks"]}
    assert by_chunk[(0, 0)]["activeShops"] == 2
    assert by_chunk[(6, 1)]["activeWaystones"] == 1
    assert len(with_waystones["chunks"]) == 2
    assert bad.status == 400

@pytest.mark.asyncio
async def test_unknown_route_is_json_not_found() -> None:
    async with _client() as client:
        resp = await client.get("/v2/nothing")

        assert resp.status == 404
        assert await resp.json() == {"ok": False, "error": "Not found"}

@pytest.mark.asyncio
async def test_maintenance_mode() -> None:
    async with _client(maintenance_mode=True) as client:
        health = await client.get("/healthz")
        scan = await client.post("/v1/scan", json=SCAN_BODY)

        assert await health.json() == {"ok": False, "maintenance": True}
        assert scan.status == 503
        assert scan.headers["Retry-After"] == "120"

@pytest.mark.asyncio
async def test_oversized_body_is_rejected() -> None:
    async with _client(max_body_bytes=64) as client:
        resp = await client.post("/v1/scan", json={**SCAN_BODY, "padding": "x" * 256})

        assert resp.status == 413

@pytest.mark.asyncio
async def test_startup_repairs_missing_annotations() -> None:
    service = ScanService(StateStore.open())
    batch = parse_scan_payload(SCAN_BODY, received_at=datetime(2026, 1, 1, tzinfo=UTC))
    service.ingest_scan(batch.scan, batch.shops, batch.waystones)
    shop = Position(Dimension.OVERWORLD, 0, 64, 0)
    with service.store.transaction():
        service.store.set_nearest(shop, None, None)
    assert service.nearest_waystone(shop) is None

    async with _client(service, repair_on_startup=True) as client:
        health = await client.get("/healthz")

        assert health.status == 200
        nearest = service.nearest_waystone(shop)
        assert nearest is not None and nearest.name == "W1"

@pytest.mark.asyncio
async def test_chunk_scan_after_push_from_neighbour_chunk() -> None:
    service = ScanService(StateStore.open())
    border_scan = {
        "senderId": "player-2",
        "dimension": "overworld",
        "chunkX": 6,
        "chunkZ": 1,
        "waystones": [{"position": [100, 64, 20], "name": "W2", "owner": "bob"}],
    }
    async with _client(service) as client:
        pushed = await client.post("/v1/scan-waystone", json={**WAYSTONE_BODY, "chunkX": 0, "chunkZ": 0})
        scanned = await client.post("/v1/scan", json=border_scan)
        anonymous = await client.post("/v1/scan", json={**border_scan, "waystones": [{"position": [100, 64, 20]}]})

        assert pushed.status == 201
        assert scanned.status == 201
        assert anonymous.status == 201
        history = service.waystone_history(Position(Dimension.OVERWORLD, 100, 64, 20))
        assert [(w.name, w.chunk_x, w.chunk_z, w.is_current) for w in history] == [("W2", 6, 1, True)]
        assert history[0].last_seen_scan_id == 3

@pytest.mark.asyncio
async def test_chunks_history_counts_and_filters() -> None:
    async with _client() as client:
        await client.post("/v1/scan", json=SCAN_BODY)
        await client.post("/v1/scan", json={**SCAN_BODY, "shops": SCAN_BODY["shops"][:1], "waystones": []})

        chunks = await (await client.get("/v1/chunks")).json()
        rich = await (await client.get("/v1/chunks", params={"minEver": "2"})).json()
        waystoned = await (await client.get("/v1/chunks", params={"minEverWaystones": "1"})).json()
        empty = await (await client.get("/v1/chunks", params={"minEver": "3"})).json()
        bad = await client.get("/v1/chunks", params={"minEverWaystones": "many"})

    [chunk] = chunks["chunks"]
    assert (chunk["chunkX"], chunk["chunkZ"], chunk["totalScans"]) == (0, 0, 2)
    assert chunk["lastObservedCount"] == 1
    assert chunk["everObservedDistinct"] == 2
    assert chunk["lastObservedWaystones"] == 0
    assert chunk["everObservedWaystones"] == 1
    assert chunk["activeWaystones"] == 0
    assert len(rich["chunks"]) == 1
    assert len(waystoned["chunks"]) == 1
    assert empty["chunks"] == []
    assert bad.status == 400
