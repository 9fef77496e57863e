from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from tradescan.exceptions import DuplicateScanError, StorageError
from tradescan.models import (
    ChunkWaystoneObservation,
    Dimension,
    Position,
    Scan,
    ShopFilter,
    ShopObservation,
    UiWaystoneObservation,
    WaystoneFilter,
    WaystoneSource,
)
from tradescan.service import ScanService
from tradescan.state.nearest import RecomputeScope
from tradescan.state.store import StateStore

OW = Dimension.OVERWORLD


def _at(minutes: int = 0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=minutes)


def _scan(minutes: int = 0, chunk_x: int = 0, chunk_z: int = 0, sender: str = "alice") -> Scan:
    return Scan(sender_id=sender, dimension=OW, chunk_x=chunk_x, chunk_z=chunk_z, scanned_at=_at(minutes))


def _shop(x: int, y: int, z: int, *, price: float = 10, amount: int | None = 1, owner: str = "A") -> ShopObservation:
    return ShopObservation(
        dimension=OW, x=x, y=y, z=z, owner=owner, item="X", price=price, amount=amount, action="sell"
    )


def _sighting(x: int, y: int, z: int, name: str | None = None, owner: str | None = None) -> ChunkWaystoneObservation:
    return ChunkWaystoneObservation(dimension=OW, x=x, y=y, z=z, name=name, owner=owner)


@pytest.fixture
def service() -> Iterator[ScanService]:
    svc = ScanService(StateStore.open())
    yield svc
    svc.close()


S1 = Position(OW, 0, 64, 0)
S2 = Position(OW, 100, 64, 0)


def _seed_two_shops_two_waystones(service: ScanService) -> None:
    service.ingest_scan(
        _scan(0),
        [_shop(0, 64, 0), _shop(100, 64, 0, owner="B")],
        [_sighting(0, 64, 10, "W1", "ann"), _sighting(100, 64, 20, "W2", "bob")],
    )


def test_nearest_annotation_references_closest_waystone(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)

    w1 = service.nearest_waystone(S1)
    w2 = service.nearest_waystone(S2)

    assert w1 is not None and w1.name == "W1" and w1.distance_sq == 100
    assert w2 is not None and w2.name == "W2" and w2.distance_sq == 400


def test_pruned_waystone_invalidates_referencing_shops(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)

    # Chunk (0, 0) rescanned: S1 still there, W1 gone.
    service.ingest_scan(_scan(5), [_shop(0, 64, 0)], [])

    nearest = service.nearest_waystone(S1)
    assert nearest is not None
    assert nearest.name == "W2"
    assert nearest.distance_sq == 100 * 100 + 20 * 20
    assert [w.name for w in service.query_active_waystones()] == ["W2"]


def test_nearest_becomes_none_when_last_waystone_pruned(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)], [_sighting(0, 64, 10, "W1", "ann")])

    service.ingest_scan(_scan(5), [_shop(0, 64, 0)], [])

    assert service.nearest_waystone(S1) is None
    shop = service.query_active_shops()[0]
    assert shop.nearest_waystone is None


def test_new_shop_is_annotated_against_existing_waystones(service: ScanService) -> None:
    service.ingest_scan(_scan(0, chunk_x=6, chunk_z=1), [], [_sighting(100, 64, 20, "W2", "bob")])

    service.ingest_scan(_scan(1, chunk_x=6), [_shop(100, 64, 0)], [])

    nearest = service.nearest_waystone(S2)
    assert nearest is not None and nearest.name == "W2" and nearest.distance_sq == 400


def test_reingesting_identical_scan_only_advances_last_seen(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)
    before = {shop.position: shop for shop in service.query_active_shops()}

    second_id = service.ingest_scan(
        _scan(10),
        [_shop(0, 64, 0), _shop(100, 64, 0, owner="B")],
        [_sighting(0, 64, 10, "W1", "ann"), _sighting(100, 64, 20, "W2", "bob")],
    )

    after = {shop.position: shop for shop in service.query_active_shops()}
    assert after.keys() == before.keys()
    for position, shop in after.items():
        old = before[position]
        assert shop.id == old.id
        assert shop.nearest_waystone == old.nearest_waystone
        assert (shop.owner, shop.price, shop.amount, shop.action) == (old.owner, old.price, old.amount, old.action)
        assert shop.first_seen_at == old.first_seen_at
        assert shop.last_seen_at == _at(10)
        assert shop.last_seen_scan_id == second_id
    assert len(service.shop_history(S1)) == 1


def test_stale_replay_never_moves_last_seen_backwards(service: ScanService) -> None:
    first_id = service.ingest_scan(_scan(10), [_shop(0, 64, 0)])
    service.ingest_scan(_scan(5), [_shop(0, 64, 0)])

    shop = service.query_active_shops()[0]
    assert shop.last_seen_at == _at(10)
    assert shop.last_seen_scan_id == first_id


def test_scan_of_chunk_prunes_unreported_shops(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)])

    service.ingest_scan(_scan(1), [])

    assert service.query_active_shops() == []
    history = service.shop_history(S1)
    assert len(history) == 1 and history[0].is_current is False


def test_scan_of_other_chunk_leaves_shop_active(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)])

    service.ingest_scan(_scan(1, chunk_x=3), [])

    assert [shop.position for shop in service.query_active_shops()] == [S1]


def test_changed_price_creates_new_version(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0, price=10)])
    service.ingest_scan(_scan(1), [_shop(0, 64, 0, price=12)])

    history = service.shop_history(S1)

    assert [(state.price, state.is_current) for state in history] == [(10.0, False), (12.0, True)]
    assert history[1].first_seen_at == _at(1)


def test_incomplete_shop_is_never_stored(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0, amount=None)])

    assert service.query_active_shops() == []
    assert service.shop_history(S1) == []


def test_incomplete_observation_does_not_protect_active_shop(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)])

    service.ingest_scan(_scan(1), [_shop(0, 64, 0, amount=None)])

    assert service.query_active_shops() == []


def test_duplicate_scan_is_rejected_without_writes(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0, price=10)])

    with pytest.raises(DuplicateScanError):
        service.ingest_scan(_scan(0), [_shop(0, 64, 0, price=99)])

    shop = service.query_active_shops()[0]
    assert shop.price == 10.0
    assert len(service.shop_history(S1)) == 1


def test_duplicate_scan_from_other_sender_is_accepted(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)])

    service.ingest_scan(_scan(0, sender="bob"), [_shop(0, 64, 0)])

    assert len(service.shop_history(S1)) == 1


def test_failure_rolls_back_whole_scan(service: ScanService, monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(*_args: object, **_kwargs: object) -> None:
        raise StorageError("disk full")

    monkeypatch.setattr(service._waystones, "reconcile", _boom)

    with pytest.raises(StorageError):
        service.ingest_scan(_scan(0), [_shop(0, 64, 0)], [_sighting(0, 64, 10, "W1", "ann")])

    assert service.query_active_shops() == []
    assert service.store.get_scan(1) is None

    monkeypatch.undo()
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)])
    assert len(service.query_active_shops()) == 1


def test_ui_waystone_survives_chunk_scan_without_waystones(service: ScanService) -> None:
    push = UiWaystoneObservation(dimension=OW, x=0, y=64, z=10, chunk_x=0, chunk_z=0, name="Home", owner="ann")
    service.ingest_scan(_scan(0), [], [push], skip_shop_reconcile=True)

    service.ingest_scan(_scan(1), [], [])

    waystones = service.query_active_waystones()
    assert [(w.name, w.source) for w in waystones] == [("Home", WaystoneSource.UI)]


def test_ui_push_skipping_shop_reconcile_keeps_shops(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)])
    push = UiWaystoneObservation(dimension=OW, x=0, y=64, z=10, name="Home", owner="ann")

    service.ingest_scan(_scan(1), [], [push], skip_shop_reconcile=True)

    shop = service.query_active_shops()[0]
    assert shop.nearest_waystone is not None and shop.nearest_waystone.name == "Home"


def test_skip_waystone_reconcile_leaves_waystones_alone(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [], [_sighting(0, 64, 10, "W1", "ann")])

    service.ingest_scan(_scan(1), [], [], skip_waystone_reconcile=True)

    assert len(service.query_active_waystones()) == 1


def test_waystones_never_cross_dimensions(service: ScanService) -> None:
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)], [_sighting(0, 64, 10, "W1", "ann")])
    nether_scan = Scan(sender_id="alice", dimension=Dimension.NETHER, chunk_x=0, chunk_z=0, scanned_at=_at(1))
    nether_shop = ShopObservation(
        dimension=Dimension.NETHER, x=0, y=64, z=0, owner="A", item="X", price=1, amount=1, action="buy"
    )

    service.ingest_scan(nether_scan, [nether_shop])

    assert service.nearest_waystone(Position(Dimension.NETHER, 0, 64, 0)) is None
    assert service.nearest_waystone(S1) is not None


def test_recompute_stale_repairs_missing_annotation(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)
    with service.store.transaction():
        service.store.set_nearest(S1, None, None)

    count = service.recompute_nearest(RecomputeScope.STALE)

    assert count == 1
    nearest = service.nearest_waystone(S1)
    assert nearest is not None and nearest.name == "W1"


def test_recompute_all_counts_every_active_shop(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)

    assert service.recompute_nearest("all") == 2


def test_nearest_waystone_for_arbitrary_position(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)

    nearest = service.nearest_waystone(Position(OW, 90, 64, 20))

    assert nearest is not None
    assert nearest.name == "W2"
    assert nearest.distance_sq == 100


def test_query_filters(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)

    by_owner = service.query_active_shops(ShopFilter(owner="B"))
    by_chunk = service.query_active_waystones(WaystoneFilter(chunk_x=6, chunk_z=1))
    paged = service.query_active_shops(ShopFilter(limit=1, offset=1))

    assert [shop.position for shop in by_owner] == [S2]
    assert [w.name for w in by_chunk] == ["W2"]
    assert [shop.position for shop in paged] == [S2]


def test_top_sellers_and_buyers(service: ScanService) -> None:
    service.ingest_scan(
        _scan(0),
        [
            _shop(1, 64, 1, price=5, owner="A"),
            _shop(2, 64, 1, price=5, owner="A"),
            _shop(3, 64, 1, price=3, owner="B"),
            ShopObservation(dimension=OW, x=4, y=64, z=1, owner="C", item="x", price=7, amount=1, action="buy"),
            ShopObservation(dimension=OW, x=5, y=64, z=1, owner="D", item="X", price=9, amount=1, action="buy"),
        ],
    )

    sellers = service.top_sellers("x")
    buyers = service.top_buyers("X", limit=1)

    assert [(shop.owner, shop.price) for shop in sellers] == [("B", 3.0), ("A", 5.0)]
    assert [(shop.owner, shop.price) for shop in buyers] == [("D", 9.0)]


def test_list_items_and_latest_observed(service: ScanService) -> None:
    service.ingest_scan(
        _scan(3),
        [
            _shop(1, 64, 1),
            ShopObservation(dimension=OW, x=2, y=64, z=1, owner="A", item="apple", price=1, amount=1, action="sell"),
        ],
    )

    assert service.list_items() == ["apple", "X"]
    assert service.latest_observed() == _at(3)
    assert service.latest_observed(item="nothing") is None


def test_chunk_summaries(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)
    service.ingest_scan(_scan(30, chunk_x=6), [_shop(100, 64, 0, owner="B")])

    summaries = service.chunk_summaries(now=_at(60))
    by_chunk = {(s.chunk_x, s.chunk_z): s for s in summaries}

    assert set(by_chunk) == {(0, 0), (6, 0), (6, 1)}
    assert by_chunk[(0, 0)].total_scans == 1
    assert by_chunk[(0, 0)].minutes_since_last_scan == 60
    assert by_chunk[(0, 0)].active_shops == 1
    assert by_chunk[(0, 0)].active_waystones == 1
    assert by_chunk[(6, 0)].minutes_since_last_scan == 30
    assert by_chunk[(6, 1)].total_scans == 0
    assert by_chunk[(6, 1)].active_waystones == 1

    stale = service.chunk_summaries(stale_minutes=45, now=_at(60))
    assert {(s.chunk_x, s.chunk_z) for s in stale} == {(0, 0), (6, 1)}

    without = service.chunk_summaries(has_waystones=False, now=_at(60))
    assert {(s.chunk_x, s.chunk_z) for s in without} == {(6, 0)}

    assert len(service.chunk_summaries(limit=1, offset=1, now=_at(60))) == 1


def test_chunk_summary_history_counts_and_filters(service: ScanService) -> None:
    _seed_two_shops_two_waystones(service)
    service.ingest_scan(_scan(5), [_shop(0, 64, 0, price=12), _shop(1, 64, 1, owner="C")], [])

    summaries = service.chunk_summaries(now=_at(60))
    by_chunk = {(s.chunk_x, s.chunk_z): s for s in summaries}

    home = by_chunk[(0, 0)]
    assert (home.last_observed_shops, home.ever_observed_shops) == (2, 2)
    assert (home.active_waystones, home.last_observed_waystones, home.ever_observed_waystones) == (0, 0, 1)
    # never scanned itself, so nothing counts as last observed
    assert (by_chunk[(6, 0)].last_observed_shops, by_chunk[(6, 0)].ever_observed_shops) == (0, 1)
    assert by_chunk[(6, 1)].last_observed_waystones == 1
    assert by_chunk[(6, 1)].ever_observed_waystones == 1

    def chunks(**filters: object) -> set[tuple[int, int]]:
        return {(s.chunk_x, s.chunk_z) for s in service.chunk_summaries(now=_at(60), **filters)}  # type: ignore[arg-type]

    assert chunks(min_ever_shops=2) == {(0, 0)}
    assert chunks(min_ever_waystones=1) == {(0, 0), (6, 1)}
    assert chunks(has_waystones=True) == {(0, 0), (6, 1)}
    assert chunks(has_waystones=False) == {(6, 0)}


def test_waystone_rename_repoints_shop_annotation(service: ScanService) -> None:
    home = UiWaystoneObservation(dimension=OW, x=0, y=64, z=10, name="Home", owner="ann")
    service.ingest_scan(_scan(0), [_shop(0, 64, 0)], [home])
    before = service.nearest_waystone(S1)
    assert before is not None and before.name == "Home"

    renamed = home.model_copy(update={"name": "New Home"})
    service.ingest_scan(_scan(1), [], [renamed], skip_shop_reconcile=True)

    after = service.nearest_waystone(S1)
    current = service.store.active_waystone_at(Position(OW, 0, 64, 10))
    assert current is not None and current.id != before.id
    assert after is not None
    assert (after.id, after.name, after.distance_sq) == (current.id, "New Home", 100)
    shop = service.query_active_shops()[0]
    assert shop.nearest_waystone is not None and shop.nearest_waystone.id == current.id
