"""Scan ingest orchestration and read-side queries."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime

from tradescan._constants import CHUNK_LIMIT_DEFAULT, ITEM_LIMIT_DEFAULT
from tradescan.config import ScanServiceConfig
from tradescan.models._base import from_epoch_ms
from tradescan.models.position import Dimension, Position
from tradescan.models.query import ChunkSummary, ShopFilter, WaystoneFilter
from tradescan.models.scan import Scan
from tradescan.models.shop import ShopAction, ShopObservation, ShopState
from tradescan.models.waystone import WaystoneObservation, WaystoneRef, WaystoneState
from tradescan.state.changes import ReconcileResult
from tradescan.state.nearest import NearestWaystoneAnnotator, RecomputeScope, closest_waystone
from tradescan.state.shops import ShopReconciler
from tradescan.state.store import StateStore
from tradescan.state.waystones import WaystoneReconciler

_logger = logging.getLogger(__name__)

_ChunkId = tuple[str, int, int]


class ScanService:
    """Atomic scan ingestion over a :class:`StateStore`.

    Usage::

        service = ScanService.open(ScanServiceConfig.from_env())
        scan_id = service.ingest_scan(scan, shops, waystones)
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._shops = ShopReconciler(store)
        self._waystones = WaystoneReconciler(store)
        self._annotator = NearestWaystoneAnnotator(store)

    @classmethod
    def open(cls, config: ScanServiceConfig) -> ScanService:
        return cls(StateStore.open(config.db_file, journal_mode=config.journal_mode))

    @property
    def store(self) -> StateStore:
        return self._store

    def close(self) -> None:
        self._store.close()

    def __enter__(self) -> ScanService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest_scan(
        self,
        scan: Scan,
        shops: Iterable[ShopObservation] = (),
        waystones: Iterable[WaystoneObservation] = (),
        *,
        skip_shop_reconcile: bool = False,
        skip_waystone_reconcile: bool = False,
    ) -> int:
        """Record ``scan`` and merge its observations in one transaction.

        Returns the new scan id. Raises
        :class:`~tradescan.exceptions.DuplicateScanError` when a scan with
        the same natural key exists; nothing is written in that case.
        Incomplete shop observations are dropped before reconciliation.
        """
        shop_batch = list(shops)
        complete = [shop for shop in shop_batch if shop.is_complete]
        if len(complete) != len(shop_batch):
            _logger.debug("Dropped %d incomplete shop observations", len(shop_batch) - len(complete))
        waystone_batch = list(waystones)

        with self._store.transaction():
            scan_id = self._store.insert_scan(scan)
            recorded = scan.model_copy(update={"id": scan_id})

            shop_result = ReconcileResult()
            if not skip_shop_reconcile:
                shop_result = self._shops.reconcile(recorded, complete)

            waystone_result = ReconcileResult()
            if not skip_waystone_reconcile:
                waystone_result = self._waystones.reconcile(recorded, waystone_batch)

            annotated = self._refresh_nearest(shop_result, waystone_result)

        _logger.debug(
            "Ingested scan id=%d sender=%s chunk=%s shops=%s waystones=%s annotated=%d",
            scan_id,
            scan.sender_id,
            scan.chunk,
            shop_result.summary(),
            waystone_result.summary(),
            annotated,
        )
        return scan_id

    def _refresh_nearest(self, shops: ReconcileResult, waystones: ReconcileResult) -> int:
        """Recompute exactly the annotations the batch may have invalidated.

        A waystone inserted or replaced in a dimension can become anyone's
        nearest there, so that dimension is recomputed in full. A pruned
        waystone only affects shops that referenced it, and a new shop
        version only needs its own annotation.
        """
        full_dimensions = waystones.changed_dimensions
        written = 0
        if full_dimensions:
            written += self._annotator.recompute(RecomputeScope.ALL, dimensions=full_dimensions)

        targets = set(shops.changed)
        pruned_ids = [pruned.state_id for pruned in waystones.pruned]
        if pruned_ids:
            targets.update(self._annotator.positions_referencing(pruned_ids))
        targets = {position for position in targets if position.dimension not in full_dimensions}
        if targets:
            written += self._annotator.annotate(targets)
        return written

    def recompute_nearest(
        self,
        scope: RecomputeScope | str = RecomputeScope.ALL,
        *,
        dimensions: Iterable[Dimension] | None = None,
    ) -> int:
        """Administrative recompute; returns the number of shops annotated."""
        with self._store.transaction():
            count = self._annotator.recompute(scope, dimensions=dimensions)
        _logger.debug("Nearest waystone recompute scope=%s shops=%d", scope, count)
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_active_shops(self, shop_filter: ShopFilter | None = None) -> list[ShopState]:
        return self._store.query_active_shops(shop_filter or ShopFilter())

    def query_active_waystones(self, waystone_filter: WaystoneFilter | None = None) -> list[WaystoneState]:
        return self._store.query_active_waystones(waystone_filter or WaystoneFilter())

    def nearest_waystone(self, position: Position) -> WaystoneRef | None:
        """Nearest nameable waystone to ``position``.

        For an active shop this is its stored annotation; for any other
        position it is computed on the fly.
        """
        shop = self._store.active_shop_at(position)
        if shop is not None:
            return shop.nearest_waystone
        match = closest_waystone(position, self._store.nameable_waystones(position.dimension))
        if match is None:
            return None
        waystone = match.waystone
        return WaystoneRef(
            id=waystone.id,
            dimension=waystone.dimension,
            x=waystone.x,
            y=waystone.y,
            z=waystone.z,
            name=waystone.name,
            owner=waystone.owner,
            distance_sq=match.distance_sq,
        )

    def top_sellers(
        self,
        item: str,
        dimension: Dimension | None = None,
        limit: int = ITEM_LIMIT_DEFAULT,
    ) -> list[ShopState]:
        """Cheapest active sell offers, one per (owner, price)."""
        return self._store.top_shops(
            item=item,
            action=ShopAction.SELL,
            dimension=dimension,
            limit=limit,
            descending=False,
        )

    def top_buyers(
        self,
        item: str,
        dimension: Dimension | None = None,
        limit: int = ITEM_LIMIT_DEFAULT,
    ) -> list[ShopState]:
        """Highest active buy offers, one per (owner, price)."""
        return self._store.top_shops(
            item=item,
            action=ShopAction.BUY,
            dimension=dimension,
            limit=limit,
            descending=True,
        )

    def list_items(self) -> list[str]:
        return self._store.list_items()

    def latest_observed(self, item: str | None = None, dimension: Dimension | None = None) -> datetime | None:
        return self._store.latest_observed(item=item, dimension=dimension)

    def shop_history(self, position: Position) -> list[ShopState]:
        return self._store.shop_history(position)

    def waystone_history(self, position: Position) -> list[WaystoneState]:
        return self._store.waystone_history(position)

    def chunk_summaries(
        self,
        dimension: Dimension | None = None,
        *,
        stale_minutes: int | None = None,
        min_ever_shops: int | None = None,
        min_ever_waystones: int | None = None,
        has_waystones: bool | None = None,
        limit: int = CHUNK_LIMIT_DEFAULT,
        offset: int = 0,
        now: datetime | None = None,
    ) -> list[ChunkSummary]:
        """Scan coverage per chunk.

        A chunk is listed once it was scanned or holds active state.
        ``stale_minutes`` keeps chunks not scanned for at least that many
        minutes (never-scanned chunks always qualify). ``min_ever_shops``
        and ``min_ever_waystones`` require that many distinct objects ever
        recorded. ``has_waystones`` filters on whether the chunk has ever
        held a waystone.
        """
        now = now or datetime.now(UTC)
        summaries: dict[_ChunkId, dict[str, object]] = {}

        def entry(row: sqlite3.Row) -> dict[str, object]:
            key = (row["dimension"], row["chunk_x"], row["chunk_z"])
            if key not in summaries:
                summaries[key] = {"dimension": key[0], "chunk_x": key[1], "chunk_z": key[2]}
            return summaries[key]

        for row in self._store.scan_chunk_stats(dimension):
            latest = from_epoch_ms(row["latest_scanned_at"])
            summary = entry(row)
            summary["total_scans"] = row["total_scans"]
            summary["latest_scanned_at"] = latest
            summary["minutes_since_last_scan"] = max(0, int((now - latest).total_seconds() // 60))
        for table in ("shops", "waystones"):
            for row in self._store.active_counts_by_chunk(table, dimension):
                entry(row)[f"active_{table}"] = row["active"]

        for table in ("shops", "waystones"):
            for column, rows in (
                ("last_observed", self._store.last_observed_by_chunk(table, dimension)),
                ("ever_observed", self._store.ever_observed_by_chunk(table, dimension)),
            ):
                for row in rows:
                    known = summaries.get((row["dimension"], row["chunk_x"], row["chunk_z"]))
                    if known is not None:
                        known[f"{column}_{table}"] = row[column]

        result: list[ChunkSummary] = []
        for key in sorted(summaries):
            summary = ChunkSummary.model_validate(summaries[key])
            if summary.active_waystones > summary.last_observed_waystones:
                summary = summary.model_copy(update={"last_observed_waystones": summary.active_waystones})
            if stale_minutes is not None and summary.minutes_since_last_scan is not None:
                if summary.minutes_since_last_scan < stale_minutes:
                    continue
            if min_ever_shops is not None and summary.ever_observed_shops < min_ever_shops:
                continue
            if min_ever_waystones is not None and summary.ever_observed_waystones < min_ever_waystones:
                continue
            if has_waystones is not None and (summary.ever_observed_waystones > 0) != has_waystones:
                continue
            result.append(summary)
        return result[offset : offset + limit]
