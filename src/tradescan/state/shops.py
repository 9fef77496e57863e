"""Shop state reconciliation."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from tradescan.models.position import ChunkKey
from tradescan.models.scan import Scan
from tradescan.models.shop import ShopObservation, ShopState
from tradescan.state.changes import PrunedState, ReconcileResult
from tradescan.state.chunks import group_by_chunk
from tradescan.state.diff import Decision, PlannedChange, plan_chunk
from tradescan.state.policy import SHOP_RULES
from tradescan.state.store import StateStore

_logger = logging.getLogger(__name__)


class ShopReconciler:
    """Merge shop observations into per-position shop state.

    Every scanned chunk is a closed world: an active shop in the chunk
    that the scan does not report is retired.
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def reconcile(self, scan: Scan, observations: Iterable[ShopObservation]) -> ReconcileResult:
        """Reconcile every chunk touched by ``scan`` (its own chunk included)."""
        result = ReconcileResult()
        for key, bucket in group_by_chunk(scan.chunk, observations).items():
            result.merge(self.reconcile_chunk(scan, key, bucket.observations))
        return result

    def reconcile_chunk(
        self,
        scan: Scan,
        chunk: ChunkKey,
        observations: list[ShopObservation],
    ) -> ReconcileResult:
        existing = self._store.active_shops_in_chunk(chunk)
        plan = plan_chunk(existing, observations, SHOP_RULES, entity="shop")
        result = ReconcileResult()
        for change in plan:
            self._apply(scan, chunk, change, result)
        _logger.debug(
            "Reconciled shops chunk=%s existing=%d observed=%d %s",
            chunk,
            len(existing),
            len(observations),
            result.summary(),
        )
        return result

    def _apply(
        self,
        scan: Scan,
        chunk: ChunkKey,
        change: PlannedChange[ShopState, ShopObservation],
        result: ReconcileResult,
    ) -> None:
        if change.decision is Decision.INSERT:
            assert change.observation is not None  # noqa: S101
            self._store.insert_shop(change.observation, scan, chunk)
            result.inserted.append(change.position)
        elif change.decision is Decision.EXTEND:
            assert change.existing is not None  # noqa: S101
            self._store.extend_shop(change.existing.id, scan)
            result.extended.append(change.position)
        elif change.decision is Decision.REPLACE:
            assert change.existing is not None and change.observation is not None  # noqa: S101
            self._store.retire_shop(change.existing.id)
            self._store.insert_shop(change.observation, scan, chunk)
            result.replaced.append(change.position)
        else:
            assert change.existing is not None  # noqa: S101
            self._store.retire_shop(change.existing.id)
            result.pruned.append(PrunedState(change.existing.id, change.position))
