"""Waystone state reconciliation across two observation sources.

``ui`` pushes are upserted by position wherever they are, ignoring chunk
scope, and never cause pruning. Every state is filed under the chunk that
contains its position, whatever chunk the sender was standing in. ``chunk`` sightings are reconciled per
scanned chunk: they confirm existing waystones, create one only when
they carry name and owner, and retire chunk-sourced waystones the chunk
no longer reports.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from tradescan.models.position import ChunkKey
from tradescan.models.scan import Scan
from tradescan.models.waystone import (
    ChunkWaystoneObservation,
    UiWaystoneObservation,
    WaystoneObservation,
    WaystoneSource,
    WaystoneState,
)
from tradescan.state.changes import PrunedState, ReconcileResult
from tradescan.state.chunks import group_by_chunk
from tradescan.state.diff import Decision, PlannedChange, latest_by_position, plan_chunk
from tradescan.state.policy import MergeRules, should_prune_waystones, waystone_rules
from tradescan.state.store import StateStore

_logger = logging.getLogger(__name__)


class WaystoneReconciler:
    def __init__(self, store: StateStore) -> None:
        self._store = store

    def reconcile(self, scan: Scan, observations: Iterable[WaystoneObservation]) -> ReconcileResult:
        batch = list(observations)
        ui = [obs for obs in batch if isinstance(obs, UiWaystoneObservation)]
        sightings = [obs for obs in batch if isinstance(obs, ChunkWaystoneObservation)]

        result = ReconcileResult()
        if ui:
            result.merge(self._reconcile_ui(scan, ui))

        rules = waystone_rules(WaystoneSource.CHUNK, prune=should_prune_waystones(batch))
        for key, bucket in group_by_chunk(scan.chunk, sightings).items():
            result.merge(self.reconcile_chunk(scan, key, bucket.observations, rules))
        return result

    def _reconcile_ui(self, scan: Scan, observations: list[UiWaystoneObservation]) -> ReconcileResult:
        rules = waystone_rules(WaystoneSource.UI, prune=False)
        result = ReconcileResult()
        for position, observation in latest_by_position(observations).items():
            current = self._store.active_waystone_at(position)
            existing = [current] if current is not None else []
            for change in plan_chunk(existing, [observation], rules, entity="waystone"):
                self._apply(scan, position.chunk, change, result)
        _logger.debug("Reconciled ui waystones count=%d %s", len(observations), result.summary())
        return result

    def reconcile_chunk(
        self,
        scan: Scan,
        chunk: ChunkKey,
        observations: list[ChunkWaystoneObservation],
        rules: MergeRules[WaystoneState, WaystoneObservation],
    ) -> ReconcileResult:
        existing = self._store.active_waystones_in_chunk(chunk)
        existing.extend(self._filed_elsewhere(existing, observations))
        result = ReconcileResult()
        for change in plan_chunk(existing, observations, rules, entity="waystone"):
            self._apply(scan, chunk, change, result)
        _logger.debug(
            "Reconciled waystones chunk=%s existing=%d observed=%d %s",
            chunk,
            len(existing),
            len(observations),
            result.summary(),
        )
        return result

    def _filed_elsewhere(
        self,
        existing: list[WaystoneState],
        observations: list[ChunkWaystoneObservation],
    ) -> list[WaystoneState]:
        """Active waystones at observed positions but stored under another chunk."""
        known = {state.position for state in existing}
        found: list[WaystoneState] = []
        for position in latest_by_position(observations):
            if position in known:
                continue
            state = self._store.active_waystone_at(position)
            if state is not None:
                found.append(state)
        return found

    def _apply(
        self,
        scan: Scan,
        chunk: ChunkKey,
        change: PlannedChange[WaystoneState, WaystoneObservation],
        result: ReconcileResult,
    ) -> None:
        if change.decision is Decision.INSERT:
            assert change.observation is not None  # noqa: S101
            self._store.insert_waystone(change.observation, scan, chunk)
            result.inserted.append(change.position)
        elif change.decision is Decision.EXTEND:
            assert change.existing is not None and change.observation is not None  # noqa: S101
            promote = (
                WaystoneSource.UI
                if change.observation.source == WaystoneSource.UI and change.existing.source != WaystoneSource.UI
                else None
            )
            relocate = chunk if change.existing.chunk != chunk else None
            self._store.extend_waystone(change.existing.id, scan, source=promote, chunk=relocate)
            result.extended.append(change.position)
        elif change.decision is Decision.REPLACE:
            assert change.existing is not None and change.observation is not None  # noqa: S101
            self._store.retire_waystone(change.existing.id)
            self._store.insert_waystone(change.observation, scan, chunk)
            result.replaced.append(change.position)
        else:
            assert change.existing is not None  # noqa: S101
            self._store.retire_waystone(change.existing.id)
            result.pruned.append(PrunedState(change.existing.id, change.position))
