"""Nearest-waystone annotation for active shops.

The annotation is a derived cache on the active shop row: the closest
active, nameable waystone in the same dimension plus its squared
distance. Callers pass explicit invalidation lists; a full recompute is
only needed when a waystone itself appeared or changed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from tradescan.models.position import Dimension, Position
from tradescan.models.waystone import WaystoneState
from tradescan.state.store import StateStore

_logger = logging.getLogger(__name__)


class RecomputeScope(StrEnum):
    ALL = "all"
    """Every active shop (optionally restricted to some dimensions)."""
    STALE = "stale"
    """Active shops with no annotation or one pointing at a retired waystone."""


@dataclass(frozen=True, slots=True)
class NearestMatch:
    waystone: WaystoneState
    distance_sq: int


def _rank(position: Position, waystone: WaystoneState) -> tuple[int, int, int, int, int]:
    return (position.distance_sq(waystone.position), waystone.x, waystone.y, waystone.z, waystone.id)


def closest_waystone(position: Position, candidates: Sequence[WaystoneState]) -> NearestMatch | None:
    """Closest nameable candidate in ``position``'s dimension.

    Ties resolve on the waystone's ``(x, y, z)`` and then its row id.
    """
    eligible = [w for w in candidates if w.dimension == position.dimension and w.is_nameable]
    if not eligible:
        return None
    best = min(eligible, key=lambda waystone: _rank(position, waystone))
    return NearestMatch(best, position.distance_sq(best.position))


class NearestWaystoneAnnotator:
    def __init__(self, store: StateStore) -> None:
        self._store = store

    def recompute(
        self,
        scope: RecomputeScope | str = RecomputeScope.ALL,
        *,
        dimensions: Iterable[Dimension] | None = None,
    ) -> int:
        """Recompute annotations for a scope; returns the number of shops written."""
        scope = RecomputeScope(scope)
        if scope is RecomputeScope.STALE:
            positions = self._store.shop_positions_with_stale_nearest()
            if dimensions is not None:
                wanted = set(dimensions)
                positions = [position for position in positions if position.dimension in wanted]
        else:
            positions = self._store.active_shop_positions(dimensions)
        count = self.annotate(positions)
        _logger.debug("Recomputed nearest waystones scope=%s shops=%d", scope, count)
        return count

    def annotate(self, positions: Iterable[Position]) -> int:
        """Recompute the annotation of each listed shop position.

        Positions without an active shop are ignored. Candidates are loaded
        once per dimension.
        """
        by_dimension: dict[Dimension, set[Position]] = defaultdict(set)
        for position in positions:
            by_dimension[position.dimension].add(position)

        written = 0
        for dimension in sorted(by_dimension):
            candidates = self._store.nameable_waystones(dimension)
            for position in sorted(by_dimension[dimension]):
                match = closest_waystone(position, candidates)
                if match is None:
                    written += self._store.set_nearest(position, None, None)
                else:
                    written += self._store.set_nearest(position, match.waystone.id, match.distance_sq)
        return written

    def positions_referencing(self, waystone_ids: Iterable[int]) -> list[Position]:
        return self._store.shop_positions_referencing(waystone_ids)
