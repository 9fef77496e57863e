"""Reconciliation outcomes.

Reconcilers report exactly which positions changed so the orchestrator
can derive the nearest-waystone invalidation list from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tradescan.models.position import Dimension, Position


@dataclass(frozen=True, slots=True)
class PrunedState:
    """An active state retired because its chunk no longer reports it."""

    state_id: int
    position: Position


@dataclass(slots=True)
class ReconcileResult:
    inserted: list[Position] = field(default_factory=list)
    """Positions that had no active state and got one."""
    replaced: list[Position] = field(default_factory=list)
    """Positions whose active state was superseded by a new version."""
    extended: list[Position] = field(default_factory=list)
    """Positions whose active state was confirmed (last-seen bumped)."""
    pruned: list[PrunedState] = field(default_factory=list)
    """Active states retired without replacement."""

    @property
    def changed(self) -> list[Position]:
        return [*self.inserted, *self.replaced]

    @property
    def changed_dimensions(self) -> set[Dimension]:
        return {position.dimension for position in self.changed}

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.replaced or self.extended or self.pruned)

    def merge(self, other: ReconcileResult) -> None:
        self.inserted.extend(other.inserted)
        self.replaced.extend(other.replaced)
        self.extended.extend(other.extended)
        self.pruned.extend(other.pruned)

    def summary(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserted),
            "replaced": len(self.replaced),
            "extended": len(self.extended),
            "pruned": len(self.pruned),
        }
