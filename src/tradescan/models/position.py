"""World positions, dimensions and chunk keys."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from tradescan._constants import CHUNK_SIZE

_DIMENSION_ALIASES: dict[str, str] = {
    "the_nether": "nether",
    "the nether": "nether",
    "the_end": "end",
    "the end": "end",
}


class Dimension(StrEnum):
    """Parallel world spaces. Nothing is ever reconciled across them."""

    OVERWORLD = "overworld"
    NETHER = "nether"
    END = "end"

    @classmethod
    def parse(cls, value: object) -> Dimension:
        """Parse a dimension label, accepting common aliases.

        ``"minecraft:the_nether"``, ``"The Nether"`` and ``"nether"`` all
        resolve to :attr:`NETHER`. Unknown labels raise ``ValueError``.
        """
        if isinstance(value, Dimension):
            return value
        if value is None:
            raise ValueError("dimension is required")
        lowered = str(value).strip().lower()
        if lowered.startswith("minecraft:"):
            lowered = lowered[len("minecraft:") :]
        lowered = _DIMENSION_ALIASES.get(lowered, lowered)
        try:
            return cls(lowered)
        except ValueError:
            raise ValueError(f"Unknown dimension: {value}") from None


def chunk_coord(axis: int) -> int:
    """Chunk index of a block coordinate (floor division, also for negatives)."""
    return axis // CHUNK_SIZE


@dataclass(frozen=True, slots=True, order=True)
class ChunkKey:
    """A 16x16 horizontal cell in one dimension."""

    dimension: Dimension
    chunk_x: int
    chunk_z: int

    def contains(self, position: Position) -> bool:
        return position.dimension == self.dimension and position.chunk == self


@dataclass(frozen=True, slots=True, order=True)
class Position:
    """Block position; the reconciliation identity for shops and waystones.

    Ordering is lexicographic on ``(dimension, x, y, z)``.
    """

    dimension: Dimension
    x: int
    y: int
    z: int

    @property
    def chunk(self) -> ChunkKey:
        return ChunkKey(self.dimension, chunk_coord(self.x), chunk_coord(self.z))

    def distance_sq(self, other: Position) -> int:
        """Squared Euclidean distance (dimension is not checked)."""
        dx = self.x - other.x
        dy = self.y - other.y
        dz = self.z - other.z
        return dx * dx + dy * dy + dz * dz

    def as_list(self) -> list[int]:
        return [self.x, self.y, self.z]
