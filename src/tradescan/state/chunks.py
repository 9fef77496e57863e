"""Chunk bucketing of observations."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from tradescan.models.position import ChunkKey, Dimension

T = TypeVar("T")


class _HasChunk(Protocol):
    @property
    def chunk(self) -> ChunkKey: ...


@dataclass(slots=True)
class ChunkBucket(Generic[T]):
    """Observations that fall into one chunk, in input order."""

    key: ChunkKey
    observations: list[T] = field(default_factory=list)

    @property
    def dimension(self) -> Dimension:
        return self.key.dimension

    @property
    def chunk_x(self) -> int:
        return self.key.chunk_x

    @property
    def chunk_z(self) -> int:
        return self.key.chunk_z


def observation_chunk(observation: _HasChunk) -> ChunkKey | None:
    """Default resolver: the observation's explicit chunk, else its position's."""
    return observation.chunk


def group_by_chunk(
    seed_chunk: ChunkKey | None,
    observations: Iterable[T],
    chunk_of: Callable[[T], ChunkKey | None] = observation_chunk,  # type: ignore[assignment]
) -> dict[ChunkKey, ChunkBucket[T]]:
    """Bucket observations by ``(dimension, chunk_x, chunk_z)``.

    ``seed_chunk`` always gets a bucket, even an empty one, so that a
    chunk-scoped reconciliation still prunes against an empty observed
    set. Observations whose chunk resolves to ``None`` are skipped.
    Buckets keep insertion order (seed first) and observations keep input
    order; same-position duplicates are left for the reconciler.
    """
    buckets: dict[ChunkKey, ChunkBucket[T]] = {}
    if seed_chunk is not None:
        buckets[seed_chunk] = ChunkBucket(seed_chunk)

    for observation in observations:
        key = chunk_of(observation)
        if key is None:
            continue
        bucket = buckets.get(key)
        if bucket is None:
            bucket = ChunkBucket(key)
            buckets[key] = bucket
        bucket.observations.append(observation)

    return buckets
