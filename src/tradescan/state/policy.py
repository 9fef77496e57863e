"""Deterministic merge policy.

Fingerprints decide "same state, extend" versus "new state, version
bump". Eligibility rules carry the whole asymmetry between shops, UI
waystone pushes and passive chunk sightings; the diff algorithm itself
is shared (see :mod:`tradescan.state.diff`).
"""

from __future__ import annotations

from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from tradescan.models.shop import ShopObservation, ShopState
from tradescan.models.waystone import WaystoneObservation, WaystoneSource, WaystoneState

S = TypeVar("S")
O = TypeVar("O")  # noqa: E741


def _always(_: Any) -> bool:
    return True


def _never(_: Any) -> bool:
    return False


@dataclass(frozen=True, slots=True)
class MergeRules(Generic[S, O]):
    """How observations of one kind merge into stored states.

    ``may_create`` gates inserting a state at a position with none.
    ``may_revise`` gates a version bump when fingerprints differ; when it
    refuses, the observation only confirms the existing state.
    ``may_prune`` gates retiring an active state its chunk no longer reports.
    """

    state_fingerprint: Callable[[S], Hashable]
    observation_fingerprint: Callable[[O], Hashable]
    may_create: Callable[[O], bool] = _always
    may_revise: Callable[[O], bool] = _always
    may_prune: Callable[[S], bool] = _always


def shop_fingerprint(shop: ShopObservation | ShopState) -> tuple[Any, ...]:
    return (shop.owner, shop.item, shop.price, shop.amount, shop.action)


def waystone_fingerprint(waystone: WaystoneObservation | WaystoneState) -> tuple[Any, ...]:
    return (waystone.name, waystone.owner)


SHOP_RULES: MergeRules[ShopState, ShopObservation] = MergeRules(
    state_fingerprint=shop_fingerprint,
    observation_fingerprint=shop_fingerprint,
)


def _is_chunk_sourced(state: WaystoneState) -> bool:
    return state.source == WaystoneSource.CHUNK


def _is_nameable(observation: WaystoneObservation) -> bool:
    return observation.is_nameable


def waystone_rules(source: WaystoneSource, *, prune: bool) -> MergeRules[WaystoneState, WaystoneObservation]:
    """Merge rules for one waystone observation source.

    UI pushes are authoritative: they create and revise, and never prune.
    Chunk sightings only confirm existing waystones, create one only when
    they happen to carry name and owner, and prune chunk-sourced states
    when ``prune`` is enabled for the batch.
    """
    if source == WaystoneSource.UI:
        return MergeRules(
            state_fingerprint=waystone_fingerprint,
            observation_fingerprint=waystone_fingerprint,
            may_create=_is_nameable,
            may_revise=_always,
            may_prune=_never,
        )
    return MergeRules(
        state_fingerprint=waystone_fingerprint,
        observation_fingerprint=waystone_fingerprint,
        may_create=_is_nameable,
        may_revise=_never,
        may_prune=_is_chunk_sourced if prune else _never,
    )


def should_prune_waystones(observations: list[WaystoneObservation]) -> bool:
    """Chunk pruning is suppressed for any batch carrying a UI push."""
    return not any(observation.source == WaystoneSource.UI for observation in observations)
