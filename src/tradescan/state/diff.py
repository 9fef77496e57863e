"""Per-chunk diff between stored active states and new observations.

The planner is pure: it only decides. Reconcilers apply the resulting
plan to the store inside the ingest transaction.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, Protocol, TypeVar

from tradescan.exceptions import ConsistencyViolation
from tradescan.models.position import Position
from tradescan.state.policy import MergeRules


class _Positioned(Protocol):
    @property
    def position(self) -> Position: ...


S = TypeVar("S", bound=_Positioned)
O = TypeVar("O", bound=_Positioned)  # noqa: E741


class Decision(StrEnum):
    INSERT = "insert"
    EXTEND = "extend"
    REPLACE = "replace"
    RETIRE = "retire"


@dataclass(frozen=True, slots=True)
class PlannedChange(Generic[S, O]):
    decision: Decision
    position: Position
    existing: S | None = None
    observation: O | None = None


def index_by_position(states: Iterable[S], *, entity: str) -> dict[Position, S]:
    """Index active states by position, refusing duplicates."""
    indexed: dict[Position, S] = {}
    for state in states:
        position = state.position
        if position in indexed:
            raise ConsistencyViolation(
                f"more than one active {entity} at {position}",
                entity=entity,
                position=position,
            )
        indexed[position] = state
    return indexed


def latest_by_position(observations: Iterable[O]) -> dict[Position, O]:
    """Collapse same-position observations; the last one in the batch wins."""
    latest: dict[Position, O] = {}
    for observation in observations:
        latest[observation.position] = observation
    return latest


def plan_chunk(
    existing: Iterable[S],
    observed: Iterable[O],
    rules: MergeRules[S, O],
    *,
    entity: str = "state",
) -> list[PlannedChange[S, O]]:
    """Plan how one chunk's observations change its active states.

    - new position, creatable observation: ``INSERT``
    - same fingerprint, or revision not allowed: ``EXTEND``
    - different fingerprint: ``REPLACE`` (retire old, insert new)
    - active state not observed and prunable: ``RETIRE``

    Observations at positions that have no state and may not create one
    are dropped. The closed-world pruning pass runs after all
    observations, so ordering in the plan is inserts/updates first.
    """
    existing_by_position = index_by_position(existing, entity=entity)
    seen: set[Position] = set()
    plan: list[PlannedChange[S, O]] = []

    for position, observation in latest_by_position(observed).items():
        current = existing_by_position.get(position)
        if current is None:
            if rules.may_create(observation):
                seen.add(position)
                plan.append(PlannedChange(Decision.INSERT, position, None, observation))
            continue

        seen.add(position)
        if rules.state_fingerprint(current) == rules.observation_fingerprint(observation):
            plan.append(PlannedChange(Decision.EXTEND, position, current, observation))
        elif rules.may_revise(observation):
            plan.append(PlannedChange(Decision.REPLACE, position, current, observation))
        else:
            plan.append(PlannedChange(Decision.EXTEND, position, current, observation))

    for position, current in existing_by_position.items():
        if position not in seen and rules.may_prune(current):
            plan.append(PlannedChange(Decision.RETIRE, position, current, None))

    return plan
