"""
Locked-stake weight provider.

Weights are each agent's share of the stake locked on a belief. The raw
locks travel along with the weights because they cap what an agent can
lose in redistribution.
"""

from __future__ import annotations

import logging
from typing import Sequence

from beliefmesh.constants import MIN_LOCK_MICRO
from beliefmesh.exceptions import ValidationError
from beliefmesh.interfaces import LockSource
from beliefmesh.models import WeightAllocation

logger = logging.getLogger(__name__)


def allocate(locks: dict[str, int], agent_ids: Sequence[str], min_lock: int = MIN_LOCK_MICRO) -> WeightAllocation:
    """Normalize *locks* over *agent_ids*.

    Positive locks are floored at *min_lock*. When nobody has anything
    locked every agent gets an equal weight and a lock of *min_lock*.
    """
    if not agent_ids:
        raise ValidationError("Cannot allocate weights without agents")

    effective: dict[str, int] = {}
    for agent_id in agent_ids:
        lock = locks.get(agent_id, 0)
        if lock < 0:
            raise ValidationError(f"Locked stake must be non-negative, got {lock}", agent_id=agent_id)
        effective[agent_id] = max(lock, min_lock) if lock > 0 else 0

    total = sum(effective.values())
    if total == 0:
        share = 1.0 / len(agent_ids)
        return WeightAllocation(
            weights={agent_id: share for agent_id in agent_ids},
            locks={agent_id: min_lock for agent_id in agent_ids},
        )
    return WeightAllocation(
        weights={agent_id: lock / total for agent_id, lock in effective.items()},
        locks=effective,
    )


class LockedStakeWeightProvider:
    """WeightProvider backed by a :class:`~beliefmesh.interfaces.LockSource`."""

    def __init__(self, source: LockSource, min_lock: int = MIN_LOCK_MICRO) -> None:
        self._source = source
        self._min_lock = min_lock

    async def compute_weights(self, belief_id: str, agent_ids: Sequence[str]) -> WeightAllocation:
        agent_ids = list(dict.fromkeys(agent_ids))
        try:
            locks = await self._source.get_locks(belief_id, agent_ids)
            allocation = allocate(locks, agent_ids, self._min_lock)
        except ValidationError as exc:
            raise exc.with_scope(belief_id=belief_id)
        logger.debug(
            "Weights for belief %s: %d agents, total lock %d",
            belief_id,
            len(agent_ids),
            allocation.total_lock,
        )
        return allocation
