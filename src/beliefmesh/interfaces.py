"""
Collaborator interfaces consumed by the epoch orchestrator.

Persistence technology is out of scope for the core; anything that
satisfies these protocols can back it. :mod:`beliefmesh.storage` ships
implementations over the memory and Redis storage providers.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

from beliefmesh.models import (
    Belief,
    EpochRecord,
    RedistributionEvent,
    Submission,
    WeightAllocation,
)


@runtime_checkable
class SubmissionStore(Protocol):
    """Submissions per belief. Several rows per agent may exist."""

    async def load_submissions(self, belief_id: str, epoch: Optional[int] = None) -> list[Submission]:
        """All submissions for *belief_id*, or only those of *epoch* when given."""
        ...

    async def save_submission(self, submission: Submission) -> None: ...

    async def update_beliefs(self, belief_id: str, beliefs: dict[str, float]) -> None:
        """Overwrite the stored belief of each agent's latest submission."""
        ...

    async def deactivate(self, belief_id: str, epoch: int) -> int:
        """Mark the epoch's active submissions passive. Returns how many changed."""
        ...


@runtime_checkable
class WeightProvider(Protocol):
    async def compute_weights(self, belief_id: str, agent_ids: Sequence[str]) -> WeightAllocation: ...


@runtime_checkable
class LockSource(Protocol):
    """Locked stake per agent on one belief, in micro-units."""

    async def get_locks(self, belief_id: str, agent_ids: Sequence[str]) -> dict[str, int]: ...


@runtime_checkable
class StakeStore(Protocol):
    async def get_stake(self, agent_id: str) -> int: ...

    async def apply_delta(self, agent_id: str, delta: int) -> int:
        """Atomically add *delta* and return the new balance.

        Raises:
            NegativeStakeError: the balance would go below zero; nothing
                is changed.
        """
        ...


@runtime_checkable
class HistorySink(Protocol):
    async def append_epoch_record(self, record: EpochRecord) -> None: ...

    async def append_redistribution_events(
        self,
        belief_id: str,
        epoch: int,
        events: Sequence[RedistributionEvent],
    ) -> None: ...

    async def remove_epoch_record(self, belief_id: str, epoch: int) -> None:
        """Drop the record of *epoch*. Used to undo a failed persist."""
        ...

    async def remove_redistribution_events(self, belief_id: str, epoch: int) -> None: ...


@runtime_checkable
class BeliefStore(Protocol):
    async def get_belief(self, belief_id: str) -> Optional[Belief]: ...

    async def save_belief(self, belief: Belief) -> None: ...

    async def claim_epoch(self, belief_id: str, epoch: int) -> bool:
        """Take the processing claim for (belief, epoch). False if already taken."""
        ...

    async def release_epoch(self, belief_id: str, epoch: int) -> None: ...
