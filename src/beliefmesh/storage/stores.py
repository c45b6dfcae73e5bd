"""
BeliefMesh stores over a storage provider.

One class per collaborator interface, all sharing a provider and a key
prefix. Records are serialized as pydantic JSON.

Key layout (``p`` is the configured prefix)::

    p:belief:<belief_id>                 Belief
    p:claim:<belief_id>:<epoch>          claim marker, held only while a run is in flight
    p:stake:<agent_id>                   total stake, integer micro-units
    p:submissions:<belief_id>            hash <agent_id>:<epoch> -> Submission
    p:locks:<belief_id>                  hash <agent_id> -> locked stake
    p:history:<belief_id>                hash <epoch> -> EpochRecord
    p:events:<belief_id>:<epoch>         hash <agent_id> -> RedistributionEvent

History and ledger events are keyed by epoch and agent, so a retried
write replaces the earlier copy instead of duplicating it.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from beliefmesh.epochs.submissions import latest_submissions
from beliefmesh.exceptions import NegativeStakeError, ValidationError
from beliefmesh.models import Agent, Belief, EpochRecord, RedistributionEvent, Submission

from .provider import AbstractStorageProvider

logger = logging.getLogger(__name__)


class _ProviderStore:
    def __init__(self, provider: AbstractStorageProvider, prefix: Optional[str] = None) -> None:
        self._provider = provider
        self._prefix = prefix or provider.config.key_prefix

    def _key(self, *parts: object) -> str:
        return ":".join([self._prefix, *(str(p) for p in parts)])


class ProviderBeliefStore(_ProviderStore):
    async def get_belief(self, belief_id: str) -> Optional[Belief]:
        raw = await self._provider.get(self._key("belief", belief_id))
        if raw is None:
            return None
        return Belief.model_validate_json(raw)

    async def save_belief(self, belief: Belief) -> None:
        await self._provider.set(self._key("belief", belief.belief_id), belief.model_dump_json())

    async def claim_epoch(self, belief_id: str, epoch: int) -> bool:
        return await self._provider.set_if_absent(self._key("claim", belief_id, epoch), "1")

    async def release_epoch(self, belief_id: str, epoch: int) -> None:
        await self._provider.delete(self._key("claim", belief_id, epoch))


class ProviderSubmissionStore(_ProviderStore):
    async def save_submission(self, submission: Submission) -> None:
        await self._provider.hset(
            self._key("submissions", submission.belief_id),
            f"{submission.agent_id}:{submission.epoch}",
            submission.model_dump_json(),
        )

    async def load_submissions(self, belief_id: str, epoch: Optional[int] = None) -> list[Submission]:
        rows = await self._provider.hgetall(self._key("submissions", belief_id))
        submissions = [Submission.model_validate_json(raw) for raw in rows.values()]
        if epoch is not None:
            submissions = [s for s in submissions if s.epoch == epoch]
        return sorted(submissions, key=lambda s: (s.epoch, s.submitted_at, s.agent_id))

    async def update_beliefs(self, belief_id: str, beliefs: dict[str, float]) -> None:
        latest = latest_submissions(await self.load_submissions(belief_id))
        for agent_id, value in beliefs.items():
            submission = latest.get(agent_id)
            if submission is None:
                raise ValidationError("No submission to update", belief_id=belief_id, agent_id=agent_id)
            await self.save_submission(submission.model_copy(update={"belief": value}))

    async def deactivate(self, belief_id: str, epoch: int) -> int:
        changed = 0
        for submission in await self.load_submissions(belief_id, epoch):
            if submission.is_active:
                await self.save_submission(submission.model_copy(update={"is_active": False}))
                changed += 1
        return changed


class ProviderStakeStore(_ProviderStore):
    async def create_agent(self, agent: Agent) -> bool:
        """Register *agent* with its opening stake. False if it already exists."""
        return await self._provider.set_if_absent(self._key("stake", agent.agent_id), str(agent.total_stake))

    async def get_stake(self, agent_id: str) -> int:
        raw = await self._provider.get(self._key("stake", agent_id))
        if raw is None:
            raise ValidationError("Unknown agent", agent_id=agent_id)
        return int(raw)

    async def get_stakes(self, agent_ids: Sequence[str]) -> dict[str, int]:
        keys = [self._key("stake", agent_id) for agent_id in agent_ids]
        stakes: dict[str, int] = {}
        for agent_id, raw in zip(agent_ids, await self._provider.mget(keys)):
            if raw is None:
                raise ValidationError("Unknown agent", agent_id=agent_id)
            stakes[agent_id] = int(raw)
        return stakes

    async def apply_delta(self, agent_id: str, delta: int) -> int:
        key = self._key("stake", agent_id)
        if not await self._provider.exists(key):
            raise ValidationError("Unknown agent", agent_id=agent_id)
        balance = await self._provider.incrby(key, delta)
        if balance < 0:
            await self._provider.incrby(key, -delta)
            raise NegativeStakeError(
                f"Delta {delta} would leave stake {balance}",
                agent_id=agent_id,
                context={"delta": delta},
            )
        return balance


class ProviderLockSource(_ProviderStore):
    async def set_lock(self, belief_id: str, agent_id: str, lock: int) -> None:
        if lock < 0:
            raise ValidationError(f"Locked stake must be non-negative, got {lock}", belief_id=belief_id, agent_id=agent_id)
        await self._provider.hset(self._key("locks", belief_id), agent_id, str(lock))

    async def get_locks(self, belief_id: str, agent_ids: Sequence[str]) -> dict[str, int]:
        rows = await self._provider.hgetall(self._key("locks", belief_id))
        return {agent_id: int(rows.get(agent_id, "0")) for agent_id in agent_ids}


class ProviderHistorySink(_ProviderStore):
    async def append_epoch_record(self, record: EpochRecord) -> None:
        await self._provider.hset(
            self._key("history", record.belief_id),
            str(record.epoch),
            record.model_dump_json(),
        )

    async def append_redistribution_events(
        self,
        belief_id: str,
        epoch: int,
        events: Sequence[RedistributionEvent],
    ) -> None:
        key = self._key("events", belief_id, epoch)
        for event in events:
            await self._provider.hset(key, event.agent_id, event.model_dump_json())

    async def remove_epoch_record(self, belief_id: str, epoch: int) -> None:
        await self._provider.hdel(self._key("history", belief_id), str(epoch))

    async def remove_redistribution_events(self, belief_id: str, epoch: int) -> None:
        await self._provider.delete(self._key("events", belief_id, epoch))

    async def epoch_records(self, belief_id: str) -> list[EpochRecord]:
        rows = await self._provider.hgetall(self._key("history", belief_id))
        records = [EpochRecord.model_validate_json(raw) for raw in rows.values()]
        return sorted(records, key=lambda r: r.epoch)

    async def redistribution_events(self, belief_id: str, epoch: int) -> list[RedistributionEvent]:
        rows = await self._provider.hgetall(self._key("events", belief_id, epoch))
        events = [RedistributionEvent.model_validate_json(raw) for raw in rows.values()]
        return sorted(events, key=lambda e: e.agent_id)


class ProviderStores:
    """All stores over one provider."""

    def __init__(self, provider: AbstractStorageProvider, prefix: Optional[str] = None) -> None:
        self.provider = provider
        self.beliefs = ProviderBeliefStore(provider, prefix)
        self.submissions = ProviderSubmissionStore(provider, prefix)
        self.stakes = ProviderStakeStore(provider, prefix)
        self.locks = ProviderLockSource(provider, prefix)
        self.history = ProviderHistorySink(provider, prefix)
