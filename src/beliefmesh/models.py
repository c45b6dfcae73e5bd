"""
Domain models for BeliefMesh.

Agents, beliefs, submissions and the records an epoch run persists.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BeliefStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class Agent(BaseModel):
    """A stakeholder identity holding a stake balance in micro-units."""

    agent_id: str = Field(min_length=1)
    total_stake: int = Field(default=0, ge=0)


class Belief(BaseModel):
    """A binary proposition with a persisted consensus estimate."""

    belief_id: str = Field(min_length=1)
    creator_agent_id: str = Field(min_length=1)
    created_epoch: int = Field(default=0, ge=0)
    expiration_epoch: int = Field(ge=0)
    aggregate: float = Field(default=0.5, gt=0.0, lt=1.0)
    certainty: float = Field(default=0.0, ge=0.0, le=1.0)
    disagreement_entropy: float = Field(default=0.0, ge=0.0)
    status: BeliefStatus = BeliefStatus.ACTIVE
    last_processed_epoch: Optional[int] = None

    @model_validator(mode="after")
    def _check_epochs(self) -> "Belief":
        if self.expiration_epoch < self.created_epoch:
            raise ValueError(
                f"expiration_epoch {self.expiration_epoch} precedes created_epoch {self.created_epoch}"
            )
        return self

    def is_processed(self, epoch: int) -> bool:
        return self.last_processed_epoch is not None and self.last_processed_epoch >= epoch


class Submission(BaseModel):
    """An agent's belief and meta-prediction for one belief in one epoch."""

    agent_id: str = Field(min_length=1)
    belief_id: str = Field(min_length=1)
    epoch: int = Field(ge=0)
    belief: float = Field(ge=0.0, le=1.0)
    meta_prediction: float = Field(ge=0.0, le=1.0)
    is_active: bool = True
    submitted_at: datetime = Field(default_factory=_utcnow)


class WeightAllocation(BaseModel):
    """Output of a weight provider for one belief.

    ``weights`` are the normalized aggregation weights; ``locks`` are the
    raw locked stakes in micro-units, which cap what an agent can lose.
    """

    weights: dict[str, float]
    locks: dict[str, int] = Field(default_factory=dict)

    @property
    def total_lock(self) -> int:
        return sum(self.locks.values())


class EpochRecord(BaseModel):
    """Append-only snapshot of a belief after one processed epoch."""

    belief_id: str
    epoch: int = Field(ge=0)
    aggregate: float = Field(gt=0.0, lt=1.0)
    certainty: float = Field(ge=0.0, le=1.0)
    entropy: float = Field(ge=0.0)
    participant_count: int = Field(ge=0)
    total_stake: int = Field(ge=0)
    aggregation_method: str = "decomposition"
    recorded_at: datetime = Field(default_factory=_utcnow)


class RedistributionEvent(BaseModel):
    """Ledger entry for one agent in one redistribution."""

    belief_id: str
    epoch: int = Field(ge=0)
    agent_id: str
    information_score: float = Field(ge=-1.0, le=1.0)
    lock: int = Field(ge=0)
    normalized_weight: float = Field(ge=0.0, le=1.0)
    stake_before: int = Field(ge=0)
    stake_delta: int
    stake_after: int = Field(ge=0)
    processed_at: datetime = Field(default_factory=_utcnow)
