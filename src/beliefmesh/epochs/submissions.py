"""
Submission intake.

Validates and stores agents' beliefs and meta-predictions, and resolves
which submission is authoritative for each agent.
"""

from __future__ import annotations

import logging
import math
from functools import reduce
from typing import Iterable, Optional

from pydantic import BaseModel

from beliefmesh.config import ProtocolConfig, get_config
from beliefmesh.exceptions import ValidationError
from beliefmesh.interfaces import BeliefStore, SubmissionStore
from beliefmesh.models import BeliefStatus, Submission

logger = logging.getLogger(__name__)


def _recency(submission: Submission) -> tuple:
    return (submission.epoch, submission.submitted_at)


def latest_submissions(submissions: Iterable[Submission]) -> dict[str, Submission]:
    """Map each agent to its most recent submission (highest epoch, then latest time)."""

    def keep_latest(latest: dict[str, Submission], submission: Submission) -> dict[str, Submission]:
        current = latest.get(submission.agent_id)
        if current is None or _recency(submission) > _recency(current):
            return {**latest, submission.agent_id: submission}
        return latest

    return reduce(keep_latest, submissions, {})


class SubmissionReceipt(BaseModel):
    submission: Submission
    is_first_submission: bool
    clamped: bool = False


class SubmissionService:
    """Accepts submissions for active, unexpired beliefs."""

    def __init__(
        self,
        submissions: SubmissionStore,
        beliefs: BeliefStore,
        config: Optional[ProtocolConfig] = None,
    ) -> None:
        self._submissions = submissions
        self._beliefs = beliefs
        self.config = config or get_config()

    def _check_value(self, name: str, value: float, agent_id: str, belief_id: str, epoch: int) -> None:
        if not isinstance(value, (int, float)) or not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise ValidationError(
                f"{name} must be between 0 and 1, got {value!r}",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=agent_id,
            )

    async def submit(
        self,
        agent_id: str,
        belief_id: str,
        epoch: int,
        belief: float,
        meta_prediction: float,
    ) -> SubmissionReceipt:
        """Record a submission. A repeat in the same epoch replaces the earlier one.

        Values are clamped into the configured safe range so decomposition
        never sees exact 0 or 1.
        """
        if not agent_id:
            raise ValidationError("agent_id is required", belief_id=belief_id, epoch=epoch)
        if not belief_id:
            raise ValidationError("belief_id is required", epoch=epoch, agent_id=agent_id)
        if epoch < 0:
            raise ValidationError(f"epoch must be non-negative, got {epoch}", belief_id=belief_id, agent_id=agent_id)
        self._check_value("belief", belief, agent_id, belief_id, epoch)
        self._check_value("meta_prediction", meta_prediction, agent_id, belief_id, epoch)

        market = await self._beliefs.get_belief(belief_id)
        if market is None:
            raise ValidationError("Belief not found", belief_id=belief_id, epoch=epoch, agent_id=agent_id)
        if market.status != BeliefStatus.ACTIVE:
            raise ValidationError(
                f"Belief is {market.status.value}, not accepting submissions",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=agent_id,
            )
        if epoch >= market.expiration_epoch:
            raise ValidationError(
                f"Belief expired at epoch {market.expiration_epoch}",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=agent_id,
            )
        if epoch < market.created_epoch:
            raise ValidationError(
                f"Belief opens at epoch {market.created_epoch}",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=agent_id,
            )

        cfg = self.config
        safe_belief = min(cfg.submission_max, max(cfg.submission_min, belief))
        safe_meta = min(cfg.submission_max, max(cfg.submission_min, meta_prediction))
        clamped = safe_belief != belief or safe_meta != meta_prediction
        if clamped:
            logger.info(
                "Clamped submission from %s on belief %s: belief %.4f -> %.4f, meta %.4f -> %.4f",
                agent_id,
                belief_id,
                belief,
                safe_belief,
                meta_prediction,
                safe_meta,
            )

        existing = await self._submissions.load_submissions(belief_id)
        first = not any(s.agent_id == agent_id for s in existing)

        submission = Submission(
            agent_id=agent_id,
            belief_id=belief_id,
            epoch=epoch,
            belief=safe_belief,
            meta_prediction=safe_meta,
            is_active=True,
        )
        await self._submissions.save_submission(submission)
        logger.info("Accepted submission from %s on belief %s for epoch %d", agent_id, belief_id, epoch)
        return SubmissionReceipt(submission=submission, is_first_submission=first, clamped=clamped)
