"""
Weighted-average aggregation.

The fallback when belief decomposition rejects its input. Works with a
single participant, whose aggregate is its own (clamped) belief.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import numpy as np

from beliefmesh.config import ProtocolConfig, get_config
from beliefmesh.consensus.probability import clamp_probability, disagreement
from beliefmesh.consensus.signals import (
    ConsensusResult,
    LeaveOneOutResult,
    ParticipantSignal,
    prepare_signals,
)
from beliefmesh.exceptions import BeliefMeshError, InsufficientParticipantsError

logger = logging.getLogger(__name__)


def exclusive_sums(values: np.ndarray) -> np.ndarray:
    """Row ``r`` holds the column sums of every row except ``r``."""
    zero = np.zeros((1, values.shape[1]))
    before = np.vstack([zero, np.cumsum(values, axis=0)[:-1]])
    after = np.vstack([np.cumsum(values[::-1], axis=0)[::-1][1:], zero])
    return before + after


def weighted_average(
    signals: Iterable[ParticipantSignal],
    *,
    config: Optional[ProtocolConfig] = None,
    belief_id: Optional[str] = None,
    epoch: Optional[int] = None,
) -> ConsensusResult:
    """Aggregate as the weighted mean of clamped beliefs.

    Leave-one-out values are the re-normalized weighted means of the other
    agents' beliefs and meta-predictions, or neutral when nobody else holds
    weight.
    """
    cfg = config or get_config()
    try:
        participants = prepare_signals(signals, cfg, belief_id=belief_id, epoch=epoch)
        if not participants:
            raise InsufficientParticipantsError(
                "Weighted average needs at least one participant with nonzero weight"
            )
    except BeliefMeshError as exc:
        raise exc.with_scope(belief_id=belief_id, epoch=epoch)

    agent_ids = [p.agent_id for p in participants]
    beliefs = np.array([p.belief for p in participants], dtype=float)
    metas = np.array([p.meta_prediction for p in participants], dtype=float)
    weights = np.array([p.weight for p in participants], dtype=float)
    normalized = weights / weights.sum()

    if len(participants) == 1:
        aggregate = float(beliefs[0])
    else:
        aggregate = clamp_probability(float(np.dot(normalized, beliefs)), cfg.epsilon)
    spread = disagreement(beliefs.tolist(), normalized.tolist(), aggregate)

    others = exclusive_sums(np.column_stack([weights, weights * beliefs, weights * metas]))
    leave_one_out: dict[str, LeaveOneOutResult] = {}
    for r, agent_id in enumerate(agent_ids):
        total, sum_b, sum_m = others[r].tolist()
        if total <= cfg.epsilon:
            leave_one_out[agent_id] = LeaveOneOutResult.neutral(len(agent_ids) - 1)
            continue
        leave_one_out[agent_id] = LeaveOneOutResult(
            aggregate=clamp_probability(sum_b / total, cfg.epsilon),
            meta_aggregate=clamp_probability(sum_m / total, cfg.epsilon),
            prior=clamp_probability(sum_b / total, cfg.epsilon),
            participant_count=len(agent_ids) - 1,
        )

    logger.debug(
        "Weighted average for belief %s epoch %s: aggregate=%.4f n=%d",
        belief_id,
        epoch,
        aggregate,
        len(agent_ids),
    )
    return ConsensusResult(
        aggregate=aggregate,
        disagreement=spread,
        weights=dict(zip(agent_ids, normalized.tolist())),
        beliefs=dict(zip(agent_ids, beliefs.tolist())),
        meta_predictions=dict(zip(agent_ids, metas.tolist())),
        leave_one_out=leave_one_out,
        method="weighted_average",
    )
