"""
Bayesian Truth Serum scoring.

Each agent is scored only against peer-exclusive references, the
leave-one-out aggregate and meta-aggregate of everyone else:

    score_i = KL(p_i || m_-i) - KL(p_i || p_-i) - KL(p_-i || m_i)

A belief that is more common than peers predicted earns a positive
score; a meta-prediction far from what peers actually believe costs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Mapping, Optional

import numpy as np

from beliefmesh.consensus.probability import binary_kl
from beliefmesh.constants import EPSILON_PROBABILITY, INFORMATION_SCORE_PERCENTILE
from beliefmesh.exceptions import ValidationError


@dataclass(frozen=True)
class BTSResult:
    scores: dict[str, float]
    winners: list[str] = field(default_factory=list)
    losers: list[str] = field(default_factory=list)
    neutral: list[str] = field(default_factory=list)

    def classification(self, agent_id: str) -> str:
        if agent_id in self.winners:
            return "winner"
        if agent_id in self.losers:
            return "loser"
        return "neutral"


def bts_score(
    belief: float,
    meta_prediction: float,
    loo_aggregate: float,
    loo_meta_aggregate: float,
    epsilon: float = EPSILON_PROBABILITY,
) -> float:
    """Score one agent against its leave-one-out references."""
    return (
        binary_kl(belief, loo_meta_aggregate, epsilon)
        - binary_kl(belief, loo_aggregate, epsilon)
        - binary_kl(loo_aggregate, meta_prediction, epsilon)
    )


class BTSScorer:
    """Pure scorer. Holds nothing between calls."""

    def __init__(self, epsilon: float = EPSILON_PROBABILITY) -> None:
        self.epsilon = epsilon

    def score(
        self,
        beliefs: Mapping[str, float],
        meta_predictions: Mapping[str, float],
        loo_aggregates: Mapping[str, float],
        loo_meta_aggregates: Mapping[str, float],
        *,
        belief_id: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> BTSResult:
        """Score every agent in *beliefs*.

        Raises:
            ValidationError: an agent lacks a meta-prediction or a
                leave-one-out value, or a value is not finite.
        """
        scores: dict[str, float] = {}
        winners: list[str] = []
        losers: list[str] = []
        neutral: list[str] = []

        for agent_id, belief in beliefs.items():
            for name, source in (
                ("meta_prediction", meta_predictions),
                ("leave_one_out_aggregate", loo_aggregates),
                ("leave_one_out_meta_aggregate", loo_meta_aggregates),
            ):
                if agent_id not in source:
                    raise ValidationError(
                        f"Missing {name}",
                        belief_id=belief_id,
                        epoch=epoch,
                        agent_id=agent_id,
                    )

            value = bts_score(
                belief,
                meta_predictions[agent_id],
                loo_aggregates[agent_id],
                loo_meta_aggregates[agent_id],
                self.epsilon,
            )
            if not math.isfinite(value):
                raise ValidationError(
                    f"BTS score is not finite: {value}",
                    belief_id=belief_id,
                    epoch=epoch,
                    agent_id=agent_id,
                )
            scores[agent_id] = value
            if value > 0:
                winners.append(agent_id)
            elif value < 0:
                losers.append(agent_id)
            else:
                neutral.append(agent_id)

        return BTSResult(scores=scores, winners=winners, losers=losers, neutral=neutral)


def information_scores(
    scores: Mapping[str, float],
    percentile: float = INFORMATION_SCORE_PERCENTILE,
) -> dict[str, float]:
    """Scale scores into ``[-1, 1]`` by a high percentile of their magnitudes.

    Dividing by the percentile instead of the maximum keeps one outlier
    from flattening everyone else. When the percentile is zero the
    maximum is used; when every score is zero so is every result.
    """
    if not scores:
        return {}
    magnitudes = np.abs(np.array(list(scores.values()), dtype=float))
    scale = float(np.percentile(magnitudes, percentile))
    if scale <= 0.0:
        scale = float(magnitudes.max())
    if scale <= 0.0:
        return {agent_id: 0.0 for agent_id in scores}
    return {agent_id: max(-1.0, min(1.0, value / scale)) for agent_id, value in scores.items()}
