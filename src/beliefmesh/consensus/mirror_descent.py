"""
Mirror descent update for passive agents.

Agents that did not submit this epoch are nudged toward the new
aggregate with a multiplicative (geometric) interpolation whose learning
rate is the epoch's certainty. Active agents are left untouched.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Mapping, Optional

from beliefmesh.config import ProtocolConfig, get_config
from beliefmesh.consensus.probability import clamp_probability
from beliefmesh.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentBeliefState:
    belief: float
    is_active: bool


@dataclass(frozen=True)
class MirrorDescentResult:
    """Beliefs after the update. ``changed`` holds only the passive agents."""

    updated_beliefs: dict[str, float]
    changed: dict[str, float] = field(default_factory=dict)
    learning_rate: float = 0.0


def mirror_step(p_old: float, aggregate: float, alpha: float, epsilon: float) -> float:
    """Geometric interpolation between *p_old* and *aggregate* at rate *alpha*."""
    p_old = clamp_probability(p_old, epsilon)
    aggregate = clamp_probability(aggregate, epsilon)
    if alpha >= 1.0 - epsilon:
        return aggregate
    if alpha <= epsilon:
        return p_old

    yes = p_old ** (1.0 - alpha) * aggregate**alpha
    no = (1.0 - p_old) ** (1.0 - alpha) * (1.0 - aggregate) ** alpha
    denominator = yes + no
    if not math.isfinite(denominator) or denominator <= epsilon:
        logger.warning("Mirror descent denominator underflow (%.3e), keeping belief", denominator)
        return p_old
    return clamp_probability(yes / denominator, epsilon)


class MirrorDescentUpdater:
    def __init__(self, config: Optional[ProtocolConfig] = None) -> None:
        self.config = config or get_config()

    def update(
        self,
        aggregate: float,
        certainty: float,
        states: Mapping[str, AgentBeliefState],
    ) -> MirrorDescentResult:
        if not (math.isfinite(aggregate) and 0.0 <= aggregate <= 1.0):
            raise ValidationError(f"Aggregate must be in [0, 1], got {aggregate}")
        if not (math.isfinite(certainty) and 0.0 <= certainty <= 1.0):
            raise ValidationError(f"Certainty must be in [0, 1], got {certainty}")

        eps = self.config.epsilon
        updated: dict[str, float] = {}
        changed: dict[str, float] = {}
        for agent_id, state in states.items():
            if state.is_active:
                updated[agent_id] = state.belief
                continue
            p_new = mirror_step(state.belief, aggregate, certainty, eps)
            updated[agent_id] = p_new
            changed[agent_id] = p_new

        logger.info(
            "Mirror descent: learning_rate=%.4f aggregate=%.4f passive=%d active=%d",
            certainty,
            aggregate,
            len(changed),
            len(updated) - len(changed),
        )
        return MirrorDescentResult(updated_beliefs=updated, changed=changed, learning_rate=certainty)
