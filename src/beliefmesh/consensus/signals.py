"""
Inputs and outputs shared by the aggregation strategies.

:func:`prepare_signals` is the single validation gate for weight maps:
everything downstream may assume finite, clamped probabilities and
non-negative weights that sum to one.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from beliefmesh.config import ProtocolConfig
from beliefmesh.consensus.matrix import LocalExpectationsMatrix
from beliefmesh.consensus.probability import Disagreement, clamp_probability
from beliefmesh.constants import NEUTRAL_PROBABILITY
from beliefmesh.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipantSignal:
    """One agent's contribution to a belief's aggregation."""

    agent_id: str
    belief: float
    meta_prediction: float
    weight: float


@dataclass(frozen=True)
class LeaveOneOutResult:
    """Peer-only estimates for one excluded agent."""

    aggregate: float
    meta_aggregate: float
    prior: float = NEUTRAL_PROBABILITY
    participant_count: int = 0

    @classmethod
    def neutral(cls, participant_count: int = 0) -> "LeaveOneOutResult":
        return cls(
            aggregate=NEUTRAL_PROBABILITY,
            meta_aggregate=NEUTRAL_PROBABILITY,
            prior=NEUTRAL_PROBABILITY,
            participant_count=participant_count,
        )


@dataclass(frozen=True)
class ConsensusResult:
    """Aggregate of one belief for one epoch, with per-agent peer estimates.

    ``matrix``, ``prior`` and ``quality`` are only set by belief
    decomposition; the weighted-average fallback leaves them ``None``.
    """

    aggregate: float
    disagreement: Disagreement
    weights: dict[str, float]
    beliefs: dict[str, float]
    meta_predictions: dict[str, float]
    leave_one_out: dict[str, LeaveOneOutResult] = field(default_factory=dict)
    method: str = "decomposition"
    matrix: Optional[LocalExpectationsMatrix] = None
    prior: Optional[float] = None
    quality: Optional[float] = None
    condition_number: Optional[float] = None
    prediction_accuracy: Optional[float] = None

    @property
    def certainty(self) -> float:
        return self.disagreement.certainty

    @property
    def disagreement_entropy(self) -> float:
        return self.disagreement.entropy

    @property
    def normalized_entropy(self) -> float:
        return self.disagreement.normalized_entropy

    @property
    def participant_count(self) -> int:
        return len(self.weights)

    @property
    def leave_one_out_aggregates(self) -> dict[str, float]:
        return {agent_id: loo.aggregate for agent_id, loo in self.leave_one_out.items()}

    @property
    def leave_one_out_meta_aggregates(self) -> dict[str, float]:
        return {agent_id: loo.meta_aggregate for agent_id, loo in self.leave_one_out.items()}

    def to_dict(self) -> dict:
        data = {
            "method": self.method,
            "aggregate": self.aggregate,
            "certainty": self.certainty,
            "disagreement_entropy": self.disagreement_entropy,
            "normalized_disagreement_entropy": self.normalized_entropy,
            "participant_count": self.participant_count,
            "meta_predictions": dict(self.meta_predictions),
            "leave_one_out_aggregates": self.leave_one_out_aggregates,
            "leave_one_out_meta_aggregates": self.leave_one_out_meta_aggregates,
        }
        if self.matrix is not None:
            data["local_expectations_matrix"] = self.matrix.to_dict()
            data["common_prior"] = self.prior
            data["decomposition_quality"] = self.quality
            data["condition_number"] = self.condition_number
            data["prediction_accuracy"] = self.prediction_accuracy
        return data


def _check_probability(
    name: str,
    value: float,
    agent_id: str,
    belief_id: Optional[str],
    epoch: Optional[int],
) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(
            f"{name} must be a finite probability in [0, 1], got {value!r}",
            belief_id=belief_id,
            epoch=epoch,
            agent_id=agent_id,
        )


def validate_weights(
    weights: dict[str, float],
    *,
    tolerance: float,
    belief_id: Optional[str] = None,
    epoch: Optional[int] = None,
) -> None:
    """Reject empty, negative, non-finite or unnormalized weight maps."""
    if not weights:
        raise ValidationError("Weights must contain at least one agent", belief_id=belief_id, epoch=epoch)
    for agent_id, weight in weights.items():
        if not agent_id:
            raise ValidationError("Weight map contains an empty agent id", belief_id=belief_id, epoch=epoch)
        if not isinstance(weight, (int, float)) or not math.isfinite(weight):
            raise ValidationError(
                f"Weight {weight!r} is NaN or infinite",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=agent_id,
            )
        if weight < 0:
            raise ValidationError(
                f"Weights must be non-negative, got {weight}",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=agent_id,
            )
    total = math.fsum(weights.values())
    if abs(total - 1.0) > tolerance:
        raise ValidationError(
            f"Weights must sum to 1.0, got {total}",
            belief_id=belief_id,
            epoch=epoch,
            context={"weight_sum": total},
        )


def prepare_signals(
    signals: Iterable[ParticipantSignal],
    config: ProtocolConfig,
    *,
    belief_id: Optional[str] = None,
    epoch: Optional[int] = None,
) -> list[ParticipantSignal]:
    """Validate *signals* and return the nonzero-weight ones with clamped probabilities."""
    signals = list(signals)
    seen: set[str] = set()
    for signal in signals:
        if signal.agent_id in seen:
            raise ValidationError(
                "Duplicate participant",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=signal.agent_id,
            )
        seen.add(signal.agent_id)
        _check_probability("belief", signal.belief, signal.agent_id, belief_id, epoch)
        _check_probability("meta_prediction", signal.meta_prediction, signal.agent_id, belief_id, epoch)

    validate_weights(
        {s.agent_id: s.weight for s in signals},
        tolerance=config.stochastic_tolerance,
        belief_id=belief_id,
        epoch=epoch,
    )

    prepared: list[ParticipantSignal] = []
    clamped = 0
    for signal in signals:
        if signal.weight <= 0:
            continue
        belief = clamp_probability(signal.belief, config.epsilon)
        meta = clamp_probability(signal.meta_prediction, config.epsilon)
        if belief != signal.belief or meta != signal.meta_prediction:
            clamped += 1
        prepared.append(ParticipantSignal(signal.agent_id, belief, meta, float(signal.weight)))

    if clamped:
        logger.warning(
            "Clamped %d probability values to [%.0e, 1 - %.0e] for belief %s",
            clamped,
            config.epsilon,
            config.epsilon,
            belief_id,
        )
    return prepared


def signals_from_maps(
    beliefs: dict[str, float],
    meta_predictions: dict[str, float],
    weights: dict[str, float],
) -> list[ParticipantSignal]:
    """Join per-agent maps into signals. Agents missing from *weights* get zero weight."""
    missing = sorted(set(beliefs) ^ set(meta_predictions))
    if missing:
        raise ValidationError(
            f"Beliefs and meta-predictions cover different agents: {', '.join(missing)}"
        )
    return [
        ParticipantSignal(agent_id, beliefs[agent_id], meta_predictions[agent_id], weights.get(agent_id, 0.0))
        for agent_id in beliefs
    ]
