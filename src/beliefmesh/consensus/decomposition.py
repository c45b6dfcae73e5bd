"""
Belief Decomposition.

Separates the common prior shared by all agents from their private
signals and pools the signals into a calibrated aggregate:

1. fit the local expectations matrix ``W`` (meta-prediction on belief),
2. take ``W``'s stationary distribution as the common prior,
3. pool beliefs multiplicatively in log space, dividing the prior out,
4. score the fit and reject it when it is not trustworthy,
5. repeat 1-3 without each agent for peer-only BTS references.

Step 5 runs in O(n) total: moment sums before and after each agent are
accumulated once, so a leave-one-out fit is a constant-size update that
never reads the excluded agent's row.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional, Sequence

import numpy as np

from beliefmesh.config import ProtocolConfig, get_config
from beliefmesh.consensus.aggregation import exclusive_sums
from beliefmesh.consensus.matrix import LocalExpectationsMatrix, WeightedMoments
from beliefmesh.consensus.probability import clamp_probability, disagreement
from beliefmesh.consensus.signals import (
    ConsensusResult,
    LeaveOneOutResult,
    ParticipantSignal,
    prepare_signals,
)
from beliefmesh.exceptions import (
    BeliefMeshError,
    DegenerateSupportError,
    InsufficientParticipantsError,
    LowDecompositionQualityError,
    NumericalInstabilityError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class BeliefDecomposer:
    """Runs belief decomposition for one belief at a time.

    Stateless apart from its configuration, so one instance may serve
    concurrent epoch runs.
    """

    def __init__(self, config: Optional[ProtocolConfig] = None) -> None:
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # Core estimation
    # ------------------------------------------------------------------

    def log_pool(self, moments: WeightedMoments, prior: float) -> float:
        """Prior-corrected multiplicative pool of the beliefs in *moments*."""
        cfg = self.config
        log_yes = moments.sum_log_b - moments.total * math.log(prior)
        log_no = moments.sum_log_not_b - moments.total * math.log1p(-prior)
        if not (math.isfinite(log_yes) and math.isfinite(log_no)):
            raise NumericalInstabilityError(
                "Non-finite log-space aggregate",
                context={"log_yes": log_yes, "log_no": log_no, "prior": prior},
            )
        diff = log_no - log_yes
        if diff > cfg.log_diff_saturation:
            raw = cfg.epsilon
        elif diff < -cfg.log_diff_saturation:
            raw = 1.0 - cfg.epsilon
        else:
            raw = 1.0 / (1.0 + math.exp(diff))
        return clamp_probability(raw, cfg.epsilon)

    def estimate(
        self,
        moments: WeightedMoments,
        unanimous_belief: Optional[float] = None,
    ) -> tuple[LocalExpectationsMatrix, float, float]:
        """Fit ``W``, extract the prior and pool. Returns ``(W, prior, aggregate)``.

        With *unanimous_belief* set every agent reported the same belief;
        there is nothing to correct and the aggregate is that belief.

        Raises:
            LowDecompositionQualityError: the clipped fit is the identity
                matrix, which defines no common prior.
        """
        moments = moments.normalized()
        matrix = LocalExpectationsMatrix.fit(moments, self.config.ridge)
        if matrix.is_reducible(self.config.epsilon):
            raise LowDecompositionQualityError(
                "Fitted matrix clipped to the identity, no common prior",
                context={"w11": matrix.w11, "w21": matrix.w21},
            )
        prior = matrix.stationary_prior(self.config.epsilon)
        if unanimous_belief is not None:
            aggregate = clamp_probability(unanimous_belief, self.config.epsilon)
        else:
            aggregate = self.log_pool(moments, prior)
        return matrix, prior, aggregate

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_support(self, beliefs: np.ndarray, weights: np.ndarray) -> None:
        cfg = self.config
        near_lower = beliefs < cfg.boundary_threshold
        near_upper = beliefs > 1.0 - cfg.boundary_threshold
        total = float(weights.sum())
        mass = float(weights[near_lower | near_upper].sum())
        if mass / total > cfg.boundary_mass_limit:
            raise DegenerateSupportError(
                f"Beliefs cluster at boundaries: {mass / total:.1%} of weight within "
                f"{cfg.boundary_threshold} of 0 or 1",
                context={
                    "near_lower": int(near_lower.sum()),
                    "near_upper": int(near_upper.sum()),
                    "weight_near_bounds": mass,
                    "total_weight": total,
                },
            )

        spread = float(beliefs.max() - beliefs.min())
        if spread < cfg.min_support_diversity:
            logger.warning(
                "Low belief diversity: spread=%.3f (min=%.2f), range [%.3f, %.3f]",
                spread,
                cfg.min_support_diversity,
                float(beliefs.min()),
                float(beliefs.max()),
            )

    def _score(
        self,
        matrix: LocalExpectationsMatrix,
        beliefs: Sequence[float],
        metas: Sequence[float],
    ) -> tuple[float, float, float]:
        """Return ``(quality, condition_number, prediction_accuracy)``."""
        cfg = self.config
        kappa = matrix.condition_number(cfg.max_condition_number)
        health = 1.0 / (1.0 + math.log10(max(1.0, kappa)))
        error = matrix.prediction_error(beliefs, metas)
        accuracy = 1.0 - error
        if error > 0.3:
            logger.warning("Matrix prediction error %.3f per agent is high", error)
        quality = (
            cfg.quality_weight_matrix_health * health
            + cfg.quality_weight_prediction_accuracy * accuracy
        )
        return min(1.0, max(0.0, quality)), kappa, accuracy

    def _unanimous(self, beliefs: np.ndarray) -> Optional[float]:
        if len(beliefs) and float(beliefs.max() - beliefs.min()) <= self.config.epsilon:
            return float(beliefs[0])
        return None

    @staticmethod
    def _check_output(name: str, value: float, low: float, high: float, strict: bool) -> None:
        ok = math.isfinite(value) and (low < value < high if strict else low <= value <= high)
        if not ok:
            raise NumericalInstabilityError(
                f"Output invariant violated: {name}={value}",
                context={name: value},
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def decompose(
        self,
        signals: Iterable[ParticipantSignal],
        *,
        belief_id: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> ConsensusResult:
        """Decompose one belief's submissions.

        Raises:
            ValidationError: malformed weights or probabilities.
            InsufficientParticipantsError: fewer than the minimum participants
                carry nonzero weight.
            DegenerateSupportError: the weighted beliefs cluster at 0 or 1.
            LowDecompositionQualityError: the fitted matrix is not trustworthy.
            NumericalInstabilityError: a singular or non-finite quantity.
        """
        try:
            return self._decompose(list(signals), belief_id, epoch)
        except NumericalInstabilityError as exc:
            exc.with_scope(belief_id=belief_id, epoch=epoch)
            logger.error("Numerical instability in decomposition: %s context=%s", exc, exc.context)
            raise
        except BeliefMeshError as exc:
            raise exc.with_scope(belief_id=belief_id, epoch=epoch)

    def _decompose(
        self,
        signals: list[ParticipantSignal],
        belief_id: Optional[str],
        epoch: Optional[int],
    ) -> ConsensusResult:
        cfg = self.config
        participants = prepare_signals(signals, cfg, belief_id=belief_id, epoch=epoch)
        n = len(participants)
        if n < cfg.min_participants:
            raise InsufficientParticipantsError(
                f"Decomposition needs at least {cfg.min_participants} participants with "
                f"nonzero weight, got {n}",
                context={"count": n, "required": cfg.min_participants},
            )

        agent_ids = [p.agent_id for p in participants]
        beliefs = np.array([p.belief for p in participants], dtype=float)
        metas = np.array([p.meta_prediction for p in participants], dtype=float)
        weights = np.array([p.weight for p in participants], dtype=float)

        self._check_support(beliefs, weights)

        moments = WeightedMoments.from_arrays(beliefs, metas, weights)
        if moments.normalized().variance < cfg.ridge * 10:
            logger.warning(
                "Belief variance is near-singular, relying on ridge %.1e",
                cfg.ridge,
            )
        matrix, prior, aggregate = self.estimate(moments, self._unanimous(beliefs))

        quality, kappa, accuracy = self._score(matrix, beliefs.tolist(), metas.tolist())
        if quality < cfg.quality_threshold:
            raise LowDecompositionQualityError(
                f"Decomposition quality {quality:.3f} below threshold {cfg.quality_threshold}",
                context={
                    "quality": quality,
                    "threshold": cfg.quality_threshold,
                    "condition_number": kappa,
                    "prediction_accuracy": accuracy,
                },
            )

        normalized = weights / weights.sum()
        spread = disagreement(beliefs.tolist(), normalized.tolist(), aggregate)

        self._check_output("aggregate", aggregate, 0.0, 1.0, strict=True)
        self._check_output("prior", prior, 0.0, 1.0, strict=True)
        self._check_output("certainty", spread.certainty, 0.0, 1.0, strict=False)
        self._check_output("quality", quality, 0.0, 1.0, strict=False)

        leave_one_out = self._leave_one_out_all(agent_ids, beliefs, metas, weights)

        logger.debug(
            "Decomposed belief %s epoch %s: aggregate=%.4f prior=%.4f quality=%.3f n=%d",
            belief_id,
            epoch,
            aggregate,
            prior,
            quality,
            n,
        )
        return ConsensusResult(
            aggregate=aggregate,
            disagreement=spread,
            weights=dict(zip(agent_ids, normalized.tolist())),
            beliefs=dict(zip(agent_ids, beliefs.tolist())),
            meta_predictions=dict(zip(agent_ids, metas.tolist())),
            leave_one_out=leave_one_out,
            method="decomposition",
            matrix=matrix,
            prior=prior,
            quality=quality,
            condition_number=kappa,
            prediction_accuracy=accuracy,
        )

    def _leave_one_out_all(
        self,
        agent_ids: list[str],
        beliefs: np.ndarray,
        metas: np.ndarray,
        weights: np.ndarray,
    ) -> dict[str, LeaveOneOutResult]:
        n = len(agent_ids)
        others_moments = exclusive_sums(WeightedMoments.columns(beliefs, metas, weights))

        inf = np.array([np.inf])
        low_before = np.concatenate([inf, np.minimum.accumulate(beliefs)[:-1]])
        low_after = np.concatenate([np.minimum.accumulate(beliefs[::-1])[::-1][1:], inf])
        high_before = np.concatenate([-inf, np.maximum.accumulate(beliefs)[:-1]])
        high_after = np.concatenate([np.maximum.accumulate(beliefs[::-1])[::-1][1:], -inf])

        results: dict[str, LeaveOneOutResult] = {}
        for r, agent_id in enumerate(agent_ids):
            others = n - 1
            moments = WeightedMoments(*others_moments[r].tolist())
            if others < self.config.min_participants or moments.total <= self.config.epsilon:
                results[agent_id] = LeaveOneOutResult.neutral(others)
                continue
            low = min(low_before[r], low_after[r])
            high = max(high_before[r], high_after[r])
            unanimous = float(low) if high - low <= self.config.epsilon else None
            results[agent_id] = self._leave_one_out_from(moments, others, unanimous, agent_id)
        return results

    def _leave_one_out_from(
        self,
        moments: WeightedMoments,
        participant_count: int,
        unanimous: Optional[float],
        excluded_agent_id: Optional[str],
    ) -> LeaveOneOutResult:
        try:
            _, prior, aggregate = self.estimate(moments, unanimous)
        except LowDecompositionQualityError as exc:
            logger.warning(
                "Leave-one-out fit without %s is degenerate (%s), returning neutral defaults",
                excluded_agent_id,
                exc.message,
            )
            return LeaveOneOutResult.neutral(participant_count)
        except NumericalInstabilityError as exc:
            if exc.agent_id is None:
                exc.agent_id = excluded_agent_id
            exc.context.setdefault("leave_one_out", True)
            raise
        meta_aggregate = clamp_probability(moments.mean_meta, self.config.epsilon)
        return LeaveOneOutResult(
            aggregate=aggregate,
            meta_aggregate=meta_aggregate,
            prior=prior,
            participant_count=participant_count,
        )

    def leave_one_out(
        self,
        signals: Iterable[ParticipantSignal],
        exclude_agent_id: str,
        *,
        belief_id: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> LeaveOneOutResult:
        """Peer-only aggregate and meta-aggregate with *exclude_agent_id* removed.

        *signals* may carry weights of any positive total; they are
        re-normalized after the excluded agent is dropped. The excluded agent
        must not hold weight. Fewer than two remaining participants give the
        neutral result.
        """
        signals = list(signals)
        try:
            if not exclude_agent_id:
                raise ValidationError("exclude_agent_id must be a non-empty string")
            for signal in signals:
                if signal.agent_id == exclude_agent_id and signal.weight:
                    raise ValidationError(
                        "Excluded agent must not carry weight",
                        agent_id=exclude_agent_id,
                    )
            others = [s for s in signals if s.agent_id != exclude_agent_id]
            total = math.fsum(s.weight for s in others)
            if not math.isfinite(total) or total <= 0:
                raise ValidationError(
                    "Sum of weights is zero after excluding agent",
                    agent_id=exclude_agent_id,
                    context={"weight_sum": total},
                )
            normalized = [
                ParticipantSignal(s.agent_id, s.belief, s.meta_prediction, s.weight / total)
                for s in others
            ]
            participants = prepare_signals(normalized, self.config, belief_id=belief_id, epoch=epoch)
            if len(participants) < self.config.min_participants:
                logger.info(
                    "Leave-one-out for %s has %d participants, returning neutral defaults",
                    exclude_agent_id,
                    len(participants),
                )
                return LeaveOneOutResult.neutral(len(participants))

            beliefs = np.array([p.belief for p in participants], dtype=float)
            moments = WeightedMoments.from_arrays(
                beliefs,
                np.array([p.meta_prediction for p in participants], dtype=float),
                np.array([p.weight for p in participants], dtype=float),
            )
            return self._leave_one_out_from(
                moments, len(participants), self._unanimous(beliefs), exclude_agent_id
            )
        except BeliefMeshError as exc:
            raise exc.with_scope(belief_id=belief_id, epoch=epoch)
