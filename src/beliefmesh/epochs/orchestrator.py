"""
Epoch Orchestrator

Runs one belief through one epoch:

    LOADING -> WEIGHTED -> DECOMPOSED -> MIRROR_DESCENDED
            -> SCORED -> REDISTRIBUTED -> PERSISTED

Reads happen in LOADING and writes in PERSISTED; everything in between
is pure computation over the loaded snapshot, so a failure before
PERSISTED leaves storage untouched. A failure inside PERSISTED reverts
the stake deltas, submission rows and history already written and
releases the epoch claim so the run can be retried.

Idempotence comes from two guards: a belief whose
``last_processed_epoch`` has reached the epoch is skipped, and the
per-(belief, epoch) claim keeps two concurrent runs from both applying
deltas. The claim is released once the belief is saved; the winner of a
claim re-reads the belief so a run that lost the race still skips.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field

from beliefmesh.config import ProtocolConfig, get_config
from beliefmesh.consensus.aggregation import weighted_average
from beliefmesh.consensus.decomposition import BeliefDecomposer
from beliefmesh.consensus.mirror_descent import AgentBeliefState, MirrorDescentResult, MirrorDescentUpdater
from beliefmesh.consensus.signals import ConsensusResult, LeaveOneOutResult, ParticipantSignal, validate_weights
from beliefmesh.epochs.submissions import latest_submissions
from beliefmesh.exceptions import AggregationError, BeliefMeshError, StorageError, ValidationError
from beliefmesh.interfaces import BeliefStore, HistorySink, StakeStore, SubmissionStore, WeightProvider
from beliefmesh.ledger.redistribution import RedistributionResult, StakeRedistributor
from beliefmesh.models import Belief, BeliefStatus, EpochRecord, Submission, WeightAllocation
from beliefmesh.observability.metrics import EpochMetrics
from beliefmesh.scoring.bts import BTSResult, BTSScorer

logger = logging.getLogger(__name__)


class EpochStage(str, Enum):
    LOADING = "loading"
    WEIGHTED = "weighted"
    DECOMPOSED = "decomposed"
    MIRROR_DESCENDED = "mirror_descended"
    SCORED = "scored"
    REDISTRIBUTED = "redistributed"
    PERSISTED = "persisted"
    SKIPPED = "skipped"
    FAILED = "failed"


class EpochResult(BaseModel):
    """Outcome of processing one belief for one epoch."""

    belief_id: str
    epoch: int
    stage: EpochStage
    skipped: bool = False
    reason: Optional[str] = None
    aggregate: float
    certainty: float
    disagreement_entropy: float
    aggregation_method: Optional[str] = None
    participant_count: int = 0
    redistribution_occurred: bool = False
    slashing_pool: int = 0
    winners: list[str] = Field(default_factory=list)
    losers: list[str] = Field(default_factory=list)
    bts_scores: dict[str, float] = Field(default_factory=dict)
    information_scores: dict[str, float] = Field(default_factory=dict)
    stake_deltas: dict[str, int] = Field(default_factory=dict)
    individual_rewards: dict[str, int] = Field(default_factory=dict)
    individual_slashes: dict[str, int] = Field(default_factory=dict)
    updated_beliefs: dict[str, float] = Field(default_factory=dict)
    post_mirror_descent_aggregate: Optional[float] = None
    post_mirror_descent_entropy: Optional[float] = None
    archived: bool = False
    stages: list[EpochStage] = Field(default_factory=list)


class _Snapshot(BaseModel):
    """Everything LOADING reads for one run."""

    belief: Belief
    latest: dict[str, Submission]
    current: list[str]
    allocation: WeightAllocation
    stakes: dict[str, int]


class EpochOrchestrator:
    """
    Drives the epoch pipeline over injected collaborators.

    Storage, weights and history are reached only through the protocols
    in :mod:`beliefmesh.interfaces`; the math collaborators default to
    instances built from ``config``.
    """

    def __init__(
        self,
        submissions: SubmissionStore,
        weights: WeightProvider,
        stakes: StakeStore,
        history: HistorySink,
        beliefs: BeliefStore,
        config: Optional[ProtocolConfig] = None,
        *,
        decomposer: Optional[BeliefDecomposer] = None,
        mirror_descent: Optional[MirrorDescentUpdater] = None,
        scorer: Optional[BTSScorer] = None,
        redistributor: Optional[StakeRedistributor] = None,
        metrics: Optional[EpochMetrics] = None,
    ) -> None:
        self.config = config or get_config()
        self._submissions = submissions
        self._weights = weights
        self._stakes = stakes
        self._history = history
        self._beliefs = beliefs
        self.decomposer = decomposer or BeliefDecomposer(self.config)
        self.mirror_descent = mirror_descent or MirrorDescentUpdater(self.config)
        self.scorer = scorer or BTSScorer(self.config.epsilon)
        self.redistributor = redistributor or StakeRedistributor(self.config.information_percentile)
        self.metrics = metrics or EpochMetrics()

    # ------------------------------------------------------------------
    # Epoch processing
    # ------------------------------------------------------------------

    async def process_epoch(self, belief_id: str, epoch: int) -> EpochResult:
        """Process *belief_id* for *epoch*.

        Returns a skipped result when the epoch was already processed or is
        being processed by another run.

        Raises:
            ValidationError: unknown belief, epoch outside the belief's
                lifetime, or malformed weights.
            AggregationError: decomposition failed and the weighted-average
                fallback is disabled or failed too.
            NumericalInstabilityError: a non-finite or singular quantity.
            LedgerError: the planned redistribution is not conservative.
            StorageError: a read or write failed.
        """
        started = time.perf_counter()
        if not belief_id:
            raise ValidationError("belief_id is required", epoch=epoch)
        if epoch < 0:
            raise ValidationError(f"epoch must be non-negative, got {epoch}", belief_id=belief_id)

        belief = await self._read("load belief", self._beliefs.get_belief(belief_id), belief_id, epoch)
        if belief is None:
            raise ValidationError("Belief not found", belief_id=belief_id, epoch=epoch)
        if belief.is_processed(epoch):
            logger.info(
                "Belief %s epoch %d already processed (last=%s), skipping",
                belief_id,
                epoch,
                belief.last_processed_epoch,
            )
            self.metrics.record_outcome("skipped")
            return self._skipped(belief, epoch, "already_processed")
        self._check_lifetime(belief, epoch)

        claimed = await self._read("claim epoch", self._beliefs.claim_epoch(belief_id, epoch), belief_id, epoch)
        if not claimed:
            logger.info("Belief %s epoch %d is claimed by another run, skipping", belief_id, epoch)
            self.metrics.record_outcome("skipped")
            return self._skipped(belief, epoch, "in_progress")

        stages: list[EpochStage] = []
        try:
            # A run that finished between the first read and the claim has
            # already released its claim; the reloaded belief shows it.
            belief = await self._read("reload belief", self._beliefs.get_belief(belief_id), belief_id, epoch)
            if belief is None:
                raise ValidationError("Belief not found", belief_id=belief_id, epoch=epoch)
            result = None if belief.is_processed(epoch) else await self._run(belief, epoch, stages)
        except BeliefMeshError as exc:
            exc.with_scope(belief_id=belief_id, epoch=epoch)
            stage = stages[-1].value if stages else EpochStage.LOADING.value
            logger.warning("Epoch %d for belief %s failed after %s: %s", epoch, belief_id, stage, exc)
            await self._release(belief_id, epoch)
            self.metrics.record_outcome("failed")
            raise
        except BaseException:
            await self._release(belief_id, epoch)
            self.metrics.record_outcome("failed")
            raise

        # last_processed_epoch guards reruns from here on
        await self._read("release claim", self._beliefs.release_epoch(belief_id, epoch), belief_id, epoch)
        if result is None:
            logger.info("Belief %s epoch %d was processed by a concurrent run, skipping", belief_id, epoch)
            self.metrics.record_outcome("skipped")
            return self._skipped(belief, epoch, "already_processed")

        self.metrics.record_outcome("success")
        self.metrics.observe_duration(time.perf_counter() - started)
        self.metrics.set_aggregate(belief_id, result.aggregate)
        self.metrics.record_stake_moved(result.slashing_pool)
        logger.info(
            "Processed belief %s epoch %d: aggregate=%.4f certainty=%.4f method=%s pool=%d",
            belief_id,
            epoch,
            result.aggregate,
            result.certainty,
            result.aggregation_method,
            result.slashing_pool,
        )
        return result

    async def process_epochs(
        self,
        belief_ids: Sequence[str],
        epoch: int,
    ) -> dict[str, Union[EpochResult, BeliefMeshError]]:
        """Process several beliefs concurrently.

        Each belief's outcome is independent: a failed belief maps to its
        error, the others still complete. Errors that are not BeliefMesh
        errors propagate.
        """
        belief_ids = list(dict.fromkeys(belief_ids))
        outcomes = await asyncio.gather(
            *(self.process_epoch(belief_id, epoch) for belief_id in belief_ids),
            return_exceptions=True,
        )
        results: dict[str, Union[EpochResult, BeliefMeshError]] = {}
        for belief_id, outcome in zip(belief_ids, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, BeliefMeshError):
                raise outcome
            results[belief_id] = outcome
        return results

    async def _run(self, belief: Belief, epoch: int, stages: list[EpochStage]) -> EpochResult:
        belief_id = belief.belief_id

        stages.append(EpochStage.LOADING)
        snapshot = await self._load(belief, epoch)

        stages.append(EpochStage.WEIGHTED)
        signals = self._signals(snapshot, epoch)
        logger.info(
            "Belief %s epoch %d weighted: %d agents, %d submitted this epoch",
            belief_id,
            epoch,
            len(signals),
            len(snapshot.current),
        )

        stages.append(EpochStage.DECOMPOSED)
        consensus = self._aggregate(signals, belief_id, epoch)

        stages.append(EpochStage.MIRROR_DESCENDED)
        descent = self.mirror_descent.update(
            consensus.aggregate,
            consensus.certainty,
            {
                agent_id: AgentBeliefState(submission.belief, agent_id in snapshot.current)
                for agent_id, submission in snapshot.latest.items()
            },
        )
        post_descent = self._post_descent_aggregate(signals, descent, belief_id, epoch)

        stages.append(EpochStage.SCORED)
        scored = [agent_id for agent_id in snapshot.current if agent_id in consensus.leave_one_out]
        bts = self.scorer.score(
            {agent_id: consensus.beliefs[agent_id] for agent_id in scored},
            {agent_id: consensus.meta_predictions[agent_id] for agent_id in scored},
            {agent_id: consensus.leave_one_out[agent_id].aggregate for agent_id in scored},
            {agent_id: consensus.leave_one_out[agent_id].meta_aggregate for agent_id in scored},
            belief_id=belief_id,
            epoch=epoch,
        )
        logger.info(
            "Belief %s epoch %d scored: winners=%d losers=%d",
            belief_id,
            epoch,
            len(bts.winners),
            len(bts.losers),
        )

        stages.append(EpochStage.REDISTRIBUTED)
        plan = self.redistributor.plan(
            belief_id,
            epoch,
            bts,
            snapshot.allocation.locks,
            snapshot.stakes,
            consensus.weights,
        )

        stages.append(EpochStage.PERSISTED)
        saved = await self._persist(snapshot, epoch, consensus, descent, plan)

        return self._result(saved, epoch, consensus, descent, post_descent, bts, plan, stages)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _load(self, belief: Belief, epoch: int) -> _Snapshot:
        belief_id = belief.belief_id
        rows = await self._read(
            "load submissions", self._submissions.load_submissions(belief_id), belief_id, epoch
        )
        latest = latest_submissions(s for s in rows if s.epoch <= epoch)
        if not latest:
            raise ValidationError("No submissions to aggregate", belief_id=belief_id, epoch=epoch)

        agent_ids = sorted(latest)
        current = [
            agent_id
            for agent_id in agent_ids
            if latest[agent_id].epoch == epoch and latest[agent_id].is_active
        ]
        allocation = await self._read(
            "compute weights", self._weights.compute_weights(belief_id, agent_ids), belief_id, epoch
        )
        balances = await self._read(
            "load stakes",
            asyncio.gather(*(self._stakes.get_stake(agent_id) for agent_id in current)),
            belief_id,
            epoch,
        )
        return _Snapshot(
            belief=belief,
            latest=latest,
            current=current,
            allocation=allocation,
            stakes=dict(zip(current, balances)),
        )

    def _signals(self, snapshot: _Snapshot, epoch: int) -> list[ParticipantSignal]:
        belief_id = snapshot.belief.belief_id
        weights = snapshot.allocation.weights
        unknown = sorted(set(weights) - set(snapshot.latest))
        if unknown:
            raise ValidationError(
                f"Weights given for agents without submissions: {', '.join(unknown)}",
                belief_id=belief_id,
                epoch=epoch,
            )
        validate_weights(weights, tolerance=self.config.stochastic_tolerance, belief_id=belief_id, epoch=epoch)
        for agent_id in snapshot.current:
            if agent_id not in snapshot.allocation.locks:
                raise ValidationError("Missing lock for submitting agent", belief_id=belief_id, epoch=epoch, agent_id=agent_id)
        return [
            ParticipantSignal(agent_id, submission.belief, submission.meta_prediction, weights.get(agent_id, 0.0))
            for agent_id, submission in sorted(snapshot.latest.items())
        ]

    def _aggregate(
        self,
        signals: list[ParticipantSignal],
        belief_id: str,
        epoch: int,
        *,
        record_fallback: bool = True,
    ) -> ConsensusResult:
        try:
            return self.decomposer.decompose(signals, belief_id=belief_id, epoch=epoch)
        except AggregationError as exc:
            if not self.config.fallback_to_weighted_average:
                raise
            logger.warning(
                "Decomposition failed for belief %s epoch %d (%s), using weighted average",
                belief_id,
                epoch,
                exc.message,
            )
            if record_fallback:
                self.metrics.record_fallback(type(exc).__name__)
            return weighted_average(signals, config=self.config, belief_id=belief_id, epoch=epoch)

    def _post_descent_aggregate(
        self,
        signals: list[ParticipantSignal],
        descent: MirrorDescentResult,
        belief_id: str,
        epoch: int,
    ) -> Optional[ConsensusResult]:
        """Re-aggregate with passive beliefs moved, or None if none moved."""
        if not descent.changed:
            return None
        moved = [
            ParticipantSignal(s.agent_id, descent.updated_beliefs[s.agent_id], s.meta_prediction, s.weight)
            for s in signals
        ]
        return self._aggregate(moved, belief_id, epoch, record_fallback=False)

    async def _persist(
        self,
        snapshot: _Snapshot,
        epoch: int,
        consensus: ConsensusResult,
        descent: MirrorDescentResult,
        plan: RedistributionResult,
    ) -> Belief:
        belief = snapshot.belief
        belief_id = belief.belief_id
        applied: list[tuple[str, int]] = []
        touched: list[Submission] = []
        history: list[str] = []
        try:
            for agent_id, delta in sorted(plan.deltas.items()):
                if delta:
                    await self._stakes.apply_delta(agent_id, delta)
                    applied.append((agent_id, delta))

            if descent.changed:
                touched.extend(snapshot.latest[agent_id] for agent_id in descent.changed)
                await self._submissions.update_beliefs(belief_id, dict(descent.changed))

            if plan.events:
                history.append("events")
                await self._history.append_redistribution_events(belief_id, epoch, plan.events)
            history.append("record")
            await self._history.append_epoch_record(
                EpochRecord(
                    belief_id=belief_id,
                    epoch=epoch,
                    aggregate=consensus.aggregate,
                    certainty=consensus.certainty,
                    entropy=consensus.disagreement_entropy,
                    participant_count=consensus.participant_count,
                    total_stake=snapshot.allocation.total_lock,
                    aggregation_method=consensus.method,
                )
            )

            touched.extend(snapshot.latest[agent_id] for agent_id in snapshot.current)
            await self._submissions.deactivate(belief_id, epoch)

            saved = belief.model_copy(
                update={
                    "aggregate": consensus.aggregate,
                    "certainty": consensus.certainty,
                    "disagreement_entropy": consensus.disagreement_entropy,
                    "last_processed_epoch": epoch,
                    "status": BeliefStatus.ARCHIVED if epoch == belief.expiration_epoch else belief.status,
                }
            )
            await self._beliefs.save_belief(saved)
        except Exception as exc:
            logger.error(
                "Persisting belief %s epoch %d failed, rolling back %d stake deltas: %s",
                belief_id,
                epoch,
                len(applied),
                exc,
            )
            await self._rollback(belief_id, epoch, applied, touched, history)
            if isinstance(exc, BeliefMeshError):
                raise exc.with_scope(belief_id=belief_id, epoch=epoch)
            raise StorageError(
                f"Failed to persist epoch: {exc}",
                belief_id=belief_id,
                epoch=epoch,
                context={"reverted_deltas": len(applied)},
            ) from exc
        return saved

    async def _rollback(
        self,
        belief_id: str,
        epoch: int,
        applied: list[tuple[str, int]],
        touched: list[Submission],
        history: list[str],
    ) -> None:
        for agent_id, delta in reversed(applied):
            await self._stakes.apply_delta(agent_id, -delta)
        for submission in touched:
            await self._submissions.save_submission(submission)
        if "record" in history:
            await self._history.remove_epoch_record(belief_id, epoch)
        if "events" in history:
            await self._history.remove_redistribution_events(belief_id, epoch)
        logger.info(
            "Rolled back belief %s epoch %d: %d deltas, %d submissions, history=%s",
            belief_id,
            epoch,
            len(applied),
            len(touched),
            history,
        )

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    async def decompose(self, belief_id: str, weights: Mapping[str, float], epoch: int) -> ConsensusResult:
        """Decompose the latest submissions up to *epoch* under caller-supplied weights.

        Nothing is written.
        """
        signals = await self._external_signals(belief_id, weights, epoch)
        return self.decomposer.decompose(signals, belief_id=belief_id, epoch=epoch)

    async def leave_one_out_decompose(
        self,
        belief_id: str,
        exclude_agent_id: str,
        weights: Mapping[str, float],
        epoch: int,
    ) -> LeaveOneOutResult:
        """Peer-only estimate with *exclude_agent_id* removed. Nothing is written.

        *weights* must not give the excluded agent any weight; the rest is
        re-normalized.
        """
        if weights.get(exclude_agent_id):
            raise ValidationError(
                "Excluded agent must not carry weight",
                belief_id=belief_id,
                epoch=epoch,
                agent_id=exclude_agent_id,
            )
        signals = await self._external_signals(belief_id, weights, epoch, normalized=False)
        return self.decomposer.leave_one_out(signals, exclude_agent_id, belief_id=belief_id, epoch=epoch)

    async def _external_signals(
        self,
        belief_id: str,
        weights: Mapping[str, float],
        epoch: int,
        normalized: bool = True,
    ) -> list[ParticipantSignal]:
        if normalized:
            validate_weights(dict(weights), tolerance=self.config.stochastic_tolerance, belief_id=belief_id, epoch=epoch)
        rows = await self._read("load submissions", self._submissions.load_submissions(belief_id), belief_id, epoch)
        latest = latest_submissions(s for s in rows if s.epoch <= epoch)
        signals: list[ParticipantSignal] = []
        for agent_id, weight in weights.items():
            submission = latest.get(agent_id)
            if submission is None:
                if weight:
                    raise ValidationError(
                        "Weighted agent has no submission",
                        belief_id=belief_id,
                        epoch=epoch,
                        agent_id=agent_id,
                    )
                continue
            signals.append(ParticipantSignal(agent_id, submission.belief, submission.meta_prediction, weight))
        return signals

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _read(action: str, awaitable, belief_id: str, epoch: int):
        try:
            return await awaitable
        except BeliefMeshError as exc:
            raise exc.with_scope(belief_id=belief_id, epoch=epoch)
        except Exception as exc:
            raise StorageError(f"Failed to {action}: {exc}", belief_id=belief_id, epoch=epoch) from exc

    async def _release(self, belief_id: str, epoch: int) -> None:
        try:
            await self._beliefs.release_epoch(belief_id, epoch)
        except Exception:
            logger.exception("Could not release claim on belief %s epoch %d", belief_id, epoch)
            raise

    @staticmethod
    def _check_lifetime(belief: Belief, epoch: int) -> None:
        if belief.status == BeliefStatus.ARCHIVED:
            raise ValidationError("Belief is archived", belief_id=belief.belief_id, epoch=epoch)
        if epoch > belief.expiration_epoch:
            raise ValidationError(
                f"Epoch is past expiration epoch {belief.expiration_epoch}",
                belief_id=belief.belief_id,
                epoch=epoch,
            )
        if epoch < belief.created_epoch:
            raise ValidationError(
                f"Epoch precedes created epoch {belief.created_epoch}",
                belief_id=belief.belief_id,
                epoch=epoch,
            )

    @staticmethod
    def _skipped(belief: Belief, epoch: int, reason: str) -> EpochResult:
        return EpochResult(
            belief_id=belief.belief_id,
            epoch=epoch,
            stage=EpochStage.SKIPPED,
            skipped=True,
            reason=reason,
            aggregate=belief.aggregate,
            certainty=belief.certainty,
            disagreement_entropy=belief.disagreement_entropy,
            archived=belief.status == BeliefStatus.ARCHIVED,
            stages=[EpochStage.SKIPPED],
        )

    @staticmethod
    def _result(
        saved: Belief,
        epoch: int,
        consensus: ConsensusResult,
        descent: MirrorDescentResult,
        post_descent: Optional[ConsensusResult],
        bts: BTSResult,
        plan: RedistributionResult,
        stages: list[EpochStage],
    ) -> EpochResult:
        return EpochResult(
            belief_id=saved.belief_id,
            epoch=epoch,
            stage=EpochStage.PERSISTED,
            aggregate=consensus.aggregate,
            certainty=consensus.certainty,
            disagreement_entropy=consensus.disagreement_entropy,
            aggregation_method=consensus.method,
            participant_count=consensus.participant_count,
            redistribution_occurred=plan.redistribution_occurred,
            slashing_pool=plan.slashing_pool,
            winners=list(bts.winners),
            losers=list(bts.losers),
            bts_scores=dict(bts.scores),
            information_scores=dict(plan.information_scores),
            stake_deltas=dict(plan.deltas),
            individual_rewards=dict(plan.individual_rewards),
            individual_slashes=dict(plan.individual_slashes),
            updated_beliefs=dict(descent.changed),
            post_mirror_descent_aggregate=None if post_descent is None else post_descent.aggregate,
            post_mirror_descent_entropy=None if post_descent is None else post_descent.disagreement_entropy,
            archived=saved.status == BeliefStatus.ARCHIVED,
            stages=list(stages),
        )
