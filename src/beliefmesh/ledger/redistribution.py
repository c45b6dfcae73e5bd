"""
Stake Redistribution Ledger.

Turns BTS scores into an integer, zero-sum stake transfer:

- ``r_i = information_score_i * lock_i`` drives each agent's delta,
- a loser gives up ``floor(min(|r_i|, lock_i, stake_i))``, so nobody loses
  more than it locked on the belief or more than it holds,
- the losses form the slashing pool, which is split among winners in
  proportion to ``r_i`` with largest-remainder rounding.

Gains therefore sum to the pool exactly and every event nets to zero.
Nothing moves unless there is at least one winner and one loser.
"""

from __future__ import annotations

import logging
import math
from fractions import Fraction
from typing import Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from beliefmesh.constants import INFORMATION_SCORE_PERCENTILE
from beliefmesh.exceptions import ConservationError, NegativeStakeError, ValidationError
from beliefmesh.models import RedistributionEvent
from beliefmesh.scoring.bts import BTSResult, information_scores

logger = logging.getLogger(__name__)


class RedistributionResult(BaseModel):
    """Planned stake movement for one (belief, epoch)."""

    belief_id: str
    epoch: int
    redistribution_occurred: bool = False
    slashing_pool: int = Field(default=0, ge=0)
    information_scores: dict[str, float] = Field(default_factory=dict)
    deltas: dict[str, int] = Field(default_factory=dict)
    individual_rewards: dict[str, int] = Field(default_factory=dict)
    individual_slashes: dict[str, int] = Field(default_factory=dict)
    events: list[RedistributionEvent] = Field(default_factory=list)

    @property
    def net_delta(self) -> int:
        return sum(self.deltas.values())


class ZeroSumReport(BaseModel):
    total_rewards: int
    total_slashes: int
    net_delta: int
    event_count: int

    @property
    def is_zero_sum(self) -> bool:
        return self.net_delta == 0


def verify_zero_sum(events: Iterable[RedistributionEvent]) -> ZeroSumReport:
    """Summarize recorded events. Rewards and slashes are reported as magnitudes."""
    events = list(events)
    rewards = sum(e.stake_delta for e in events if e.stake_delta > 0)
    slashes = -sum(e.stake_delta for e in events if e.stake_delta < 0)
    return ZeroSumReport(
        total_rewards=rewards,
        total_slashes=slashes,
        net_delta=rewards - slashes,
        event_count=len(events),
    )


def split_pool(pool: int, claims: Mapping[str, float]) -> dict[str, int]:
    """Split integer *pool* in proportion to positive *claims*.

    Largest-remainder method over exact rationals: the result always sums
    to *pool*. Ties on the remainder go to the agent id that sorts first.
    """
    if pool <= 0 or not claims:
        return {agent_id: 0 for agent_id in claims}
    exact = {agent_id: Fraction(claim) for agent_id, claim in claims.items()}
    total = sum(exact.values())
    if total <= 0:
        raise ValidationError("Cannot split a pool over non-positive claims")

    shares: dict[str, int] = {}
    remainders: list[tuple[Fraction, str]] = []
    for agent_id, claim in exact.items():
        quota = pool * claim / total
        whole = math.floor(quota)
        shares[agent_id] = whole
        remainders.append((quota - whole, agent_id))

    leftover = pool - sum(shares.values())
    for _, agent_id in sorted(remainders, key=lambda item: (-item[0], item[1]))[:leftover]:
        shares[agent_id] += 1
    return shares


class StakeRedistributor:
    """Plans redistributions. Applying them is the stake store's job."""

    def __init__(self, percentile: float = INFORMATION_SCORE_PERCENTILE) -> None:
        self.percentile = percentile

    def plan(
        self,
        belief_id: str,
        epoch: int,
        bts: BTSResult,
        locks: Mapping[str, int],
        stakes: Mapping[str, int],
        weights: Optional[Mapping[str, float]] = None,
    ) -> RedistributionResult:
        """Compute deltas and ledger events for every scored agent.

        Raises:
            ValidationError: a scored agent has no lock or stake, or a
                negative one.
            ConservationError: the deltas do not net to zero.
            NegativeStakeError: a delta would leave a negative balance.
        """
        weights = weights or {}
        for agent_id in bts.scores:
            for name, source in (("lock", locks), ("stake", stakes)):
                if agent_id not in source:
                    raise ValidationError(
                        f"Missing {name} for scored agent",
                        belief_id=belief_id,
                        epoch=epoch,
                        agent_id=agent_id,
                    )
                if source[agent_id] < 0:
                    raise ValidationError(
                        f"Negative {name}: {source[agent_id]}",
                        belief_id=belief_id,
                        epoch=epoch,
                        agent_id=agent_id,
                    )

        info = information_scores(bts.scores, self.percentile)
        raw = {agent_id: info[agent_id] * locks[agent_id] for agent_id in bts.scores}

        slashes: dict[str, int] = {}
        for agent_id in bts.losers:
            loss = math.floor(min(abs(raw[agent_id]), locks[agent_id], stakes[agent_id]))
            if loss > 0:
                slashes[agent_id] = loss
        claims = {agent_id: raw[agent_id] for agent_id in bts.winners if raw[agent_id] > 0}
        pool = sum(slashes.values())

        if not claims or not slashes:
            logger.info(
                "No redistribution for belief %s epoch %s: winners=%d losers=%d pool=%d",
                belief_id,
                epoch,
                len(claims),
                len(slashes),
                pool,
            )
            return RedistributionResult(belief_id=belief_id, epoch=epoch, information_scores=info)

        rewards = split_pool(pool, claims)
        deltas = {agent_id: rewards.get(agent_id, 0) - slashes.get(agent_id, 0) for agent_id in bts.scores}

        net = sum(deltas.values())
        if net != 0:
            raise ConservationError(
                f"Redistribution does not net to zero: {net}",
                belief_id=belief_id,
                epoch=epoch,
                context={"rewards": sum(rewards.values()), "slashes": pool},
            )

        events: list[RedistributionEvent] = []
        for agent_id, delta in deltas.items():
            after = stakes[agent_id] + delta
            if after < 0:
                raise NegativeStakeError(
                    f"Delta {delta} would leave stake {after}",
                    belief_id=belief_id,
                    epoch=epoch,
                    agent_id=agent_id,
                )
            events.append(
                RedistributionEvent(
                    belief_id=belief_id,
                    epoch=epoch,
                    agent_id=agent_id,
                    information_score=info[agent_id],
                    lock=locks[agent_id],
                    normalized_weight=min(1.0, max(0.0, weights.get(agent_id, 0.0))),
                    stake_before=stakes[agent_id],
                    stake_delta=delta,
                    stake_after=after,
                )
            )

        logger.info(
            "Redistribution for belief %s epoch %s: pool=%d winners=%d losers=%d",
            belief_id,
            epoch,
            pool,
            len(rewards),
            len(slashes),
        )
        return RedistributionResult(
            belief_id=belief_id,
            epoch=epoch,
            redistribution_occurred=True,
            slashing_pool=pool,
            information_scores=info,
            deltas=deltas,
            individual_rewards=rewards,
            individual_slashes=slashes,
            events=events,
        )
