"""Tests for the stake redistribution ledger."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from beliefmesh.exceptions import ValidationError
from beliefmesh.ledger.redistribution import StakeRedistributor, split_pool, verify_zero_sum
from beliefmesh.scoring.bts import BTSResult

MICRO = 1_000_000


def _bts(scores):
    return BTSResult(
        scores=scores,
        winners=[a for a, s in scores.items() if s > 0],
        losers=[a for a, s in scores.items() if s < 0],
        neutral=[a for a, s in scores.items() if s == 0],
    )


@pytest.fixture
def redistributor():
    return StakeRedistributor()


# ---------------------------------------------------------------------------
# Pool splitting
# ---------------------------------------------------------------------------


class TestSplitPool:
    def test_proportional(self):
        assert split_pool(300, {"a": 2.0, "b": 1.0}) == {"a": 200, "b": 100}

    def test_remainder_goes_to_first_agent_id_on_ties(self):
        assert split_pool(10, {"c": 1.0, "a": 1.0, "b": 1.0}) == {"c": 3, "a": 4, "b": 3}

    def test_largest_remainder_wins(self):
        shares = split_pool(10, {"a": 0.66, "b": 0.34})
        assert shares == {"a": 7, "b": 3}

    def test_empty_pool(self):
        assert split_pool(0, {"a": 1.0}) == {"a": 0}

    @given(
        pool=st.integers(min_value=0, max_value=10**9),
        claims=st.dictionaries(
            st.text(min_size=1, max_size=5),
            st.floats(min_value=1e-6, max_value=1e6),
            min_size=1,
            max_size=10,
        ),
    )
    @settings(max_examples=200)
    def test_always_sums_to_pool(self, pool, claims):
        assert sum(split_pool(pool, claims).values()) == pool


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class TestPlan:
    LOCKS = {"a": 500_000, "b": 300_000, "c": 200_000}
    STAKES = {"a": MICRO, "b": MICRO, "c": MICRO}

    def test_slash_and_reward(self, redistributor):
        plan = redistributor.plan("b1", 1, _bts({"a": 1.0, "b": -1.0, "c": 0.5}), self.LOCKS, self.STAKES)

        assert plan.redistribution_occurred
        assert plan.slashing_pool == 300_000
        assert plan.individual_slashes == {"b": 300_000}
        assert plan.individual_rewards == {"a": 250_000, "c": 50_000}
        assert plan.deltas == {"a": 250_000, "b": -300_000, "c": 50_000}
        assert plan.net_delta == 0

    def test_events_record_balances(self, redistributor):
        plan = redistributor.plan(
            "b1", 1, _bts({"a": 1.0, "b": -1.0}), self.LOCKS, self.STAKES, {"a": 0.6, "b": 0.4}
        )
        events = {e.agent_id: e for e in plan.events}
        assert events["b"].stake_before == MICRO
        assert events["b"].stake_after == MICRO - 300_000
        assert events["a"].normalized_weight == 0.6
        report = verify_zero_sum(plan.events)
        assert report.is_zero_sum
        assert report.total_rewards == report.total_slashes == 300_000

    def test_loss_capped_by_stake(self, redistributor):
        plan = redistributor.plan(
            "b1", 1, _bts({"a": 1.0, "b": -1.0}), self.LOCKS, {"a": MICRO, "b": 120_000}
        )
        assert plan.individual_slashes == {"b": 120_000}
        assert plan.deltas["b"] == -120_000

    def test_loss_capped_by_lock(self, redistributor):
        plan = redistributor.plan("b1", 1, _bts({"a": 0.1, "b": -5.0}), self.LOCKS, self.STAKES)
        assert plan.individual_slashes["b"] <= self.LOCKS["b"]

    def test_no_losers_no_redistribution(self, redistributor):
        plan = redistributor.plan("b1", 1, _bts({"a": 1.0, "c": 0.5}), self.LOCKS, self.STAKES)
        assert not plan.redistribution_occurred
        assert plan.deltas == {}
        assert plan.events == []

    def test_no_winners_no_redistribution(self, redistributor):
        plan = redistributor.plan("b1", 1, _bts({"b": -1.0, "c": -0.5}), self.LOCKS, self.STAKES)
        assert not plan.redistribution_occurred
        assert plan.slashing_pool == 0

    def test_missing_lock(self, redistributor):
        with pytest.raises(ValidationError, match="lock") as exc_info:
            redistributor.plan("b1", 1, _bts({"x": 1.0}), self.LOCKS, {"x": 10})
        assert exc_info.value.agent_id == "x"

    def test_negative_stake(self, redistributor):
        with pytest.raises(ValidationError, match="Negative stake"):
            redistributor.plan("b1", 1, _bts({"a": 1.0}), self.LOCKS, {"a": -5})

    @given(
        entries=st.lists(
            st.tuples(
                st.floats(min_value=-10, max_value=10),
                st.integers(min_value=0, max_value=10**7),
                st.integers(min_value=0, max_value=10**7),
            ),
            min_size=1,
            max_size=12,
        )
    )
    @settings(max_examples=200)
    def test_zero_sum_and_bounded_loss(self, entries):
        scores = {f"agent-{i}": s for i, (s, _, _) in enumerate(entries)}
        locks = {f"agent-{i}": lock for i, (_, lock, _) in enumerate(entries)}
        stakes = {f"agent-{i}": stake for i, (_, _, stake) in enumerate(entries)}

        plan = StakeRedistributor().plan("b1", 1, _bts(scores), locks, stakes)

        assert sum(plan.deltas.values()) == 0
        for agent_id, delta in plan.deltas.items():
            assert -delta <= locks[agent_id]
            assert stakes[agent_id] + delta >= 0
