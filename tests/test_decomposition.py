"""Tests for belief decomposition and leave-one-out estimates."""

import logging

import pytest
from hypothesis import given, reject, settings
from hypothesis import strategies as st

from beliefmesh.config import ProtocolConfig
from beliefmesh.consensus.decomposition import BeliefDecomposer
from beliefmesh.consensus.signals import ParticipantSignal, signals_from_maps
from beliefmesh.exceptions import (
    AggregationError,
    DegenerateSupportError,
    InsufficientParticipantsError,
    LowDecompositionQualityError,
    NumericalInstabilityError,
    ValidationError,
)


@pytest.fixture
def decomposer():
    return BeliefDecomposer(ProtocolConfig())


def _signals(beliefs, metas, weights=None):
    agent_ids = [f"agent-{i}" for i in range(len(beliefs))]
    weights = weights or [1.0 / len(beliefs)] * len(beliefs)
    return [ParticipantSignal(a, b, m, w) for a, b, m, w in zip(agent_ids, beliefs, metas, weights)]


# ---------------------------------------------------------------------------
# Core decomposition
# ---------------------------------------------------------------------------


class TestDecompose:
    def test_two_agent_example(self, decomposer):
        signals = _signals([0.8, 0.4], [0.7, 0.5])
        result = decomposer.decompose(signals, belief_id="b1", epoch=1)

        assert 0.4 < result.aggregate < 0.8
        assert result.aggregate == pytest.approx(0.7313, abs=1e-3)
        assert result.prior == pytest.approx(0.375, abs=1e-3)
        assert result.method == "decomposition"
        assert result.matrix.is_row_stochastic()
        assert 0.0 <= result.quality <= 1.0
        assert result.participant_count == 2

    def test_deterministic(self, decomposer):
        signals = _signals([0.8, 0.4], [0.7, 0.5])
        first = decomposer.decompose(signals)
        second = decomposer.decompose(signals)
        assert first.aggregate == second.aggregate
        assert first.leave_one_out_aggregates == second.leave_one_out_aggregates

    def test_identical_beliefs_return_shared_value(self, decomposer):
        result = decomposer.decompose(_signals([0.6, 0.6, 0.6], [0.5, 0.6, 0.7]))
        assert result.aggregate == pytest.approx(0.6)
        assert result.certainty > 0.95

    def test_boundary_cluster_rejected(self, decomposer):
        with pytest.raises(DegenerateSupportError) as exc_info:
            decomposer.decompose(_signals([0.001, 0.002, 0.001], [0.5, 0.5, 0.5]), belief_id="b1", epoch=3)
        assert exc_info.value.belief_id == "b1"
        assert exc_info.value.epoch == 3

    def test_single_participant_rejected(self, decomposer):
        with pytest.raises(InsufficientParticipantsError):
            decomposer.decompose(_signals([0.7], [0.5]))

    def test_zero_weight_participants_do_not_count(self, decomposer):
        signals = _signals([0.7, 0.3], [0.5, 0.5], [1.0, 0.0])
        with pytest.raises(InsufficientParticipantsError):
            decomposer.decompose(signals)

    def test_low_quality_rejected(self):
        strict = BeliefDecomposer(ProtocolConfig(quality_threshold=0.99))
        with pytest.raises(LowDecompositionQualityError) as exc_info:
            strict.decompose(_signals([0.8, 0.4], [0.7, 0.5]))
        assert "quality" in exc_info.value.context

    def test_identity_fit_is_low_quality(self, decomposer):
        with pytest.raises(LowDecompositionQualityError) as exc_info:
            decomposer.decompose(_signals([0.3, 0.7], [0.2, 0.8]), belief_id="b1", epoch=2)
        assert exc_info.value.context == {"w11": 1.0, "w21": 0.0}
        assert exc_info.value.belief_id == "b1"
        assert exc_info.value.epoch == 2

    def test_aggregation_errors_share_base(self):
        assert issubclass(DegenerateSupportError, AggregationError)
        assert issubclass(LowDecompositionQualityError, AggregationError)
        assert not issubclass(NumericalInstabilityError, AggregationError)

    def test_low_diversity_warns(self, decomposer, caplog):
        with caplog.at_level(logging.WARNING, logger="beliefmesh.consensus.decomposition"):
            decomposer.decompose(_signals([0.5, 0.55], [0.5, 0.5]))
        assert "Low belief diversity" in caplog.text

    def test_to_dict_includes_matrix(self, decomposer):
        data = decomposer.decompose(_signals([0.8, 0.4], [0.7, 0.5])).to_dict()
        assert data["method"] == "decomposition"
        assert set(data["local_expectations_matrix"]) == {"w11", "w12", "w21", "w22"}
        assert 0.0 < data["common_prior"] < 1.0


class TestDecomposeValidation:
    def test_weights_must_sum_to_one(self, decomposer):
        with pytest.raises(ValidationError, match="sum to 1.0"):
            decomposer.decompose(_signals([0.7, 0.3], [0.5, 0.5], [0.5, 0.2]))

    def test_negative_weight_rejected(self, decomposer):
        with pytest.raises(ValidationError) as exc_info:
            decomposer.decompose(_signals([0.7, 0.3], [0.5, 0.5], [1.5, -0.5]))
        assert exc_info.value.agent_id == "agent-1"

    def test_nan_weight_rejected(self, decomposer):
        with pytest.raises(ValidationError):
            decomposer.decompose(_signals([0.7, 0.3], [0.5, 0.5], [float("nan"), 0.5]))

    def test_probability_out_of_range(self, decomposer):
        with pytest.raises(ValidationError):
            decomposer.decompose(_signals([1.2, 0.3], [0.5, 0.5]))

    def test_duplicate_agent_rejected(self, decomposer):
        signals = [ParticipantSignal("a", 0.7, 0.5, 0.5), ParticipantSignal("a", 0.3, 0.5, 0.5)]
        with pytest.raises(ValidationError, match="Duplicate"):
            decomposer.decompose(signals)

    def test_empty_weights_rejected(self, decomposer):
        with pytest.raises(ValidationError):
            decomposer.decompose([])

    def test_boundary_values_are_clamped(self, decomposer, caplog):
        with caplog.at_level(logging.WARNING):
            result = decomposer.decompose(_signals([1.0, 0.4, 0.6], [0.6, 0.5, 0.5]))
        assert result.beliefs["agent-0"] < 1.0
        assert "Clamped" in caplog.text

    def test_signals_from_maps_requires_matching_agents(self):
        with pytest.raises(ValidationError):
            signals_from_maps({"a": 0.5, "b": 0.4}, {"a": 0.5}, {"a": 0.5, "b": 0.5})


# ---------------------------------------------------------------------------
# Leave-one-out
# ---------------------------------------------------------------------------


class TestLeaveOneOut:
    BELIEFS = [0.3, 0.55, 0.7, 0.8]
    METAS = [0.4, 0.5, 0.6, 0.65]

    def test_every_participant_gets_an_estimate(self, decomposer):
        result = decomposer.decompose(_signals(self.BELIEFS, self.METAS))
        assert set(result.leave_one_out) == {f"agent-{i}" for i in range(4)}
        for loo in result.leave_one_out.values():
            assert 0.0 < loo.aggregate < 1.0
            assert loo.participant_count == 3

    def test_estimate_ignores_excluded_agent(self, decomposer):
        original = decomposer.decompose(_signals(self.BELIEFS, self.METAS))
        changed = decomposer.decompose(_signals([0.45] + self.BELIEFS[1:], [0.35] + self.METAS[1:]))

        assert changed.leave_one_out["agent-0"] == original.leave_one_out["agent-0"]
        assert changed.leave_one_out["agent-1"] != original.leave_one_out["agent-1"]

    def test_meta_aggregate_is_peer_mean(self, decomposer):
        result = decomposer.decompose(_signals(self.BELIEFS, self.METAS))
        assert result.leave_one_out["agent-0"].meta_aggregate == pytest.approx((0.5 + 0.6 + 0.65) / 3)

    def test_two_participants_give_neutral(self, decomposer):
        result = decomposer.decompose(_signals([0.8, 0.4], [0.7, 0.5]))
        for loo in result.leave_one_out.values():
            assert loo.aggregate == 0.5
            assert loo.meta_aggregate == 0.5

    def test_unanimous_peers(self, decomposer):
        result = decomposer.decompose(_signals([0.9, 0.6, 0.6, 0.6], [0.5, 0.5, 0.6, 0.7]))
        assert result.leave_one_out["agent-0"].aggregate == pytest.approx(0.6)

    def test_standalone_matches_batch(self, decomposer):
        batch = decomposer.decompose(_signals(self.BELIEFS, self.METAS))
        signals = _signals(self.BELIEFS, self.METAS, [0.0, 1.0, 1.0, 1.0])
        single = decomposer.leave_one_out(signals, "agent-0")
        assert single.aggregate == pytest.approx(batch.leave_one_out["agent-0"].aggregate)
        assert single.meta_aggregate == pytest.approx(batch.leave_one_out["agent-0"].meta_aggregate)

    def test_standalone_ignores_excluded_values(self, decomposer):
        first = _signals(self.BELIEFS, self.METAS, [0.0, 0.2, 0.3, 0.5])
        second = _signals([0.99] + self.BELIEFS[1:], [0.01] + self.METAS[1:], [0.0, 0.2, 0.3, 0.5])
        assert decomposer.leave_one_out(first, "agent-0") == decomposer.leave_one_out(second, "agent-0")

    def test_excluded_agent_must_not_carry_weight(self, decomposer):
        with pytest.raises(ValidationError, match="must not carry weight"):
            decomposer.leave_one_out(_signals(self.BELIEFS, self.METAS), "agent-0", belief_id="b1")

    def test_standalone_neutral_with_one_peer(self, decomposer):
        result = decomposer.leave_one_out(_signals([0.7, 0.4], [0.5, 0.5], [0.0, 1.0]), "agent-0")
        assert result.aggregate == 0.5
        assert result.participant_count == 1

    def test_identity_fit_in_batch_gives_neutral(self, decomposer):
        result = decomposer.decompose(_signals([0.9, 0.3, 0.7], [0.3, 0.2, 0.8]))
        assert result.method == "decomposition"
        loo = result.leave_one_out["agent-0"]
        assert loo.aggregate == 0.5
        assert loo.participant_count == 2
        assert result.leave_one_out["agent-1"].aggregate != 0.5

    def test_identity_fit_gives_neutral(self, decomposer):
        signals = _signals([0.5, 0.3, 0.7], [0.5, 0.2, 0.8], [0.0, 0.5, 0.5])
        result = decomposer.leave_one_out(signals, "agent-0")
        assert result.aggregate == 0.5
        assert result.meta_aggregate == 0.5
        assert result.participant_count == 2

    def test_no_remaining_weight(self, decomposer):
        with pytest.raises(ValidationError, match="zero"):
            decomposer.leave_one_out(_signals([0.7, 0.4], [0.5, 0.5], [0.0, 0.0]), "agent-0")

    def test_empty_exclude_id(self, decomposer):
        with pytest.raises(ValidationError):
            decomposer.leave_one_out(_signals([0.7, 0.4], [0.5, 0.5]), "")


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


interior = st.floats(min_value=0.05, max_value=0.95, allow_nan=False, allow_infinity=False)


class TestDecompositionProperties:
    @given(
        data=st.lists(
            st.tuples(interior, interior, st.floats(min_value=0.1, max_value=10.0)),
            min_size=2,
            max_size=8,
        )
    )
    @settings(max_examples=150, deadline=None)
    def test_outputs_are_valid(self, data):
        decomposer = BeliefDecomposer(ProtocolConfig())
        total = sum(w for _, _, w in data)
        signals = [
            ParticipantSignal(f"agent-{i}", b, m, w / total) for i, (b, m, w) in enumerate(data)
        ]
        try:
            result = decomposer.decompose(signals)
        except AggregationError:
            reject()

        assert 0.0 < result.aggregate < 1.0
        assert 0.0 <= result.quality <= 1.0
        assert 0.0 <= result.certainty <= 1.0
        assert result.matrix.is_row_stochastic(1e-6)
        for loo in result.leave_one_out.values():
            assert 0.0 < loo.aggregate < 1.0
