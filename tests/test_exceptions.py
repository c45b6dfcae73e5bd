"""Tests for the centralized exception hierarchy."""

import pytest

from beliefmesh.exceptions import (
    AggregationError,
    BeliefMeshError,
    ConservationError,
    DegenerateSupportError,
    InsufficientParticipantsError,
    LedgerError,
    LowDecompositionQualityError,
    NegativeStakeError,
    NumericalInstabilityError,
    StorageError,
    ValidationError,
)


class TestExceptionHierarchy:
    """Verify the exception class hierarchy is correct."""

    def test_base_exception_exists(self):
        assert issubclass(BeliefMeshError, Exception)

    @pytest.mark.parametrize(
        "exc_cls",
        [ValidationError, AggregationError, NumericalInstabilityError, LedgerError, StorageError],
    )
    def test_direct_subclasses(self, exc_cls):
        assert exc_cls.__bases__ == (BeliefMeshError,)

    @pytest.mark.parametrize(
        "exc_cls",
        [InsufficientParticipantsError, DegenerateSupportError, LowDecompositionQualityError],
    )
    def test_aggregation_failures_allow_fallback(self, exc_cls):
        assert issubclass(exc_cls, AggregationError)

    def test_numerical_instability_is_not_aggregation_error(self):
        assert not issubclass(NumericalInstabilityError, AggregationError)

    @pytest.mark.parametrize("exc_cls", [ConservationError, NegativeStakeError])
    def test_ledger_errors(self, exc_cls):
        assert issubclass(exc_cls, LedgerError)


class TestErrorScope:
    def test_message_only(self):
        err = ValidationError("bad weight")
        assert str(err) == "bad weight"
        assert err.message == "bad weight"

    def test_scope_in_str(self):
        err = StorageError("write failed", belief_id="b1", epoch=3, agent_id="a")
        assert str(err) == "write failed [belief_id=b1, epoch=3, agent_id=a]"

    def test_with_scope_fills_missing(self):
        err = InsufficientParticipantsError("too few", epoch=7)
        returned = err.with_scope(belief_id="b1", epoch=9)
        assert returned is err
        assert err.belief_id == "b1"
        assert err.epoch == 7

    def test_to_dict(self):
        err = NegativeStakeError("overdraft", agent_id="a", context={"delta": -5})
        assert err.to_dict() == {
            "error": "NegativeStakeError",
            "message": "overdraft",
            "belief_id": None,
            "epoch": None,
            "agent_id": "a",
            "context": {"delta": -5},
        }

    def test_context_is_copied(self):
        context = {"k": 1}
        err = LedgerError("x", context=context)
        context["k"] = 2
        assert err.context == {"k": 1}

    def test_catch_by_base(self):
        with pytest.raises(BeliefMeshError):
            raise DegenerateSupportError("clustered")
