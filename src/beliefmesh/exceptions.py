# Copyright (c) BeliefMesh Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for BeliefMesh.

All BeliefMesh exceptions inherit from BeliefMeshError and carry the
belief, epoch and agent they relate to, so a failure can be traced back
to the exact run that produced it.
"""

from __future__ import annotations

from typing import Any, Optional


class BeliefMeshError(Exception):
    """Base exception for all BeliefMesh errors."""

    def __init__(
        self,
        message: str,
        *,
        belief_id: Optional[str] = None,
        epoch: Optional[int] = None,
        agent_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.belief_id = belief_id
        self.epoch = epoch
        self.agent_id = agent_id
        self.context = dict(context or {})

    def with_scope(
        self,
        *,
        belief_id: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> "BeliefMeshError":
        """Fill in belief/epoch identifiers that were unknown where the error was raised."""
        if self.belief_id is None:
            self.belief_id = belief_id
        if self.epoch is None:
            self.epoch = epoch
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "belief_id": self.belief_id,
            "epoch": self.epoch,
            "agent_id": self.agent_id,
            "context": self.context,
        }

    def __str__(self) -> str:
        scope = [
            f"{name}={value}"
            for name, value in (
                ("belief_id", self.belief_id),
                ("epoch", self.epoch),
                ("agent_id", self.agent_id),
            )
            if value is not None
        ]
        if not scope:
            return self.message
        return f"{self.message} [{', '.join(scope)}]"


class ValidationError(BeliefMeshError):
    """Malformed or out-of-range input (weights, identifiers, probabilities)."""


class AggregationError(BeliefMeshError):
    """Business-rule failure of belief decomposition.

    Callers may fall back to the weighted-average aggregation.
    """


class InsufficientParticipantsError(AggregationError):
    """Fewer participants with nonzero weight than decomposition requires."""


class DegenerateSupportError(AggregationError):
    """Weighted beliefs cluster at the probability boundaries."""


class LowDecompositionQualityError(AggregationError):
    """Decomposition quality fell below the configured threshold."""


class NumericalInstabilityError(BeliefMeshError):
    """NaN, infinity or a singular quantity appeared in the math stages."""


class LedgerError(BeliefMeshError):
    """Errors related to stake redistribution."""


class ConservationError(LedgerError):
    """A redistribution did not net to zero."""


class NegativeStakeError(LedgerError):
    """Applying a delta would drive an agent's stake below zero."""


class StorageError(BeliefMeshError):
    """Errors related to storage backend operations."""


__all__ = [
    "BeliefMeshError",
    "ValidationError",
    "AggregationError",
    "InsufficientParticipantsError",
    "DegenerateSupportError",
    "LowDecompositionQualityError",
    "NumericalInstabilityError",
    "LedgerError",
    "ConservationError",
    "NegativeStakeError",
    "StorageError",
]
