"""
Consensus math for BeliefMesh.

Probability primitives, the local expectations matrix, belief
decomposition with its weighted-average fallback, and mirror descent.
"""

from .aggregation import weighted_average
from .decomposition import BeliefDecomposer
from .matrix import LocalExpectationsMatrix, WeightedMoments
from .mirror_descent import AgentBeliefState, MirrorDescentResult, MirrorDescentUpdater, mirror_step
from .probability import Disagreement, binary_entropy, binary_kl, clamp_probability, disagreement
from .signals import ConsensusResult, LeaveOneOutResult, ParticipantSignal, signals_from_maps

__all__ = [
    "weighted_average",
    "BeliefDecomposer",
    "LocalExpectationsMatrix",
    "WeightedMoments",
    "AgentBeliefState",
    "MirrorDescentResult",
    "MirrorDescentUpdater",
    "mirror_step",
    "Disagreement",
    "binary_entropy",
    "binary_kl",
    "clamp_probability",
    "disagreement",
    "ConsensusResult",
    "LeaveOneOutResult",
    "ParticipantSignal",
    "signals_from_maps",
]
