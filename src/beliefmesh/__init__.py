"""
BeliefMesh - Consensus Core for Belief Markets

Decomposition · Truth Serum · Stake Redistribution

Agents submit a probability and a prediction of what their peers believe.
Each epoch, BeliefMesh fuses the submissions into one aggregate, scores
every submitter against its peers with the Bayesian Truth Serum, and
moves locked stake from uninformative to informative agents without
creating or destroying any.

Version: 0.1.0
"""

__version__ = "0.1.0"

# Consensus math
from .consensus import (
    BeliefDecomposer,
    ConsensusResult,
    LeaveOneOutResult,
    LocalExpectationsMatrix,
    MirrorDescentUpdater,
    ParticipantSignal,
    weighted_average,
)

# Scoring and ledger
from .scoring import BTSResult, BTSScorer
from .ledger import LockedStakeWeightProvider, RedistributionResult, StakeRedistributor

# Epoch pipeline
from .epochs import EpochOrchestrator, EpochResult, EpochStage, SubmissionService

from .config import ProtocolConfig
from .models import Agent, Belief, BeliefStatus, EpochRecord, RedistributionEvent, Submission

# Exceptions
from .exceptions import (
    BeliefMeshError,
    ValidationError,
    AggregationError,
    InsufficientParticipantsError,
    DegenerateSupportError,
    LowDecompositionQualityError,
    NumericalInstabilityError,
    LedgerError,
    ConservationError,
    NegativeStakeError,
    StorageError,
)

__all__ = [
    "__version__",
    "BeliefDecomposer",
    "ConsensusResult",
    "LeaveOneOutResult",
    "LocalExpectationsMatrix",
    "MirrorDescentUpdater",
    "ParticipantSignal",
    "weighted_average",
    "BTSResult",
    "BTSScorer",
    "LockedStakeWeightProvider",
    "RedistributionResult",
    "StakeRedistributor",
    "EpochOrchestrator",
    "EpochResult",
    "EpochStage",
    "SubmissionService",
    "ProtocolConfig",
    "Agent",
    "Belief",
    "BeliefStatus",
    "EpochRecord",
    "RedistributionEvent",
    "Submission",
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
