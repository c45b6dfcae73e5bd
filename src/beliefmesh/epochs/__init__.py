"""
Epoch processing for BeliefMesh.

Submission intake and the orchestrator that runs a belief through one
epoch of decomposition, scoring and redistribution.
"""

from .orchestrator import EpochOrchestrator, EpochResult, EpochStage
from .submissions import SubmissionReceipt, SubmissionService, latest_submissions

__all__ = [
    "EpochOrchestrator",
    "EpochResult",
    "EpochStage",
    "SubmissionReceipt",
    "SubmissionService",
    "latest_submissions",
]
