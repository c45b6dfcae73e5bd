"""
Scoring for BeliefMesh.

Proper scoring of agent submissions against peer-only references.
"""

from .bts import BTSResult, BTSScorer, bts_score, information_scores

__all__ = [
    "BTSResult",
    "BTSScorer",
    "bts_score",
    "information_scores",
]
