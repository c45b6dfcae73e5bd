"""
Observability for BeliefMesh.

Prometheus metrics for the epoch pipeline.
"""

from .metrics import EpochMetrics

__all__ = ["EpochMetrics"]
