"""
Stake ledger for BeliefMesh.

Bounded-loss, zero-sum stake redistribution and the locked-stake
weights it is measured against.
"""

from .redistribution import (
    RedistributionResult,
    StakeRedistributor,
    ZeroSumReport,
    split_pool,
    verify_zero_sum,
)
from .weights import LockedStakeWeightProvider, allocate

__all__ = [
    "RedistributionResult",
    "StakeRedistributor",
    "ZeroSumReport",
    "split_pool",
    "verify_zero_sum",
    "LockedStakeWeightProvider",
    "allocate",
]
