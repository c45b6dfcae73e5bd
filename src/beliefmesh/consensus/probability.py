"""
Probability primitives.

Clamping, binary entropy, binary KL divergence and the Jensen-Shannon
disagreement used to derive certainty. Pure functions, no state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from beliefmesh.constants import EPSILON_PROBABILITY


def clamp_probability(p: float, epsilon: float = EPSILON_PROBABILITY) -> float:
    """Clamp *p* into ``[epsilon, 1 - epsilon]``."""
    return max(epsilon, min(1.0 - epsilon, p))


def binary_entropy(p: float) -> float:
    """Entropy of a Bernoulli(p) variable in bits. Zero at the boundaries."""
    if p <= 0.0 or p >= 1.0:
        return 0.0
    return -p * math.log2(p) - (1.0 - p) * math.log2(1.0 - p)


def binary_kl(p: float, q: float, epsilon: float = EPSILON_PROBABILITY) -> float:
    """KL(Bernoulli(p) || Bernoulli(q)) in nats.

    Both operands are clamped first so the result is always finite.
    """
    p = clamp_probability(p, epsilon)
    q = clamp_probability(q, epsilon)
    return p * math.log(p / q) + (1.0 - p) * math.log((1.0 - p) / (1.0 - q))


@dataclass(frozen=True)
class Disagreement:
    """Jensen-Shannon disagreement between agents and their aggregate."""

    entropy: float
    normalized_entropy: float
    certainty: float


def disagreement(
    beliefs: Sequence[float],
    weights: Sequence[float],
    aggregate: float,
) -> Disagreement:
    """Compute ``D = H(aggregate) - sum(w_i * H(p_i))`` and the derived certainty.

    ``D`` is floored at zero, normalized by capping at one, and
    ``certainty = 1 - normalized``.
    """
    h_avg = sum(w * binary_entropy(p) for p, w in zip(beliefs, weights))
    d_js = max(0.0, binary_entropy(aggregate) - h_avg)
    d_norm = min(1.0, d_js)
    return Disagreement(entropy=d_js, normalized_entropy=d_norm, certainty=1.0 - d_norm)
