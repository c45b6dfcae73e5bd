"""
Local expectations matrix.

A 2x2 row-stochastic matrix ``W`` mapping an agent's own belief to what
that agent expects peers to believe. Only one element per row is free;
the complement is derived, so rows sum to one by construction and an
invalid matrix cannot be built.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from beliefmesh.constants import (
    EPSILON_PROBABILITY,
    MATRIX_STOCHASTIC_TOLERANCE,
    MAX_CONDITION_NUMBER,
    RIDGE_EPSILON,
)
from beliefmesh.exceptions import NumericalInstabilityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightedMoments:
    """Weighted sufficient statistics of (belief, meta-prediction) pairs.

    Everything the matrix fit and the log-space aggregate need is a sum
    over participants, so moments of disjoint groups can be added.
    """

    total: float = 0.0
    sum_b: float = 0.0
    sum_m: float = 0.0
    sum_bb: float = 0.0
    sum_bm: float = 0.0
    sum_log_b: float = 0.0
    sum_log_not_b: float = 0.0

    @classmethod
    def of(cls, belief: float, meta: float, weight: float) -> "WeightedMoments":
        return cls(
            total=weight,
            sum_b=weight * belief,
            sum_m=weight * meta,
            sum_bb=weight * belief * belief,
            sum_bm=weight * belief * meta,
            sum_log_b=weight * math.log(belief),
            sum_log_not_b=weight * math.log(1.0 - belief),
        )

    @classmethod
    def from_arrays(
        cls,
        beliefs: np.ndarray,
        metas: np.ndarray,
        weights: np.ndarray,
    ) -> "WeightedMoments":
        if len(weights) == 0:
            return cls()
        return cls(*cls.columns(beliefs, metas, weights).sum(axis=0).tolist())

    @staticmethod
    def columns(beliefs: np.ndarray, metas: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """Per-participant moment contributions as an ``(n, 7)`` array."""
        return np.column_stack(
            [
                weights,
                weights * beliefs,
                weights * metas,
                weights * beliefs * beliefs,
                weights * beliefs * metas,
                weights * np.log(beliefs),
                weights * np.log1p(-beliefs),
            ]
        )

    def __add__(self, other: "WeightedMoments") -> "WeightedMoments":
        return WeightedMoments(
            self.total + other.total,
            self.sum_b + other.sum_b,
            self.sum_m + other.sum_m,
            self.sum_bb + other.sum_bb,
            self.sum_bm + other.sum_bm,
            self.sum_log_b + other.sum_log_b,
            self.sum_log_not_b + other.sum_log_not_b,
        )

    def normalized(self) -> "WeightedMoments":
        """Rescale so the weights sum to one."""
        if self.total <= 0.0:
            raise NumericalInstabilityError(
                "Cannot normalize moments with non-positive total weight",
                context={"total": self.total},
            )
        s = self.total
        return WeightedMoments(
            1.0,
            self.sum_b / s,
            self.sum_m / s,
            self.sum_bb / s,
            self.sum_bm / s,
            self.sum_log_b / s,
            self.sum_log_not_b / s,
        )

    @property
    def variance(self) -> float:
        return self.sum_bb - self.sum_b * self.sum_b / self.total

    @property
    def mean_meta(self) -> float:
        return self.sum_m / self.total


def _check_element(name: str, value: float) -> None:
    if not math.isfinite(value):
        raise NumericalInstabilityError(
            f"Matrix element {name} is not finite: {value}",
            context={name: value},
        )
    if value < 0.0 or value > 1.0:
        raise NumericalInstabilityError(
            f"Matrix element {name}={value} outside [0, 1]",
            context={name: value},
        )


@dataclass(frozen=True)
class LocalExpectationsMatrix:
    """Row-stochastic 2x2 matrix ``[[w11, 1 - w11], [w21, 1 - w21]]``.

    Row 0 is the expectation of an agent holding the proposition true,
    row 1 of an agent holding it false.
    """

    w11: float
    w21: float

    def __post_init__(self) -> None:
        _check_element("w11", self.w11)
        _check_element("w21", self.w21)

    @property
    def w12(self) -> float:
        return 1.0 - self.w11

    @property
    def w22(self) -> float:
        return 1.0 - self.w21

    @classmethod
    def fit(cls, moments: WeightedMoments, ridge: float = RIDGE_EPSILON) -> "LocalExpectationsMatrix":
        """Weighted least squares of meta-prediction on belief.

        The slope fills ``w11`` and the intercept ``w21``. ``ridge`` is
        added to the variance term of the normal equations so a zero-spread
        sample still has a solution. Both elements are clipped to ``[0, 1]``.
        """
        if moments.total <= 0.0:
            raise NumericalInstabilityError(
                "Cannot fit matrix without positive weight",
                context={"total": moments.total},
            )
        variance = moments.variance
        covariance = moments.sum_bm - moments.sum_b * moments.sum_m / moments.total
        slope = covariance / (variance + ridge)
        intercept = (moments.sum_m - slope * moments.sum_b) / moments.total
        if not (math.isfinite(slope) and math.isfinite(intercept)):
            raise NumericalInstabilityError(
                "Matrix regression produced non-finite coefficients",
                context={"slope": slope, "intercept": intercept, "variance": variance},
            )
        return cls(w11=min(1.0, max(0.0, slope)), w21=min(1.0, max(0.0, intercept)))

    def is_reducible(self, epsilon: float = EPSILON_PROBABILITY) -> bool:
        """True when both states are absorbing, i.e. ``W`` is the identity.

        A fit clipped to ``w11 = 1`` and ``w21 = 0`` has no unique stationary
        distribution.
        """
        return self.w21 + self.w12 < epsilon

    def stationary_prior(self, epsilon: float = EPSILON_PROBABILITY) -> float:
        """Left stationary distribution ``p`` with ``[p, 1 - p] W = [p, 1 - p]``."""
        denominator = self.w21 + self.w12
        if abs(denominator) < epsilon:
            raise NumericalInstabilityError(
                f"Cannot compute stationary distribution, denominator {denominator:.3e} is near zero",
                context={"w11": self.w11, "w21": self.w21},
            )
        return max(epsilon, min(1.0 - epsilon, self.w21 / denominator))

    def as_array(self) -> np.ndarray:
        return np.array([[self.w11, self.w12], [self.w21, self.w22]], dtype=float)

    def row_sums(self) -> tuple[float, float]:
        return (self.w11 + self.w12, self.w21 + self.w22)

    def is_row_stochastic(self, tolerance: float = MATRIX_STOCHASTIC_TOLERANCE) -> bool:
        return all(abs(s - 1.0) <= tolerance for s in self.row_sums())

    def eigenvalues(self) -> tuple[float, float]:
        """Eigenvalues ordered by decreasing magnitude."""
        values = np.linalg.eigvals(self.as_array())
        ordered = sorted((float(np.real(v)) for v in values), key=abs, reverse=True)
        return ordered[0], ordered[1]

    def condition_number(self, cap: float = MAX_CONDITION_NUMBER) -> float:
        """``|lambda1 / lambda2|``, capped. A vanishing ``lambda2`` gives the cap."""
        lambda1, lambda2 = self.eigenvalues()
        if abs(lambda2) < EPSILON_PROBABILITY:
            logger.warning("Near-zero eigenvalue in condition number: lambda2=%.3e", lambda2)
            return cap
        kappa = abs(lambda1 / lambda2)
        if kappa > cap:
            logger.warning("Condition number %.0f exceeds threshold %.0f", kappa, cap)
            return cap
        return kappa

    def predict_meta(self, belief: float) -> float:
        """Meta-prediction implied by *belief*: ``b * w11 + (1 - b) * w21``."""
        return belief * self.w11 + (1.0 - belief) * self.w21

    def prediction_error(self, beliefs: Iterable[float], metas: Iterable[float]) -> float:
        """Mean absolute error of :meth:`predict_meta` against reported metas."""
        errors = [abs(self.predict_meta(b) - m) for b, m in zip(beliefs, metas)]
        if not errors:
            return 0.0
        return sum(errors) / len(errors)

    def to_dict(self) -> dict[str, float]:
        return {"w11": self.w11, "w12": self.w12, "w21": self.w21, "w22": self.w22}
