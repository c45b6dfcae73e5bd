"""
Protocol configuration.

All tunable thresholds of the decomposition, scoring and ledger layers in
one validated model. Defaults come from :mod:`beliefmesh.constants`.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from beliefmesh.constants import (
    BOUNDARY_CLUSTER_THRESHOLD,
    BOUNDARY_MASS_LIMIT,
    EPSILON_PROBABILITY,
    INFORMATION_SCORE_PERCENTILE,
    LOG_DIFF_SATURATION,
    MATRIX_STOCHASTIC_TOLERANCE,
    MAX_CONDITION_NUMBER,
    MIN_PARTICIPANTS,
    MIN_SUPPORT_DIVERSITY,
    QUALITY_THRESHOLD,
    QUALITY_WEIGHT_MATRIX_HEALTH,
    QUALITY_WEIGHT_PREDICTION_ACCURACY,
    RIDGE_EPSILON,
    SUBMISSION_SAFE_MAX,
    SUBMISSION_SAFE_MIN,
)

ENV_PREFIX = "BELIEFMESH_"


class ProtocolConfig(BaseModel):
    """Configuration for one deployment of the epoch pipeline."""

    epsilon: float = Field(default=EPSILON_PROBABILITY, gt=0.0, lt=1e-3)
    ridge: float = Field(default=RIDGE_EPSILON, gt=0.0, le=1.0)
    min_participants: int = Field(default=MIN_PARTICIPANTS, ge=2)
    boundary_threshold: float = Field(default=BOUNDARY_CLUSTER_THRESHOLD, ge=0.0, lt=0.5)
    boundary_mass_limit: float = Field(default=BOUNDARY_MASS_LIMIT, gt=0.0, le=1.0)
    min_support_diversity: float = Field(default=MIN_SUPPORT_DIVERSITY, ge=0.0, le=1.0)
    max_condition_number: float = Field(default=MAX_CONDITION_NUMBER, gt=1.0)
    stochastic_tolerance: float = Field(default=MATRIX_STOCHASTIC_TOLERANCE, gt=0.0)
    quality_threshold: float = Field(default=QUALITY_THRESHOLD, ge=0.0, le=1.0)
    quality_weight_matrix_health: float = Field(default=QUALITY_WEIGHT_MATRIX_HEALTH, ge=0.0, le=1.0)
    quality_weight_prediction_accuracy: float = Field(
        default=QUALITY_WEIGHT_PREDICTION_ACCURACY, ge=0.0, le=1.0
    )
    log_diff_saturation: float = Field(default=LOG_DIFF_SATURATION, gt=0.0, le=709.0)
    information_percentile: float = Field(default=INFORMATION_SCORE_PERCENTILE, gt=0.0, le=100.0)
    submission_min: float = Field(default=SUBMISSION_SAFE_MIN, ge=0.0, lt=0.5)
    submission_max: float = Field(default=SUBMISSION_SAFE_MAX, gt=0.5, le=1.0)
    fallback_to_weighted_average: bool = True

    @model_validator(mode="after")
    def _check_quality_weights(self) -> "ProtocolConfig":
        total = self.quality_weight_matrix_health + self.quality_weight_prediction_accuracy
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"Quality weights must sum to 1.0, got {total}")
        return self

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "ProtocolConfig":
        """Build a config from ``BELIEFMESH_*`` environment variables.

        ``BELIEFMESH_QUALITY_THRESHOLD=0.4`` overrides ``quality_threshold``.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, str] = {}
        for name in cls.model_fields:
            value = env.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls.model_validate(overrides)


_default_config: Optional[ProtocolConfig] = None


def get_config() -> ProtocolConfig:
    """Return the process-wide default config, built from the environment once."""
    global _default_config

    if _default_config is None:
        _default_config = ProtocolConfig.from_env()

    return _default_config
