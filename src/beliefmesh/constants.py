"""
Protocol constants for BeliefMesh.

Defaults for the decomposition, scoring and ledger layers. Runtime
overrides go through :class:`beliefmesh.config.ProtocolConfig`.
"""

# Probability arithmetic
EPSILON_PROBABILITY = 1e-10
LOG_DIFF_SATURATION = 700.0

# Belief decomposition
RIDGE_EPSILON = 1e-5
MIN_PARTICIPANTS = 2
MAX_CONDITION_NUMBER = 1000.0
MATRIX_STOCHASTIC_TOLERANCE = 1e-6
QUALITY_THRESHOLD = 0.3
QUALITY_WEIGHT_MATRIX_HEALTH = 0.7
QUALITY_WEIGHT_PREDICTION_ACCURACY = 0.3
BOUNDARY_CLUSTER_THRESHOLD = 0.02
BOUNDARY_MASS_LIMIT = 0.8
MIN_SUPPORT_DIVERSITY = 0.2
NEUTRAL_PROBABILITY = 0.5

# Submission intake
SUBMISSION_SAFE_MIN = 0.01
SUBMISSION_SAFE_MAX = 0.99

# Scoring and ledger
INFORMATION_SCORE_PERCENTILE = 90.0
MIN_LOCK_MICRO = 1
MICRO_UNITS_PER_TOKEN = 1_000_000
