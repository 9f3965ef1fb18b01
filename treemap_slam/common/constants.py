"""
Treemap backend constants only.

=============================================================================
CONVENTION QUICK REFERENCE
=============================================================================

FEATURES:
  A feature is a scalar random variable with a dense integer id >= 0.
  Multi-dimensional quantities (poses, landmarks) occupy a block of
  consecutive ids reserved in one call.

NODES:
  Nodes live in an arena and are addressed by their integer index.
  Internal nodes have exactly two children, leaves hold one factor.

COSTS:
  update cost of a node     = polynomial(number of features at the node)
  worst-case update cost    = update cost + max(worst-case cost of children)
  Units are seconds of the calibrated polynomial; only comparisons matter.
=============================================================================
"""

# =============================================================================
# FEATURE REGISTRY
# =============================================================================

# Free lists are kept for blocks of up to this many consecutive features.
# Larger requests always append fresh ids.
MAX_FEATURE_BLOCK_SIZE = 16

# =============================================================================
# KL OPTIMIZER DEFAULTS
# =============================================================================

# Trial moves spent per call of Treemap.optimize()
NR_OF_MOVES_PER_STEP_DEFAULT = 4

# Unsuccessful moves tried before a run is rolled back
MAX_NR_OF_UNSUCCESSFUL_MOVES_DEFAULT = 3

# A run gives up early when the HTP statistic says the chance of still
# finding an improvement is below this (0.0 disables the rule)
MIN_SUCCESS_PROBABILITY_DEFAULT = 0.0

# The textual optimizer report stops growing at this many characters
REPORT_MAX_LENGTH_DEFAULT = 200

# Improvement must be larger than this to commit a run
COST_TOLERANCE_DEFAULT = 0.0

# =============================================================================
# UPDATE COST CALIBRATION
# =============================================================================

# Time (seconds) to build a Gaussian over n features, fitted as
#   c0 + c1*n + c2*n^2 + c3*n^3
UPDATE_COST_COEFFICIENTS_DEFAULT = (1.543037e-6, 1.154801e-6, 44.716e-9, 1.799e-9)

# =============================================================================
# NUMERICS
# =============================================================================

# Absolute tolerance used by assert_estimate against the dense solution
ESTIMATE_CHECK_TOLERANCE = 1e-6
