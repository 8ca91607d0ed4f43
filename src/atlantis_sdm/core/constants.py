"""Physical, unit and numerical constants for species distribution modelling.

This module centralizes magic numbers used throughout atlantis_sdm, so that
unit conversions and tolerances are defined in exactly one place.
"""

import math

# ============================================================================
# UNIT CONVERSIONS
# ============================================================================

GRAMS_PER_KG = 1000.0  # Survey mass is usually recorded in grams
METERS_PER_KM = 1000.0  # Projected CRS units (m) per mesh/data unit (km)
M2_TO_KM2 = 1e-6  # Box areas are supplied in m²
KG_TO_TONNES = 1e-3  # Biomass is reported in metric tons

# ============================================================================
# CONVERGENCE AND TOLERANCE
# ============================================================================

# A fit whose largest absolute gradient component exceeds this is refitted
MAX_GRADIENT_TOLERANCE = 1e-3

# Optimizer budgets: (maxiter, maxfun, passes)
INITIAL_OPTIMIZER_MAXITER = 1000
INITIAL_OPTIMIZER_MAXFUN = 2000
INITIAL_OPTIMIZER_PASSES = 1

RETRY_OPTIMIZER_MAXITER = 5000
RETRY_OPTIMIZER_MAXFUN = 10000
RETRY_OPTIMIZER_PASSES = 2

# L-BFGS-B stopping rules on the unscaled objective
LBFGS_FTOL = 1e-12
LBFGS_GTOL = 1e-6

# Randomized quantile residuals are clipped to (EPS, 1 - EPS) before qnorm
RESIDUAL_UNIFORM_EPS = 1e-10

# ============================================================================
# MODEL DEFAULTS
# ============================================================================

DEFAULT_MESH_CUTOFF_KM = 10.0
DEFAULT_SMOOTH_KNOTS = 3
DEFAULT_TWEEDIE_POWER = 1.5
DEFAULT_FIELD_PENALTY = 1.0

# Prior range of the spatial field when not configured, as a fraction of the
# longest side of the mesh bounding box
DEFAULT_FIELD_RANGE_FRACTION = 0.3

# Barrier model defaults
DEFAULT_RANGE_FRACTION = 0.2
DEFAULT_BARRIER_SCALE_FACTOR = METERS_PER_KM

# Matérn (smoothness 1) practical range = sqrt(8) / kappa
MATERN_PRACTICAL_RANGE_FACTOR = math.sqrt(8.0)

# Empirical semivariogram binning
VARIOGRAM_N_BINS = 15
VARIOGRAM_MAX_LAG_FRACTION = 0.5  # Of the maximum pairwise node distance

# ============================================================================
# DATA QUALITY
# ============================================================================

# Row loss fraction above which dropped positions are reported as a warning
DROPPED_POSITION_WARN_FRACTION = 0.0015
