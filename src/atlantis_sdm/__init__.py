"""
atlantis_sdm - Species distribution models for Atlantis initialization

Fits spatial Tweedie models to trawl-survey CPUE, predicts on a regular
grid, and aggregates the predictions into the polygon boxes of an Atlantis
ecosystem model to provide initial biomass per box.
"""

__version__ = "0.1.0"
__author__ = "atlantis-sdm Development Team"

# Core imports
from atlantis_sdm.core.config import (
    MeshConfig,
    ModelConfig,
    OptimizerSettings,
    OutputConfig,
    RunConfig,
    SurveyConfig,
)
from atlantis_sdm.core.exceptions import (
    ConfigurationError,
    JoinMismatchError,
    MeshError,
    SDMError,
    SurveyDataError,
)
from atlantis_sdm.core.survey import (
    SurveyData,
    clean_survey,
    read_survey,
    zero_fill,
)
from atlantis_sdm.core.fitting import (
    FittedModel,
    FormulaSpec,
    SpatialModelBackend,
    TweedieFieldBackend,
    fit_with_retry,
)
from atlantis_sdm.spatial.mesh import SpatialMesh, build_mesh
from atlantis_sdm.pipeline import GroupResult, run_group

__all__ = [
    # Version
    "__version__",
    "__author__",
    # Configuration
    "RunConfig",
    "SurveyConfig",
    "MeshConfig",
    "ModelConfig",
    "OptimizerSettings",
    "OutputConfig",
    # Errors
    "SDMError",
    "SurveyDataError",
    "MeshError",
    "ConfigurationError",
    "JoinMismatchError",
    # Survey
    "SurveyData",
    "read_survey",
    "clean_survey",
    "zero_fill",
    # Model
    "FormulaSpec",
    "FittedModel",
    "SpatialModelBackend",
    "TweedieFieldBackend",
    "fit_with_retry",
    "SpatialMesh",
    "build_mesh",
    # Pipeline
    "GroupResult",
    "run_group",
]
