"""
Core module for atlantis_sdm.

Contains survey processing, model fitting, prediction, aggregation and
validation.
"""

from atlantis_sdm.core.aggregation import (
    aggregate_by_box_year,
    assign_boxes,
    biomass_tonnes,
    box_biomass_table,
    join_box_geometry,
    mask_boundary_boxes,
    summarize_boxes,
)
from atlantis_sdm.core.fitting import (
    FittedModel,
    FormulaSpec,
    SpatialModelBackend,
    TweedieFieldBackend,
    fit_with_retry,
    needs_refit,
)
from atlantis_sdm.core.prediction import (
    back_transform,
    predict_grid,
    predict_observations,
    replicate_grid_by_year,
)
from atlantis_sdm.core.residuals import randomized_quantile_residuals, tweedie_cdf
from atlantis_sdm.core.survey import (
    SurveyData,
    apply_sampling_unit,
    clean_survey,
    project_coordinates,
    read_survey,
    zero_fill,
)
from atlantis_sdm.core.validation import (
    ValidationRecord,
    nrmse_percent,
    pearson_correlation,
    rmse,
    validate_model,
)

__all__ = [
    # Survey
    "SurveyData",
    "read_survey",
    "clean_survey",
    "zero_fill",
    "apply_sampling_unit",
    "project_coordinates",
    # Fitting
    "FormulaSpec",
    "FittedModel",
    "SpatialModelBackend",
    "TweedieFieldBackend",
    "fit_with_retry",
    "needs_refit",
    # Residuals
    "tweedie_cdf",
    "randomized_quantile_residuals",
    # Prediction
    "back_transform",
    "replicate_grid_by_year",
    "predict_grid",
    "predict_observations",
    # Aggregation
    "assign_boxes",
    "aggregate_by_box_year",
    "join_box_geometry",
    "summarize_boxes",
    "mask_boundary_boxes",
    "biomass_tonnes",
    "box_biomass_table",
    # Validation
    "ValidationRecord",
    "pearson_correlation",
    "rmse",
    "nrmse_percent",
    "validate_model",
]
