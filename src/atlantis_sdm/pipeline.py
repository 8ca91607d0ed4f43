"""
Per-group species distribution model run.

One call of :func:`run_group` takes a cleaned survey, the Atlantis boxes and
a prediction grid through the whole linear sequence for one species/life
stage:

    zero-fill -> sampling unit -> projection -> covariate -> mesh
    -> fit (with one retry) -> grid prediction -> box aggregation
    -> biomass -> observation prediction -> skill metrics -> residuals
    -> CSV outputs (+ optional figures)

Groups are independent: nothing is shared between calls, so a failure in
one group never leaves state behind for the next.

Example
-------
>>> survey = clean_survey(read_survey("survey.xlsx"), config.survey)
>>> boxes = load_box_geometry("boxes.shp", crs=config.crs)
>>> grid = load_prediction_grid("grid.csv")
>>> result = run_group(survey, boxes, grid, config, coastline=land)
>>> result.validation.nrmse_percent
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import geopandas as gpd
import numpy as np
import pandas as pd

from atlantis_sdm.core.aggregation import (
    aggregate_by_box_year,
    assign_boxes,
    box_biomass_table,
    join_box_geometry,
    mask_boundary_boxes,
    summarize_boxes,
)
from atlantis_sdm.core.config import RunConfig
from atlantis_sdm.core.exceptions import ConfigurationError, SurveyDataError
from atlantis_sdm.core.fitting import (
    FittedModel,
    FormulaSpec,
    SpatialModelBackend,
    TweedieFieldBackend,
    fit_with_retry,
)
from atlantis_sdm.core.prediction import predict_grid, predict_observations
from atlantis_sdm.core.residuals import model_residuals
from atlantis_sdm.core.survey import (
    SurveyData,
    apply_sampling_unit,
    project_coordinates,
    zero_fill,
)
from atlantis_sdm.core.validation import ValidationRecord, validate_model
from atlantis_sdm.io.outputs import output_path, write_box_biomass, write_validation
from atlantis_sdm.logger import get_logger
from atlantis_sdm.spatial.gis_utils import attach_distance_covariate
from atlantis_sdm.spatial.mesh import SpatialMesh, build_mesh, mesh_summary

logger = get_logger(__name__)


@dataclass
class GroupResult:
    """Everything produced by one group run.

    Attributes
    ----------
    model : FittedModel
        Final fitted model (after the retry, if one ran)
    refitted : bool
        Whether the convergence retry ran
    observations : pd.DataFrame
        Zero-filled, projected observations used for fitting
    grid_predictions : pd.DataFrame
        Grid x year predictions with ``box_id``
    box_year : pd.DataFrame
        Mean estimate per (year, box)
    box_summary : pd.DataFrame
        All-years mean/CV per box, boundary boxes masked
    biomass_table : pd.DataFrame
        ``box_id``, ``cpue_kg_km2``, ``biomass_t``
    validation : ValidationRecord
        Convergence and skill metrics
    residuals : np.ndarray
        Randomized quantile residuals at the observations
    paths : dict
        Written files by kind
    """

    config: RunConfig
    model: FittedModel
    refitted: bool
    mesh: SpatialMesh
    observations: pd.DataFrame
    grid_predictions: pd.DataFrame
    joined: pd.DataFrame
    box_year: pd.DataFrame
    box_summary: pd.DataFrame
    biomass_table: pd.DataFrame
    validation: ValidationRecord
    residuals: np.ndarray
    paths: Dict[str, Path] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"GroupResult(group={self.config.group!r}, stage={self.config.stage!r}, "
            f"status={self.model.status}, refitted={self.refitted}, "
            f"boxes={len(self.biomass_table)})"
        )


def _ensure_covariate(
    df: pd.DataFrame,
    covariate: str,
    coastline: Optional[gpd.GeoDataFrame],
    scale_factor: float,
    what: str,
) -> pd.DataFrame:
    if covariate in df.columns:
        return df
    if coastline is None:
        raise SurveyDataError(
            f"{what} has no '{covariate}' column and no coastline was given "
            f"to compute distance from shore"
        )
    logger.info(f"Computing '{covariate}' for {what} from the coastline")
    return attach_distance_covariate(df, coastline, covariate, scale_factor)


def prepare_observations(
    survey: SurveyData,
    config: RunConfig,
    coastline: Optional[gpd.GeoDataFrame] = None,
) -> pd.DataFrame:
    """Zero-filled, projected observations of one group with the covariate.

    Parameters
    ----------
    survey : SurveyData
        Cleaned survey
    config : RunConfig
        Run configuration (group, stage, CRS, sampling unit)
    coastline : gpd.GeoDataFrame, optional
        Land polygons, needed only when the covariate must be computed

    Returns
    -------
    pd.DataFrame
        Observations with response, covariate, ``year``, ``X``/``Y`` (km)
        and ``obs_id``
    """
    obs = zero_fill(survey, config.species_name, config.stage_filter)
    obs = apply_sampling_unit(obs, config.survey.sampling_unit)
    obs = project_coordinates(obs, config.crs)
    obs = _ensure_covariate(
        obs, config.model.covariate, coastline, config.mesh.scale_factor, "survey"
    )
    return obs


def run_group(
    survey: SurveyData,
    boxes: gpd.GeoDataFrame,
    grid: pd.DataFrame,
    config: RunConfig,
    backend: Optional[SpatialModelBackend] = None,
    coastline: Optional[gpd.GeoDataFrame] = None,
    make_plots: bool = False,
    seed: Optional[int] = None,
) -> GroupResult:
    """Fit, predict, aggregate and validate one species/life-stage group.

    Parameters
    ----------
    survey : SurveyData
        Cleaned survey (all species)
    boxes : gpd.GeoDataFrame
        Box polygons with ``box_id``, ``area_m2``, ``boundary`` in
        ``config.crs``
    grid : pd.DataFrame
        Prediction grid with ``X``/``Y`` in km; ``box_id`` and the covariate
        are computed when absent
    config : RunConfig
        Run configuration
    backend : SpatialModelBackend, optional
        Fitting engine (default: :class:`TweedieFieldBackend`)
    coastline : gpd.GeoDataFrame, optional
        Land polygons in ``config.crs``; used for the distance covariate,
        the mesh barrier and figures
    make_plots : bool
        Write diagnostic figures
    seed : int, optional
        Seed for the randomized residuals

    Returns
    -------
    GroupResult

    Raises
    ------
    ConfigurationError
        If a barrier mesh is requested without a coastline
    JoinMismatchError
        On unmatched joins when the missing-join policy is "raise"
    """
    backend = backend or TweedieFieldBackend()
    policy = config.output.missing_join_policy
    scale = config.mesh.scale_factor
    logger.info(f"=== {config.group} ({config.stage}) ===")

    barrier = None
    if config.mesh.use_barrier:
        if coastline is None:
            raise ConfigurationError("use_barrier requires a coastline")
        barrier = coastline

    # Observations
    obs = prepare_observations(survey, config, coastline)

    # Mesh
    mesh = build_mesh(
        obs[["X", "Y"]].to_numpy(dtype=float),
        cutoff_km=config.mesh.cutoff_km,
        boundary_offset_km=config.mesh.boundary_offset_km,
        barrier=barrier,
        range_fraction=config.mesh.range_fraction,
        scale_factor=scale,
    )
    logger.debug(f"Mesh summary: {mesh_summary(mesh)}")

    # Fit
    formula = FormulaSpec.from_config(config.model)
    model, refitted = fit_with_retry(backend, obs, formula, mesh, config.model)

    # Grid prediction and box aggregation
    grid = _ensure_covariate(grid, config.model.covariate, coastline, scale, "grid")
    if "box_id" not in grid.columns:
        grid = assign_boxes(grid, boxes, coord_scale=scale, policy=policy)
    grid_pred = predict_grid(model, grid, policy=policy)

    box_year = aggregate_by_box_year(grid_pred, policy=policy)
    box_year = join_box_geometry(box_year, boxes, policy=policy)
    summary = mask_boundary_boxes(summarize_boxes(box_year), boxes)
    biomass = box_biomass_table(summary, boxes)

    # Validation
    joined, n_missing = predict_observations(model, obs, policy=policy)
    record = validate_model(
        model, joined, config.group, refitted=refitted, n_unmatched=n_missing
    )
    residuals = model_residuals(model, obs, rng=seed)

    # Outputs
    out = config.output
    paths = {
        "biomass": write_box_biomass(
            biomass, output_path(out.biomass_template, out.path, config.group, config.stage)
        ),
        "validation": write_validation(
            record, output_path(out.validation_template, out.path, config.group, config.stage)
        ),
    }

    result = GroupResult(
        config=config,
        model=model,
        refitted=refitted,
        mesh=mesh,
        observations=obs,
        grid_predictions=grid_pred,
        joined=joined,
        box_year=pd.DataFrame(box_year.drop(columns="geometry", errors="ignore")),
        box_summary=summary,
        biomass_table=biomass,
        validation=record,
        residuals=residuals,
        paths=paths,
    )

    if make_plots:
        paths.update(write_figures(result, boxes, coastline))

    logger.info(f"Finished {result!r}")
    return result


def write_figures(
    result: GroupResult,
    boxes: gpd.GeoDataFrame,
    coastline: Optional[gpd.GeoDataFrame] = None,
) -> Dict[str, Path]:
    """Write the diagnostic figures of a group run.

    Returns
    -------
    dict
        Figure name -> written path
    """
    # Imported here so runs without figures never touch matplotlib
    from atlantis_sdm.core.plotting import (
        plot_box_estimates,
        plot_mesh,
        plot_observed_vs_predicted,
        plot_residual_diagnostics,
        save_figure,
    )

    config = result.config
    out = config.output
    label = f"{config.group} ({config.stage})"

    figures = {
        "residuals": plot_residual_diagnostics(
            result.residuals, title=f"Randomized Quantile Residuals: {label}"
        ),
        "observed_vs_predicted": plot_observed_vs_predicted(
            result.joined, title=f"Observed vs Predicted: {label}"
        ),
        "mesh": plot_mesh(
            result.mesh,
            coastline=coastline,
            observations=result.observations,
            scale_factor=config.mesh.scale_factor,
        ),
        "mean_cpue": plot_box_estimates(
            boxes, result.box_summary, "mean_estimates", coastline=coastline,
            title=f"Mean CPUE (kg/km²): {label}",
        ),
        "cv": plot_box_estimates(
            boxes, result.box_summary, "cv_estimates", coastline=coastline,
            title=f"CV of yearly estimates: {label}", cmap='magma',
        ),
    }

    written = {}
    for name, fig in figures.items():
        path = output_path(
            out.figure_template, out.path, config.group, config.stage, name=name
        )
        (written[f"figure_{name}"],) = save_figure(fig, path, dpi=out.figure_dpi)
    return written
