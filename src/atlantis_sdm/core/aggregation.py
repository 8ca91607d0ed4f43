"""
Aggregation of grid predictions into Atlantis boxes.

Grid predictions are averaged per (year, box), summarized across years per
box (mean and coefficient of variation), converted to biomass with the box
area, and boundary boxes are masked for reporting.

Units: CPUE in kg/km², box area in m², biomass in metric tons.
"""

from __future__ import annotations

from typing import Union

import geopandas as gpd
import numpy as np
import pandas as pd

from atlantis_sdm.core.constants import KG_TO_TONNES, M2_TO_KM2
from atlantis_sdm.core.prediction import report_unmatched
from atlantis_sdm.logger import get_logger

logger = get_logger(__name__)


def biomass_tonnes(cpue_kg_km2, area_m2) -> Union[float, np.ndarray]:
    """Biomass (t) from CPUE (kg/km²) and area (m²).

    biomass = cpue * area * 1e-6 (m² -> km²) * 1e-3 (kg -> t), so 100 kg/km²
    over 2,000,000 m² is 0.2 t.
    """
    result = np.asarray(cpue_kg_km2, dtype=float) * np.asarray(area_m2, dtype=float)
    result = result * M2_TO_KM2 * KG_TO_TONNES
    return float(result) if result.ndim == 0 else result


def assign_boxes(
    points: pd.DataFrame,
    boxes: gpd.GeoDataFrame,
    x_col: str = "X",
    y_col: str = "Y",
    coord_scale: float = 1000.0,
    policy: str = "warn",
) -> pd.DataFrame:
    """Attach a ``box_id`` to each point by point-in-polygon join.

    Parameters
    ----------
    points : pd.DataFrame
        Points with coordinates in km
    boxes : gpd.GeoDataFrame
        Box polygons in the projected CRS (metres), with ``box_id``
    coord_scale : float
        Projection units per coordinate unit (1000 for km -> m)
    policy : str
        Missing-join policy for points that fall in no box

    Returns
    -------
    pd.DataFrame
        ``points`` with ``box_id`` (NaN for points outside every box)
    """
    geometry = gpd.points_from_xy(
        points[x_col].to_numpy() * coord_scale, points[y_col].to_numpy() * coord_scale
    )
    pts = gpd.GeoDataFrame(
        {"_row": np.arange(len(points))}, geometry=geometry, crs=boxes.crs
    )
    joined = gpd.sjoin(pts, boxes[["box_id", "geometry"]], how="left", predicate="within")
    # A point on a shared edge may match two boxes; keep the first
    joined = joined.drop_duplicates(subset="_row", keep="first").sort_values("_row")

    out = points.reset_index(drop=True).copy()
    if "box_id" in out.columns:
        out = out.drop(columns="box_id")
    out["box_id"] = joined["box_id"].to_numpy()

    report_unmatched(int(out["box_id"].isna().sum()), "assigning grid points to boxes", policy)
    return out


def aggregate_by_box_year(
    pred: pd.DataFrame, value: str = "estimate", policy: str = "warn"
) -> pd.DataFrame:
    """Mean prediction per (year, box), ignoring missing values.

    Rows without a ``box_id`` cannot be aggregated; their number is reported
    according to ``policy``.

    Returns
    -------
    pd.DataFrame
        Columns ``year``, ``box_id``, ``mean_estimate``, ``n_points``
    """
    report_unmatched(
        int(pred["box_id"].isna().sum()), "aggregating grid predictions to boxes", policy
    )
    valid = pred.dropna(subset=["box_id"])
    agg = (
        valid.groupby(["year", "box_id"])[value]
        .agg(mean_estimate="mean", n_points="count")
        .reset_index()
    )
    return agg


def join_box_geometry(
    agg: pd.DataFrame, boxes: gpd.GeoDataFrame, policy: str = "warn"
) -> gpd.GeoDataFrame:
    """Inner-join aggregates onto box polygons by ``box_id``.

    Boxes without any grid point produce no aggregate row; their number is
    reported according to ``policy`` rather than disappearing silently.
    """
    merged = boxes.merge(agg, on="box_id", how="inner")
    missing = set(boxes["box_id"]) - set(agg["box_id"])
    if missing:
        logger.debug(f"Boxes without grid points: {sorted(missing)}")
    report_unmatched(len(missing), "joining box aggregates to box polygons", policy)
    return merged


def summarize_boxes(box_year: pd.DataFrame) -> pd.DataFrame:
    """All-years mean and coefficient of variation per box.

    CV = sample standard deviation (ddof=1) / mean. A zero mean is not
    guarded and yields inf or NaN; a single year yields NaN.

    Returns
    -------
    pd.DataFrame
        Columns ``box_id``, ``mean_estimates``, ``sd_estimates``,
        ``cv_estimates``, ``n_years``
    """
    grouped = box_year.groupby("box_id")["mean_estimate"]
    summary = pd.DataFrame(
        {
            "mean_estimates": grouped.mean(),
            "sd_estimates": grouped.std(ddof=1),
            "n_years": grouped.count(),
        }
    ).reset_index()
    with np.errstate(divide="ignore", invalid="ignore"):
        summary["cv_estimates"] = summary["sd_estimates"] / summary["mean_estimates"]
    return summary


def mask_boundary_boxes(summary: pd.DataFrame, boxes: pd.DataFrame) -> pd.DataFrame:
    """Return a copy with ``mean_estimates`` set to NaN for boundary boxes.

    Boundary boxes are computed like any other box; only the reported value
    is nulled. The input table is left unchanged.
    """
    out = summary.copy()
    boundary_ids = set(boxes.loc[boxes["boundary"].astype(bool), "box_id"])
    is_boundary = out["box_id"].isin(boundary_ids)
    out["boundary"] = is_boundary
    out.loc[is_boundary, "mean_estimates"] = np.nan
    return out


def box_biomass_table(summary: pd.DataFrame, boxes: pd.DataFrame) -> pd.DataFrame:
    """Box-level CPUE and biomass table for Atlantis initialization.

    Parameters
    ----------
    summary : pd.DataFrame
        Masked box summary (``box_id``, ``mean_estimates``)
    boxes : pd.DataFrame
        Boxes with ``box_id`` and ``area_m2``

    Returns
    -------
    pd.DataFrame
        Columns ``box_id``, ``cpue_kg_km2``, ``biomass_t``; one row per box
        in ``boxes`` (boxes without estimates get NaN)
    """
    table = boxes[["box_id", "area_m2"]].merge(
        summary[["box_id", "mean_estimates"]], on="box_id", how="left"
    )
    table = table.rename(columns={"mean_estimates": "cpue_kg_km2"})
    table["biomass_t"] = biomass_tonnes(table["cpue_kg_km2"], table["area_m2"])
    table = table.sort_values("box_id").reset_index(drop=True)
    return pd.DataFrame(table[["box_id", "cpue_kg_km2", "biomass_t"]])
