"""
GIS utilities for Atlantis box geometry and prediction grids.

Functions for loading the box polygons of an Atlantis model, the coastline
and a precomputed prediction grid from shapefiles/GeoJSON/CSV, computing
distance from shore, and creating regular grids over the box domain.

Coordinate conventions: geometries stay in the projected CRS of the box
file (metres); tabular coordinates ``X``/``Y`` are in kilometers.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from shapely.ops import unary_union

from atlantis_sdm.core.constants import METERS_PER_KM
from atlantis_sdm.logger import get_logger

logger = get_logger(__name__)


def load_box_geometry(
    filepath: Union[str, Path],
    id_field: str = "box_id",
    area_field: Optional[str] = None,
    boundary_field: Optional[str] = "boundary",
    crs: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """Load Atlantis box polygons from a shapefile or GeoJSON.

    Parameters
    ----------
    filepath : str or Path
        Path to .shp, .geojson, or .gpkg file
    id_field : str
        Field containing unique box IDs
    area_field : str, optional
        Field with pre-computed areas in m².
        If None, calculates from geometry (projected CRS required)
    boundary_field : str, optional
        Field flagging boundary (non-dynamic) boxes. Missing field means
        no box is a boundary box.
    crs : str, optional
        Reproject to this CRS (e.g., "EPSG:32619")

    Returns
    -------
    gpd.GeoDataFrame
        Columns ``box_id``, ``area_m2``, ``boundary`` and geometry

    Raises
    ------
    FileNotFoundError
        If filepath does not exist
    ValueError
        If required fields are missing or areas cannot be computed
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Box geometry file not found: {path}")

    gdf = gpd.read_file(path)
    if crs is not None:
        gdf = gdf.to_crs(crs)
    return prepare_boxes(gdf, id_field, area_field, boundary_field)


def prepare_boxes(
    gdf: gpd.GeoDataFrame,
    id_field: str = "box_id",
    area_field: Optional[str] = None,
    boundary_field: Optional[str] = "boundary",
) -> gpd.GeoDataFrame:
    """Normalize a box GeoDataFrame to ``box_id``/``area_m2``/``boundary``."""
    if id_field not in gdf.columns:
        raise ValueError(
            f"Field '{id_field}' not found in box geometry. Available: {list(gdf.columns)}"
        )
    if gdf[id_field].duplicated().any():
        raise ValueError(f"Box ids in '{id_field}' are not unique")

    boxes = gdf.copy()
    boxes["box_id"] = boxes[id_field]

    if area_field is None:
        if boxes.crs is None or boxes.crs.is_geographic:
            raise ValueError(
                "Box areas must be computed in a projected CRS; "
                "pass crs= or an area_field"
            )
        boxes["area_m2"] = boxes.geometry.area
    else:
        if area_field not in boxes.columns:
            raise ValueError(
                f"Area field '{area_field}' not found. Available: {list(boxes.columns)}"
            )
        boxes["area_m2"] = boxes[area_field].astype(float)

    if boundary_field is not None and boundary_field in boxes.columns:
        boxes["boundary"] = boxes[boundary_field].astype(bool)
    else:
        boxes["boundary"] = False

    logger.info(
        f"Loaded {len(boxes)} boxes ({int(boxes['boundary'].sum())} boundary)"
    )
    return boxes


def load_coastline(
    filepath: Union[str, Path], crs: Optional[str] = None
) -> gpd.GeoDataFrame:
    """Load land/coastline polygons, optionally reprojected."""
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Coastline file not found: {path}")
    coast = gpd.read_file(path)
    if crs is not None:
        coast = coast.to_crs(crs)
    return coast


def load_prediction_grid(
    filepath: Union[str, Path],
    covariate: Optional[str] = None,
    x_col: str = "X",
    y_col: str = "Y",
) -> pd.DataFrame:
    """Load a precomputed prediction grid.

    CSV grids must carry ``x_col``/``y_col`` in km; vector files (points in
    the projected CRS, metres) get ``X``/``Y`` from their geometry. When
    ``covariate`` is given the grid must already carry it; leave it as None
    when the covariate will be computed later from a coastline.

    Returns
    -------
    pd.DataFrame
        Grid with ``X``, ``Y`` (km), the covariate and any other columns
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Prediction grid file not found: {path}")

    if path.suffix.lower() == ".csv":
        grid = pd.read_csv(path)
        missing = [c for c in (x_col, y_col) if c not in grid.columns]
        if missing:
            raise ValueError(f"Prediction grid is missing coordinate columns {missing}")
        grid = grid.rename(columns={x_col: "X", y_col: "Y"})
    else:
        gdf = gpd.read_file(path)
        grid = pd.DataFrame(gdf.drop(columns="geometry"))
        grid["X"] = gdf.geometry.x.to_numpy() / METERS_PER_KM
        grid["Y"] = gdf.geometry.y.to_numpy() / METERS_PER_KM

    if covariate is not None and covariate not in grid.columns:
        raise ValueError(
            f"Covariate '{covariate}' not found in prediction grid. "
            f"Available: {list(grid.columns)}"
        )
    return grid


def _merged(geometry):
    if isinstance(geometry, gpd.GeoDataFrame):
        return unary_union(list(geometry.geometry))
    if isinstance(geometry, gpd.GeoSeries):
        return unary_union(list(geometry))
    return geometry


def distance_to_coast_km(
    points_km: np.ndarray,
    coastline,
    scale_factor: float = METERS_PER_KM,
) -> np.ndarray:
    """Distance from each point to the land geometry, in km.

    Parameters
    ----------
    points_km : np.ndarray
        Point coordinates in km [n, 2]
    coastline : GeoDataFrame, GeoSeries or shapely geometry
        Land polygons in projection units
    scale_factor : float
        Projection units per km

    Returns
    -------
    np.ndarray
        Distances in km (0 for points on land)
    """
    land = _merged(coastline)
    pts = shapely.points(np.asarray(points_km, dtype=float) * scale_factor)
    return shapely.distance(pts, land) / scale_factor


def attach_distance_covariate(
    df: pd.DataFrame,
    coastline,
    covariate: str = "distance_km",
    scale_factor: float = METERS_PER_KM,
) -> pd.DataFrame:
    """Return a copy of ``df`` with the distance-from-shore covariate."""
    out = df.copy()
    out[covariate] = distance_to_coast_km(
        out[["X", "Y"]].to_numpy(dtype=float), coastline, scale_factor
    )
    return out


def create_regular_grid(
    boxes: gpd.GeoDataFrame,
    spacing_km: float,
    scale_factor: float = METERS_PER_KM,
) -> pd.DataFrame:
    """Create a regular grid of cell centres covering the box domain.

    Parameters
    ----------
    boxes : gpd.GeoDataFrame
        Box polygons in the projected CRS
    spacing_km : float
        Grid spacing in km
    scale_factor : float
        Projection units per km

    Returns
    -------
    pd.DataFrame
        ``grid_id``, ``X``, ``Y`` (km) for centres inside any box
    """
    if spacing_km <= 0:
        raise ValueError(f"spacing_km must be positive, got {spacing_km}")

    min_x, min_y, max_x, max_y = np.asarray(boxes.total_bounds) / scale_factor
    xs = np.arange(min_x + spacing_km / 2, max_x, spacing_km)
    ys = np.arange(min_y + spacing_km / 2, max_y, spacing_km)
    gx, gy = np.meshgrid(xs, ys)
    gx, gy = gx.ravel(), gy.ravel()

    domain = _merged(boxes)
    inside = shapely.contains_xy(domain, gx * scale_factor, gy * scale_factor)
    grid = pd.DataFrame({"X": gx[inside], "Y": gy[inside]})
    grid.insert(0, "grid_id", np.arange(len(grid), dtype=int))
    return grid
