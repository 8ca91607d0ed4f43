"""
Plotting module for atlantis_sdm.

Diagnostic and reporting figures for a species distribution model run,
using matplotlib:

- Residual histogram and normal Q-Q plot
- Observed vs predicted CPUE
- Mesh with barrier triangles
- Box-level estimate maps

Background geometry (coastline, boxes) is always passed explicitly.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple, Union

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

from atlantis_sdm.spatial.mesh import SpatialMesh


# =============================================================================
# MODEL DIAGNOSTICS
# =============================================================================

def plot_residual_diagnostics(
    residuals: np.ndarray,
    title: str = "Randomized Quantile Residuals",
    bins: int = 30,
    figsize: Tuple[int, int] = (11, 4.5),
) -> plt.Figure:
    """Histogram and normal Q-Q plot of residuals.

    Parameters
    ----------
    residuals : np.ndarray
        Residuals on the standard normal scale
    title : str
        Figure title
    bins : int
        Histogram bins
    figsize : tuple
        Figure size

    Returns
    -------
    matplotlib.Figure
    """
    residuals = np.asarray(residuals, dtype=float)
    residuals = residuals[np.isfinite(residuals)]

    fig, (ax_hist, ax_qq) = plt.subplots(1, 2, figsize=figsize)

    ax_hist.hist(residuals, bins=bins, density=True, color='steelblue', alpha=0.7)
    grid = np.linspace(-4, 4, 200)
    ax_hist.plot(grid, stats.norm.pdf(grid), color='k', linestyle='--', linewidth=1)
    ax_hist.set_xlabel('Residual', fontsize=11)
    ax_hist.set_ylabel('Density', fontsize=11)
    ax_hist.set_title('Histogram', fontsize=12)

    (theoretical, ordered), (slope, intercept, _) = stats.probplot(residuals, dist='norm')
    ax_qq.scatter(theoretical, ordered, s=8, color='steelblue', alpha=0.7)
    ax_qq.plot(theoretical, slope * theoretical + intercept, color='#E63946', linewidth=1)
    ax_qq.set_xlabel('Theoretical quantiles', fontsize=11)
    ax_qq.set_ylabel('Sample quantiles', fontsize=11)
    ax_qq.set_title('Normal Q-Q', fontsize=12)

    for ax in (ax_hist, ax_qq):
        ax.grid(True, alpha=0.3)

    fig.suptitle(title, fontsize=13)
    plt.tight_layout()
    return fig


def plot_observed_vs_predicted(
    joined: pd.DataFrame,
    title: str = "Observed vs Predicted CPUE",
    figsize: Tuple[int, int] = (6, 6),
    ax: Optional[plt.Axes] = None,
) -> plt.Figure:
    """Scatter of log1p observed vs log1p predicted CPUE with a 1:1 line.

    Parameters
    ----------
    joined : pd.DataFrame
        Output of ``predict_observations`` (``observed``, ``estimate``)
    """
    data = joined.dropna(subset=['observed', 'estimate'])
    obs = np.log1p(data['observed'].to_numpy(dtype=float))
    pred = np.log1p(data['estimate'].to_numpy(dtype=float))

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    ax.scatter(obs, pred, s=10, alpha=0.5, color='#1D3557')
    if len(obs):
        upper = max(obs.max(), pred.max())
        ax.plot([0, upper], [0, upper], color='k', linestyle='--', alpha=0.5)
    ax.set_xlabel('log(1 + observed)', fontsize=11)
    ax.set_ylabel('log(1 + predicted)', fontsize=11)
    ax.set_title(title, fontsize=12)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    return fig


# =============================================================================
# SPATIAL PLOTS
# =============================================================================

def plot_mesh(
    mesh: SpatialMesh,
    coastline: Optional[gpd.GeoDataFrame] = None,
    observations: Optional[pd.DataFrame] = None,
    scale_factor: float = 1000.0,
    title: str = "Spatial Mesh",
    figsize: Tuple[int, int] = (8, 8),
    ax: Optional[plt.Axes] = None,
) -> plt.Figure:
    """Plot the triangulated mesh, barrier triangles and observations.

    Parameters
    ----------
    mesh : SpatialMesh
        Mesh in km
    coastline : gpd.GeoDataFrame, optional
        Land polygons in projection units (rescaled to km for display)
    observations : pd.DataFrame, optional
        Observations with ``X``/``Y`` in km
    scale_factor : float
        Projection units per km
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    if coastline is not None:
        land = coastline.copy()
        land['geometry'] = land.geometry.scale(
            xfact=1 / scale_factor, yfact=1 / scale_factor, origin=(0, 0)
        )
        land.plot(ax=ax, color='#d9d9d9', edgecolor='#999999', linewidth=0.5)

    ax.triplot(mesh.nodes[:, 0], mesh.nodes[:, 1], mesh.triangles,
               color='steelblue', linewidth=0.4, alpha=0.7)
    if mesh.has_barrier:
        ax.triplot(mesh.nodes[:, 0], mesh.nodes[:, 1],
                   mesh.triangles[mesh.barrier_triangles],
                   color='#ff0000', linewidth=0.6)

    if observations is not None:
        ax.scatter(observations['X'], observations['Y'], s=4, color='k', alpha=0.6,
                   label='Observations')
        ax.legend(loc='best', fontsize=9)

    ax.set_xlabel('X (km)', fontsize=11)
    ax.set_ylabel('Y (km)', fontsize=11)
    ax.set_title(f"{title} ({mesh.n_nodes} nodes)", fontsize=12)
    ax.set_aspect('equal')

    plt.tight_layout()
    return fig


def plot_box_estimates(
    boxes: gpd.GeoDataFrame,
    summary: pd.DataFrame,
    column: str = 'mean_estimates',
    coastline: Optional[gpd.GeoDataFrame] = None,
    title: str = "Mean CPUE (kg/km²)",
    cmap: str = 'viridis',
    figsize: Tuple[int, int] = (9, 8),
    ax: Optional[plt.Axes] = None,
) -> plt.Figure:
    """Choropleth of a box-level summary column.

    Boxes with missing values (e.g. masked boundary boxes) are drawn hatched.

    Parameters
    ----------
    boxes : gpd.GeoDataFrame
        Box polygons with ``box_id``
    summary : pd.DataFrame
        Box summary with ``box_id`` and ``column``
    coastline : gpd.GeoDataFrame, optional
        Land polygons in the same CRS as ``boxes``
    """
    data = boxes[['box_id', 'geometry']].merge(
        summary[['box_id', column]], on='box_id', how='left'
    )

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    data.plot(
        column=column,
        ax=ax,
        cmap=cmap,
        legend=True,
        edgecolor='#555555',
        linewidth=0.4,
        missing_kwds={'color': 'white', 'hatch': '///', 'edgecolor': '#999999'},
    )
    if coastline is not None:
        coastline.plot(ax=ax, color='#d9d9d9', edgecolor='#999999', linewidth=0.5)

    ax.set_title(title, fontsize=12)
    ax.set_axis_off()

    plt.tight_layout()
    return fig


def save_figure(
    figures: Union[plt.Figure, List[plt.Figure]],
    path: Union[str, Path],
    dpi: int = 150,
) -> List[Path]:
    """Save matplotlib figure(s) and close them.

    A single figure is written to ``path``; several figures get ``_1``,
    ``_2``... suffixes before the extension.

    Returns
    -------
    list of Path
        Written files
    """
    if isinstance(figures, plt.Figure):
        figures = [figures]

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    written = []
    for i, fig in enumerate(figures):
        target = path if len(figures) == 1 else path.with_name(
            f"{path.stem}_{i + 1}{path.suffix}"
        )
        fig.savefig(target, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        written.append(target)
    return written
