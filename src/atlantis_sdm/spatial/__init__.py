"""
Spatial utilities for atlantis_sdm.

- Triangulated mesh for the spatial random field, with optional land barrier
- Atlantis box geometry, coastline and prediction grid loading
- Distance-from-shore covariate and regular grid construction
"""

from atlantis_sdm.spatial.gis_utils import (
    attach_distance_covariate,
    create_regular_grid,
    distance_to_coast_km,
    load_box_geometry,
    load_coastline,
    load_prediction_grid,
    prepare_boxes,
)
from atlantis_sdm.spatial.mesh import SpatialMesh, build_mesh, mesh_summary

__all__ = [
    # Mesh
    "SpatialMesh",
    "build_mesh",
    "mesh_summary",
    # GIS
    "load_box_geometry",
    "prepare_boxes",
    "load_coastline",
    "load_prediction_grid",
    "distance_to_coast_km",
    "attach_distance_covariate",
    "create_regular_grid",
]
