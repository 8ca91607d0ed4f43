"""
I/O module for atlantis_sdm.

Writes the per-group box biomass and validation tables.
"""

from atlantis_sdm.io.outputs import (
    output_path,
    slugify,
    write_box_biomass,
    write_validation,
)

__all__ = [
    "output_path",
    "slugify",
    "write_box_biomass",
    "write_validation",
]
