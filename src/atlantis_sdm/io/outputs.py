"""
CSV outputs of a model run.

Each species/life-stage group produces two tables:

- ``{group}_{stage}_box_biomass.csv``: box_id, cpue_kg_km2, biomass_t
- ``{group}_{stage}_validation.csv``: one row with convergence code,
  message, max gradient, practical range, correlation, RMSE and NRMSE

File names are rendered from templates in :class:`OutputConfig`.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Union

import pandas as pd

from atlantis_sdm.core.validation import ValidationRecord
from atlantis_sdm.logger import get_logger

logger = get_logger(__name__)

BIOMASS_COLUMNS = ["box_id", "cpue_kg_km2", "biomass_t"]


def slugify(label: str) -> str:
    """Lower-case label with runs of non-alphanumerics replaced by '_'.

    >>> slugify("Atlantic cod")
    'atlantic_cod'
    """
    return re.sub(r"[^0-9a-z]+", "_", str(label).strip().lower()).strip("_")


def output_path(
    template: str, directory: Union[str, Path], group: str, stage: str, **extra
) -> Path:
    """Render an output file path from a template.

    Parameters
    ----------
    template : str
        Format string with ``{group}`` and ``{stage}`` placeholders
    directory : str or Path
        Output directory
    group, stage : str
        Group name and life-stage label (slugified)
    **extra
        Additional placeholders (e.g. ``name`` for figures)
    """
    name = template.format(group=slugify(group), stage=slugify(stage), **extra)
    return Path(directory) / name


def write_box_biomass(table: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write the box-level CPUE/biomass table."""
    missing = [c for c in BIOMASS_COLUMNS if c not in table.columns]
    if missing:
        raise ValueError(f"Biomass table is missing columns {missing}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table[BIOMASS_COLUMNS].to_csv(path, index=False)
    logger.info(f"Wrote box biomass table ({len(table)} boxes) to {path}")
    return path


def write_validation(record: ValidationRecord, path: Union[str, Path]) -> Path:
    """Write the one-row validation table."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    record.to_frame().to_csv(path, index=False)
    logger.info(f"Wrote validation table to {path}")
    return path
