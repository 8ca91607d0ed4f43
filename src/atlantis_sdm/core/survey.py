"""
Survey ingestion and cleaning.

Turns a raw trawl-survey export (one row per species x life stage caught in
a haul) into tidy catch records with CPUE, a table of hauls, and per-group
zero-filled observation sets ready for model fitting.

Workflow:
    read_survey -> clean_survey -> zero_fill -> apply_sampling_unit
    -> project_coordinates

After cleaning, columns are renamed to canonical names so later stages do
not depend on the survey's own headers:

    station, event_time, year, month, day, haul_id, latitude, longitude,
    area_km2, species, stage, count, mass_kg, cpue_kg_km2, cpue_n_km2

Example:
    >>> raw = read_survey("survey_2015_2022.xlsx")
    >>> survey = clean_survey(raw, SurveyConfig())
    >>> obs = zero_fill(survey, "Gadus morhua", "adult")
    >>> obs["haul_id"].nunique() == survey.n_hauls
    True
"""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd

from atlantis_sdm.core.config import SurveyConfig
from atlantis_sdm.core.constants import (
    DROPPED_POSITION_WARN_FRACTION,
    GRAMS_PER_KG,
    METERS_PER_KM,
)
from atlantis_sdm.core.exceptions import ConfigurationError, SurveyDataError
from atlantis_sdm.logger import get_logger

logger = get_logger(__name__)

CPUE_COLUMNS = ["cpue_kg_km2", "cpue_n_km2"]
HAUL_COLUMNS = [
    "haul_id",
    "station",
    "event_time",
    "year",
    "month",
    "day",
    "latitude",
    "longitude",
    "area_km2",
]


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class SurveyData:
    """Cleaned survey.

    Attributes
    ----------
    catches : pd.DataFrame
        One row per catch record with canonical columns and CPUE
    hauls : pd.DataFrame
        One row per haul (the full sample frame)
    n_raw : int
        Number of rows in the raw export
    n_dropped : int
        Rows removed because latitude or longitude was missing
    """

    catches: pd.DataFrame
    hauls: pd.DataFrame
    n_raw: int
    n_dropped: int = 0

    @property
    def n_hauls(self) -> int:
        return int(self.hauls["haul_id"].nunique())

    @property
    def years(self) -> np.ndarray:
        return np.sort(self.hauls["year"].unique())

    def __repr__(self) -> str:
        return (
            f"SurveyData(records={len(self.catches)}, hauls={self.n_hauls}, "
            f"years={len(self.years)}, dropped={self.n_dropped})"
        )


# ============================================================================
# Reading and header normalization
# ============================================================================


def read_survey(
    filepath: Union[str, Path], sheet_name: Union[str, int] = 0
) -> pd.DataFrame:
    """Read a raw survey export from a spreadsheet or CSV file.

    Parameters
    ----------
    filepath : str or Path
        Path to .xlsx, .xls or .csv file
    sheet_name : str or int
        Worksheet for spreadsheet inputs (default: first sheet)

    Returns
    -------
    pd.DataFrame
        Raw survey table with original headers
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Survey file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xls", ".xlsm"):
        df = pd.read_excel(path, sheet_name=sheet_name)
    elif suffix in (".csv", ".txt"):
        df = pd.read_csv(path)
    else:
        raise SurveyDataError(f"Unsupported survey file type: {suffix}")

    logger.info(f"Read {len(df)} survey rows from {path.name}")
    return df


def normalize_column_name(name) -> str:
    """Lower-case a header and collapse spaces/symbols into underscores.

    >>> normalize_column_name(" Swept Area (km2) ")
    'swept_area_km2'
    """
    text = str(name).strip().lower()
    text = re.sub(r"[^0-9a-z]+", "_", text)
    return text.strip("_")


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of ``df`` with normalized column names."""
    renamed = {col: normalize_column_name(col) for col in df.columns}
    collisions = pd.Series(list(renamed.values())).duplicated()
    if collisions.any():
        dup = sorted(set(pd.Series(list(renamed.values()))[collisions]))
        raise SurveyDataError(f"Column names collide after normalization: {dup}")
    return df.rename(columns=renamed)


def _require_columns(df: pd.DataFrame, columns) -> None:
    missing = [c for c in columns if c is not None and c not in df.columns]
    if missing:
        raise SurveyDataError(
            f"Survey is missing required columns {missing}. "
            f"Available: {list(df.columns)}"
        )


# ============================================================================
# Time handling
# ============================================================================


def _time_of_day(values: pd.Series) -> pd.Series:
    """Convert a time column (HHMM integers, 'HH:MM[:SS]' strings or
    datetime.time objects) into a Timedelta offset from midnight."""
    if pd.api.types.is_timedelta64_dtype(values):
        return values.fillna(pd.Timedelta(0))

    if pd.api.types.is_numeric_dtype(values):
        hhmm = values.fillna(0).astype(int)
        return pd.to_timedelta(hhmm // 100, unit="h") + pd.to_timedelta(
            hhmm % 100, unit="m"
        )

    text = values.astype(str).str.strip().where(values.notna(), "")
    digits = text.str.fullmatch(r"\d{1,4}")

    hhmm = pd.to_numeric(text.where(digits), errors="coerce").fillna(0).astype(int)
    from_digits = pd.to_timedelta(hhmm // 100, unit="h") + pd.to_timedelta(
        hhmm % 100, unit="m"
    )

    clock = text.where(~digits, "").str.replace(
        r"^(\d{1,2}:\d{2})$", r"\1:00", regex=True
    )
    from_clock = pd.to_timedelta(clock, errors="coerce")

    return from_clock.where(~digits, from_digits).fillna(pd.Timedelta(0))


def parse_event_time(df: pd.DataFrame, config: SurveyConfig) -> pd.DataFrame:
    """Add canonical ``event_time`` plus ``year``, ``month`` and ``day``.

    A missing time column (or missing time values) means midnight.

    Raises
    ------
    SurveyDataError
        If any date cannot be parsed
    """
    out = df.copy()
    dates = pd.to_datetime(out[config.date], errors="coerce")
    bad = int(dates.isna().sum())
    if bad:
        raise SurveyDataError(f"{bad} survey row(s) have an unparseable date")

    event_time = dates.dt.normalize()
    if config.time is not None and config.time in out.columns:
        event_time = event_time + _time_of_day(out[config.time])

    out["event_time"] = event_time
    out["year"] = event_time.dt.year.astype(int)
    out["month"] = event_time.dt.month.astype(int)
    out["day"] = event_time.dt.day.astype(int)
    return out


def make_haul_id(station: pd.Series, event_time: pd.Series) -> pd.Series:
    """Haul key: station id, year, month, day and event time.

    >>> make_haul_id(pd.Series(["A12"]), pd.Series([pd.Timestamp("2019-06-03 14:05")]))[0]
    'A12_20190603_1405'
    """
    return (
        station.astype(str).str.strip()
        + "_"
        + event_time.dt.strftime("%Y%m%d_%H%M")
    )


# ============================================================================
# Cleaning steps
# ============================================================================


def drop_missing_positions(
    df: pd.DataFrame, lat_col: str = "latitude", lon_col: str = "longitude"
) -> Tuple[pd.DataFrame, int]:
    """Drop rows without a position.

    Missing coordinates are a documented, negligible data loss, so rows are
    excluded without raising. The count is logged and returned.

    Returns
    -------
    df : pd.DataFrame
        Rows with both coordinates present
    n_dropped : int
        Number of rows removed
    """
    keep = df[lat_col].notna() & df[lon_col].notna()
    n_dropped = int((~keep).sum())
    if n_dropped:
        fraction = n_dropped / max(len(df), 1)
        message = (
            f"Dropped {n_dropped} of {len(df)} survey rows "
            f"({fraction:.2%}) with missing coordinates"
        )
        if fraction > DROPPED_POSITION_WARN_FRACTION:
            warnings.warn(message)
            logger.warning(message)
        else:
            logger.info(message)
    return df.loc[keep].copy(), n_dropped


def compute_cpue(
    df: pd.DataFrame,
    mass_unit: str = "g",
    area_col: str = "area_km2",
) -> pd.DataFrame:
    """Add ``mass_kg``, ``cpue_kg_km2`` and ``cpue_n_km2`` columns.

    mass-CPUE = mass (kg) / effort area (km²); count-CPUE = count / area.

    Raises
    ------
    SurveyDataError
        If any effort area is missing or not strictly positive
    """
    out = df.copy()
    area = pd.to_numeric(out[area_col], errors="coerce")
    bad = ~(area > 0)
    if bad.any():
        raise SurveyDataError(
            f"{int(bad.sum())} survey row(s) have a missing or non-positive "
            f"effort area in '{area_col}'"
        )

    mass = pd.to_numeric(out["mass"], errors="coerce").fillna(0.0)
    count = pd.to_numeric(out["count"], errors="coerce").fillna(0.0)

    out["mass_kg"] = mass / GRAMS_PER_KG if mass_unit == "g" else mass
    out["count"] = count
    out["cpue_kg_km2"] = out["mass_kg"] / area
    out["cpue_n_km2"] = count / area
    return out.drop(columns=["mass"])


def clean_survey(raw: pd.DataFrame, config: Optional[SurveyConfig] = None) -> SurveyData:
    """Normalize, validate and enrich a raw survey table.

    Parameters
    ----------
    raw : pd.DataFrame
        Raw survey export (headers as delivered)
    config : SurveyConfig, optional
        Column mapping; defaults to :class:`SurveyConfig()`

    Returns
    -------
    SurveyData
    """
    config = config or SurveyConfig()
    df = normalize_columns(raw)
    _require_columns(
        df,
        [
            config.station,
            config.date,
            config.latitude,
            config.longitude,
            config.area_km2,
            config.species,
            config.count,
            config.mass,
        ],
    )

    df = parse_event_time(df, config)

    rename = {
        config.station: "station",
        config.latitude: "latitude",
        config.longitude: "longitude",
        config.area_km2: "area_km2",
        config.species: "species",
        config.count: "count",
        config.mass: "mass",
    }
    if config.stage is not None and config.stage in df.columns:
        rename[config.stage] = "stage"
    df = df.rename(columns=rename)
    if "stage" not in df.columns:
        df["stage"] = np.nan

    df["latitude"] = pd.to_numeric(df["latitude"], errors="coerce")
    df["longitude"] = pd.to_numeric(df["longitude"], errors="coerce")
    df, n_dropped = drop_missing_positions(df)

    df = compute_cpue(df, mass_unit=config.mass_unit)
    df["haul_id"] = make_haul_id(df["station"], df["event_time"])
    df["species"] = df["species"].astype(str).str.strip().where(df["species"].notna())
    df["stage"] = df["stage"].astype(str).str.strip().where(df["stage"].notna())

    hauls = (
        df[HAUL_COLUMNS]
        .drop_duplicates(subset="haul_id", keep="first")
        .sort_values("haul_id")
        .reset_index(drop=True)
    )

    survey = SurveyData(
        catches=df.reset_index(drop=True),
        hauls=hauls,
        n_raw=len(raw),
        n_dropped=n_dropped,
    )
    logger.info(f"Cleaned survey: {survey!r}")
    return survey


# ============================================================================
# Zero filling and sampling unit
# ============================================================================


def zero_fill(
    survey: SurveyData, species: str, stage: Optional[str] = None
) -> pd.DataFrame:
    """Build the complete observation set for one species/life-stage group.

    Positive catches of the group are combined with synthetic zero-catch
    rows for every haul in which the group was not recorded (the set
    difference of all hauls and hauls containing the group). The haul ids
    of the result are in one-to-one correspondence with ``survey.hauls``.

    Parameters
    ----------
    survey : SurveyData
        Cleaned survey
    species : str
        Species name as it appears in the survey
    stage : str, optional
        Life-stage label; None pools all stages of the species

    Returns
    -------
    pd.DataFrame
        One row per haul with haul columns, ``count``, ``mass_kg``, CPUE,
        ``present`` flag and a stable integer ``obs_id``
    """
    catches = survey.catches
    mask = catches["species"] == species
    if stage is not None:
        if catches["stage"].isna().all():
            raise SurveyDataError("Survey has no life-stage column to filter on")
        mask &= catches["stage"] == stage

    value_cols = ["count", "mass_kg"] + CPUE_COLUMNS
    positive = (
        catches.loc[mask].groupby("haul_id", as_index=False)[value_cols].sum()
    )
    if positive.empty:
        logger.warning(f"No positive catches for {species} ({stage or 'all stages'})")

    absent_ids = set(survey.hauls["haul_id"]) - set(positive["haul_id"])
    zeros = survey.hauls.loc[survey.hauls["haul_id"].isin(absent_ids)].copy()
    for col in value_cols:
        zeros[col] = 0.0
    zeros["present"] = False

    present = survey.hauls.merge(positive, on="haul_id", how="inner")
    present["present"] = True

    obs = pd.concat([present, zeros], ignore_index=True)
    obs["species"] = species
    obs["stage"] = stage if stage is not None else "all"
    obs = obs.sort_values("haul_id").reset_index(drop=True)
    obs["obs_id"] = np.arange(len(obs), dtype=int)

    logger.info(
        f"Zero-filled {species} ({stage or 'all stages'}): "
        f"{len(present)} positive + {len(zeros)} zero hauls"
    )
    return obs


def apply_sampling_unit(obs: pd.DataFrame, sampling_unit: str = "haul") -> pd.DataFrame:
    """Collapse observations to the configured independent sampling unit.

    Parameters
    ----------
    obs : pd.DataFrame
        Zero-filled observations (one row per haul)
    sampling_unit : str
        "haul": unchanged. "station_day": hauls sharing station and calendar
        day are averaged (CPUE and position) and summed (count, mass).

    Returns
    -------
    pd.DataFrame
        Observations with ``obs_id`` reassigned
    """
    if sampling_unit == "haul":
        return obs
    if sampling_unit != "station_day":
        raise ConfigurationError(f"Unknown sampling unit: {sampling_unit}")

    keys = ["station", "year", "month", "day"]
    grouped = obs.groupby(keys, as_index=False).agg(
        event_time=("event_time", "min"),
        latitude=("latitude", "mean"),
        longitude=("longitude", "mean"),
        area_km2=("area_km2", "sum"),
        count=("count", "sum"),
        mass_kg=("mass_kg", "sum"),
        cpue_kg_km2=("cpue_kg_km2", "mean"),
        cpue_n_km2=("cpue_n_km2", "mean"),
        present=("present", "any"),
        species=("species", "first"),
        stage=("stage", "first"),
        n_hauls=("haul_id", "nunique"),
    )
    grouped["haul_id"] = (
        grouped["station"].astype(str).str.strip()
        + "_"
        + grouped["event_time"].dt.strftime("%Y%m%d")
    )
    grouped = grouped.sort_values("haul_id").reset_index(drop=True)
    grouped["obs_id"] = np.arange(len(grouped), dtype=int)
    logger.info(f"Collapsed {len(obs)} hauls into {len(grouped)} station-days")
    return grouped


def project_coordinates(
    df: pd.DataFrame,
    crs: str,
    lon_col: str = "longitude",
    lat_col: str = "latitude",
) -> pd.DataFrame:
    """Add projected ``X``/``Y`` coordinates in kilometers.

    Parameters
    ----------
    df : pd.DataFrame
        Table with WGS84 longitude/latitude columns
    crs : str
        Target projected CRS with metre units (e.g. "EPSG:32619")

    Returns
    -------
    pd.DataFrame
        Copy of ``df`` with ``X`` and ``Y`` columns (km)
    """
    points = gpd.GeoSeries(
        gpd.points_from_xy(df[lon_col], df[lat_col]), crs="EPSG:4326"
    ).to_crs(crs)
    out = df.copy()
    out["X"] = points.x.to_numpy() / METERS_PER_KM
    out["Y"] = points.y.to_numpy() / METERS_PER_KM
    return out
