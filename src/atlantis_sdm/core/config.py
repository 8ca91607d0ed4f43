"""Run configuration for atlantis_sdm.

Every tunable value of a species distribution model run (survey column
names, mesh cutoff, smooth-term knots, distributional family, optimizer
budgets, output templates) is grouped here in plain dataclasses with literal
defaults. A run is configured by constructing a :class:`RunConfig`, either
directly or from a nested dictionary with :meth:`RunConfig.from_dict`.

Example
-------
>>> config = RunConfig.from_dict({
...     "group": "Atlantic cod",
...     "stage": "adult",
...     "crs": "EPSG:32619",
...     "mesh": {"cutoff_km": 15.0},
...     "model": {"smooth_knots": 4, "spatiotemporal": "iid"},
... })
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from atlantis_sdm.core.constants import (
    DEFAULT_BARRIER_SCALE_FACTOR,
    DEFAULT_FIELD_PENALTY,
    DEFAULT_MESH_CUTOFF_KM,
    DEFAULT_RANGE_FRACTION,
    DEFAULT_SMOOTH_KNOTS,
    DEFAULT_TWEEDIE_POWER,
    INITIAL_OPTIMIZER_MAXFUN,
    INITIAL_OPTIMIZER_MAXITER,
    INITIAL_OPTIMIZER_PASSES,
    MAX_GRADIENT_TOLERANCE,
    RETRY_OPTIMIZER_MAXFUN,
    RETRY_OPTIMIZER_MAXITER,
    RETRY_OPTIMIZER_PASSES,
)
from atlantis_sdm.core.exceptions import ConfigurationError

VALID_MASS_UNITS = ("g", "kg")
VALID_SAMPLING_UNITS = ("haul", "station_day")
VALID_RESPONSES = ("cpue_kg_km2", "cpue_n_km2")
VALID_SPATIOTEMPORAL = ("off", "iid")
VALID_JOIN_POLICIES = ("warn", "raise")


@dataclass
class SurveyConfig:
    """Survey column mapping and sampling assumptions.

    Column names refer to the survey table *after* header normalization
    (lower case, non-alphanumerics replaced by underscores).

    Attributes
    ----------
    sampling_unit : str
        Minimal independent sampling unit: "haul" treats every tow as a
        sample; "station_day" averages tows at the same station and day.
    """

    station: str = "station"
    date: str = "date"
    time: Optional[str] = "time"
    latitude: str = "latitude"
    longitude: str = "longitude"
    area_km2: str = "swept_area_km2"
    species: str = "species"
    stage: Optional[str] = "life_stage"
    count: str = "count"
    mass: str = "mass"
    mass_unit: str = "g"
    sampling_unit: str = "haul"

    def __post_init__(self):
        if self.mass_unit not in VALID_MASS_UNITS:
            raise ConfigurationError(
                f"mass_unit must be one of {VALID_MASS_UNITS}, got '{self.mass_unit}'"
            )
        if self.sampling_unit not in VALID_SAMPLING_UNITS:
            raise ConfigurationError(
                f"sampling_unit must be one of {VALID_SAMPLING_UNITS}, "
                f"got '{self.sampling_unit}'"
            )


@dataclass
class MeshConfig:
    """Spatial mesh configuration (distances in km)."""

    cutoff_km: float = DEFAULT_MESH_CUTOFF_KM
    boundary_offset_km: Optional[float] = None  # Defaults to 2 * cutoff
    use_barrier: bool = False
    range_fraction: float = DEFAULT_RANGE_FRACTION
    scale_factor: float = DEFAULT_BARRIER_SCALE_FACTOR

    def __post_init__(self):
        if self.cutoff_km <= 0:
            raise ConfigurationError(f"cutoff_km must be positive, got {self.cutoff_km}")
        if self.boundary_offset_km is None:
            self.boundary_offset_km = 2.0 * self.cutoff_km
        if self.boundary_offset_km < 0:
            raise ConfigurationError("boundary_offset_km must be non-negative")
        if not 0 < self.range_fraction <= 1:
            raise ConfigurationError(
                f"range_fraction must be in (0, 1], got {self.range_fraction}"
            )
        if self.scale_factor <= 0:
            raise ConfigurationError("scale_factor must be positive")


@dataclass
class OptimizerSettings:
    """Optimizer budget for one model fit.

    ``passes`` is the number of outer restarts from the previous optimum;
    ``maxiter``/``maxfun`` bound the inner L-BFGS iterations per pass.
    """

    maxiter: int = INITIAL_OPTIMIZER_MAXITER
    maxfun: int = INITIAL_OPTIMIZER_MAXFUN
    passes: int = INITIAL_OPTIMIZER_PASSES

    def __post_init__(self):
        if self.maxiter < 1 or self.maxfun < 1 or self.passes < 1:
            raise ConfigurationError("Optimizer maxiter, maxfun and passes must be >= 1")


def _retry_settings() -> OptimizerSettings:
    return OptimizerSettings(
        maxiter=RETRY_OPTIMIZER_MAXITER,
        maxfun=RETRY_OPTIMIZER_MAXFUN,
        passes=RETRY_OPTIMIZER_PASSES,
    )


@dataclass
class ModelConfig:
    """Formula, family and optimizer settings for the spatial model."""

    response: str = "cpue_kg_km2"
    covariate: str = "distance_km"
    smooth_knots: int = DEFAULT_SMOOTH_KNOTS
    year_factor: bool = True
    spatial_field: bool = True
    spatiotemporal: str = "off"
    tweedie_power: float = DEFAULT_TWEEDIE_POWER
    field_penalty: float = DEFAULT_FIELD_PENALTY
    field_range_km: Optional[float] = None
    gradient_tolerance: float = MAX_GRADIENT_TOLERANCE
    initial_optimizer: OptimizerSettings = field(default_factory=OptimizerSettings)
    retry_optimizer: OptimizerSettings = field(default_factory=_retry_settings)

    def __post_init__(self):
        if self.response not in VALID_RESPONSES:
            raise ConfigurationError(
                f"response must be one of {VALID_RESPONSES}, got '{self.response}'"
            )
        if self.spatiotemporal not in VALID_SPATIOTEMPORAL:
            raise ConfigurationError(
                f"spatiotemporal must be one of {VALID_SPATIOTEMPORAL}, "
                f"got '{self.spatiotemporal}'"
            )
        if not 1.0 < self.tweedie_power < 2.0:
            raise ConfigurationError(
                f"tweedie_power must be in (1, 2), got {self.tweedie_power}"
            )
        if self.smooth_knots < 3:
            raise ConfigurationError("smooth_knots must be at least 3")
        if self.field_penalty <= 0:
            raise ConfigurationError("field_penalty must be positive")
        if self.field_range_km is not None and self.field_range_km <= 0:
            raise ConfigurationError("field_range_km must be positive when set")
        if self.gradient_tolerance <= 0:
            raise ConfigurationError("gradient_tolerance must be positive")
        if isinstance(self.initial_optimizer, dict):
            self.initial_optimizer = OptimizerSettings(**self.initial_optimizer)
        if isinstance(self.retry_optimizer, dict):
            self.retry_optimizer = OptimizerSettings(**self.retry_optimizer)


@dataclass
class OutputConfig:
    """Output locations, filename templates and join policy."""

    directory: str = "outputs"
    biomass_template: str = "{group}_{stage}_box_biomass.csv"
    validation_template: str = "{group}_{stage}_validation.csv"
    figure_template: str = "{group}_{stage}_{name}.png"
    missing_join_policy: str = "warn"
    figure_dpi: int = 150

    def __post_init__(self):
        if self.missing_join_policy not in VALID_JOIN_POLICIES:
            raise ConfigurationError(
                f"missing_join_policy must be one of {VALID_JOIN_POLICIES}, "
                f"got '{self.missing_join_policy}'"
            )

    @property
    def path(self) -> Path:
        """Output directory with ``~`` expanded."""
        return Path(self.directory).expanduser()


_SECTIONS = {
    "survey": SurveyConfig,
    "mesh": MeshConfig,
    "model": ModelConfig,
    "output": OutputConfig,
}


@dataclass
class RunConfig:
    """Complete configuration for one species/life-stage model run."""

    group: str
    species: Optional[str] = None  # Survey species name; defaults to group
    stage: str = "all"
    crs: str = "EPSG:3857"
    box_id_field: str = "box_id"
    survey: SurveyConfig = field(default_factory=SurveyConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def __post_init__(self):
        if not self.group:
            raise ConfigurationError("group name must be non-empty")

    @property
    def species_name(self) -> str:
        return self.species or self.group

    @property
    def stage_filter(self) -> Optional[str]:
        """Life-stage label to filter on; None pools all stages."""
        return None if self.stage == "all" else self.stage

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RunConfig:
        """Build a RunConfig from a nested dictionary.

        Parameters
        ----------
        data : dict
            Top-level run keys plus optional "survey", "mesh", "model" and
            "output" sub-dictionaries.

        Returns
        -------
        RunConfig

        Raises
        ------
        ConfigurationError
            If an unknown key is present at any level.
        """
        top_level = {f.name for f in fields(cls)}
        unknown = set(data) - top_level
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        kwargs = {}
        for key, value in data.items():
            section_cls = _SECTIONS.get(key)
            if section_cls is not None and isinstance(value, dict):
                allowed = {f.name for f in fields(section_cls)}
                bad = set(value) - allowed
                if bad:
                    raise ConfigurationError(
                        f"Unknown keys in '{key}' section: {sorted(bad)}"
                    )
                kwargs[key] = section_cls(**value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
