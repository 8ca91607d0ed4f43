"""Model validation: skill metrics and the per-group validation record."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

import numpy as np
import pandas as pd
from scipy import stats

from atlantis_sdm.core.fitting import FittedModel
from atlantis_sdm.logger import get_logger

logger = get_logger(__name__)


def _paired(observed, predicted):
    obs = np.asarray(observed, dtype=float)
    pred = np.asarray(predicted, dtype=float)
    if obs.shape != pred.shape:
        raise ValueError(f"Shape mismatch: observed {obs.shape} vs predicted {pred.shape}")
    keep = np.isfinite(obs) & np.isfinite(pred)
    return obs[keep], pred[keep]


def pearson_correlation(observed, predicted) -> float:
    """Pearson correlation; NaN for fewer than two pairs or constant input."""
    obs, pred = _paired(observed, predicted)
    if len(obs) < 2 or np.all(obs == obs[0]) or np.all(pred == pred[0]):
        return np.nan
    r, _ = stats.pearsonr(obs, pred)
    return float(r)


def rmse(observed, predicted) -> float:
    """Root mean squared error in the units of the data."""
    obs, pred = _paired(observed, predicted)
    if len(obs) == 0:
        return np.nan
    return float(np.sqrt(np.mean((pred - obs) ** 2)))


def nrmse_percent(observed, predicted) -> float:
    """RMSE divided by the observed range, as a percentage.

    A zero observed range is not guarded and yields inf or NaN.
    """
    obs, pred = _paired(observed, predicted)
    if len(obs) == 0:
        return np.nan
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(
            np.float64(rmse(obs, pred)) / np.float64(obs.max() - obs.min()) * 100.0
        )


@dataclass
class ValidationRecord:
    """One-row validation summary for a species/life-stage group."""

    group: str
    convergence: int
    message: str
    max_gradient: float
    practical_range_km: float
    correlation: float
    rmse: float
    nrmse_percent: float
    n_obs: int
    n_unmatched: int = 0
    refitted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_dict()])


def validate_model(
    model: FittedModel,
    joined: pd.DataFrame,
    group: str,
    refitted: bool = False,
    n_unmatched: int = 0,
) -> ValidationRecord:
    """Compute skill metrics over the joined observed/predicted sample.

    Parameters
    ----------
    model : FittedModel
        Final fitted model
    joined : pd.DataFrame
        Output of :func:`predict_observations` (``observed``, ``estimate``)
    group : str
        Group label for the record
    refitted : bool
        Whether the convergence retry ran
    n_unmatched : int
        Observations without a prediction

    Returns
    -------
    ValidationRecord
    """
    observed = joined["observed"].to_numpy(dtype=float)
    predicted = joined["estimate"].to_numpy(dtype=float)

    record = ValidationRecord(
        group=group,
        convergence=int(model.status),
        message=model.message,
        max_gradient=model.max_gradient,
        practical_range_km=model.practical_range_km,
        correlation=pearson_correlation(observed, predicted),
        rmse=rmse(observed, predicted),
        nrmse_percent=nrmse_percent(observed, predicted),
        n_obs=int(len(joined)),
        n_unmatched=int(n_unmatched),
        refitted=bool(refitted),
    )
    logger.info(
        f"Validation {group}: r={record.correlation:.3f}, RMSE={record.rmse:.4g}, "
        f"NRMSE={record.nrmse_percent:.2f}%"
    )
    return record
