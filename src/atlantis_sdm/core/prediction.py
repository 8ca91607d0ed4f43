"""
Prediction from fitted spatial models.

Two prediction targets are supported:

- the regular prediction grid covering the model domain, replicated once
  per survey year, for box-level aggregation;
- the observation locations themselves, for skill assessment. Predictions
  are keyed by the stable ``obs_id`` of each observation, so joining them
  back never depends on floating-point equality of coordinates or
  covariates.

Rows that cannot be predicted are never silently dropped: their count is
reported according to the missing-join policy ("warn" or "raise").
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd

from atlantis_sdm.core.exceptions import JoinMismatchError
from atlantis_sdm.core.fitting import FittedModel
from atlantis_sdm.logger import get_logger

logger = get_logger(__name__)


def report_unmatched(n_missing: int, context: str, policy: str = "warn") -> None:
    """Apply the missing-join policy to ``n_missing`` unmatched rows.

    Parameters
    ----------
    n_missing : int
        Number of rows without a match
    context : str
        Description of the join, used in messages
    policy : str
        "warn" logs a warning and continues; "raise" raises

    Raises
    ------
    JoinMismatchError
        If ``policy == "raise"`` and rows are unmatched
    """
    if n_missing <= 0:
        return
    if policy == "raise":
        raise JoinMismatchError(n_missing, context)
    logger.warning(f"{n_missing} row(s) unmatched while {context}")


def back_transform(link) -> np.ndarray:
    """Inverse of the log link."""
    return np.exp(np.asarray(link, dtype=float))


def replicate_grid_by_year(grid: pd.DataFrame, years: Iterable[int]) -> pd.DataFrame:
    """Stack one copy of the prediction grid per year.

    Parameters
    ----------
    grid : pd.DataFrame
        Prediction grid (covariate, X, Y, box_id, ...)
    years : iterable of int
        Years to predict for

    Returns
    -------
    pd.DataFrame
        ``len(grid) * n_years`` rows with a ``year`` column and a
        ``grid_id`` identifying the grid cell
    """
    base = grid.reset_index(drop=True).copy()
    if "grid_id" not in base.columns:
        base["grid_id"] = np.arange(len(base), dtype=int)
    years = [int(yr) for yr in years]
    if not years:
        raise ValueError("At least one year is required to replicate the grid")
    return pd.concat([base.assign(year=yr) for yr in years], ignore_index=True)


def predict_grid(
    model: FittedModel,
    grid: pd.DataFrame,
    years: Optional[Iterable[int]] = None,
    policy: str = "warn",
) -> pd.DataFrame:
    """Predict CPUE on the regular grid for every year.

    Parameters
    ----------
    model : FittedModel
        Fitted model
    grid : pd.DataFrame
        Prediction grid
    years : iterable of int, optional
        Years to predict (default: years present in the fitted data)
    policy : str
        Missing-join policy for rows that cannot be predicted

    Returns
    -------
    pd.DataFrame
        Replicated grid with ``est_link`` and ``estimate`` (natural scale)
    """
    newdata = replicate_grid_by_year(grid, model.years if years is None else years)
    newdata["est_link"] = model.predict(newdata)
    newdata["estimate"] = back_transform(newdata["est_link"])

    report_unmatched(
        int(newdata["est_link"].isna().sum()), "predicting the grid", policy
    )
    logger.info(
        f"Predicted {len(newdata)} grid cells x years "
        f"({newdata['year'].nunique()} years)"
    )
    return newdata


def predict_observations(
    model: FittedModel, observations: pd.DataFrame, policy: str = "warn"
) -> Tuple[pd.DataFrame, int]:
    """Predict at the observation locations and join back by ``obs_id``.

    Parameters
    ----------
    model : FittedModel
        Fitted model
    observations : pd.DataFrame
        Observations used for fitting (must carry ``obs_id``)
    policy : str
        Missing-join policy

    Returns
    -------
    joined : pd.DataFrame
        Observations with ``observed``, ``est_link`` and ``estimate``
    n_missing : int
        Observations without a prediction
    """
    if "obs_id" not in observations.columns:
        raise KeyError("observations must carry an 'obs_id' column")

    request_cols = ["obs_id", model.formula.covariate, "year"]
    request_cols += [c for c in ("X", "Y") if c in observations.columns]
    request = observations[request_cols].reset_index(drop=True)

    predictions = pd.DataFrame(
        {"obs_id": request["obs_id"].to_numpy(), "est_link": model.predict(request)}
    )
    predictions = predictions.dropna(subset=["est_link"])
    predictions["estimate"] = back_transform(predictions["est_link"])

    joined = observations.merge(predictions, on="obs_id", how="left", validate="one_to_one")
    joined["observed"] = joined[model.formula.response].astype(float)

    n_missing = int(joined["estimate"].isna().sum())
    report_unmatched(n_missing, "joining predictions to observations", policy)
    return joined, n_missing
