"""Spatial Tweedie model fitting.

This module defines the boundary to the model-fitting engine and the single
automated recovery step of a run:

- :class:`SpatialModelBackend` is the engine interface: ``fit`` returns a
  :class:`FittedModel` exposing coefficients, convergence status and
  message, the gradient at the optimum and the practical spatial range;
  ``predict`` returns link-scale estimates for new data.
- :class:`TweedieFieldBackend` is the default engine: a Tweedie GLM with
  log link (statsmodels family, patsy design with a cubic regression spline
  on the distance covariate and an optional year factor) plus a Gaussian
  spatial field (and optional independent per-year fields) represented by
  its values at mesh nodes and estimated by penalized likelihood with
  L-BFGS-B.
- :func:`fit_with_retry` refits exactly once with intensified optimizer
  settings when the largest absolute gradient component exceeds the
  tolerance. Non-convergence is reported on the model, never raised.
"""

from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import patsy
import scipy.sparse
import statsmodels.api as sm
from scipy.optimize import curve_fit, minimize
from scipy.spatial.distance import pdist
from scipy.special import kv

from atlantis_sdm.core.config import ModelConfig, OptimizerSettings
from atlantis_sdm.core.constants import (
    LBFGS_FTOL,
    LBFGS_GTOL,
    MATERN_PRACTICAL_RANGE_FACTOR,
    VARIOGRAM_MAX_LAG_FRACTION,
    VARIOGRAM_N_BINS,
)
from atlantis_sdm.logger import get_logger
from atlantis_sdm.spatial.mesh import SpatialMesh

logger = get_logger(__name__)

# Linear predictor bounds keep exp() finite during line searches
ETA_MIN = -50.0
ETA_MAX = 50.0


@dataclass
class FormulaSpec:
    """Fixed-effect formula of the model.

    Attributes
    ----------
    response : str
        Response column (CPUE on the natural scale)
    covariate : str
        Covariate with a smooth effect (distance from shore)
    knots : int
        Basis dimension of the cubic regression spline
    year_factor : bool
        Include a per-year categorical effect
    """

    response: str = "cpue_kg_km2"
    covariate: str = "distance_km"
    knots: int = 3
    year_factor: bool = True

    @classmethod
    def from_config(cls, config: ModelConfig) -> FormulaSpec:
        return cls(
            response=config.response,
            covariate=config.covariate,
            knots=config.smooth_knots,
            year_factor=config.year_factor,
        )

    def rhs(self) -> str:
        """Right-hand side in patsy syntax."""
        terms = [f"cr({self.covariate}, df={self.knots}, constraints='center')"]
        if self.year_factor:
            terms.append("C(year)")
        return " + ".join(terms)

    def to_formula(self) -> str:
        return f"{self.response} ~ {self.rhs()}"


@dataclass
class FittedModel:
    """A fitted spatial model.

    Attributes
    ----------
    coefficients : pd.Series
        Fixed-effect estimates (intercept, spline basis, year effects)
    status : int
        Convergence code, 0 = success, nonzero = check needed
    message : str
        Optimizer convergence message
    gradient : np.ndarray
        Gradient of the objective at the returned optimum (all parameters)
    practical_range_km : float
        Distance at which spatial correlation falls to about 0.13; NaN when
        the model has no field or the range cannot be estimated
    spatial_field : np.ndarray or None
        Field values at mesh nodes [n_nodes]
    spatiotemporal_field : np.ndarray or None
        Per-year field values [n_years, n_nodes]
    fitted : np.ndarray
        Fitted means at the observations (natural scale)
    """

    formula: FormulaSpec
    coefficients: pd.Series
    status: int
    message: str
    gradient: np.ndarray
    practical_range_km: float
    dispersion: float
    tweedie_power: float
    fitted: np.ndarray
    n_obs: int
    years: List[int]
    settings: OptimizerSettings
    objective: float = np.nan
    n_iterations: int = 0
    fit_seconds: float = 0.0
    spatial_field: Optional[np.ndarray] = None
    spatiotemporal_field: Optional[np.ndarray] = None
    mesh: Optional[SpatialMesh] = field(default=None, repr=False)
    design_info: Any = field(default=None, repr=False)
    covariate_range: Tuple[float, float] = (np.nan, np.nan)
    backend: Optional["SpatialModelBackend"] = field(default=None, repr=False)

    @property
    def max_gradient(self) -> float:
        """Largest absolute gradient component (NaN for an empty gradient)."""
        if self.gradient is None or len(self.gradient) == 0:
            return np.nan
        return float(np.max(np.abs(self.gradient)))

    @property
    def converged(self) -> bool:
        return self.status == 0

    def predict(self, newdata: pd.DataFrame) -> np.ndarray:
        """Link-scale predictions through the backend that fitted the model."""
        if self.backend is None:
            raise RuntimeError("Model has no backend attached for prediction")
        return self.backend.predict(self, newdata)

    def summary(self) -> Dict[str, Any]:
        return {
            "formula": self.formula.to_formula(),
            "status": self.status,
            "message": self.message,
            "max_gradient": self.max_gradient,
            "practical_range_km": self.practical_range_km,
            "dispersion": self.dispersion,
            "tweedie_power": self.tweedie_power,
            "n_obs": self.n_obs,
            "n_iterations": self.n_iterations,
            "fit_seconds": self.fit_seconds,
        }


# ============================================================================
# Engine interface
# ============================================================================


class SpatialModelBackend(abc.ABC):
    """Interface of a spatial model-fitting engine."""

    @abc.abstractmethod
    def fit(
        self,
        observations: pd.DataFrame,
        formula: FormulaSpec,
        mesh: SpatialMesh,
        config: ModelConfig,
        optimizer: OptimizerSettings,
    ) -> FittedModel:
        """Fit the model and return it with its convergence diagnostics."""

    @abc.abstractmethod
    def predict(self, model: FittedModel, newdata: pd.DataFrame) -> np.ndarray:
        """Return link-scale predictions; NaN where a row cannot be predicted."""


# ============================================================================
# Practical range
# ============================================================================


def matern_semivariogram(h, nugget, sill, kappa):
    """Matérn (smoothness 1) semivariogram."""
    kh = np.maximum(kappa * np.asarray(h, dtype=float), 1e-12)
    return nugget + sill * (1.0 - kh * kv(1, kh))


def estimate_practical_range(
    nodes: np.ndarray, values: np.ndarray, n_bins: int = VARIOGRAM_N_BINS
) -> float:
    """Practical range of a field from its empirical semivariogram.

    A Matérn (smoothness 1) semivariogram is fitted to binned half squared
    differences between node values; the practical range is sqrt(8)/kappa.

    Parameters
    ----------
    nodes : np.ndarray
        Node coordinates in km [n, 2]
    values : np.ndarray
        Field values at the nodes [n]

    Returns
    -------
    float
        Practical range in km, NaN if it cannot be estimated
    """
    values = np.asarray(values, dtype=float)
    if len(values) < 4 or not np.isfinite(values).all() or np.var(values) <= 0:
        return np.nan

    distances = pdist(nodes)
    semivar = 0.5 * pdist(values.reshape(-1, 1), metric="sqeuclidean")
    max_lag = distances.max() * VARIOGRAM_MAX_LAG_FRACTION
    if max_lag <= 0:
        return np.nan

    edges = np.linspace(0.0, max_lag, n_bins + 1)
    which = np.digitize(distances, edges) - 1
    lags, gammas = [], []
    for b in range(n_bins):
        in_bin = which == b
        if in_bin.sum() >= 3:
            lags.append(distances[in_bin].mean())
            gammas.append(semivar[in_bin].mean())
    if len(lags) < 3:
        return np.nan

    lags = np.asarray(lags)
    gammas = np.asarray(gammas)
    p0 = (gammas[0] * 0.1, float(np.var(values)), 2.0 * MATERN_PRACTICAL_RANGE_FACTOR / max_lag)
    try:
        (_, _, kappa), _ = curve_fit(
            matern_semivariogram,
            lags,
            gammas,
            p0=p0,
            bounds=([0.0, 0.0, 1e-8], [np.inf, np.inf, np.inf]),
            maxfev=5000,
        )
    except (RuntimeError, ValueError) as e:
        logger.warning(f"Practical range could not be estimated: {e}")
        return np.nan

    return float(MATERN_PRACTICAL_RANGE_FACTOR / kappa)


# ============================================================================
# Default backend
# ============================================================================


class TweedieFieldBackend(SpatialModelBackend):
    """Tweedie GLM (log link) with penalized mesh-based Gaussian fields.

    The linear predictor is

        eta = X beta + A u + A_t v_t

    where ``X`` is the patsy design of the fixed-effect formula, ``A`` the
    mesh projection matrix, ``u`` the spatial field at mesh nodes and
    ``v_t`` independent per-year fields (spatiotemporal "iid"). The
    objective is half the Tweedie deviance plus ``0.5 * field_penalty *
    u' Q u`` for each field, where ``Q`` is the mesh SPDE precision from
    :meth:`SpatialMesh.precision_matrix` (barrier-aware when the mesh has
    land triangles). The objective is not rescaled, so the reported
    gradient is that of the full penalized deviance.
    """

    def fit(
        self,
        observations: pd.DataFrame,
        formula: FormulaSpec,
        mesh: SpatialMesh,
        config: ModelConfig,
        optimizer: OptimizerSettings,
    ) -> FittedModel:
        start = time.time()
        power = config.tweedie_power
        family = sm.families.Tweedie(var_power=power, link=sm.families.links.Log())

        data = observations.reset_index(drop=True)
        y = data[formula.response].to_numpy(dtype=float)
        n_obs = len(y)

        X_fixed = patsy.dmatrix(formula.rhs(), data, return_type="dataframe")
        if len(X_fixed) != n_obs:
            raise ValueError(
                f"Design has {len(X_fixed)} rows for {n_obs} observations; "
                f"check '{formula.covariate}' for missing values"
            )
        n_fixed = X_fixed.shape[1]
        years = sorted(int(yr) for yr in data["year"].unique())

        blocks, precisions = self._field_design(data, mesh, config, years)
        X = scipy.sparse.hstack(
            [scipy.sparse.csr_matrix(X_fixed.to_numpy())] + blocks, format="csr"
        )
        penalty = config.field_penalty * scipy.sparse.block_diag(
            [scipy.sparse.csr_matrix((n_fixed, n_fixed))] + precisions, format="csr"
        )

        def objective(theta):
            eta = np.clip(X @ theta, ETA_MIN, ETA_MAX)
            mu = np.exp(eta)
            shrink = penalty @ theta
            value = 0.5 * family.deviance(y, mu) + 0.5 * theta @ shrink
            # d(deviance/2)/d(eta) = mu^(1-p) * (mu - y) under the log link
            score = mu ** (1.0 - power) * (mu - y)
            grad = X.T @ score + shrink
            return value, np.asarray(grad).ravel()

        theta = np.zeros(X.shape[1])
        intercept = list(X_fixed.columns).index("Intercept")
        mean_y = y.mean() if n_obs else 0.0
        theta[intercept] = np.log(mean_y) if mean_y > 0 else ETA_MIN / 5.0

        result = None
        n_iterations = 0
        for pass_idx in range(optimizer.passes):
            result = minimize(
                objective,
                theta,
                jac=True,
                method="L-BFGS-B",
                options={
                    "maxiter": optimizer.maxiter,
                    "maxfun": optimizer.maxfun,
                    "ftol": LBFGS_FTOL,
                    "gtol": LBFGS_GTOL,
                },
            )
            theta = result.x
            n_iterations += int(result.nit)
            logger.debug(
                f"Optimizer pass {pass_idx + 1}/{optimizer.passes}: "
                f"f={result.fun:.6g}, status={result.status}"
            )

        status = 0 if result.success else int(result.status or 1)
        message = result.message
        if isinstance(message, bytes):
            message = message.decode()

        eta = np.clip(X @ theta, ETA_MIN, ETA_MAX)
        mu = np.exp(eta)
        dof = n_obs - n_fixed
        dispersion = (
            float(np.sum((y - mu) ** 2 / family.variance(mu)) / dof) if dof > 0 else np.nan
        )

        beta = pd.Series(theta[:n_fixed], index=X_fixed.columns)
        spatial, spatiotemporal = self._split_fields(theta[n_fixed:], mesh, config, years)
        practical_range = self._practical_range(
            data, mesh, spatial, spatiotemporal, config
        )
        cov = data[formula.covariate].to_numpy(dtype=float)

        model = FittedModel(
            formula=formula,
            coefficients=beta,
            status=status,
            message=str(message),
            gradient=np.asarray(result.jac, dtype=float),
            practical_range_km=practical_range,
            dispersion=dispersion,
            tweedie_power=power,
            fitted=mu,
            n_obs=n_obs,
            years=years,
            settings=optimizer,
            objective=float(result.fun),
            n_iterations=n_iterations,
            fit_seconds=time.time() - start,
            spatial_field=spatial,
            spatiotemporal_field=spatiotemporal,
            mesh=mesh,
            design_info=X_fixed.design_info,
            covariate_range=(float(np.min(cov)), float(np.max(cov))),
            backend=self,
        )
        logger.info(
            f"Fitted {formula.to_formula()} (n={n_obs}): status={status}, "
            f"max|grad|={model.max_gradient:.3g}, {model.fit_seconds:.1f}s"
        )
        return model

    def predict(self, model: FittedModel, newdata: pd.DataFrame) -> np.ndarray:
        data = newdata.reset_index(drop=True)
        eta = np.full(len(data), np.nan)

        covariate = data[model.formula.covariate].to_numpy(dtype=float)
        ok = np.isfinite(covariate)
        if model.formula.year_factor or model.spatiotemporal_field is not None:
            ok &= data["year"].isin(model.years).to_numpy()
        if not ok.any():
            return eta

        subset = data.loc[ok].copy()
        # Clamp to the fitted covariate range: the spline is not extrapolated
        lo, hi = model.covariate_range
        subset[model.formula.covariate] = np.clip(
            subset[model.formula.covariate].to_numpy(dtype=float), lo, hi
        )
        (X_new,) = patsy.build_design_matrices([model.design_info], subset)
        linear = np.asarray(X_new) @ model.coefficients.to_numpy()

        if model.mesh is not None and (
            model.spatial_field is not None or model.spatiotemporal_field is not None
        ):
            A = model.mesh.projection_matrix(subset[["X", "Y"]].to_numpy(dtype=float))
            if model.spatial_field is not None:
                linear = linear + A @ model.spatial_field
            if model.spatiotemporal_field is not None:
                year_index = {yr: i for i, yr in enumerate(model.years)}
                rows = subset["year"].map(year_index).to_numpy(dtype=int)
                st_nodes = model.spatiotemporal_field[rows]
                linear = linear + np.asarray(A.multiply(st_nodes).sum(axis=1)).ravel()

        eta[ok] = linear
        return eta

    # ------------------------------------------------------------------

    @staticmethod
    def _field_design(
        data: pd.DataFrame, mesh: SpatialMesh, config: ModelConfig, years: List[int]
    ):
        blocks, precisions = [], []
        if not (config.spatial_field or config.spatiotemporal == "iid"):
            return blocks, precisions

        A = mesh.projection_matrix(data[["X", "Y"]].to_numpy(dtype=float))
        outside = int((np.asarray(A.sum(axis=1)).ravel() == 0).sum())
        if outside:
            logger.warning(f"{outside} observation(s) fall outside the mesh")
        precision = mesh.precision_matrix(config.field_range_km)

        if config.spatial_field:
            blocks.append(A)
            precisions.append(precision)
        if config.spatiotemporal == "iid":
            year_values = data["year"].to_numpy()
            for yr in years:
                indicator = scipy.sparse.diags((year_values == yr).astype(float))
                blocks.append(scipy.sparse.csr_matrix(indicator @ A))
                precisions.append(precision)
        return blocks, precisions

    @staticmethod
    def _split_fields(
        values: np.ndarray, mesh: SpatialMesh, config: ModelConfig, years: List[int]
    ):
        spatial, spatiotemporal = None, None
        offset = 0
        if config.spatial_field:
            spatial = values[: mesh.n_nodes]
            offset = mesh.n_nodes
        if config.spatiotemporal == "iid":
            spatiotemporal = values[offset:].reshape(len(years), mesh.n_nodes)
        return spatial, spatiotemporal

    @staticmethod
    def _practical_range(
        data: pd.DataFrame,
        mesh: SpatialMesh,
        spatial: Optional[np.ndarray],
        spatiotemporal: Optional[np.ndarray],
        config: ModelConfig,
    ) -> float:
        if spatial is None and spatiotemporal is None:
            return np.nan
        # Only nodes informed by data carry information about the range
        A = mesh.projection_matrix(data[["X", "Y"]].to_numpy(dtype=float))
        supported = np.asarray(A.sum(axis=0)).ravel() > 0
        field_values = spatial if spatial is not None else spatiotemporal.mean(axis=0)
        return estimate_practical_range(mesh.nodes[supported], field_values[supported])


# ============================================================================
# Retry policy
# ============================================================================


def needs_refit(model: FittedModel, tolerance: float) -> bool:
    """True if the largest absolute gradient component exceeds ``tolerance``.

    A gradient exactly at the tolerance does not trigger a refit; a
    non-finite gradient does.
    """
    max_grad = model.max_gradient
    return not np.isfinite(max_grad) or max_grad > tolerance


def fit_with_retry(
    backend: SpatialModelBackend,
    observations: pd.DataFrame,
    formula: FormulaSpec,
    mesh: SpatialMesh,
    config: ModelConfig,
) -> Tuple[FittedModel, bool]:
    """Fit a model, refitting once with stronger settings if needed.

    Parameters
    ----------
    backend : SpatialModelBackend
        Fitting engine
    observations : pd.DataFrame
        Zero-filled observations with response, covariate, year, X, Y
    formula : FormulaSpec
        Fixed-effect formula
    mesh : SpatialMesh
        Mesh for the spatial field(s)
    config : ModelConfig
        Family, field toggles, tolerance and optimizer budgets

    Returns
    -------
    model : FittedModel
        Final model; its status/message/gradient describe the final fit
    refitted : bool
        True if the retry was performed
    """
    model = backend.fit(observations, formula, mesh, config, config.initial_optimizer)
    if not needs_refit(model, config.gradient_tolerance):
        return model, False

    logger.warning(
        f"Max gradient {model.max_gradient:.3g} exceeds {config.gradient_tolerance:g}; "
        f"refitting with maxiter={config.retry_optimizer.maxiter}, "
        f"passes={config.retry_optimizer.passes}"
    )
    model = backend.fit(observations, formula, mesh, config, config.retry_optimizer)
    if needs_refit(model, config.gradient_tolerance):
        logger.warning(
            f"Refit still has max gradient {model.max_gradient:.3g} "
            f"(status {model.status}: {model.message}); reporting as is"
        )
    return model, True
