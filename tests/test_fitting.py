"""
Tests for model fitting, the engine interface and the convergence retry.
"""

import numpy as np
import pandas as pd
import patsy
import pytest
import statsmodels.api as sm
from shapely.geometry import box as rectangle

from atlantis_sdm.core.config import ModelConfig, OptimizerSettings
from atlantis_sdm.core.fitting import (
    FittedModel,
    FormulaSpec,
    SpatialModelBackend,
    TweedieFieldBackend,
    estimate_practical_range,
    fit_with_retry,
    needs_refit,
)
from atlantis_sdm.spatial.mesh import build_mesh


def make_model(gradient, settings=None, backend=None, status=0):
    return FittedModel(
        formula=FormulaSpec(),
        coefficients=pd.Series({"Intercept": 1.0}),
        status=status,
        message="CONVERGENCE",
        gradient=np.asarray(gradient, dtype=float),
        practical_range_km=np.nan,
        dispersion=1.0,
        tweedie_power=1.5,
        fitted=np.ones(3),
        n_obs=3,
        years=[2018],
        settings=settings or OptimizerSettings(),
        backend=backend,
    )


class CountingBackend(SpatialModelBackend):
    """Backend returning preset gradients and recording each fit call."""

    def __init__(self, gradients):
        self.gradients = list(gradients)
        self.calls = []

    def fit(self, observations, formula, mesh, config, optimizer):
        self.calls.append(optimizer)
        gradient = self.gradients[min(len(self.calls), len(self.gradients)) - 1]
        model = make_model(gradient, settings=optimizer, backend=self)
        if observations is not None:
            model.n_obs = len(observations)
            model.fitted = np.ones(len(observations))
            model.years = sorted(int(yr) for yr in observations["year"].unique())
        return model

    def predict(self, model, newdata):
        return np.zeros(len(newdata))


class TestFormulaSpec:
    """Tests for the fixed-effect formula."""

    def test_formula_with_year(self):
        """Smooth on distance plus a year factor."""
        spec = FormulaSpec(response="cpue_kg_km2", covariate="distance_km", knots=3)
        assert spec.to_formula() == (
            "cpue_kg_km2 ~ cr(distance_km, df=3, constraints='center') + C(year)"
        )

    def test_from_config(self):
        """Formula follows the model configuration."""
        spec = FormulaSpec.from_config(ModelConfig(smooth_knots=5, year_factor=False))
        assert spec.knots == 5
        assert "C(year)" not in spec.rhs()


class TestRetryPolicy:
    """Tests for the single convergence retry."""

    def test_gradient_at_tolerance_no_retry(self):
        """A gradient exactly at the tolerance does not trigger a refit."""
        backend = CountingBackend([[1e-3, -5e-4]])
        model, refitted = fit_with_retry(backend, None, FormulaSpec(), None, ModelConfig())
        assert not refitted
        assert len(backend.calls) == 1
        assert model.max_gradient == pytest.approx(1e-3)

    def test_gradient_above_tolerance_retries_once(self):
        """0.0011 > 0.001 triggers exactly one refit with the retry settings."""
        config = ModelConfig()
        backend = CountingBackend([[0.0011], [1e-5]])
        model, refitted = fit_with_retry(backend, None, FormulaSpec(), None, config)
        assert refitted
        assert len(backend.calls) == 2
        assert backend.calls[0] == config.initial_optimizer
        assert backend.calls[1] == config.retry_optimizer
        assert model.settings == config.retry_optimizer
        assert model.max_gradient == pytest.approx(1e-5)

    def test_retry_never_repeats(self):
        """A refit that still fails is reported, not retried again."""
        backend = CountingBackend([[0.5], [0.4]])
        model, refitted = fit_with_retry(backend, None, FormulaSpec(), None, ModelConfig())
        assert refitted
        assert len(backend.calls) == 2
        assert model.max_gradient == pytest.approx(0.4)

    def test_retry_settings_are_stronger(self):
        """Retry settings raise both iteration budgets and passes."""
        config = ModelConfig()
        assert config.retry_optimizer.maxiter > config.initial_optimizer.maxiter
        assert config.retry_optimizer.maxfun > config.initial_optimizer.maxfun
        assert config.retry_optimizer.passes > config.initial_optimizer.passes

    def test_non_finite_gradient_needs_refit(self):
        """NaN gradients are treated as not converged."""
        assert needs_refit(make_model([np.nan]), 1e-3)
        assert needs_refit(make_model([]), 1e-3)
        assert not needs_refit(make_model([0.0]), 1e-3)

    def test_max_gradient_uses_absolute_value(self):
        """Negative components count by magnitude."""
        assert make_model([0.1, -0.3]).max_gradient == pytest.approx(0.3)


class TestPracticalRange:
    """Tests for practical range estimation."""

    def test_constant_field_is_nan(self):
        """A flat field has no estimable range."""
        nodes = np.random.default_rng(0).uniform(0, 100, size=(50, 2))
        assert np.isnan(estimate_practical_range(nodes, np.zeros(50)))

    def test_too_few_nodes_is_nan(self):
        """Fewer than four nodes is not enough."""
        assert np.isnan(estimate_practical_range(np.zeros((3, 2)), np.arange(3.0)))

    def test_correlated_field(self):
        """A smooth Gaussian field gives a positive finite range."""
        rng = np.random.default_rng(11)
        nodes = rng.uniform(0, 100, size=(150, 2))
        d = np.linalg.norm(nodes[:, None, :] - nodes[None, :, :], axis=-1)
        cov = np.exp(-d / 15.0) + 1e-8 * np.eye(len(nodes))
        values = np.linalg.cholesky(cov) @ rng.standard_normal(len(nodes))
        practical_range = estimate_practical_range(nodes, values)
        assert np.isfinite(practical_range)
        assert practical_range > 0


class TestTweedieFieldBackend:
    """Tests for the default fitting engine on synthetic data."""

    @pytest.fixture
    def mesh(self, synthetic_observations):
        return build_mesh(
            synthetic_observations[["X", "Y"]].to_numpy(), cutoff_km=10.0
        )

    def test_fit_reports_diagnostics(self, synthetic_observations, mesh):
        """The fitted model exposes coefficients, status, message and gradient."""
        backend = TweedieFieldBackend()
        config = ModelConfig()
        model = backend.fit(
            synthetic_observations, FormulaSpec.from_config(config), mesh, config,
            config.initial_optimizer,
        )
        assert isinstance(model.status, int)
        assert isinstance(model.message, str)
        assert "Intercept" in model.coefficients.index
        assert any("C(year)" in name for name in model.coefficients.index)
        assert len(model.gradient) == len(model.coefficients) + mesh.n_nodes
        assert np.isfinite(model.max_gradient)
        assert model.spatial_field.shape == (mesh.n_nodes,)
        assert model.spatiotemporal_field is None
        assert (model.fitted > 0).all()
        assert model.n_obs == len(synthetic_observations)
        assert model.years == [2018, 2019, 2020]
        assert model.dispersion > 0

    def test_distance_effect_recovered(self, synthetic_observations, mesh):
        """Fitted means decrease with distance from shore, as simulated."""
        config = ModelConfig()
        model, _ = fit_with_retry(
            TweedieFieldBackend(), synthetic_observations,
            FormulaSpec.from_config(config), mesh, config,
        )
        near = synthetic_observations.assign(distance_km=1.0, year=2019)
        far = synthetic_observations.assign(distance_km=25.0, year=2019)
        assert np.mean(model.predict(near)) > np.mean(model.predict(far))

    def test_predict_unseen_year_is_nan(self, synthetic_observations, mesh):
        """Years outside the fitted factor levels cannot be predicted."""
        config = ModelConfig()
        model = TweedieFieldBackend().fit(
            synthetic_observations, FormulaSpec.from_config(config), mesh, config,
            config.initial_optimizer,
        )
        newdata = synthetic_observations.head(4).copy()
        newdata["year"] = [2019, 2099, 2020, 2099]
        eta = model.predict(newdata)
        assert np.isfinite(eta[[0, 2]]).all()
        assert np.isnan(eta[[1, 3]]).all()

    def test_covariate_clamped(self, synthetic_observations, mesh):
        """Covariates beyond the fitted range predict like the range edge."""
        config = ModelConfig()
        model = TweedieFieldBackend().fit(
            synthetic_observations, FormulaSpec.from_config(config), mesh, config,
            config.initial_optimizer,
        )
        lo, hi = model.covariate_range
        row = synthetic_observations.head(1)
        at_edge = model.predict(row.assign(distance_km=hi))
        beyond = model.predict(row.assign(distance_km=hi + 100.0))
        assert beyond == pytest.approx(at_edge)

    def test_without_spatial_field(self, synthetic_observations, mesh):
        """Disabling the field leaves only fixed effects and no range."""
        config = ModelConfig(spatial_field=False)
        model = TweedieFieldBackend().fit(
            synthetic_observations, FormulaSpec.from_config(config), mesh, config,
            config.initial_optimizer,
        )
        assert model.spatial_field is None
        assert np.isnan(model.practical_range_km)
        assert len(model.gradient) == len(model.coefficients)

    def test_spatiotemporal_iid(self, synthetic_observations, mesh):
        """Independent yearly fields add one node block per year."""
        config = ModelConfig(spatiotemporal="iid")
        model = TweedieFieldBackend().fit(
            synthetic_observations, FormulaSpec.from_config(config), mesh, config,
            config.initial_optimizer,
        )
        assert model.spatiotemporal_field.shape == (3, mesh.n_nodes)
        assert len(model.gradient) == len(model.coefficients) + 4 * mesh.n_nodes
        eta = model.predict(synthetic_observations)
        assert np.isfinite(eta).all()

    def test_summary(self, synthetic_observations, mesh):
        """Summary is a flat dict including the formula."""
        config = ModelConfig()
        model = TweedieFieldBackend().fit(
            synthetic_observations, FormulaSpec.from_config(config), mesh, config,
            config.initial_optimizer,
        )
        summary = model.summary()
        assert summary["formula"].startswith("cpue_kg_km2 ~")
        assert summary["n_obs"] == len(synthetic_observations)

    def test_gradient_is_unscaled(self, synthetic_observations, mesh):
        """The reported objective and gradient are those of the full half deviance."""
        config = ModelConfig(spatial_field=False)
        formula = FormulaSpec.from_config(config)
        model = TweedieFieldBackend().fit(
            synthetic_observations, formula, mesh, config, OptimizerSettings(maxiter=2),
        )
        family = sm.families.Tweedie(var_power=config.tweedie_power)
        y = synthetic_observations[formula.response].to_numpy(dtype=float)
        mu = model.fitted
        assert model.objective == pytest.approx(0.5 * family.deviance(y, mu), rel=1e-8)

        X = np.asarray(patsy.dmatrix(formula.rhs(), synthetic_observations))
        score = mu ** (1.0 - config.tweedie_power) * (mu - y)
        assert np.allclose(model.gradient, X.T @ score, rtol=1e-6, atol=1e-8)

    def test_land_barrier_changes_field(self, synthetic_observations):
        """Land between two sampled clusters changes the fitted spatial field."""
        obs = synthetic_observations[
            (synthetic_observations["X"] < 22.0) | (synthetic_observations["X"] > 38.0)
        ].copy()
        # The eastern cluster is richer than the distance effect alone explains
        east = obs["X"] > 38.0
        obs.loc[east, "cpue_kg_km2"] = obs.loc[east, "cpue_kg_km2"] * 5.0
        coords = obs[["X", "Y"]].to_numpy()
        land = rectangle(25_000, -10_000, 35_000, 70_000)

        open_mesh = build_mesh(coords, cutoff_km=6.0)
        barrier_mesh = build_mesh(
            coords, cutoff_km=6.0, barrier=land, range_fraction=0.1, scale_factor=1000.0,
        )
        assert barrier_mesh.has_barrier
        assert open_mesh.n_nodes == barrier_mesh.n_nodes

        config = ModelConfig(field_range_km=30.0)
        formula = FormulaSpec.from_config(config)
        backend = TweedieFieldBackend()
        without = backend.fit(obs, formula, open_mesh, config, config.initial_optimizer)
        with_land = backend.fit(obs, formula, barrier_mesh, config, config.initial_optimizer)
        assert not np.allclose(without.spatial_field, with_land.spatial_field, atol=1e-3)
