"""
Tests for grid and observation prediction.
"""

import numpy as np
import pandas as pd
import pytest

from atlantis_sdm.core.config import OptimizerSettings
from atlantis_sdm.core.exceptions import JoinMismatchError
from atlantis_sdm.core.fitting import FittedModel, FormulaSpec, SpatialModelBackend
from atlantis_sdm.core.prediction import (
    back_transform,
    predict_grid,
    predict_observations,
    replicate_grid_by_year,
    report_unmatched,
)


class LinearBackend(SpatialModelBackend):
    """Link = 0.1 * distance + year offset; NaN for unknown years."""

    def fit(self, observations, formula, mesh, config, optimizer):
        raise NotImplementedError

    def predict(self, model, newdata):
        offsets = {2018: 0.0, 2019: 1.0}
        year_offset = newdata["year"].map(offsets).to_numpy(dtype=float)
        return 0.1 * newdata["distance_km"].to_numpy(dtype=float) + year_offset


@pytest.fixture
def model():
    return FittedModel(
        formula=FormulaSpec(),
        coefficients=pd.Series(dtype=float),
        status=0,
        message="ok",
        gradient=np.zeros(1),
        practical_range_km=np.nan,
        dispersion=1.0,
        tweedie_power=1.5,
        fitted=np.ones(1),
        n_obs=1,
        years=[2018, 2019],
        settings=OptimizerSettings(),
        backend=LinearBackend(),
    )


@pytest.fixture
def grid():
    return pd.DataFrame({
        "X": [0.0, 1.0, 2.0],
        "Y": [0.0, 0.0, 0.0],
        "distance_km": [0.0, 10.0, 20.0],
        "box_id": [1, 1, 2],
    })


class TestReplicateGrid:
    """Tests for per-year grid replication."""

    def test_one_copy_per_year(self, grid):
        """Rows = grid cells x years, each cell keeps its grid_id."""
        out = replicate_grid_by_year(grid, [2018, 2019, 2020])
        assert len(out) == 9
        assert out.groupby("year").size().tolist() == [3, 3, 3]
        assert out.groupby("grid_id").size().tolist() == [3, 3, 3]

    def test_no_years_raises(self, grid):
        """An empty year list is an error."""
        with pytest.raises(ValueError, match="year"):
            replicate_grid_by_year(grid, [])


class TestPredictGrid:
    """Tests for grid prediction."""

    def test_estimates_non_negative(self, model, grid):
        """Back-transformed estimates are exp(link) and never negative."""
        pred = predict_grid(model, grid)
        assert len(pred) == 6
        assert (pred["estimate"] >= 0).all()
        assert np.allclose(pred["estimate"], np.exp(pred["est_link"]))

    def test_default_years_are_fitted_years(self, model, grid):
        """Without explicit years, every fitted year is predicted."""
        pred = predict_grid(model, grid)
        assert sorted(pred["year"].unique()) == [2018, 2019]

    def test_unpredictable_rows_warn(self, model, grid, caplog):
        """Rows that cannot be predicted are counted and logged."""
        pred = predict_grid(model, grid, years=[2018, 2021])
        assert pred["estimate"].isna().sum() == 3
        assert "3 row(s) unmatched while predicting the grid" in caplog.text

    def test_unpredictable_rows_raise(self, model, grid):
        """With the 'raise' policy unpredictable rows abort the run."""
        with pytest.raises(JoinMismatchError, match="3 row"):
            predict_grid(model, grid, years=[2021], policy="raise")

    def test_log1p_preserves_ranking(self, model):
        """log1p-scaled estimates rank grid cells exactly like the estimates."""
        rng = np.random.default_rng(5)
        grid = pd.DataFrame({
            "X": rng.uniform(0, 50, 200),
            "Y": rng.uniform(0, 50, 200),
            "distance_km": rng.uniform(0, 40, 200),
        })
        estimate = predict_grid(model, grid)["estimate"].to_numpy()
        order = np.argsort(estimate, kind="stable")
        assert np.array_equal(np.argsort(np.log1p(estimate), kind="stable"), order)
        assert np.all(np.diff(np.log1p(estimate)[order]) >= 0)


class TestPredictObservations:
    """Tests for prediction at observation locations."""

    def test_join_by_obs_id(self, model):
        """Predictions follow obs_id regardless of row order."""
        obs = pd.DataFrame({
            "obs_id": [2, 0, 1],
            "distance_km": [20.0, 0.0, 10.0],
            "year": [2018, 2018, 2019],
            "X": [0.0, 0.0, 0.0],
            "Y": [0.0, 0.0, 0.0],
            "cpue_kg_km2": [5.0, 0.0, 3.0],
        })
        joined, n_missing = predict_observations(model, obs)
        assert n_missing == 0
        assert list(joined["obs_id"]) == [2, 0, 1]
        expected = np.exp([2.0, 0.0, 2.0])
        assert np.allclose(joined["estimate"], expected)
        assert list(joined["observed"]) == [5.0, 0.0, 3.0]

    def test_duplicate_coordinates_kept(self, model):
        """Observations sharing coordinates and covariates stay distinct."""
        obs = pd.DataFrame({
            "obs_id": [0, 1],
            "distance_km": [5.0, 5.0],
            "year": [2018, 2018],
            "X": [1.0, 1.0],
            "Y": [1.0, 1.0],
            "cpue_kg_km2": [0.0, 4.0],
        })
        joined, _ = predict_observations(model, obs)
        assert len(joined) == 2

    def test_missing_counted(self, model):
        """Unpredictable observations are counted, not dropped."""
        obs = pd.DataFrame({
            "obs_id": [0, 1],
            "distance_km": [5.0, 5.0],
            "year": [2018, 2030],
            "cpue_kg_km2": [1.0, 2.0],
        })
        joined, n_missing = predict_observations(model, obs)
        assert n_missing == 1
        assert len(joined) == 2
        assert joined["estimate"].isna().sum() == 1

    def test_requires_obs_id(self, model):
        """Observation prediction needs a stable row key."""
        obs = pd.DataFrame({"distance_km": [1.0], "year": [2018], "cpue_kg_km2": [1.0]})
        with pytest.raises(KeyError, match="obs_id"):
            predict_observations(model, obs)


class TestHelpers:
    """Tests for small prediction helpers."""

    def test_back_transform(self):
        """exp of the link."""
        assert back_transform([0.0, np.log(4.0)]) == pytest.approx([1.0, 4.0])

    def test_report_unmatched_zero_is_silent(self):
        """Nothing happens when everything matched."""
        report_unmatched(0, "anything", "raise")

    def test_report_unmatched_raise(self):
        """The error carries the count and context."""
        with pytest.raises(JoinMismatchError) as info:
            report_unmatched(4, "joining boxes", "raise")
        assert info.value.n_missing == 4
        assert "joining boxes" in str(info.value)
