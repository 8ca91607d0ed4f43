"""
Tests for CSV outputs.
"""

import pandas as pd
import pytest

from atlantis_sdm.core.validation import ValidationRecord
from atlantis_sdm.io.outputs import output_path, slugify, write_box_biomass, write_validation


class TestPaths:
    """Tests for output file naming."""

    def test_slugify(self):
        """Labels become lower-case underscore slugs."""
        assert slugify("Atlantic cod") == "atlantic_cod"
        assert slugify(" Gadus morhua (adult) ") == "gadus_morhua_adult"

    def test_output_path(self, tmp_path):
        """Templates render group and stage."""
        path = output_path("{group}_{stage}_box_biomass.csv", tmp_path, "Atlantic cod", "adult")
        assert path == tmp_path / "atlantic_cod_adult_box_biomass.csv"

    def test_extra_placeholders(self, tmp_path):
        """Figure templates take a name placeholder."""
        path = output_path("{group}_{stage}_{name}.png", tmp_path, "cod", "all", name="mesh")
        assert path.name == "cod_all_mesh.png"


class TestWriters:
    """Tests for the table writers."""

    def test_write_box_biomass(self, tmp_path):
        """The biomass CSV has exactly the three output columns."""
        table = pd.DataFrame({
            "box_id": [0, 1],
            "cpue_kg_km2": [10.0, float("nan")],
            "biomass_t": [0.5, float("nan")],
            "extra": ["a", "b"],
        })
        path = write_box_biomass(table, tmp_path / "out" / "biomass.csv")
        written = pd.read_csv(path)
        assert list(written.columns) == ["box_id", "cpue_kg_km2", "biomass_t"]
        assert len(written) == 2
        assert written["biomass_t"].isna().iloc[1]

    def test_write_box_biomass_missing_column(self, tmp_path):
        """A table without biomass is rejected."""
        with pytest.raises(ValueError, match="biomass_t"):
            write_box_biomass(pd.DataFrame({"box_id": [0], "cpue_kg_km2": [1.0]}), tmp_path / "x.csv")

    def test_write_validation(self, tmp_path):
        """The validation CSV is a single row."""
        record = ValidationRecord(
            group="cod", convergence=1, message="ABNORMAL_TERMINATION_IN_LNSRCH",
            max_gradient=0.02, practical_range_km=float("nan"), correlation=0.5,
            rmse=2.0, nrmse_percent=8.0, n_obs=30, refitted=True,
        )
        path = write_validation(record, tmp_path / "validation.csv")
        written = pd.read_csv(path)
        assert len(written) == 1
        assert written.loc[0, "convergence"] == 1
        assert written.loc[0, "message"] == "ABNORMAL_TERMINATION_IN_LNSRCH"
        assert bool(written.loc[0, "refitted"]) is True
