"""
Shared synthetic fixtures for the atlantis_sdm test suite.

The synthetic survey covers a small area of the Gulf of Maine (UTM 19N):
25 stations sampled once a year for three years, with haddock caught in
every haul (so every haul appears in the catch records) and adult/juvenile
cod caught in a subset of hauls. Land lies west of 69.05°W.
"""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box as rectangle

from atlantis_sdm.core.config import SurveyConfig
from atlantis_sdm.core.survey import clean_survey
from atlantis_sdm.spatial.gis_utils import create_regular_grid, prepare_boxes

CRS = "EPSG:32619"
YEARS = [2018, 2019, 2020]
N_STATIONS = 25
LON_RANGE = (-68.9, -68.1)
LAT_RANGE = (43.6, 44.2)


def make_raw_survey(n_stations=N_STATIONS, years=YEARS, seed=1):
    """Raw survey export with the headers used by the field crew."""
    rng = np.random.default_rng(seed)
    lon = rng.uniform(*LON_RANGE, n_stations)
    lat = rng.uniform(*LAT_RANGE, n_stations)

    rows = []
    for year in years:
        for i in range(n_stations):
            haul = {
                "Station": f"S{i:02d}",
                "Date": f"{year}-06-{(i % 20) + 1:02d}",
                "Time": 805 + (i % 10) * 100,
                "Latitude": lat[i],
                "Longitude": lon[i],
                "Swept Area (km2)": 0.04,
            }
            rows.append({**haul, "Species": "Melanogrammus aeglefinus",
                         "Life Stage": "adult", "Count": 3, "Mass": 1500.0})
            # Cod is more common towards the coast (west)
            if rng.random() < 0.85 - 0.8 * (lon[i] - LON_RANGE[0]):
                count = int(rng.integers(1, 20))
                rows.append({**haul, "Species": "Gadus morhua", "Life Stage": "adult",
                             "Count": count, "Mass": count * rng.uniform(800, 2500)})
            if rng.random() < 0.3:
                rows.append({**haul, "Species": "Gadus morhua", "Life Stage": "juvenile",
                             "Count": 5, "Mass": 250.0})
    return pd.DataFrame(rows)


def projected_bounds():
    """(min_x, min_y, max_x, max_y) of the survey area in metres."""
    corners = gpd.GeoSeries(
        gpd.points_from_xy(
            [LON_RANGE[0], LON_RANGE[0], LON_RANGE[1], LON_RANGE[1]],
            [LAT_RANGE[0], LAT_RANGE[1], LAT_RANGE[0], LAT_RANGE[1]],
        ),
        crs="EPSG:4326",
    ).to_crs(CRS)
    return corners.total_bounds


def make_boxes(pad_m=5000.0):
    """Four rectangular boxes covering the survey area; box 3 is boundary."""
    min_x, min_y, max_x, max_y = projected_bounds()
    min_x, min_y, max_x, max_y = min_x - pad_m, min_y - pad_m, max_x + pad_m, max_y + pad_m
    mid_x, mid_y = (min_x + max_x) / 2, (min_y + max_y) / 2
    polygons = [
        rectangle(min_x, min_y, mid_x, mid_y),
        rectangle(mid_x, min_y, max_x, mid_y),
        rectangle(min_x, mid_y, mid_x, max_y),
        rectangle(mid_x, mid_y, max_x, max_y),
    ]
    gdf = gpd.GeoDataFrame(
        {"box_id": [0, 1, 2, 3], "boundary": [False, False, False, True]},
        geometry=polygons,
        crs=CRS,
    )
    return prepare_boxes(gdf, id_field="box_id")


def make_coastline():
    """Land polygon west of the survey area, in the projected CRS."""
    land = gpd.GeoSeries(
        [rectangle(-70.5, 43.0, -69.05, 44.8)], crs="EPSG:4326"
    ).to_crs(CRS)
    return gpd.GeoDataFrame({"name": ["mainland"]}, geometry=land, crs=CRS)


@pytest.fixture
def raw_survey():
    return make_raw_survey()


@pytest.fixture
def survey(raw_survey):
    return clean_survey(raw_survey, SurveyConfig())


@pytest.fixture
def boxes():
    return make_boxes()


@pytest.fixture
def coastline():
    return make_coastline()


@pytest.fixture
def grid(boxes):
    return create_regular_grid(boxes, spacing_km=8.0)


@pytest.fixture
def synthetic_observations():
    """Zero-inflated positive observations with a distance effect."""
    rng = np.random.default_rng(7)
    n_per_year = 40
    frames = []
    for k, year in enumerate(YEARS):
        x = rng.uniform(0, 60, n_per_year)
        y = rng.uniform(0, 60, n_per_year)
        distance = x / 2.0 + rng.uniform(0, 2, n_per_year)
        mu = np.exp(4.0 - 0.08 * distance + 0.2 * k)
        present = rng.random(n_per_year) < 0.7
        cpue = np.where(present, rng.gamma(2.0, mu / 2.0), 0.0)
        frames.append(pd.DataFrame({
            "X": x, "Y": y, "distance_km": distance, "year": year, "cpue_kg_km2": cpue,
        }))
    obs = pd.concat(frames, ignore_index=True)
    obs["obs_id"] = np.arange(len(obs))
    return obs
