"""
Run species distribution models for Atlantis box initialization.

Usage:
    python run_sdm.py config.json --survey survey.xlsx --boxes boxes.shp \
        --grid grid.csv

Or with a coastline (distance covariate, barrier mesh, figures):
    python run_sdm.py config.json --survey survey.xlsx --boxes boxes.shp \
        --grid grid.csv --coastline land.shp --plots

The JSON config holds the settings shared by all groups plus a "groups"
list; each entry overrides "group", "species" and "stage":

    {
        "crs": "EPSG:32619",
        "mesh": {"cutoff_km": 15},
        "groups": [
            {"group": "Atlantic cod", "species": "Gadus morhua", "stage": "adult"},
            {"group": "Atlantic cod", "species": "Gadus morhua", "stage": "juvenile"}
        ]
    }
"""

import argparse
import json
import sys
from pathlib import Path

# Add src to path for atlantis_sdm imports
sys.path.insert(0, str(Path(__file__).parent / "src"))


def main():
    parser = argparse.ArgumentParser(description="Run Atlantis SDM groups")
    parser.add_argument("config", help="JSON run configuration")
    parser.add_argument("--survey", required=True, help="Survey export (.xlsx or .csv)")
    parser.add_argument("--sheet", default=0, help="Excel sheet name or index")
    parser.add_argument("--boxes", required=True, help="Atlantis box polygons")
    parser.add_argument("--grid", required=True, help="Prediction grid (.csv or vector)")
    parser.add_argument("--coastline", default=None, help="Land polygons")
    parser.add_argument("--plots", action="store_true", help="Write diagnostic figures")
    parser.add_argument("--seed", type=int, default=None, help="Residual random seed")
    parser.add_argument("--log-file", default=None, help="Also log to this file")

    args = parser.parse_args()

    from atlantis_sdm.core.config import RunConfig
    from atlantis_sdm.core.exceptions import SDMError
    from atlantis_sdm.core.survey import clean_survey, read_survey
    from atlantis_sdm.logger import configure_file_logging, get_logger
    from atlantis_sdm.pipeline import run_group
    from atlantis_sdm.spatial.gis_utils import (
        load_box_geometry,
        load_coastline,
        load_prediction_grid,
    )

    logger = get_logger()
    if args.log_file:
        configure_file_logging(args.log_file)

    with open(args.config) as f:
        settings = json.load(f)
    groups = settings.pop("groups", None) or [{"group": settings.pop("group", "group")}]
    configs = [RunConfig.from_dict({**settings, **entry}) for entry in groups]
    first = configs[0]

    sheet = int(args.sheet) if str(args.sheet).isdigit() else args.sheet
    survey = clean_survey(read_survey(args.survey, sheet_name=sheet), first.survey)
    boxes = load_box_geometry(args.boxes, id_field=first.box_id_field, crs=first.crs)
    coastline = load_coastline(args.coastline, crs=first.crs) if args.coastline else None
    # With a coastline the distance covariate is computed per run
    grid = load_prediction_grid(
        args.grid, covariate=None if coastline is not None else first.model.covariate
    )

    print(f"\n{'='*50}")
    print("  Atlantis SDM")
    print(f"{'='*50}")
    print(f"\n  {survey!r}")
    print(f"  {len(configs)} group(s), outputs in {first.output.path}\n")

    failures = 0
    for config in configs:
        try:
            result = run_group(
                survey,
                boxes,
                grid,
                config,
                coastline=coastline,
                make_plots=args.plots,
                seed=args.seed,
            )
        except SDMError as e:
            failures += 1
            logger.error(f"{config.group} ({config.stage}) failed: {e}")
            continue
        record = result.validation
        print(
            f"  {config.group} ({config.stage}): status={record.convergence}, "
            f"r={record.correlation:.3f}, NRMSE={record.nrmse_percent:.1f}%"
        )

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
