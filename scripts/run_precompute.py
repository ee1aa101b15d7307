"""Run one daily precompute (today + tomorrow) for every active patio.

Intended for cron or a one-off backfill; the long-running worker uses
``PrecomputationService.run_scheduler`` instead.
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from datetime import date

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from api import build_services
from data_loading import load_buildings_geojson, load_patios_geojson
from logging_config import setup_logging
from settings import get_settings
from weather import MockWeatherProvider

logger = logging.getLogger("run_precompute")


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--buildings", required=True, help="GeoJSON FeatureCollection of building footprints")
    parser.add_argument("--patios", required=True, help="GeoJSON FeatureCollection of patio polygons")
    parser.add_argument(
        "--date",
        default=None,
        help="Local run date (YYYY-MM-DD); defaults to today in the city timezone",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Use the deterministic mock weather provider instead of met.no/Open-Meteo",
    )
    parser.add_argument("--cache-dir", default=None, help="Override the shared day-set directory")
    args = parser.parse_args()

    setup_logging("sunnyseat-precompute")
    settings = get_settings()
    run_date = date.fromisoformat(args.date) if args.date else None

    providers = [MockWeatherProvider(nowcast_hours=settings.nowcast_horizon_hours)] if args.offline else None
    services = build_services(
        load_patios_geojson(args.patios),
        load_buildings_geojson(args.buildings),
        settings=settings,
        providers=providers,
        cache_dir=args.cache_dir,
    )
    services.ingestion.ingest_once()

    run = services.precompute.run_daily(run_date)
    if run is None:
        logger.info("Run date already claimed by another worker")
        return 0

    print(json.dumps(run.to_dict(), indent=2))
    integrity = services.precompute.validate_integrity(run.run_date)
    if not integrity["ok"]:
        logger.warning("Day-set coverage %.1f%% below target", integrity["coverage"] * 100)
    return 1 if run.status.value == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
