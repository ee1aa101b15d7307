"""Load already-validated GeoJSON building and patio layers into engine models."""

from __future__ import annotations

import json
import logging
import pathlib

from shapely import make_valid
from shapely.geometry import shape

from models import Building, HeightSource, Patio

logger = logging.getLogger(__name__)

METERS_PER_LEVEL = 3.0


def _as_float(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.lower().replace("m", "").strip()
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def _resolve_heights(properties: dict) -> tuple[float | None, HeightSource | None, tuple[tuple[HeightSource, float], ...]]:
    """Primary height plus lower-priority alternates found in the feature tags."""
    candidates: list[tuple[HeightSource, float]] = []

    surveyed = _as_float(properties.get("surveyed_height") or properties.get("height_surveyed"))
    if surveyed and surveyed > 0:
        candidates.append((HeightSource.SURVEYED, surveyed))

    direct_height = _as_float(properties.get("height"))
    if direct_height and direct_height > 0:
        candidates.append((HeightSource.OSM, direct_height))

    levels = _as_float(properties.get("building:levels"))
    if levels and levels > 0:
        candidates.append((HeightSource.OSM, levels * METERS_PER_LEVEL))

    if not candidates:
        return None, None, ()
    primary_source, primary_height = candidates[0]
    return primary_height, primary_source, tuple(candidates[1:])


def _polygon_from_feature(feature: dict):
    geom_json = feature.get("geometry")
    if not geom_json:
        return None
    geom = shape(geom_json)
    if geom.is_empty:
        return None
    if not geom.is_valid:
        geom = make_valid(geom)
        if geom.is_empty:
            return None
    if geom.geom_type not in ("Polygon", "MultiPolygon"):
        return None
    return geom


def _feature_id(feature: dict, properties: dict, fallback: str) -> str:
    for key in ("id", "osm_id", "@id"):
        value = properties.get(key)
        if value not in (None, ""):
            return str(value)
    if feature.get("id") not in (None, ""):
        return str(feature["id"])
    return fallback


def buildings_from_features(features: list[dict]) -> list[Building]:
    buildings = []
    skipped_nonpolygon = 0
    for i, feature in enumerate(features):
        geom = _polygon_from_feature(feature)
        if geom is None:
            skipped_nonpolygon += 1
            continue
        props = feature.get("properties") or {}
        height_m, source, alternates = _resolve_heights(props)
        buildings.append(
            Building(
                id=_feature_id(feature, props, f"building-{i}"),
                footprint=geom,
                height_m=height_m,
                height_source=source,
                alternate_heights=alternates,
                building_type=(props.get("building") or None),
            )
        )

    logger.info(
        "Building load diagnostics: total_features=%s, usable_polygons=%s, skipped_nonpolygon=%s",
        len(features),
        len(buildings),
        skipped_nonpolygon,
    )
    return buildings


def patios_from_features(features: list[dict]) -> list[Patio]:
    patios = []
    for i, feature in enumerate(features):
        geom = _polygon_from_feature(feature)
        props = feature.get("properties") or {}
        patio_id = _feature_id(feature, props, f"patio-{i}")
        if geom is None:
            logger.warning("Skipping patio %s without a polygon", patio_id)
            continue
        quality = _as_float(props.get("quality_score"))
        patios.append(
            Patio(
                id=patio_id,
                polygon=geom,
                quality_score=max(0.0, min(1.0, quality)) if quality is not None else 0.5,
                height_override=_as_float(props.get("height_override")),
                orientation=props.get("orientation"),
                review_needed=_as_bool(props.get("review_needed"), False),
                venue_id=props.get("venue_id"),
                name=props.get("name") or "",
                active=_as_bool(props.get("active"), True),
            )
        )
    logger.info("Loaded %s patios from %s features", len(patios), len(features))
    return patios


def _read_features(path: pathlib.Path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        return json.load(f).get("features", [])


def load_buildings_geojson(path: str | pathlib.Path) -> list[Building]:
    return buildings_from_features(_read_features(pathlib.Path(path)))


def load_patios_geojson(path: str | pathlib.Path) -> list[Patio]:
    return patios_from_features(_read_features(pathlib.Path(path)))
