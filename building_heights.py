"""Read-time resolution of building heights from competing sources."""

from __future__ import annotations

import logging
import math

import pyproj
from shapely.errors import GEOSException

from models import Building, HeightResolution, HeightSource, Patio

logger = logging.getLogger(__name__)

GEOD = pyproj.Geod(ellps="WGS84")

MAX_VALID_HEIGHT_M = 200.0
MIN_MEANINGFUL_HEIGHT_M = 3.0
DEFAULT_HEIGHT_M = 7.0
HEURISTIC_MIN_HEIGHT_M = 3.0
HEURISTIC_MAX_HEIGHT_M = 30.0
METERS_PER_FLOOR = 3.0

# (upper footprint area m2, floors)
FLOOR_AREA_BANDS: tuple[tuple[float, int], ...] = (
    (100.0, 1),
    (300.0, 2),
    (600.0, 3),
    (1200.0, 4),
    (2400.0, 5),
)
MAX_HEURISTIC_FLOORS = 6

TYPE_DEFAULT_HEIGHTS = {
    "house": 8.0,
    "residential": 9.0,
    "apartments": 12.0,
    "commercial": 14.0,
    "retail": 12.0,
    "office": 15.0,
    "industrial": 11.0,
    "warehouse": 10.0,
    "hospital": 18.0,
    "hotel": 20.0,
    "school": 12.0,
    "church": 22.0,
    "cathedral": 25.0,
}


def is_valid_height(height_m: float | None) -> bool:
    if height_m is None:
        return False
    return math.isfinite(height_m) and 0.0 < height_m <= MAX_VALID_HEIGHT_M


def footprint_area_m2(building: Building) -> float:
    try:
        area, _ = GEOD.geometry_area_perimeter(building.footprint)
    except (GEOSException, ValueError, AttributeError):
        return 0.0
    return abs(area)


def heuristic_height(building: Building) -> float:
    """Bounded height guess from building type or footprint size."""
    building_type = (building.building_type or "").lower()
    if building_type in TYPE_DEFAULT_HEIGHTS:
        return _bounded(TYPE_DEFAULT_HEIGHTS[building_type])

    area = footprint_area_m2(building)
    if area <= 0:
        return DEFAULT_HEIGHT_M

    floors = MAX_HEURISTIC_FLOORS
    for upper, band_floors in FLOOR_AREA_BANDS:
        if area < upper:
            floors = band_floors
            break
    variation = (area % 100.0) / 100.0 * 0.5
    return _bounded(floors * METERS_PER_FLOOR + variation)


class BuildingHeightManager:
    """Resolves effective heights with strict Surveyed > Osm > Heuristic priority.

    Never mutates buildings and never raises for missing data.
    """

    def __init__(self, min_meaningful_height_m: float = MIN_MEANINGFUL_HEIGHT_M) -> None:
        self.min_meaningful_height_m = min_meaningful_height_m
        self._resolved: dict[str, HeightResolution] = {}

    def resolve(self, building: Building) -> HeightResolution:
        cached = self._resolved.get(building.id)
        if cached is not None:
            return cached
        resolution = self._resolve(building)
        self._resolved[building.id] = resolution
        return resolution

    def _resolve(self, building: Building) -> HeightResolution:
        valid = [(source, h) for source, h in building.height_candidates() if is_valid_height(h)]
        if valid:
            source, height = min(valid, key=lambda item: item[0].priority)
            return HeightResolution(
                height_m=float(height),
                source=source,
                original_height_m=building.height_m,
                is_heuristic=source is HeightSource.HEURISTIC,
                can_cast_shadow=height >= self.min_meaningful_height_m,
                confidence=source.weight,
            )

        height = heuristic_height(building)
        if building.height_m is not None:
            logger.debug("Discarding invalid height %s for building %s", building.height_m, building.id)
        return HeightResolution(
            height_m=height,
            source=HeightSource.HEURISTIC,
            original_height_m=building.height_m,
            is_heuristic=True,
            can_cast_shadow=height >= self.min_meaningful_height_m,
            confidence=HeightSource.HEURISTIC.weight,
        )

    def patio_surface_height(self, patio: Patio) -> float:
        """Height of the receiving plane; rooftop terraces carry an override."""
        override = patio.height_override
        if override is None:
            return 0.0
        if not math.isfinite(override) or override < 0 or override > MAX_VALID_HEIGHT_M:
            logger.warning("Ignoring invalid height override %s for patio %s", override, patio.id)
            return 0.0
        return float(override)

    def casting_height(self, building: Building, patio: Patio) -> tuple[float, HeightResolution]:
        resolution = self.resolve(building)
        return max(0.0, resolution.height_m - self.patio_surface_height(patio)), resolution

    def invalidate(self, building_id: str | None = None) -> None:
        if building_id is None:
            self._resolved.clear()
        else:
            self._resolved.pop(building_id, None)


def _bounded(height_m: float) -> float:
    return max(HEURISTIC_MIN_HEIGHT_M, min(HEURISTIC_MAX_HEIGHT_M, height_m))
