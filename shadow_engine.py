"""2.5D building shadow projection and patio coverage."""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from functools import lru_cache

import numpy as np
import pyproj
import shapely
from shapely import make_valid
from shapely.affinity import translate
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon, box
from shapely.ops import unary_union
from shapely.strtree import STRtree

from building_heights import BuildingHeightManager
from errors import ComputationError
from models import Building, HeightSource, Patio, ShadowResult, SolarPosition

logger = logging.getLogger(__name__)

# Hard cap on projected shadow length (prevents absurd shadows at very low sun)
MAX_SHADOW_LENGTH = 200.0  # meters
# Shadows touching less than this much patio area are not reported as contributing.
MIN_CONTRIBUTION_AREA_M2 = 0.01
# Extra search margin around the patio for footprint vertices and rounding.
SEARCH_MARGIN_M = 2.0
METERS_PER_DEGREE_LAT = 111_320.0

# Shadow confidence factors: geometric accuracy degrades at low sun and long shadows.
LOW_SUN_ELEVATION = 10.0
MEDIUM_SUN_ELEVATION = 20.0
LONG_SHADOW_M = 100.0
MEDIUM_SHADOW_M = 50.0
SOURCE_RELIABILITY = {
    HeightSource.SURVEYED: 1.0,
    HeightSource.OSM: 0.85,
    HeightSource.HEURISTIC: 0.7,
}


class LocalFrame:
    """Azimuthal-equidistant metric frame centred on a point; +y is true north there."""

    def __init__(self, lat: float, lon: float) -> None:
        self.lat = lat
        self.lon = lon
        crs = pyproj.CRS.from_proj4(
            f"+proj=aeqd +lat_0={lat:.7f} +lon_0={lon:.7f} +datum=WGS84 +units=m +no_defs"
        )
        self._forward = pyproj.Transformer.from_crs("EPSG:4326", crs, always_xy=True)
        self._inverse = pyproj.Transformer.from_crs(crs, "EPSG:4326", always_xy=True)

    def to_metric(self, geom):
        return shapely.transform(geom, _coordinate_mapper(self._forward))

    def to_wgs(self, geom):
        return shapely.transform(geom, _coordinate_mapper(self._inverse))


def _coordinate_mapper(transformer: pyproj.Transformer):
    """Adapt a pyproj transformer to shapely's (N, 2) coordinate-array callback."""

    def _apply(coords: np.ndarray) -> np.ndarray:
        x, y = transformer.transform(coords[:, 0], coords[:, 1])
        return np.column_stack([x, y])

    return _apply


@lru_cache(maxsize=4096)
def local_frame(lat: float, lon: float) -> LocalFrame:
    return LocalFrame(round(lat, 7), round(lon, 7))


@dataclass(frozen=True)
class ShadowCandidate:
    """One building prepared for a specific patio frame."""

    building_id: str
    footprint: Polygon | MultiPolygon  # metric
    height_m: float
    source: HeightSource


def shadow_length(height_m: float, elevation_deg: float) -> float:
    """Ground shadow length of an idealized point obstruction."""
    if height_m <= 0 or elevation_deg >= 90.0:
        return 0.0
    if elevation_deg <= 0:
        return math.inf
    return height_m / math.tan(math.radians(elevation_deg))


def shadow_direction(azimuth_deg: float) -> float:
    return (azimuth_deg + 180.0) % 360.0


def _azimuth_to_vector(azimuth_deg: float, length: float) -> tuple[float, float]:
    """Convert north-clockwise azimuth to x/y offsets in meters (east/north)."""
    radians = math.radians(azimuth_deg)
    dx = math.sin(radians) * length
    dy = math.cos(radians) * length
    return dx, dy


def _iter_polygons(geom) -> list[Polygon]:
    if isinstance(geom, Polygon):
        if geom.is_empty:
            return []
        return [geom]
    if isinstance(geom, MultiPolygon):
        return [poly for poly in geom.geoms if not poly.is_empty]
    if hasattr(geom, "geoms"):
        polys: list[Polygon] = []
        for part in geom.geoms:
            polys.extend(_iter_polygons(part))
        return polys
    return []


def repair_polygon(geom, entity_id: str | None = None) -> Polygon | MultiPolygon:
    """Return a valid polygonal geometry or raise ComputationError."""
    if geom is None or geom.is_empty:
        raise ComputationError("empty geometry", entity_id=entity_id)
    if not geom.is_valid:
        geom = make_valid(geom)
    polys = [p for p in _iter_polygons(geom) if p.area > 0]
    if not polys:
        raise ComputationError("geometry has no polygonal area", entity_id=entity_id)
    if len(polys) == 1:
        return polys[0]
    return MultiPolygon(polys)


def _shadow_for_polygon(poly: Polygon, dx: float, dy: float):
    """
    Create a shadow volume in 2D by bridging each exterior edge to its projected edge.
    """
    shifted = translate(poly, xoff=dx, yoff=dy)
    pieces = [poly, shifted]

    exterior = list(poly.exterior.coords)
    for i in range(len(exterior) - 1):
        p1 = exterior[i]
        p2 = exterior[i + 1]
        quad = Polygon(
            [
                p1,
                p2,
                (p2[0] + dx, p2[1] + dy),
                (p1[0] + dx, p1[1] + dy),
            ]
        )
        if not quad.is_empty and quad.is_valid:
            pieces.append(quad)

    try:
        return unary_union(pieces)
    except GEOSException:
        repaired_pieces = []
        for g in pieces:
            cleaned = g if g.is_valid else make_valid(g)
            if cleaned.geom_type in ("Polygon", "MultiPolygon"):
                repaired_pieces.append(cleaned)
        if not repaired_pieces:
            return None
        return unary_union(repaired_pieces)


def project_shadow(
    footprint,
    height_m: float,
    sun_azimuth_deg: float,
    sun_elevation_deg: float,
    max_length_m: float = MAX_SHADOW_LENGTH,
    building_id: str | None = None,
):
    """Return the metric shadow polygon of a footprint, or None if it casts none.

    At a zenith sun the shadow collapses onto the footprint itself.
    """
    if height_m <= 0 or sun_elevation_deg <= 0:
        return None

    footprint = repair_polygon(footprint, entity_id=building_id)
    length = min(max_length_m, shadow_length(height_m, sun_elevation_deg))
    if length <= 0:
        return footprint

    dx, dy = _azimuth_to_vector(shadow_direction(sun_azimuth_deg), length)
    pieces = []
    for poly in _iter_polygons(footprint):
        shadow = _shadow_for_polygon(poly, dx, dy)
        if shadow is not None and not shadow.is_empty:
            pieces.append(shadow)

    if not pieces:
        raise ComputationError("shadow projection produced no geometry", entity_id=building_id)
    if len(pieces) == 1:
        return pieces[0]
    return unary_union(pieces)


def shadow_confidence(
    elevation_deg: float,
    max_length_m: float,
    sources: list[HeightSource],
) -> float:
    factor = 1.0
    if elevation_deg < LOW_SUN_ELEVATION:
        factor *= 0.7
    elif elevation_deg < MEDIUM_SUN_ELEVATION:
        factor *= 0.9
    if max_length_m > LONG_SHADOW_M:
        factor *= 0.8
    elif max_length_m > MEDIUM_SHADOW_M:
        factor *= 0.9
    if sources:
        factor *= min(SOURCE_RELIABILITY[s] for s in sources)
    return factor


def cast_shadows(
    patio_geom,
    candidates: list[ShadowCandidate],
    solar: SolarPosition,
    max_length_m: float = MAX_SHADOW_LENGTH,
) -> ShadowResult:
    """Union candidate shadows and measure how much of the patio they cover.

    ``patio_geom`` and candidate footprints must share one metric frame.
    A failing building is logged and left out of the union.
    """
    patio_area = float(patio_geom.area)
    weakest = _weakest_source(c.source for c in candidates)

    if not solar.is_visible:
        return ShadowResult(
            shaded_fraction=1.0,
            candidate_count=len(candidates),
            weakest_height_source=weakest,
            shadow_confidence=1.0,
            shaded_area_m2=patio_area,
            patio_area_m2=patio_area,
        )

    shadows = []
    contributing: list[str] = []
    contributing_sources: list[HeightSource] = []
    failed: list[str] = []
    longest = 0.0

    for candidate in candidates:
        try:
            shadow = project_shadow(
                candidate.footprint,
                candidate.height_m,
                solar.azimuth,
                solar.elevation,
                max_length_m=max_length_m,
                building_id=candidate.building_id,
            )
        except (ComputationError, GEOSException, ValueError) as exc:
            logger.warning("Skipping building %s: shadow projection failed (%s)", candidate.building_id, exc)
            failed.append(candidate.building_id)
            continue
        if shadow is None:
            continue
        shadows.append(shadow)
        try:
            overlap = shadow.intersection(patio_geom).area if shadow.intersects(patio_geom) else 0.0
        except GEOSException as exc:
            logger.warning("Skipping building %s: overlap test failed (%s)", candidate.building_id, exc)
            failed.append(candidate.building_id)
            shadows.pop()
            continue
        if overlap > MIN_CONTRIBUTION_AREA_M2:
            contributing.append(candidate.building_id)
            contributing_sources.append(candidate.source)
            longest = max(longest, min(max_length_m, shadow_length(candidate.height_m, solar.elevation)))

    shaded_area = 0.0
    if shadows and patio_area > 0:
        union = unary_union(shadows)
        shaded_area = float(union.intersection(patio_geom).area)

    fraction = shaded_area / patio_area if patio_area > 0 else 0.0
    return ShadowResult(
        shaded_fraction=max(0.0, min(1.0, fraction)),
        contributing_building_ids=tuple(contributing),
        failed_building_ids=tuple(failed),
        candidate_count=len(candidates),
        weakest_height_source=weakest,
        shadow_confidence=shadow_confidence(solar.elevation, longest, contributing_sources),
        shaded_area_m2=shaded_area,
        patio_area_m2=patio_area,
    )


class BuildingIndex:
    """
    Spatial index over WGS84 footprints, built once and reused for every request.
    """

    def __init__(self, buildings: list[Building], heights: BuildingHeightManager | None = None) -> None:
        self.heights = heights or BuildingHeightManager()
        self.buildings: list[Building] = []
        geometries = []
        skipped = 0
        for building in buildings:
            geom = building.footprint
            if geom is None or geom.is_empty or geom.geom_type not in ("Polygon", "MultiPolygon"):
                skipped += 1
                continue
            self.buildings.append(building)
            geometries.append(geom)

        self.geometries = geometries
        self.tree = STRtree(geometries) if geometries else None
        self.id_map = {id(g): idx for idx, g in enumerate(geometries)}
        self.by_id = {b.id: b for b in self.buildings}
        self.max_height_m = max(
            (self.heights.resolve(b).height_m for b in self.buildings),
            default=20.0,
        )
        if skipped:
            logger.info("Building index skipped %s non-polygonal footprints", skipped)

    def __len__(self) -> int:
        return len(self.buildings)

    def query(self, patio_geom_wgs, radius_m: float) -> list[Building]:
        """Buildings whose footprint bbox lies within ``radius_m`` of the patio bbox."""
        if self.tree is None:
            return []
        min_lon, min_lat, max_lon, max_lat = patio_geom_wgs.bounds
        lat = (min_lat + max_lat) / 2.0
        dlat = radius_m / METERS_PER_DEGREE_LAT
        dlon = radius_m / max(1.0, METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)))
        search_area = box(min_lon - dlon, min_lat - dlat, max_lon + dlon, max_lat + dlat)
        return [self.buildings[i] for i in self._query_candidate_indices(search_area)]

    def _query_candidate_indices(self, search_area) -> list[int]:
        result = self.tree.query(search_area)
        if len(result) == 0:
            return []

        first = result[0]
        if isinstance(first, (int, np.integer)):
            return sorted(int(i) for i in result)
        return sorted(self.id_map[id(g)] for g in result if id(g) in self.id_map)


@dataclass
class PatioFrame:
    patio: Patio
    frame: LocalFrame
    polygon: Polygon | MultiPolygon  # metric
    area_m2: float
    footprints: dict[str, Polygon | MultiPolygon] = field(default_factory=dict)
    failed: set[str] = field(default_factory=set)
    weakest_source: HeightSource | None = None
    weakest_known: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class ShadowCastingEngine:
    def __init__(
        self,
        index: BuildingIndex,
        heights: BuildingHeightManager | None = None,
        max_shadow_distance_m: float = MAX_SHADOW_LENGTH,
    ) -> None:
        self.index = index
        self.heights = heights or index.heights
        self.max_shadow_distance_m = max_shadow_distance_m
        self._frames: dict[str, PatioFrame] = {}
        self._lock = threading.Lock()

    def search_radius(self, elevation_deg: float) -> float:
        if elevation_deg <= 0:
            return 0.0
        reach = shadow_length(self.index.max_height_m, elevation_deg)
        return min(self.max_shadow_distance_m, reach) + SEARCH_MARGIN_M

    def prepare(self, patio: Patio) -> PatioFrame:
        """Project a patio into its own metric frame; raises ComputationError if unusable."""
        with self._lock:
            cached = self._frames.get(patio.id)
        if cached is not None and cached.patio is patio:
            return cached

        lat, lon = patio.centroid
        frame = local_frame(lat, lon)
        try:
            polygon = repair_polygon(frame.to_metric(patio.polygon), entity_id=patio.id)
        except GEOSException as exc:
            raise ComputationError(f"patio geometry unusable: {exc}", entity_id=patio.id) from exc
        prepared = PatioFrame(patio=patio, frame=frame, polygon=polygon, area_m2=float(polygon.area))
        with self._lock:
            self._frames[patio.id] = prepared
        return prepared

    def invalidate(self, patio_id: str | None = None) -> None:
        with self._lock:
            if patio_id is None:
                self._frames.clear()
            else:
                self._frames.pop(patio_id, None)

    def _metric_footprint(self, prepared: PatioFrame, building: Building) -> Polygon | MultiPolygon | None:
        """Footprint in the patio frame, projected once per frame; None once it has failed."""
        with prepared.lock:
            if building.id in prepared.failed:
                return None
            footprint = prepared.footprints.get(building.id)
            if footprint is not None:
                return footprint
            try:
                footprint = repair_polygon(prepared.frame.to_metric(building.footprint), entity_id=building.id)
            except (ComputationError, GEOSException) as exc:
                logger.warning("Excluding building %s near patio %s: %s", building.id, prepared.patio.id, exc)
                prepared.failed.add(building.id)
                return None
            prepared.footprints[building.id] = footprint
            return footprint

    def candidates_for(self, prepared: PatioFrame, radius_m: float) -> list[ShadowCandidate]:
        candidates = []
        for building in self.index.query(prepared.patio.polygon, radius_m):
            footprint = self._metric_footprint(prepared, building)
            if footprint is None:
                continue
            if footprint.distance(prepared.polygon) > radius_m:
                continue
            height, resolution = self.heights.casting_height(building, prepared.patio)
            if not resolution.can_cast_shadow or height <= 0:
                continue
            candidates.append(
                ShadowCandidate(
                    building_id=building.id,
                    footprint=footprint,
                    height_m=height,
                    source=resolution.source,
                )
            )
        return candidates

    def compute(self, patio: Patio, solar: SolarPosition) -> ShadowResult:
        """Shaded fraction of ``patio`` for one solar position."""
        prepared = self.prepare(patio)
        if not solar.is_visible:
            return ShadowResult(
                shaded_fraction=1.0,
                shaded_area_m2=prepared.area_m2,
                patio_area_m2=prepared.area_m2,
            )
        candidates = self.candidates_for(prepared, self.search_radius(solar.elevation))
        result = cast_shadows(prepared.polygon, candidates, solar, self.max_shadow_distance_m)
        with prepared.lock:
            excluded = set(prepared.failed)
        if excluded:
            result = replace(
                result,
                failed_building_ids=tuple(sorted(set(result.failed_building_ids) | excluded)),
            )
        return result

    def compute_many(self, patios: list[Patio], solar: SolarPosition) -> tuple[dict[str, ShadowResult], dict[str, str]]:
        """Shadows for several patios sharing one solar position; failures are tallied, not raised."""
        results: dict[str, ShadowResult] = {}
        errors: dict[str, str] = {}
        for patio in patios:
            try:
                results[patio.id] = self.compute(patio, solar)
            except (ComputationError, GEOSException) as exc:
                logger.warning("Shadow computation failed for patio %s: %s", patio.id, exc)
                errors[patio.id] = str(exc)
        return results, errors

    def weakest_source_near(self, patio: Patio) -> HeightSource | None:
        """Lowest-priority height source among buildings that could ever shade the patio."""
        prepared = self.prepare(patio)
        if not prepared.weakest_known:
            candidates = self.candidates_for(prepared, self.max_shadow_distance_m)
            weakest = _weakest_source(c.source for c in candidates)
            with prepared.lock:
                prepared.weakest_source = weakest
                prepared.weakest_known = True
        return prepared.weakest_source


def _weakest_source(sources) -> HeightSource | None:
    weakest = None
    for source in sources:
        if weakest is None or source.priority > weakest.priority:
            weakest = source
    return weakest
