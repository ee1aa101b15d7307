"""Data model for buildings, patios, weather, and exposure results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

from shapely.geometry import MultiPolygon, Polygon

from timeutils import parse_iso


class HeightSource(str, Enum):
    SURVEYED = "surveyed"
    OSM = "osm"
    HEURISTIC = "heuristic"

    @property
    def priority(self) -> int:
        # Lower wins.
        return _HEIGHT_PRIORITY[self]

    @property
    def weight(self) -> float:
        """Geometry-quality weight used by the confidence blend."""
        return _HEIGHT_WEIGHT[self]


_HEIGHT_PRIORITY = {
    HeightSource.SURVEYED: 0,
    HeightSource.OSM: 1,
    HeightSource.HEURISTIC: 2,
}
_HEIGHT_WEIGHT = {
    HeightSource.SURVEYED: 1.0,
    HeightSource.OSM: 0.7,
    HeightSource.HEURISTIC: 0.4,
}


class ExposureState(str, Enum):
    NO_SUN = "no_sun"
    SHADED = "shaded"
    PARTIAL = "partial"
    SUNNY = "sunny"

    @property
    def is_sunlit(self) -> bool:
        return self in (ExposureState.SUNNY, ExposureState.PARTIAL)


class Provenance(str, Enum):
    PRECOMPUTED = "precomputed"
    INTERPOLATED = "interpolated"
    CALCULATED = "calculated"
    CACHED = "cached"


class WindowQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class WeatherMode(str, Enum):
    OBSERVED = "observed"
    FORECAST = "forecast"
    ESTIMATED = "estimated"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Building:
    """Building footprint (WGS84 lon/lat) with its known height candidates."""

    id: str
    footprint: Polygon | MultiPolygon
    height_m: float | None = None
    height_source: HeightSource | None = None
    alternate_heights: tuple[tuple[HeightSource, float], ...] = ()
    building_type: str | None = None

    def height_candidates(self) -> list[tuple[HeightSource, float]]:
        candidates = list(self.alternate_heights)
        if self.height_m is not None and self.height_source is not None:
            candidates.append((self.height_source, float(self.height_m)))
        return candidates


@dataclass(frozen=True)
class Patio:
    id: str
    polygon: Polygon | MultiPolygon
    quality_score: float = 0.5
    height_override: float | None = None
    orientation: str | None = None
    review_needed: bool = False
    venue_id: str | None = None
    name: str = ""
    active: bool = True

    @property
    def centroid(self) -> tuple[float, float]:
        """(lat, lon) of the polygon centroid."""
        point = self.polygon.centroid
        return point.y, point.x


@dataclass(frozen=True)
class WeatherSlice:
    timestamp: datetime
    cloud_cover: float
    certainty: float
    source: str
    is_forecast: bool
    fetched_at: datetime | None = None


@dataclass(frozen=True)
class SolarPosition:
    timestamp: datetime
    latitude: float
    longitude: float
    elevation: float
    azimuth: float
    is_visible: bool

    @property
    def zenith(self) -> float:
        return 90.0 - self.elevation


@dataclass(frozen=True)
class HeightResolution:
    height_m: float
    source: HeightSource
    original_height_m: float | None
    is_heuristic: bool
    can_cast_shadow: bool
    confidence: float


@dataclass(frozen=True)
class ShadowResult:
    shaded_fraction: float
    contributing_building_ids: tuple[str, ...] = ()
    failed_building_ids: tuple[str, ...] = ()
    candidate_count: int = 0
    weakest_height_source: HeightSource | None = None
    shadow_confidence: float = 1.0
    shaded_area_m2: float = 0.0
    patio_area_m2: float = 0.0


@dataclass(frozen=True)
class ExposureResult:
    patio_id: str
    timestamp: datetime
    state: ExposureState
    exposure_percent: float
    shaded_fraction: float
    solar: SolarPosition
    confidence: float
    confidence_level: ConfidenceLevel
    shadow: ShadowResult | None = None
    weather_mode: WeatherMode = WeatherMode.ESTIMATED
    notes: tuple[str, ...] = ()
    cloud_cover: float | None = None
    sun_blocked: bool = False


@dataclass(frozen=True)
class TimelinePoint:
    timestamp: datetime
    local_time: str
    exposure_percent: float
    state: ExposureState
    confidence: float
    is_sun_visible: bool
    solar_elevation: float
    solar_azimuth: float
    provenance: Provenance
    cloud_cover: float | None = None
    sun_blocked: bool = False

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        payload["state"] = self.state.value
        payload["provenance"] = self.provenance.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "TimelinePoint":
        return cls(
            timestamp=parse_iso(payload["timestamp"]),
            local_time=payload["local_time"],
            exposure_percent=float(payload["exposure_percent"]),
            state=ExposureState(payload["state"]),
            confidence=float(payload["confidence"]),
            is_sun_visible=bool(payload["is_sun_visible"]),
            solar_elevation=float(payload["solar_elevation"]),
            solar_azimuth=float(payload["solar_azimuth"]),
            provenance=Provenance(payload["provenance"]),
            cloud_cover=_optional_float(payload.get("cloud_cover")),
            sun_blocked=bool(payload.get("sun_blocked", False)),
        )


@dataclass(frozen=True)
class SunWindow:
    patio_id: str
    date: date
    start: datetime
    end: datetime
    local_start: str
    local_end: str
    min_exposure: float
    max_exposure: float
    avg_exposure: float
    peak_time: datetime
    quality: WindowQuality
    confidence: float
    is_recommended: bool = False
    recommendation_reason: str = ""
    priority_score: float = 0.0

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_min(self) -> float:
        return self.duration.total_seconds() / 60.0

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["start"] = self.start.isoformat()
        payload["end"] = self.end.isoformat()
        payload["peak_time"] = self.peak_time.isoformat()
        payload["quality"] = self.quality.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "SunWindow":
        return cls(
            patio_id=payload["patio_id"],
            date=date.fromisoformat(payload["date"]),
            start=parse_iso(payload["start"]),
            end=parse_iso(payload["end"]),
            local_start=payload["local_start"],
            local_end=payload["local_end"],
            min_exposure=float(payload["min_exposure"]),
            max_exposure=float(payload["max_exposure"]),
            avg_exposure=float(payload["avg_exposure"]),
            peak_time=parse_iso(payload["peak_time"]),
            quality=WindowQuality(payload["quality"]),
            confidence=float(payload["confidence"]),
            is_recommended=bool(payload.get("is_recommended", False)),
            recommendation_reason=payload.get("recommendation_reason", ""),
            priority_score=float(payload.get("priority_score", 0.0)),
        )


@dataclass(frozen=True)
class Timeline:
    patio_id: str
    start: datetime
    end: datetime
    resolution_min: int
    points: tuple[TimelinePoint, ...]
    windows: tuple[SunWindow, ...]
    weather_mode: WeatherMode
    notes: tuple[str, ...] = ()
    error_count: int = 0

    def provenance_counts(self) -> dict[Provenance, int]:
        counts = {p: 0 for p in Provenance}
        for point in self.points:
            counts[point.provenance] += 1
        return counts


@dataclass
class BatchExposureResult:
    results: list[ExposureResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return len(self.errors)



def _optional_float(value) -> float | None:
    return None if value is None else float(value)
