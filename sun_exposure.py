"""Instantaneous sun-exposure classification for patios."""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from confidence import ConfidenceCalculator, ConfidenceInputs
from errors import ComputationError, InputValidationError, PatioNotFoundError
from models import (
    BatchExposureResult,
    ExposureResult,
    ExposureState,
    Patio,
    Provenance,
    TimelinePoint,
)
from repositories import PatioRepository
from settings import EngineSettings, get_settings
from shadow_engine import ShadowCastingEngine
from solar_position import SolarPositionCalculator
from timeutils import ensure_utc, hours_until, to_local_iso
from weather import now_utc
from weather_router import WeatherService, WeatherWindow

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class ExposureThresholds:
    """Shaded-fraction boundaries: Shaded at or above ``shaded``, Sunny below ``sunny``."""

    shaded: float = 0.70
    sunny: float = 0.30

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "ExposureThresholds":
        return cls(shaded=settings.shaded_threshold, sunny=settings.sunny_threshold)


def classify_exposure(
    shaded_fraction: float,
    sun_visible: bool,
    thresholds: ExposureThresholds = ExposureThresholds(),
) -> ExposureState:
    if not sun_visible:
        return ExposureState.NO_SUN
    if shaded_fraction >= thresholds.shaded:
        return ExposureState.SHADED
    if shaded_fraction < thresholds.sunny:
        return ExposureState.SUNNY
    return ExposureState.PARTIAL


def exposure_percent(shaded_fraction: float, sun_visible: bool) -> float:
    if not sun_visible:
        return 0.0
    fraction = max(0.0, min(1.0, shaded_fraction))
    return round(100.0 * (1.0 - fraction), 1)


def is_sun_blocked(cloud_cover: float | None, threshold: float = 0.8) -> bool:
    """Overcast enough that geometry alone overstates the sun."""
    return cloud_cover is not None and cloud_cover >= threshold


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def point_from_exposure(result: ExposureResult, tz, provenance: Provenance = Provenance.CALCULATED) -> TimelinePoint:
    return TimelinePoint(
        timestamp=result.timestamp,
        local_time=to_local_iso(result.timestamp, tz),
        exposure_percent=result.exposure_percent,
        state=result.state,
        confidence=result.confidence,
        is_sun_visible=result.solar.is_visible,
        solar_elevation=round(result.solar.elevation, 3),
        solar_azimuth=round(result.solar.azimuth, 3),
        provenance=provenance,
        cloud_cover=result.cloud_cover,
        sun_blocked=result.sun_blocked,
    )


class SunExposureService:
    def __init__(
        self,
        patios: PatioRepository,
        engine: ShadowCastingEngine,
        solar: SolarPositionCalculator,
        weather: WeatherService,
        confidence: ConfidenceCalculator | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.patios = patios
        self.engine = engine
        self.solar = solar
        self.weather = weather
        self.settings = settings or get_settings()
        self.confidence = confidence or ConfidenceCalculator(self.settings)
        self.thresholds = ExposureThresholds.from_settings(self.settings)
        self.clock = clock

    def require_patio(self, patio_id: str) -> Patio:
        patio = self.patios.get(patio_id)
        if patio is None:
            raise PatioNotFoundError(patio_id)
        return patio

    def evaluate(
        self,
        patio: Patio,
        when: datetime,
        weather: WeatherWindow,
        now: datetime | None = None,
    ) -> ExposureResult:
        """Exposure, state, and confidence for one patio at one instant."""
        when = ensure_utc(when)
        now = ensure_utc(now or self.clock())
        lat, lon = patio.centroid
        solar = self.solar.position(lat, lon, when)

        shadow = None
        shaded_fraction = 1.0
        if solar.is_visible:
            shadow = self.engine.compute(patio, solar)
            shaded_fraction = shadow.shaded_fraction

        state = classify_exposure(shaded_fraction, solar.is_visible, self.thresholds)
        weather_slice = weather.slice_for(when)
        cloud_cover = weather.cloud_cover_at(when)
        height_source = self.engine.weakest_source_near(patio)
        breakdown = self.confidence.calculate(
            ConfidenceInputs(
                patio_quality=patio.quality_score,
                height_source=height_source,
                weather=weather_slice,
                lead_hours=hours_until(when, now),
                sun_visible=solar.is_visible,
                sun_elevation=solar.elevation,
            )
        )

        notes = list(breakdown.issues)
        if weather.note and weather_slice is None:
            notes.append(weather.note)
        if shadow is not None and shadow.failed_building_ids:
            notes.append(f"{len(shadow.failed_building_ids)} building(s) excluded for invalid geometry")

        return ExposureResult(
            patio_id=patio.id,
            timestamp=when,
            state=state,
            exposure_percent=exposure_percent(shaded_fraction, solar.is_visible),
            shaded_fraction=shaded_fraction,
            solar=solar,
            confidence=breakdown.score,
            confidence_level=breakdown.level,
            shadow=shadow,
            weather_mode=breakdown.weather_mode,
            notes=tuple(dict.fromkeys(notes)),
            cloud_cover=None if cloud_cover is None else round(cloud_cover, 3),
            sun_blocked=is_sun_blocked(cloud_cover, self.settings.sun_blocking_cloud_cover),
        )

    def get_exposure(self, patio_id: str, when: datetime) -> ExposureResult:
        patio = self.require_patio(patio_id)
        when = ensure_utc(when)
        weather = self.weather.window_for(when, when)
        return self.evaluate(patio, when, weather)

    def validate_batch(self, patio_ids: list[str]) -> list[Patio]:
        """Reject oversized, empty, or unknown-id batches before any computation."""
        if not patio_ids:
            raise InputValidationError("batch must contain at least one patio id", field="patio_ids")
        if len(patio_ids) > self.settings.max_batch_size:
            raise InputValidationError(
                f"batch of {len(patio_ids)} patio ids exceeds the limit of {self.settings.max_batch_size}",
                field="patio_ids",
            )
        unknown = [pid for pid in patio_ids if pid not in self.patios]
        if unknown:
            raise InputValidationError(f"unknown patio ids: {', '.join(unknown)}", field="patio_ids")
        return [self.patios.get(pid) for pid in dict.fromkeys(patio_ids)]

    def get_batch(self, patio_ids: list[str], when: datetime) -> BatchExposureResult:
        patios = self.validate_batch(patio_ids)
        when = ensure_utc(when)
        weather = self.weather.window_for(when, when)
        now = ensure_utc(self.clock())

        batch = BatchExposureResult()

        def _one(patio: Patio) -> tuple[Patio, ExposureResult | None, str | None]:
            try:
                return patio, self.evaluate(patio, when, weather, now), None
            except ComputationError as exc:
                logger.warning("Exposure failed for patio %s: %s", patio.id, exc)
                return patio, None, str(exc)
            except Exception as exc:
                logger.exception("Unexpected exposure failure for patio %s", patio.id)
                return patio, None, f"{type(exc).__name__}: {exc}"

        with ThreadPoolExecutor(max_workers=self.settings.worker_concurrency) as pool:
            for patio, result, error in pool.map(_one, patios):
                if result is not None:
                    batch.results.append(result)
                else:
                    batch.errors[patio.id] = error or "computation failed"

        if batch.errors:
            logger.info("Batch exposure finished with %s failures out of %s", len(batch.errors), len(patios))
        return batch

    def sunny_patios_near(
        self,
        lat: float,
        lon: float,
        radius_m: float,
        when: datetime,
        limit: int = 20,
    ) -> list[ExposureResult]:
        """Sunny or partially sunny active patios within ``radius_m``, best first."""
        if radius_m <= 0:
            raise InputValidationError("radius must be positive", field="radius_m")
        nearby = [
            p.id
            for p in self.patios.active()
            if haversine_m(lat, lon, *p.centroid) <= radius_m
        ][: self.settings.max_batch_size]
        if not nearby:
            return []
        batch = self.get_batch(nearby, when)
        sunlit = [r for r in batch.results if r.state.is_sunlit]
        sunlit.sort(key=lambda r: (-r.exposure_percent, -r.confidence, r.patio_id))
        return sunlit[:limit]


def tick_times(start: datetime, end: datetime, resolution_min: int) -> list[datetime]:
    """Half-open tick grid [start, end)."""
    step = timedelta(minutes=resolution_min)
    ticks = []
    ts = ensure_utc(start)
    end = ensure_utc(end)
    while ts < end:
        ticks.append(ts)
        ts += step
    return ticks
