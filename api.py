"""FastAPI surface for the SunnySeat exposure engine."""

from __future__ import annotations

import asyncio
import logging
import pathlib
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from building_heights import BuildingHeightManager
from cache import TwoLayerCache, build_cache
from city_config import CityConfig, get_city_config
from confidence import ConfidenceCalculator
from errors import (
    ComputationError,
    InputValidationError,
    OperationCancelledError,
    PatioNotFoundError,
)
from models import Building, ExposureResult, Patio, SunWindow, Timeline, TimelinePoint
from precompute import JobRunStore, PrecomputationService
from repositories import BuildingRepository, PatioRepository
from settings import EngineSettings, get_settings
from shadow_engine import ShadowCastingEngine
from solar_position import SolarPositionCalculator
from sun_exposure import SunExposureService
from sun_timeline import SunTimelineService
from timeutils import ensure_utc, floor_to_resolution, parse_iso
from weather import MetNoProvider, MockWeatherProvider, OpenMeteoProvider, WeatherProvider, now_utc
from weather_router import WeatherIngestionService, WeatherRouter, WeatherService, WeatherStore

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.25


# ---------- Service wiring ----------

@dataclass
class ServiceBundle:
    settings: EngineSettings
    city: CityConfig
    patios: PatioRepository
    buildings: BuildingRepository
    engine: ShadowCastingEngine
    solar: SolarPositionCalculator
    weather_store: WeatherStore
    weather: WeatherService
    ingestion: WeatherIngestionService
    exposure: SunExposureService
    timeline: SunTimelineService
    cache: TwoLayerCache
    precompute: PrecomputationService
    clock: Callable[[], datetime] = now_utc

    def replace_buildings(self, buildings: list[Building]) -> None:
        self.engine.index = self.buildings.replace_all(buildings)
        self.engine.invalidate()


def default_providers(city: CityConfig, settings: EngineSettings) -> list[WeatherProvider]:
    available = {
        "met_no": lambda: MetNoProvider(user_agent=settings.met_no_user_agent, nowcast_hours=settings.nowcast_horizon_hours),
        "open_meteo": lambda: OpenMeteoProvider(user_agent=settings.met_no_user_agent, nowcast_hours=settings.nowcast_horizon_hours),
        "mock": lambda: MockWeatherProvider(nowcast_hours=settings.nowcast_horizon_hours),
    }
    return [available[name]() for name in city.provider_order if name in available]


def build_services(
    patios: list[Patio],
    buildings: list[Building],
    settings: EngineSettings | None = None,
    providers: list[WeatherProvider] | None = None,
    clock: Callable[[], datetime] = now_utc,
    cache_dir: str | pathlib.Path | None = None,
    job_dir: str | pathlib.Path | None = None,
) -> ServiceBundle:
    settings = settings or get_settings()
    city = get_city_config(settings.city_id)

    heights = BuildingHeightManager(settings.min_meaningful_height_m)
    building_repo = BuildingRepository(buildings, heights)
    patio_repo = PatioRepository(patios)
    engine = ShadowCastingEngine(building_repo.index, heights, settings.max_shadow_distance_m)
    solar = SolarPositionCalculator(elevation_m=city.ground_elevation_m)

    store = WeatherStore()
    weather = WeatherService(store, settings.weather_max_age_hours)
    router = WeatherRouter(providers if providers is not None else default_providers(city, settings))
    ingestion = WeatherIngestionService(
        router,
        store,
        city,
        poll_minutes=settings.weather_poll_minutes,
        retention_hours=settings.weather_retention_hours,
        clock=clock,
    )

    cache = build_cache(
        str(cache_dir or settings.cache_dir),
        settings.memory_cache_ttl_seconds,
        settings.shared_cache_ttl_hours,
    )
    exposure = SunExposureService(
        patio_repo, engine, solar, weather, ConfidenceCalculator(settings), settings, clock
    )
    timeline = SunTimelineService(exposure, weather, city, cache, settings, clock)
    precompute = PrecomputationService(
        patio_repo,
        timeline,
        cache,
        JobRunStore(pathlib.Path(job_dir or settings.job_dir)),
        settings,
        clock,
    )
    return ServiceBundle(
        settings=settings,
        city=city,
        patios=patio_repo,
        buildings=building_repo,
        engine=engine,
        solar=solar,
        weather_store=store,
        weather=weather,
        ingestion=ingestion,
        exposure=exposure,
        timeline=timeline,
        cache=cache,
        precompute=precompute,
        clock=clock,
    )


# ---------- Payloads ----------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TimelinePointPayload(CamelModel):
    timestamp_utc: datetime
    local_time: str
    sun_exposure_percent: float
    state: str
    confidence: float
    is_sun_visible: bool
    solar_elevation: float
    solar_azimuth: float
    provenance: str
    cloud_cover: float | None = None
    is_sun_blocked: bool = False

    @classmethod
    def from_point(cls, point: TimelinePoint) -> "TimelinePointPayload":
        return cls(
            timestamp_utc=point.timestamp,
            local_time=point.local_time,
            sun_exposure_percent=point.exposure_percent,
            state=point.state.value,
            confidence=point.confidence,
            is_sun_visible=point.is_sun_visible,
            solar_elevation=point.solar_elevation,
            solar_azimuth=point.solar_azimuth,
            provenance=point.provenance.value,
            cloud_cover=point.cloud_cover,
            is_sun_blocked=point.sun_blocked,
        )


class SunWindowPayload(CamelModel):
    patio_id: str
    date: date
    start_utc: datetime
    end_utc: datetime
    local_start: str
    local_end: str
    duration: int = Field(description="Window length in minutes")
    peak_time_utc: datetime
    peak_exposure: float
    min_exposure: float
    max_exposure: float
    avg_exposure: float
    quality: str
    confidence: float
    is_recommended: bool
    recommendation_reason: str
    priority_score: float

    @classmethod
    def from_window(cls, window: SunWindow) -> "SunWindowPayload":
        return cls(
            patio_id=window.patio_id,
            date=window.date,
            start_utc=window.start,
            end_utc=window.end,
            local_start=window.local_start,
            local_end=window.local_end,
            duration=int(round(window.duration_min)),
            peak_time_utc=window.peak_time,
            peak_exposure=window.max_exposure,
            min_exposure=window.min_exposure,
            max_exposure=window.max_exposure,
            avg_exposure=window.avg_exposure,
            quality=window.quality.value,
            confidence=window.confidence,
            is_recommended=window.is_recommended,
            recommendation_reason=window.recommendation_reason,
            priority_score=window.priority_score,
        )


class ExposurePayload(CamelModel):
    patio_id: str
    timestamp_utc: datetime
    sun_exposure_percent: float
    state: str
    confidence: float
    confidence_level: str
    is_sun_visible: bool
    solar_elevation: float
    solar_azimuth: float
    weather_mode: str
    cloud_cover: float | None = None
    is_sun_blocked: bool = False
    notes: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ExposureResult) -> "ExposurePayload":
        return cls(
            patio_id=result.patio_id,
            timestamp_utc=result.timestamp,
            sun_exposure_percent=result.exposure_percent,
            state=result.state.value,
            confidence=result.confidence,
            confidence_level=result.confidence_level.value,
            is_sun_visible=result.solar.is_visible,
            solar_elevation=round(result.solar.elevation, 3),
            solar_azimuth=round(result.solar.azimuth, 3),
            weather_mode=result.weather_mode.value,
            cloud_cover=result.cloud_cover,
            is_sun_blocked=result.sun_blocked,
            notes=list(result.notes),
        )


class TimelinePayload(CamelModel):
    patio_id: str
    start_utc: datetime
    end_utc: datetime
    resolution_min: int
    weather_mode: str
    points: list[TimelinePointPayload]
    windows: list[SunWindowPayload]
    notes: list[str] = Field(default_factory=list)
    error_count: int = 0

    @classmethod
    def from_timeline(cls, timeline: Timeline) -> "TimelinePayload":
        return cls(
            patio_id=timeline.patio_id,
            start_utc=timeline.start,
            end_utc=timeline.end,
            resolution_min=timeline.resolution_min,
            weather_mode=timeline.weather_mode.value,
            points=[TimelinePointPayload.from_point(p) for p in timeline.points],
            windows=[SunWindowPayload.from_window(w) for w in timeline.windows],
            notes=list(timeline.notes),
            error_count=timeline.error_count,
        )


class BatchExposureRequest(CamelModel):
    patio_ids: list[str]
    timestamp_utc: datetime | None = None


class BatchExposurePayload(CamelModel):
    timestamp_utc: datetime
    results: list[ExposurePayload]
    errors: dict[str, str] = Field(default_factory=dict)
    error_count: int = 0


# ---------- App ----------

def _parse_time(value: str | None, fallback: datetime, field: str) -> datetime:
    if not value:
        return ensure_utc(fallback)
    parsed = parse_iso(value)
    if parsed is None:
        raise InputValidationError(f"invalid ISO 8601 datetime: {value}", field=field)
    return parsed


async def _watch_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected from %s, cancelling", request.url.path)
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def create_app(bundle: ServiceBundle) -> FastAPI:
    app = FastAPI(title="SunnySeat", version="0.1.0")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.state.services = bundle

    @app.exception_handler(PatioNotFoundError)
    async def _not_found(request: Request, exc: PatioNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "field": exc.field})

    @app.exception_handler(InputValidationError)
    async def _invalid(request: Request, exc: InputValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "field": exc.field})

    @app.exception_handler(ComputationError)
    async def _computation(request: Request, exc: ComputationError):
        logger.warning("Computation failed for %s: %s", exc.entity_id, exc)
        return JSONResponse(status_code=422, content={"detail": str(exc), "entityId": exc.entity_id})

    @app.exception_handler(OperationCancelledError)
    async def _cancelled(request: Request, exc: OperationCancelledError):
        return JSONResponse(status_code=499, content={"detail": str(exc)})

    @app.get("/api/patios/{patio_id}/exposure", response_model=ExposurePayload)
    def patio_exposure(
        patio_id: str,
        time: str | None = Query(None, description="ISO 8601 UTC timestamp, defaults to now"),
    ):
        when = _parse_time(time, bundle.clock(), "time")
        return ExposurePayload.from_result(bundle.exposure.get_exposure(patio_id, when))

    @app.post("/api/exposure/batch", response_model=BatchExposurePayload)
    def batch_exposure(payload: BatchExposureRequest):
        when = ensure_utc(payload.timestamp_utc or bundle.clock())
        batch = bundle.exposure.get_batch(payload.patio_ids, when)
        return BatchExposurePayload(
            timestamp_utc=when,
            results=[ExposurePayload.from_result(r) for r in batch.results],
            errors=batch.errors,
            error_count=batch.error_count,
        )

    @app.get("/api/patios/{patio_id}/timeline", response_model=TimelinePayload)
    async def patio_timeline(
        request: Request,
        patio_id: str,
        start: str | None = Query(None, description="ISO 8601 UTC start, defaults to now"),
        end: str | None = Query(None, description="ISO 8601 UTC end, defaults to start + 12 h"),
        resolution: int | None = Query(None, description="Minutes between points"),
    ):
        step = bundle.timeline.validate_resolution(resolution)
        start_dt = _parse_time(start, floor_to_resolution(bundle.clock(), step), "start")
        end_dt = _parse_time(end, start_dt + timedelta(hours=12), "end")

        cancel = threading.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel))
        try:
            timeline = await run_in_threadpool(
                bundle.timeline.get_timeline, patio_id, start_dt, end_dt, resolution, cancel
            )
        finally:
            watcher.cancel()
        return TimelinePayload.from_timeline(timeline)

    @app.get("/api/patios/{patio_id}/windows", response_model=list[SunWindowPayload])
    def patio_best_windows(
        patio_id: str,
        day: date | None = Query(None, description="Local calendar date, defaults to today"),
        top: int = Query(3, ge=1, le=20),
    ):
        return [SunWindowPayload.from_window(w) for w in bundle.timeline.best_windows(patio_id, day, top)]

    @app.get("/api/sunny-near", response_model=list[ExposurePayload])
    def sunny_near(
        lat: float = Query(..., ge=-90, le=90),
        lon: float = Query(..., ge=-180, le=180),
        radius_m: float = Query(500.0, gt=0, le=5000),
        time: str | None = Query(None),
        limit: int = Query(20, ge=1, le=100),
    ):
        when = _parse_time(time, bundle.clock(), "time")
        results = bundle.exposure.sunny_patios_near(lat, lon, radius_m, when, limit)
        return [ExposurePayload.from_result(r) for r in results]

    @app.get("/api/health")
    def health():
        cache_health = bundle.cache.health()
        latest_run = bundle.precompute.jobs.latest()
        weather_slices = len(bundle.weather_store)
        status = cache_health["status"]
        if weather_slices == 0 and status == "healthy":
            status = "degraded"
        return {
            "status": status,
            "city": bundle.city.city_id,
            "patios": len(bundle.patios),
            "buildings": len(bundle.buildings),
            "weather": {"slices": weather_slices},
            "cache": cache_health,
            "precompute": {
                "progress": bundle.precompute.progress(),
                "last_run": latest_run.to_dict() if latest_run else None,
            },
        }

    return app
