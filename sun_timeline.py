"""Per-patio sun timelines: tick evaluation, provenance, windows, and comparisons."""

from __future__ import annotations

import bisect
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Callable

from shapely.errors import GEOSException

from cache import ORIGIN_ON_DEMAND, ORIGIN_PRECOMPUTE, CacheKey, DaySet, TwoLayerCache
from city_config import CityConfig
from errors import ComputationError, InputValidationError, OperationCancelledError
from models import ExposureState, Patio, Provenance, Timeline, TimelinePoint
from recommendations import extract_windows, rank_recommendations, rank_windows
from settings import EngineSettings, get_settings
from sun_exposure import (
    ExposureThresholds,
    SunExposureService,
    classify_exposure,
    is_sun_blocked,
    point_from_exposure,
    tick_times,
)
from timeutils import ensure_utc, floor_to_resolution, local_date, local_day_bounds, to_local_iso
from weather import now_utc
from weather_router import WeatherService, WeatherWindow

logger = logging.getLogger(__name__)

BEST_PERIOD_MIN_EXPOSURE = 60.0
RELIABLE_COMPLETENESS = 0.95
RELIABLE_CONFIDENCE = 60.0


@dataclass
class BatchTimelineResult:
    timelines: dict[str, Timeline] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return len(self.errors)


@dataclass(frozen=True)
class TimelineSummary:
    sunny_minutes: float
    partial_minutes: float
    shaded_minutes: float
    no_sun_minutes: float
    sunny_periods: int
    partial_periods: int
    shaded_periods: int
    best_period_start: datetime | None = None
    best_period_end: datetime | None = None
    best_period_avg_exposure: float | None = None


@dataclass(frozen=True)
class TimelineQuality:
    completeness: float
    average_confidence: float
    provenance_counts: dict[str, int]
    error_count: int

    @property
    def is_reliable(self) -> bool:
        return self.completeness >= RELIABLE_COMPLETENESS and self.average_confidence >= RELIABLE_CONFIDENCE


class SunTimelineService:
    def __init__(
        self,
        exposure: SunExposureService,
        weather: WeatherService,
        city: CityConfig,
        cache: TwoLayerCache | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.exposure = exposure
        self.weather = weather
        self.city = city
        self.tz = city.tz
        self.cache = cache
        self.settings = settings or get_settings()
        self.thresholds = ExposureThresholds.from_settings(self.settings)
        self.clock = clock

    # ---------- validation ----------

    def validate_resolution(self, resolution_min: int | None) -> int:
        s = self.settings
        resolution = s.default_resolution_min if resolution_min is None else int(resolution_min)
        if not s.min_resolution_min <= resolution <= s.max_resolution_min:
            raise InputValidationError(
                f"resolution must be between {s.min_resolution_min} and {s.max_resolution_min} minutes",
                field="resolution_min",
            )
        return resolution

    def validate_range(self, start: datetime, end: datetime, resolution_min: int | None) -> tuple[datetime, datetime, int]:
        s = self.settings
        resolution = self.validate_resolution(resolution_min)
        start = ensure_utc(start)
        end = ensure_utc(end)
        if end <= start:
            raise InputValidationError("end must be after start", field="end")
        if end - start > timedelta(hours=s.max_timeline_hours):
            raise InputValidationError(
                f"time range exceeds {s.max_timeline_hours:g} hours",
                field="end",
            )
        return start, end, resolution

    # ---------- single patio ----------

    def get_timeline(
        self,
        patio_id: str,
        start: datetime,
        end: datetime,
        resolution_min: int | None = None,
        cancel: threading.Event | None = None,
    ) -> Timeline:
        """Timeline for [start, end); rejects bad requests before any computation."""
        patio = self.exposure.require_patio(patio_id)
        start, end, resolution = self.validate_range(start, end, resolution_min)
        return self._timeline(patio, start, end, resolution, cancel)

    def _timeline(
        self,
        patio: Patio,
        start: datetime,
        end: datetime,
        resolution: int,
        cancel: threading.Event | None,
    ) -> Timeline:
        self.exposure.engine.prepare(patio)
        now = ensure_utc(self.clock())
        weather = self.weather.window_for(start, end)
        stored = self._stored_points(patio.id, start, end, resolution)

        points, errors = self._evaluate_ticks(patio, tick_times(start, end, resolution), weather, now, stored, cancel)
        windows = extract_windows(
            patio.id,
            points,
            resolution,
            end,
            self.tz,
            now,
            self.settings.min_window_duration_min,
        )

        notes = []
        if weather.note:
            notes.append(weather.note)
        if errors:
            notes.append(f"{errors} tick(s) failed and were skipped")
        return Timeline(
            patio_id=patio.id,
            start=start,
            end=end,
            resolution_min=resolution,
            points=tuple(points),
            windows=tuple(windows),
            weather_mode=weather.mode(),
            notes=tuple(notes),
            error_count=errors,
        )

    def _evaluate_ticks(
        self,
        patio: Patio,
        ticks: list[datetime],
        weather: WeatherWindow,
        now: datetime,
        stored: dict[datetime, tuple[TimelinePoint, Provenance]],
        cancel: threading.Event | None,
    ) -> tuple[list[TimelinePoint], int]:
        stored_times = sorted(stored)
        points: list[TimelinePoint] = []
        errors = 0
        for ts in ticks:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"timeline for patio {patio.id} cancelled at {ts.isoformat()}")

            hit = stored.get(ts)
            if hit is not None:
                point, provenance = hit
                points.append(replace(point, provenance=provenance))
                continue

            interpolated = self._interpolate(patio, ts, stored, stored_times)
            if interpolated is not None:
                points.append(interpolated)
                continue

            try:
                result = self.exposure.evaluate(patio, ts, weather, now)
            except (ComputationError, GEOSException) as exc:
                logger.warning("Tick %s failed for patio %s: %s", ts.isoformat(), patio.id, exc)
                errors += 1
                continue
            points.append(point_from_exposure(result, self.tz, Provenance.CALCULATED))
        return points, errors

    def _interpolate(
        self,
        patio: Patio,
        ts: datetime,
        stored: dict[datetime, tuple[TimelinePoint, Provenance]],
        stored_times: list[datetime],
    ) -> TimelinePoint | None:
        idx = bisect.bisect_left(stored_times, ts)
        if idx == 0 or idx >= len(stored_times):
            return None
        before = stored[stored_times[idx - 1]][0]
        after = stored[stored_times[idx]][0]
        max_gap = timedelta(minutes=self.settings.interpolation_max_gap_steps * self.settings.precompute_resolution_min)
        if after.timestamp - before.timestamp > max_gap:
            return None
        if not (before.is_sun_visible and after.is_sun_visible):
            return None

        lat, lon = patio.centroid
        solar = self.exposure.solar.position(lat, lon, ts)
        if not solar.is_visible:
            return None

        ratio = (ts - before.timestamp).total_seconds() / (after.timestamp - before.timestamp).total_seconds()
        exposure = before.exposure_percent + (after.exposure_percent - before.exposure_percent) * ratio
        confidence = before.confidence + (after.confidence - before.confidence) * ratio
        state = classify_exposure(1.0 - exposure / 100.0, True, self.thresholds)
        cloud_cover = None
        if before.cloud_cover is not None and after.cloud_cover is not None:
            cloud_cover = round(before.cloud_cover + (after.cloud_cover - before.cloud_cover) * ratio, 3)
        return TimelinePoint(
            timestamp=ts,
            local_time=to_local_iso(ts, self.tz),
            exposure_percent=round(exposure, 1),
            state=state,
            confidence=round(confidence, 1),
            is_sun_visible=True,
            solar_elevation=round(solar.elevation, 3),
            solar_azimuth=round(solar.azimuth, 3),
            provenance=Provenance.INTERPOLATED,
            cloud_cover=cloud_cover,
            sun_blocked=is_sun_blocked(cloud_cover, self.settings.sun_blocking_cloud_cover),
        )

    def _stored_points(
        self,
        patio_id: str,
        start: datetime,
        end: datetime,
        resolution: int,
    ) -> dict[datetime, tuple[TimelinePoint, Provenance]]:
        if self.cache is None:
            return {}
        stored: dict[datetime, tuple[TimelinePoint, Provenance]] = {}
        day = local_date(start, self.tz)
        last_day = local_date(end - timedelta(microseconds=1), self.tz)
        resolutions = list(dict.fromkeys([resolution, self.settings.precompute_resolution_min]))
        while day <= last_day:
            for res in resolutions:
                day_set = self.cache.get(CacheKey(patio_id, day, res))
                if day_set is None:
                    continue
                provenance = Provenance.PRECOMPUTED if day_set.origin == ORIGIN_PRECOMPUTE else Provenance.CACHED
                for point in day_set.points:
                    stored.setdefault(point.timestamp, (point, provenance))
            day += timedelta(days=1)
        return stored

    def calculate_day(self, patio: Patio, day: date, resolution_min: int, origin: str = ORIGIN_ON_DEMAND) -> DaySet:
        """Live day set for one local calendar day (23/25 h on DST days)."""
        self.exposure.engine.prepare(patio)
        start, end = local_day_bounds(day, self.tz)
        now = ensure_utc(self.clock())
        weather = self.weather.window_for(start, end)
        points, errors = self._evaluate_ticks(patio, tick_times(start, end, resolution_min), weather, now, {}, None)
        windows = extract_windows(
            patio.id,
            points,
            resolution_min,
            end,
            self.tz,
            now,
            self.settings.min_window_duration_min,
        )
        return DaySet(
            patio_id=patio.id,
            day=day,
            resolution_min=resolution_min,
            origin=origin,
            computed_at=now,
            points=tuple(points),
            windows=tuple(windows),
            error_count=errors,
        )

    # ---------- convenience ranges ----------

    def today(self, patio_id: str, resolution_min: int | None = None) -> Timeline:
        start, end = local_day_bounds(local_date(self.clock(), self.tz), self.tz)
        return self.get_timeline(patio_id, start, end, resolution_min)

    def tomorrow(self, patio_id: str, resolution_min: int | None = None) -> Timeline:
        day = local_date(self.clock(), self.tz) + timedelta(days=1)
        start, end = local_day_bounds(day, self.tz)
        return self.get_timeline(patio_id, start, end, resolution_min)

    def next_hours(self, patio_id: str, hours: float = 12.0, resolution_min: int | None = None) -> Timeline:
        resolution = resolution_min or self.settings.default_resolution_min
        start = floor_to_resolution(self.clock(), resolution)
        return self.get_timeline(patio_id, start, start + timedelta(hours=hours), resolution)

    def best_windows(self, patio_id: str, day: date | None = None, top_n: int = 3) -> list:
        day = day or local_date(self.clock(), self.tz)
        start, end = local_day_bounds(day, self.tz)
        timeline = self.get_timeline(patio_id, start, end)
        return rank_windows(list(timeline.windows), top_n)

    # ---------- batch ----------

    def batch_timelines(
        self,
        patio_ids: list[str],
        start: datetime,
        end: datetime,
        resolution_min: int | None = None,
        cancel: threading.Event | None = None,
    ) -> BatchTimelineResult:
        patios = self.exposure.validate_batch(patio_ids)
        start, end, resolution = self.validate_range(start, end, resolution_min)

        batch = BatchTimelineResult()

        def _one(patio: Patio):
            try:
                return patio, self._timeline(patio, start, end, resolution, cancel), None
            except (ComputationError, GEOSException) as exc:
                logger.warning("Timeline failed for patio %s: %s", patio.id, exc)
                return patio, None, str(exc)
            except OperationCancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected timeline failure for patio %s", patio.id)
                return patio, None, f"{type(exc).__name__}: {exc}"

        with ThreadPoolExecutor(max_workers=self.settings.worker_concurrency) as pool:
            for patio, timeline, error in pool.map(_one, patios):
                if timeline is not None:
                    batch.timelines[patio.id] = timeline
                else:
                    batch.errors[patio.id] = error or "computation failed"
        return batch

    def compare_patios(
        self,
        patio_ids: list[str],
        start: datetime,
        end: datetime,
        resolution_min: int | None = None,
    ) -> dict:
        batch = self.batch_timelines(patio_ids, start, end, resolution_min)
        ranking = rank_recommendations(
            {pid: list(t.windows) for pid, t in batch.timelines.items()},
            ensure_utc(self.clock()),
        )
        return {
            "ranking": ranking,
            "compared": len(batch.timelines),
            "errors": dict(batch.errors),
        }

    # ---------- analysis ----------

    def summarize(self, timeline: Timeline) -> TimelineSummary:
        step = timeline.resolution_min
        minutes = {state: 0.0 for state in ExposureState}
        periods = {state: 0 for state in ExposureState}
        previous = None
        for point in timeline.points:
            minutes[point.state] += step
            if point.state is not previous:
                periods[point.state] += 1
            previous = point.state

        best_start = best_end = best_avg = None
        run: list[TimelinePoint] = []
        best_run: list[TimelinePoint] = []
        for point in timeline.points + (None,):
            if point is not None and point.exposure_percent >= BEST_PERIOD_MIN_EXPOSURE:
                run.append(point)
                continue
            if len(run) > len(best_run):
                best_run = run
            run = []
        if best_run:
            best_start = best_run[0].timestamp
            best_end = best_run[-1].timestamp + timedelta(minutes=step)
            best_avg = round(sum(p.exposure_percent for p in best_run) / len(best_run), 1)

        return TimelineSummary(
            sunny_minutes=minutes[ExposureState.SUNNY],
            partial_minutes=minutes[ExposureState.PARTIAL],
            shaded_minutes=minutes[ExposureState.SHADED],
            no_sun_minutes=minutes[ExposureState.NO_SUN],
            sunny_periods=periods[ExposureState.SUNNY],
            partial_periods=periods[ExposureState.PARTIAL],
            shaded_periods=periods[ExposureState.SHADED],
            best_period_start=best_start,
            best_period_end=best_end,
            best_period_avg_exposure=best_avg,
        )

    def assess_quality(self, timeline: Timeline) -> TimelineQuality:
        expected = len(tick_times(timeline.start, timeline.end, timeline.resolution_min))
        completeness = len(timeline.points) / expected if expected else 0.0
        average = (
            sum(p.confidence for p in timeline.points) / len(timeline.points) if timeline.points else 0.0
        )
        return TimelineQuality(
            completeness=round(completeness, 3),
            average_confidence=round(average, 1),
            provenance_counts={p.value: n for p, n in timeline.provenance_counts().items()},
            error_count=timeline.error_count,
        )
