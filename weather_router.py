"""Weather provider routing, append-only slice store, and per-request weather windows."""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from city_config import CityConfig
from errors import DataUnavailableError, ProviderUnavailableError
from models import WeatherMode, WeatherSlice
from timeutils import ensure_utc
from weather import WeatherProvider, now_utc

logger = logging.getLogger(__name__)


@dataclass
class WeatherFetchResult:
    provider_used: str
    fallback_used: bool
    slices: list[WeatherSlice]
    provider_errors: dict[str, str] = field(default_factory=dict)


class WeatherRouter:
    """Tries providers in order; raises only when every provider failed."""

    def __init__(self, providers: list[WeatherProvider]) -> None:
        self.providers = list(providers)

    def fetch(self, lat: float, lon: float, start: datetime, end: datetime, now: datetime | None = None) -> WeatherFetchResult:
        now = ensure_utc(now or now_utc())
        start = ensure_utc(start)
        end = ensure_utc(end)

        provider_errors: dict[str, str] = {}
        for index, provider in enumerate(self.providers):
            try:
                slices = provider.fetch(lat, lon, start, end, now)
            except ProviderUnavailableError as exc:
                logger.warning("Weather provider %s unavailable: %s", provider.name, exc)
                provider_errors[provider.name] = str(exc)
                continue
            return WeatherFetchResult(
                provider_used=provider.name,
                fallback_used=index > 0,
                slices=slices,
                provider_errors=provider_errors,
            )

        if not self.providers:
            raise ProviderUnavailableError("No weather providers configured")
        raise ProviderUnavailableError(f"All providers failed: {provider_errors}", errors=provider_errors)


class WeatherStore:
    """Append-only weather slices.

    Writers build a new sorted snapshot and swap it in; readers work on
    whatever snapshot they picked up and never lock.
    """

    def __init__(self) -> None:
        self._state: tuple[tuple[WeatherSlice, ...], tuple[datetime, ...]] = ((), ())
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._state[0])

    @staticmethod
    def _key(item: WeatherSlice) -> tuple[datetime, datetime]:
        # Same timestamp: the later fetch supersedes.
        return (item.timestamp, item.fetched_at or item.timestamp)

    def _swap(self, slices) -> None:
        ordered = tuple(sorted(slices, key=self._key))
        self._state = (ordered, tuple(s.timestamp for s in ordered))

    def append(self, slices: list[WeatherSlice]) -> int:
        if not slices:
            return 0
        with self._write_lock:
            self._swap([*self._state[0], *slices])
        return len(slices)

    def snapshot(self) -> tuple[WeatherSlice, ...]:
        return self._state[0]

    def latest_at_or_before(self, ts: datetime, max_age: timedelta | None = None) -> WeatherSlice | None:
        slices, stamps = self._state
        ts = ensure_utc(ts)
        idx = bisect.bisect_right(stamps, ts)
        if idx == 0:
            return None
        candidate = slices[idx - 1]
        if max_age is not None and ts - candidate.timestamp > max_age:
            return None
        return candidate

    def slices_between(self, start: datetime, end: datetime) -> list[WeatherSlice]:
        slices, stamps = self._state
        lo = bisect.bisect_left(stamps, ensure_utc(start))
        hi = bisect.bisect_right(stamps, ensure_utc(end))
        return list(slices[lo:hi])

    def prune(self, older_than: datetime) -> int:
        older_than = ensure_utc(older_than)
        with self._write_lock:
            current = self._state[0]
            kept = [s for s in current if s.timestamp >= older_than]
            self._swap(kept)
        return len(current) - len(kept)


@dataclass(frozen=True)
class WeatherWindow:
    """Weather fetched once for a whole timeline request and reused per tick."""

    slices: tuple[WeatherSlice, ...]
    max_age: timedelta
    note: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.slices

    def slice_for(self, ts: datetime) -> WeatherSlice | None:
        ts = ensure_utc(ts)
        best = None
        for item in self.slices:
            if item.timestamp > ts:
                break
            best = item
        if best is None or ts - best.timestamp > self.max_age:
            return None
        return best

    def cloud_cover_at(self, ts: datetime) -> float | None:
        """Linear interpolation between the neighbouring slices."""
        ts = ensure_utc(ts)
        before = self.slice_for(ts)
        if before is None:
            return None
        after = next((s for s in self.slices if s.timestamp > ts), None)
        if after is None or after.timestamp - before.timestamp > self.max_age:
            return before.cloud_cover
        span = (after.timestamp - before.timestamp).total_seconds()
        ratio = (ts - before.timestamp).total_seconds() / span
        return before.cloud_cover + (after.cloud_cover - before.cloud_cover) * ratio

    def mode(self) -> WeatherMode:
        if not self.slices:
            return WeatherMode.ESTIMATED
        if any(s.is_forecast for s in self.slices):
            return WeatherMode.FORECAST
        return WeatherMode.OBSERVED


class WeatherService:
    def __init__(self, store: WeatherStore, max_age_hours: float = 3.0) -> None:
        self.store = store
        self.max_age = timedelta(hours=max_age_hours)

    def _query(self, start: datetime, end: datetime) -> list[WeatherSlice]:
        slices = self.store.slices_between(ensure_utc(start) - self.max_age, end)
        if not slices:
            raise DataUnavailableError(f"no weather between {start.isoformat()} and {end.isoformat()}")
        return slices

    def window_for(self, start: datetime, end: datetime) -> WeatherWindow:
        try:
            slices = self._query(start, end)
        except DataUnavailableError as exc:
            logger.info("Weather unavailable, using estimated mode: %s", exc)
            return WeatherWindow(slices=(), max_age=self.max_age, note="estimated weather: no slices within horizon")
        latest: dict[datetime, WeatherSlice] = {}
        for item in slices:
            latest[item.timestamp] = item
        return WeatherWindow(slices=tuple(latest.values()), max_age=self.max_age)


class WeatherIngestionService:
    """Periodic background append of provider slices into the store."""

    def __init__(
        self,
        router: WeatherRouter,
        store: WeatherStore,
        city: CityConfig,
        poll_minutes: int = 10,
        horizon_hours: float = 48.0,
        retention_hours: float = 48.0,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.router = router
        self.store = store
        self.city = city
        self.poll_minutes = poll_minutes
        self.horizon_hours = horizon_hours
        self.retention_hours = retention_hours
        self.clock = clock
        self.last_result: WeatherFetchResult | None = None

    def ingest_once(self) -> int:
        now = ensure_utc(self.clock())
        start = now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=1)
        end = now + timedelta(hours=self.horizon_hours)
        lat, lon = self.city.center
        try:
            result = self.router.fetch(lat, lon, start, end, now)
        except ProviderUnavailableError as exc:
            logger.warning("Weather ingestion skipped, every provider failed: %s", exc)
            return 0
        self.last_result = result
        appended = self.store.append(result.slices)
        pruned = self.store.prune(now - timedelta(hours=self.retention_hours))
        logger.info(
            "Ingested %s weather slices from %s (fallback=%s, pruned=%s)",
            appended,
            result.provider_used,
            result.fallback_used,
            pruned,
        )
        return appended

    def run_forever(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.ingest_once()
            stop_event.wait(self.poll_minutes * 60)
