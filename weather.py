"""Cloud-cover providers: met.no (primary), Open-Meteo (secondary), and a deterministic mock."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import ProviderUnavailableError
from models import WeatherSlice
from timeutils import UTC, ensure_utc, parse_iso

logger = logging.getLogger(__name__)

MET_NO_URL = "https://api.met.no/weatherapi/locationforecast/2.0/compact"
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"

PROVIDER_RELIABILITY = {
    "met_no": 0.95,
    "open_meteo": 0.85,
}
DEFAULT_RELIABILITY = 0.8
DEFAULT_NOWCAST_HOURS = 2.0


def make_session(user_agent: str) -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": user_agent})
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


class WeatherProvider(Protocol):
    name: str

    def fetch(self, lat: float, lon: float, start: datetime, end: datetime, now: datetime) -> list[WeatherSlice]:
        ...


def _slices_from_candidates(
    source: str,
    candidates: dict[datetime, float],
    start: datetime,
    end: datetime,
    now: datetime,
    nowcast_hours: float,
) -> list[WeatherSlice]:
    certainty = PROVIDER_RELIABILITY.get(source, DEFAULT_RELIABILITY)
    horizon = now + timedelta(hours=nowcast_hours)
    slices = []
    for ts, cloud_pct in sorted(candidates.items()):
        if ts < start or ts > end:
            continue
        slices.append(
            WeatherSlice(
                timestamp=ts,
                cloud_cover=max(0.0, min(1.0, float(cloud_pct) / 100.0)),
                certainty=certainty,
                source=source,
                is_forecast=ts > horizon,
                fetched_at=now,
            )
        )
    if not slices:
        raise ProviderUnavailableError(f"{source} returned no cloud cover inside the requested range", provider=source)
    return slices


class MetNoProvider:
    name = "met_no"

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str = "SunnySeat/1.0 (engine)",
        nowcast_hours: float = DEFAULT_NOWCAST_HOURS,
        timeout: float = 20.0,
    ) -> None:
        self.session = session or make_session(user_agent)
        self.nowcast_hours = nowcast_hours
        self.timeout = timeout

    def fetch(self, lat: float, lon: float, start: datetime, end: datetime, now: datetime) -> list[WeatherSlice]:
        try:
            response = self.session.get(
                MET_NO_URL,
                params={"lat": f"{lat:.4f}", "lon": f"{lon:.4f}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ProviderUnavailableError(f"met.no request failed: {exc}", provider=self.name) from exc
        candidates = parse_met_no_payload(payload)
        return _slices_from_candidates(self.name, candidates, start, end, ensure_utc(now), self.nowcast_hours)


def parse_met_no_payload(payload: dict) -> dict[datetime, float]:
    candidates: dict[datetime, float] = {}
    timeseries = payload.get("properties", {}).get("timeseries", [])
    for point in timeseries if isinstance(timeseries, list) else []:
        dt = parse_iso(point.get("time"))
        if dt is None:
            continue
        cloud = (
            point.get("data", {})
            .get("instant", {})
            .get("details", {})
            .get("cloud_area_fraction")
        )
        if cloud is None:
            continue
        candidates[dt] = float(cloud)

    if not candidates:
        raise ProviderUnavailableError("met.no payload did not include cloud_area_fraction values", provider="met_no")
    return candidates


class OpenMeteoProvider:
    name = "open_meteo"

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str = "SunnySeat/1.0 (engine)",
        nowcast_hours: float = DEFAULT_NOWCAST_HOURS,
        timeout: float = 30.0,
    ) -> None:
        self.session = session or make_session(user_agent)
        self.nowcast_hours = nowcast_hours
        self.timeout = timeout

    def fetch(self, lat: float, lon: float, start: datetime, end: datetime, now: datetime) -> list[WeatherSlice]:
        start = ensure_utc(start)
        end = ensure_utc(end)
        params = {
            "latitude": lat,
            "longitude": lon,
            "hourly": "cloudcover",
            "timezone": "UTC",
            "start_date": start.date().isoformat(),
            "end_date": end.date().isoformat(),
        }
        try:
            response = self.session.get(OPEN_METEO_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ProviderUnavailableError(f"Open-Meteo request failed: {exc}", provider=self.name) from exc
        candidates = parse_open_meteo_payload(payload)
        return _slices_from_candidates(self.name, candidates, start, end, ensure_utc(now), self.nowcast_hours)


def parse_open_meteo_payload(payload: dict) -> dict[datetime, float]:
    hourly = payload.get("hourly", {})
    times = hourly.get("time", [])
    clouds = hourly.get("cloudcover", [])
    candidates: dict[datetime, float] = {}
    for raw_t, raw_c in zip(times, clouds):
        dt = parse_iso(raw_t)
        if dt is None or raw_c is None:
            continue
        candidates[dt] = float(raw_c)
    if not candidates:
        raise ProviderUnavailableError("Open-Meteo payload did not include cloudcover values", provider="open_meteo")
    return candidates


class MockWeatherProvider:
    """Deterministic hourly cloud cover for tests and offline runs.

    Cloud cover follows a fixed daily curve unless ``cloud_cover`` pins it.
    """

    def __init__(
        self,
        name: str = "mock",
        cloud_cover: float | None = None,
        certainty: float = 0.9,
        nowcast_hours: float = DEFAULT_NOWCAST_HOURS,
        fail: bool = False,
        step_minutes: int = 60,
    ) -> None:
        self.name = name
        self.cloud_cover = cloud_cover
        self.certainty = certainty
        self.nowcast_hours = nowcast_hours
        self.fail = fail
        self.step_minutes = step_minutes
        self.calls = 0

    def cloud_at(self, ts: datetime) -> float:
        if self.cloud_cover is not None:
            return self.cloud_cover
        hour = ts.hour + ts.minute / 60.0
        return round(0.4 + 0.3 * math.sin(2 * math.pi * (hour - 6.0) / 24.0), 4)

    def fetch(self, lat: float, lon: float, start: datetime, end: datetime, now: datetime) -> list[WeatherSlice]:
        self.calls += 1
        if self.fail:
            raise ProviderUnavailableError(f"{self.name} is configured to fail", provider=self.name)
        start = ensure_utc(start).replace(minute=0, second=0, microsecond=0)
        end = ensure_utc(end)
        now = ensure_utc(now)
        horizon = now + timedelta(hours=self.nowcast_hours)
        slices = []
        ts = start
        while ts <= end:
            slices.append(
                WeatherSlice(
                    timestamp=ts,
                    cloud_cover=self.cloud_at(ts),
                    certainty=self.certainty,
                    source=self.name,
                    is_forecast=ts > horizon,
                    fetched_at=now,
                )
            )
            ts += timedelta(minutes=self.step_minutes)
        return slices


def now_utc() -> datetime:
    return datetime.now(UTC)
