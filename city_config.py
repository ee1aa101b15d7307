"""City configuration and provider routing defaults for SunnySeat."""

from __future__ import annotations

from dataclasses import dataclass
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class CityConfig:
    city_id: str
    display_name: str
    timezone: str
    bbox: tuple[float, float, float, float]
    center_lat: float
    center_lon: float
    ground_elevation_m: float
    provider_order: tuple[str, ...]

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def center(self) -> tuple[float, float]:
        return (self.center_lat, self.center_lon)

    def contains(self, lat: float, lon: float) -> bool:
        min_lon, min_lat, max_lon, max_lat = self.bbox
        return min_lon <= lon <= max_lon and min_lat <= lat <= max_lat


CITY_CONFIGS: dict[str, CityConfig] = {
    "gothenburg": CityConfig(
        city_id="gothenburg",
        display_name="Göteborg",
        timezone="Europe/Stockholm",
        bbox=(11.85, 57.65, 12.10, 57.78),
        center_lat=57.7089,
        center_lon=11.9746,
        ground_elevation_m=12.0,
        provider_order=("met_no", "open_meteo"),
    ),
}


def get_city_config(city_id: str) -> CityConfig:
    return CITY_CONFIGS.get(city_id, CITY_CONFIGS["gothenburg"])
