"""Engine settings loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SUNNYSEAT_", env_file=".env", extra="ignore")

    city_id: str = "gothenburg"

    # Exposure classification on shaded fraction [0, 1].
    shaded_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    sunny_threshold: float = Field(default=0.30, ge=0.0, le=1.0)

    # Timeline policy
    default_resolution_min: int = 10
    min_resolution_min: int = 1
    max_resolution_min: int = 60
    max_timeline_hours: float = 48.0
    max_batch_size: int = 100
    min_window_duration_min: int = 30
    interpolation_max_gap_steps: int = 2

    # Confidence blend
    geometry_weight: float = 0.6
    weather_weight: float = 0.4
    forecast_cap: float = 90.0
    heuristic_cap: float = 60.0
    high_confidence_threshold: float = 70.0
    medium_confidence_threshold: float = 40.0
    nowcast_horizon_hours: float = 2.0
    weather_max_age_hours: float = 3.0
    estimated_cloud_certainty: float = 0.5
    sun_blocking_cloud_cover: float = 0.8

    # Shadow geometry
    max_shadow_distance_m: float = 200.0
    min_meaningful_height_m: float = 3.0

    # Concurrency and caching
    worker_concurrency: int = 4
    memory_cache_ttl_seconds: int = 5 * 60
    shared_cache_ttl_hours: float = 36.0
    cache_dir: str = ".cache/sunnyseat_v1/windows"
    job_dir: str = ".cache/sunnyseat_v1/jobs"

    # Daily precompute
    precompute_run_time: str = "03:00"
    precompute_resolution_min: int = 10
    precompute_retention_days: int = 3

    # Weather ingestion
    weather_poll_minutes: int = 10
    weather_retention_hours: float = 48.0
    met_no_user_agent: str = "SunnySeat/1.0 (engine)"

    @model_validator(mode="after")
    def _check_consistency(self) -> "EngineSettings":
        if self.sunny_threshold >= self.shaded_threshold:
            raise ValueError("sunny_threshold must be below shaded_threshold")
        if abs(self.geometry_weight + self.weather_weight - 1.0) > 1e-6:
            raise ValueError("geometry_weight and weather_weight must sum to 1")
        if not 1 <= self.min_resolution_min <= self.default_resolution_min <= self.max_resolution_min:
            raise ValueError("resolution bounds are inconsistent")
        return self


settings = EngineSettings()


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return settings
