"""Blended geometry/weather confidence for exposure predictions."""

from __future__ import annotations

from dataclasses import dataclass

from models import ConfidenceLevel, HeightSource, WeatherMode, WeatherSlice
from settings import EngineSettings, get_settings

LOW_PATIO_QUALITY = 0.5
LOW_SUN_ELEVATION = 10.0


@dataclass(frozen=True)
class ConfidenceInputs:
    patio_quality: float
    height_source: HeightSource | None  # None: no building can reach the patio
    weather: WeatherSlice | None
    lead_hours: float = 0.0
    sun_visible: bool = True
    sun_elevation: float | None = None


@dataclass(frozen=True)
class ConfidenceBreakdown:
    score: float
    level: ConfidenceLevel
    geometry_quality: float
    cloud_certainty: float
    weather_mode: WeatherMode
    caps_applied: tuple[str, ...] = ()
    issues: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()

    @property
    def is_sufficient(self) -> bool:
        return self.score >= 60.0


def horizon_decay(lead_hours: float, nowcast_hours: float) -> float:
    """Certainty multiplier for how far ahead of the weather fetch the target lies."""
    if lead_hours <= nowcast_hours:
        return 1.0
    if lead_hours <= 24:
        return 0.9
    if lead_hours <= 48:
        return 0.8
    if lead_hours <= 72:
        return 0.72
    if lead_hours <= 96:
        return 0.65
    if lead_hours <= 120:
        return 0.58
    return 0.5


def weather_mode_for(weather: WeatherSlice | None, lead_hours: float, nowcast_hours: float) -> WeatherMode:
    if weather is None:
        return WeatherMode.ESTIMATED
    if weather.is_forecast or lead_hours > nowcast_hours:
        return WeatherMode.FORECAST
    return WeatherMode.OBSERVED


def confidence_level(score: float, high: float = 70.0, medium: float = 40.0) -> ConfidenceLevel:
    if score >= high:
        return ConfidenceLevel.HIGH
    if score >= medium:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class ConfidenceCalculator:
    """Pure function of its inputs: no hidden state between calls."""

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or get_settings()

    def geometry_quality(self, inputs: ConfidenceInputs) -> float:
        if not inputs.sun_visible:
            return 1.0
        quality = _clamp01(inputs.patio_quality)
        weight = inputs.height_source.weight if inputs.height_source is not None else 1.0
        return quality * weight

    def cloud_certainty(self, inputs: ConfidenceInputs) -> float:
        if inputs.weather is None:
            return self.settings.estimated_cloud_certainty
        decay = horizon_decay(max(0.0, inputs.lead_hours), self.settings.nowcast_horizon_hours)
        return _clamp01(inputs.weather.certainty) * decay

    def calculate(self, inputs: ConfidenceInputs) -> ConfidenceBreakdown:
        s = self.settings
        geometry = self.geometry_quality(inputs)
        cloud = self.cloud_certainty(inputs)
        mode = weather_mode_for(inputs.weather, max(0.0, inputs.lead_hours), s.nowcast_horizon_hours)

        score = 100.0 * (s.geometry_weight * geometry + s.weather_weight * cloud)
        score = max(0.0, min(100.0, score))

        caps: list[str] = []
        if mode is WeatherMode.FORECAST and score > s.forecast_cap:
            score = s.forecast_cap
            caps.append("forecast_only")
        if inputs.height_source is HeightSource.HEURISTIC and score > s.heuristic_cap:
            score = s.heuristic_cap
            caps.append("heuristic_height")
        if mode is WeatherMode.ESTIMATED and score > s.heuristic_cap:
            score = s.heuristic_cap
            caps.append("weather_missing")

        score = round(score, 1)
        issues, suggestions = self._diagnose(inputs, mode)
        return ConfidenceBreakdown(
            score=score,
            level=confidence_level(score, s.high_confidence_threshold, s.medium_confidence_threshold),
            geometry_quality=geometry,
            cloud_certainty=cloud,
            weather_mode=mode,
            caps_applied=tuple(caps),
            issues=issues,
            suggestions=suggestions,
        )

    def score(self, inputs: ConfidenceInputs) -> float:
        return self.calculate(inputs).score

    def _diagnose(self, inputs: ConfidenceInputs, mode: WeatherMode) -> tuple[tuple[str, ...], tuple[str, ...]]:
        issues: list[str] = []
        suggestions: list[str] = []
        if inputs.height_source is HeightSource.HEURISTIC:
            issues.append("Building heights are estimated")
            suggestions.append("Add surveyed or OSM heights for nearby buildings")
        elif inputs.height_source is HeightSource.OSM:
            issues.append("Building heights come from OSM")
        if inputs.patio_quality < LOW_PATIO_QUALITY:
            issues.append("Patio polygon quality is low")
            suggestions.append("Review the patio outline")
        if mode is WeatherMode.ESTIMATED:
            issues.append("No weather data within horizon")
            suggestions.append("Check weather ingestion")
        elif mode is WeatherMode.FORECAST:
            issues.append("Weather is forecast-only")
        if inputs.sun_elevation is not None and 0 < inputs.sun_elevation < LOW_SUN_ELEVATION:
            issues.append("Low sun angle reduces shadow accuracy")
        return tuple(issues), tuple(suggestions)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
