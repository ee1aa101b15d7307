"""Julian-day solar ephemeris (NOAA/Meeus low-precision series).

All inputs and outputs are UTC. Angles are degrees; azimuth is measured
clockwise from true north.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache

from errors import InputValidationError
from models import SolarPosition
from timeutils import ensure_utc

UTC = timezone.utc

JD_J2000 = 2451545.0
DAYS_PER_CENTURY = 36525.0

STANDARD_PRESSURE_HPA = 1013.25
STANDARD_TEMPERATURE_C = 15.0
# No refraction is applied to true elevations below this.
REFRACTION_FLOOR_DEG = -0.5
# Sunrise/sunset zenith: 50' refraction and semi-diameter allowance.
SUNRISE_ZENITH_DEG = 90.833
# Horizontal parallax of the sun at 1 AU (8.794 arcsec).
SOLAR_PARALLAX_DEG = 8.794 / 3600.0

# Lookup grid for cached_solar_position: 1e-4 deg (~11 m) and one minute.
GRID_SCALE = 10_000


@dataclass(frozen=True)
class SunTimes:
    day: date
    solar_noon: datetime
    sunrise: datetime | None
    sunset: datetime | None
    max_elevation: float
    is_polar_day: bool = False
    is_polar_night: bool = False

    @property
    def day_length_hours(self) -> float:
        if self.is_polar_day:
            return 24.0
        if self.sunrise is None or self.sunset is None:
            return 0.0
        return (self.sunset - self.sunrise).total_seconds() / 3600.0


def julian_day(dt: datetime) -> float:
    dt = ensure_utc(dt)
    year, month = dt.year, dt.month
    day_fraction = (
        dt.hour + dt.minute / 60.0 + (dt.second + dt.microsecond / 1e6) / 3600.0
    ) / 24.0
    if month <= 2:
        year -= 1
        month += 12
    a = year // 100
    b = 2 - a + a // 4
    return (
        math.floor(365.25 * (year + 4716))
        + math.floor(30.6001 * (month + 1))
        + dt.day
        + b
        - 1524.5
        + day_fraction
    )


def julian_century(jd: float) -> float:
    return (jd - JD_J2000) / DAYS_PER_CENTURY


@dataclass(frozen=True)
class SunCoordinates:
    """Apparent equatorial coordinates of the sun for one instant."""

    declination: float  # deg
    right_ascension: float  # deg
    equation_of_time: float  # minutes
    equation_of_equinoxes: float  # deg, apparent minus mean sidereal time


def sun_coordinates(t: float) -> SunCoordinates:
    """Sun coordinates for Julian century ``t`` (low-precision Meeus series)."""
    mean_long = (280.46646 + t * (36000.76983 + 0.0003032 * t)) % 360.0
    mean_anomaly = 357.52911 + t * (35999.05029 - 0.0001537 * t)
    eccentricity = 0.016708634 - t * (0.000042037 + 0.0000001267 * t)

    l0 = math.radians(mean_long)
    m = math.radians(mean_anomaly)

    center = (
        math.sin(m) * (1.914602 - t * (0.004817 + 0.000014 * t))
        + math.sin(2 * m) * (0.019993 - 0.000101 * t)
        + math.sin(3 * m) * 0.000289
    )
    true_long = mean_long + center
    omega = math.radians(125.04 - 1934.136 * t)
    nutation_long = -0.00478 * math.sin(omega)
    apparent_long = math.radians(true_long - 0.00569 + nutation_long)

    mean_obliquity = 23.0 + (26.0 + (21.448 - t * (46.815 + t * (0.00059 - t * 0.001813))) / 60.0) / 60.0
    obliquity = math.radians(mean_obliquity + 0.00256 * math.cos(omega))

    declination = math.degrees(math.asin(_clamp(math.sin(obliquity) * math.sin(apparent_long))))
    right_ascension = math.degrees(
        math.atan2(math.cos(obliquity) * math.sin(apparent_long), math.cos(apparent_long))
    ) % 360.0

    y = math.tan(obliquity / 2.0) ** 2
    eot = 4.0 * math.degrees(
        y * math.sin(2 * l0)
        - 2 * eccentricity * math.sin(m)
        + 4 * eccentricity * y * math.sin(m) * math.cos(2 * l0)
        - 0.5 * y * y * math.sin(4 * l0)
        - 1.25 * eccentricity * eccentricity * math.sin(2 * m)
    )
    return SunCoordinates(
        declination=declination,
        right_ascension=right_ascension,
        equation_of_time=eot,
        equation_of_equinoxes=nutation_long * math.cos(obliquity),
    )


def greenwich_sidereal_time(jd: float) -> float:
    """Mean sidereal time at Greenwich in degrees (Meeus 12.4)."""
    t = julian_century(jd)
    theta = 280.46061837 + 360.98564736629 * (jd - JD_J2000) + t * t * (0.000387933 - t / 38710000.0)
    return theta % 360.0


def pressure_at_elevation(elevation_m: float) -> float:
    """Standard-atmosphere pressure (hPa) at an observer height above sea level."""
    return STANDARD_PRESSURE_HPA * (1.0 - 2.25577e-5 * max(0.0, elevation_m)) ** 5.25588


def refraction_correction(
    true_elevation: float,
    pressure_hpa: float = STANDARD_PRESSURE_HPA,
    temperature_c: float = STANDARD_TEMPERATURE_C,
) -> float:
    """Atmospheric refraction (deg) to add to a geometric elevation."""
    if true_elevation <= REFRACTION_FLOOR_DEG:
        return 0.0
    # Saemundsson: arcminutes from true altitude, scaled to local conditions.
    arcmin = 1.02 / math.tan(math.radians(true_elevation + 10.3 / (true_elevation + 5.11)))
    scale = (pressure_hpa / 1010.0) * (283.0 / (273.0 + temperature_c))
    return arcmin * scale / 60.0


def solar_position(
    latitude: float,
    longitude: float,
    when: datetime,
    elevation_m: float = 0.0,
    temperature_c: float = STANDARD_TEMPERATURE_C,
    apply_refraction: bool = True,
) -> SolarPosition:
    """Sun elevation/azimuth for a WGS84 location and instant.

    Never fails for valid coordinates; at the poles the sun may simply stay
    below the horizon.
    """
    _validate_location(latitude, longitude)
    when = ensure_utc(when)

    jd = julian_day(when)
    sun = sun_coordinates(julian_century(jd))
    declination = sun.declination
    apparent_sidereal = greenwich_sidereal_time(jd) + sun.equation_of_equinoxes
    hour_angle = _normalize_signed(apparent_sidereal + longitude - sun.right_ascension)

    phi = math.radians(latitude)
    delta = math.radians(declination)
    ha = math.radians(hour_angle)

    cos_zenith = math.sin(phi) * math.sin(delta) + math.cos(phi) * math.cos(delta) * math.cos(ha)
    geometric_elevation = 90.0 - math.degrees(math.acos(_clamp(cos_zenith)))
    geometric_elevation -= SOLAR_PARALLAX_DEG * math.cos(math.radians(geometric_elevation))

    azimuth = math.degrees(
        math.atan2(math.sin(ha), math.cos(ha) * math.sin(phi) - math.tan(delta) * math.cos(phi))
    )
    azimuth = (azimuth + 180.0) % 360.0

    elevation = geometric_elevation
    if apply_refraction:
        elevation += refraction_correction(
            geometric_elevation,
            pressure_at_elevation(elevation_m),
            temperature_c,
        )

    return SolarPosition(
        timestamp=when,
        latitude=latitude,
        longitude=longitude,
        elevation=elevation,
        azimuth=azimuth,
        is_visible=elevation > 0.0,
    )


def cached_solar_position(
    latitude: float,
    longitude: float,
    when: datetime,
    elevation_m: float = 0.0,
) -> SolarPosition:
    """Grid-snapped variant of solar_position for per-minute timeline sweeps."""
    _validate_location(latitude, longitude)
    when = ensure_utc(when).replace(second=0, microsecond=0)
    return _grid_position(
        round(latitude * GRID_SCALE),
        round(longitude * GRID_SCALE),
        int(when.timestamp() // 60),
        round(elevation_m),
    )


@lru_cache(maxsize=65536)
def _grid_position(lat_key: int, lon_key: int, minute_key: int, elevation_key: int) -> SolarPosition:
    when = datetime.fromtimestamp(minute_key * 60, tz=UTC)
    return solar_position(lat_key / GRID_SCALE, lon_key / GRID_SCALE, when, float(elevation_key))


def sun_times(day: date, latitude: float, longitude: float, elevation_m: float = 0.0) -> SunTimes:
    """Solar noon, sunrise, and sunset (UTC) for the solar day nearest ``day``."""
    _validate_location(latitude, longitude)
    midnight = datetime.combine(day, time(), tzinfo=UTC)

    noon_minutes = 720.0 - 4.0 * longitude
    for _ in range(3):
        t = julian_century(julian_day(midnight + timedelta(minutes=noon_minutes)))
        eot = sun_coordinates(t).equation_of_time
        noon_minutes = 720.0 - 4.0 * longitude - eot
    solar_noon = midnight + timedelta(minutes=noon_minutes)
    max_elevation = solar_position(latitude, longitude, solar_noon, elevation_m).elevation

    sunrise = _horizon_crossing(midnight, noon_minutes, latitude, longitude, rising=True)
    sunset = _horizon_crossing(midnight, noon_minutes, latitude, longitude, rising=False)

    polar_day = sunrise is None and max_elevation > 0
    polar_night = sunrise is None and not polar_day
    return SunTimes(
        day=day,
        solar_noon=solar_noon,
        sunrise=sunrise,
        sunset=sunset,
        max_elevation=max_elevation,
        is_polar_day=polar_day,
        is_polar_night=polar_night,
    )


def _horizon_crossing(
    midnight: datetime,
    noon_minutes: float,
    latitude: float,
    longitude: float,
    rising: bool,
) -> datetime | None:
    sign = -1.0 if rising else 1.0
    minutes = noon_minutes
    for _ in range(3):
        t = julian_century(julian_day(midnight + timedelta(minutes=minutes)))
        sun = sun_coordinates(t)
        declination, eot = sun.declination, sun.equation_of_time
        hour_angle = _sunrise_hour_angle(latitude, declination)
        if hour_angle is None:
            return None
        minutes = 720.0 - 4.0 * (longitude - sign * hour_angle) - eot
    return midnight + timedelta(minutes=minutes)


def _sunrise_hour_angle(latitude: float, declination: float) -> float | None:
    phi = math.radians(latitude)
    delta = math.radians(declination)
    denominator = math.cos(phi) * math.cos(delta)
    if abs(denominator) < 1e-12:
        return None
    cos_ha = math.cos(math.radians(SUNRISE_ZENITH_DEG)) / denominator - math.tan(phi) * math.tan(delta)
    if cos_ha < -1.0 or cos_ha > 1.0:
        return None
    return math.degrees(math.acos(cos_ha))


class SolarPositionCalculator:
    """Injectable wrapper so services can share one observer elevation and cache policy."""

    def __init__(self, elevation_m: float = 0.0, use_cache: bool = True) -> None:
        self.elevation_m = elevation_m
        self.use_cache = use_cache

    def position(self, latitude: float, longitude: float, when: datetime) -> SolarPosition:
        if self.use_cache:
            return cached_solar_position(latitude, longitude, when, self.elevation_m)
        return solar_position(latitude, longitude, when, self.elevation_m)

    def sun_times(self, day: date, latitude: float, longitude: float) -> SunTimes:
        return sun_times(day, latitude, longitude, self.elevation_m)


def _validate_location(latitude: float, longitude: float) -> None:
    if not (math.isfinite(latitude) and -90.0 <= latitude <= 90.0):
        raise InputValidationError(f"latitude out of range: {latitude}", field="latitude")
    if not (math.isfinite(longitude) and -180.0 <= longitude <= 180.0):
        raise InputValidationError(f"longitude out of range: {longitude}", field="longitude")


def _normalize_signed(angle: float) -> float:
    return (angle + 180.0) % 360.0 - 180.0


def _clamp(value: float, lower: float = -1.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))
