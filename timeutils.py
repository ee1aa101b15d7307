"""UTC helpers and local-time presentation with explicit DST rules.

Everything inside the engine runs on aware UTC datetimes. Local wall-clock
values only appear when a result is presented or when a local calendar day
has to be turned into a UTC range.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


UTC = timezone.utc


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_utc(parsed)


def to_local(dt: datetime, tz: ZoneInfo) -> datetime:
    return ensure_utc(dt).astimezone(tz)


def to_local_iso(dt: datetime, tz: ZoneInfo) -> str:
    return to_local(dt, tz).isoformat()


def format_local(dt: datetime, tz: ZoneInfo) -> str:
    """Human readable local time with zone abbreviation, e.g. ``2025-06-21 13:00 CEST``."""
    local = to_local(dt, tz)
    return f"{local.strftime('%Y-%m-%d %H:%M')} {local.tzname()}"


def tz_abbreviation(dt: datetime, tz: ZoneInfo) -> str:
    return to_local(dt, tz).tzname() or ""


def is_valid_local_time(local: datetime, tz: ZoneInfo) -> bool:
    """False for wall-clock times skipped by a spring-forward transition."""
    naive = local.replace(tzinfo=None)
    roundtrip = naive.replace(tzinfo=tz).astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip == naive


def is_ambiguous_local_time(local: datetime, tz: ZoneInfo) -> bool:
    """True for wall-clock times that occur twice when clocks fall back."""
    naive = local.replace(tzinfo=None)
    first = naive.replace(tzinfo=tz, fold=0).utcoffset()
    second = naive.replace(tzinfo=tz, fold=1).utcoffset()
    return first != second and is_valid_local_time(naive, tz)


def local_to_utc(local: datetime, tz: ZoneInfo, fold: int = 0) -> datetime:
    """
    Convert a naive local wall-clock time to UTC.

    Nonexistent spring times move forward by the size of the gap
    (02:30 becomes 03:30 local). Repeated autumn times resolve to the
    earlier UTC instant unless ``fold=1`` asks for the second occurrence.
    """
    naive = local.replace(tzinfo=None)
    if not is_valid_local_time(naive, tz):
        # fold=0 applies the pre-transition offset, which lands after the gap.
        return naive.replace(tzinfo=tz, fold=0).astimezone(UTC)
    return naive.replace(tzinfo=tz, fold=fold).astimezone(UTC)


def local_date(dt: datetime, tz: ZoneInfo) -> date:
    return to_local(dt, tz).date()


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC [start, end) of a local calendar day; 23 or 25 hours long on DST days."""
    start = local_to_utc(datetime.combine(day, time()), tz)
    end = local_to_utc(datetime.combine(day + timedelta(days=1), time()), tz)
    return start, end


def floor_to_resolution(dt: datetime, resolution_min: int) -> datetime:
    dt = ensure_utc(dt).replace(second=0, microsecond=0)
    minutes = dt.hour * 60 + dt.minute
    floored = minutes - (minutes % resolution_min)
    return dt.replace(hour=floored // 60, minute=floored % 60)


def hours_until(target: datetime, now: datetime) -> float:
    return max(0.0, (ensure_utc(target) - ensure_utc(now)).total_seconds() / 3600.0)
