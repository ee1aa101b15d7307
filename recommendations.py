"""Sun-window extraction, merging, grading, and recommendation ranking."""

from __future__ import annotations

import hashlib
from dataclasses import replace
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import numpy as np

from models import SunWindow, TimelinePoint, WindowQuality
from timeutils import ensure_utc, hours_until, local_date, to_local, to_local_iso

DEFAULT_MIN_DURATION_MIN = 30
RECENCY_HORIZON_HOURS = 48.0
RECOMMEND_MIN_EXPOSURE = 50.0

# (quality, min average exposure, min average confidence)
QUALITY_BANDS: tuple[tuple[WindowQuality, float, float], ...] = (
    (WindowQuality.EXCELLENT, 80.0, 70.0),
    (WindowQuality.GOOD, 60.0, 55.0),
    (WindowQuality.FAIR, 40.0, 40.0),
)

PRIORITY_WEIGHTS = {
    "duration": 0.30,
    "exposure": 0.35,
    "confidence": 0.20,
    "recency": 0.15,
}


def grade_window(avg_exposure: float, avg_confidence: float) -> WindowQuality:
    for quality, min_exposure, min_confidence in QUALITY_BANDS:
        if avg_exposure >= min_exposure and avg_confidence >= min_confidence:
            return quality
    return WindowQuality.POOR


def time_of_day(local_dt: datetime) -> str:
    hour = local_dt.hour
    if hour < 11:
        return "morning"
    if hour < 14:
        return "midday"
    if hour < 18:
        return "afternoon"
    return "evening"


def priority_score(
    duration_min: float,
    avg_exposure: float,
    confidence: float,
    start: datetime,
    end: datetime,
    now: datetime,
) -> float:
    duration_score = min(duration_min / 60.0 * 25.0, 100.0)
    if ensure_utc(end) <= ensure_utc(now):
        recency = 0.0
    else:
        ahead = hours_until(start, now)
        recency = max(0.0, 100.0 * (1.0 - ahead / RECENCY_HORIZON_HOURS))
    score = (
        PRIORITY_WEIGHTS["duration"] * duration_score
        + PRIORITY_WEIGHTS["exposure"] * avg_exposure
        + PRIORITY_WEIGHTS["confidence"] * confidence
        + PRIORITY_WEIGHTS["recency"] * recency
    )
    return round(score, 2)


def recommendation_for(window: SunWindow, tz: ZoneInfo, min_duration_min: float) -> tuple[bool, str]:
    duration = window.duration_min
    recommended = (
        window.quality in (WindowQuality.EXCELLENT, WindowQuality.GOOD)
        and duration >= min_duration_min
        and window.avg_exposure >= RECOMMEND_MIN_EXPOSURE
    )

    reason_parts = []
    if duration >= 120:
        reason_parts.append("long sun window")
    elif duration >= 60:
        reason_parts.append("solid sun window")
    else:
        reason_parts.append("short sun window")

    if window.avg_exposure >= 80:
        reason_parts.append("high direct-sun potential")
    elif window.avg_exposure < RECOMMEND_MIN_EXPOSURE:
        reason_parts.append("mostly partial sun")

    if window.quality is WindowQuality.EXCELLENT:
        reason_parts.append("excellent conditions")
    elif window.confidence < 40:
        reason_parts.append("low confidence")

    reason_parts.append(f"{time_of_day(to_local(window.start, tz))} sun")
    return recommended, ", ".join(reason_parts)


def score_window(window: SunWindow, tz: ZoneInfo, now: datetime, min_duration_min: float) -> SunWindow:
    quality = grade_window(window.avg_exposure, window.confidence)
    graded = replace(window, quality=quality)
    recommended, reason = recommendation_for(graded, tz, min_duration_min)
    return replace(
        graded,
        is_recommended=recommended,
        recommendation_reason=reason,
        priority_score=priority_score(
            graded.duration_min, graded.avg_exposure, graded.confidence, graded.start, graded.end, now
        ),
    )


def _build_window(
    patio_id: str,
    run: list[TimelinePoint],
    step: timedelta,
    range_end: datetime,
    tz: ZoneInfo,
) -> SunWindow:
    start = run[0].timestamp
    end = min(run[-1].timestamp + step, range_end)
    exposures = np.asarray([p.exposure_percent for p in run], dtype=float)
    confidences = np.asarray([p.confidence for p in run], dtype=float)
    peak = run[int(np.argmax(exposures))]
    return SunWindow(
        patio_id=patio_id,
        date=local_date(start, tz),
        start=start,
        end=end,
        local_start=to_local_iso(start, tz),
        local_end=to_local_iso(end, tz),
        min_exposure=round(float(exposures.min()), 1),
        max_exposure=round(float(exposures.max()), 1),
        avg_exposure=round(float(exposures.mean()), 1),
        peak_time=peak.timestamp,
        quality=WindowQuality.POOR,
        confidence=round(float(confidences.mean()), 1),
    )


def extract_windows(
    patio_id: str,
    points: list[TimelinePoint],
    resolution_min: int,
    range_end: datetime,
    tz: ZoneInfo,
    now: datetime,
    min_duration_min: float = DEFAULT_MIN_DURATION_MIN,
) -> list[SunWindow]:
    """Contiguous Sunny/Partial runs long enough to count as sun windows."""
    step = timedelta(minutes=resolution_min)
    runs: list[list[TimelinePoint]] = []
    current: list[TimelinePoint] = []
    for point in sorted(points, key=lambda p: p.timestamp):
        contiguous = bool(current) and point.timestamp - current[-1].timestamp <= step
        if point.state.is_sunlit and (contiguous or not current):
            current.append(point)
            continue
        if current:
            runs.append(current)
        current = [point] if point.state.is_sunlit else []
    if current:
        runs.append(current)

    windows = [_build_window(patio_id, run, step, ensure_utc(range_end), tz) for run in runs]
    windows = [score_window(w, tz, now, min_duration_min) for w in windows]
    return merge_windows(windows, min_duration_min, tz=tz, now=now)


def _combine(a: SunWindow, b: SunWindow, tz: ZoneInfo) -> SunWindow:
    start = min(a.start, b.start)
    end = max(a.end, b.end)
    wa = max(a.duration.total_seconds(), 1.0)
    wb = max(b.duration.total_seconds(), 1.0)
    peak = a if a.max_exposure >= b.max_exposure else b
    return SunWindow(
        patio_id=a.patio_id,
        date=local_date(start, tz),
        start=start,
        end=end,
        local_start=to_local_iso(start, tz),
        local_end=to_local_iso(end, tz),
        min_exposure=min(a.min_exposure, b.min_exposure),
        max_exposure=max(a.max_exposure, b.max_exposure),
        avg_exposure=round((a.avg_exposure * wa + b.avg_exposure * wb) / (wa + wb), 1),
        peak_time=peak.peak_time,
        quality=WindowQuality.POOR,
        confidence=round((a.confidence * wa + b.confidence * wb) / (wa + wb), 1),
    )


def merge_windows(
    windows: list[SunWindow],
    min_duration_min: float = DEFAULT_MIN_DURATION_MIN,
    tz: ZoneInfo | None = None,
    now: datetime | None = None,
) -> list[SunWindow]:
    """Coalesce overlapping or touching windows per patio and drop short ones.

    Idempotent: merging an already-merged sequence returns it unchanged.
    """
    if not windows:
        return []
    tz = tz or ZoneInfo("UTC")
    ordered = sorted(windows, key=lambda w: (w.patio_id, w.start, w.end))

    merged: list[SunWindow] = []
    for window in ordered:
        if merged and merged[-1].patio_id == window.patio_id and window.start <= merged[-1].end:
            combined = _combine(merged[-1], window, tz)
            if now is not None:
                combined = score_window(combined, tz, now, min_duration_min)
            else:
                combined = replace(
                    combined,
                    quality=grade_window(combined.avg_exposure, combined.confidence),
                    priority_score=max(merged[-1].priority_score, window.priority_score),
                )
            merged[-1] = combined
        else:
            merged.append(window)

    return [w for w in merged if w.duration_min >= min_duration_min]


def rank_windows(windows: list[SunWindow], top_n: int | None = None) -> list[SunWindow]:
    ranked = sorted(windows, key=lambda w: (-w.priority_score, w.start, w.patio_id))
    return ranked[:top_n] if top_n else ranked


def rank_recommendations(windows_by_patio: dict[str, list[SunWindow]], now: datetime) -> list[dict]:
    """Best upcoming window per patio, ranked for "best nearby" comparisons."""
    now = ensure_utc(now)
    items: list[dict] = []
    for patio_id, windows in windows_by_patio.items():
        upcoming = [w for w in windows if w.end > now]
        if not upcoming:
            continue
        best = rank_windows(upcoming, 1)[0]
        items.append(
            {
                "patio_id": patio_id,
                "start_utc": best.start.isoformat(),
                "end_utc": best.end.isoformat(),
                "local_start": best.local_start,
                "local_end": best.local_end,
                "duration_min": int(best.duration_min),
                "avg_exposure": best.avg_exposure,
                "quality": best.quality.value,
                "score": best.priority_score,
                "reason": best.recommendation_reason,
                "is_recommended": best.is_recommended,
            }
        )

    items.sort(key=lambda item: (-item["score"], item["start_utc"], item["patio_id"]))
    return items


def cache_key_from_parts(*parts: str) -> str:
    raw = "|".join(parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
