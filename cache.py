"""Two-layer day-set cache (in-process TTL over shared JSON files) with single-flight."""

from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, NamedTuple

from models import SunWindow, TimelinePoint
from recommendations import cache_key_from_parts
from timeutils import UTC, ensure_utc, parse_iso

logger = logging.getLogger(__name__)

ALGORITHM_VERSION = "1.0"
ORIGIN_PRECOMPUTE = "precompute"
ORIGIN_ON_DEMAND = "on_demand"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


class CacheKey(NamedTuple):
    patio_id: str
    day: date
    resolution_min: int

    @property
    def patio_prefix(self) -> str:
        return patio_prefix(self.patio_id)

    @property
    def name(self) -> str:
        return f"{self.patio_prefix}__{self.day.isoformat()}__{self.resolution_min}m"


def patio_prefix(patio_id: str) -> str:
    slug = _UNSAFE_CHARS.sub("-", patio_id)[:48]
    return f"{slug}-{cache_key_from_parts(patio_id)[:10]}"


@dataclass(frozen=True)
class DaySet:
    """Timeline points and sun windows for one patio, local day, and resolution."""

    patio_id: str
    day: date
    resolution_min: int
    origin: str
    computed_at: datetime
    points: tuple[TimelinePoint, ...] = ()
    windows: tuple[SunWindow, ...] = ()
    error_count: int = 0
    algorithm_version: str = ALGORITHM_VERSION

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.patio_id, self.day, self.resolution_min)

    def to_dict(self) -> dict:
        return {
            "patio_id": self.patio_id,
            "day": self.day.isoformat(),
            "resolution_min": self.resolution_min,
            "origin": self.origin,
            "computed_at": self.computed_at.isoformat(),
            "points": [p.to_dict() for p in self.points],
            "windows": [w.to_dict() for w in self.windows],
            "error_count": self.error_count,
            "algorithm_version": self.algorithm_version,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "DaySet":
        return cls(
            patio_id=payload["patio_id"],
            day=date.fromisoformat(payload["day"]),
            resolution_min=int(payload["resolution_min"]),
            origin=payload["origin"],
            computed_at=parse_iso(payload["computed_at"]),
            points=tuple(TimelinePoint.from_dict(p) for p in payload.get("points", [])),
            windows=tuple(SunWindow.from_dict(w) for w in payload.get("windows", [])),
            error_count=int(payload.get("error_count", 0)),
            algorithm_version=payload.get("algorithm_version", ALGORITHM_VERSION),
        )


@dataclass
class LayerStats:
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "errors": self.errors,
            "hit_ratio": round(self.hit_ratio, 3),
        }


class MemoryLayer:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[CacheKey, tuple[float, DaySet]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> DaySet | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: CacheKey, value: DaySet) -> None:
        # Whole-object replacement: readers never see a partial day set.
        with self._lock:
            self._entries[key] = (self.clock() + self.ttl_seconds, value)

    def delete_patio(self, patio_id: str, day: date | None = None, keep_resolution: int | None = None) -> int:
        with self._lock:
            doomed = [
                k
                for k in self._entries
                if k.patio_id == patio_id and (day is None or k.day == day) and k.resolution_min != keep_resolution
            ]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def delete_days_before(self, cutoff: date) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.day < cutoff]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class FileLayer:
    """Shared layer: one JSON document per key, replaced atomically on write."""

    def __init__(self, root: pathlib.Path, ttl_hours: float) -> None:
        self.root = pathlib.Path(root)
        self.ttl_hours = ttl_hours

    def _path(self, key: CacheKey) -> pathlib.Path:
        return self.root / f"{key.name}.json"

    def get(self, key: CacheKey, now: datetime | None = None) -> DaySet | None:
        path = self._path(key)
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        stored_at = parse_iso(payload.get("stored_at"))
        if stored_at is None:
            return None
        age_hours = (ensure_utc(now or datetime.now(UTC)) - stored_at).total_seconds() / 3600.0
        if age_hours > self.ttl_hours:
            return None
        return DaySet.from_dict(payload["day_set"])

    def set(self, key: CacheKey, value: DaySet, now: datetime | None = None) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        body = {
            "stored_at": ensure_utc(now or datetime.now(UTC)).isoformat(),
            "day_set": value.to_dict(),
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(body, handle)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete_patio(self, patio_id: str, day: date | None = None, keep_resolution: int | None = None) -> int:
        if not self.root.exists():
            return 0
        pattern = f"{patio_prefix(patio_id)}__{day.isoformat() if day else '*'}__*.json"
        removed = 0
        for path in self.root.glob(pattern):
            if keep_resolution is not None and path.stem.endswith(f"__{keep_resolution}m"):
                continue
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    def entries(self) -> list[pathlib.Path]:
        if not self.root.exists():
            return []
        return sorted(p for p in self.root.glob("*.json") if not p.name.startswith(".tmp-"))

    def delete_days_before(self, cutoff: date) -> int:
        removed = 0
        for path in self.entries():
            parts = path.stem.split("__")
            if len(parts) != 3:
                continue
            try:
                day = date.fromisoformat(parts[1])
            except ValueError:
                continue
            if day < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        return removed


class TwoLayerCache:
    def __init__(self, memory: MemoryLayer, shared: FileLayer) -> None:
        self.memory = memory
        self.shared = shared
        self.stats = {"memory": LayerStats(), "shared": LayerStats()}
        self._stats_lock = threading.Lock()

    def _count(self, layer: str, field_name: str) -> None:
        with self._stats_lock:
            stats = self.stats[layer]
            setattr(stats, field_name, getattr(stats, field_name) + 1)

    def get(self, key: CacheKey) -> DaySet | None:
        value = self.memory.get(key)
        if value is not None:
            self._count("memory", "hits")
            return value
        self._count("memory", "misses")

        try:
            value = self.shared.get(key)
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Shared cache read failed for %s: %s", key.name, exc)
            self._count("shared", "errors")
            value = None
        if value is None:
            self._count("shared", "misses")
            return None
        self._count("shared", "hits")
        self.memory.set(key, value)
        return value

    def put(self, value: DaySet) -> None:
        key = value.key
        self.shared.set(key, value)
        self._count("shared", "writes")
        self.memory.set(key, value)
        self._count("memory", "writes")

    def swap(self, value: DaySet) -> None:
        """Replace a patio's day wholesale, dropping sets stored at other resolutions."""
        self.put(value)
        self.memory.delete_patio(value.patio_id, value.day, keep_resolution=value.resolution_min)
        self.shared.delete_patio(value.patio_id, value.day, keep_resolution=value.resolution_min)

    def delete_days_before(self, cutoff: date) -> int:
        return self.memory.delete_days_before(cutoff) + self.shared.delete_days_before(cutoff)

    def invalidate(self, patio_id: str, day: date | None = None) -> int:
        removed = self.memory.delete_patio(patio_id, day)
        removed += self.shared.delete_patio(patio_id, day)
        logger.info("Invalidated %s cache entries for patio %s", removed, patio_id)
        return removed

    def metrics(self) -> dict[str, dict[str, Any]]:
        with self._stats_lock:
            return {name: stats.as_dict() for name, stats in self.stats.items()}

    def health(self) -> dict[str, Any]:
        shared_ok = True
        detail = ""
        try:
            self.shared.root.mkdir(parents=True, exist_ok=True)
            marker = self.shared.root / ".health"
            marker.write_text("ok", encoding="utf-8")
            marker.unlink()
        except OSError as exc:
            shared_ok = False
            detail = str(exc)
        return {
            "status": "healthy" if shared_ok else "degraded",
            "memory": {"entries": len(self.memory)},
            "shared": {"writable": shared_ok, "entries": len(self.shared.entries()), "detail": detail},
            "metrics": self.metrics(),
        }


@dataclass
class _Call:
    event: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: BaseException | None = None
    waiters: int = 0


class SingleFlight:
    """One in-flight computation per key; concurrent callers share its outcome."""

    def __init__(self) -> None:
        self._calls: dict[Any, _Call] = {}
        self._lock = threading.Lock()

    def waiters(self, key) -> int:
        with self._lock:
            call = self._calls.get(key)
            return call.waiters if call else 0

    def in_flight(self, key) -> bool:
        with self._lock:
            return key in self._calls

    def do(self, key, fn: Callable[[], Any]) -> Any:
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.waiters += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if not leader:
            call.event.wait()
            if call.error is not None:
                raise call.error
            return call.result

        try:
            call.result = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.event.set()
        return call.result


def build_cache(cache_dir: str, memory_ttl_seconds: float, shared_ttl_hours: float) -> TwoLayerCache:
    return TwoLayerCache(
        MemoryLayer(memory_ttl_seconds),
        FileLayer(pathlib.Path(cache_dir), shared_ttl_hours),
    )


def expiry_cutoff(today: date, retention_days: int) -> date:
    return today - timedelta(days=retention_days)
