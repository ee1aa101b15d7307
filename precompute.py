"""Daily precomputation of patio day sets, job-run records, and on-demand recompute."""

from __future__ import annotations

import json
import logging
import os
import pathlib
import socket
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable

from shapely.errors import GEOSException

from cache import ORIGIN_ON_DEMAND, ORIGIN_PRECOMPUTE, CacheKey, DaySet, SingleFlight, TwoLayerCache, expiry_cutoff
from errors import PatioNotFoundError, SunnySeatError
from models import JobStatus, Patio
from repositories import PatioRepository
from settings import EngineSettings, get_settings
from sun_timeline import SunTimelineService
from timeutils import ensure_utc, local_date, local_to_utc, parse_iso, to_local
from weather import now_utc

logger = logging.getLogger(__name__)

INTEGRITY_THRESHOLD = 0.95
STALE_LOCK_HOURS = 6.0


@dataclass
class JobRun:
    run_date: date
    status: JobStatus = JobStatus.SCHEDULED
    worker: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    total: int = 0
    processed: int = 0
    failed: int = 0
    day_sets_written: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "run_date": self.run_date.isoformat(),
            "status": self.status.value,
            "worker": self.worker,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "day_sets_written": self.day_sets_written,
            "errors": dict(self.errors),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "JobRun":
        return cls(
            run_date=date.fromisoformat(payload["run_date"]),
            status=JobStatus(payload.get("status", JobStatus.SCHEDULED.value)),
            worker=payload.get("worker", ""),
            started_at=parse_iso(payload.get("started_at")),
            finished_at=parse_iso(payload.get("finished_at")),
            total=int(payload.get("total", 0)),
            processed=int(payload.get("processed", 0)),
            failed=int(payload.get("failed", 0)),
            day_sets_written=int(payload.get("day_sets_written", 0)),
            errors=dict(payload.get("errors", {})),
        )


class JobRunStore:
    """
    Persisted job-run records, one JSON file per run date.

    A run date is claimed by exclusively creating its lock file, so two
    workers (or a restarted one) never both run the same date. A lock left
    behind by a run that never finished is taken over once it is stale.
    """

    def __init__(self, root: pathlib.Path, stale_after_hours: float = STALE_LOCK_HOURS) -> None:
        self.root = pathlib.Path(root)
        self.stale_after = timedelta(hours=stale_after_hours)

    def _record_path(self, run_date: date) -> pathlib.Path:
        return self.root / f"run-{run_date.isoformat()}.json"

    def _lock_path(self, run_date: date) -> pathlib.Path:
        return self.root / f"run-{run_date.isoformat()}.lock"

    def claim(self, run_date: date, worker: str, now: datetime) -> bool:
        self.root.mkdir(parents=True, exist_ok=True)
        lock = self._lock_path(run_date)
        try:
            fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if not self._is_stale(run_date, now):
                return False
            logger.warning("Taking over stale precompute lock for %s", run_date.isoformat())
            lock.unlink(missing_ok=True)
            try:
                fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump({"worker": worker, "claimed_at": ensure_utc(now).isoformat()}, handle)
        return True

    def _is_stale(self, run_date: date, now: datetime) -> bool:
        record = self.load(run_date)
        if record is not None and record.status in (JobStatus.COMPLETED, JobStatus.FAILED):
            return False
        try:
            payload = json.loads(self._lock_path(run_date).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        claimed_at = parse_iso(payload.get("claimed_at"))
        if claimed_at is None:
            return False
        return ensure_utc(now) - claimed_at > self.stale_after

    def save(self, run: JobRun) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(run.to_dict(), handle, indent=2)
            os.replace(tmp_name, self._record_path(run.run_date))
        except BaseException:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, run_date: date) -> JobRun | None:
        path = self._record_path(run_date)
        if not path.exists():
            return None
        return JobRun.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def history(self) -> list[JobRun]:
        if not self.root.exists():
            return []
        runs = []
        for path in sorted(self.root.glob("run-*.json")):
            runs.append(JobRun.from_dict(json.loads(path.read_text(encoding="utf-8"))))
        return runs

    def latest(self) -> JobRun | None:
        runs = self.history()
        return runs[-1] if runs else None


class PrecomputationService:
    def __init__(
        self,
        patios: PatioRepository,
        timeline: SunTimelineService,
        cache: TwoLayerCache,
        jobs: JobRunStore,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = now_utc,
        worker_id: str | None = None,
    ) -> None:
        self.patios = patios
        self.timeline = timeline
        self.cache = cache
        self.jobs = jobs
        self.settings = settings or get_settings()
        self.clock = clock
        self.tz = timeline.tz
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.flight = SingleFlight()
        self._progress_lock = threading.Lock()
        self._progress = {"run_date": None, "total": 0, "processed": 0, "failed": 0, "running": False}
        patios.subscribe(self._on_patio_changed)

    @property
    def resolution_min(self) -> int:
        return self.settings.precompute_resolution_min

    # ---------- read-through ----------

    def get_day_set(self, patio_id: str, day: date, resolution_min: int | None = None) -> DaySet:
        """Stored day set, computing it once on a miss even under concurrent callers."""
        patio = self._require_patio(patio_id)
        key = CacheKey(patio.id, day, resolution_min or self.resolution_min)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        def _compute() -> DaySet:
            existing = self.cache.get(key)
            if existing is not None:
                return existing
            day_set = self.timeline.calculate_day(patio, day, key.resolution_min, origin=ORIGIN_ON_DEMAND)
            self.cache.put(day_set)
            return day_set

        return self.flight.do(key, _compute)

    # ---------- edits ----------

    def recompute_patio(self, patio_id: str, days: list[date] | None = None) -> list[DaySet]:
        patio = self._require_patio(patio_id)
        self.timeline.exposure.engine.invalidate(patio.id)
        days = days or self._default_days()

        # Build every new day set before touching the cache.
        fresh = [self.timeline.calculate_day(patio, day, self.resolution_min, origin=ORIGIN_ON_DEMAND) for day in days]
        for day_set in fresh:
            self.cache.swap(day_set)
        logger.info("Recomputed %s day set(s) for patio %s", len(fresh), patio.id)
        return fresh

    def invalidate_patio(self, patio_id: str) -> int:
        self.timeline.exposure.engine.invalidate(patio_id)
        return self.cache.invalidate(patio_id)

    def _on_patio_changed(self, patio: Patio) -> None:
        try:
            self.recompute_patio(patio.id)
        except (SunnySeatError, GEOSException, OSError) as exc:
            logger.warning("Recompute after edit failed for patio %s: %s", patio.id, exc)
            self.invalidate_patio(patio.id)

    # ---------- daily job ----------

    def run_daily(self, run_date: date | None = None) -> JobRun | None:
        """Materialize today and tomorrow for every active patio; None when another worker owns the date."""
        now = ensure_utc(self.clock())
        run_date = run_date or local_date(now, self.tz)
        if not self.jobs.claim(run_date, self.worker_id, now):
            logger.info("Precompute for %s already claimed, skipping", run_date.isoformat())
            return None

        patios = self.patios.active()
        days = [run_date, run_date + timedelta(days=1)]
        run = JobRun(
            run_date=run_date,
            status=JobStatus.RUNNING,
            worker=self.worker_id,
            started_at=now,
            total=len(patios),
        )
        self.jobs.save(run)
        self._set_progress(run_date=run_date, total=len(patios), processed=0, failed=0, running=True)
        logger.info("Precompute %s started for %s patios", run_date.isoformat(), len(patios))

        def _one(patio: Patio) -> tuple[str, int, str | None]:
            written = 0
            try:
                for day in days:
                    day_set = self.timeline.calculate_day(patio, day, self.resolution_min, origin=ORIGIN_PRECOMPUTE)
                    self.cache.swap(day_set)
                    written += 1
            except (SunnySeatError, GEOSException, OSError) as exc:
                logger.warning("Precompute failed for patio %s: %s", patio.id, exc)
                self._bump("failed")
                return patio.id, written, str(exc)
            except Exception as exc:
                logger.exception("Unexpected precompute failure for patio %s", patio.id)
                self._bump("failed")
                return patio.id, written, f"{type(exc).__name__}: {exc}"
            self._bump("processed")
            return patio.id, written, None

        try:
            with ThreadPoolExecutor(max_workers=self.settings.worker_concurrency) as pool:
                for patio_id, written, error in pool.map(_one, patios):
                    run.day_sets_written += written
                    if error is None:
                        run.processed += 1
                    else:
                        run.failed += 1
                        run.errors[patio_id] = error
            run.status = JobStatus.FAILED if run.total and run.failed == run.total else JobStatus.COMPLETED
        except BaseException:
            run.status = JobStatus.FAILED
            raise
        finally:
            run.finished_at = ensure_utc(self.clock())
            self.jobs.save(run)
            self._set_progress(running=False)
        self.cleanup_expired(run_date)
        logger.info(
            "Precompute %s finished: %s processed, %s failed, %s day sets",
            run_date.isoformat(),
            run.processed,
            run.failed,
            run.day_sets_written,
        )
        return run

    def next_run_after(self, now: datetime) -> datetime:
        """Next UTC instant of the configured local run time, strictly after ``now``."""
        now = ensure_utc(now)
        hour, minute = (int(part) for part in self.settings.precompute_run_time.split(":"))
        run_time = time(hour, minute)
        day = to_local(now, self.tz).date()
        candidate = local_to_utc(datetime.combine(day, run_time), self.tz)
        while candidate <= now:
            day += timedelta(days=1)
            candidate = local_to_utc(datetime.combine(day, run_time), self.tz)
        return candidate

    def run_scheduler(self, stop_event: threading.Event) -> None:
        logger.info("Precompute scheduler started (daily at %s %s)", self.settings.precompute_run_time, self.tz.key)
        while not stop_event.is_set():
            target = self.next_run_after(self.clock())
            delay = max(0.0, (target - ensure_utc(self.clock())).total_seconds())
            if stop_event.wait(delay):
                break
            try:
                self.run_daily(local_date(target, self.tz))
            except OSError as exc:
                logger.error("Precompute run for %s could not be recorded: %s", target.isoformat(), exc)
        logger.info("Precompute scheduler stopped")

    def cleanup_expired(self, today: date | None = None) -> int:
        today = today or local_date(self.clock(), self.tz)
        removed = self.cache.delete_days_before(expiry_cutoff(today, self.settings.precompute_retention_days))
        if removed:
            logger.info("Removed %s expired day sets", removed)
        return removed

    # ---------- observability ----------

    def progress(self) -> dict:
        with self._progress_lock:
            snapshot = dict(self._progress)
        total = snapshot["total"]
        done = snapshot["processed"] + snapshot["failed"]
        snapshot["percent"] = round(100.0 * done / total, 1) if total else 0.0
        if snapshot["run_date"] is not None:
            snapshot["run_date"] = snapshot["run_date"].isoformat()
        return snapshot

    def validate_integrity(self, day: date | None = None) -> dict:
        day = day or local_date(self.clock(), self.tz)
        active = self.patios.active()
        missing = [p.id for p in active if self.cache.get(CacheKey(p.id, day, self.resolution_min)) is None]
        coverage = (len(active) - len(missing)) / len(active) if active else 1.0
        return {
            "day": day.isoformat(),
            "coverage": round(coverage, 3),
            "ok": coverage >= INTEGRITY_THRESHOLD,
            "missing": missing,
        }

    # ---------- helpers ----------

    def _require_patio(self, patio_id: str) -> Patio:
        patio = self.patios.get(patio_id)
        if patio is None:
            raise PatioNotFoundError(patio_id)
        return patio

    def _default_days(self) -> list[date]:
        today = local_date(self.clock(), self.tz)
        return [today, today + timedelta(days=1)]

    def _set_progress(self, **values) -> None:
        with self._progress_lock:
            self._progress.update(values)

    def _bump(self, name: str) -> None:
        with self._progress_lock:
            self._progress[name] += 1
