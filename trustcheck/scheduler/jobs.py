"""Periodic batch jobs.

Every background worker in the service has the same shape: on a timer,
select candidate subjects, filter the eligible ones, act on each one
idempotently. ``ScheduledBatchJob`` captures that shape once and
``JobScheduler`` drives the timers with the ``schedule`` library.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, Iterable, TypeVar

import schedule

from trustcheck.storage.database import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CooldownTracker:
    """Remembers when each key last fired. In memory only; a restart forgets."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.seconds = max(0.0, float(seconds))
        self._clock = clock
        self._last: dict[str, float] = {}
        self._lock = threading.Lock()

    def ready(self, key: str) -> bool:
        with self._lock:
            return self._ready(key, self._clock())

    def mark(self, key: str) -> None:
        with self._lock:
            self._last[key] = self._clock()

    def try_mark(self, key: str) -> bool:
        """Mark *key* and return True only if it was out of cooldown."""
        with self._lock:
            now = self._clock()
            if not self._ready(key, now):
                return False
            self._last[key] = now
            return True

    def forget(self, key: str) -> None:
        with self._lock:
            self._last.pop(key, None)

    def _ready(self, key: str, now: float) -> bool:
        last = self._last.get(key)
        return last is None or now - last >= self.seconds


@dataclass
class BatchReport:
    name: str
    scanned: int = 0
    acted: int = 0
    skipped: int = 0
    failed: int = 0


class ScheduledBatchJob(Generic[T]):
    """Select, filter, act. One tick at a time; an overlapping tick is skipped.

    ``action`` returns False when it left the item unchanged, anything else
    counts as acted.
    """

    def __init__(
        self,
        name: str,
        select: Callable[[datetime], Iterable[T]],
        action: Callable[[T], Any],
        *,
        is_eligible: Callable[[T], bool] | None = None,
        dedupe_key: Callable[[T], str] | None = None,
        cooldown: CooldownTracker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self._select = select
        self._action = action
        self._is_eligible = is_eligible
        self._dedupe_key = dedupe_key
        self._cooldown = cooldown
        self._clock = clock
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._guard.locked()

    def run_once(self) -> BatchReport | None:
        if not self._guard.acquire(blocking=False):
            logger.info("[%s] previous tick still running, skipping", self.name)
            return None
        try:
            return self._tick()
        finally:
            self._guard.release()

    def _tick(self) -> BatchReport:
        report = BatchReport(self.name)
        try:
            items = list(self._select(self._clock()))
        except Exception as exc:
            logger.error("[%s] selection failed: %s", self.name, exc)
            report.failed += 1
            return report

        seen: set[str] = set()
        for item in items:
            report.scanned += 1
            key = self._dedupe_key(item) if self._dedupe_key else None
            if key is not None:
                if key in seen:
                    report.skipped += 1
                    continue
                seen.add(key)

            if self._is_eligible is not None and not self._is_eligible(item):
                report.skipped += 1
                continue
            if self._cooldown is not None and key is not None and not self._cooldown.ready(key):
                report.skipped += 1
                continue

            try:
                outcome = self._action(item)
            except Exception as exc:
                logger.warning("[%s] action failed for %s: %s", self.name, key or item, exc)
                report.failed += 1
                continue

            if outcome is False:
                report.skipped += 1
                continue
            report.acted += 1
            if self._cooldown is not None and key is not None:
                self._cooldown.mark(key)

        logger.info(
            "[%s] tick scanned=%d acted=%d skipped=%d failed=%d",
            self.name,
            report.scanned,
            report.acted,
            report.skipped,
            report.failed,
        )
        return report


class JobScheduler:
    """``schedule``-driven timers whose ticks run on a thread pool."""

    def __init__(self, max_workers: int = 2) -> None:
        self._scheduler = schedule.Scheduler()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="trustcheck-job"
        )

    @property
    def jobs(self) -> list[schedule.Job]:
        return list(self._scheduler.jobs)

    def every_minutes(self, job: ScheduledBatchJob, minutes: int) -> None:
        self._scheduler.every(minutes).minutes.do(self.submit, job.run_once)
        logger.info("Scheduled %s every %d min", job.name, minutes)

    def every_seconds(self, fn: Callable[[], Any], seconds: int, name: str = "") -> None:
        self._scheduler.every(seconds).seconds.do(self.submit, fn)
        logger.info("Scheduled %s every %d s", name or getattr(fn, "__name__", "task"), seconds)

    def submit(self, fn: Callable[[], Any]) -> Future:
        return self._executor.submit(fn)

    def run_pending(self) -> None:
        self._scheduler.run_pending()

    def shutdown(self) -> None:
        self._scheduler.clear()
        self._executor.shutdown(wait=False)
