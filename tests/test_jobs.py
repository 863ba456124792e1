"""Tests for trustcheck.scheduler.jobs."""
from __future__ import annotations

import threading
from unittest.mock import MagicMock

from trustcheck.scheduler.jobs import CooldownTracker, JobScheduler, ScheduledBatchJob


class TestCooldownTracker:
    def test_try_mark(self, clock):
        tracker = CooldownTracker(60, clock.time)
        assert tracker.try_mark("a") is True
        assert tracker.try_mark("a") is False
        assert tracker.ready("b") is True
        clock.advance(seconds=60)
        assert tracker.try_mark("a") is True

    def test_forget(self, clock):
        tracker = CooldownTracker(60, clock.time)
        tracker.mark("a")
        tracker.forget("a")
        assert tracker.ready("a") is True


class TestScheduledBatchJob:
    def test_report_counts(self, clock):
        def action(item):
            if item == "boom":
                raise RuntimeError("fail")
            return item != "noop"

        job = ScheduledBatchJob(
            "test",
            lambda now: ["a", "a", "skip", "noop", "boom", "b"],
            action,
            is_eligible=lambda item: item != "skip",
            dedupe_key=str,
            clock=clock,
        )
        report = job.run_once()
        assert report.scanned == 6
        assert report.acted == 2
        assert report.skipped == 3
        assert report.failed == 1

    def test_select_receives_clock(self, clock):
        select = MagicMock(return_value=[])
        ScheduledBatchJob("test", select, MagicMock(), clock=clock).run_once()
        select.assert_called_once_with(clock.now)

    def test_selection_failure(self, clock):
        job = ScheduledBatchJob(
            "test", MagicMock(side_effect=RuntimeError("db")), MagicMock(), clock=clock
        )
        assert job.run_once().failed == 1

    def test_cooldown_skips_recent(self, clock):
        cooldown = CooldownTracker(300, clock.time)
        action = MagicMock(return_value=True)
        job = ScheduledBatchJob(
            "test", lambda now: ["a"], action, dedupe_key=str, cooldown=cooldown, clock=clock
        )
        assert job.run_once().acted == 1
        assert job.run_once().skipped == 1
        assert action.call_count == 1

    def test_overlapping_tick_skipped(self, clock):
        started = threading.Event()
        release = threading.Event()

        def slow_select(now):
            started.set()
            release.wait(5)
            return []

        job = ScheduledBatchJob("test", slow_select, MagicMock(), clock=clock)
        worker = threading.Thread(target=job.run_once)
        worker.start()
        assert started.wait(5)

        assert job.running is True
        assert job.run_once() is None

        release.set()
        worker.join(5)
        assert job.running is False


class TestJobScheduler:
    def test_registers_jobs(self, clock):
        scheduler = JobScheduler()
        job = ScheduledBatchJob("test", lambda now: [], MagicMock(), clock=clock)
        scheduler.every_minutes(job, 5)
        scheduler.every_seconds(lambda: None, 30, name="refresh")
        assert len(scheduler.jobs) == 2
        scheduler.shutdown()
        assert scheduler.jobs == []

    def test_submit_runs_on_pool(self):
        scheduler = JobScheduler()
        future = scheduler.submit(lambda: 42)
        assert future.result(timeout=5) == 42
        scheduler.shutdown()
