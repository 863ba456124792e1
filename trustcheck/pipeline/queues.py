from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable

from redis import Redis
from redis.exceptions import RedisError
from tenacity import Retrying, stop_after_attempt, wait_exponential

from trustcheck.models.types import Job

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Any]


class LocalQueue:
    """In-process FIFO with a single-flight drain loop.

    Only one drain runs at a time; enqueues during a drain are picked up by
    the running loop. With ``background=False`` the drain runs on the
    caller's thread, which makes ``enqueue`` synchronous.
    """

    def __init__(self, handler: JobHandler, background: bool = True) -> None:
        self._handler = handler
        self._background = background
        self._pending: deque[Job] = deque()
        self._lock = threading.Lock()
        self._running = False
        self._idle = threading.Event()
        self._idle.set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, job: Job) -> None:
        with self._lock:
            self._pending.append(job)
            if self._running:
                return
            self._running = True
            self._idle.clear()

        if self._background:
            threading.Thread(target=self._drain, name="factcheck-drain", daemon=True).start()
        else:
            self._drain()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._pending:
                    self._running = False
                    self._idle.set()
                    return
                job = self._pending.popleft()
            try:
                self._handler(job)
            except Exception:
                logger.exception("Fact-check job for post %s failed", job.post_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._idle.wait(timeout)

    def start_worker(self) -> None:
        logger.info("Using LOCAL in-memory fact-check queue")

    def stop(self) -> None:
        with self._lock:
            self._pending.clear()


class RedisQueue:
    """Durable queue on a Redis list with a processing list for claimed jobs.

    Jobs are retried with exponential backoff.
    """

    def __init__(
        self,
        client: Redis,
        name: str,
        handler: JobHandler,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        poll_timeout: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.name = name
        self._handler = handler
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._poll_timeout = poll_timeout
        self._sleep = sleep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_url(cls, url: str, name: str, handler: JobHandler, **kwargs: Any) -> "RedisQueue":
        return cls(Redis.from_url(url), name, handler, **kwargs)

    def probe(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as exc:
            logger.warning("Redis probe failed: %s", exc)
            return False

    def enqueue(self, job: Job) -> None:
        self._client.lpush(self.name, json.dumps(job.to_dict()))

    @property
    def processing_name(self) -> str:
        return f"{self.name}:processing"

    def recover(self) -> int:
        """Requeue jobs left in the processing list by a worker that died mid-job."""
        moved = 0
        while self._client.lmove(self.processing_name, self.name, "RIGHT", "RIGHT") is not None:
            moved += 1
        if moved:
            logger.warning("Requeued %d in-flight job(s) from %s", moved, self.processing_name)
        return moved

    def process_one(self) -> bool:
        """Claim and handle one job. Returns False when the poll timed out empty.

        The job stays in the processing list until it is handled, so a crash
        leaves it there for ``recover``.
        """
        raw = self._client.blmove(
            self.name, self.processing_name, self._poll_timeout, "RIGHT", "LEFT"
        )
        if raw is None:
            return False
        try:
            try:
                job = Job.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Dropping malformed job on %s: %s", self.name, exc)
                return True
            self._run_with_retry(job)
            return True
        finally:
            self._client.lrem(self.processing_name, 1, raw)

    def _run_with_retry(self, job: Job) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_seconds,
                min=self._backoff_seconds,
                max=self._backoff_seconds * 8,
            ),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            retrying(self._handler, job)
        except Exception as exc:
            logger.error(
                "Fact-check job for post %s failed after %d attempts: %s",
                job.post_id,
                self._max_attempts,
                exc,
            )

    def _loop(self) -> None:
        logger.info("Redis worker ready on %s", self.name)
        try:
            self.recover()
        except RedisError as exc:
            logger.warning("Could not requeue in-flight jobs: %s", exc)
        while not self._stop.is_set():
            try:
                self.process_one()
            except RedisError as exc:
                logger.warning("Redis worker error (will keep running): %s", exc)
                self._sleep(self._poll_timeout)

    def start_worker(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="factcheck-redis", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()


def build_queue(settings: Any, handler: JobHandler) -> LocalQueue | RedisQueue:
    """Pick the queue backend; a Redis queue is used only if the broker answers."""
    if settings.queue_mode.lower() == "redis":
        queue = RedisQueue.from_url(settings.redis_url, settings.queue_name, handler)
        if queue.probe():
            logger.info("Using REDIS fact-check queue %s", settings.queue_name)
            return queue
        logger.warning("Redis not reachable at %s; falling back to LOCAL queue", settings.redis_url)
    return LocalQueue(handler)
