"""Tests for trustcheck.pipeline.queues.

Redis is replaced by a MagicMock client; retries use a no-op sleep.
"""
from __future__ import annotations

import json
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from trustcheck.models.types import Job, JobHint
from trustcheck.pipeline.queues import LocalQueue, RedisQueue, build_queue


class TestLocalQueue:
    def test_inline_drain_in_order(self):
        seen = []
        queue = LocalQueue(lambda job: seen.append(job.post_id), background=False)
        queue.enqueue(Job("a"))
        queue.enqueue(Job("b"))
        assert seen == ["a", "b"]
        assert len(queue) == 0
        assert queue.running is False

    def test_jobs_enqueued_during_drain_are_processed(self):
        seen = []
        queue = None

        def handler(job):
            seen.append(job.post_id)
            if job.post_id == "first":
                queue.enqueue(Job("second"))

        queue = LocalQueue(handler, background=False)
        queue.enqueue(Job("first"))
        assert seen == ["first", "second"]

    def test_handler_error_does_not_stop_drain(self):
        seen = []

        def handler(job):
            if job.post_id == "bad":
                raise RuntimeError("boom")
            seen.append(job.post_id)

        queue = LocalQueue(handler, background=False)
        queue.enqueue(Job("bad"))
        queue.enqueue(Job("good"))
        assert seen == ["good"]

    def test_background_drain(self):
        seen = []
        queue = LocalQueue(lambda job: seen.append(job.post_id))
        queue.enqueue(Job("a"))
        assert queue.wait_idle(timeout=5)
        assert seen == ["a"]


def _redis_queue(client, handler, **kwargs):
    return RedisQueue(client, "test.queue", handler, sleep=lambda _s: None, **kwargs)


class TestRedisQueue:
    def test_enqueue_pushes_json(self):
        client = MagicMock()
        queue = _redis_queue(client, MagicMock())
        queue.enqueue(Job("p-1", JobHint(force_ai=True, reason="recheck")))

        name, payload = client.lpush.call_args[0]
        assert name == "test.queue"
        assert json.loads(payload) == {
            "postId": "p-1",
            "hint": {"force_ai": True, "admin_override": False, "reason": "recheck"},
        }

    def test_process_one_runs_handler(self):
        client = MagicMock()
        client.blmove.return_value = json.dumps(Job("p-1").to_dict()).encode()
        handler = MagicMock()
        assert _redis_queue(client, handler).process_one() is True
        handler.assert_called_once_with(Job("p-1"))

    def test_job_claimed_into_processing_list_until_handled(self):
        raw = json.dumps(Job("p-1").to_dict()).encode()
        client = MagicMock()
        client.blmove.return_value = raw

        def handler(job):
            client.lrem.assert_not_called()

        _redis_queue(client, handler, poll_timeout=2).process_one()
        client.blmove.assert_called_once_with(
            "test.queue", "test.queue:processing", 2, "RIGHT", "LEFT"
        )
        client.lrem.assert_called_once_with("test.queue:processing", 1, raw)

    def test_failed_and_malformed_jobs_acknowledged(self):
        for raw in (json.dumps(Job("p-1").to_dict()).encode(), b"{not json"):
            client = MagicMock()
            client.blmove.return_value = raw
            _redis_queue(client, MagicMock(side_effect=RuntimeError("always"))).process_one()
            client.lrem.assert_called_once_with("test.queue:processing", 1, raw)

    def test_recover_requeues_in_flight_jobs(self):
        client = MagicMock()
        client.lmove.side_effect = [b"job-a", b"job-b", None]
        assert _redis_queue(client, MagicMock()).recover() == 2
        client.lmove.assert_called_with("test.queue:processing", "test.queue", "RIGHT", "RIGHT")

    def test_empty_poll(self):
        client = MagicMock()
        client.blmove.return_value = None
        handler = MagicMock()
        assert _redis_queue(client, handler).process_one() is False
        handler.assert_not_called()

    def test_malformed_job_dropped(self):
        client = MagicMock()
        client.blmove.return_value = b"{not json"
        handler = MagicMock()
        assert _redis_queue(client, handler).process_one() is True
        handler.assert_not_called()

    def test_retries_then_succeeds(self):
        client = MagicMock()
        client.blmove.return_value = json.dumps(Job("p-1").to_dict()).encode()
        handler = MagicMock(side_effect=[RuntimeError("flaky"), RuntimeError("flaky"), None])
        _redis_queue(client, handler, max_attempts=3).process_one()
        assert handler.call_count == 3

    def test_gives_up_after_max_attempts(self):
        client = MagicMock()
        client.blmove.return_value = json.dumps(Job("p-1").to_dict()).encode()
        handler = MagicMock(side_effect=RuntimeError("always"))
        assert _redis_queue(client, handler, max_attempts=3).process_one() is True
        assert handler.call_count == 3

    def test_probe(self):
        client = MagicMock()
        client.ping.return_value = True
        assert _redis_queue(client, MagicMock()).probe() is True
        client.ping.side_effect = RedisConnectionError("refused")
        assert _redis_queue(client, MagicMock()).probe() is False


class TestBuildQueue:
    def test_local_mode(self, make_settings):
        assert isinstance(build_queue(make_settings(queue_mode="local"), MagicMock()), LocalQueue)

    def test_redis_unreachable_falls_back(self, make_settings, monkeypatch):
        client = MagicMock()
        client.ping.side_effect = RedisConnectionError("refused")
        monkeypatch.setattr("trustcheck.pipeline.queues.Redis.from_url", lambda url: client)
        queue = build_queue(make_settings(queue_mode="redis"), MagicMock())
        assert isinstance(queue, LocalQueue)

    def test_redis_reachable(self, make_settings, monkeypatch):
        client = MagicMock()
        client.ping.return_value = True
        monkeypatch.setattr("trustcheck.pipeline.queues.Redis.from_url", lambda url: client)
        queue = build_queue(make_settings(queue_mode="redis"), MagicMock())
        assert isinstance(queue, RedisQueue)
