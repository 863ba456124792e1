"""Tests for trustcheck.pipeline.triggers.PostTriggers."""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from trustcheck.models.types import FactCheckResult, JobHint
from trustcheck.pipeline.triggers import PostTriggers


@pytest.fixture
def orchestrator() -> MagicMock:
    mock = MagicMock()
    mock.enqueue.return_value = True
    return mock


@pytest.fixture
def make_triggers(temp_database, make_settings, orchestrator, clock):
    def _make(**overrides) -> PostTriggers:
        values = {"only_once": False, "autotrigger_cooldown_minutes": 60}
        values.update(overrides)
        return PostTriggers(temp_database, orchestrator, make_settings(**values), clock=clock.time)

    return _make


def _react(database, post_id, *users):
    for user in users:
        database.add_reaction(post_id, user)


def _save(database, post_id, verdict):
    database.save_result(
        FactCheckResult(
            id=f"r-{post_id}-{verdict}",
            post_id=post_id,
            verdict=verdict,
            confidence=0.6,
            created_at=datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc),
        )
    )


class TestReactionTrigger:
    def test_below_threshold(self, make_triggers, make_post, temp_database, orchestrator):
        make_post("p-1")
        _react(temp_database, "p-1", "u-a")
        assert make_triggers().on_reaction("p-1") is False
        orchestrator.enqueue.assert_not_called()

    def test_cooldown_scenario(self, make_triggers, make_post, temp_database, orchestrator, clock):
        make_post("p-1")
        triggers = make_triggers()

        _react(temp_database, "p-1", "u-a", "u-b")
        assert triggers.on_reaction("p-1") is True
        orchestrator.enqueue.assert_called_once_with(
            "p-1", JobHint(force_ai=True, reason="engagement_threshold")
        )

        _react(temp_database, "p-1", "u-c")
        clock.advance(minutes=10)
        assert triggers.on_reaction("p-1") is False

        clock.advance(minutes=51)
        assert triggers.on_reaction("p-1") is True
        assert orchestrator.enqueue.call_count == 2

    def test_unique_users_required(self, make_triggers, make_post, temp_database):
        make_post("p-1")
        _react(temp_database, "p-1", "u-a", "u-b")
        triggers = make_triggers(autotrigger_reacts=2, autotrigger_unique_users=3)
        assert triggers.on_reaction("p-1") is False

    def test_resolved_post_not_triggered(self, make_triggers, make_post, temp_database):
        make_post("p-1")
        _react(temp_database, "p-1", "u-a", "u-b")
        _save(temp_database, "p-1", "false")
        assert make_triggers().on_reaction("p-1") is False

    def test_unverified_post_triggered(self, make_triggers, make_post, temp_database):
        make_post("p-1")
        _react(temp_database, "p-1", "u-a", "u-b")
        _save(temp_database, "p-1", "unverified")
        assert make_triggers().on_reaction("p-1") is True

    def test_only_once_blocks_any_prior_result(self, make_triggers, make_post, temp_database):
        make_post("p-1")
        _react(temp_database, "p-1", "u-a", "u-b")
        _save(temp_database, "p-1", "unverified")
        assert make_triggers(only_once=True).on_reaction("p-1") is False

    def test_failed_enqueue_releases_cooldown(
        self, make_triggers, make_post, temp_database, orchestrator
    ):
        make_post("p-1")
        _react(temp_database, "p-1", "u-a", "u-b")
        triggers = make_triggers()

        orchestrator.enqueue.return_value = False
        assert triggers.on_reaction("p-1") is False

        orchestrator.enqueue.return_value = True
        assert triggers.on_reaction("p-1") is True

    def test_missing_post(self, make_triggers):
        assert make_triggers().on_reaction("ghost") is False

    def test_errors_are_contained(self, make_triggers, temp_database, monkeypatch):
        monkeypatch.setattr(temp_database, "latest_result", MagicMock(side_effect=RuntimeError("db")))
        assert make_triggers().on_reaction("p-1") is False


class TestCreateTrigger:
    def test_disabled_by_default(self, make_triggers, make_post, orchestrator):
        post = make_post("p-1", text="The moon is 10 km wide #verify")
        assert make_triggers().on_post_created(post) is False
        orchestrator.enqueue.assert_not_called()

    def test_tag_only(self, make_triggers, make_post, orchestrator):
        triggers = make_triggers(factcheck_on_create=True)
        assert triggers.on_post_created(make_post("p-1", text="The moon is 10 km wide")) is False
        assert triggers.on_post_created(make_post("p-2", text="The moon is 10 km wide #Verify")) is True
        orchestrator.enqueue.assert_called_once_with("p-2", JobHint(reason="on_create"))

    def test_every_post(self, make_triggers, make_post):
        triggers = make_triggers(factcheck_on_create=True, factcheck_on_create_tag_only=False)
        assert triggers.on_post_created(make_post("p-1", text="hello")) is True
