from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from trustcheck.config.settings import Settings
from trustcheck.models.types import ClassifierResult, Post
from trustcheck.storage.database import Database

T0 = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock usable both as ``time.time`` and as a datetime source."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)

    def sleep(self, seconds: float) -> None:
        self.advance(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings():
    """Settings factory with test defaults: no AI key, local queue, no scheduled timers."""

    def _make(**overrides) -> Settings:
        values = {
            "database_path": ":memory:",
            "admin_key": "test-admin",
            "rules_file": "does-not-exist.json",
            "rules_refresh_seconds": 0,
            "ai_min_interval_ms": 0,
            "recheck_enabled": False,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def temp_database(tmp_path):
    """A Database backed by a temporary SQLite file, cleaned up after the test."""
    db_file = str(tmp_path / "test_trustcheck.db")
    db = Database(db_path=db_file)
    yield db
    db.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def make_post(temp_database):
    """Create and persist a post; returns the stored ``Post``."""

    def _make(post_id: str = "post-1", text: str = "The Eiffel Tower is 330 m tall", **fields) -> Post:
        fields.setdefault("author_id", "user-1")
        fields.setdefault("created_at", T0)
        post = Post(id=post_id, text=text, **fields)
        temp_database.save_post(post)
        return post

    return _make


@pytest.fixture
def mock_classifier() -> MagicMock:
    """A classifier double that always answers ``false`` with 0.9 confidence."""
    classifier = MagicMock()
    classifier.available = True
    classifier.tag = "gemini (test-model)"
    classifier.classify.return_value = ClassifierResult(
        ok=True, verdict="false", confidence=0.9, explanation="Contradicted by records."
    )
    return classifier
