from __future__ import annotations

import logging
import time
from typing import Any, Callable

from trustcheck.models.types import UNVERIFIED, JobHint, Post
from trustcheck.pipeline.orchestrator import FactCheckOrchestrator
from trustcheck.scheduler.jobs import CooldownTracker
from trustcheck.storage.database import Database

logger = logging.getLogger(__name__)


class PostTriggers:
    """Caller-side enqueue policy for post creation and reactions."""

    def __init__(
        self,
        database: Database,
        orchestrator: FactCheckOrchestrator,
        settings: Any,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = database
        self._orchestrator = orchestrator
        self._settings = settings
        self._cooldown = CooldownTracker(settings.autotrigger_cooldown_minutes * 60, clock)

    def on_post_created(self, post: Post) -> bool:
        settings = self._settings
        if not settings.factcheck_on_create:
            return False
        if settings.factcheck_on_create_tag_only and not settings.has_trigger_tag(post.text):
            return False
        return self._orchestrator.enqueue(post.id, JobHint(reason="on_create"))

    def on_reaction(self, post_id: str) -> bool:
        """Enqueue a forced-AI check once a post is hot enough, at most once per cooldown."""
        try:
            return self._maybe_autotrigger(str(post_id))
        except Exception as exc:
            logger.warning("Auto-trigger error for post %s: %s", post_id, exc)
            return False

    def _maybe_autotrigger(self, post_id: str) -> bool:
        if self._settings.only_once:
            if self._db.has_result(post_id):
                return False
        else:
            latest = self._db.latest_result(post_id)
            if latest is not None and latest.verdict != UNVERIFIED:
                return False

        engagement = self._db.get_engagement(post_id)
        if engagement is None:
            return False
        if (
            engagement.reactions < self._settings.autotrigger_reacts
            or engagement.unique_reactors < self._settings.autotrigger_unique_users
        ):
            return False

        if not self._cooldown.try_mark(post_id):
            return False

        queued = self._orchestrator.enqueue(
            post_id, JobHint(force_ai=True, reason="engagement_threshold")
        )
        if not queued:
            self._cooldown.forget(post_id)
            return False
        logger.info(
            "Auto-triggered fact-check for post %s (reactions=%d, unique=%d)",
            post_id,
            engagement.reactions,
            engagement.unique_reactors,
        )
        return True
