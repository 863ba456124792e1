"""Engagement-based post retention.

Posts start with a baseline TTL, get extended when they reach tier 1 and
become permanent at tier 2. Decisions only ever lengthen a post's life.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from trustcheck.models.types import Post, PostEngagement
from trustcheck.scheduler.jobs import ScheduledBatchJob
from trustcheck.storage.database import Database, utcnow

logger = logging.getLogger(__name__)

LOOKBACK_DAYS = 8
EXPIRING_WITHIN_DAYS = 2
SCAN_LIMIT = 2000


@dataclass
class RetentionDecision:
    changed: bool
    reason: str = ""
    expires_at: datetime | None = None
    is_permanent: bool = False
    retention: str = "normal"


class RetentionPolicy:
    def __init__(
        self,
        base_ttl_hours: int = 24,
        t1_reactions: int = 5,
        t1_comments: int = 3,
        t1_days: int = 7,
        t2_reactions: int = 8,
        t2_comments: int = 5,
    ) -> None:
        self.base_ttl = timedelta(hours=base_ttl_hours)
        self.t1_reactions = t1_reactions
        self.t1_comments = t1_comments
        self.t1_span = timedelta(days=t1_days)
        self.t2_reactions = t2_reactions
        self.t2_comments = t2_comments

    @classmethod
    def from_settings(cls, settings: Any) -> "RetentionPolicy":
        return cls(
            base_ttl_hours=settings.base_ttl_hours,
            t1_reactions=settings.t1_reactions,
            t1_comments=settings.t1_comments,
            t1_days=settings.t1_days,
            t2_reactions=settings.t2_reactions,
            t2_comments=settings.t2_comments,
        )

    def decide(self, post: Post, reactions: int, comments: int) -> RetentionDecision:
        unchanged = RetentionDecision(
            changed=False,
            expires_at=post.expires_at,
            is_permanent=post.is_permanent,
            retention=post.retention,
        )

        if post.author_role == "admin":
            return self._make_permanent(post, "admin-permanent")

        if reactions >= self.t2_reactions or comments >= self.t2_comments:
            return self._make_permanent(post, "tier2-permanent")

        if post.is_permanent:
            return unchanged

        created_at = post.created_at or utcnow()
        if reactions >= self.t1_reactions or comments >= self.t1_comments:
            target = created_at + self.t1_span
            if post.expires_at is None or post.expires_at < target:
                return RetentionDecision(True, "tier1-extend", target, False, "extended")
            return unchanged

        if post.expires_at is None:
            return RetentionDecision(
                True, "baseline-set", created_at + self.base_ttl, False, post.retention
            )
        return unchanged

    @staticmethod
    def _make_permanent(post: Post, reason: str) -> RetentionDecision:
        if post.is_permanent and post.expires_at is None and post.retention == "permanent":
            return RetentionDecision(False, expires_at=None, is_permanent=True, retention="permanent")
        return RetentionDecision(True, reason, None, True, "permanent")


def build_retention_job(
    database: Database,
    policy: RetentionPolicy,
    clock: Callable[[], datetime] = utcnow,
) -> ScheduledBatchJob[PostEngagement]:
    def select(now: datetime) -> list[PostEngagement]:
        return database.posts_for_retention(
            created_since=now - timedelta(days=LOOKBACK_DAYS),
            expiring_before=now + timedelta(days=EXPIRING_WITHIN_DAYS),
            limit=SCAN_LIMIT,
        )

    def retain(item: PostEngagement) -> bool:
        decision = policy.decide(item.post, item.reactions, item.comments)
        if not decision.changed:
            return False
        database.update_retention(
            item.post.id, decision.expires_at, decision.is_permanent, decision.retention
        )
        logger.debug("Retention %s for post %s", decision.reason, item.post.id)
        return True

    return ScheduledBatchJob(
        "retention",
        select,
        retain,
        dedupe_key=lambda item: item.post.id,
        clock=clock,
    )


def build_purge_job(
    database: Database,
    clock: Callable[[], datetime] = utcnow,
    limit: int = 500,
) -> ScheduledBatchJob[str]:
    """Delete non-permanent posts whose expiry has passed."""

    def select(now: datetime) -> list[str]:
        return database.find_expired_posts(now, limit)

    return ScheduledBatchJob("purge-expired", select, database.delete_post, dedupe_key=str, clock=clock)
