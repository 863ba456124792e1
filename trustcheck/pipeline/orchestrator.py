from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Callable, Sequence

from trustcheck.models.types import (
    CLAIM_MAX_CHARS,
    UNVERIFIED,
    FactCheckResult,
    Job,
    JobHint,
    Post,
    StageVerdict,
    TrustSnapshot,
    clamp_confidence,
)
from trustcheck.pipeline.queues import LocalQueue
from trustcheck.pipeline.stages import Stage, StageContext
from trustcheck.processors.heuristics import fallback_verdict, looks_factual_claim
from trustcheck.processors.trust_math import compute_trust
from trustcheck.storage.database import SUBJECT_COLUMNS, Database, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "default-v1"


class FactCheckOrchestrator:
    """Runs the classification cascade for queued posts and keeps trust snapshots current."""

    def __init__(
        self,
        database: Database,
        settings: Any,
        stages: Sequence[Stage],
        queue: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._settings = settings
        self._stages = list(stages)
        self._clock = clock
        self._queue = queue if queue is not None else LocalQueue(self.process_job)

    @property
    def queue(self) -> Any:
        return self._queue

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    def bind_queue(self, queue: Any) -> None:
        self._queue = queue

    def enqueue(self, post_id: str, hint: JobHint | None = None) -> bool:
        """Hand a post to the queue. Never raises; returns False if nothing was queued."""
        if not self._settings.trust_enabled:
            return False
        try:
            self._queue.enqueue(Job(post_id=str(post_id), hint=hint or JobHint()))
            return True
        except Exception as exc:
            logger.warning("Enqueue failed for post %s: %s", post_id, exc)
            return False

    # -- job processing ------------------------------------------------------

    def process_job(self, job: Job) -> FactCheckResult | None:
        if not self._settings.trust_enabled:
            return None

        post = self._db.get_post(job.post_id)
        if post is None:
            logger.info("Post %s not found, skipping fact-check", job.post_id)
            return None

        latest = self._db.latest_result(post.id)
        if latest is not None and latest.verdict != UNVERIFIED:
            logger.debug("Post %s already resolved as %s", post.id, latest.verdict)
            return None

        text = (post.text or "").strip()
        settings = self._settings
        has_tag = settings.has_trigger_tag(text)
        if (
            settings.ai_demo_only
            and not has_tag
            and not job.hint.admin_override
            and not settings.rules_enabled
            and not settings.heuristics_enabled
        ):
            logger.debug("Post %s skipped: demo-only without trigger tag", post.id)
            return None

        context = StageContext(post=post, hint=job.hint, ai_planned=self._plan_ai(text, job.hint))
        chosen = self._run_cascade(text, context)

        if chosen is None:
            if settings.no_result_if_skipped:
                logger.info("Post %s: every stage skipped, no result written", post.id)
                return None
            if settings.heuristics_enabled:
                chosen = fallback_verdict(text)
            else:
                chosen = StageVerdict("opinion", 0.4, text[:CLAIM_MAX_CHARS], DEFAULT_MODEL)

        result = FactCheckResult(
            id=str(uuid.uuid4()),
            post_id=post.id,
            claim=chosen.claim,
            verdict=chosen.verdict,
            confidence=clamp_confidence(chosen.confidence),
            model=chosen.model,
            evidence=list(chosen.evidence),
            created_at=self._clock(),
        )
        try:
            self._db.save_result(result)
        except sqlite3.Error as exc:
            logger.error("Failed to persist fact-check for post %s: %s", post.id, exc)
            return None

        logger.info(
            "Processed post %s -> verdict=%s conf=%.2f (%s, reason=%s)",
            post.id,
            result.verdict,
            result.confidence,
            result.model,
            job.hint.reason or "-",
        )
        self._refresh_trust(post)
        return result

    def _plan_ai(self, text: str, hint: JobHint) -> bool:
        settings = self._settings
        if not settings.ai_enabled or not self._ai_available():
            return False
        if settings.ai_demo_only and not settings.has_trigger_tag(text) and not hint.admin_override:
            return False
        return (
            hint.admin_override
            or hint.force_ai
            or settings.ai_force
            or looks_factual_claim(text)
        )

    def _ai_available(self) -> bool:
        return any(getattr(stage, "available", False) for stage in self._stages if stage.name == "ai")

    def _run_cascade(self, text: str, context: StageContext) -> StageVerdict | None:
        for stage in self._stages:
            try:
                verdict = stage.attempt(text, context)
            except Exception as exc:
                logger.warning("Stage %s failed on post %s: %s", stage.name, context.post.id, exc)
                continue
            if verdict is not None:
                logger.debug("Stage %s decided post %s", stage.name, context.post.id)
                return verdict
        return None

    # -- trust ---------------------------------------------------------------

    def _refresh_trust(self, post: Post) -> None:
        subjects = [("user", post.author_id)]
        if self._settings.trust_page_snapshots_enabled and post.page_id:
            subjects.append(("page", post.page_id))
        for subject_type, subject_id in subjects:
            try:
                self.recompute_trust(subject_type, subject_id)
            except Exception as exc:
                logger.error(
                    "Trust recompute failed for %s %s: %s", subject_type, subject_id, exc
                )

    def recompute_trust(self, subject_type: str, subject_id: str) -> TrustSnapshot:
        if subject_type not in SUBJECT_COLUMNS:
            raise ValueError(f"Unknown subject type {subject_type!r}")

        counts = self._db.aggregate_verdicts(subject_type, subject_id)
        trust = compute_trust(
            counts["posts_true"],
            counts["posts_false"],
            counts["posts_misleading"],
            prior_alpha=self._settings.prior_alpha,
            prior_beta=self._settings.prior_beta,
            maturity_min=self._settings.maturity_min,
        )
        snapshot = TrustSnapshot(
            subject_type=subject_type,
            subject_id=subject_id,
            score=trust.score,
            conf_low=trust.conf_low,
            conf_high=trust.conf_high,
            tier=trust.tier,
            updated_at=self._clock(),
            **counts,
        )
        self._db.upsert_snapshot(snapshot)
        return snapshot
