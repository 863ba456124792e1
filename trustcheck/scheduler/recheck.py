from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from trustcheck.models.types import UNVERIFIED, JobHint
from trustcheck.pipeline.orchestrator import FactCheckOrchestrator
from trustcheck.scheduler.jobs import ScheduledBatchJob
from trustcheck.storage.database import Database, utcnow

logger = logging.getLogger(__name__)


def build_recheck_job(
    database: Database,
    orchestrator: FactCheckOrchestrator,
    settings: Any,
    clock: Callable[[], datetime] = utcnow,
) -> ScheduledBatchJob[str]:
    """Re-enqueue posts whose latest verdict is still unverified after ``recheck_age_hours``."""
    age = timedelta(hours=max(0.0, float(settings.recheck_age_hours)))
    batch_size = max(1, int(settings.recheck_batch_size))

    def select(now: datetime) -> list[str]:
        return database.find_stale_unverified(now - age, batch_size)

    def still_unverified(post_id: str) -> bool:
        latest = database.latest_result(post_id)
        return latest is not None and latest.verdict == UNVERIFIED

    def requeue(post_id: str) -> bool:
        return orchestrator.enqueue(post_id, JobHint(reason="recheck"))

    return ScheduledBatchJob(
        "recheck",
        select,
        requeue,
        is_eligible=still_unverified,
        dedupe_key=str,
        clock=clock,
    )


def recheck_user_posts(
    database: Database,
    orchestrator: FactCheckOrchestrator,
    user_id: str,
    force: bool = False,
) -> list[str]:
    """Enqueue every post of *user_id* that has no result yet or is still unverified."""
    queued: list[str] = []
    for post_id in database.post_ids_for_author(user_id):
        latest = database.latest_result(post_id)
        if latest is not None and latest.verdict != UNVERIFIED:
            continue
        hint = JobHint(admin_override=force, reason="admin_user_run")
        if orchestrator.enqueue(post_id, hint):
            queued.append(post_id)
    logger.info("Admin run for user %s queued %d posts", user_id, len(queued))
    return queued
