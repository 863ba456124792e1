from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

from flask import Flask
from flask_cors import CORS

from trustcheck.api.routes import api
from trustcheck.config.logging import setup_logging
from trustcheck.config.settings import Settings, load_settings
from trustcheck.pipeline.orchestrator import FactCheckOrchestrator
from trustcheck.pipeline.queues import build_queue
from trustcheck.pipeline.rate_limit import HourlyBudget
from trustcheck.pipeline.stages import build_stages
from trustcheck.pipeline.triggers import PostTriggers
from trustcheck.processors.classifier import GeminiClassifier
from trustcheck.processors.rules import RuleBook
from trustcheck.scheduler.jobs import JobScheduler, ScheduledBatchJob
from trustcheck.scheduler.recheck import build_recheck_job
from trustcheck.scheduler.retention import RetentionPolicy, build_purge_job, build_retention_job
from trustcheck.storage.database import Database

logger = logging.getLogger(__name__)

SCHEDULER_TICK_SECONDS = 1


@dataclass
class Services:
    settings: Settings
    database: Database
    rulebook: RuleBook
    classifier: GeminiClassifier
    budget: HourlyBudget
    orchestrator: FactCheckOrchestrator
    triggers: PostTriggers
    recheck_job: ScheduledBatchJob
    retention_job: ScheduledBatchJob
    purge_job: ScheduledBatchJob


def build_services(settings: Settings, start_worker: bool | None = None) -> Services:
    database = Database(settings.database_path)
    rulebook = RuleBook(settings.rules_file)
    classifier = GeminiClassifier.from_settings(settings)
    budget = HourlyBudget(settings.ai_hourly_budget, settings.ai_min_interval_ms / 1000.0)
    stages = build_stages(settings, rulebook, classifier, budget)

    orchestrator = FactCheckOrchestrator(database, settings, stages)
    queue = build_queue(settings, orchestrator.process_job)
    orchestrator.bind_queue(queue)

    if start_worker is None:
        start_worker = settings.worker_inline
    if start_worker:
        queue.start_worker()

    return Services(
        settings=settings,
        database=database,
        rulebook=rulebook,
        classifier=classifier,
        budget=budget,
        orchestrator=orchestrator,
        triggers=PostTriggers(database, orchestrator, settings),
        recheck_job=build_recheck_job(database, orchestrator, settings),
        retention_job=build_retention_job(database, RetentionPolicy.from_settings(settings)),
        purge_job=build_purge_job(database),
    )


def create_flask_app(services: Services) -> Flask:
    app = Flask(__name__)
    CORS(app)

    app.config["SETTINGS"] = services.settings
    app.config["DATABASE"] = services.database
    app.config["ORCHESTRATOR"] = services.orchestrator
    app.config["TRIGGERS"] = services.triggers
    app.config["CLASSIFIER"] = services.classifier
    app.config["BUDGET"] = services.budget
    app.config["JOBS"] = {
        "recheck": services.recheck_job,
        "retention": services.retention_job,
        "purge": services.purge_job,
    }

    app.register_blueprint(api)
    return app


def schedule_jobs(
    services: Services,
    scheduler: JobScheduler,
    *,
    recheck: bool = True,
    retention: bool = True,
) -> None:
    settings = services.settings

    if recheck and settings.recheck_enabled and settings.recheck_interval_minutes > 0:
        scheduler.every_minutes(services.recheck_job, settings.recheck_interval_minutes)
    else:
        logger.info("Re-check job disabled")

    if retention and settings.retention_interval_minutes > 0:
        scheduler.every_minutes(services.retention_job, settings.retention_interval_minutes)
        if settings.purge_expired:
            scheduler.every_minutes(services.purge_job, settings.retention_interval_minutes)

    if settings.rules_enabled and settings.rules_refresh_seconds > 0:
        scheduler.every_seconds(
            services.rulebook.refresh, settings.rules_refresh_seconds, name="rules-refresh"
        )


async def run_scheduler(services: Services, *, recheck: bool = True, retention: bool = True) -> None:
    scheduler = JobScheduler()
    schedule_jobs(services, scheduler, recheck=recheck, retention=retention)
    logger.info("Scheduler started with %d jobs", len(scheduler.jobs))

    try:
        while True:
            try:
                scheduler.run_pending()
                await asyncio.sleep(SCHEDULER_TICK_SECONDS)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Scheduler error: %s", exc)
                await asyncio.sleep(SCHEDULER_TICK_SECONDS)
    finally:
        scheduler.shutdown()


async def run_flask(app: Flask, port: int) -> None:
    from wsgiref.simple_server import make_server

    server = make_server("127.0.0.1", port, app)
    logger.info("Flask server starting on http://127.0.0.1:%d", port)
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(None, server.serve_forever)


async def main() -> None:
    setup_logging()
    logger.info("Starting trustcheck service...")

    settings = load_settings()
    services = build_services(settings)
    app = create_flask_app(services)

    if not settings.trust_enabled:
        logger.info("Fact-checking disabled (TRUST_ENABLED=false)")

    def _shutdown(sig: int, _frame: object) -> None:
        logger.info("Received signal %s, shutting down...", sig)
        services.orchestrator.queue.stop()
        services.database.close()
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        await asyncio.gather(
            run_flask(app, settings.port),
            run_scheduler(services, recheck=settings.worker_inline),
        )
    except Exception as exc:
        logger.error("Main loop error: %s", exc)
        raise
    finally:
        services.database.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
