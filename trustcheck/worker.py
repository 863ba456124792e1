"""Standalone fact-check worker.

Consumes the Redis queue and runs the re-check timer without serving HTTP,
so the API process can run with ``TRUST_WORKER_INLINE=false``.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

from trustcheck.app import build_services, run_scheduler
from trustcheck.config.logging import setup_logging
from trustcheck.config.settings import load_settings
from trustcheck.pipeline.queues import RedisQueue

logger = logging.getLogger(__name__)


async def main() -> None:
    setup_logging(log_file="trustcheck-worker.log")
    settings = load_settings()

    if not settings.trust_enabled:
        logger.info("TRUST_ENABLED is off, worker not started")
        return

    services = build_services(settings, start_worker=True)
    if not isinstance(services.orchestrator.queue, RedisQueue):
        logger.error(
            "Dedicated worker needs TRUST_QUEUE_MODE=redis and a reachable broker at %s",
            settings.redis_url,
        )
        services.database.close()
        sys.exit(1)

    def _shutdown(sig: int, _frame: object) -> None:
        logger.info("Worker received signal %s, shutting down...", sig)
        services.orchestrator.queue.stop()
        services.database.close()
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    logger.info("Fact-check worker running on queue %s", settings.queue_name)
    try:
        await run_scheduler(services, retention=False)
    finally:
        services.database.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
