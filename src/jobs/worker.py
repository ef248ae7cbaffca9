"""arq worker entry point.

Run with either of::

    arq src.jobs.worker.WorkerSettings
    python -m src.cli worker
"""

from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import ArqRedis, RedisSettings

from config import settings
from src.jobs.queue import ArqJobQueue
from src.jobs.tasks import TASKS, expire_stale_crawls

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    from src.pipeline import IngestionPipeline

    redis: ArqRedis = ctx["redis"]
    pipeline = IngestionPipeline(queue=ArqJobQueue(redis))
    await pipeline.start()
    ctx["pipeline"] = pipeline
    logger.info("Ingestion worker ready (queue=%s)", settings.job_queue_name)


async def shutdown(ctx: dict[str, Any]) -> None:
    pipeline = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.stop()
    logger.info("Ingestion worker stopped")


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = TASKS
    cron_jobs = [cron(expire_stale_crawls, minute=set(range(0, 60, 10)), run_at_startup=False)]
    on_startup = startup
    on_shutdown = shutdown
    queue_name = settings.job_queue_name
    max_jobs = settings.worker_max_jobs
    job_timeout = settings.job_timeout_seconds
    max_tries = settings.job_max_tries
    # results are not read back
    keep_result = 0
