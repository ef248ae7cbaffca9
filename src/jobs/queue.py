"""Job queue adapters.

``ArqJobQueue`` enqueues onto the arq Redis queue consumed by
``src.jobs.worker.WorkerSettings``.

``LocalJobQueue`` runs the same task functions as asyncio tasks in the
current process.  It builds the same ``ctx`` keys arq provides
(``job_id``, ``job_try``, ``enqueue_time``) and honours ``arq.Retry``,
so supervised jobs behave identically.  Used by ``--local`` CLI runs
and by tests.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import Retry
from arq.connections import ArqRedis

from config import settings

logger = logging.getLogger(__name__)

TaskFn = Callable[..., Awaitable[Any]]


class JobQueue(ABC):
    @abstractmethod
    async def enqueue(self, name: str, **kwargs: Any) -> None:
        ...

    async def close(self) -> None:
        return None


class ArqJobQueue(JobQueue):
    def __init__(self, redis: ArqRedis, queue_name: str | None = None) -> None:
        self._redis = redis
        self._queue_name = queue_name or settings.job_queue_name

    async def enqueue(self, name: str, **kwargs: Any) -> None:
        job = await self._redis.enqueue_job(name, _queue_name=self._queue_name, **kwargs)
        logger.debug("Enqueued %s as %s", name, job.job_id if job else "<duplicate>")

    async def close(self) -> None:
        await self._redis.aclose()


class LocalJobQueue(JobQueue):
    def __init__(
        self,
        functions: list[TaskFn] | None = None,
        ctx: dict[str, Any] | None = None,
        *,
        max_tries: int | None = None,
        retry_delay_scale: float = 1.0,
    ) -> None:
        self.ctx: dict[str, Any] = ctx if ctx is not None else {}
        self._functions: dict[str, TaskFn] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._max_tries = max_tries or settings.job_max_tries
        self._retry_delay_scale = retry_delay_scale
        self.enqueued: list[tuple[str, dict[str, Any]]] = []
        self.failed: list[tuple[str, dict[str, Any], BaseException]] = []
        for function in functions or []:
            self.register(function)

    def register(self, function: TaskFn, name: str | None = None) -> None:
        self._functions[name or function.__name__] = function

    async def enqueue(self, name: str, **kwargs: Any) -> None:
        function = self._functions.get(name)
        if function is None:
            raise ValueError(f"No task registered under {name!r}")
        self.enqueued.append((name, kwargs))
        task = asyncio.create_task(self._run(name, function, kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, name: str, function: TaskFn, kwargs: dict[str, Any]) -> Any:
        job_id = uuid4().hex
        enqueue_time = datetime.now(timezone.utc)
        job_try = 1
        while True:
            ctx = {**self.ctx, "job_id": job_id, "job_try": job_try, "enqueue_time": enqueue_time}
            try:
                return await function(ctx, **kwargs)
            except Retry as exc:
                if job_try >= self._max_tries:
                    logger.error("Local job %s exhausted %d tries", name, job_try)
                    self.failed.append((name, kwargs, exc))
                    return None
                delay = (exc.defer_score or 0) / 1000 * self._retry_delay_scale
                await asyncio.sleep(delay)
                job_try += 1
            except Exception as exc:
                logger.exception("Local job %s (%s) failed", name, job_id)
                self.failed.append((name, kwargs, exc))
                return None

    async def join(self) -> None:
        """Wait until no jobs are running, including jobs enqueued by jobs."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.join()
