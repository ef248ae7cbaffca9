"""Retry policy and status bookkeeping for background jobs.

A supervised job moves its entity through

    pending -> processing -> completed          (work succeeded)
                          -> pending            (failed, retry scheduled)
                          -> failed             (final failure)

``completed`` is written by the work itself, since that step merges the
result data into the entity.  The supervisor writes the other three.

Retry decision on a failed attempt:
  - ValidationError, OrchestrationError and ExtractionError (other than
    an extraction timeout) are final on the first attempt.
  - Anything else is retried while attempts remain AND the retry would
    start before ``deadline_seconds`` after the job was first enqueued.

A retry is requested by raising ``arq.Retry(defer=...)``; arq (or the
local queue) re-runs the job with ``job_try`` incremented.

Work is bounded by ``timeout`` (the worker's job timeout minus a margin)
and an overrun is a retryable failure.  If the job is cancelled from
outside anyway, the entity goes back to pending, or to failed on the last
attempt, before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

from arq import Retry

from config import settings
from src.errors import (
    ExtractionError,
    OrchestrationError,
    PdfExtractionTimeoutError,
    TransientIOError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_tries: int = 3
    backoff_seconds: tuple[int, ...] = (30, 60, 120)
    deadline_seconds: int = 1800

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_tries=settings.job_max_tries,
            backoff_seconds=tuple(settings.job_backoff_seconds),
            deadline_seconds=settings.job_retry_deadline_seconds,
        )

    def delay_for(self, attempt: int) -> int:
        """Delay before the retry that follows ``attempt`` (1-based)."""
        if not self.backoff_seconds:
            return 0
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds)) - 1]

    def should_retry(
        self, attempt: int, enqueued_at: datetime, now: datetime | None = None
    ) -> bool:
        if attempt >= self.max_tries:
            return False
        now = now or datetime.now(timezone.utc)
        retry_at = now + timedelta(seconds=self.delay_for(attempt))
        return retry_at <= enqueued_at + timedelta(seconds=self.deadline_seconds)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, PdfExtractionTimeoutError):
        return True
    return not isinstance(exc, (ValidationError, OrchestrationError, ExtractionError))


@dataclass
class StatusHooks:
    processing: Callable[[], Awaitable[Any]]
    pending: Callable[[str], Awaitable[Any]]
    failed: Callable[[str], Awaitable[Any]]


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class JobSupervisor:
    def __init__(self, policy: RetryPolicy | None = None, timeout: float | None = None) -> None:
        self.policy = policy or RetryPolicy.from_settings()
        if timeout is None:
            timeout = max(1, settings.job_timeout_seconds - settings.job_timeout_margin_seconds)
        self.timeout = timeout

    def is_final_attempt(self, attempt: int, enqueued_at: datetime) -> bool:
        """True when a retryable failure on this attempt would not be retried."""
        return not self.policy.should_retry(attempt, _as_aware(enqueued_at))

    async def run(
        self,
        name: str,
        work: Callable[[], Awaitable[T]],
        *,
        attempt: int,
        enqueued_at: datetime,
        hooks: StatusHooks | None = None,
    ) -> T:
        if hooks is not None:
            await hooks.processing()

        try:
            try:
                async with asyncio.timeout(self.timeout) as deadline:
                    return await work()
            except TimeoutError as exc:
                # a timeout raised by the work itself keeps its own message
                if not deadline.expired():
                    raise
                raise TransientIOError(f"{name} timed out after {self.timeout:g} seconds") from exc
        except asyncio.CancelledError:
            # cancelled from outside (worker shutdown or arq's job_timeout)
            final = attempt >= self.policy.max_tries
            logger.warning("%s cancelled on attempt %d/%d", name, attempt, self.policy.max_tries)
            if hooks is not None:
                if final:
                    await hooks.failed("cancelled")
                else:
                    await hooks.pending("cancelled")
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            if is_retryable(exc) and self.policy.should_retry(attempt, _as_aware(enqueued_at)):
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed, retrying in %ds: %s",
                    name, attempt, self.policy.max_tries, delay, error,
                )
                if hooks is not None:
                    await hooks.pending(error)
                raise Retry(defer=delay) from exc

            logger.error("%s failed on attempt %d/%d: %s", name, attempt, self.policy.max_tries, error)
            if hooks is not None:
                await hooks.failed(error)
            raise
