"""Shared, process-scoped crawl state: visited set and job counters.

Per crawl process the state holds:

  visited    URLs that have been claimed for a unit of work
  finished   URLs whose unit of work has run to the end
  expected   number of units dispatched (root included)
  completed  number of units finished (== |finished|)

The two operations workers race on are single atomic steps:

  claim_urls(process_id, urls)
      Adds each URL to ``visited`` and increments ``expected`` by the
      number that were new, in one step, and returns the new URLs.  The
      caller dispatches exactly those.  Because claiming and counting
      are one operation, ``expected`` can never lag behind a dispatch.

  finish_url(process_id, url)
      Adds the URL to ``finished`` and, only if it was new, increments
      ``completed``.  Returns (completed, expected).  A redelivered unit
      of work therefore cannot count twice.

RedisCrawlState runs both as Lua scripts, so they are atomic across
worker processes.  MemoryCrawlState is for single-process runs: its
operations contain no await, so they are atomic within one event loop.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from uuid import UUID

from redis.asyncio import Redis

from config import settings

_CLAIM_SCRIPT = """
local claimed = {}
for i = 2, #ARGV do
    if redis.call('SADD', KEYS[1], ARGV[i]) == 1 then
        claimed[#claimed + 1] = ARGV[i]
    end
end
if #claimed > 0 then
    redis.call('INCRBY', KEYS[2], #claimed)
end
redis.call('EXPIRE', KEYS[1], ARGV[1])
redis.call('EXPIRE', KEYS[2], ARGV[1])
return claimed
"""

_FINISH_SCRIPT = """
local completed
if redis.call('SADD', KEYS[1], ARGV[2]) == 1 then
    completed = redis.call('INCR', KEYS[2])
else
    completed = tonumber(redis.call('GET', KEYS[2]) or '0')
end
local expected = tonumber(redis.call('GET', KEYS[3]) or '1')
redis.call('EXPIRE', KEYS[1], ARGV[1])
redis.call('EXPIRE', KEYS[2], ARGV[1])
return {completed, expected}
"""


class CrawlState(ABC):
    @abstractmethod
    async def initialize(self, process_id: UUID, root_url: str) -> None:
        """Claim the root URL: visited={root}, expected=1, completed=0."""

    @abstractmethod
    async def claim_urls(self, process_id: UUID, urls: list[str]) -> list[str]:
        ...

    @abstractmethod
    async def finish_url(self, process_id: UUID, url: str) -> tuple[int, int]:
        ...

    @abstractmethod
    async def is_finished(self, process_id: UUID, url: str) -> bool:
        ...

    @abstractmethod
    async def clear(self, process_id: UUID) -> None:
        ...


def _keys(process_id: UUID) -> dict[str, str]:
    prefix = f"crawl_process_{process_id}"
    return {
        "visited": f"{prefix}_visited_urls",
        "finished": f"{prefix}_finished_urls",
        "expected": f"{prefix}_job_count",
        "completed": f"{prefix}_completed_jobs",
    }


class RedisCrawlState(CrawlState):
    def __init__(self, redis: Redis, ttl_seconds: int | None = None) -> None:
        self._redis = redis
        self._ttl = ttl_seconds or settings.crawl_state_ttl_seconds
        self._claim = redis.register_script(_CLAIM_SCRIPT)
        self._finish = redis.register_script(_FINISH_SCRIPT)

    @classmethod
    def from_url(cls, url: str | None = None) -> "RedisCrawlState":
        return cls(Redis.from_url(url or settings.redis_url, decode_responses=True))

    async def initialize(self, process_id: UUID, root_url: str) -> None:
        keys = _keys(process_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(*keys.values())
            pipe.sadd(keys["visited"], root_url)
            pipe.set(keys["expected"], 1, ex=self._ttl)
            pipe.set(keys["completed"], 0, ex=self._ttl)
            pipe.expire(keys["visited"], self._ttl)
            await pipe.execute()

    async def claim_urls(self, process_id: UUID, urls: list[str]) -> list[str]:
        if not urls:
            return []
        keys = _keys(process_id)
        claimed = await self._claim(
            keys=[keys["visited"], keys["expected"]], args=[self._ttl, *urls]
        )
        return [str(url) for url in claimed or []]

    async def finish_url(self, process_id: UUID, url: str) -> tuple[int, int]:
        keys = _keys(process_id)
        completed, expected = await self._finish(
            keys=[keys["finished"], keys["completed"], keys["expected"]], args=[self._ttl, url]
        )
        return int(completed), int(expected)

    async def is_finished(self, process_id: UUID, url: str) -> bool:
        return bool(await self._redis.sismember(_keys(process_id)["finished"], url))

    async def clear(self, process_id: UUID) -> None:
        await self._redis.delete(*_keys(process_id).values())

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass
class _ProcessCounters:
    visited: set[str] = field(default_factory=set)
    finished: set[str] = field(default_factory=set)
    expected: int = 0
    completed: int = 0


class MemoryCrawlState(CrawlState):
    def __init__(self) -> None:
        self._processes: dict[UUID, _ProcessCounters] = {}

    async def initialize(self, process_id: UUID, root_url: str) -> None:
        self._processes[process_id] = _ProcessCounters(visited={root_url}, expected=1)

    async def claim_urls(self, process_id: UUID, urls: list[str]) -> list[str]:
        counters = self._processes.setdefault(process_id, _ProcessCounters())
        claimed = []
        for url in urls:
            if url not in counters.visited:
                counters.visited.add(url)
                claimed.append(url)
        counters.expected += len(claimed)
        return claimed

    async def finish_url(self, process_id: UUID, url: str) -> tuple[int, int]:
        counters = self._processes.setdefault(process_id, _ProcessCounters(expected=1))
        if url not in counters.finished:
            counters.finished.add(url)
            counters.completed += 1
        return counters.completed, counters.expected

    async def is_finished(self, process_id: UUID, url: str) -> bool:
        counters = self._processes.get(process_id)
        return counters is not None and url in counters.finished

    async def clear(self, process_id: UUID) -> None:
        self._processes.pop(process_id, None)

    async def close(self) -> None:
        self._processes.clear()
