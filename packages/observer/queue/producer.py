"""
Analysis Queue Producer.

Pushes package names into the Redis-backed analysis queue consumed by the
analyzer workers. Each priority level is its own list; workers BRPOP the
lists highest level first, so higher priorities are always drained first and
each level stays FIFO.
"""

import os
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.logging import get_logger
from packages.shared.enums import Priority

from ..exceptions import QueueError

logger = get_logger("observer.queue")


class AnalysisQueue:
    """
    Redis priority queue client.

    Duplicates are not filtered: the observer delivers at least once and the
    analyzer tolerates re-analysis of the same package.

    Example:
        async with AnalysisQueue("redis://localhost:6379/0") as queue:
            await queue.push("express", Priority.HIGH)
    """

    QUEUE_KEY = "analysis:queue"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        queue_key: str = QUEUE_KEY,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.queue_key = queue_key
        self._client = client

    def key_for(self, priority: int) -> str:
        return f"{self.queue_key}:{int(priority)}"

    @property
    def keys_by_priority(self) -> List[str]:
        """Queue keys in the order consumers should read them."""
        return [self.key_for(p) for p in sorted(Priority, reverse=True)]

    async def connect(self) -> None:
        """Create the Redis client if none was injected."""
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=10,
                socket_connect_timeout=10,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AnalysisQueue":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("Queue not connected. Use 'async with' or call connect().")
        return self._client

    async def ping(self) -> bool:
        """Check that Redis answers."""
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise QueueError(f"Redis ping failed: {e}") from e

    async def push(self, name: str, priority: int) -> None:
        """Push a package name. Raises QueueError when Redis fails."""
        try:
            await self.client.lpush(self.key_for(priority), name)
        except RedisError as e:
            raise QueueError(f"Failed to push {name!r}: {e}") from e

    async def get_stats(self) -> Dict[str, Any]:
        """Pending messages per priority level."""
        stats: Dict[str, Any] = {}
        try:
            for priority in Priority:
                stats[priority.name.lower()] = await self.client.llen(self.key_for(priority))
        except RedisError as e:
            logger.warning("queue_stats_failed", error=str(e))
        return stats
