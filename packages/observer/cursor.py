"""
Realtime cursor store.

Persists the seq of the last change whose package was confirmed in the
analysis queue. Only the realtime watcher writes here.
"""

import os
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from packages.shared.types import Seq, coerce_seq

from .exceptions import ObserverError


class CursorStore(Protocol):
    async def load(self) -> Optional[Seq]: ...

    async def save(self, seq: Seq) -> None: ...


class CursorStoreError(ObserverError):
    """The cursor could not be read or written."""


class RedisCursorStore:
    """Stores the realtime cursor as a plain string under one key."""

    CURSOR_KEY = "observer:realtime:seq"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key: str = CURSOR_KEY,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.key = key
        self._client = client

    async def connect(self) -> None:
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

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("Cursor store not connected. Call connect() first.")
        return self._client

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise CursorStoreError(f"Redis ping failed: {e}") from e

    async def load(self) -> Optional[Seq]:
        """Return the persisted seq (int or opaque token), or None on first run."""
        try:
            value = await self.client.get(self.key)
        except RedisError as e:
            raise CursorStoreError(f"Failed to load cursor: {e}") from e

        if value is None:
            return None
        try:
            return coerce_seq(value)
        except ValueError as e:
            raise CursorStoreError(f"Corrupt cursor value {value!r} at {self.key}") from e

    async def save(self, seq: Seq) -> None:
        try:
            await self.client.set(self.key, str(coerce_seq(seq)))
        except RedisError as e:
            raise CursorStoreError(f"Failed to save cursor {seq}: {e}") from e
