"""
Async Registry Change Log Client.

Features:
- Continuous CouchDB _changes feed over aiohttp
- Resumable from any seq, integer or opaque token
- Heartbeat-based liveness (blank lines keep the socket warm)
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from core.logging import get_logger
from packages.shared.enums import ChangeKind
from packages.shared.types import ChangeEvent, Seq, coerce_seq

from ..exceptions import ChangeLogError

logger = get_logger("observer.registry")


def parse_change(row: Dict[str, Any]) -> Optional[ChangeEvent]:
    """
    Turn one _changes row into a ChangeEvent.

    Returns None for rows that are not changes (e.g. the closing last_seq row).
    """
    if "seq" not in row or "id" not in row:
        return None

    try:
        seq = coerce_seq(row["seq"])
    except ValueError as e:
        raise ChangeLogError(str(e)) from e

    if row.get("deleted"):
        kind = ChangeKind.DELETED
    else:
        revs = [c.get("rev", "") for c in row.get("changes", [])]
        first_revision = bool(revs) and all(r.startswith("1-") for r in revs)
        kind = ChangeKind.CREATED if first_revision else ChangeKind.UPDATED

    return ChangeEvent(seq=seq, name=row["id"], kind=kind)


class RegistryChangeLog:
    """
    Ordered, resumable change log of the package registry.

    Example:
        async with RegistryChangeLog(url) as changes:
            async for event in changes.since(42):
                print(event.seq, event.name)
    """

    def __init__(
        self,
        registry_url: str,
        heartbeat_ms: int = 30000,
        timeout: int = 60,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.heartbeat_ms = heartbeat_ms
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                # The feed is long-lived: bound only the gap between reads
                timeout=aiohttp.ClientTimeout(
                    total=None,
                    connect=self.timeout,
                    sock_read=self.heartbeat_ms / 1000 * 2,
                ),
            )
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "RegistryChangeLog":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._session

    async def ping(self) -> bool:
        try:
            async with self.session.get(self.registry_url) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChangeLogError(f"Registry unreachable: {e}") from e

    async def since(self, seq: Seq) -> AsyncIterator[ChangeEvent]:
        """
        Stream changes strictly after `seq`, in log order.

        Ends when the server closes the feed; raises ChangeLogError on any
        transport failure.
        """
        params = {
            "feed": "continuous",
            "since": str(seq),
            "heartbeat": str(self.heartbeat_ms),
        }

        try:
            async with self.session.get(f"{self.registry_url}/_changes", params=params) as response:
                if response.status != 200:
                    text = await response.text()
                    raise ChangeLogError(f"Registry error {response.status}: {text[:200]}")

                logger.info("changes_feed_connected", since=seq)

                async for raw in response.content:
                    line = raw.strip()
                    if not line:
                        continue  # heartbeat

                    try:
                        row = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise ChangeLogError(f"Malformed change row: {line[:200]!r}") from e

                    event = parse_change(row)
                    if event is not None:
                        yield event
                    elif "last_seq" in row:
                        logger.info("changes_feed_closed", last_seq=row["last_seq"])
                        return
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChangeLogError(f"Change feed failed: {e}") from e
