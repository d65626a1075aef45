"""
Realtime Watcher.

Tails the registry change log from the persisted cursor and pushes every
changed package into the analysis queue with realtime priority.

The cursor only advances after the push of the change it names has been
confirmed, so a restart resumes after the last fully enqueued change. Changes
may be enqueued twice across a crash, never skipped.
"""

import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional, Protocol

import aiohttp
import structlog

from core.logging import get_logger
from packages.shared.enums import Priority, WatcherState
from packages.shared.types import ChangeEvent, Seq

from .cursor import CursorStore, CursorStoreError
from .enqueuer import OnDiscovered
from .exceptions import ChangeLogError
from .shutdown import ShutdownSignal

# Upstream outages are retried forever; they are independent of queue health
RECOVERABLE_ERRORS = (
    ChangeLogError,
    CursorStoreError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
)


class ChangeLog(Protocol):
    def since(self, seq: Seq) -> AsyncIterator[ChangeEvent]: ...


class RealtimeWatcher:
    """
    Change log follower.

    States: INITIALIZING -> STREAMING -> (RECOVERING -> STREAMING)* and
    STOPPED on shutdown. FAILED is only reachable when reconnect_max_attempts
    is set. A feed that closes without advancing the cursor counts as a failed
    connection and is retried with backoff.
    """

    def __init__(
        self,
        change_log: ChangeLog,
        cursor_store: CursorStore,
        on_discovered: OnDiscovered,
        shutdown: ShutdownSignal,
        default_seq: int = 0,
        priority: Priority = Priority.HIGH,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        reconnect_max_attempts: Optional[int] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        if default_seq < 0:
            raise ValueError("default_seq must be a positive integer")

        self.change_log = change_log
        self.cursor_store = cursor_store
        self.on_discovered = on_discovered
        self.shutdown = shutdown
        self.default_seq = default_seq
        self.priority = priority
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.reconnect_max_attempts = reconnect_max_attempts
        self.logger = logger or get_logger("observer.realtime")

        self.state = WatcherState.INITIALIZING
        self.cursor: Optional[Seq] = None
        self.stats: Dict[str, int] = {
            "events": 0,
            "enqueued": 0,
            "skipped": 0,
            "reconnects": 0,
            "cursor_save_errors": 0,
        }

    def reconnect_delay(self, failures: int) -> float:
        return min(self.reconnect_base_delay * 2 ** (failures - 1), self.reconnect_max_delay)

    async def _load_cursor(self) -> Seq:
        stored = await self.cursor_store.load()
        if stored is None:
            self.logger.info("cursor_not_found", default_seq=self.default_seq)
            return self.default_seq
        self.logger.info("cursor_loaded", seq=stored)
        return stored

    async def _save_cursor(self, seq: Seq) -> None:
        try:
            await self.cursor_store.save(seq)
        except Exception as e:
            # The stored cursor lags behind; a restart only re-enqueues
            self.stats["cursor_save_errors"] += 1
            self.logger.warning("cursor_save_failed", seq=seq, error=str(e))

    def _already_seen(self, seq: Seq) -> bool:
        # Opaque tokens carry no order of their own; the feed order is trusted
        if isinstance(seq, int) and isinstance(self.cursor, int):
            return seq <= self.cursor
        return False

    async def _handle(self, event: ChangeEvent) -> bool:
        """Process one change. Returns False when the watcher must stop."""
        if self._already_seen(event.seq):
            self.stats["skipped"] += 1
            return True

        self.stats["events"] += 1

        if event.is_design_doc:
            self.cursor = event.seq
            await self._save_cursor(event.seq)
            return True

        result = await self.on_discovered(event.name, self.priority)
        if not result.ok:
            self.logger.error(
                "realtime_enqueue_aborted",
                name=event.name,
                seq=event.seq,
                fatal=result.fatal,
                cursor=self.cursor,
            )
            return False

        self.stats["enqueued"] += 1
        self.cursor = event.seq
        await self._save_cursor(event.seq)
        self.logger.debug("change_enqueued", name=event.name, seq=event.seq, kind=event.kind.value)
        return True

    async def _follow(self) -> None:
        failures = 0

        while not self.shutdown.is_set():
            try:
                if self.cursor is None:
                    self.cursor = await self._load_cursor()

                self.state = WatcherState.STREAMING
                start = self.cursor
                async with aclosing(self.change_log.since(self.cursor)) as events:
                    async for event in events:
                        if not await self._handle(event):
                            return
                        if self.cursor != start:
                            failures = 0
                        if self.shutdown.is_set():
                            return

                if self.shutdown.is_set():
                    return
                if self.cursor != start:
                    # Feed closed by the server after progress: resume at once
                    continue
                error = "change feed closed without new changes"
                error_type = None
            except RECOVERABLE_ERRORS as e:
                error = str(e)
                error_type = type(e).__name__

            failures += 1
            self.stats["reconnects"] += 1

            max_attempts = self.reconnect_max_attempts
            if max_attempts is not None and failures > max_attempts:
                self.state = WatcherState.FAILED
                self.logger.error(
                    "realtime_reconnect_exhausted", attempts=max_attempts, error=error
                )
                return

            self.state = WatcherState.RECOVERING
            delay = self.reconnect_delay(failures)
            self.logger.warning(
                "change_log_connection_failed",
                error=error,
                error_type=error_type,
                retry_in=delay,
                cursor=self.cursor,
            )
            await self.shutdown.sleep(delay)

    async def run(self) -> WatcherState:
        """Follow the change log until shutdown. Returns the final state."""
        try:
            await self._follow()
        finally:
            if self.state is not WatcherState.FAILED:
                self.state = WatcherState.STOPPED
            self.logger.info("realtime_stopped", state=self.state.value, cursor=self.cursor)
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "cursor": self.cursor,
            **self.stats,
        }
