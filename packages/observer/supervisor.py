"""
Pipeline Supervisor.

Wires one RetryingEnqueuer to the analysis queue, starts the realtime watcher
and the staleness scanner against it, and owns the exit contract:

- 0 when shutdown was requested (SIGINT / SIGTERM)
- 1 when an enqueue exhausted its retries, or the watcher died

A fatal enqueue failure is a whole-pipeline fault; no producer is restarted
on its own.
"""

import asyncio
import signal
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import structlog

from core.config import Settings, get_settings
from core.logging import flush_logging, get_logger
from packages.shared.enums import Priority, ShutdownReason, WatcherState

from .cursor import RedisCursorStore
from .enqueuer import RetryingEnqueuer, RetryPolicy
from .queue import AnalysisQueue
from .realtime import RealtimeWatcher
from .registry.client import RegistryChangeLog
from .registry.results import AnalysisResultStore
from .shutdown import ShutdownSignal
from .stale import StalenessScanner


class PipelineSupervisor:
    """
    Runs the observer until shutdown.

    Every external collaborator can be injected; anything left out is built
    from settings.

    Example:
        exit_code = await PipelineSupervisor(get_settings()).run()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        queue: Any = None,
        cursor_store: Any = None,
        change_log: Any = None,
        result_store: Any = None,
        shutdown: Optional[ShutdownSignal] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = logger or get_logger("observer.supervisor")
        self.shutdown = shutdown or ShutdownSignal()

        s = self.settings
        self.queue = queue or AnalysisQueue(s.redis_url, queue_key=s.queue_key)
        self.cursor_store = cursor_store or RedisCursorStore(s.redis_url, key=s.cursor_key)
        self.change_log = change_log or RegistryChangeLog(
            s.registry_url,
            heartbeat_ms=s.changes_heartbeat_ms,
            timeout=s.registry_timeout,
        )
        auth = (
            aiohttp.BasicAuth(s.results_user, s.results_password or "")
            if s.results_user
            else None
        )
        self.result_store = result_store or AnalysisResultStore(
            s.results_url,
            view=s.results_view,
            page_size=s.scan_page_size,
            timeout=s.registry_timeout,
            auth=auth,
        )

        self.enqueuer = RetryingEnqueuer(
            self.queue,
            self.shutdown,
            policy=RetryPolicy.from_settings(s),
            logger=get_logger("observer.enqueuer"),
        )
        self.watcher = RealtimeWatcher(
            self.change_log,
            self.cursor_store,
            self.enqueuer.enqueue,
            self.shutdown,
            default_seq=s.default_seq,
            priority=Priority(s.realtime_priority),
            reconnect_base_delay=s.reconnect_base_delay,
            reconnect_max_delay=s.reconnect_max_delay,
            reconnect_max_attempts=s.reconnect_max_attempts,
            logger=get_logger("observer.realtime"),
        )
        self.scanner = StalenessScanner(
            self.result_store,
            self.enqueuer.enqueue,
            self.shutdown,
            stale_after=timedelta(days=s.stale_after_days),
            interval_seconds=s.scan_interval_seconds,
            priority=Priority(s.stale_priority),
            logger=get_logger("observer.stale"),
        )

        self._signals_installed: List[signal.Signals] = []

    @property
    def _clients(self) -> List[Tuple[str, Any]]:
        return [
            ("queue", self.queue),
            ("cursor_store", self.cursor_store),
            ("registry", self.change_log),
            ("results", self.result_store),
        ]

    def request_stop(self) -> None:
        """Graceful stop (exit code 0 unless a fatal failure came first)."""
        if self.shutdown.trigger(ShutdownReason.REQUESTED):
            self.logger.warning("shutdown_requested")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform / outside the main thread
                continue
            self._signals_installed.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed = []

    async def wait_for_services(self) -> bool:
        """
        Block until every external service answers a ping.

        Returns False if shutdown was requested while waiting.
        """
        for name, client in self._clients:
            ping = getattr(client, "ping", None)
            if ping is None:
                continue

            delay = min(1.0, self.settings.service_wait_max_delay)
            while True:
                try:
                    if await ping():
                        self.logger.info("service_ready", service=name)
                        break
                    error = "unexpected response"
                except Exception as e:
                    error = str(e)

                self.logger.warning(
                    "service_unavailable", service=name, error=error, retry_in=delay
                )
                if await self.shutdown.sleep(delay):
                    return False
                delay = min(delay * 2, self.settings.service_wait_max_delay)

        return True

    async def _open_clients(self) -> None:
        for _, client in self._clients:
            connect = getattr(client, "connect", None)
            if connect is not None:
                await connect()

    async def _close_clients(self) -> None:
        for name, client in self._clients:
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                self.logger.warning("client_close_failed", client=name, error=str(e))

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "enqueuer": self.enqueuer.get_stats(),
            "realtime": self.watcher.get_stats(),
            "stale": self.scanner.get_stats(),
        }
        queue_stats = getattr(self.queue, "get_stats", None)
        if queue_stats is not None:
            stats["queue"] = await queue_stats()
        return stats

    async def _log_stats(self) -> None:
        while not await self.shutdown.sleep(self.settings.stats_interval_seconds):
            self.logger.info("observer_stats", **(await self.get_stats()))

    def _on_watcher_exit(self, task: "asyncio.Task[WatcherState]") -> None:
        """The watcher never finishes on its own unless something is wrong."""
        if self.shutdown.is_set():
            return

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.critical(
                "realtime_watcher_crashed", error=str(error), error_type=type(error).__name__
            )
        else:
            self.logger.critical("realtime_watcher_exited", state=task.result().value)
        self.shutdown.trigger(ShutdownReason.FATAL, error)

    async def run(self) -> int:
        """Run both producers until shutdown. Returns the process exit code."""
        self.logger.info(
            "observer_starting",
            default_seq=self.settings.default_seq,
            stale_after_days=self.settings.stale_after_days,
            scan_interval_seconds=self.settings.scan_interval_seconds,
        )

        tasks: List[asyncio.Task] = []
        self.install_signal_handlers()

        try:
            await self._open_clients()

            if await self.wait_for_services():
                watcher_task = asyncio.create_task(self.watcher.run(), name="realtime-watcher")
                watcher_task.add_done_callback(self._on_watcher_exit)
                tasks.append(watcher_task)
                tasks.append(asyncio.create_task(self._log_stats(), name="observer-stats"))
                self.scanner.start()

                await self.shutdown.wait()
        finally:
            self.scanner.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._close_clients()
            self.remove_signal_handlers()

        if self.shutdown.is_fatal:
            cause = self.shutdown.cause
            self.logger.critical(
                "observer_terminated",
                reason=ShutdownReason.FATAL.value,
                error=str(cause) if cause else None,
                name=getattr(cause, "name", None),
            )
        else:
            self.logger.info("observer_stopped", reason=ShutdownReason.REQUESTED.value)

        flush_logging()
        return self.shutdown.exit_code
