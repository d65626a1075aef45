"""
Staleness Scanner.

APScheduler-driven scan over the analysis result store. Every pass asks for
the packages whose last analysis is older than the staleness threshold and
pushes them into the queue with low priority. Passes are independent: a
failed read is logged and simply retried on the next tick.
"""

import asyncio
from contextlib import aclosing
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol, Set

import aiohttp
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.logging import get_logger
from packages.shared.enums import Priority
from packages.shared.types import ScanReport, StaleCandidate

from .enqueuer import OnDiscovered
from .exceptions import ResultStoreError
from .shutdown import ShutdownSignal

READ_ERRORS = (ResultStoreError, aiohttp.ClientError, asyncio.TimeoutError)


class ResultStore(Protocol):
    def find_stale(self, threshold: datetime) -> AsyncIterator[StaleCandidate]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StalenessScanner:
    """
    Periodic re-analysis producer.

    Features:
    - One pass per interval, never two at once
    - Each package enqueued at most once per pass
    - Read failures never escape a pass
    """

    JOB_ID = "staleness_scan"

    def __init__(
        self,
        result_store: ResultStore,
        on_discovered: OnDiscovered,
        shutdown: ShutdownSignal,
        stale_after: timedelta = timedelta(days=15),
        interval_seconds: int = 3600,
        priority: Priority = Priority.LOW,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable[[], datetime] = _utcnow,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self.result_store = result_store
        self.on_discovered = on_discovered
        self.shutdown = shutdown
        self.stale_after = stale_after
        self.interval_seconds = interval_seconds
        self.priority = priority
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.clock = clock
        self.logger = logger or get_logger("observer.stale")

        self._running = False
        self._current_pass: Optional[asyncio.Task] = None
        self.stats: Dict[str, Any] = {
            "passes": 0,
            "errors": 0,
            "enqueued": 0,
            "last_run": None,
        }

    async def run_pass(self) -> ScanReport:
        """Run one full scan pass."""
        report = ScanReport()
        if self.shutdown.is_set():
            return report

        threshold = self.clock() - self.stale_after
        seen: Set[str] = set()
        self.stats["passes"] += 1
        self.stats["last_run"] = self.clock().isoformat()

        with structlog.contextvars.bound_contextvars(scan_pass=self.stats["passes"]):
            self.logger.info("stale_scan_started", threshold=threshold.isoformat())

            try:
                async with aclosing(self.result_store.find_stale(threshold)) as candidates:
                    async for candidate in candidates:
                        if candidate.name in seen:
                            continue
                        seen.add(candidate.name)
                        report.found += 1

                        result = await self.on_discovered(candidate.name, self.priority)
                        if not result.ok:
                            report.fatal = result.fatal
                            self.logger.error(
                                "stale_scan_aborted",
                                name=candidate.name,
                                fatal=result.fatal,
                                enqueued=report.enqueued,
                            )
                            break
                        report.enqueued += 1
            except READ_ERRORS as e:
                report.failed = True
                report.error = str(e)
                self.stats["errors"] += 1
                self.logger.error(
                    "stale_scan_read_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    enqueued=report.enqueued,
                )

            self.stats["enqueued"] += report.enqueued
            self.logger.info("stale_scan_finished", found=report.found, enqueued=report.enqueued)

        return report

    async def _scheduled_pass(self) -> None:
        self._current_pass = asyncio.current_task()
        try:
            await self.run_pass()
        except asyncio.CancelledError:
            # stop() interrupted the pass; the scheduler would report it as a crash
            self.logger.info("stale_scan_cancelled", scan_pass=self.stats["passes"])
        finally:
            self._current_pass = None

    def start(self) -> None:
        """Schedule passes every interval, the first one immediately."""
        if self._running:
            return

        self.scheduler.add_job(
            self._scheduled_pass,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Staleness Scan",
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._running = True
        self.logger.info("stale_scanner_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        """Stop scheduling and interrupt an in-flight pass."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        if self._current_pass is not None and not self._current_pass.done():
            self._current_pass.cancel()
        self._running = False
        self.logger.info("stale_scanner_stopped")

    def get_stats(self) -> Dict[str, Any]:
        job = self.scheduler.get_job(self.JOB_ID) if self._running else None
        next_run = getattr(job, "next_run_time", None)
        return {
            "running": self._running,
            "next_run": next_run.isoformat() if next_run else None,
            **self.stats,
        }
