"""
Tests for the Staleness Scanner.

Tests:
- Stale candidates are enqueued with low priority, once per pass
- Read failures are contained within a pass
- Fatal enqueue stops the pass
- Scheduler wiring and stopping mid-pass
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import FakeQueue, FakeResultStore, candidates
from packages.observer.enqueuer import RetryingEnqueuer
from packages.observer.exceptions import ResultStoreError
from packages.observer.stale import StalenessScanner
from packages.shared.enums import Priority, ShutdownReason
from packages.shared.types import StaleCandidate

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class HangingResultStore:
    """Result store whose query never returns."""

    def __init__(self):
        self.started = asyncio.Event()

    async def find_stale(self, threshold):
        self.started.set()
        await asyncio.Event().wait()
        yield  # pragma: no cover


def make_scanner(store, enqueuer, shutdown, **kwargs):
    return StalenessScanner(
        store, enqueuer.enqueue, shutdown, clock=lambda: NOW, **kwargs
    )


class TestStalenessScanner:
    """Tests for StalenessScanner."""

    @pytest.mark.asyncio
    async def test_enqueues_stale_candidates_with_low_priority(self, enqueuer, queue, shutdown):
        """Both stale packages are pushed once each with LOW priority."""
        store = FakeResultStore([
            [
                StaleCandidate(name="a", last_processed_at=NOW - timedelta(days=40)),
                StaleCandidate(name="b", last_processed_at=NOW - timedelta(days=20)),
            ]
        ])
        scanner = make_scanner(store, enqueuer, shutdown)

        report = await scanner.run_pass()

        assert sorted(queue.pushed) == [("a", Priority.LOW), ("b", Priority.LOW)]
        assert report.found == 2
        assert report.enqueued == 2
        assert report.failed is False

    @pytest.mark.asyncio
    async def test_threshold_is_now_minus_stale_after(self, enqueuer, shutdown):
        """The store is asked for results older than now - stale_after."""
        store = FakeResultStore([[]])
        scanner = make_scanner(store, enqueuer, shutdown, stale_after=timedelta(days=15))

        await scanner.run_pass()

        assert store.thresholds == [NOW - timedelta(days=15)]

    @pytest.mark.asyncio
    async def test_duplicates_within_a_pass_are_skipped(self, enqueuer, queue, shutdown):
        """A package yielded twice in one pass is enqueued once."""
        store = FakeResultStore([candidates("a", "b", "a")])
        scanner = make_scanner(store, enqueuer, shutdown)

        report = await scanner.run_pass()

        assert queue.pushed == [("a", 0), ("b", 0)]
        assert report.found == 2

    @pytest.mark.asyncio
    async def test_each_pass_starts_fresh(self, enqueuer, queue, shutdown):
        """Passes carry no state: the same package is enqueued again next pass."""
        store = FakeResultStore([candidates("a"), candidates("a")])
        scanner = make_scanner(store, enqueuer, shutdown)

        await scanner.run_pass()
        await scanner.run_pass()

        assert queue.pushed == [("a", 0), ("a", 0)]
        assert scanner.get_stats()["passes"] == 2

    @pytest.mark.asyncio
    async def test_read_failure_skips_pass_and_recovers(self, enqueuer, queue, shutdown):
        """A result store failure ends the pass; the next pass works again."""
        store = FakeResultStore([
            [StaleCandidate(name="a"), ResultStoreError("view timeout")],
            ResultStoreError("connection refused"),
            candidates("b"),
        ])
        scanner = make_scanner(store, enqueuer, shutdown)

        first = await scanner.run_pass()
        second = await scanner.run_pass()
        third = await scanner.run_pass()

        assert first.failed is True
        assert first.enqueued == 1
        assert second.failed is True
        assert third.failed is False
        assert queue.pushed == [("a", 0), ("b", 0)]
        assert scanner.get_stats()["errors"] == 2
        assert not shutdown.is_set()

    @pytest.mark.asyncio
    async def test_fatal_enqueue_stops_the_pass(self, shutdown, fast_policy):
        """Exhausted retries end the pass and leave the shutdown fatal."""
        queue = FakeQueue(fail_names={"b"})
        enqueuer = RetryingEnqueuer(queue, shutdown, policy=fast_policy)
        store = FakeResultStore([candidates("a", "b", "c")])
        scanner = make_scanner(store, enqueuer, shutdown)

        report = await scanner.run_pass()

        assert report.fatal is True
        assert report.enqueued == 1
        assert queue.pushed == [("a", 0)]
        assert shutdown.reason is ShutdownReason.FATAL

    @pytest.mark.asyncio
    async def test_no_pass_after_shutdown(self, enqueuer, shutdown):
        """Nothing is read once shutdown was requested."""
        store = FakeResultStore([candidates("a")])
        scanner = make_scanner(store, enqueuer, shutdown)
        shutdown.trigger()

        report = await scanner.run_pass()

        assert report.found == 0
        assert store.thresholds == []

    @pytest.mark.asyncio
    async def test_start_schedules_interval_job(self, enqueuer, shutdown):
        """start() registers one interval job; stop() shuts the scheduler down."""
        scanner = make_scanner(FakeResultStore([]), enqueuer, shutdown, interval_seconds=600)

        scanner.start()
        try:
            job = scanner.scheduler.get_job(StalenessScanner.JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert scanner.get_stats()["running"] is True
        finally:
            scanner.stop()

        assert scanner.get_stats()["running"] is False

    @pytest.mark.asyncio
    async def test_stop_during_pass_ends_it_quietly(self, enqueuer, shutdown):
        """Stopping mid-pass cancels it without the job ending in an error."""
        store = HangingResultStore()
        logger = MagicMock()
        scanner = make_scanner(store, enqueuer, shutdown, logger=logger)

        scanner.start()
        await asyncio.wait_for(store.started.wait(), timeout=2)
        pass_task = scanner._current_pass
        scanner.stop()
        await asyncio.wait([pass_task], timeout=1)

        assert pass_task.done()
        assert not pass_task.cancelled()
        assert pass_task.exception() is None
        assert scanner._current_pass is None
        logger.info.assert_any_call("stale_scan_cancelled", scan_pass=1)
