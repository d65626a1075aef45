"""
Pytest fixtures for the package observer tests.

External collaborators (queue, cursor store, change log, result store) are
replaced by small in-memory fakes; nothing here needs Redis or CouchDB.
"""

import asyncio
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set, Tuple, Union

import pytest

from core.config import Settings
from packages.observer.enqueuer import RetryingEnqueuer, RetryPolicy
from packages.observer.exceptions import ChangeLogError, QueueError, ResultStoreError
from packages.observer.shutdown import ShutdownSignal
from packages.shared.types import ChangeEvent, Seq, StaleCandidate


class FakeQueue:
    """Queue that fails the first `fail_first` pushes, or always for `fail_names`."""

    def __init__(self, fail_first: int = 0, fail_names: Iterable[str] = ()):
        self.fail_first = fail_first
        self.fail_names: Set[str] = set(fail_names)
        self.calls = 0
        self.pushed: List[Tuple[str, int]] = []

    async def push(self, name: str, priority: int) -> None:
        self.calls += 1
        if self.calls <= self.fail_first or name in self.fail_names:
            raise QueueError(f"push failed for {name}")
        self.pushed.append((name, priority))

    async def ping(self) -> bool:
        return True


class BlockingQueue(FakeQueue):
    """Queue whose pushes never complete; used to test cancellation."""

    def __init__(self):
        super().__init__()
        self.push_started = asyncio.Event()

    async def push(self, name: str, priority: int) -> None:
        self.calls += 1
        self.push_started.set()
        await asyncio.Event().wait()


class MemoryCursorStore:
    """Cursor store recording every save."""

    def __init__(self, initial: Optional[Seq] = None, fail_saves: bool = False):
        self.value = initial
        self.fail_saves = fail_saves
        self.saved: List[Seq] = []

    async def load(self) -> Optional[Seq]:
        return self.value

    async def save(self, seq: Seq) -> None:
        if self.fail_saves:
            raise ConnectionError("cursor store down")
        self.saved.append(seq)
        self.value = seq

    async def ping(self) -> bool:
        return True


Script = Union[List[ChangeEvent], BaseException]


def _is_int_pair(a: Seq, b: Seq) -> bool:
    return isinstance(a, int) and isinstance(b, int)


class FakeChangeLog:
    """
    Scripted change log.

    Each call to since() consumes one script: either a list of events or an
    exception raised on connect. An empty list is a feed that closes without
    any change. Once the scripts run out, `on_exhausted` is called (if given)
    and the stream ends; otherwise it blocks until cancelled.
    """

    def __init__(
        self,
        scripts: List[Script],
        on_exhausted: Optional[Callable[[], object]] = None,
        respect_since: bool = True,
    ):
        self.scripts = list(scripts)
        self.on_exhausted = on_exhausted
        self.respect_since = respect_since
        self.since_calls: List[Seq] = []

    async def since(self, seq: Seq):
        self.since_calls.append(seq)

        if not self.scripts:
            if self.on_exhausted is not None:
                self.on_exhausted()
                return
            await asyncio.Event().wait()

        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script

        for event in script:
            if self.respect_since and _is_int_pair(event.seq, seq) and event.seq <= seq:
                continue
            yield event

    async def ping(self) -> bool:
        return True


class FakeResultStore:
    """Scripted result store; each find_stale() call consumes one script."""

    def __init__(self, scripts: List[Union[List[StaleCandidate], BaseException]]):
        self.scripts = list(scripts)
        self.thresholds: List[datetime] = []

    async def find_stale(self, threshold: datetime):
        self.thresholds.append(threshold)
        if not self.scripts:
            return

        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script

        for candidate in script:
            if isinstance(candidate, BaseException):
                raise candidate
            yield candidate

    async def ping(self) -> bool:
        return True


def events(*pairs: Tuple[Seq, str]) -> List[ChangeEvent]:
    """Build change events from (seq, name) pairs."""
    return [ChangeEvent(seq=seq, name=name) for seq, name in pairs]


def candidates(*names: str) -> List[StaleCandidate]:
    return [StaleCandidate(name=name) for name in names]


@pytest.fixture
def shutdown():
    return ShutdownSignal()


@pytest.fixture
def fast_policy():
    """Retry policy without real waiting."""
    return RetryPolicy(max_attempts=3, base_delay=0, factor=2, max_delay=0)


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def enqueuer(queue, shutdown, fast_policy):
    return RetryingEnqueuer(queue, shutdown, policy=fast_policy)


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        default_seq=0,
        enqueue_max_attempts=2,
        enqueue_backoff_base=0,
        enqueue_backoff_max=0,
        reconnect_base_delay=0,
        reconnect_max_delay=0,
        scan_interval_seconds=3600,
        stats_interval_seconds=3600,
        service_wait_max_delay=0.01,
    )


__all__ = [
    "BlockingQueue",
    "ChangeLogError",
    "FakeChangeLog",
    "FakeQueue",
    "FakeResultStore",
    "MemoryCursorStore",
    "ResultStoreError",
    "candidates",
    "events",
]
