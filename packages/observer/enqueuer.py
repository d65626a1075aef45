"""
Retrying Enqueuer.

Wraps the analysis queue push with bounded exponential-backoff retry.
Exhausting the retries is fatal: the shared shutdown signal is triggered and
the supervisor terminates the whole process. Producers never see transient
push failures, only the final EnqueueResult.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from core.logging import get_logger
from packages.shared.enums import Priority, ShutdownReason

from .exceptions import FatalEnqueueError
from .shutdown import ShutdownSignal


class PackageQueue(Protocol):
    """Anything that can push a package name with a priority."""

    async def push(self, name: str, priority: int) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attempt n (1-based) that fails waits min(base_delay * factor ** (n - 1), max_delay)
    before attempt n + 1. No wait follows the last attempt.
    """
    max_attempts: int = 10
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.factor < 1:
            raise ValueError("factor must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.enqueue_max_attempts,
            base_delay=settings.enqueue_backoff_base,
            factor=settings.enqueue_backoff_factor,
            max_delay=settings.enqueue_backoff_max,
        )


@dataclass(frozen=True)
class EnqueueResult:
    """
    Outcome of one enqueue call.

    ok: the push was confirmed.
    fatal: retries were exhausted (or a fatal shutdown is already in progress).
    Neither: the call was abandoned because a graceful shutdown was requested.
    """
    ok: bool
    fatal: bool = False
    attempts: int = 0
    error: Optional[BaseException] = None

    @property
    def aborted(self) -> bool:
        return not self.ok and not self.fatal


# Capability the producers depend on instead of the concrete enqueuer
OnDiscovered = Callable[[str, Priority], Awaitable[EnqueueResult]]


class RetryingEnqueuer:
    """
    Single synchronization point between the producers and the queue.

    Concurrent calls are independent pushes; nothing is serialized here.
    """

    def __init__(
        self,
        queue: PackageQueue,
        shutdown: ShutdownSignal,
        policy: Optional[RetryPolicy] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self.queue = queue
        self.shutdown = shutdown
        self.policy = policy or RetryPolicy()
        self.logger = logger or get_logger("observer.enqueuer")
        self.stats: Dict[str, int] = {
            "pushed": 0,
            "retries": 0,
            "failures": 0,
        }

    async def __call__(self, name: str, priority: Priority) -> EnqueueResult:
        return await self.enqueue(name, priority)

    async def enqueue(self, name: str, priority: Priority) -> EnqueueResult:
        """Push `name` with `priority`, retrying transient failures."""
        if not isinstance(name, str) or not name:
            raise ValueError("Package name must be a non-empty string")
        if not isinstance(priority, Priority):
            priority = Priority(priority)

        if self.shutdown.is_set():
            return EnqueueResult(ok=False, fatal=self.shutdown.is_fatal)

        last_error: Optional[BaseException] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                await self.queue.push(name, int(priority))
            except Exception as e:
                last_error = e
                self.logger.warning(
                    "enqueue_attempt_failed",
                    name=name,
                    priority=priority.name,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    error=str(e),
                )
            else:
                self.stats["pushed"] += 1
                self.logger.debug(
                    "package_enqueued", name=name, priority=priority.name, attempt=attempt
                )
                return EnqueueResult(ok=True, attempts=attempt)

            if attempt == self.policy.max_attempts:
                break

            self.stats["retries"] += 1
            if await self.shutdown.sleep(self.policy.delay_for(attempt)):
                return EnqueueResult(
                    ok=False,
                    fatal=self.shutdown.is_fatal,
                    attempts=attempt,
                    error=last_error,
                )

        if self.shutdown.is_set():
            # Stopping already: the last failure is not a new fatal condition
            return EnqueueResult(
                ok=False,
                fatal=self.shutdown.is_fatal,
                attempts=self.policy.max_attempts,
                error=last_error,
            )

        return self._escalate(name, priority, self.policy.max_attempts, last_error)

    def _escalate(
        self,
        name: str,
        priority: Priority,
        attempts: int,
        cause: Optional[BaseException],
    ) -> EnqueueResult:
        """Retries exhausted: request a fatal shutdown of the whole pipeline."""
        self.stats["failures"] += 1
        error = FatalEnqueueError(name, attempts, cause)

        if self.shutdown.trigger(ShutdownReason.FATAL, error):
            self.logger.critical(
                "enqueue_retries_exhausted",
                name=name,
                priority=priority.name,
                attempts=attempts,
                error=str(cause),
                error_type=type(cause).__name__ if cause else None,
            )

        return EnqueueResult(ok=False, fatal=True, attempts=attempts, error=error)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
