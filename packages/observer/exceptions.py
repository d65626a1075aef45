"""
Observer exception hierarchy.

Only FatalEnqueueError terminates the process; everything else is handled by
the component that raised it.
"""

from typing import Optional


class ObserverError(Exception):
    """Base class for observer errors."""


class QueueError(ObserverError):
    """The analysis queue rejected or failed a push."""


class ChangeLogError(ObserverError):
    """The registry change log could not be read."""


class ResultStoreError(ObserverError):
    """The analysis result store could not be read."""


class FatalEnqueueError(ObserverError):
    """A package could not be pushed after exhausting every retry."""

    def __init__(self, name: str, attempts: int, cause: Optional[BaseException] = None):
        self.name = name
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Failed to push {name!r} into the queue after {attempts} attempts: {cause}"
        )
