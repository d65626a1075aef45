"""
Shared Enumerations.

Defines enums used across all packages for type safety and consistency.
"""

from enum import Enum, IntEnum


class Priority(IntEnum):
    """Analysis queue priority. Higher values are processed sooner."""
    LOW = 0
    HIGH = 1


class ChangeKind(str, Enum):
    """Kind of change reported by the registry change log."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class WatcherState(str, Enum):
    """Realtime watcher lifecycle state."""
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    RECOVERING = "recovering"
    STOPPED = "stopped"
    FAILED = "failed"


class ShutdownReason(str, Enum):
    """Why the observer pipeline is shutting down."""
    REQUESTED = "requested"
    FATAL = "fatal"
