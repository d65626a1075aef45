"""
Shared Package.

Contains enums and record types shared by the observer components.

Usage:
    from packages.shared import ChangeEvent, Priority
"""

from packages.shared.enums import (
    ChangeKind,
    Priority,
    ShutdownReason,
    WatcherState,
)
from packages.shared.types import (
    ChangeEvent,
    ScanReport,
    Seq,
    StaleCandidate,
    coerce_seq,
)

__all__ = [
    # Types
    "ChangeEvent",
    "ScanReport",
    "StaleCandidate",
    "Seq",
    "coerce_seq",
    # Enums
    "ChangeKind",
    "Priority",
    "ShutdownReason",
    "WatcherState",
]
