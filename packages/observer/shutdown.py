"""
Process-wide shutdown signal.

Shared by the enqueuer, the producers and the supervisor. The first trigger
wins; later triggers are ignored so a fatal failure is reported exactly once.
"""

import asyncio
from typing import Optional

from packages.shared.enums import ShutdownReason


class ShutdownSignal:
    """One-shot shutdown request carrying its reason and cause."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[ShutdownReason] = None
        self.cause: Optional[BaseException] = None

    def trigger(
        self,
        reason: ShutdownReason = ShutdownReason.REQUESTED,
        cause: Optional[BaseException] = None,
    ) -> bool:
        """
        Request shutdown.

        Returns True if this call fired the signal, False if it was already set.
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self.cause = cause
        self._event.set()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def is_fatal(self) -> bool:
        return self.reason is ShutdownReason.FATAL

    @property
    def exit_code(self) -> int:
        """0 for a graceful stop, 1 for a fatal failure."""
        return 1 if self.is_fatal else 0

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`, waking early on shutdown.

        Returns True if shutdown was requested while sleeping.
        """
        if seconds <= 0:
            return self.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
