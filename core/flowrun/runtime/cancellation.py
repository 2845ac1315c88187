"""Cooperative cancellation for node handlers.

One CancelToken is shared by every handler invocation in a run. Handlers
should check it between steps (``token.check()``) or race their own
awaitables against ``token.wait()``. A handler that keeps running past
the run's grace period is hard-cancelled and its node marked failed.
"""

import asyncio

from flowrun.errors import CancellationError


class CancelToken:
    """Token for cooperative cancellation.

    Example:
        >>> async def execute(self, inputs, meta, cancel):
        ...     for page in pages:
        ...         cancel.check()
        ...         await fetch(page)
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation. Safe to call more than once; the first reason wins."""
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise CancellationError if cancellation was requested."""
        if self._event.is_set():
            raise CancellationError(self.reason or "Run cancelled")

    async def wait(self) -> None:
        """Block until cancel() is called."""
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for ``delay`` seconds unless cancelled first.

        Returns:
            True if the sleep was interrupted by cancellation.
        """
        if delay <= 0:
            return self.is_cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True
