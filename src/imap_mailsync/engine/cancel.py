"""Cooperative cancellation for synchronization runs."""

from __future__ import annotations

import asyncio


class SyncCancelled(Exception):
    """Raised at a suspension point once cancellation was requested."""


class CancellationToken:
    """Cancellation flag checked between folder jobs and copy attempts."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        """Return True once `cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str:
        """Return the reason passed to `cancel`."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation; idempotent."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise `SyncCancelled` if cancellation was requested."""
        if self._event.is_set():
            raise SyncCancelled(self._reason)

    async def sleep(self, delay_s: float) -> None:
        """Sleep for `delay_s` seconds, waking early on cancellation.

        Args:
            delay_s: Seconds to wait.

        Raises:
            SyncCancelled: If cancellation happens before or during the wait.
        """
        self.raise_if_cancelled()
        if delay_s <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_s)
        except TimeoutError:
            return
        self.raise_if_cancelled()
