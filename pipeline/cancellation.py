from __future__ import annotations

import asyncio

from pipeline.errors import OperationCancelled


class CancellationToken:
    """Cooperative cancel flag checked between batches and around retry sleeps."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first, in which case raise."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise OperationCancelled(self.reason)
