"""Cooperative cancellation for recomputations and remote fetches."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """One-shot cancellation flag that can also be awaited.

    A token is never reset. Code that commits shared state checks
    ``cancelled`` immediately before the commit, with no await in between.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "superseded") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self.cancelled else "active"
        return f"<CancellationToken {state}>"
