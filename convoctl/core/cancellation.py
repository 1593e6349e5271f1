"""
Cooperative cancellation for in-flight generation requests.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class GenerationCancelled(Exception):
    """Raised inside a completion call once its token has been triggered."""


class CancellationToken:
    """
    A one-shot cancellation flag watched by an in-flight request.

    Once triggered it stays triggered. Requests check it at callback
    boundaries or race their awaitables against it with `run`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelled("Request cancelled by user")

    async def run(self, aw: Awaitable[T]) -> T:
        """
        Await `aw` unless the token fires first.

        Raises:
            GenerationCancelled: If the token was triggered before `aw` finished
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(aw)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()

        if work in done:
            return work.result()

        work.cancel()
        raise GenerationCancelled("Request cancelled by user")
