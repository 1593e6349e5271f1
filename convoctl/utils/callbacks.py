"""
Stable handle to a replaceable callback.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Future] = set()


class CallbackRef:
    """
    Holds the newest version of a callback.

    Holders keep the ref, not the function, so a delayed caller always
    invokes whatever was set most recently.
    """

    def __init__(self, fn: Callable[..., Any] | None = None):
        self._fn = fn

    def set(self, fn: Callable[..., Any] | None) -> None:
        self._fn = fn

    @property
    def current(self) -> Callable[..., Any] | None:
        return self._fn

    def fire_and_forget(self, *args: Any) -> None:
        """
        Invoke the current callback without waiting on it.

        Coroutine results are scheduled as tasks. Failures are logged and
        never propagate to the caller.
        """
        fn = self._fn
        if fn is None:
            return
        try:
            result = fn(*args)
        except Exception:
            logger.exception("Callback %r failed", fn)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            _background_tasks.add(task)
            task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Future) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background callback failed: %s", exc, exc_info=exc)
