"""
Fire-and-forget task runner for persistence side effects.

Handlers spawn persistence calls here and move on. The runner keeps a
strong reference to each task until it finishes (so the loop cannot
garbage-collect it mid-flight) and logs any exception it ends with.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine

from blogcast.components.core.exceptions import CircuitOpenError
from blogcast.config.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """
    Tracks spawned tasks and routes their failures to the log.

    Failures never propagate to the spawner: the realtime view is allowed
    to drift from storage, but a handler must never stall on it.
    """

    def __init__(self, on_failure: Callable[[BaseException], None] | None = None) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._on_failure = on_failure
        self._spawned = 0
        self._failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule `coro` and return its task. Must be called on the running loop."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        self._spawned += 1
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        self._failed += 1
        if self._on_failure is not None:
            self._on_failure(exc)
        if isinstance(exc, CircuitOpenError):
            logger.warning("Background task skipped, circuit open", task_name=task.get_name())
        else:
            logger.error(
                "Background task failed",
                task_name=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """
        Wait for every pending task, cancelling whatever is left at `timeout`.

        Tasks spawned while draining are waited for too.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        if self._tasks:
            logger.warning("Cancelling background tasks still running at shutdown", count=len(self._tasks))
            leftovers = set(self._tasks)
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

    def get_stats(self) -> dict[str, int]:
        return {
            "pending": len(self._tasks),
            "spawned": self._spawned,
            "failed": self._failed,
        }
