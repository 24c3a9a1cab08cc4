"""Supervised fire-and-forget task pool."""

from __future__ import annotations

import asyncio
from typing import Awaitable

import structlog

log = structlog.get_logger()


class TaskSupervisor:
    """Holds references to launched tasks and logs their failures.

    Callers never await submitted work. Failures surface in the log with the
    fund and action that produced them.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def submit(self, coro: Awaitable, fund: str, action: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(f"{fund}:{action}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, fund, action))
        log.info("dispatch.submitted", fund=fund, action=action)
        return task

    def _on_done(self, task: asyncio.Task, fund: str, action: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            log.warning("dispatch.cancelled", fund=fund, action=action)
            return
        exc = task.exception()
        if exc:
            log.error(
                "dispatch.failed",
                fund=fund,
                action=action,
                error=str(exc),
                type=type(exc).__name__,
                exc_info=exc,
            )
        else:
            log.debug("dispatch.done", fund=fund, action=action)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for everything in flight. Used by tests and by shutdown with a short timeout."""
        if not self._tasks:
            return
        done, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_running:
            log.info("dispatch.drain_incomplete", running=len(still_running))
        # Let done-callbacks run before callers inspect `pending`
        await asyncio.sleep(0)
