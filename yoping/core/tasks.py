from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, Set

log = logging.getLogger("yoping.tasks")


class TaskSupervisor:
    """Runs fire-and-forget work (broadcasts, receipt checks, token cleanup).

    Nobody awaits these tasks on the request path. A failing task is logged here and
    never propagates to the code that spawned it.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[object], *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def spawn_later(self, delay: float, coro: Awaitable[object], *, name: Optional[str] = None) -> asyncio.Task:
        async def _delayed() -> object:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                if asyncio.iscoroutine(coro):
                    coro.close()
                raise
            return await coro

        return self.spawn(_delayed(), name=name)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background task %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for everything currently scheduled (used by tests and graceful stop)."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()


__all__ = ["TaskSupervisor"]
