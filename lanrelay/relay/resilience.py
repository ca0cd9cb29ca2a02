"""Background-task helpers shared by the server and the client.

- ``supervised_task``: ``asyncio.create_task`` that logs its own failure
- ``Watchdog``: fixed-interval housekeeping loop
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


def supervised_task(coro: Awaitable[Any], *, name: str = "") -> asyncio.Task:
    """Start *coro* as a task whose exception is logged rather than lost.

    ``CancelledError`` is the normal way these tasks end and is not logged.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _report(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("[Relay/Task] {!r} died: {!r}", t.get_name(), exc)

    task.add_done_callback(_report)
    return task


class Watchdog:
    """Calls *callback* every *interval* seconds until stopped.

    The callback may be sync or async.  Its errors are logged and the loop
    keeps going.
    """

    def __init__(self, name: str, callback: Callable[[], Any], interval: float = 30.0) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = supervised_task(self._run(), name=f"watchdog-{self.name}")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self._callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[Relay/Watchdog/{}] tick failed: {}", self.name, exc)
