from __future__ import annotations

import asyncio
import logging
from typing import Callable, Coroutine, List, Optional, Set

log = logging.getLogger(__name__)


class ShutdownCoordinator:
    """
    Cooperative teardown for everything started next to the HTTP server.

    Tracked tasks form the wait group: shutdown() sets the stop event, runs
    the registered stop callbacks (closing followers lets ingestion loops
    drain and return), then waits for every tracked task. Tasks still running
    after the timeout are cancelled.

    The HTTP server captures SIGINT/SIGTERM and calls shutdown() from the
    application's lifespan.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._stop = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: List[Callable[[], None]] = []
        self._done = False

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        return task

    def spawn(self, coro: Coroutine, *, name: Optional[str] = None) -> asyncio.Task:
        return self.track(asyncio.create_task(coro, name=name))

    def on_shutdown(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._stop.wait()

    async def shutdown(self) -> None:
        if self._done:
            return
        self._done = True
        log.info("shutting down, waiting for %d task(s)", len(self._tasks))
        self._stop.set()

        for cb in self._callbacks:
            try:
                cb()
            except Exception:
                log.exception("shutdown callback %r failed", cb)

        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self.timeout)
        for task in still_running:
            log.warning("task %s did not stop within %.1fs, cancelling", task.get_name(), self.timeout)
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
