"""Repeating timer callbacks owned by a single call session.

Every live session owns exactly one TimerSet. Leaving ACTIVE/ON_HOLD calls
cancel_all(), which tears down every callback the set ever started, so no
tick can fire against a discarded session.
"""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

CLOCK_TICK = "clock"
HOLD_TICK = "hold"
AUTOSAVE_TICK = "autosave"


class TimerSet:
    def __init__(self, label: str = "session"):
        self.label = label
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def names(self) -> set[str]:
        return {name for name, task in self._tasks.items() if not task.done()}

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def start(
        self,
        name: str,
        interval: float,
        callback: Callable[[], None],
        *,
        fire_immediately: bool = False,
    ) -> None:
        """Start (or restart) the named repeating callback.

        Must be called from inside the running event loop.
        """
        if self._closed:
            raise RuntimeError(f"TimerSet {self.label} is already torn down")
        self.cancel(name)
        if fire_immediately:
            self._safe_call(name, callback)
        self._tasks[name] = asyncio.get_running_loop().create_task(
            self._run(name, interval, callback)
        )

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every callback and refuse new ones. Safe to call twice."""
        if self._closed:
            return 0
        self._closed = True
        cancelled = 0
        for name in list(self._tasks):
            if self.cancel(name):
                cancelled += 1
        logger.debug("TimerSet %s torn down (%d timers)", self.label, cancelled)
        return cancelled

    async def _run(self, name: str, interval: float, callback: Callable[[], None]):
        while True:
            await asyncio.sleep(interval)
            self._safe_call(name, callback)

    def _safe_call(self, name: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Timer %s/%s callback failed", self.label, name)
