"""In-process notification bus for call lifecycle events.

Subscribers (billing timers, webhook fan-out, ...) are scheduled on the
running loop and never awaited by the publisher.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

CALL_STARTED = "call:started"
CALL_COMPLETED = "call:completed"


class NotificationBus:
    def __init__(self):
        self._subscribers: dict[str, list[Callable[[Any], Any]]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> Callable[[], None]:
        """Register a sync or async handler. Returns an unsubscribe callable."""
        self._subscribers[event].append(handler)

        def unsubscribe():
            if handler in self._subscribers[event]:
                self._subscribers[event].remove(handler)

        return unsubscribe

    def publish(self, event: str, payload: Any) -> int:
        """Schedule every subscriber of `event`. Returns how many were scheduled."""
        handlers = list(self._subscribers.get(event, ()))
        if not handlers:
            return 0
        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._deliver(event, handler, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        logger.debug("Published %s to %d subscribers", event, len(handlers))
        return len(handlers)

    async def _deliver(self, event: str, handler: Callable[[Any], Any], payload: Any) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Subscriber %r failed handling %s", handler, event)

    async def drain(self) -> None:
        """Wait for all scheduled deliveries. Used at shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
