"""Transient user notifications.

Stands in for the toast widget: the core reports outcomes here and whatever
front end is attached drains or subscribes to them.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

SUCCESS = "success"
INFO = "info"
ERROR = "error"

_LOG_LEVELS = {SUCCESS: logging.INFO, INFO: logging.INFO, ERROR: logging.WARNING}


@dataclass(frozen=True)
class Notification:
    message: str
    level: str = INFO


class Notifier:
    def __init__(self, max_kept: int = 50):
        self._recent: deque[Notification] = deque(maxlen=max_kept)
        self._listeners: list[Callable[[Notification], None]] = []

    def subscribe(self, listener: Callable[[Notification], None]) -> None:
        self._listeners.append(listener)

    def notify(self, message: str, level: str = INFO) -> Notification:
        note = Notification(message=message, level=level)
        self._recent.append(note)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", level, message)
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception:
                logger.exception("Notification listener failed")
        return note

    def success(self, message: str) -> Notification:
        return self.notify(message, SUCCESS)

    def info(self, message: str) -> Notification:
        return self.notify(message, INFO)

    def error(self, message: str) -> Notification:
        return self.notify(message, ERROR)

    @property
    def recent(self) -> list[Notification]:
        return list(self._recent)

    def drain(self) -> list[Notification]:
        items = list(self._recent)
        self._recent.clear()
        return items
