import json
import logging
import os
import tempfile
from pathlib import Path

from calldesk.errors import StorageError

logger = logging.getLogger(__name__)

HISTORY_KEY = "callHistory"


class LocalKeyValueStore:
    """Device-local persistent key-value store backed by one JSON file.

    Mirrors browser localStorage semantics: values are whole JSON documents
    stored under string keys and every write replaces the value for its key.
    The file itself is replaced atomically so a crash mid-write never leaves
    a truncated blob behind.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text("utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected layout in {self.path}")
        return data

    def _write_all(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".calldesk-", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh)
                os.replace(tmp, self.path)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    def get_item(self, key: str, default=None):
        return self._read_all().get(key, default)

    def set_item(self, key: str, value) -> None:
        try:
            data = self._read_all()
        except StorageError:
            logger.warning("Local store %s unreadable, rewriting it", self.path)
            data = {}
        data[key] = value
        self._write_all(data)


class LocalCallHistory:
    """The persisted call history array under HISTORY_KEY."""

    def __init__(self, store: LocalKeyValueStore, key: str = HISTORY_KEY):
        self.store = store
        self.key = key

    def load(self) -> list[dict]:
        try:
            items = self.store.get_item(self.key, [])
        except StorageError as e:
            logger.error("Failed to load %s: %s", self.key, e)
            return []
        if not isinstance(items, list):
            logger.error("Ignoring malformed %s blob (%s)", self.key, type(items).__name__)
            return []
        return items

    def save(self, items: list[dict]) -> None:
        self.store.set_item(self.key, items)
