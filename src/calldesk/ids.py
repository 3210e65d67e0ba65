"""Tagged record identifiers.

A record id is either a LocalId (client generated from a microsecond
timestamp) or a RemoteId (server assigned, 24 hex characters). Only RemoteId
values are ever used as a path segment against the remote store.
"""

import re
import time
from dataclasses import dataclass
from typing import Union

REMOTE_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")

_last_local_id = 0


@dataclass(frozen=True)
class LocalId:
    value: int

    def __str__(self) -> str:
        return str(self.value)

    def to_wire(self) -> int:
        return self.value


@dataclass(frozen=True)
class RemoteId:
    value: str

    def __post_init__(self):
        if not is_remote_id(self.value):
            raise ValueError(f"not a remote id: {self.value!r}")

    def __str__(self) -> str:
        return self.value

    def to_wire(self) -> str:
        return self.value


RecordId = Union[LocalId, RemoteId]


def is_remote_id(raw) -> bool:
    return isinstance(raw, str) and bool(REMOTE_ID_PATTERN.match(raw))


def new_local_id() -> LocalId:
    """Return a LocalId from the current time in microseconds.

    Strictly increasing within the process, so two sessions started in the
    same microsecond still get distinct ids.
    """
    global _last_local_id
    candidate = time.time_ns() // 1000
    if candidate <= _last_local_id:
        candidate = _last_local_id + 1
    _last_local_id = candidate
    return LocalId(candidate)


def parse_record_id(raw) -> RecordId:
    """Parse an id as found in storage, server payloads or URL paths."""
    if isinstance(raw, (LocalId, RemoteId)):
        return raw
    if isinstance(raw, bool):
        raise ValueError(f"unrecognized record id: {raw!r}")
    if isinstance(raw, int):
        return LocalId(raw)
    if isinstance(raw, float) and raw.is_integer():
        return LocalId(int(raw))
    if isinstance(raw, str):
        raw = raw.strip()
        if is_remote_id(raw):
            return RemoteId(raw)
        if raw.isdigit():
            return LocalId(int(raw))
    raise ValueError(f"unrecognized record id: {raw!r}")
