from enum import Enum

LIVE_STATUSES = {"active", "on-hold"}


class CallStatus(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"

    @property
    def is_live(self) -> bool:
        return self.value in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self is CallStatus.COMPLETED


class CallType(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    INTERNAL = "internal"
    TRANSFER = "transfer"
    CALLBACK = "callback"


class StoreMode(Enum):
    LOCAL = "local"
    REMOTE = "remote"
