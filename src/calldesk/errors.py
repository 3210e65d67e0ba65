"""Error taxonomy for the call desk.

Only ValidationError, SessionActiveError and InvalidTransitionError reach
callers of the state machine. Network and storage failures are caught at the
history/hooks boundary and turned into user notifications.
"""


class CallDeskError(Exception):
    """Base class for all call desk errors."""


class ValidationError(CallDeskError):
    """Required input missing or malformed. Raised before any state change."""


class SessionActiveError(CallDeskError):
    """A call session or edit draft is already outstanding."""


class InvalidTransitionError(CallDeskError):
    """Requested lifecycle transition is not valid from the current state."""


class NetworkError(CallDeskError):
    """Remote request failed (transport error, bad status or open circuit)."""


class NotFoundError(NetworkError):
    """Remote record addressed by id no longer exists server-side."""


class StorageError(CallDeskError):
    """Local persisted-store read or write failed."""


class UnknownRecordError(CallDeskError, LookupError):
    """No call with the given id is in the history."""
