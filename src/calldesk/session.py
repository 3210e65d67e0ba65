from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from calldesk.ids import LocalId, RecordId, new_local_id, parse_record_id
from calldesk.states import CallStatus, CallType


def mask_sensitive(value: str) -> str:
    """Mask a sensitive identifier down to its last four characters."""
    if not value:
        return ""
    return f"***{value[-4:]}"


def _instant_to_wire(ms: Optional[float]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _instant_from_wire(raw) -> Optional[float]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp() * 1000


@dataclass
class FieldDescriptor:
    """Externally configured custom field. The core never interprets `id`."""

    id: str
    label: str
    type: str = "text"
    visible: bool = True
    include_in_notes: bool = False


@dataclass
class CallSession:
    caller_name: str
    caller_phone: str
    call_type: CallType = CallType.INBOUND
    id: LocalId = field(default_factory=new_local_id)
    start_time: float = 0.0
    status: CallStatus = CallStatus.ACTIVE

    # Hold tracking
    hold_start_time: Optional[float] = None
    total_hold_duration: float = 0.0

    # Form data
    notes: str = ""
    custom_data: dict = field(default_factory=dict)
    account_number: str = ""
    sensitive_id: str = ""

    # From CRM lookup
    contact_id: str = ""
    contact_source: str = ""

    @property
    def on_hold(self) -> bool:
        return self.status == CallStatus.ON_HOLD

    def elapsed(self, now: float) -> float:
        """Wall-clock time since start, hold included."""
        return max(0.0, now - self.start_time)

    def current_hold(self, now: float) -> float:
        """Length of the open hold segment, 0 when not on hold."""
        if self.hold_start_time is None:
            return 0.0
        return max(0.0, now - self.hold_start_time)


@dataclass
class CallRecord:
    id: RecordId
    caller_name: str
    caller_phone: str
    call_type: CallType
    start_time: float
    end_time: float
    duration: float = 0.0
    total_hold_duration: float = 0.0
    status: CallStatus = CallStatus.COMPLETED
    notes: str = ""
    custom_data: dict = field(default_factory=dict)
    account_number: str = ""
    sensitive_id: str = ""
    contact_id: str = ""
    contact_source: str = ""
    crm_id: str = ""

    @classmethod
    def from_session(cls, session: CallSession, end_time: float) -> "CallRecord":
        return cls(
            id=session.id,
            caller_name=session.caller_name,
            caller_phone=session.caller_phone,
            call_type=session.call_type,
            start_time=session.start_time,
            end_time=end_time,
            duration=max(0.0, (end_time - session.start_time) - session.total_hold_duration),
            total_hold_duration=session.total_hold_duration,
            notes=session.notes,
            custom_data=dict(session.custom_data),
            account_number=session.account_number,
            sensitive_id=session.sensitive_id,
            contact_id=session.contact_id,
            contact_source=session.contact_source,
        )

    def with_id(self, new_id: RecordId) -> "CallRecord":
        return replace(self, id=new_id, custom_data=dict(self.custom_data))

    def to_dict(self, include_id: bool = True) -> dict:
        """Wire shape shared by the local blob and the remote store."""
        data = {
            "callerName": self.caller_name,
            "callerPhone": self.caller_phone,
            "callType": self.call_type.value,
            "startTime": _instant_to_wire(self.start_time),
            "endTime": _instant_to_wire(self.end_time),
            "duration": int(self.duration),
            "totalHoldDuration": int(self.total_hold_duration),
            "status": self.status.value,
            "notes": self.notes,
            "customData": dict(self.custom_data),
            "accountNumber": self.account_number,
            "ssn": self.sensitive_id,
        }
        if include_id:
            data = {"id": self.id.to_wire(), **data}
        if self.contact_id:
            data["contactId"] = self.contact_id
            data["contactSource"] = self.contact_source
        if self.crm_id:
            data["crmId"] = self.crm_id
        return data

    def to_public_dict(self) -> dict:
        """Wire shape with the sensitive identifier masked.

        Used for anything that leaves the persistence layer: published
        notifications, API responses and logs.
        """
        data = self.to_dict()
        data["ssn"] = mask_sensitive(self.sensitive_id)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CallRecord":
        raw_id = data.get("_id") or data.get("id")
        start = _instant_from_wire(data.get("startTime")) or 0.0
        end = _instant_from_wire(data.get("endTime"))
        return cls(
            id=parse_record_id(raw_id),
            caller_name=data.get("callerName", ""),
            caller_phone=data.get("callerPhone", ""),
            call_type=CallType(data.get("callType") or CallType.INBOUND.value),
            start_time=start,
            end_time=end if end is not None else start,
            duration=max(0.0, float(data.get("duration") or 0)),
            total_hold_duration=float(data.get("totalHoldDuration") or 0),
            status=CallStatus(data.get("status") or CallStatus.COMPLETED.value),
            notes=data.get("notes") or "",
            custom_data=dict(data.get("customData") or data.get("verification") or {}),
            account_number=data.get("accountNumber") or "",
            sensitive_id=data.get("ssn") or "",
            contact_id=data.get("contactId") or "",
            contact_source=data.get("contactSource") or "",
            crm_id=data.get("crmId") or "",
        )

    @property
    def verified_count(self) -> int:
        """Number of custom fields checked off as verified."""
        return sum(1 for v in self.custom_data.values() if v is True or v == "true")
