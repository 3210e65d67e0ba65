import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from calldesk.errors import (
    InvalidTransitionError,
    SessionActiveError,
    UnknownRecordError,
    ValidationError,
)
from calldesk.history import HistoryStore
from calldesk.hooks import IntegrationHooks
from calldesk.ids import RecordId, new_local_id, parse_record_id
from calldesk.notes import build_notes_header, with_notes_header
from calldesk.notifications import Notifier
from calldesk.session import CallRecord, CallSession, FieldDescriptor
from calldesk.states import CallStatus, CallType
from calldesk.timers import AUTOSAVE_TICK, CLOCK_TICK, HOLD_TICK, TimerSet

logger = logging.getLogger(__name__)

CLOCK_TICK_SECONDS = 1.0
HOLD_TICK_SECONDS = 1.0
AUTOSAVE_SECONDS = 5.0

TRANSITIONS = {
    CallStatus.IDLE: {CallStatus.ACTIVE},
    CallStatus.ACTIVE: {CallStatus.ON_HOLD, CallStatus.COMPLETED},
    CallStatus.ON_HOLD: {CallStatus.ACTIVE, CallStatus.COMPLETED},
    CallStatus.COMPLETED: set(),
}

# Form fields the auto-save snapshot and in-call edits may touch.
FORM_FIELDS = ("notes", "custom_data", "account_number", "sensitive_id")
EDITABLE_FIELDS = ("caller_name", "caller_phone", "call_type") + FORM_FIELDS


def wall_clock_ms() -> float:
    return time.time() * 1000


def _require_text(value: str, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"Please enter {label}")
    return value


def _parse_call_type(value) -> CallType:
    if isinstance(value, CallType):
        return value
    try:
        return CallType(value)
    except ValueError:
        raise ValidationError(f"Unknown call type: {value!r}") from None


def _apply_form(target, snapshot: dict) -> None:
    for name in FORM_FIELDS:
        if name not in snapshot or snapshot[name] is None:
            continue
        value = snapshot[name]
        if name == "custom_data":
            value = dict(value)
        setattr(target, name, value)


@dataclass
class EditDraft:
    """A saved call reopened in the form. No timers run while editing."""

    record: CallRecord


class CallStateMachine:
    """Owns the one live call session and drives its lifecycle.

    IDLE -> ACTIVE -> ON_HOLD <-> ACTIVE -> COMPLETED

    A second start() while a call or an edit is outstanding is rejected here,
    not left to the UI. Each session owns one TimerSet that is torn down on
    every way out of ACTIVE/ON_HOLD.
    """

    def __init__(
        self,
        history: HistoryStore,
        hooks: Optional[IntegrationHooks] = None,
        *,
        clock: Callable[[], float] = wall_clock_ms,
        notifier: Optional[Notifier] = None,
        timer_auto_start: bool = False,
        clock_tick_seconds: float = CLOCK_TICK_SECONDS,
        hold_tick_seconds: float = HOLD_TICK_SECONDS,
        autosave_seconds: float = AUTOSAVE_SECONDS,
        form_reader: Optional[Callable[[], dict]] = None,
        field_descriptors: Iterable[FieldDescriptor] = (),
        notes_header: bool = True,
        on_clock_tick: Optional[Callable[[float], None]] = None,
        on_hold_tick: Optional[Callable[[float], None]] = None,
        on_contact=None,
    ):
        self.history = history
        self.hooks = hooks
        self.clock = clock
        self.notifier = notifier or history.notifier
        self.timer_auto_start = timer_auto_start
        self.clock_tick_seconds = clock_tick_seconds
        self.hold_tick_seconds = hold_tick_seconds
        self.autosave_seconds = autosave_seconds
        self.form_reader = form_reader
        self.field_descriptors = list(field_descriptors)
        self.notes_header = notes_header
        self.on_clock_tick = on_clock_tick
        self.on_hold_tick = on_hold_tick
        self.on_contact = on_contact

        self._session: Optional[CallSession] = None
        self._timers: Optional[TimerSet] = None
        self._draft: Optional[EditDraft] = None

    # --- introspection ---

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def draft(self) -> Optional[EditDraft]:
        return self._draft

    @property
    def timers(self) -> Optional[TimerSet]:
        return self._timers

    @property
    def state(self) -> CallStatus:
        if self._session is None:
            return CallStatus.IDLE
        return self._session.status

    def valid_transitions(self, state: CallStatus) -> set[CallStatus]:
        return TRANSITIONS.get(state, set())

    def is_current(self, session: CallSession) -> bool:
        return self._session is session

    def _check(self, target: CallStatus) -> CallSession:
        current = self.state
        if target not in self.valid_transitions(current):
            raise InvalidTransitionError(f"Cannot go from {current.value} to {target.value}")
        return self._session

    # --- lifecycle ---

    def start(
        self,
        caller_name: str,
        caller_phone: str,
        call_type=CallType.INBOUND,
        *,
        notes: str = "",
        custom_data: Optional[dict] = None,
        account_number: str = "",
        sensitive_id: str = "",
    ) -> CallSession:
        name = _require_text(caller_name, "caller name")
        phone = _require_text(caller_phone, "caller phone number")
        kind = _parse_call_type(call_type)
        if self._session is not None:
            raise SessionActiveError("A call is already in progress")
        if self._draft is not None:
            raise SessionActiveError("Finish editing the saved call first")

        session = CallSession(
            caller_name=name,
            caller_phone=phone,
            call_type=kind,
            id=new_local_id(),
            start_time=self.clock(),
            notes=notes,
            custom_data=dict(custom_data or {}),
            account_number=account_number,
            sensitive_id=sensitive_id,
        )
        timers = TimerSet(label=str(session.id))
        self._session = session
        self._timers = timers

        try:
            timers.start(CLOCK_TICK, self.clock_tick_seconds, lambda: self._clock_tick(session), fire_immediately=True)
            timers.start(AUTOSAVE_TICK, self.autosave_seconds, lambda: self._autosave(session))
            if self.timer_auto_start:
                timers.start(HOLD_TICK, self.hold_tick_seconds, lambda: self._hold_tick(session))
        except RuntimeError:
            # No running event loop: leave the machine idle.
            timers.cancel_all()
            self._session = None
            self._timers = None
            raise

        logger.info("Call %s started: %s (%s)", session.id, session.caller_phone, kind.value)
        if self.hooks is not None:
            self.hooks.call_started(session)
            self.hooks.lookup_contact(session, self.is_current, self.on_contact)
        self.notifier.success("Call started")
        return session

    def hold(self) -> CallSession:
        session = self._check(CallStatus.ON_HOLD)
        session.status = CallStatus.ON_HOLD
        session.hold_start_time = self.clock()
        self._timers.start(
            HOLD_TICK, self.hold_tick_seconds, lambda: self._hold_tick(session), fire_immediately=True
        )
        self.notifier.info("Call placed on hold")
        return session

    def resume(self) -> CallSession:
        session = self._session
        if session is None or session.status != CallStatus.ON_HOLD:
            raise InvalidTransitionError(f"Cannot resume from {self.state.value}")
        self._close_hold(session, self.clock())
        session.status = CallStatus.ACTIVE
        if not self.timer_auto_start:
            self._timers.cancel(HOLD_TICK)
        self.notifier.success("Call resumed")
        self._clock_tick(session)
        return session

    def toggle_hold(self) -> CallSession:
        if self.state == CallStatus.ON_HOLD:
            return self.resume()
        return self.hold()

    def end(self) -> CallRecord:
        session = self._check(CallStatus.COMPLETED)
        now = self.clock()
        self._snapshot_form(session)
        if session.status == CallStatus.ON_HOLD:
            self._close_hold(session, now)

        self._timers.cancel_all()
        self._timers = None
        self._session = None

        record = CallRecord.from_session(session, end_time=now)
        if self.notes_header:
            header = build_notes_header(
                record.total_hold_duration,
                record.account_number,
                record.sensitive_id,
                record.custom_data,
                self.field_descriptors,
            )
            record.notes = with_notes_header(record.notes, header)

        logger.info(
            "Call %s ended: duration=%dms hold=%dms",
            record.id, record.duration, record.total_hold_duration,
        )
        self.history.upsert(record, announce_success=True)
        if self.hooks is not None:
            self.hooks.call_completed(record)
        self.notifier.success("Call ended and saved")
        return record

    def update_fields(self, **fields) -> CallSession:
        """Apply in-call form edits (notes, custom data, account fields)."""
        session = self._session
        if session is None:
            raise InvalidTransitionError("No call in progress")
        unknown = set(fields) - set(FORM_FIELDS)
        if unknown:
            raise ValidationError(f"Not editable during a call: {', '.join(sorted(unknown))}")
        _apply_form(session, fields)
        return session

    # --- edit and re-save ---

    def edit(self, record_id) -> EditDraft:
        if self._session is not None:
            raise SessionActiveError("Cannot edit a saved call during a live call")
        if self._draft is not None:
            raise SessionActiveError("Another call is already being edited")
        record = self.history.get_current(parse_record_id(record_id))
        if record is None:
            raise UnknownRecordError(f"Unknown call {record_id}")
        self._draft = EditDraft(record=record)
        self.notifier.info("Call loaded for editing")
        return self._draft

    def save_edit(self, **changes) -> CallRecord:
        draft = self._draft
        if draft is None:
            raise InvalidTransitionError("No call is being edited")
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        merged = dict(changes)
        if "caller_name" in merged:
            merged["caller_name"] = _require_text(merged["caller_name"], "caller name")
        if "caller_phone" in merged:
            merged["caller_phone"] = _require_text(merged["caller_phone"], "caller phone number")
        if "call_type" in merged:
            merged["call_type"] = _parse_call_type(merged["call_type"])
        if "custom_data" in merged:
            merged["custom_data"] = dict(merged["custom_data"] or {})

        # Re-read the entry: it may have been reconciled or tagged with a CRM id
        # since the draft was opened.
        base = self.history.get_current(draft.record.id) or draft.record
        record = replace(base, **merged)
        if self.notes_header:
            header = build_notes_header(
                record.total_hold_duration,
                record.account_number,
                record.sensitive_id,
                record.custom_data,
                self.field_descriptors,
            )
            record.notes = with_notes_header(record.notes, header)

        self._draft = None
        self.history.upsert(record, announce_success=True)
        return record

    def cancel_edit(self) -> None:
        self._draft = None

    def log_manual(
        self,
        caller_name: str,
        caller_phone: str,
        call_type=CallType.INBOUND,
        *,
        notes: str = "",
        custom_data: Optional[dict] = None,
        account_number: str = "",
        sensitive_id: str = "",
    ) -> CallRecord:
        """Record a completed call that was never timed."""
        name = _require_text(caller_name, "caller name")
        phone = _require_text(caller_phone, "caller phone number")
        kind = _parse_call_type(call_type)
        if self._session is not None or self._draft is not None:
            raise SessionActiveError("Finish the current call first")
        now = self.clock()
        record = CallRecord(
            id=new_local_id(),
            caller_name=name,
            caller_phone=phone,
            call_type=kind,
            start_time=now,
            end_time=now,
            notes=notes,
            custom_data=dict(custom_data or {}),
            account_number=account_number,
            sensitive_id=sensitive_id,
        )
        if self.notes_header:
            header = build_notes_header(0, account_number, sensitive_id, record.custom_data, self.field_descriptors)
            record.notes = with_notes_header(record.notes, header)
        self.history.upsert(record, announce_success=True)
        return record

    def remove(self, record_id) -> None:
        rid: RecordId = parse_record_id(record_id)
        if self._draft is not None and self._draft.record.id == rid:
            self._draft = None
        self.history.remove(rid)

    # --- timer callbacks ---

    def _close_hold(self, session: CallSession, now: float) -> None:
        if session.hold_start_time is None:
            return
        session.total_hold_duration += max(0.0, now - session.hold_start_time)
        session.hold_start_time = None

    def _snapshot_form(self, session: CallSession) -> None:
        if self.form_reader is None:
            return
        try:
            snapshot = self.form_reader()
        except Exception:
            logger.exception("Reading the call form failed")
            return
        _apply_form(session, snapshot or {})

    def _clock_tick(self, session: CallSession) -> None:
        if not self.is_current(session) or self.on_clock_tick is None:
            return
        self.on_clock_tick(session.elapsed(self.clock()))

    def _hold_tick(self, session: CallSession) -> None:
        if not self.is_current(session) or self.on_hold_tick is None:
            return
        self.on_hold_tick(session.current_hold(self.clock()))

    def _autosave(self, session: CallSession) -> None:
        if not self.is_current(session) or session.status != CallStatus.ACTIVE:
            return
        self._snapshot_form(session)
