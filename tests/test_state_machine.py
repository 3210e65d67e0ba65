import asyncio

import pytest

from calldesk.crm import Contact
from calldesk.errors import (
    InvalidTransitionError,
    SessionActiveError,
    UnknownRecordError,
    ValidationError,
)
from calldesk.events import CALL_COMPLETED, CALL_STARTED
from calldesk.hooks import IntegrationHooks
from calldesk.ids import LocalId
from calldesk.state_machine import CallStateMachine
from calldesk.states import CallStatus, CallType
from tests.fakes import FakeCRM


# --- start ---

class TestStart:
    @pytest.mark.asyncio
    async def test_start_creates_active_session(self, machine, clock):
        session = machine.start("Jane Doe", "555-1234", "inbound")
        assert machine.state == CallStatus.ACTIVE
        assert session.caller_name == "Jane Doe"
        assert session.call_type == CallType.INBOUND
        assert session.start_time == clock.now
        assert isinstance(session.id, LocalId)
        assert session.hold_start_time is None
        assert session.total_hold_duration == 0

    @pytest.mark.asyncio
    async def test_start_trims_caller_fields(self, machine):
        session = machine.start("  Jane Doe ", " 555-1234 ", "outbound")
        assert session.caller_name == "Jane Doe"
        assert session.caller_phone == "555-1234"

    @pytest.mark.parametrize("name,phone", [("", "555-1234"), ("Jane", ""), ("   ", "555-1234")])
    def test_missing_required_fields_rejected(self, machine, name, phone):
        with pytest.raises(ValidationError):
            machine.start(name, phone, "inbound")
        assert machine.state == CallStatus.IDLE
        assert machine.timers is None

    def test_unknown_call_type_rejected(self, machine):
        with pytest.raises(ValidationError):
            machine.start("Jane", "555-1234", "carrier-pigeon")
        assert machine.session is None

    def test_start_without_event_loop_leaves_machine_idle(self, machine):
        with pytest.raises(RuntimeError):
            machine.start("Jane Doe", "555-1234", "inbound")
        assert machine.state == CallStatus.IDLE
        assert machine.session is None
        assert machine.timers is None

    @pytest.mark.asyncio
    async def test_second_start_rejected(self, machine):
        first = machine.start("Jane Doe", "555-1234", "inbound")
        with pytest.raises(SessionActiveError):
            machine.start("John Roe", "555-9999", "inbound")
        assert machine.session is first

    @pytest.mark.asyncio
    async def test_start_after_end_builds_fresh_session(self, machine):
        first = machine.start("Jane Doe", "555-1234", "inbound")
        machine.end()
        second = machine.start("John Roe", "555-9999", "callback")
        assert second is not first
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_start_runs_clock_and_autosave_timers(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        assert machine.timers.names() == {"clock", "autosave"}

    @pytest.mark.asyncio
    async def test_auto_start_engages_hold_tick(self, local_store, clock):
        machine = CallStateMachine(local_store, clock=clock, timer_auto_start=True)
        machine.start("Jane Doe", "555-1234", "inbound")
        assert "hold" in machine.timers.names()
        machine.end()


# --- hold / resume ---

class TestHold:
    @pytest.mark.asyncio
    async def test_hold_from_active(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        clock.advance(5)
        session = machine.hold()
        assert session.status == CallStatus.ON_HOLD
        assert session.hold_start_time == clock.now
        assert machine.timers.is_running("hold")

    def test_hold_when_idle_rejected(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.hold()

    @pytest.mark.asyncio
    async def test_hold_twice_rejected(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        machine.hold()
        with pytest.raises(InvalidTransitionError):
            machine.hold()

    @pytest.mark.asyncio
    async def test_resume_when_active_rejected(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        with pytest.raises(InvalidTransitionError):
            machine.resume()

    @pytest.mark.asyncio
    async def test_resume_accumulates_hold(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        machine.hold()
        clock.advance(12)
        session = machine.resume()
        assert session.status == CallStatus.ACTIVE
        assert session.hold_start_time is None
        assert session.total_hold_duration == 12_000
        assert not machine.timers.is_running("hold")

    @pytest.mark.asyncio
    async def test_hold_total_is_sum_of_segments(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        segments = [3, 0, 17.5, 42]
        for seconds in segments:
            clock.advance(2)
            machine.hold()
            clock.advance(seconds)
            machine.resume()
        assert machine.session.total_hold_duration == sum(segments) * 1000

    @pytest.mark.asyncio
    async def test_toggle_hold(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        assert machine.toggle_hold().status == CallStatus.ON_HOLD
        clock.advance(4)
        assert machine.toggle_hold().status == CallStatus.ACTIVE
        assert machine.session.total_hold_duration == 4000


# --- end ---

class TestEnd:
    @pytest.mark.asyncio
    async def test_jane_doe_scenario(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        clock.advance(10)
        machine.hold()
        clock.advance(30)
        machine.resume()
        clock.advance(30)
        record = machine.end()
        assert record.total_hold_duration == 30_000
        assert record.duration == 40_000
        assert record.end_time - record.start_time == 70_000
        assert record.status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_end_while_on_hold_counts_segment_once(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        clock.advance(10)
        machine.hold()
        clock.advance(20)
        record = machine.end()
        assert record.total_hold_duration == 20_000
        assert record.duration == 10_000

    @pytest.mark.asyncio
    async def test_zero_length_call(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        record = machine.end()
        assert record.duration == 0

    @pytest.mark.asyncio
    async def test_negative_duration_clamped(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound")
        clock.advance(-30)
        record = machine.end()
        assert record.duration == 0

    @pytest.mark.asyncio
    async def test_end_returns_to_idle_and_tears_down_timers(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        machine.hold()
        timers = machine.timers
        machine.end()
        assert machine.state == CallStatus.IDLE
        assert machine.session is None
        assert machine.timers is None
        assert timers.closed
        assert timers.names() == set()
        assert timers.cancel_all() == 0

    def test_end_when_idle_rejected(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.end()

    @pytest.mark.asyncio
    async def test_end_hands_record_to_history(self, machine, local_store, notifier):
        session = machine.start("Jane Doe", "555-1234", "inbound")
        record = machine.end()
        assert local_store.all() == [record]
        assert record.id == session.id
        messages = [n.message for n in notifier.recent]
        assert "Call logged locally" in messages
        assert "Call ended and saved" in messages

    @pytest.mark.asyncio
    async def test_end_prepends_notes_header_once(self, machine, clock):
        machine.start("Jane Doe", "555-1234", "inbound", account_number="ACC-9", sensitive_id="123456789")
        machine.update_fields(notes="Customer asked about billing")
        machine.hold()
        clock.advance(65)
        record = machine.end()
        assert record.notes.startswith("Hold Time: 1:05\nAccount #: ACC-9\nSSN: ***6789\n\n")
        assert record.notes.endswith("Customer asked about billing")
        assert "123456789" not in record.notes

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_revert_end(self, machine, local_store, notifier, monkeypatch):
        from calldesk.errors import StorageError

        def broken_save(items):
            raise StorageError("quota exceeded")

        monkeypatch.setattr(local_store.local, "save", broken_save)
        machine.start("Jane Doe", "555-1234", "inbound")
        record = machine.end()
        assert machine.state == CallStatus.IDLE
        assert local_store.all() == [record]
        assert any(n.level == "error" for n in notifier.recent)


# --- timers ---

class TestTimerCallbacks:
    @pytest.mark.asyncio
    async def test_clock_tick_reports_elapsed(self, local_store, clock):
        ticks = []
        machine = CallStateMachine(
            local_store, clock=clock, clock_tick_seconds=0.01, on_clock_tick=ticks.append
        )
        machine.start("Jane Doe", "555-1234", "inbound")
        assert ticks == [0]
        clock.advance(3)
        await asyncio.sleep(0.05)
        assert ticks[-1] == 3000
        machine.end()

    @pytest.mark.asyncio
    async def test_hold_tick_stops_after_end(self, local_store, clock):
        ticks = []
        machine = CallStateMachine(
            local_store, clock=clock, hold_tick_seconds=0.01, on_hold_tick=ticks.append
        )
        machine.start("Jane Doe", "555-1234", "inbound")
        machine.hold()
        clock.advance(2)
        await asyncio.sleep(0.03)
        machine.end()
        seen = len(ticks)
        await asyncio.sleep(0.05)
        assert len(ticks) == seen
        assert ticks[0] == 0
        assert ticks[-1] == 2000

    @pytest.mark.asyncio
    async def test_autosave_snapshots_form_while_active(self, local_store, clock):
        form = {"notes": "first draft", "custom_data": {"verified_dob": True}}
        machine = CallStateMachine(
            local_store, clock=clock, autosave_seconds=0.01, form_reader=lambda: form
        )
        session = machine.start("Jane Doe", "555-1234", "inbound")
        await asyncio.sleep(0.05)
        assert session.notes == "first draft"
        assert session.custom_data == {"verified_dob": True}

        machine.hold()
        form["notes"] = "typed during hold"
        await asyncio.sleep(0.05)
        assert session.notes == "first draft"
        machine.end()

    @pytest.mark.asyncio
    async def test_end_takes_final_form_snapshot(self, local_store, clock):
        form = {"notes": "last words", "account_number": "ACC-1"}
        machine = CallStateMachine(
            local_store, clock=clock, form_reader=lambda: form, notes_header=False
        )
        machine.start("Jane Doe", "555-1234", "inbound")
        record = machine.end()
        assert record.notes == "last words"
        assert record.account_number == "ACC-1"


# --- in-call edits ---

class TestUpdateFields:
    @pytest.mark.asyncio
    async def test_updates_form_fields(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        session = machine.update_fields(notes="hello", custom_data={"a": 1}, account_number="42")
        assert session.notes == "hello"
        assert session.custom_data == {"a": 1}
        assert session.account_number == "42"

    @pytest.mark.asyncio
    async def test_rejects_identity_fields(self, machine):
        machine.start("Jane Doe", "555-1234", "inbound")
        with pytest.raises(ValidationError):
            machine.update_fields(caller_name="Someone Else")

    def test_requires_live_call(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.update_fields(notes="x")


# --- edit and re-save ---

class TestEditPath:
    def test_edit_and_save_keeps_id(self, machine, local_store):
        original = machine.log_manual("Jane Doe", "555-1234", "inbound", notes="first")
        draft = machine.edit(original.id)
        assert draft.record is local_store.get(original.id)
        assert machine.timers is None

        saved = machine.save_edit(notes=original.notes + " and more", call_type="callback")
        assert saved.id == original.id
        assert saved.call_type == CallType.CALLBACK
        assert saved.notes.endswith("first and more")
        assert saved.notes.count("Hold Time:") == 1
        assert len(local_store) == 1
        assert machine.draft is None

    def test_edit_accepts_wire_id(self, machine):
        original = machine.log_manual("Jane Doe", "555-1234", "inbound")
        draft = machine.edit(str(original.id.value))
        assert draft.record.id == original.id

    def test_edit_unknown_record(self, machine):
        with pytest.raises(UnknownRecordError):
            machine.edit(LocalId(1))

    def test_start_blocked_while_editing(self, machine):
        original = machine.log_manual("Jane Doe", "555-1234", "inbound")
        machine.edit(original.id)
        with pytest.raises(SessionActiveError):
            machine.start("John Roe", "555-9999", "inbound")
        machine.cancel_edit()
        assert machine.draft is None

    @pytest.mark.asyncio
    async def test_edit_blocked_during_live_call(self, machine):
        original = machine.log_manual("Jane Doe", "555-1234", "inbound")
        machine.start("John Roe", "555-9999", "inbound")
        with pytest.raises(SessionActiveError):
            machine.edit(original.id)

    def test_save_edit_validates_name(self, machine):
        original = machine.log_manual("Jane Doe", "555-1234", "inbound")
        machine.edit(original.id)
        with pytest.raises(ValidationError):
            machine.save_edit(caller_name="  ")
        assert machine.draft is not None

    def test_remove_clears_matching_draft(self, machine, local_store):
        original = machine.log_manual("Jane Doe", "555-1234", "inbound")
        machine.edit(original.id)
        machine.remove(original.id)
        assert machine.draft is None
        assert len(local_store) == 0


class TestManualLog:
    def test_manual_log_is_completed_zero_duration(self, machine, local_store, clock):
        record = machine.log_manual("Jane Doe", "555-1234", "transfer", notes="walk-in")
        assert record.status == CallStatus.COMPLETED
        assert record.duration == 0
        assert record.start_time == record.end_time == clock.now
        assert record.notes.startswith("Hold Time: 00:00")
        assert local_store.all() == [record]

    def test_manual_log_validates(self, machine):
        with pytest.raises(ValidationError):
            machine.log_manual("", "555-1234")


# --- integration hooks ---

class TestHooks:
    @pytest.mark.asyncio
    async def test_publishes_started_and_completed(self, hooked_machine, bus):
        started, completed = [], []
        bus.subscribe(CALL_STARTED, started.append)
        bus.subscribe(CALL_COMPLETED, completed.append)

        hooked_machine.start("Jane Doe", "555-1234", "inbound", sensitive_id="123456789")
        record = hooked_machine.end()
        await hooked_machine.hooks.drain()

        assert started[0]["callerName"] == "Jane Doe"
        assert started[0]["ssn"] == "***6789"
        assert completed[0]["id"] == record.id.value
        assert completed[0]["ssn"] == "***6789"

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_block_end(self, hooked_machine, bus):
        release = asyncio.Event()

        async def slow(payload):
            await release.wait()

        bus.subscribe(CALL_COMPLETED, slow)
        hooked_machine.start("Jane Doe", "555-1234", "inbound")
        hooked_machine.end()
        assert hooked_machine.state == CallStatus.IDLE
        release.set()
        await hooked_machine.hooks.drain()

    @pytest.mark.asyncio
    async def test_contact_lookup_attaches_to_live_session(self, local_store, clock, bus):
        crm = FakeCRM(contacts=[Contact(id="c_1", name="Jane Doe", source="salesforce")])
        found = []
        machine = CallStateMachine(
            local_store, IntegrationHooks(bus, local_store, crm=crm), clock=clock, on_contact=found.append
        )
        session = machine.start("Jane Doe", "555-1234", "inbound")
        await machine.hooks.drain()
        assert crm.lookups == [("555-1234", "phone")]
        assert session.contact_id == "c_1"
        assert session.contact_source == "salesforce"
        assert found[0].name == "Jane Doe"
        record = machine.end()
        assert record.contact_id == "c_1"
        await machine.hooks.drain()

    @pytest.mark.asyncio
    async def test_late_contact_ignored_after_end(self, local_store, clock, bus):
        crm = FakeCRM(contacts=[Contact(id="c_1", source="hubspot")])
        crm.gate = asyncio.Event()
        machine = CallStateMachine(local_store, IntegrationHooks(bus, local_store, crm=crm), clock=clock)
        session = machine.start("Jane Doe", "555-1234", "inbound")
        record = machine.end()
        crm.gate.set()
        await machine.hooks.drain()
        assert session.contact_id == ""
        assert record.contact_id == ""

    @pytest.mark.asyncio
    async def test_crm_id_attached_after_end(self, hooked_machine, local_store):
        hooked_machine.start("Jane Doe", "555-1234", "inbound")
        record = hooked_machine.end()
        await hooked_machine.hooks.drain()
        assert local_store.get(record.id).crm_id == "crm_42"
        assert len(local_store) == 1

    @pytest.mark.asyncio
    async def test_disconnected_crm_is_skipped(self, local_store, clock, bus):
        crm = FakeCRM(connected=False)
        machine = CallStateMachine(local_store, IntegrationHooks(bus, local_store, crm=crm), clock=clock)
        machine.start("Jane Doe", "555-1234", "inbound")
        machine.end()
        await machine.hooks.drain()
        assert crm.lookups == []
        assert crm.logged == []
