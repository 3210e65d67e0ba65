import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional

from calldesk.crm import Contact, CRMConnector
from calldesk.events import CALL_COMPLETED, CALL_STARTED, NotificationBus
from calldesk.history import HistoryStore
from calldesk.notifications import Notifier
from calldesk.session import CallRecord, CallSession, mask_sensitive

logger = logging.getLogger(__name__)


def session_payload(session: CallSession) -> dict:
    return {
        "id": session.id.to_wire(),
        "callerName": session.caller_name,
        "callerPhone": session.caller_phone,
        "callType": session.call_type.value,
        "startTime": session.start_time,
        "status": session.status.value,
        "accountNumber": session.account_number,
        "ssn": mask_sensitive(session.sensitive_id),
    }


class IntegrationHooks:
    """Side effects around the call lifecycle.

    Publishes call:started / call:completed on the bus and talks to the CRM.
    Nothing here is awaited by the state machine: every call schedules its
    work and returns immediately.
    """

    def __init__(
        self,
        bus: NotificationBus,
        history: HistoryStore,
        crm: Optional[CRMConnector] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.bus = bus
        self.history = history
        self.crm = crm
        self.notifier = notifier or history.notifier
        self._tasks: set[asyncio.Task] = set()

    @property
    def crm_connected(self) -> bool:
        return self.crm is not None and self.crm.is_connected

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.bus.drain()

    # --- lifecycle ---

    def call_started(self, session: CallSession) -> None:
        self.bus.publish(CALL_STARTED, session_payload(session))

    def call_completed(self, record: CallRecord) -> None:
        self.bus.publish(CALL_COMPLETED, record.to_public_dict())
        if self.crm_connected:
            self._spawn(self.log_to_crm(record))

    # --- CRM ---

    def lookup_contact(
        self,
        session: CallSession,
        is_current: Callable[[CallSession], bool],
        on_contact: Optional[Callable[[Contact], None]] = None,
    ) -> Optional[asyncio.Task]:
        if not self.crm_connected or not session.caller_phone:
            return None
        return self._spawn(self._lookup_contact(session, is_current, on_contact))

    async def _lookup_contact(self, session, is_current, on_contact) -> Optional[Contact]:
        try:
            contacts = await self.crm.lookup_contact(session.caller_phone, "phone")
        except Exception as e:
            logger.info("Contact lookup failed: %s", e)
            return None
        if not contacts:
            return None
        contact = contacts[0]
        if not is_current(session):
            logger.debug("Contact %s arrived after call %s ended, dropping it", contact.id, session.id)
            return contact
        session.contact_id = contact.id
        session.contact_source = contact.source
        if on_contact is not None:
            on_contact(contact)
        return contact

    async def log_to_crm(self, record: CallRecord) -> Optional[str]:
        """Log the call to the CRM and attach the returned CRM id.

        The history entry may have been reconciled to a remote id while the
        CRM call was in flight, so the entry is looked up again by alias.
        """
        try:
            result = await self.crm.log_call(record)
        except Exception as e:
            logger.error("Failed to log call to CRM: %s", e)
            self.notifier.error("Failed to log call to CRM")
            return None
        if not result.get("success"):
            logger.warning("CRM did not accept call %s: %s", record.id, result.get("error", result.get("message", "")))
            return None

        crm_id = str(result.get("id") or "")
        current = self.history.get_current(record.id)
        if current is None:
            logger.info("Call %s was removed before the CRM id arrived", record.id)
            return crm_id or None
        if crm_id:
            self.history.upsert(replace(current, crm_id=crm_id, custom_data=dict(current.custom_data)))
        self.notifier.success("Call logged to CRM successfully")
        return crm_id or None
