import logging
from typing import Callable, Iterable, Optional

from calldesk.config import Settings
from calldesk.crm import HttpCRMConnector
from calldesk.events import NotificationBus
from calldesk.history import HistoryStore
from calldesk.hooks import IntegrationHooks
from calldesk.local_store import LocalCallHistory, LocalKeyValueStore
from calldesk.notifications import Notifier
from calldesk.remote_store import RemoteCallStore
from calldesk.session import FieldDescriptor
from calldesk.state_machine import CallStateMachine

logger = logging.getLogger(__name__)


class CallDesk:
    """Everything one agent process needs, wired together."""

    def __init__(
        self,
        machine: CallStateMachine,
        history: HistoryStore,
        hooks: IntegrationHooks,
        bus: NotificationBus,
        notifier: Notifier,
        crm: Optional[HttpCRMConnector] = None,
    ):
        self.machine = machine
        self.history = history
        self.hooks = hooks
        self.bus = bus
        self.notifier = notifier
        self.crm = crm

    async def open(self) -> None:
        await self.history.load_initial()

    async def close(self) -> None:
        """Settle in-flight work, then release HTTP clients."""
        if self.machine.timers is not None:
            self.machine.timers.cancel_all()
        await self.hooks.drain()
        await self.history.flush()
        if self.history.remote is not None:
            await self.history.remote.close()
        if self.crm is not None:
            await self.crm.close()


def build_desk(
    settings: Settings,
    *,
    field_descriptors: Iterable[FieldDescriptor] = (),
    form_reader: Optional[Callable[[], dict]] = None,
) -> CallDesk:
    notifier = Notifier()
    bus = NotificationBus()
    history = HistoryStore.for_credential(
        settings.auth_token,
        local=LocalCallHistory(LocalKeyValueStore(settings.storage_path)),
        remote_factory=lambda token: RemoteCallStore(
            settings.api_url, token, timeout=settings.request_timeout
        ),
        notifier=notifier,
    )
    crm = None
    if settings.crm_base_url:
        crm = HttpCRMConnector(
            settings.crm_base_url,
            api_key=settings.crm_api_key,
            timeout=settings.request_timeout,
        )
    hooks = IntegrationHooks(bus, history, crm=crm, notifier=notifier)
    machine = CallStateMachine(
        history,
        hooks,
        notifier=notifier,
        timer_auto_start=settings.timer_auto_start,
        autosave_seconds=settings.autosave_seconds,
        form_reader=form_reader,
        field_descriptors=field_descriptors,
    )
    logger.info("Call desk ready in %s mode", history.mode.value)
    return CallDesk(machine, history, hooks, bus, notifier, crm=crm)
