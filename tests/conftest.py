import pytest

from calldesk.events import NotificationBus
from calldesk.history import HistoryStore
from calldesk.hooks import IntegrationHooks
from calldesk.local_store import LocalCallHistory, LocalKeyValueStore
from calldesk.notifications import Notifier
from calldesk.state_machine import CallStateMachine
from calldesk.states import StoreMode
from tests.fakes import FakeClock, FakeCRM, FakeRemote


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def local_history(tmp_path):
    return LocalCallHistory(LocalKeyValueStore(tmp_path / "storage.json"))


@pytest.fixture
def local_store(local_history, notifier):
    return HistoryStore(StoreMode.LOCAL, local=local_history, notifier=notifier)


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def remote_store(fake_remote, notifier):
    return HistoryStore(StoreMode.REMOTE, remote=fake_remote, notifier=notifier)


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def machine(local_store, clock):
    m = CallStateMachine(local_store, clock=clock)
    yield m
    if m.timers is not None:
        m.timers.cancel_all()


@pytest.fixture
def hooked_machine(local_store, clock, bus):
    crm = FakeCRM()
    hooks = IntegrationHooks(bus, local_store, crm=crm)
    return CallStateMachine(local_store, hooks, clock=clock)
