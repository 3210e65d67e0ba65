"""In-memory call history with local or remote persistence.

The backend is picked once, from the presence of an auth credential. Every
mutation is applied to the in-memory list first and only then persisted, so
callers never wait on the network. Remote operations in flight are tracked
in a reconciliation log keyed by record id.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from calldesk.errors import NetworkError, NotFoundError, StorageError
from calldesk.ids import LocalId, RecordId, RemoteId, parse_record_id
from calldesk.local_store import LocalCallHistory
from calldesk.notifications import Notifier
from calldesk.remote_store import RemoteCallStore
from calldesk.session import CallRecord
from calldesk.states import StoreMode

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


@dataclass
class PendingOperation:
    kind: str
    record_id: RecordId
    started_at: float = field(default_factory=time.time)
    attempts: int = 1
    # Set when the record changed again while its create was in flight.
    dirty: bool = False
    # Set when the record was removed while its create was in flight.
    cancelled: bool = False
    error: str = ""


class HistoryStore:
    def __init__(
        self,
        mode: StoreMode,
        *,
        local: Optional[LocalCallHistory] = None,
        remote: Optional[RemoteCallStore] = None,
        notifier: Optional[Notifier] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        if mode == StoreMode.LOCAL and local is None:
            raise ValueError("Local mode needs a local call history store")
        if mode == StoreMode.REMOTE and remote is None:
            raise ValueError("Remote mode needs a remote call store")
        self.mode = mode
        self.local = local
        self.remote = remote
        self.notifier = notifier or Notifier()
        self.on_change = on_change
        self._records: list[CallRecord] = []
        self._aliases: dict[LocalId, RemoteId] = {}
        self._pending: dict[RecordId, PendingOperation] = {}
        self._failures: list[PendingOperation] = []
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def for_credential(
        cls,
        token: str,
        *,
        local: LocalCallHistory,
        remote_factory: Callable[[str], RemoteCallStore],
        notifier: Optional[Notifier] = None,
    ) -> "HistoryStore":
        """Pick the process-wide backend from the auth credential."""
        if token:
            return cls(StoreMode.REMOTE, remote=remote_factory(token), notifier=notifier)
        return cls(StoreMode.LOCAL, local=local, notifier=notifier)

    # --- reads ---

    def all(self) -> list[CallRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def resolve(self, record_id: RecordId) -> RecordId:
        """Follow a reconciled local id to the remote id that replaced it."""
        if isinstance(record_id, LocalId):
            return self._aliases.get(record_id, record_id)
        return record_id

    def get(self, record_id: RecordId) -> Optional[CallRecord]:
        index = self._index_of(record_id)
        return self._records[index] if index is not None else None

    def get_current(self, record_id: RecordId) -> Optional[CallRecord]:
        """Like get(), but follows reconciliation aliases."""
        return self.get(self.resolve(record_id))

    @property
    def pending(self) -> dict[RecordId, PendingOperation]:
        return dict(self._pending)

    @property
    def failures(self) -> list[PendingOperation]:
        return list(self._failures)

    def _index_of(self, record_id: RecordId) -> Optional[int]:
        for i, record in enumerate(self._records):
            if record.id == record_id:
                return i
        return None

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception:
            logger.exception("History change listener failed")

    # --- loading ---

    async def load_initial(self) -> list[CallRecord]:
        if self.mode == StoreMode.LOCAL:
            raw = self.local.load()
        else:
            try:
                raw = await self.remote.list_calls()
            except NetworkError as e:
                logger.error("Failed to load cloud call history: %s", e)
                self.notifier.error("Failed to load cloud call history")
                return self.all()

        records = []
        for item in raw:
            if not isinstance(item, dict):
                logger.warning("Skipping unreadable call record: %r", item)
                continue
            try:
                records.append(CallRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable call record %r: %s", item.get("id", item.get("_id")), e)
        self._records = records
        logger.info("Loaded %d calls (%s mode)", len(records), self.mode.value)
        self._changed()
        return self.all()

    # --- mutations ---

    def upsert(self, record: CallRecord, announce_success: bool = False) -> Optional[asyncio.Task]:
        """Apply a record to the history now and persist it in the background.

        Returns the background task in remote mode, None otherwise.
        """
        resolved = self.resolve(record.id)
        if resolved != record.id:
            logger.info("Upsert for reconciled id %s redirected to %s", record.id, resolved)
            record = record.with_id(resolved)

        index = self._index_of(record.id)
        is_new = index is None
        if is_new:
            self._records.insert(0, record)
        else:
            self._records[index] = record
        self._changed()

        if self.mode == StoreMode.LOCAL:
            if self._persist_local() and announce_success:
                self.notifier.success("Call logged locally" if is_new else "Call log updated")
            return None

        if isinstance(record.id, RemoteId):
            return self._spawn(self._update(record.id, announce_success))

        pending = self._pending.get(record.id)
        if pending is not None and pending.kind == CREATE:
            # The follow-up update carries whatever is in the list then.
            pending.dirty = True
            return None
        op = self._begin(CREATE, record.id)
        return self._spawn(self._create(op, announce_success))

    def remove(self, record_id: RecordId) -> Optional[asyncio.Task]:
        """Drop a record from the history. Removing an absent id is a no-op."""
        index = self._index_of(record_id)
        if index is None:
            logger.debug("Remove of unknown call %s ignored", record_id)
            return None
        del self._records[index]
        self._changed()

        if self.mode == StoreMode.LOCAL:
            if self._persist_local():
                self.notifier.success("Call deleted")
            return None

        if isinstance(record_id, RemoteId):
            return self._spawn(self._delete(record_id))

        pending = self._pending.get(record_id)
        if pending is not None and pending.kind == CREATE:
            pending.cancelled = True
        self.notifier.success("Call deleted")
        return None

    async def flush(self) -> None:
        """Wait until every in-flight remote operation has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- persistence ---

    def _persist_local(self) -> bool:
        try:
            self.local.save([r.to_dict() for r in self._records])
        except StorageError as e:
            logger.error("Failed to persist call history: %s", e)
            self.notifier.error("Could not save call history on this device")
            return False
        return True

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _begin(self, kind: str, record_id: RecordId) -> PendingOperation:
        previous = self._pending.get(record_id)
        op = PendingOperation(kind=kind, record_id=record_id)
        if previous is not None and previous.kind == kind:
            op.attempts = previous.attempts + 1
        self._pending[record_id] = op
        return op

    def _settle(self, op: PendingOperation, error: Optional[Exception] = None) -> None:
        if self._pending.get(op.record_id) is op:
            del self._pending[op.record_id]
        if error is not None:
            op.error = str(error)
            self._failures.append(op)

    async def _create(self, op: PendingOperation, announce_success: bool) -> Optional[RemoteId]:
        local_id = op.record_id
        record = self.get(local_id)
        if record is None:
            self._settle(op)
            return None
        try:
            saved = await self.remote.create_call(record.to_dict(include_id=False))
            if not isinstance(saved, dict):
                raise NetworkError(f"Create call: expected a JSON object, got {type(saved).__name__}")
            remote_id = parse_record_id(saved.get("_id") or saved.get("id"))
            if not isinstance(remote_id, RemoteId):
                raise NetworkError(f"Create call: server returned non-remote id {remote_id}")
        except (NetworkError, ValueError) as e:
            logger.error("Failed to save call %s to cloud: %s", local_id, e)
            self._settle(op, e)
            self.notifier.error("Failed to save to cloud")
            return None

        self._settle(op)
        self._aliases[local_id] = remote_id

        if op.cancelled or self._index_of(local_id) is None:
            logger.info("Call %s was deleted while saving, removing cloud copy %s", local_id, remote_id)
            await self._delete(remote_id, announce=False)
            return remote_id

        index = self._index_of(local_id)
        self._records[index] = self._records[index].with_id(remote_id)
        logger.info("Call %s reconciled to %s", local_id, remote_id)
        self._changed()
        if announce_success:
            self.notifier.success("Call logged to cloud")
        if op.dirty:
            await self._update(remote_id, False)
        return remote_id

    async def _update(self, remote_id: RemoteId, announce_success: bool) -> None:
        op = self._begin(UPDATE, remote_id)
        record = self.get(remote_id)
        if record is None:
            self._settle(op)
            return
        try:
            await self.remote.update_call(remote_id, record.to_dict())
        except NotFoundError as e:
            logger.error("Call %s no longer exists in the cloud: %s", remote_id, e)
            self._settle(op, e)
            self.notifier.error("Call log no longer exists in the cloud")
            return
        except NetworkError as e:
            logger.error("Failed to update call %s: %s", remote_id, e)
            self._settle(op, e)
            self.notifier.error("Failed to update call log in the cloud")
            return
        self._settle(op)
        if announce_success:
            self.notifier.success("Call log updated")

    async def _delete(self, remote_id: RemoteId, announce: bool = True) -> None:
        op = self._begin(DELETE, remote_id)
        try:
            await self.remote.delete_call(remote_id)
        except NotFoundError:
            # Already gone server-side.
            logger.info("Call %s was already deleted in the cloud", remote_id)
            self._settle(op)
            return
        except NetworkError as e:
            logger.error("Failed to delete call %s: %s", remote_id, e)
            self._settle(op, e)
            self.notifier.error("Failed to delete from cloud")
            return
        self._settle(op)
        if announce:
            self.notifier.success("Call deleted from cloud")
