"""Sync engine: routes every read and write to the remote store or to the local mirror.

State machine::

    Offline ──becameOnline──▶ OnlineSyncing ──drain + refresh ok──▶ OnlineIdle
       ▲                            │                                   │
       └──── becameOffline / any connectivity failure ◀─────────────────┘

Writes made while offline patch the local store optimistically and are appended to the mutation
queue. Once connectivity returns the reconciler replays the queue and the engine refreshes every
collection from the remote store.

Every operation runs on the single asyncio loop of the application; there is no locking.
"""
import asyncio
import dataclasses
import enum
import logging
from typing import Any, Dict, List, Optional, Sequence, assert_never

from PySide6 import QtCore

from .connectivity import ConnectivityMonitor, ConnectivityState
from .entity import EntityKind, DEFAULT_ORDER, ID_FIELD, is_temporary_id, new_temporary_id
from .localstore import LocalPersistence, LocalStore, CacheState, merge_by_id
from .query import Filter, Order, apply as apply_query
from .queue import MutationQueue, Entry, AddEntry, DeleteEntry, UpdateEntry, BulkRenameEntry
from .reconciler import Reconciler, DrainPolicy, DrainResult
from .remote import RemoteStore, PostgrestRemoteStore
from ..status import status


class EngineState(enum.StrEnum):
    Offline = 'offline'
    OnlineIdle = 'online_idle'
    OnlineSyncing = 'online_syncing'


def default_order(kind: str) -> List[Order]:
    """Return the natural ordering of a collection."""
    try:
        field, descending = DEFAULT_ORDER[EntityKind(kind)]
    except ValueError:
        return []
    return [Order(field, descending)]


def _prepends(kind: str) -> bool:
    # Newest first for collections ordered descending
    order = default_order(kind)
    return bool(order and order[0].descending)


def apply_entry(rows: List[Dict[str, Any]], entry: Entry) -> List[Dict[str, Any]]:
    """Return ``rows`` with the entry applied, the way the remote store would apply it."""
    if isinstance(entry, AddEntry):
        row = {**entry.payload, ID_FIELD: entry.temp_id}
        return [row] + rows if _prepends(entry.kind) else rows + [row]
    elif isinstance(entry, DeleteEntry):
        return [r for r in rows if r.get(ID_FIELD) != entry.id]
    elif isinstance(entry, UpdateEntry):
        return [{**r, **entry.changes} if r.get(ID_FIELD) == entry.id else r for r in rows]
    elif isinstance(entry, BulkRenameEntry):
        return [
            {**r, entry.field: entry.new_value} if r.get(entry.field) == entry.old_value else r
            for r in rows
        ]
    else:
        assert_never(entry)


def _targets_temporary(entry: Entry) -> bool:
    if isinstance(entry, (DeleteEntry, UpdateEntry)):
        return is_temporary_id(entry.id)
    return False


class SyncEngine(QtCore.QObject):
    """Orchestrates the local store, the mutation queue and the remote store.

    Args:
        store: Local mirror.
        queue: Durable queue of offline writes.
        remote: Authoritative store.
        monitor: Connectivity monitor; the engine re-reads its state before every operation.
        reconciler: Optional reconciler; one with the default drain policy is created otherwise.
        collections: Collections reloaded by :meth:`refresh`. Defaults to every entity kind.
    """
    stateChanged = QtCore.Signal(str)
    syncingChanged = QtCore.Signal(bool)
    errorChanged = QtCore.Signal(str)
    refreshed = QtCore.Signal()

    def __init__(self, store: LocalStore, queue: MutationQueue, remote: RemoteStore,
                 monitor: ConnectivityMonitor, reconciler: Optional[Reconciler] = None,
                 collections: Optional[Sequence[str]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.store = store
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.reconciler = reconciler if reconciler is not None else Reconciler(store, queue, remote)
        self.collections: List[str] = list(collections) if collections is not None else [
            k.value for k in EntityKind]

        self._state = EngineState.Offline
        self._last_error: Optional[str] = None
        self._subscribed = False
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def connectivity_state(self) -> ConnectivityState:
        return self.monitor.state

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state == EngineState.OnlineSyncing

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def sync_task(self) -> Optional[asyncio.Task]:
        """The synchronisation scheduled by the last online transition, if any."""
        return self._sync_task

    def _set_state(self, state: EngineState) -> None:
        if state == self._state:
            return
        was_syncing = self.is_syncing
        logging.debug(f'Sync engine state: {self._state} -> {state}')
        self._state = state
        self.stateChanged.emit(state.value)
        if was_syncing != self.is_syncing:
            self.syncingChanged.emit(self.is_syncing)

    def _set_error(self, message: Optional[str]) -> None:
        if message == self._last_error:
            return
        self._last_error = message
        self.errorChanged.emit(message or '')

    def _go_offline(self, reason: Exception) -> None:
        logging.warning(f'Remote store unreachable, switching to offline mode: {reason}')
        self._set_error(str(reason))
        self.monitor.set_state(ConnectivityState.Offline)
        self._set_state(EngineState.Offline)

    def _has_backlog(self) -> bool:
        return self.is_syncing or len(self.queue) > 0

    async def init(self) -> None:
        """Derive the initial state from the monitor, subscribe to transitions and load data."""
        if not self._subscribed:
            self.monitor.subscribe(self._on_became_online, self._on_became_offline)
            self._subscribed = True

        if self.monitor.is_online():
            await self.synchronize()
        else:
            self._set_state(EngineState.Offline)
            await self.refresh()

    def dispose(self) -> None:
        """Unsubscribe from the monitor and cancel any scheduled synchronisation."""
        if self._subscribed:
            self.monitor.unsubscribe(self._on_became_online, self._on_became_offline)
            self._subscribed = False
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        self._sync_task = None

    @QtCore.Slot()
    def _on_became_online(self) -> None:
        self._set_state(EngineState.OnlineSyncing)
        self._schedule_sync()

    def _schedule_sync(self) -> None:
        """Run :meth:`synchronize` on the running loop unless one is already scheduled."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logging.warning('No running event loop to replay on; call synchronize() to replay.')
            return
        if self._sync_task is not None and not self._sync_task.done():
            logging.debug('Synchronisation already scheduled.')
            return
        self._sync_task = loop.create_task(self.synchronize())
        self._sync_task.add_done_callback(self._on_sync_done)

    def _on_sync_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        e = task.exception()
        if e is not None:
            # Status exceptions were logged when raised
            logging.debug(f'Scheduled synchronisation failed: {e!r}')
            self._set_error(str(e))
            return
        if task is self._sync_task and task.result().ok and len(self.queue) > 0 and self.monitor.is_online():
            # Written while the refresh was awaiting
            self._schedule_sync()

    @QtCore.Slot()
    def _on_became_offline(self) -> None:
        self._set_state(EngineState.Offline)

    async def synchronize(self) -> DrainResult:
        """Replay the mutation queue, then refresh every collection from the remote store.

        Returns:
            DrainResult: The outcome of the last drain pass.
        """
        if not self.monitor.is_online():
            self._set_state(EngineState.Offline)
            return DrainResult(total=len(self.queue), skipped=True)

        if self.reconciler.in_flight:
            logging.debug('Replay already in progress, skipping.')
            return DrainResult(total=len(self.queue), skipped=True)

        from ..actions import signals

        self._set_state(EngineState.OnlineSyncing)
        signals.syncStarted.emit()

        result = DrainResult()
        try:
            while True:
                result = await self.reconciler.drain()
                if result.skipped:
                    return result
                if result.error is not None:
                    break
                # Writes issued while the drain was awaiting are picked up by the next pass
                if result.total == 0 or len(self.queue) == 0:
                    break
        except status.LocalPersistenceException as e:
            self._set_error(str(e))
            self._set_state(EngineState.OnlineIdle)
            signals.syncFinished.emit(False)
            raise

        if isinstance(result.error, status.ConnectivityException):
            self._go_offline(result.error)
            signals.syncFinished.emit(False)
            return result

        if isinstance(result.error, status.RemoteRejectedException):
            self._set_error(str(result.error))
        else:
            self._set_error(None)

        try:
            await self.refresh()
        except Exception:
            signals.syncFinished.emit(False)
            raise
        finally:
            if self.monitor.is_online():
                self._set_state(EngineState.OnlineIdle)
        signals.syncFinished.emit(result.ok and self.monitor.is_online())
        return result

    async def refresh(self) -> None:
        """Reload every configured collection.

        Online, each collection is replaced wholesale by the remote rows; writes still waiting in
        the queue are re-applied on top so optimistic changes stay visible. Offline, the local
        mirror is already the source of truth.

        A collection the remote store rejects keeps its local rows while the others are still
        reloaded; the first rejection is raised once every collection was tried.

        Raises:
            status.RemoteRejectedException: If the remote refused to return a collection.
        """
        rejected: Optional[status.RemoteRejectedException] = None
        if self.monitor.is_online():
            fetched: Dict[str, List[Dict[str, Any]]] = {}
            for collection in self.collections:
                try:
                    fetched[collection] = await self.remote.select(collection, order=default_order(collection))
                except status.ConnectivityException as e:
                    self._go_offline(e)
                    break
                except status.RemoteRejectedException as e:
                    logging.warning(f'Could not refresh "{collection}": {e}')
                    rejected = rejected or e

            # Collections fetched before a failure are still authoritative
            pending = self.queue.drain()
            for collection, rows in fetched.items():
                self.store.put(collection, self._overlay(collection, rows, pending))

            if self.monitor.is_online() and rejected is None:
                persistence = self.store.persistence
                persistence.set_state(CacheState.Valid if any(fetched.values()) else CacheState.Empty)
                persistence.stamp(self.remote.url)
            logging.info(f'Refreshed {len(fetched)} of {len(self.collections)} collection(s) from the remote store.')

        self.refreshed.emit()
        if rejected is not None:
            self._set_error(str(rejected))
            raise rejected

    def _overlay(self, collection: str, rows: List[Dict[str, Any]], pending: List[Entry]) -> List[Dict[str, Any]]:
        """Re-apply queued writes on top of freshly fetched remote rows."""
        id_map = self.reconciler.id_map()
        for entry in pending:
            if entry.kind != collection:
                continue
            if isinstance(entry, AddEntry) and entry.temp_id in id_map:
                # Already inserted, the remote rows carry it
                continue
            if isinstance(entry, (DeleteEntry, UpdateEntry)):
                entry = dataclasses.replace(entry, id=id_map.get(entry.id, entry.id))
            rows = apply_entry(rows, entry)
        return rows

    async def read(self, collection: str, filters: Sequence[Filter] = (),
                   order: Sequence[Order] = ()) -> List[Dict[str, Any]]:
        """Read a collection.

        Online, the remote rows are returned and mirrored locally: an unfiltered read replaces the
        collection, a filtered read upserts the returned rows. Offline, or while queued writes are
        waiting to be replayed, the local snapshot is filtered and ordered client side.

        Raises:
            status.RemoteRejectedException: If the remote refused the query.
        """
        self._set_error(None)
        if self.monitor.is_online() and not self._has_backlog():
            try:
                rows = await self.remote.select(collection, filters, order)
            except status.ConnectivityException as e:
                self._go_offline(e)
            except status.RemoteRejectedException as e:
                self._set_error(str(e))
                raise
            else:
                if filters:
                    self.store.put(collection, merge_by_id(self.store.get(collection), rows))
                else:
                    self.store.put(collection, rows)
                return rows

        return apply_query(self.store.get(collection), filters, order)

    async def write(self, entry: Entry) -> Optional[Dict[str, Any]]:
        """Apply a mutation.

        Online, the remote call is awaited and the local store is patched with its result. A
        remote rejection raises and leaves the local store untouched. Offline, the local store is
        patched optimistically and the entry is queued; only local persistence errors can fail.
        An entry queued while online, behind a backlog or targeting a temporary id, schedules a
        replay right away.

        Returns:
            Optional[Dict[str, Any]]: The added or updated entity, None for deletes and renames.
        """
        self._set_error(None)
        if self.monitor.is_online() and not self._has_backlog() and not _targets_temporary(entry):
            try:
                return await self._write_remote(entry)
            except status.ConnectivityException as e:
                self._go_offline(e)
            except status.RemoteRejectedException as e:
                self._set_error(str(e))
                raise

        try:
            row = self._write_local(entry)
        except status.LocalPersistenceException as e:
            self._set_error(str(e))
            raise

        if self.monitor.is_online():
            # Queued behind a backlog: replay it now rather than at the next reconnect
            self._schedule_sync()
        return row

    async def _write_remote(self, entry: Entry) -> Optional[Dict[str, Any]]:
        kind = entry.kind
        if isinstance(entry, AddEntry):
            payload = {k: v for k, v in entry.payload.items() if k != ID_FIELD}
            row = await self.remote.insert(kind, payload)
            self.store.put(kind, merge_by_id(self.store.get(kind), [row], prepend=_prepends(kind)))
            return row
        elif isinstance(entry, DeleteEntry):
            await self.remote.delete(kind, entry.id)
            self.store.put(kind, apply_entry(self.store.get(kind), entry))
            return None
        elif isinstance(entry, UpdateEntry):
            updated = await self.remote.update(kind, entry.id, entry.changes)
            if updated:
                self.store.put(kind, merge_by_id(self.store.get(kind), updated))
                return updated[0]
            rows = apply_entry(self.store.get(kind), entry)
            self.store.put(kind, rows)
            return next((r for r in rows if r.get(ID_FIELD) == entry.id), None)
        elif isinstance(entry, BulkRenameEntry):
            await self.remote.update(kind, [Filter(entry.field, entry.old_value)], {entry.field: entry.new_value})
            self.store.put(kind, apply_entry(self.store.get(kind), entry))
            return None
        else:
            assert_never(entry)

    def _write_local(self, entry: Entry) -> Optional[Dict[str, Any]]:
        if isinstance(entry, AddEntry) and not entry.temp_id:
            entry = dataclasses.replace(entry, temp_id=new_temporary_id(entry.kind))

        # Queue first: a queued entry without its optimistic patch is still replayed
        self.queue.enqueue(entry)
        rows = apply_entry(self.store.get(entry.kind), entry)
        self.store.put(entry.kind, rows)
        logging.debug(f'Applied "{entry.op}" on "{entry.kind}" locally; {len(self.queue)} queued.')

        if isinstance(entry, AddEntry):
            return next(r for r in rows if r.get(ID_FIELD) == entry.temp_id)
        if isinstance(entry, UpdateEntry):
            return next((r for r in rows if r.get(ID_FIELD) == entry.id), None)
        return None

    def snapshot(self, collection: str) -> List[Dict[str, Any]]:
        """Return a copy of the local mirror of a collection."""
        return self.store.get(collection)

    def discard_pending(self, index: int) -> Optional[Entry]:
        """Drop an irrecoverable queued write, e.g. one the remote store keeps rejecting.

        When online, the writes queued behind it are replayed right away.
        """
        entry = self.queue.discard(index)
        if self.monitor.is_online() and len(self.queue) > 0:
            self._schedule_sync()
        return entry


def create_engine(settings=None, remote: Optional[RemoteStore] = None,
                  parent: Optional[QtCore.QObject] = None) -> SyncEngine:
    """Build a sync engine from the application settings.

    Args:
        settings: A :class:`SettingsAPI`. Defaults to the application settings.
        remote: Optional remote store; a :class:`PostgrestRemoteStore` is built from the
            ``remote`` section otherwise.

    Raises:
        status.RemoteNotConfiguredException: If no remote is given and no url is configured.
    """
    if settings is None:
        from ..settings import lib
        settings = lib.settings

    remote_config = settings.get_section('remote')
    sync_config = settings.get_section('sync')

    if remote is None:
        remote = PostgrestRemoteStore(
            remote_config['url'], remote_config['api_key'], timeout=remote_config['timeout']
        )

    persistence = LocalPersistence(settings.db_path)
    store = LocalStore(persistence)
    queue = MutationQueue(persistence)
    monitor = ConnectivityMonitor(
        ConnectivityState.Offline,
        debounce_ms=sync_config['debounce_ms'],
        probe_url=sync_config['probe_url'] or remote_config['url'],
        probe_timeout=remote_config['timeout'],
    )
    reconciler = Reconciler(store, queue, remote, policy=DrainPolicy(sync_config['drain_policy']))

    engine = SyncEngine(
        store, queue, remote, monitor,
        reconciler=reconciler,
        collections=settings.get_section('collections'),
        parent=parent,
    )
    monitor.setParent(engine)
    store.setParent(engine)
    queue.setParent(engine)
    return engine
