"""Replays the mutation queue against the remote store.

Entries are applied strictly in insertion order. Each applied ``Add`` records the mapping from its
temporary identifier to the server-assigned one under the reserved ``sync-id-map`` key, so later
entries that still reference the temporary identifier are resolved before being sent, and an ``Add``
that is replayed twice (after an interrupted drain) is never inserted twice.

Two removal policies are supported:

    - ``all_or_nothing``: applied entries stay queued until every entry succeeded. A failure leaves
      the whole queue in place and the next drain starts again from the first entry.
    - ``per_entry``: each entry is removed as soon as its remote call succeeded.
"""
import dataclasses
import enum
import logging
from typing import Dict, Optional, assert_never

from .entity import is_temporary_id, ID_FIELD
from .localstore import LocalStore, ID_MAP_KEY
from .query import Filter
from .queue import MutationQueue, Entry, AddEntry, DeleteEntry, UpdateEntry, BulkRenameEntry
from .remote import RemoteStore
from ..status import status


class DrainPolicy(enum.StrEnum):
    AllOrNothing = 'all_or_nothing'
    PerEntry = 'per_entry'


@dataclasses.dataclass
class DrainResult:
    """Outcome of a single :meth:`Reconciler.drain` call.

    Attributes:
        total: Number of entries the drain started with.
        applied: Number of entries whose remote call succeeded.
        skipped: True when another drain was already running and nothing was done.
        error: The exception that stopped the drain, if any.
    """
    total: int = 0
    applied: int = 0
    skipped: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return not self.skipped and self.error is None


class Reconciler:
    """Applies queued mutations remotely and folds the results back into the local store."""

    def __init__(self, store: LocalStore, queue: MutationQueue, remote: RemoteStore,
                 policy: DrainPolicy = DrainPolicy.AllOrNothing) -> None:
        self.store = store
        self.queue = queue
        self.remote = remote
        self.policy = DrainPolicy(policy)
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def id_map(self) -> Dict[str, str]:
        return dict(self.store.persistence.get(ID_MAP_KEY) or {})

    def resolve(self, entity_id: str) -> str:
        """Return the server id for a temporary id that was already replayed, else ``entity_id``."""
        if not is_temporary_id(entity_id):
            return entity_id
        return self.id_map().get(entity_id, entity_id)

    def _record_id(self, temp_id: str, server_id: str) -> None:
        id_map = self.id_map()
        id_map[temp_id] = server_id
        self.store.persistence.set(ID_MAP_KEY, id_map)

    async def drain(self) -> DrainResult:
        """Replay every queued entry in order.

        Returns immediately with ``skipped=True`` when a drain is already running. Remote failures
        stop the drain and are returned in :attr:`DrainResult.error`; local persistence failures
        propagate.
        """
        if self._in_flight:
            logging.debug('Drain already in progress, skipping.')
            return DrainResult(skipped=True)

        self._in_flight = True
        try:
            entries = self.queue.drain()
            result = DrainResult(total=len(entries))
            if not entries:
                return result

            logging.info(f'Replaying {len(entries)} queued mutation(s) ({self.policy}).')
            for entry in entries:
                try:
                    await self.apply(entry)
                except (status.ConnectivityException, status.RemoteRejectedException) as e:
                    logging.warning(
                        f'Replay stopped at entry {result.applied + 1}/{result.total} '
                        f'("{entry.op}" on "{entry.kind}"): {e}'
                    )
                    result.error = e
                    return result

                result.applied += 1
                if self.policy == DrainPolicy.PerEntry:
                    self.queue.remove_head(1)

            if self.policy == DrainPolicy.AllOrNothing:
                self.queue.remove_head(result.total)

            # Entries queued while this drain was awaiting may still reference replayed temp ids
            if len(self.queue) == 0:
                self.store.persistence.delete(ID_MAP_KEY)

            logging.info(f'Replayed {result.applied} queued mutation(s).')
            return result
        finally:
            self._in_flight = False

    async def apply(self, entry: Entry) -> None:
        """Apply a single entry remotely and patch the local store with the result."""
        if isinstance(entry, AddEntry):
            await self._apply_add(entry)
        elif isinstance(entry, DeleteEntry):
            await self._apply_delete(entry)
        elif isinstance(entry, UpdateEntry):
            await self._apply_update(entry)
        elif isinstance(entry, BulkRenameEntry):
            await self.remote.update(
                entry.kind, [Filter(entry.field, entry.old_value)], {entry.field: entry.new_value}
            )
        else:
            assert_never(entry)

    async def _apply_add(self, entry: AddEntry) -> None:
        server_id = self.id_map().get(entry.temp_id)
        if server_id is not None:
            logging.debug(f'"{entry.temp_id}" was already inserted as "{server_id}", not inserting again.')
            server_row = None
        else:
            payload = {k: self.resolve(v) if is_temporary_id(v) else v
                       for k, v in entry.payload.items() if k != ID_FIELD}
            server_row = await self.remote.insert(entry.kind, payload)
            server_id = server_row[ID_FIELD]
            self._record_id(entry.temp_id, server_id)

        rows = self.store.get(entry.kind)
        index = next((i for i, r in enumerate(rows) if r.get(ID_FIELD) == entry.temp_id), None)
        if index is None:
            # Deleted locally after it was queued; the queued delete removes it remotely
            return

        replacement = server_row if server_row is not None else {**rows[index], ID_FIELD: server_id}
        rows[index] = replacement
        rows = [r for i, r in enumerate(rows) if i == index or r.get(ID_FIELD) != server_id]
        self.store.put(entry.kind, rows)

    async def _apply_delete(self, entry: DeleteEntry) -> None:
        target = self.resolve(entry.id)
        if is_temporary_id(target):
            logging.debug(f'"{target}" never reached the remote store, deleting locally only.')
        else:
            await self.remote.delete(entry.kind, target)

        rows = self.store.get(entry.kind)
        kept = [r for r in rows if r.get(ID_FIELD) not in (entry.id, target)]
        if len(kept) != len(rows):
            self.store.put(entry.kind, kept)

    async def _apply_update(self, entry: UpdateEntry) -> None:
        target = self.resolve(entry.id)
        if is_temporary_id(target):
            logging.debug(f'"{target}" never reached the remote store, update kept locally only.')
            return

        changes = {k: self.resolve(v) if is_temporary_id(v) else v for k, v in entry.changes.items()}
        updated = {r.get(ID_FIELD): r for r in await self.remote.update(entry.kind, target, changes)}
        rows = self.store.get(entry.kind)
        patched = [updated.get(r.get(ID_FIELD), r) for r in rows]
        if patched != rows:
            self.store.put(entry.kind, patched)
