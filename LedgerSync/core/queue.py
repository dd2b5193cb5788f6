"""Durable FIFO log of writes made while offline.

Entries are a closed set of frozen dataclasses, tagged by ``op`` when serialised. The whole queue is
stored as one JSON list under the reserved ``sync-queue`` key of the local database, so it survives
process restarts with the same entries in the same order. A single queue is shared by every entity
kind to preserve global write ordering across kinds.
"""
import dataclasses
import logging
from typing import Any, Dict, List, Optional, Union

from PySide6 import QtCore

from .entity import EntityKind
from .localstore import LocalPersistence, QUEUE_KEY
from ..status import status


@dataclasses.dataclass(frozen=True)
class AddEntry:
    """Insert ``payload``. Locally the entity carries ``temp_id`` as its ``id`` until replayed.

    The sync engine assigns ``temp_id`` when the entry is queued.
    """
    kind: EntityKind
    payload: Dict[str, Any]
    temp_id: str = ''
    op = 'add'


@dataclasses.dataclass(frozen=True)
class DeleteEntry:
    kind: EntityKind
    id: str
    op = 'delete'


@dataclasses.dataclass(frozen=True)
class UpdateEntry:
    """Apply the partial ``changes`` to the entity ``id``."""
    kind: EntityKind
    id: str
    changes: Dict[str, Any]
    op = 'update'


@dataclasses.dataclass(frozen=True)
class BulkRenameEntry:
    """Set ``field`` to ``new_value`` on every entity where it equals ``old_value``."""
    kind: EntityKind
    field: str
    old_value: Any
    new_value: Any
    op = 'bulk_rename'


Entry = Union[AddEntry, DeleteEntry, UpdateEntry, BulkRenameEntry]

ENTRY_TYPES = {cls.op: cls for cls in (AddEntry, DeleteEntry, UpdateEntry, BulkRenameEntry)}


def entry_to_dict(entry: Entry) -> Dict[str, Any]:
    data = dataclasses.asdict(entry)
    data['kind'] = str(entry.kind)
    data['op'] = entry.op
    return data


def entry_from_dict(data: Dict[str, Any]) -> Entry:
    """Restore a queue entry from its serialised form.

    Raises:
        status.LocalPersistenceException: If the tag is unknown or fields are missing.
    """
    data = dict(data)
    tag = data.pop('op', None)
    cls = ENTRY_TYPES.get(tag)
    if cls is None:
        raise status.LocalPersistenceException(f'Unknown queue entry type "{tag}".')
    try:
        data['kind'] = EntityKind(data['kind'])
        return cls(**data)
    except (KeyError, TypeError, ValueError) as e:
        raise status.LocalPersistenceException(f'Malformed "{tag}" queue entry: {e}') from e


class MutationQueue(QtCore.QObject):
    """Ordered, persisted log of not-yet-applied write operations.

    Only the reconciler removes entries, and only after the matching remote call has succeeded, or
    when an entry is explicitly discarded as irrecoverable.
    """
    queueChanged = QtCore.Signal(int)

    def __init__(self, persistence: LocalPersistence, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.persistence = persistence

    def _load(self) -> List[Dict[str, Any]]:
        return list(self.persistence.get(QUEUE_KEY) or [])

    def _save(self, items: List[Dict[str, Any]]) -> None:
        self.persistence.set(QUEUE_KEY, items)
        self.queueChanged.emit(len(items))

        from ..actions import signals
        signals.queueChanged.emit(len(items))

    def __len__(self) -> int:
        return len(self._load())

    def enqueue(self, entry: Entry) -> None:
        items = self._load()
        items.append(entry_to_dict(entry))
        self._save(items)
        logging.debug(f'Queued "{entry.op}" on "{entry.kind}"; queue size: {len(items)}')

    def drain(self) -> List[Entry]:
        """Return every entry in insertion order without removing any."""
        return [entry_from_dict(d) for d in self._load()]

    def clear(self) -> None:
        """Drop every queued entry.

        The reconciler never calls this: it removes only the entries it replayed, with
        :meth:`remove_head`, so writes queued during a drain survive it. Use it to abandon all
        offline work, e.g. after the local store was reset.
        """
        items = self._load()
        if not items:
            logging.debug('Clear queue called, but queue was already empty.')
            return
        logging.debug(f'Clearing {len(items)} entry(s) from queue.')
        self._save([])

    def remove_head(self, count: int) -> None:
        """Remove the first ``count`` entries, keeping anything appended after them."""
        if count <= 0:
            return
        items = self._load()
        self._save(items[count:])
        logging.debug(f'Removed {min(count, len(items))} applied entry(s); {len(items[count:])} left.')

    def discard(self, index: int) -> Optional[Entry]:
        """Drop a single irrecoverable entry.

        Malformed entries can be discarded too; for those None is returned.

        Raises:
            IndexError: If there is no entry at ``index``.
        """
        items = self._load()
        data = items.pop(index)
        self._save(items)
        try:
            entry = entry_from_dict(data)
        except status.LocalPersistenceException:
            logging.warning(f'Discarded malformed queue entry #{index}: {data}')
            return None
        logging.warning(f'Discarded queue entry #{index}: "{entry.op}" on "{entry.kind}".')
        return entry
