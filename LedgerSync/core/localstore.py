"""
Local mirror of the remote collections, persisted in a SQLite key/value file.

The database holds two tables:
    - ``metatable``: a single row recording the last refresh time, the cache state and the remote url
      the mirror was loaded from.
    - ``keyvalue``: JSON documents keyed by collection name, plus the reserved keys used by the
      mutation queue and the reconciler.

The schema is verified on construction and recreated when the metadata table is missing or invalid.
"""

import datetime
import enum
import json
import logging
import pathlib
import sqlite3
from typing import Any, Dict, List, Optional

from PySide6 import QtCore

from ..status import status

QUEUE_KEY = 'sync-queue'
ID_MAP_KEY = 'sync-id-map'
RESERVED_KEYS = (QUEUE_KEY, ID_MAP_KEY)

# Define the expected schema for the metadata table
META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'last_refresh': 'TEXT',
    'state': 'TEXT',
    'remote_url': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    KeyValue = 'keyvalue'


class CacheState(enum.StrEnum):
    """Enum for cache state values."""
    Uninitialized = 'cache is uninitialized'
    Empty = 'cache is empty'
    Stale = 'cache is stale'
    Error = 'cache has error'
    Valid = 'cache is valid'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class LocalPersistence:
    """JSON key/value persistence backed by a SQLite file.

    A new connection is opened for every call. Any SQLite failure, and any value that cannot be
    serialised to JSON, is raised as :class:`status.LocalPersistenceException`.

    Args:
        path: Path to the database file.
    """

    def __init__(self, path: pathlib.Path | str) -> None:
        self.path = pathlib.Path(path)
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def _initialize_schema_if_needed(self) -> None:
        """Ensure the database file and schema are valid, recreating them otherwise.

        Raises:
            status.LocalPersistenceException: If the schema cannot be created.
        """
        db_file_exists = self.path.exists()
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()

            metatable_is_valid = False
            if db_file_exists and self._table_exists_in_conn(conn, Table.Meta.value):
                cursor = conn.execute(f"PRAGMA table_info({Table.Meta.value})")
                current_columns = {row[1] for row in cursor.fetchall()}
                if set(META_SCHEMA.keys()).issubset(current_columns):
                    metatable_is_valid = True
                else:
                    missing_cols = set(META_SCHEMA.keys()) - current_columns
                    logging.warning(
                        f"Metadata table '{Table.Meta.value}' schema is invalid. Missing columns: {missing_cols}. "
                        f"Schema will be recreated."
                    )
            elif db_file_exists:
                logging.warning(
                    f"Database file exists but metadata table '{Table.Meta.value}' is missing. "
                    f"Schema will be recreated."
                )

            if not metatable_is_valid:
                logging.info(
                    f"Creating database schema (DB existed: {db_file_exists}, Metatable valid: {metatable_is_valid})."
                )
                conn.execute(f"DROP TABLE IF EXISTS {Table.Meta.value}")
                conn.execute(f"DROP TABLE IF EXISTS {Table.KeyValue.value}")

                meta_cols_sql = ", ".join(
                    f'"{name}" {typedef}' for name, typedef in META_SCHEMA.items()
                )
                conn.execute(f"CREATE TABLE {Table.Meta.value} ({meta_cols_sql})")
                conn.execute(
                    f"INSERT INTO {Table.Meta.value} (meta_id, state, last_refresh, remote_url) "
                    "VALUES (1, ?, ?, ?)",
                    (CacheState.Uninitialized.name, None, '')
                )

            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {Table.KeyValue.value} "
                "(key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            conn.commit()
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not initialize "{self.path}": {e}') from e
        finally:
            if conn:
                conn.close()

    def get(self, key: str) -> Any:
        """Return the value stored under ``key``, or None when absent."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(
                f"SELECT value FROM {Table.KeyValue.value} WHERE key=?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not read "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise status.LocalPersistenceException(f'Stored value for "{key}" is not valid JSON: {e}') from e

    def set(self, key: str, value: Any) -> None:
        """Store a JSON serialisable value under ``key``, replacing any previous value.

        The write happens in a single transaction.
        """
        try:
            text = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise status.LocalPersistenceException(f'Value for "{key}" is not JSON serialisable: {e}') from e

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {Table.KeyValue.value} (key, value) VALUES (?, ?)",
                    (key, text)
                )
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not write "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def delete(self, key: str) -> None:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(f"DELETE FROM {Table.KeyValue.value} WHERE key=?", (key,))
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not delete "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def keys(self) -> List[str]:
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            rows = conn.execute(f"SELECT key FROM {Table.KeyValue.value} ORDER BY key").fetchall()
            return [r[0] for r in rows]
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not list keys: {e}') from e
        finally:
            if conn:
                conn.close()

    def stamp(self, remote_url: str = '') -> None:
        """Record the time of the last successful refresh and the remote it came from."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(
                    f"UPDATE {Table.Meta.value} SET last_refresh=?, remote_url=? WHERE meta_id=1",
                    (now_str(), remote_url)
                )
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not stamp metadata: {e}') from e
        finally:
            if conn:
                conn.close()

    def get_stamp(self) -> Optional[datetime.datetime]:
        """Retrieve the last refresh timestamp.

        Returns:
            Optional[datetime.datetime]: Last refresh datetime, or None if not set/invalid.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(f"SELECT last_refresh FROM {Table.Meta.value} WHERE meta_id=1").fetchone()
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not read metadata: {e}') from e
        finally:
            if conn:
                conn.close()

        if row and row[0]:
            try:
                return datetime.datetime.fromisoformat(row[0])
            except ValueError:
                logging.warning(f'Invalid last refresh date format in DB: {row[0]}.')
        return None

    def set_state(self, state: CacheState) -> None:
        """Update the cache state in the metadata table.

        Args:
            state: New cache state to set.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(f"UPDATE {Table.Meta.value} SET state=? WHERE meta_id=1", (state.name,))
            logging.debug(f'Cache state updated to: {state.value}.')
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not set cache state: {e}') from e
        finally:
            if conn:
                conn.close()

    def get_state(self) -> CacheState:
        """Retrieve the current cache state.

        Returns:
            CacheState: Current state, or CacheState.Error if unable to determine.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(f"SELECT state FROM {Table.Meta.value} WHERE meta_id=1").fetchone()
        except sqlite3.Error as e:
            logging.error(f'Could not read cache state: {e}')
            return CacheState.Error
        finally:
            if conn:
                conn.close()

        if row and row[0]:
            try:
                return CacheState[row[0]]
            except KeyError:
                logging.warning(f"Invalid state value '{row[0]}' found in database.")
        return CacheState.Error

    def reset(self) -> None:
        """Drop every table and recreate an empty schema."""
        logging.debug(f'Resetting local database "{self.path}".')
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(f"DROP TABLE IF EXISTS {Table.Meta.value}")
                conn.execute(f"DROP TABLE IF EXISTS {Table.KeyValue.value}")
        except sqlite3.Error as e:
            raise status.LocalPersistenceException(f'Could not reset "{self.path}": {e}') from e
        finally:
            if conn:
                conn.close()
        self._initialize_schema_if_needed()


class LocalStore(QtCore.QObject):
    """Mapping of collection name to an ordered list of entities.

    Only the sync engine and the reconciler write to the store. Every ``get`` returns a deep copy so
    callers can never mutate the mirror in place, and ``put`` replaces a collection wholesale.
    """

    def __init__(self, persistence: LocalPersistence, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.persistence = persistence

    @staticmethod
    def _check_key(collection: str) -> None:
        if collection in RESERVED_KEYS:
            raise ValueError(f'"{collection}" is a reserved key and not a collection.')

    def get(self, collection: str) -> List[Dict[str, Any]]:
        """Return a snapshot of a collection; an empty list if it was never stored."""
        self._check_key(collection)
        value = self.persistence.get(collection)
        return list(value) if value else []

    def put(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        """Atomically replace a collection."""
        self._check_key(collection)
        self.persistence.set(collection, list(rows))
        logging.debug(f'Stored {len(rows)} row(s) in "{collection}".')

        from ..actions import signals
        signals.collectionChanged.emit(collection)

    def collections(self) -> List[str]:
        return [k for k in self.persistence.keys() if k not in RESERVED_KEYS]


def merge_by_id(rows: List[Dict[str, Any]], updates: List[Dict[str, Any]],
                prepend: bool = False) -> List[Dict[str, Any]]:
    """Upsert ``updates`` into ``rows`` by ``id``.

    Existing rows are replaced in place. Unknown rows are appended, or prepended when ``prepend``
    is set.
    """
    result = list(rows)
    positions = {r.get('id'): i for i, r in enumerate(result)}
    new_rows = []
    for row in updates:
        i = positions.get(row.get('id'))
        if i is None:
            new_rows.append(row)
        else:
            result[i] = row
    return new_rows + result if prepend else result + new_rows
