"""
Tests for LedgerSync.core.localstore
(covers the SQLite key/value persistence, its metadata table, and the LocalStore mirror).

Run:
    python -m unittest tests.test_localstore
"""
import datetime
import sqlite3

from LedgerSync.actions import signals
from LedgerSync.core.localstore import (
    CacheState,
    LocalPersistence,
    LocalStore,
    QUEUE_KEY,
    Table,
    merge_by_id,
)
from LedgerSync.status import status
from tests.base import BaseTestCase


class LocalPersistenceTests(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.persistence = LocalPersistence(self.db_path)

    def test_schema_created(self):
        self.assertTrue(self.db_path.exists())
        conn = sqlite3.connect(self.db_path)
        try:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            conn.close()
        self.assertIn(Table.Meta.value, tables)
        self.assertIn(Table.KeyValue.value, tables)
        self.assertEqual(self.persistence.get_state(), CacheState.Uninitialized)

    def test_get_missing_key_returns_none(self):
        self.assertIsNone(self.persistence.get('transactions'))

    def test_set_get_roundtrip_and_replace(self):
        self.persistence.set('transactions', [{'id': 'a', 'amount': 1.5}])
        self.persistence.set('transactions', [{'id': 'b', 'amount': 2}])
        self.assertEqual(self.persistence.get('transactions'), [{'id': 'b', 'amount': 2}])

    def test_unicode_values(self):
        self.persistence.set('categories', [{'id': 'x', 'name': 'Élelmiszer 🍞'}])
        self.assertEqual(self.persistence.get('categories')[0]['name'], 'Élelmiszer 🍞')

    def test_delete_and_keys(self):
        self.persistence.set('b', 1)
        self.persistence.set('a', 2)
        self.assertEqual(self.persistence.keys(), ['a', 'b'])
        self.persistence.delete('a')
        self.assertEqual(self.persistence.keys(), ['b'])
        # Deleting a missing key is a no-op
        self.persistence.delete('a')

    def test_unserialisable_value_raises(self):
        with self.assertRaises(status.LocalPersistenceException):
            self.persistence.set('bad', {'when': datetime.datetime.now()})
        self.assertIsNone(self.persistence.get('bad'))

    def test_values_survive_reopen(self):
        self.persistence.set(QUEUE_KEY, [{'op': 'delete'}])
        reopened = LocalPersistence(self.db_path)
        self.assertEqual(reopened.get(QUEUE_KEY), [{'op': 'delete'}])

    def test_state_and_stamp(self):
        self.assertIsNone(self.persistence.get_stamp())
        self.persistence.set_state(CacheState.Valid)
        self.persistence.stamp('https://example.supabase.co')
        self.assertEqual(self.persistence.get_state(), CacheState.Valid)
        stamp = self.persistence.get_stamp()
        self.assertIsInstance(stamp, datetime.datetime)
        self.assertLess((datetime.datetime.now(datetime.timezone.utc) - stamp).total_seconds(), 60)

    def test_invalid_metatable_is_recreated(self):
        self.persistence.set('transactions', [{'id': 'a'}])
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(f'DROP TABLE {Table.Meta.value}')
            conn.execute(f'CREATE TABLE {Table.Meta.value} (meta_id INTEGER PRIMARY KEY)')
            conn.commit()
        finally:
            conn.close()

        recreated = LocalPersistence(self.db_path)
        self.assertEqual(recreated.get_state(), CacheState.Uninitialized)
        self.assertIsNone(recreated.get('transactions'))

    def test_reset(self):
        self.persistence.set('transactions', [{'id': 'a'}])
        self.persistence.set_state(CacheState.Valid)
        self.persistence.reset()
        self.assertEqual(self.persistence.keys(), [])
        self.assertEqual(self.persistence.get_state(), CacheState.Uninitialized)

    def test_corrupt_file_raises(self):
        self.db_path.write_bytes(b'this is not a database' * 100)
        with self.assertRaises(status.LocalPersistenceException):
            LocalPersistence(self.db_path)


class LocalStoreTests(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.store = LocalStore(LocalPersistence(self.db_path))

    def test_get_absent_collection(self):
        self.assertEqual(self.store.get('transactions'), [])

    def test_put_replaces_wholesale_and_signals(self):
        changed = []

        def _slot(name: str) -> None:
            changed.append(name)

        signals.collectionChanged.connect(_slot)
        try:
            self.store.put('transactions', [{'id': '1'}, {'id': '2'}])
            self.store.put('transactions', [{'id': '3'}])
        finally:
            signals.collectionChanged.disconnect(_slot)

        self.assertEqual(self.store.get('transactions'), [{'id': '3'}])
        self.assertEqual(changed, ['transactions', 'transactions'])

    def test_snapshots_are_copies(self):
        self.store.put('categories', [{'id': '1', 'name': 'Food'}])
        snapshot = self.store.get('categories')
        snapshot[0]['name'] = 'Changed'
        snapshot.append({'id': '2'})
        self.assertEqual(self.store.get('categories'), [{'id': '1', 'name': 'Food'}])

    def test_reserved_keys_rejected(self):
        with self.assertRaises(ValueError):
            self.store.get(QUEUE_KEY)
        with self.assertRaises(ValueError):
            self.store.put(QUEUE_KEY, [])

    def test_collections_excludes_reserved_keys(self):
        self.store.put('transactions', [])
        self.store.persistence.set(QUEUE_KEY, [])
        self.assertEqual(self.store.collections(), ['transactions'])


class MergeByIdTests(BaseTestCase):

    def test_replaces_in_place_and_appends(self):
        rows = [{'id': 'a', 'v': 1}, {'id': 'b', 'v': 2}]
        merged = merge_by_id(rows, [{'id': 'b', 'v': 20}, {'id': 'c', 'v': 3}])
        self.assertEqual(merged, [{'id': 'a', 'v': 1}, {'id': 'b', 'v': 20}, {'id': 'c', 'v': 3}])

    def test_prepend(self):
        merged = merge_by_id([{'id': 'a'}], [{'id': 'z'}], prepend=True)
        self.assertEqual([r['id'] for r in merged], ['z', 'a'])
