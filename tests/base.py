"""Unittest base classes for creating a clean test environment."""
import asyncio
import itertools
import logging
import os
import shutil
import tempfile
import unittest
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PySide6 import QtCore

QtCore.QStandardPaths.setTestModeEnabled(True)

from LedgerSync.core import query
from LedgerSync.core.connectivity import ConnectivityMonitor, ConnectivityState
from LedgerSync.core.engine import SyncEngine
from LedgerSync.core.localstore import LocalPersistence, LocalStore
from LedgerSync.core.queue import MutationQueue
from LedgerSync.core.reconciler import Reconciler, DrainPolicy
from LedgerSync.core.remote import RemoteStore, Target
from LedgerSync.settings import lib
from LedgerSync.status import status


@contextmanager
def mute_signals():
    from LedgerSync.actions import signals
    blocker = QtCore.QSignalBlocker(signals)  # blocks every signal in `signals`
    try:
        yield
    finally:
        del blocker


class FakeRemoteStore(RemoteStore):
    """In-memory remote store that records every call and can be told to fail.

    Attributes:
        tables: Collection name to rows, as the "server" holds them.
        calls: ``(method, collection, argument)`` tuples in call order.
        offline: When set, every call raises :class:`status.ConnectivityException`.
    """

    url = 'https://fake.remote'

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {k: [dict(r) for r in v] for k, v in (tables or {}).items()}
        self.calls: List[Tuple[str, str, Any]] = []
        self.offline = False
        self._failures: List[Tuple[str, Optional[str], Exception]] = []
        self._ids = itertools.count(1)

    def fail_next(self, method: str, exception: Exception, collection: Optional[str] = None) -> None:
        """Make the next matching call raise ``exception`` once."""
        self._failures.append((method, collection, exception))

    def calls_of(self, method: str) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method]

    def _check(self, method: str, collection: str) -> None:
        if self.offline:
            raise status.ConnectivityException(f'{method} {collection}: fake remote is offline.')
        for i, (m, c, exc) in enumerate(self._failures):
            if m == method and c in (None, collection):
                del self._failures[i]
                raise exc

    def _matching(self, collection: str, target: Target) -> List[Dict[str, Any]]:
        rows = self.tables.setdefault(collection, [])
        if isinstance(target, str):
            return [r for r in rows if r.get('id') == target]
        return [r for r in rows if query.matches(r, target)]

    async def select(self, collection, filters=(), order=()):
        await asyncio.sleep(0)
        self.calls.append(('select', collection, tuple(filters)))
        self._check('select', collection)
        return query.apply(self.tables.get(collection, []), filters, order)

    async def insert(self, collection, row):
        await asyncio.sleep(0)
        self.calls.append(('insert', collection, dict(row)))
        self._check('insert', collection)
        stored = {**row, 'id': f'srv-{next(self._ids)}'}
        self.tables.setdefault(collection, []).append(stored)
        return dict(stored)

    async def update(self, collection, target, changes):
        await asyncio.sleep(0)
        self.calls.append(('update', collection, (target if isinstance(target, str) else tuple(target), dict(changes))))
        self._check('update', collection)
        matched = self._matching(collection, target)
        for r in matched:
            r.update(changes)
        return [dict(r) for r in matched]

    async def delete(self, collection, target):
        await asyncio.sleep(0)
        self.calls.append(('delete', collection, target if isinstance(target, str) else tuple(target)))
        self._check('delete', collection)
        matched = self._matching(collection, target)
        self.tables[collection] = [r for r in self.tables[collection] if r not in matched]


class BaseTestCase(unittest.TestCase):
    """Base test case that sets up and tears down a temporary config directory."""

    config_paths: lib.ConfigPaths
    backup_dir: Optional[str]

    def setUp(self) -> None:
        """Set up a clean config directory, a fresh settings API and a temporary database path."""
        if 'QT_QPA_PLATFORM' not in os.environ:
            os.environ['QT_QPA_PLATFORM'] = 'offscreen'
            logging.debug('QT_QPA_PLATFORM set to offscreen for headless testing.')

        if not QtCore.QCoreApplication.instance():
            QtCore.QCoreApplication([])
            logging.debug('QtCore.QCoreApplication initialized for tests.')

        self.config_paths = lib.ConfigPaths()
        self.backup_dir = None
        config_dir: Path = self.config_paths.config_dir

        # Backup and clear the existing config directory
        if config_dir.exists():
            self.backup_dir = tempfile.mkdtemp(prefix='ledgersync_test_')
            shutil.copytree(config_dir, self.backup_dir, dirs_exist_ok=True)
            shutil.rmtree(config_dir)
            logging.debug(f'Backed up config directory from {config_dir} to {self.backup_dir}')

        lib.settings = lib.SettingsAPI()
        logging.debug('SettingsAPI reinitialized.')

        self.tmp_dir = tempfile.mkdtemp(prefix='ledgersync_db_')
        self.db_path = Path(self.tmp_dir) / 'ledger.db'

    def tearDown(self) -> None:
        """Tear down the test config and restore any original config directory."""
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

        config_dir: Path = self.config_paths.config_dir
        if config_dir.exists():
            shutil.rmtree(config_dir)

        if self.backup_dir and os.path.isdir(self.backup_dir):
            shutil.copytree(self.backup_dir, config_dir, dirs_exist_ok=True)
            shutil.rmtree(self.backup_dir)
            logging.debug(f'Restored config directory from {self.backup_dir} to {config_dir}')


class BaseAsyncTestCase(BaseTestCase, unittest.IsolatedAsyncioTestCase):
    """Async test case wiring a sync engine to a :class:`FakeRemoteStore`."""

    def make_engine(self, online: bool = False, policy: DrainPolicy = DrainPolicy.AllOrNothing,
                    tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                    collections: Sequence[str] = ('transactions', 'categories', 'payment_methods',
                                                  'categoriesbudget', 'transactionsbudget')) -> SyncEngine:
        self.persistence = LocalPersistence(self.db_path)
        self.store = LocalStore(self.persistence)
        self.queue = MutationQueue(self.persistence)
        self.remote = FakeRemoteStore(tables)
        self.monitor = ConnectivityMonitor(
            ConnectivityState.Online if online else ConnectivityState.Offline, debounce_ms=0
        )
        self.reconciler = Reconciler(self.store, self.queue, self.remote, policy=policy)
        self.engine = SyncEngine(
            self.store, self.queue, self.remote, self.monitor,
            reconciler=self.reconciler, collections=collections,
        )
        return self.engine

    async def go_online(self) -> None:
        """Flip the monitor online and wait for the synchronisation it schedules."""
        self.monitor.report(True)
        task = self.engine.sync_task
        if task is not None:
            await task

    def go_offline(self) -> None:
        self.monitor.report(False)

    async def asyncTearDown(self) -> None:
        engine = getattr(self, 'engine', None)
        if engine is not None:
            engine.dispose()
