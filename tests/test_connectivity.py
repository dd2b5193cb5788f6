"""
Tests for LedgerSync.core.connectivity: debounced transitions, subscriptions and the HTTP probe.

Run:
    python -m unittest tests.test_connectivity
"""
from aiohttp import test_utils, web
from PySide6 import QtTest

from LedgerSync.actions import signals
from LedgerSync.core.connectivity import ConnectivityMonitor, ConnectivityState
from tests.base import BaseAsyncTestCase, BaseTestCase


class Recorder:
    """Collects transition callbacks in order."""

    def __init__(self):
        self.events = []

    def online(self):
        self.events.append('online')

    def offline(self):
        self.events.append('offline')


class ConnectivityMonitorTests(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.recorder = Recorder()

    def make_monitor(self, debounce_ms=0, initial=ConnectivityState.Offline):
        monitor = ConnectivityMonitor(initial, debounce_ms=debounce_ms)
        monitor.subscribe(self.recorder.online, self.recorder.offline)
        return monitor

    def test_initial_state(self):
        monitor = self.make_monitor(initial=ConnectivityState.Online)
        self.assertEqual(monitor.state, ConnectivityState.Online)
        self.assertTrue(monitor.is_online())
        self.assertEqual(self.recorder.events, [])

    def test_immediate_commit_without_debounce(self):
        monitor = self.make_monitor()
        monitor.report(True)
        self.assertTrue(monitor.is_online())
        monitor.report(False)
        self.assertFalse(monitor.is_online())
        self.assertEqual(self.recorder.events, ['online', 'offline'])

    def test_same_state_raises_nothing(self):
        monitor = self.make_monitor()
        monitor.report(False)
        monitor.set_state(ConnectivityState.Offline)
        self.assertEqual(self.recorder.events, [])

    def test_debounce_commits_latest_report_only(self):
        monitor = self.make_monitor(debounce_ms=30)
        monitor.report(True)
        monitor.report(False)
        monitor.report(True)
        self.assertFalse(monitor.is_online())
        QtTest.QTest.qWait(150)
        self.assertTrue(monitor.is_online())
        self.assertEqual(self.recorder.events, ['online'])

    def test_debounced_flap_back_to_current_state(self):
        monitor = self.make_monitor(debounce_ms=30)
        monitor.report(True)
        monitor.report(False)
        QtTest.QTest.qWait(150)
        self.assertFalse(monitor.is_online())
        self.assertEqual(self.recorder.events, [])

    def test_set_state_drops_pending_report(self):
        monitor = self.make_monitor(debounce_ms=30)
        monitor.report(True)
        monitor.set_state(ConnectivityState.Offline)
        QtTest.QTest.qWait(150)
        self.assertFalse(monitor.is_online())
        self.assertEqual(self.recorder.events, [])

    def test_unsubscribe(self):
        monitor = self.make_monitor()
        monitor.unsubscribe(self.recorder.online, self.recorder.offline)
        monitor.report(True)
        self.assertEqual(self.recorder.events, [])
        # Unknown callbacks are ignored
        monitor.unsubscribe(self.recorder.online, self.recorder.offline)

    def test_global_signal_and_state_changed(self):
        monitor = self.make_monitor()
        states, shared = [], []

        def _state_slot(value: str) -> None:
            states.append(value)

        def _shared_slot(value: str) -> None:
            shared.append(value)

        monitor.stateChanged.connect(_state_slot)
        signals.connectivityChanged.connect(_shared_slot)
        try:
            monitor.report(True)
            monitor.report(False)
        finally:
            signals.connectivityChanged.disconnect(_shared_slot)

        self.assertEqual(states, ['online', 'offline'])
        self.assertEqual(shared, ['online', 'offline'])


class ProbeTests(BaseAsyncTestCase):

    async def asyncSetUp(self) -> None:
        self.status_code = 200

        async def handler(request):
            return web.Response(status=self.status_code)

        app = web.Application()
        app.router.add_get('/health', handler)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.monitor = ConnectivityMonitor(
            ConnectivityState.Offline, debounce_ms=0, probe_url=str(self.server.make_url('/health'))
        )

    async def asyncTearDown(self) -> None:
        await self.server.close()
        await super().asyncTearDown()

    async def test_reachable(self):
        self.assertTrue(await self.monitor.probe())
        self.assertTrue(self.monitor.is_online())

    async def test_client_errors_count_as_reachable(self):
        self.status_code = 404
        self.assertTrue(await self.monitor.probe())

    async def test_server_error_counts_as_offline(self):
        self.monitor.set_state(ConnectivityState.Online)
        self.status_code = 503
        self.assertFalse(await self.monitor.probe())
        self.assertFalse(self.monitor.is_online())

    async def test_refused_connection_counts_as_offline(self):
        self.monitor.set_state(ConnectivityState.Online)
        self.monitor.probe_url = f'http://127.0.0.1:{test_utils.unused_port()}/health'
        self.assertFalse(await self.monitor.probe())
        self.assertFalse(self.monitor.is_online())

    async def test_no_probe_url_keeps_state(self):
        self.monitor.probe_url = ''
        self.assertFalse(await self.monitor.probe())
        self.assertFalse(self.monitor.is_online())
