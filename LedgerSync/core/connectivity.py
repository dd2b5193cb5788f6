"""Connectivity monitor.

Tracks whether the remote store is reachable and raises ``becameOnline`` / ``becameOffline`` on
transitions. Reachability reports are debounced: rapid flapping only ever commits the latest
report, and a report equal to the current state raises nothing.

Reports come from three places:
    - Qt's :class:`QtNetwork.QNetworkInformation` backend, see :meth:`ConnectivityMonitor.attach_network_information`.
    - An HTTP probe of the remote, see :meth:`ConnectivityMonitor.probe`.
    - The sync engine itself, when a remote call fails with a connectivity error.
"""
import asyncio
import enum
import logging
from typing import Callable, List, Optional, Tuple

import aiohttp
from PySide6 import QtCore, QtNetwork


class ConnectivityState(enum.StrEnum):
    Offline = 'offline'
    Online = 'online'


class ConnectivityMonitor(QtCore.QObject):
    """Process-wide reachability state.

    Args:
        initial: Starting state.
        debounce_ms: How long a report must stand before it is committed. 0 commits immediately.
        probe_url: Url checked by :meth:`probe`.
        probe_timeout: Probe timeout in seconds.
    """
    becameOnline = QtCore.Signal()
    becameOffline = QtCore.Signal()
    stateChanged = QtCore.Signal(str)

    def __init__(self, initial: ConnectivityState = ConnectivityState.Offline, debounce_ms: int = 500,
                 probe_url: str = '', probe_timeout: float = 5.0,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._state = ConnectivityState(initial)
        self._pending: Optional[ConnectivityState] = None
        self._subscribers: List[Tuple[Callable, Callable]] = []
        self._network_information: Optional[QtNetwork.QNetworkInformation] = None

        self.debounce_ms = debounce_ms
        self.probe_url = probe_url
        self.probe_timeout = probe_timeout

        self._timer = QtCore.QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._commit_pending)

    @property
    def state(self) -> ConnectivityState:
        return self._state

    def is_online(self) -> bool:
        return self._state == ConnectivityState.Online

    def subscribe(self, on_online: Callable[[], None], on_offline: Callable[[], None]) -> None:
        """Register callbacks for transitions."""
        self.becameOnline.connect(on_online)
        self.becameOffline.connect(on_offline)
        self._subscribers.append((on_online, on_offline))

    def unsubscribe(self, on_online: Callable[[], None], on_offline: Callable[[], None]) -> None:
        if (on_online, on_offline) not in self._subscribers:
            logging.debug('Unsubscribe called for callbacks that were never subscribed.')
            return
        self._subscribers.remove((on_online, on_offline))
        self.becameOnline.disconnect(on_online)
        self.becameOffline.disconnect(on_offline)

    @QtCore.Slot(bool)
    def report(self, reachable: bool) -> None:
        """Report the current reachability.

        The report replaces any pending one and restarts the debounce timer.
        """
        self._pending = ConnectivityState.Online if reachable else ConnectivityState.Offline
        if self.debounce_ms <= 0:
            self._timer.stop()
            self._commit_pending()
            return
        self._timer.start(self.debounce_ms)

    def set_state(self, state: ConnectivityState) -> None:
        """Commit a state immediately, dropping any pending report."""
        self._timer.stop()
        self._pending = ConnectivityState(state)
        self._commit_pending()

    @QtCore.Slot()
    def _commit_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None or pending == self._state:
            return

        logging.info(f'Connectivity changed: {self._state} -> {pending}')
        self._state = pending
        self.stateChanged.emit(pending.value)

        from ..actions import signals
        signals.connectivityChanged.emit(pending.value)

        if pending == ConnectivityState.Online:
            self.becameOnline.emit()
        else:
            self.becameOffline.emit()

    def attach_network_information(self) -> bool:
        """Follow Qt's network reachability backend, when one is available.

        Returns:
            bool: True if a backend was loaded and connected.
        """
        if not QtNetwork.QNetworkInformation.loadBackendByFeatures(
                QtNetwork.QNetworkInformation.Feature.Reachability):
            logging.warning('No network information backend with reachability support is available.')
            return False

        info = QtNetwork.QNetworkInformation.instance()
        if info is None:
            return False

        self._network_information = info
        info.reachabilityChanged.connect(self._on_reachability_changed)
        self._on_reachability_changed(info.reachability())
        logging.debug(f'Using network information backend "{info.backendName()}".')
        return True

    def _on_reachability_changed(self, reachability: QtNetwork.QNetworkInformation.Reachability) -> None:
        self.report(reachability == QtNetwork.QNetworkInformation.Reachability.Online)

    async def probe(self) -> bool:
        """Check the probe url with a HEAD request and report the result.

        Server errors, network failures and timeouts count as offline.

        Returns:
            bool: Whether the url was reachable.
        """
        if not self.probe_url:
            logging.debug('No probe url configured, skipping probe.')
            return self.is_online()

        timeout = aiohttp.ClientTimeout(total=self.probe_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.head(self.probe_url, allow_redirects=True) as resp:
                    logging.debug(f'Probe {self.probe_url} answered HTTP {resp.status}')
                    reachable = resp.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logging.debug(f'Probe {self.probe_url} failed: {e}')
            reachable = False

        self.report(reachable)
        return reachable
