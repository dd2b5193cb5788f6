"""Application-wide Qt signals for LedgerSync.

This module provides:
    - Signals: custom Qt signals for configuration changes, local mirror updates,
      mutation queue size changes, connectivity transitions and error reporting.

The sync engine owns its own per-instance signals (see
:class:`LedgerSync.core.engine.SyncEngine`); the signals here are the
process-wide notifications that have no single owner.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, storage and sync events."""
    configSectionChanged = QtCore.Signal(str)

    collectionChanged = QtCore.Signal(str)
    queueChanged = QtCore.Signal(int)

    connectivityChanged = QtCore.Signal(str)

    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(bool)

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)


signals = Signals()
