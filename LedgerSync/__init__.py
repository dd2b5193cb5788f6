"""
LedgerSync: offline/online synchronization engine for a personal finance ledger.

Transactions, categories, payment methods and budgets live in a remote PostgREST database.
LedgerSync keeps a local SQLite mirror of that data and a durable queue of the writes made while
offline, and replays the queue when the connection returns.

This package provides:

- :mod:`LedgerSync.core` – The sync engine, local store, mutation queue, reconciler, remote adapter and connectivity monitor.
- :mod:`LedgerSync.settings` – Settings management and schema validation.
- :mod:`LedgerSync.status` – Status codes and the exceptions raised by the engine.
- :mod:`LedgerSync.log` – Logging setup and the in-memory log tank.

Use :func:`LedgerSync.exec_` to run the sync engine in a Qt event loop.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('LedgerSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__description__ = 'LedgerSync: offline/online synchronization engine for a personal finance ledger.'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Run the sync engine on Qt's event loop until the application quits.

    Connectivity is followed through Qt's network information backend when one is available, or
    probed once over HTTP otherwise.
    """
    from PySide6 import QtAsyncio
    from .core import engine

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)
    sync_engine = engine.create_engine(parent=app)

    async def start() -> None:
        if not sync_engine.monitor.attach_network_information():
            await sync_engine.monitor.probe()
        await sync_engine.init()

    QtAsyncio.run(start(), keep_running=True, quit_qapp=True)


if __name__ == '__main__':
    exec_()
