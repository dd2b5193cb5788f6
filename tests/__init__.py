"""Test package for LedgerSync.

Qt's standard paths are switched to test mode before anything imports the settings module, so the
tests never touch the real application data directory.
"""
import os

from PySide6 import QtCore

os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
QtCore.QStandardPaths.setTestModeEnabled(True)
