"""
Settings package for LedgerSync.

- :mod:`LedgerSync.settings.lib` – Sync configuration schema, validation, persistence and application paths.
"""
