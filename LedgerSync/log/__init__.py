"""
Logging subsystem for LedgerSync.

Modules:

- :mod:`LedgerSync.log.log` – Root logger setup, Qt message bridge and the in-memory log tank.
"""
