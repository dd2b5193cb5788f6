"""
Core sync package.

- :mod:`LedgerSync.core.entity` – Entity kinds and temporary identifiers.
- :mod:`LedgerSync.core.query` – Filters, ordering and their client side evaluation.
- :mod:`LedgerSync.core.localstore` – SQLite backed local mirror.
- :mod:`LedgerSync.core.queue` – Durable queue of offline writes.
- :mod:`LedgerSync.core.remote` – Remote store interface and the PostgREST adapter.
- :mod:`LedgerSync.core.connectivity` – Debounced reachability monitor.
- :mod:`LedgerSync.core.reconciler` – Queue replay and identifier remapping.
- :mod:`LedgerSync.core.engine` – The sync engine state machine.
- :mod:`LedgerSync.core.ledger` – Ledger operations built on the engine.
"""
