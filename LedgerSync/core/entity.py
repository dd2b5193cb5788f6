"""Entity kinds and temporary identifiers.

Entities are plain ``dict`` records carrying an ``id`` key. Records created while offline receive a
temporary identifier of the form ``offline-<tag>-<n>``; ``n`` grows strictly so the creation order of
offline records can be recovered by sorting on it.
"""
import enum
import threading
import time
from typing import Any, Dict

TEMP_ID_PREFIX = 'offline-'
ID_FIELD = 'id'


class EntityKind(enum.StrEnum):
    """Entity kinds. Each kind is also the name of its remote collection."""
    Transactions = 'transactions'
    Categories = 'categories'
    PaymentMethods = 'payment_methods'
    BudgetCategories = 'categoriesbudget'
    BudgetTransactions = 'transactionsbudget'


TEMP_ID_TAG: Dict[EntityKind, str] = {
    EntityKind.Transactions: 'tx',
    EntityKind.Categories: 'cat',
    EntityKind.PaymentMethods: 'pay',
    EntityKind.BudgetCategories: 'bcat',
    EntityKind.BudgetTransactions: 'btx',
}

# (field, descending)
DEFAULT_ORDER: Dict[EntityKind, tuple] = {
    EntityKind.Transactions: ('date', True),
    EntityKind.Categories: ('order', False),
    EntityKind.PaymentMethods: ('order', False),
    EntityKind.BudgetCategories: ('order', False),
    EntityKind.BudgetTransactions: ('date', True),
}

_counter_lock = threading.Lock()
_last_counter = 0


def _next_counter() -> int:
    global _last_counter
    with _counter_lock:
        value = time.time_ns()
        if value <= _last_counter:
            value = _last_counter + 1
        _last_counter = value
        return value


def new_temporary_id(kind: EntityKind) -> str:
    """Return a new temporary identifier for an entity of the given kind.

    Args:
        kind: The entity kind.

    Returns:
        str: An identifier such as ``offline-tx-1718000000000000000``.
    """
    kind = EntityKind(kind)
    return f'{TEMP_ID_PREFIX}{TEMP_ID_TAG[kind]}-{_next_counter()}'


def is_temporary_id(value: Any) -> bool:
    """Check whether a value is a client-generated temporary identifier."""
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


def temporary_id_counter(value: str) -> int:
    """Return the creation counter encoded in a temporary identifier.

    Raises:
        ValueError: If the value is not a temporary identifier.
    """
    if not is_temporary_id(value):
        raise ValueError(f'"{value}" is not a temporary identifier.')
    return int(value.rsplit('-', 1)[-1])
