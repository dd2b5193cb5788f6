"""Filter and ordering types shared by the remote adapter and the local mirror.

The same :class:`Filter` and :class:`Order` values are sent to the remote store (encoded as query
parameters) and evaluated client side against the local snapshot while offline, so both paths return
the same rows in the same order.
"""
import copy
import dataclasses
import logging
import operator
from typing import Any, Callable, Dict, List, Sequence

import pandas as pd

OPERATORS = ('eq', 'neq', 'gt', 'gte', 'lt', 'lte', 'in', 'is')


@dataclasses.dataclass(frozen=True)
class Filter:
    """A single ``field <op> value`` predicate.

    Attributes:
        field: Entity field name.
        op: One of :data:`OPERATORS`.
        value: Comparison value. A sequence for ``in``; ``None`` for ``is``.
    """
    field: str
    value: Any
    op: str = 'eq'

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f'Unsupported filter operator "{self.op}". Expected one of {OPERATORS}.')

    def to_dict(self) -> Dict[str, Any]:
        return {'field': self.field, 'op': self.op, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Filter':
        return cls(field=data['field'], value=data['value'], op=data.get('op', 'eq'))


@dataclasses.dataclass(frozen=True)
class Order:
    """Sort key: a field and a direction."""
    field: str
    descending: bool = False


def _is_missing(value: Any) -> bool:
    # NaN != NaN
    return value is None or (isinstance(value, float) and value != value)


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[pd.Series, Any], pd.Series]:
    def _apply(column: pd.Series, value: Any) -> pd.Series:
        def _test(v: Any) -> bool:
            if _is_missing(v):
                return False
            try:
                return bool(op(v, value))
            except TypeError:
                return False

        return column.map(_test).astype(bool)

    return _apply


_EVALUATORS: Dict[str, Callable[[pd.Series, Any], pd.Series]] = {
    'eq': lambda column, value: column.map(lambda v: v == value).astype(bool),
    'neq': lambda column, value: column.map(lambda v: v != value and not _is_missing(v)).astype(bool),
    'gt': _compare(operator.gt),
    'gte': _compare(operator.ge),
    'lt': _compare(operator.lt),
    'lte': _compare(operator.le),
    'in': lambda column, value: column.isin(list(value)),
    'is': lambda column, value: column.map(_is_missing).astype(bool) if value is None else column.map(
        lambda v: v is value).astype(bool),
}


def matches(row: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    """Check whether a single row satisfies every filter."""
    return bool(apply([row], filters))


def apply(rows: Sequence[Dict[str, Any]], filters: Sequence[Filter] = (),
          order: Sequence[Order] = ()) -> List[Dict[str, Any]]:
    """Filter and sort rows client side.

    Rows missing a filtered field never match. Rows missing a sort field sort last. Ties keep their
    original relative order.

    Args:
        rows: Entity dictionaries.
        filters: Predicates combined with AND.
        order: Sort keys, most significant first.

    Returns:
        List[Dict[str, Any]]: Deep copies of the selected rows.
    """
    if not rows:
        return []

    df = pd.DataFrame.from_records(list(rows), index=pd.RangeIndex(len(rows)))
    mask = pd.Series(True, index=df.index)

    for f in filters:
        if f.field not in df.columns:
            logging.debug(f'Filter field "{f.field}" not present in rows, nothing matches.')
            return []
        mask &= _EVALUATORS[f.op](df[f.field].astype(object), f.value)

    df = df[mask]

    keys = [o for o in order if o.field in df.columns]
    if keys and not df.empty:
        df = df.sort_values(
            by=[o.field for o in keys],
            ascending=[not o.descending for o in keys],
            na_position='last',
            kind='stable',
        )

    return [copy.deepcopy(rows[i]) for i in df.index]
