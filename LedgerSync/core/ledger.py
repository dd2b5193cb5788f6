"""Domain operations used by the application: transactions, categories, payment methods, budget
tags and categories, and budget transactions.

Every method goes through the :class:`SyncEngine`, so all of them work offline and are replayed
once the remote store is reachable again.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from .engine import SyncEngine, default_order
from .entity import EntityKind, ID_FIELD
from .query import Filter, Order, apply as apply_query
from .queue import AddEntry, DeleteEntry, UpdateEntry, BulkRenameEntry

CATEGORY_TYPES = ('expense', 'income')
RENAMEABLE_FIELDS = ('category', 'payment_method')
BUDGET_TRANSACTION_TYPES = ('budget', 'spend')
NO_TAG = 'NoTag'


class LedgerAPI:
    """Ledger operations on top of a sync engine.

    Args:
        engine: The sync engine all reads and writes go through.
    """

    def __init__(self, engine: SyncEngine) -> None:
        self.engine = engine

    # Transactions

    async def transactions(self, filters: Sequence[Filter] = (),
                           order: Optional[Sequence[Order]] = None) -> List[Dict[str, Any]]:
        kind = EntityKind.Transactions
        return await self.engine.read(kind, filters, default_order(kind) if order is None else order)

    async def add_transaction(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.engine.write(AddEntry(EntityKind.Transactions, dict(data)))

    async def update_transaction(self, transaction_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.engine.write(UpdateEntry(EntityKind.Transactions, transaction_id, dict(changes)))

    async def remove_transaction(self, transaction_id: str) -> None:
        await self.engine.write(DeleteEntry(EntityKind.Transactions, transaction_id))

    async def bulk_rename(self, field: str, old_value: str, new_value: str) -> None:
        """Rewrite ``field`` from ``old_value`` to ``new_value`` on every transaction.

        Raises:
            ValueError: If ``field`` is not a renameable transaction field.
        """
        if field not in RENAMEABLE_FIELDS:
            raise ValueError(f'Cannot bulk rename "{field}", expected one of {RENAMEABLE_FIELDS}.')
        if old_value == new_value:
            return
        await self.engine.write(BulkRenameEntry(EntityKind.Transactions, field, old_value, new_value))

    # Categories

    def _categories(self, category_type: str) -> List[Dict[str, Any]]:
        if category_type not in CATEGORY_TYPES:
            raise ValueError(f'Unknown category type "{category_type}", expected one of {CATEGORY_TYPES}.')
        kind = EntityKind.Categories
        return apply_query(
            self.engine.snapshot(kind), [Filter('type', category_type)], default_order(kind)
        )

    def _find_category(self, name: str, category_type: str) -> Optional[Dict[str, Any]]:
        return next((c for c in self._categories(category_type) if c.get('name') == name), None)

    def category_names(self, category_type: str) -> List[str]:
        return [c['name'] for c in self._categories(category_type)]

    def expense_categories(self) -> List[str]:
        return self.category_names('expense')

    def income_categories(self) -> List[str]:
        return self.category_names('income')

    async def add_category(self, name: str, category_type: str = 'expense') -> Optional[Dict[str, Any]]:
        """Add a category. Blank names and names already in use are ignored."""
        existing = self.category_names(category_type)
        if not name.strip() or name in existing:
            logging.debug(f'Ignoring {category_type} category "{name}": blank or duplicate.')
            return None
        payload = {'name': name, 'type': category_type, 'order': len(existing)}
        return await self.engine.write(AddEntry(EntityKind.Categories, payload))

    async def remove_category(self, name: str, category_type: str = 'expense') -> None:
        category = self._find_category(name, category_type)
        if category is None:
            logging.debug(f'No {category_type} category named "{name}" to remove.')
            return
        await self.engine.write(DeleteEntry(EntityKind.Categories, category[ID_FIELD]))

    async def rename_category(self, old_name: str, new_name: str, category_type: str = 'expense') -> None:
        """Rename a category and every transaction filed under it."""
        category = self._find_category(old_name, category_type)
        if category is None:
            logging.debug(f'No {category_type} category named "{old_name}" to rename.')
            return
        if not new_name.strip() or new_name in self.category_names(category_type):
            logging.debug(f'Ignoring rename of "{old_name}" to "{new_name}": blank or duplicate.')
            return
        await self.engine.write(UpdateEntry(EntityKind.Categories, category[ID_FIELD], {'name': new_name}))
        await self.bulk_rename('category', old_name, new_name)

    async def update_category_order(self, category_type: str, ordered_names: Sequence[str]) -> None:
        """Persist a new display order; only categories whose position changed are written."""
        await self._write_order(EntityKind.Categories, self._categories(category_type), ordered_names)

    # Payment methods

    def _payment_methods(self) -> List[Dict[str, Any]]:
        kind = EntityKind.PaymentMethods
        return apply_query(self.engine.snapshot(kind), order=default_order(kind))

    def payment_methods(self) -> List[str]:
        return [p['name'] for p in self._payment_methods()]

    async def add_payment_method(self, name: str) -> Optional[Dict[str, Any]]:
        existing = self.payment_methods()
        if not name.strip() or name in existing:
            logging.debug(f'Ignoring payment method "{name}": blank or duplicate.')
            return None
        payload = {'name': name, 'order': len(existing)}
        return await self.engine.write(AddEntry(EntityKind.PaymentMethods, payload))

    async def remove_payment_method(self, name: str) -> None:
        method = next((p for p in self._payment_methods() if p.get('name') == name), None)
        if method is None:
            logging.debug(f'No payment method named "{name}" to remove.')
            return
        await self.engine.write(DeleteEntry(EntityKind.PaymentMethods, method[ID_FIELD]))

    async def rename_payment_method(self, old_name: str, new_name: str) -> None:
        """Rename a payment method and every transaction paid with it."""
        method = next((p for p in self._payment_methods() if p.get('name') == old_name), None)
        if method is None or not new_name.strip() or new_name in self.payment_methods():
            logging.debug(f'Ignoring rename of payment method "{old_name}" to "{new_name}".')
            return
        await self.engine.write(UpdateEntry(EntityKind.PaymentMethods, method[ID_FIELD], {'name': new_name}))
        await self.bulk_rename('payment_method', old_name, new_name)

    async def update_payment_method_order(self, ordered_names: Sequence[str]) -> None:
        await self._write_order(EntityKind.PaymentMethods, self._payment_methods(), ordered_names)

    # Budget tags and categories

    def _budget_rows(self, tags: bool) -> List[Dict[str, Any]]:
        # Tags and categories share a collection; only categories have a parent
        kind = EntityKind.BudgetCategories
        rows = [r for r in self.engine.snapshot(kind) if (r.get('parent_id') is None) == tags]
        return apply_query(rows, order=default_order(kind))

    def _find_budget_tag(self, name: str) -> Optional[Dict[str, Any]]:
        return next((t for t in self._budget_rows(tags=True) if t.get('name') == name), None)

    def _find_budget_category(self, name: str) -> Optional[Dict[str, Any]]:
        return next((c for c in self._budget_rows(tags=False) if c.get('name') == name), None)

    def budget_tags(self) -> List[str]:
        return [t['name'] for t in self._budget_rows(tags=True)]

    def budget_categories(self, tag: Optional[str] = None) -> List[str]:
        """Return budget category names, optionally only the ones filed under ``tag``."""
        rows = self._budget_rows(tags=False)
        if tag is not None:
            tag_row = self._find_budget_tag(tag)
            if tag_row is None:
                return []
            rows = [r for r in rows if r.get('parent_id') == tag_row[ID_FIELD]]
        return [r['name'] for r in rows]

    async def ensure_no_tag(self) -> Dict[str, Any]:
        """Return the tag untagged budget categories are filed under, creating it when missing."""
        tag = self._find_budget_tag(NO_TAG)
        if tag is not None:
            return tag
        payload = {'name': NO_TAG, 'parent_id': None, 'default_value': 0, 'order': 0}
        return await self.engine.write(AddEntry(EntityKind.BudgetCategories, payload))

    async def add_budget_tag(self, name: str) -> Optional[Dict[str, Any]]:
        tags = self._budget_rows(tags=True)
        if not name.strip() or name in [t['name'] for t in tags]:
            logging.debug(f'Ignoring budget tag "{name}": blank or duplicate.')
            return None
        order = max((t.get('order') or 0 for t in tags), default=-1) + 1
        payload = {'name': name.strip(), 'parent_id': None, 'default_value': 0, 'order': order}
        return await self.engine.write(AddEntry(EntityKind.BudgetCategories, payload))

    async def rename_budget_tag(self, old_name: str, new_name: str) -> None:
        tag = self._find_budget_tag(old_name)
        if tag is None or old_name == NO_TAG or not new_name.strip() or new_name in self.budget_tags():
            logging.debug(f'Ignoring rename of budget tag "{old_name}" to "{new_name}".')
            return
        await self.engine.write(UpdateEntry(EntityKind.BudgetCategories, tag[ID_FIELD], {'name': new_name}))

    async def remove_budget_tag(self, name: str) -> None:
        """Remove a tag together with the budget categories filed under it.

        Raises:
            ValueError: If ``name`` is the ``NoTag`` tag.
        """
        if name == NO_TAG:
            raise ValueError(f'The "{NO_TAG}" budget tag cannot be removed.')
        tag = self._find_budget_tag(name)
        if tag is None:
            logging.debug(f'No budget tag named "{name}" to remove.')
            return
        kind = EntityKind.BudgetCategories
        for category in self._budget_rows(tags=False):
            if category.get('parent_id') == tag[ID_FIELD]:
                await self.engine.write(DeleteEntry(kind, category[ID_FIELD]))
        await self.engine.write(DeleteEntry(kind, tag[ID_FIELD]))

    async def update_budget_tag_order(self, ordered_names: Sequence[str]) -> None:
        await self._write_order(EntityKind.BudgetCategories, self._budget_rows(tags=True), ordered_names)

    async def add_budget_category(self, name: str, tag: Optional[str] = None,
                                  default_value: float = 0) -> Optional[Dict[str, Any]]:
        """Add a budget category under ``tag``, or under ``NoTag`` when no tag is given.

        Blank names and names already in use are ignored.

        Raises:
            ValueError: If ``tag`` does not exist.
        """
        if not name.strip() or name in self.budget_categories():
            logging.debug(f'Ignoring budget category "{name}": blank or duplicate.')
            return None
        if tag is None:
            parent = await self.ensure_no_tag()
        else:
            parent = self._find_budget_tag(tag)
            if parent is None:
                raise ValueError(f'No budget tag named "{tag}".')
        siblings = [c for c in self._budget_rows(tags=False) if c.get('parent_id') == parent[ID_FIELD]]
        payload = {
            'name': name.strip(),
            'parent_id': parent[ID_FIELD],
            'default_value': default_value,
            'order': len(siblings),
        }
        return await self.engine.write(AddEntry(EntityKind.BudgetCategories, payload))

    async def update_budget_category(self, name: str, tag: Optional[str] = None,
                                     default_value: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Move a budget category to another tag and/or change its default value."""
        category = self._find_budget_category(name)
        if category is None:
            logging.debug(f'No budget category named "{name}" to update.')
            return None
        changes: Dict[str, Any] = {}
        if tag is not None:
            parent = self._find_budget_tag(tag)
            if parent is None:
                raise ValueError(f'No budget tag named "{tag}".')
            changes['parent_id'] = parent[ID_FIELD]
        if default_value is not None:
            changes['default_value'] = default_value
        if not changes:
            return category
        return await self.engine.write(UpdateEntry(EntityKind.BudgetCategories, category[ID_FIELD], changes))

    async def rename_budget_category(self, old_name: str, new_name: str) -> None:
        """Rename a budget category and every budget transaction filed under it."""
        category = self._find_budget_category(old_name)
        if category is None or not new_name.strip() or new_name in self.budget_categories():
            logging.debug(f'Ignoring rename of budget category "{old_name}" to "{new_name}".')
            return
        await self.engine.write(
            UpdateEntry(EntityKind.BudgetCategories, category[ID_FIELD], {'name': new_name}))
        await self.engine.write(
            BulkRenameEntry(EntityKind.BudgetTransactions, 'category', old_name, new_name))

    async def remove_budget_category(self, name: str) -> None:
        category = self._find_budget_category(name)
        if category is None:
            logging.debug(f'No budget category named "{name}" to remove.')
            return
        await self.engine.write(DeleteEntry(EntityKind.BudgetCategories, category[ID_FIELD]))

    async def update_budget_category_order(self, tag: str, ordered_names: Sequence[str]) -> None:
        parent = self._find_budget_tag(tag)
        if parent is None:
            logging.debug(f'No budget tag named "{tag}" to reorder.')
            return
        rows = [c for c in self._budget_rows(tags=False) if c.get('parent_id') == parent[ID_FIELD]]
        await self._write_order(EntityKind.BudgetCategories, rows, ordered_names)

    # Budget transactions

    async def budget_transactions(self, filters: Sequence[Filter] = (),
                                  order: Optional[Sequence[Order]] = None) -> List[Dict[str, Any]]:
        kind = EntityKind.BudgetTransactions
        return await self.engine.read(kind, filters, default_order(kind) if order is None else order)

    async def add_budget_transaction(self, category: str, amount: float, date: str, month: str,
                                     comment: str = '', transaction_type: str = 'spend') -> Dict[str, Any]:
        """Record money allocated to (``budget``) or spent from (``spend``) a budget category.

        The transaction keeps both the category id and its name; renames rewrite the name.

        Raises:
            ValueError: If the type or the category is unknown.
        """
        if transaction_type not in BUDGET_TRANSACTION_TYPES:
            raise ValueError(
                f'Unknown budget transaction type "{transaction_type}", expected one of {BUDGET_TRANSACTION_TYPES}.')
        row = self._find_budget_category(category)
        if row is None:
            raise ValueError(f'No budget category named "{category}".')
        payload = {
            'date': date,
            'month': month,
            'category_id': row[ID_FIELD],
            'category': category,
            'amount': amount,
            'comment': comment,
            'type': transaction_type,
        }
        return await self.engine.write(AddEntry(EntityKind.BudgetTransactions, payload))

    async def allocate_budget(self, amounts: Dict[str, float], date: str, month: str,
                              comment: str = '') -> List[Dict[str, Any]]:
        """Add one ``budget`` transaction per category with a positive amount."""
        added = []
        for category, amount in amounts.items():
            if not amount or amount <= 0:
                continue
            added.append(await self.add_budget_transaction(category, amount, date, month, comment, 'budget'))
        return added

    async def update_budget_transaction(self, transaction_id: str,
                                        changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = dict(changes)
        if 'category' in changes:
            category = self._find_budget_category(changes['category'])
            if category is not None:
                changes['category_id'] = category[ID_FIELD]
        return await self.engine.write(UpdateEntry(EntityKind.BudgetTransactions, transaction_id, changes))

    async def remove_budget_transaction(self, transaction_id: str) -> None:
        await self.engine.write(DeleteEntry(EntityKind.BudgetTransactions, transaction_id))

    async def _write_order(self, kind: EntityKind, rows: Sequence[Dict[str, Any]],
                           ordered_names: Sequence[str]) -> None:
        # Only rows whose position changed are written
        by_name = {r['name']: r for r in rows}
        for i, name in enumerate(ordered_names):
            row = by_name.get(name)
            if row is None or row.get('order') == i:
                continue
            await self.engine.write(UpdateEntry(kind, row[ID_FIELD], {'order': i}))
