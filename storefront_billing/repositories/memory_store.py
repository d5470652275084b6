"""In-memory data store.

Backs tests and local development. Mirrors the REST store's observable
behaviour: generated ids, unique keys, affected rows returned from mutations.
"""

import copy
import threading
from typing import Any, Optional

from storefront_billing.logging_config import get_logger
from storefront_billing.repositories.data_store import DataStore, DataStoreError, Match, Row
from storefront_billing.utils.ids import new_id

logger = get_logger(__name__)

# Unique column groups enforced per table
DEFAULT_UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
    "subscriptions": [("store_id",)],
    "billing_subscriptions": [("subscription_id",)],
    "subscription_events": [("subscription_id", "version")],
    "subscription_projections": [("subscription_id",)],
    "processed_webhook_events": [("event_id",)],
}


def _matches(row: Row, match: Optional[Match]) -> bool:
    if not match:
        return True
    return all(row.get(column) == value for column, value in match.items())


class InMemoryDataStore(DataStore):
    """Dict-of-tables store with optional failure injection.

    Args:
        unique_keys: Column groups that must be unique per table
    """

    def __init__(self, unique_keys: Optional[dict[str, list[tuple[str, ...]]]] = None):
        self._tables: dict[str, dict[str, Row]] = {}
        self._unique_keys = DEFAULT_UNIQUE_KEYS if unique_keys is None else unique_keys
        self._failures: dict[tuple[str, str], Optional[int]] = {}
        self._lock = threading.RLock()

    def fail_on(self, table: str, operation: str, times: Optional[int] = None) -> None:
        """Make ``operation`` on ``table`` raise DataStoreError.

        Args:
            table: Table name
            operation: insert, update, delete, upsert or select
            times: Number of calls to fail, None for every call
        """
        self._failures[(table, operation)] = times

    def clear_failures(self) -> None:
        self._failures.clear()

    def _check_failure(self, table: str, operation: str) -> None:
        key = (table, operation)
        if key not in self._failures:
            return
        remaining = self._failures[key]
        if remaining is not None:
            if remaining <= 1:
                del self._failures[key]
            else:
                self._failures[key] = remaining - 1
        raise DataStoreError(table, operation, "injected failure")

    def _table(self, table: str) -> dict[str, Row]:
        return self._tables.setdefault(table, {})

    def _check_unique(self, table: str, row: Row, ignore_id: Optional[str] = None) -> None:
        for columns in self._unique_keys.get(table, []):
            if any(row.get(c) is None for c in columns):
                continue
            for existing_id, existing in self._table(table).items():
                if existing_id == ignore_id:
                    continue
                if all(existing.get(c) == row.get(c) for c in columns):
                    raise DataStoreError(
                        table,
                        "insert",
                        f"duplicate key value violates unique constraint on {columns}",
                        status_code=409,
                    )

    async def select(
        self,
        table: str,
        match: Optional[Match] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        with self._lock:
            self._check_failure(table, "select")
            rows = [copy.deepcopy(r) for r in self._table(table).values() if _matches(r, match)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table: str, rows: list[Row]) -> list[Row]:
        with self._lock:
            self._check_failure(table, "insert")
            pending = self._table(table)
            staged: dict[str, Row] = {}
            for row in rows:
                new_row = copy.deepcopy(row)
                new_row.setdefault("id", new_id())
                row_id = str(new_row["id"])
                if row_id in pending or row_id in staged:
                    raise DataStoreError(table, "insert", f"duplicate id {row_id}", status_code=409)
                self._check_unique(table, new_row)
                staged[row_id] = new_row
            pending.update(staged)
            stored = [copy.deepcopy(r) for r in staged.values()]
        logger.debug("memory_store_insert", table=table, count=len(stored))
        return stored

    async def update(self, table: str, values: Row, match: Match) -> list[Row]:
        with self._lock:
            self._check_failure(table, "update")
            updated: list[Row] = []
            for row_id, row in self._table(table).items():
                if _matches(row, match):
                    candidate = {**row, **copy.deepcopy(values)}
                    self._check_unique(table, candidate, ignore_id=row_id)
                    row.update(copy.deepcopy(values))
                    updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, match: Match) -> list[Row]:
        with self._lock:
            self._check_failure(table, "delete")
            rows = self._table(table)
            doomed = [row_id for row_id, row in rows.items() if _matches(row, match)]
            return [rows.pop(row_id) for row_id in doomed]

    async def upsert(self, table: str, rows: list[Row], on_conflict: str = "id") -> list[Row]:
        conflict_columns = [c.strip() for c in on_conflict.split(",")]
        with self._lock:
            self._check_failure(table, "upsert")
            result: list[Row] = []
            for row in rows:
                key = {c: row.get(c) for c in conflict_columns}
                existing = None
                if all(v is not None for v in key.values()):
                    existing = next(
                        (r for r in self._table(table).values() if _matches(r, key)), None
                    )
                if existing is not None:
                    existing.update(copy.deepcopy({k: v for k, v in row.items() if k != "id"}))
                    result.append(copy.deepcopy(existing))
                else:
                    new_row = copy.deepcopy(row)
                    new_row.setdefault("id", new_id())
                    self._check_unique(table, new_row)
                    self._table(table)[str(new_row["id"])] = new_row
                    result.append(copy.deepcopy(new_row))
        return result

    def rows(self, table: str) -> list[Row]:
        """Snapshot of a table's rows (test inspection)."""
        with self._lock:
            return [copy.deepcopy(r) for r in self._table(table).values()]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()

    def __repr__(self) -> str:
        sizes: dict[str, Any] = {name: len(rows) for name, rows in self._tables.items()}
        return f"InMemoryDataStore(tables={sizes})"
