"""Relational data store interface.

The store exposes table-scoped CRUD with equality ``match`` predicates and
returns the affected rows from every mutation. It offers no multi-statement
transactions; ``services.transaction_manager`` provides compensation on top.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from storefront_billing.errors import AppError, ErrorCategory, ErrorCode

Row = dict[str, Any]
Match = dict[str, Any]


class DataStoreError(AppError):
    """Raised when the data store rejects or fails an operation."""

    def __init__(
        self,
        table: str,
        operation: str,
        message: str,
        original_error: Optional[BaseException] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            ErrorCode.SERVER_DATABASE_ERROR,
            f"{operation} on '{table}' failed: {message}",
            ErrorCategory.SERVER,
            details={"table": table, "operation": operation, "status_code": status_code},
            original_error=original_error,
        )
        self.table = table
        self.operation = operation
        self.status_code = status_code


class DataStore(ABC):
    """Async table store used by every persistence path."""

    @abstractmethod
    async def select(
        self,
        table: str,
        match: Optional[Match] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        """Rows of ``table`` equal to ``match`` on every given column."""

    @abstractmethod
    async def insert(self, table: str, rows: list[Row]) -> list[Row]:
        """Insert rows, returning them as stored."""

    @abstractmethod
    async def update(self, table: str, values: Row, match: Match) -> list[Row]:
        """Set ``values`` on matching rows, returning the updated rows."""

    @abstractmethod
    async def delete(self, table: str, match: Match) -> list[Row]:
        """Delete matching rows, returning the deleted rows."""

    @abstractmethod
    async def upsert(self, table: str, rows: list[Row], on_conflict: str = "id") -> list[Row]:
        """Insert rows or merge them into rows sharing the ``on_conflict`` column(s)."""

    async def select_one(self, table: str, match: Match) -> Optional[Row]:
        """First matching row, or None."""
        rows = await self.select(table, match=match, limit=1)
        return rows[0] if rows else None

    async def close(self) -> None:
        """Release connections."""
        return None
