"""Multi-table writes with compensation over a non-transactional data store.

A plan is built in two phases:

1. ``TransactionBuilder`` collects declarative mutation steps. Builders are
   immutable; every ``insert``/``update``/``delete``/``upsert`` call returns a
   new builder.
2. ``await builder.build(store)`` reads whatever each step needs to be undone
   (current rows for updates and deletes, existence for upserts, generated ids
   for inserts) and returns a frozen ``ExecutionPlan`` in which every step is
   already paired with its compensation.

``TransactionManager.execute`` then applies the steps in order. When a step
fails, the compensations of the steps already applied run in reverse order,
best-effort, and a single ``TransactionFailedError`` is raised.

This gives eventual atomicity only. There is no isolation: another writer can
observe or modify rows between two steps, and a compensation restores the
values read at build time, overwriting anything written to those columns in
between. Callers that need idempotency must use conditional predicates.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from storefront_billing.errors import AppError, ErrorCategory, ErrorCode, normalize_error
from storefront_billing.logging_config import get_logger
from storefront_billing.metrics import BillingMetrics
from storefront_billing.repositories.data_store import DataStore, DataStoreError, Match, Row
from storefront_billing.state_logger import log_transaction_step
from storefront_billing.utils.ids import new_id

logger = get_logger(__name__)


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"


class MutationStep(BaseModel):
    """One table-level mutation."""

    model_config = ConfigDict(frozen=True)

    table: str
    operation: Operation
    rows: tuple[dict[str, Any], ...] = Field(default=(), description="Rows for insert/upsert")
    values: dict[str, Any] = Field(default_factory=dict, description="Column values for update")
    match: dict[str, Any] = Field(default_factory=dict, description="Equality predicate for update/delete")
    on_conflict: str = "id"

    def describe(self) -> str:
        return f"{self.operation.value} {self.table}"


class PlannedStep(BaseModel):
    """A mutation paired with the mutations that undo it."""

    model_config = ConfigDict(frozen=True)

    index: int
    step: MutationStep
    compensation: tuple[MutationStep, ...] = ()


class ExecutionPlan(BaseModel):
    """Fully resolved, read-only plan produced by ``TransactionBuilder.build``."""

    model_config = ConfigDict(frozen=True)

    steps: tuple[PlannedStep, ...] = ()

    def __len__(self) -> int:
        return len(self.steps)


class TransactionFailedError(AppError):
    """A plan step failed; applied steps were compensated (best-effort).

    Attributes:
        failed_step: Index of the step that failed
        failed_table: Table of the failing step
        compensated_steps: Indexes whose compensation succeeded, in the order run
        compensation_failures: Indexes whose compensation raised
    """

    def __init__(
        self,
        failed_step: int,
        step: MutationStep,
        cause: AppError,
        compensated_steps: list[int],
        compensation_failures: list[int],
    ):
        super().__init__(
            ErrorCode.SERVER_DATABASE_ERROR,
            f"Transaction failed at step {failed_step} ({step.describe()}): {cause.message}",
            ErrorCategory.SERVER,
            details={
                "failed_step": failed_step,
                "failed_table": step.table,
                "failed_operation": step.operation.value,
                "compensated_steps": compensated_steps,
                "compensation_failures": compensation_failures,
                "cause_code": cause.code.value,
            },
            original_error=cause,
        )
        self.failed_step = failed_step
        self.failed_table = step.table
        self.compensated_steps = compensated_steps
        self.compensation_failures = compensation_failures
        self.fully_compensated = not compensation_failures


def _as_rows(data: Union[Row, list[Row]]) -> tuple[dict[str, Any], ...]:
    if isinstance(data, dict):
        return (dict(data),)
    return tuple(dict(row) for row in data)


class TransactionBuilder:
    """Immutable collector of mutation steps."""

    def __init__(self, steps: tuple[MutationStep, ...] = ()):
        self._steps = steps

    def _with(self, step: MutationStep) -> "TransactionBuilder":
        return TransactionBuilder(self._steps + (step,))

    def insert(self, table: str, data: Union[Row, list[Row]]) -> "TransactionBuilder":
        return self._with(MutationStep(table=table, operation=Operation.INSERT, rows=_as_rows(data)))

    def update(self, table: str, values: Row, match: Match) -> "TransactionBuilder":
        if not match:
            raise ValueError("update steps require a match predicate")
        return self._with(
            MutationStep(table=table, operation=Operation.UPDATE, values=dict(values), match=dict(match))
        )

    def delete(self, table: str, match: Match) -> "TransactionBuilder":
        if not match:
            raise ValueError("delete steps require a match predicate")
        return self._with(MutationStep(table=table, operation=Operation.DELETE, match=dict(match)))

    def upsert(
        self, table: str, data: Union[Row, list[Row]], on_conflict: str = "id"
    ) -> "TransactionBuilder":
        return self._with(
            MutationStep(
                table=table,
                operation=Operation.UPSERT,
                rows=_as_rows(data),
                on_conflict=on_conflict,
            )
        )

    @property
    def steps(self) -> tuple[MutationStep, ...]:
        return self._steps

    def __len__(self) -> int:
        return len(self._steps)

    async def build(self, store: DataStore) -> ExecutionPlan:
        """Resolve every step's compensation against the current store contents.

        Args:
            store: Data store the plan will run against

        Returns:
            Frozen execution plan
        """
        planned: list[PlannedStep] = []
        for index, step in enumerate(self._steps):
            resolved, compensation = await _resolve(store, step)
            planned.append(PlannedStep(index=index, step=resolved, compensation=compensation))
        return ExecutionPlan(steps=tuple(planned))


async def _resolve(
    store: DataStore, step: MutationStep
) -> tuple[MutationStep, tuple[MutationStep, ...]]:
    """Return the step to run (with generated ids filled) and its compensation."""
    if step.operation == Operation.INSERT:
        rows = tuple({**row, "id": row.get("id") or new_id()} for row in step.rows)
        resolved = step.model_copy(update={"rows": rows})
        undo = tuple(
            MutationStep(table=step.table, operation=Operation.DELETE, match={"id": row["id"]})
            for row in rows
        )
        return resolved, undo

    if step.operation == Operation.UPDATE:
        current = await store.select(step.table, match=step.match)
        undo = tuple(
            MutationStep(
                table=step.table,
                operation=Operation.UPDATE,
                values={column: row.get(column) for column in step.values},
                match={"id": row["id"]},
            )
            for row in current
        )
        return step, undo

    if step.operation == Operation.DELETE:
        current = await store.select(step.table, match=step.match)
        undo = (MutationStep(table=step.table, operation=Operation.INSERT, rows=tuple(current)),) if current else ()
        return step, undo

    # Upsert: existing rows are restored, new rows are deleted.
    conflict_columns = [c.strip() for c in step.on_conflict.split(",")]
    rows = []
    undo_steps: list[MutationStep] = []
    for row in step.rows:
        if conflict_columns == ["id"] and not row.get("id"):
            row = {**row, "id": new_id()}
        key = {column: row.get(column) for column in conflict_columns}
        rows.append(row)
        existing = await store.select(step.table, match=key, limit=1)
        if existing:
            previous = existing[0]
            undo_steps.append(
                MutationStep(
                    table=step.table,
                    operation=Operation.UPDATE,
                    values={c: previous.get(c) for c in row if c not in key and c != "id"},
                    match=key,
                )
            )
        else:
            undo_steps.append(MutationStep(table=step.table, operation=Operation.DELETE, match=key))
    return step.model_copy(update={"rows": tuple(rows)}), tuple(undo_steps)


async def _apply(store: DataStore, step: MutationStep) -> list[Row]:
    if step.operation == Operation.INSERT:
        return await store.insert(step.table, list(step.rows))
    if step.operation == Operation.UPSERT:
        return await store.upsert(step.table, list(step.rows), on_conflict=step.on_conflict)
    if step.operation == Operation.UPDATE:
        affected = await store.update(step.table, dict(step.values), dict(step.match))
    else:
        affected = await store.delete(step.table, dict(step.match))
    if not affected:
        raise DataStoreError(step.table, step.operation.value, f"no rows matched {step.match}")
    return affected


OperationCallback = Callable[[int, MutationStep, list[Row]], None]
CommitCallback = Callable[[list[list[Row]]], None]
RollbackCallback = Callable[[TransactionFailedError], None]


class TransactionManager:
    """Executes plans with reverse-order compensation on failure.

    Args:
        store: Data store to run against
        metrics: Optional metrics sink for commit/rollback counts
        on_operation: Called after each applied step with (index, step, affected rows)
        on_commit: Called with all step results after the last step
        on_rollback: Called with the failure after compensation
    """

    def __init__(
        self,
        store: DataStore,
        metrics: Optional[BillingMetrics] = None,
        on_operation: Optional[OperationCallback] = None,
        on_commit: Optional[CommitCallback] = None,
        on_rollback: Optional[RollbackCallback] = None,
    ):
        self._store = store
        self._metrics = metrics
        self._on_operation = on_operation
        self._on_commit = on_commit
        self._on_rollback = on_rollback

    @property
    def store(self) -> DataStore:
        return self._store

    def builder(self) -> TransactionBuilder:
        return TransactionBuilder()

    async def execute(self, plan: Union[ExecutionPlan, TransactionBuilder]) -> list[list[Row]]:
        """Apply every step of ``plan`` or compensate and fail.

        Args:
            plan: A built plan, or a builder to build against this manager's store

        Returns:
            Affected rows per step, in step order (empty list for an empty plan)

        Raises:
            TransactionFailedError: A step failed; earlier steps were compensated
        """
        if isinstance(plan, TransactionBuilder):
            plan = await plan.build(self._store)

        if not plan.steps:
            logger.debug("transaction_empty_commit")
            self._notify(self._on_commit, [])
            return []

        results: list[list[Row]] = []
        for planned in plan.steps:
            step = planned.step
            log_transaction_step(planned.index, step.table, step.operation.value, "apply")
            try:
                affected = await _apply(self._store, step)
            except Exception as e:
                cause = normalize_error(e)
                logger.error(
                    "transaction_step_failed",
                    step=planned.index,
                    table=step.table,
                    operation=step.operation.value,
                    error=cause.message,
                    error_code=cause.code.value,
                )
                failure = await self._rollback(plan, planned, cause)
                raise failure from e
            results.append(affected)
            self._notify(self._on_operation, planned.index, step, affected)

        logger.info("transaction_committed", steps=len(plan.steps))
        if self._metrics:
            self._metrics.record_transaction("committed")
        self._notify(self._on_commit, results)
        return results

    async def _rollback(
        self, plan: ExecutionPlan, failed: PlannedStep, cause: AppError
    ) -> TransactionFailedError:
        compensated: list[int] = []
        compensation_failures: list[int] = []

        for planned in reversed(plan.steps[: failed.index]):
            try:
                for undo in planned.compensation:
                    log_transaction_step(planned.index, undo.table, undo.operation.value, "compensate")
                    await self._compensate(undo)
                compensated.append(planned.index)
            except Exception as e:
                compensation_failures.append(planned.index)
                logger.error(
                    "transaction_compensation_failed",
                    step=planned.index,
                    table=planned.step.table,
                    operation=planned.step.operation.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        failure = TransactionFailedError(
            failed_step=failed.index,
            step=failed.step,
            cause=cause,
            compensated_steps=compensated,
            compensation_failures=compensation_failures,
        )
        logger.warning(
            "transaction_rolled_back",
            failed_step=failed.index,
            compensated_steps=compensated,
            compensation_failures=compensation_failures,
        )
        if self._metrics:
            self._metrics.record_transaction("rolled_back" if not compensation_failures else "partially_rolled_back")
        self._notify(self._on_rollback, failure)
        return failure

    async def _compensate(self, undo: MutationStep) -> None:
        # Compensations that find nothing to undo are not failures.
        if undo.operation == Operation.INSERT:
            await self._store.insert(undo.table, list(undo.rows))
        elif undo.operation == Operation.UPDATE:
            await self._store.update(undo.table, dict(undo.values), dict(undo.match))
        elif undo.operation == Operation.DELETE:
            await self._store.delete(undo.table, dict(undo.match))
        else:
            await self._store.upsert(undo.table, list(undo.rows), on_conflict=undo.on_conflict)

    @staticmethod
    def _notify(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(
                "transaction_callback_failed",
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
                exc_info=True,
            )
