"""Tests for TransactionManager - planned multi-table writes with compensation."""

import pytest

from storefront_billing.errors import ErrorCategory, ErrorCode
from storefront_billing.services.transaction_manager import (
    ExecutionPlan,
    Operation,
    TransactionBuilder,
    TransactionFailedError,
    TransactionManager,
)


@pytest.fixture
def manager(store, metrics):
    return TransactionManager(store, metrics=metrics)


class TestBuilder:
    """Test the immutable builder and plan resolution."""

    def test_builder_is_immutable(self):
        """Each call returns a new builder and leaves the original untouched."""
        empty = TransactionBuilder()
        one = empty.insert("a", {"id": "1"})
        two = one.insert("b", {"id": "2"})

        assert len(empty) == 0
        assert len(one) == 1
        assert len(two) == 2

    def test_update_and_delete_require_match(self):
        with pytest.raises(ValueError):
            TransactionBuilder().update("a", {"x": 1}, {})
        with pytest.raises(ValueError):
            TransactionBuilder().delete("a", {})

    async def test_insert_gets_id_and_delete_compensation(self, store):
        plan = await TransactionBuilder().insert("a", {"name": "x"}).build(store)

        step = plan.steps[0]
        row_id = step.step.rows[0]["id"]
        assert row_id
        assert step.compensation[0].operation == Operation.DELETE
        assert step.compensation[0].match == {"id": row_id}

    async def test_update_compensation_restores_previous_values(self, store):
        await store.insert("a", [{"id": "r1", "status": "old", "other": 1}])

        plan = await TransactionBuilder().update("a", {"status": "new"}, {"id": "r1"}).build(store)

        undo = plan.steps[0].compensation[0]
        assert undo.operation == Operation.UPDATE
        assert undo.values == {"status": "old"}
        assert undo.match == {"id": "r1"}

    async def test_upsert_compensation_depends_on_existence(self, store):
        await store.insert("a", [{"id": "r1", "key": "k1", "value": 1}])

        plan = await (
            TransactionBuilder()
            .upsert("a", {"key": "k1", "value": 2}, on_conflict="key")
            .upsert("a", {"key": "k2", "value": 3}, on_conflict="key")
            .build(store)
        )

        existing_undo = plan.steps[0].compensation[0]
        new_undo = plan.steps[1].compensation[0]
        assert existing_undo.operation == Operation.UPDATE
        assert existing_undo.values == {"value": 1}
        assert new_undo.operation == Operation.DELETE
        assert new_undo.match == {"key": "k2"}

    async def test_plan_is_frozen(self, store):
        plan = await TransactionBuilder().insert("a", {"id": "1"}).build(store)

        assert isinstance(plan, ExecutionPlan)
        with pytest.raises(Exception):
            plan.steps = ()


class TestExecute:
    """Test plan execution."""

    async def test_empty_plan_commits(self, manager):
        commits = []
        manager._on_commit = commits.append

        assert await manager.execute(TransactionBuilder()) == []
        assert commits == [[]]

    async def test_steps_run_in_order_and_see_earlier_effects(self, manager, store):
        builder = (
            TransactionBuilder()
            .insert("a", {"id": "r1", "status": "draft"})
            .insert("b", {"id": "r2"})
        )
        results = await manager.execute(builder)

        assert [rows[0]["id"] for rows in results] == ["r1", "r2"]
        assert store.count("a") == 1
        assert store.count("b") == 1

    async def test_callbacks_fire(self, store):
        operations, commits = [], []
        manager = TransactionManager(
            store,
            on_operation=lambda index, step, rows: operations.append((index, step.table)),
            on_commit=commits.append,
        )

        await manager.execute(TransactionBuilder().insert("a", {"id": "1"}).insert("b", {"id": "2"}))

        assert operations == [(0, "a"), (1, "b")]
        assert len(commits) == 1

    async def test_failing_callback_does_not_break_commit(self, store):
        def explode(*args):
            raise RuntimeError("observer broke")

        manager = TransactionManager(store, on_operation=explode, on_commit=explode)

        await manager.execute(TransactionBuilder().insert("a", {"id": "1"}))
        assert store.count("a") == 1


class TestCompensation:
    """Test failure handling and reverse-order compensation."""

    async def test_failed_second_step_reverts_first_and_skips_third(self, manager, store):
        """insert A, update missing B, insert C: A is removed and C never written."""
        rollbacks = []
        manager._on_rollback = rollbacks.append
        builder = (
            TransactionBuilder()
            .insert("table_a", {"id": "A", "value": 1})
            .update("table_b", {"value": 2}, {"id": "B"})
            .insert("table_c", {"id": "C", "value": 3})
        )

        with pytest.raises(TransactionFailedError) as exc_info:
            await manager.execute(builder)

        error = exc_info.value
        assert error.failed_step == 1
        assert error.failed_table == "table_b"
        assert error.compensated_steps == [0]
        assert error.fully_compensated
        assert error.code == ErrorCode.SERVER_DATABASE_ERROR
        assert error.category == ErrorCategory.SERVER
        assert store.rows("table_a") == []
        assert store.rows("table_c") == []
        assert rollbacks == [error]

    async def test_update_is_restored_on_later_failure(self, manager, store):
        await store.insert("subscriptions", [{"id": "s1", "status": "trialing", "active": True}])
        store.fail_on("audit", "insert")
        builder = (
            TransactionBuilder()
            .update("subscriptions", {"status": "active"}, {"id": "s1"})
            .insert("audit", {"subscription_id": "s1"})
        )

        with pytest.raises(TransactionFailedError):
            await manager.execute(builder)

        row = (await store.select("subscriptions", {"id": "s1"}))[0]
        assert row["status"] == "trialing"

    async def test_compensations_run_in_reverse_order(self, manager, store):
        await store.insert("a", [{"id": "r1", "value": 0}])
        store.fail_on("c", "insert")
        builder = (
            TransactionBuilder()
            .update("a", {"value": 1}, {"id": "r1"})
            .update("a", {"value": 2}, {"id": "r1"})
            .insert("c", {"id": "x"})
        )

        with pytest.raises(TransactionFailedError) as exc_info:
            await manager.execute(builder)

        # Both undos restore the value read at build time.
        assert exc_info.value.compensated_steps == [1, 0]
        assert (await store.select("a", {"id": "r1"}))[0]["value"] == 0

    async def test_failed_compensation_is_reported_and_others_continue(self, manager, store):
        store.fail_on("c", "insert")
        store.fail_on("b", "delete")
        builder = (
            TransactionBuilder()
            .insert("a", {"id": "1"})
            .insert("b", {"id": "2"})
            .insert("c", {"id": "3"})
        )

        with pytest.raises(TransactionFailedError) as exc_info:
            await manager.execute(builder)

        error = exc_info.value
        assert error.failed_step == 2
        assert error.compensation_failures == [1]
        assert error.compensated_steps == [0]
        assert not error.fully_compensated
        assert store.rows("a") == []
        assert len(store.rows("b")) == 1

    async def test_deleted_rows_are_reinserted(self, manager, store):
        await store.insert("a", [{"id": "r1", "value": "keep"}])
        store.fail_on("b", "insert")

        with pytest.raises(TransactionFailedError):
            await manager.execute(TransactionBuilder().delete("a", {"id": "r1"}).insert("b", {"id": "x"}))

        assert store.rows("a") == [{"id": "r1", "value": "keep"}]

    async def test_upsert_of_new_row_is_deleted(self, manager, store):
        store.fail_on("b", "insert")

        with pytest.raises(TransactionFailedError):
            await manager.execute(
                TransactionBuilder()
                .upsert("mirror", {"subscription_id": "s1", "status": "active"}, on_conflict="subscription_id")
                .insert("b", {"id": "x"})
            )

        assert store.rows("mirror") == []

    async def test_rollback_is_counted(self, manager, store, metrics):
        store.fail_on("b", "insert")

        with pytest.raises(TransactionFailedError):
            await manager.execute(TransactionBuilder().insert("a", {"id": "1"}).insert("b", {"id": "2"}))

        value = metrics.registry.get_sample_value(
            "subscription_transactions_total", {"outcome": "rolled_back"}
        )
        assert value == 1.0
