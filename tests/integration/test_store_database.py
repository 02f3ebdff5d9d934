"""
Integration tests for taskseries.store.database against a real SQLite file.

Covers:
- Schema creation and task round trips
- Compare-and-swap updates and deletes
- Exception upserts keyed by (task_id, original_occurrence_time)
- Window queries and system settings
"""

from datetime import UTC, datetime

import pytest

from taskseries.exceptions import ConflictError, StoreError
from taskseries.models import TaskStatus
from taskseries.store.database import TASK_LIMITS_KEY, DatabaseManager

from conftest import make_task

pytestmark = pytest.mark.integration

WEEK2 = datetime(2024, 3, 11, 9, 0, tzinfo=UTC)
WEEK3 = datetime(2024, 3, 18, 9, 0, tzinfo=UTC)


async def _insert(store: DatabaseManager, **kwargs):
    async with store.transaction() as tx:
        return await tx.insert_task(make_task(**kwargs))


class TestTasks:
    @pytest.mark.asyncio
    async def test_insert_when_new_task_then_readable_with_timestamps(self, store: DatabaseManager) -> None:
        stored = await _insert(store)

        loaded = await store.get_task("task-1")

        assert loaded == stored
        assert loaded is not None
        assert loaded.rule_text == "FREQ=WEEKLY;INTERVAL=1;COUNT=4"
        assert loaded.dtstart == datetime(2024, 3, 4, 9, 0, tzinfo=UTC)
        assert loaded.version == 1
        assert loaded.created_at is not None

    @pytest.mark.asyncio
    async def test_get_task_when_missing_then_none(self, store: DatabaseManager) -> None:
        assert await store.get_task("nope") is None

    @pytest.mark.asyncio
    async def test_insert_when_duplicate_id_then_conflict(self, store: DatabaseManager) -> None:
        await _insert(store)
        with pytest.raises(ConflictError):
            await _insert(store)

    @pytest.mark.asyncio
    async def test_update_when_version_matches_then_version_bumped(self, store: DatabaseManager) -> None:
        stored = await _insert(store)

        async with store.transaction() as tx:
            updated = await tx.update_task(stored.model_copy(update={"title": "Feed cat"}), stored.version)

        assert updated.title == "Feed cat"
        assert updated.version == stored.version + 1

    @pytest.mark.asyncio
    async def test_update_when_version_stale_then_conflict_and_unchanged(self, store: DatabaseManager) -> None:
        stored = await _insert(store)

        with pytest.raises(ConflictError):
            async with store.transaction() as tx:
                await tx.update_task(stored.model_copy(update={"title": "Feed cat"}), stored.version + 5)

        loaded = await store.get_task("task-1")
        assert loaded is not None
        assert loaded.title == "Water plants"

    @pytest.mark.asyncio
    async def test_delete_when_version_stale_then_conflict(self, store: DatabaseManager) -> None:
        stored = await _insert(store)
        with pytest.raises(ConflictError):
            async with store.transaction() as tx:
                await tx.delete_task(stored.id, 99)
        assert await store.get_task("task-1") is not None


class TestTransactions:
    @pytest.mark.asyncio
    async def test_transaction_when_body_raises_then_rolled_back(self, store: DatabaseManager) -> None:
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.insert_task(make_task())
                raise RuntimeError("boom")

        assert await store.get_task("task-1") is None

    @pytest.mark.asyncio
    async def test_initialize_when_path_is_directory_then_store_error(self, tmp_path) -> None:
        manager = DatabaseManager(tmp_path)
        with pytest.raises(StoreError):
            await manager.initialize()


class TestExceptions:
    @pytest.mark.asyncio
    async def test_upsert_when_repeated_then_one_row_with_merged_fields(self, store: DatabaseManager) -> None:
        await _insert(store)

        async with store.transaction() as tx:
            first = await tx.upsert_exception("task-1", "user-1", WEEK2, {"override_title": "Ferns"})
        async with store.transaction() as tx:
            second = await tx.upsert_exception("task-1", "user-1", WEEK2, {"is_complete": True})

        rows = await store.list_exceptions("task-1")
        assert len(rows) == 1
        assert second.id == first.id
        assert rows[0].override_title == "Ferns"
        assert rows[0].is_complete is True
        assert rows[0].original_occurrence_time == WEEK2

    @pytest.mark.asyncio
    async def test_upsert_when_field_none_then_column_cleared(self, store: DatabaseManager) -> None:
        await _insert(store)
        async with store.transaction() as tx:
            await tx.upsert_exception("task-1", "user-1", WEEK2, {"new_duration_minutes": 45})
            cleared = await tx.upsert_exception("task-1", "user-1", WEEK2, {"new_duration_minutes": None})

        assert cleared.new_duration_minutes is None

    @pytest.mark.asyncio
    async def test_upsert_when_unknown_column_then_value_error(self, store: DatabaseManager) -> None:
        await _insert(store)
        with pytest.raises(ValueError):
            async with store.transaction() as tx:
                await tx.upsert_exception("task-1", "user-1", WEEK2, {"title": "nope"})

    @pytest.mark.asyncio
    async def test_upsert_when_task_missing_then_conflict(self, store: DatabaseManager) -> None:
        with pytest.raises(ConflictError):
            async with store.transaction() as tx:
                await tx.upsert_exception("ghost", "user-1", WEEK2, {"is_cancelled": True})

    @pytest.mark.asyncio
    async def test_delete_task_then_exceptions_cascade(self, store: DatabaseManager) -> None:
        stored = await _insert(store)
        async with store.transaction() as tx:
            await tx.upsert_exception("task-1", "user-1", WEEK2, {"is_cancelled": True})
            await tx.upsert_exception("task-1", "user-1", WEEK3, {"is_cancelled": True})

        async with store.transaction() as tx:
            await tx.delete_task(stored.id, stored.version)

        assert await store.list_exceptions("task-1") == []


class TestWindowQueries:
    @pytest.mark.asyncio
    async def test_fetch_tasks_for_window_filters_owner_status_and_start(self, store: DatabaseManager) -> None:
        await _insert(store, task_id="recurring")
        await _insert(store, task_id="one-off-in", rule=None, dtstart=datetime(2024, 3, 20, tzinfo=UTC))
        await _insert(store, task_id="one-off-out", rule=None, dtstart=datetime(2024, 5, 1, tzinfo=UTC))
        await _insert(store, task_id="later", dtstart=datetime(2024, 6, 1, tzinfo=UTC))
        await _insert(store, task_id="archived", status=TaskStatus.ARCHIVED)
        await _insert(store, task_id="foreign", user_id="user-2")

        tasks = await store.fetch_tasks_for_window(
            "user-1", datetime(2024, 3, 1, tzinfo=UTC), datetime(2024, 3, 31, tzinfo=UTC)
        )

        assert [t.id for t in tasks] == ["recurring", "one-off-in"]

    @pytest.mark.asyncio
    async def test_fetch_exceptions_filters_by_original_instant(self, store: DatabaseManager) -> None:
        await _insert(store)
        async with store.transaction() as tx:
            await tx.upsert_exception("task-1", "user-1", WEEK2, {"is_complete": True})
            await tx.upsert_exception("task-1", "user-1", WEEK3, {"is_complete": True})

        rows = await store.fetch_exceptions(
            ["task-1"], datetime(2024, 3, 15, tzinfo=UTC), datetime(2024, 3, 31, tzinfo=UTC)
        )

        assert [r.original_occurrence_time for r in rows] == [WEEK3]
        assert await store.fetch_exceptions([], WEEK2, WEEK3) == []


class TestSystemSettings:
    @pytest.mark.asyncio
    async def test_max_duration_when_configured_then_returned(self, store: DatabaseManager) -> None:
        await store.set_system_setting(TASK_LIMITS_KEY, {"max_duration_minutes": 90})
        assert await store.get_max_duration_minutes() == 90

    @pytest.mark.asyncio
    async def test_max_duration_when_absent_or_invalid_then_none(self, store: DatabaseManager) -> None:
        assert await store.get_max_duration_minutes() is None
        await store.set_system_setting(TASK_LIMITS_KEY, {"max_duration_minutes": "lots"})
        assert await store.get_max_duration_minutes() is None

    @pytest.mark.asyncio
    async def test_database_info_counts_rows(self, store: DatabaseManager) -> None:
        await _insert(store)
        info = await store.get_database_info()
        assert info["tasks_count"] == 1
        assert info["task_instance_exceptions_count"] == 0
