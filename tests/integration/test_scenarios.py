"""
End-to-end planner scenarios: create, expand, override, split and wipe.

Each scenario runs through TaskPlanner against a throwaway SQLite database.
"""

from datetime import UTC, datetime, time, timedelta

import pytest
import pytest_asyncio

from taskseries.core.timezone_utils import TimeZoneConverter
from taskseries.models import LocalStart, OccurrenceChanges, RecurrenceSpec, SetTo, Task
from taskseries.planner import TaskPlanner

pytestmark = pytest.mark.integration

MONDAYS = [datetime(2024, 3, d, 9, 0, tzinfo=UTC) for d in (4, 11, 18, 25)]
SIX_WEEKS_START = datetime(2024, 3, 1, tzinfo=UTC)
SIX_WEEKS_END = datetime(2024, 4, 12, tzinfo=UTC)


@pytest_asyncio.fixture
async def weekly_task(planner: TaskPlanner) -> Task:
    return await planner.create_series(
        "user-1",
        "Water plants",
        None,
        "2024-03-04",
        "09:00",
        "UTC",
        30,
        {"frequency": "weekly", "interval": 1, "end_type": "after", "occurrences": 4},
    )


class TestPlannerScenarios:
    @pytest.mark.asyncio
    async def test_create_and_expand_weekly_series(self, planner: TaskPlanner) -> None:
        task = await planner.create_series(
            "user-1",
            "Water plants",
            None,
            "2024-03-04",
            "09:00",
            "UTC",
            30,
            {"frequency": "weekly", "interval": 1, "end_type": "after", "occurrences": 4},
        )

        window = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        assert [i.start_time for i in window.instances] == MONDAYS
        assert all(i.start_time >= task.dtstart for i in window.instances)
        assert all(i.start_time.weekday() == 0 for i in window.instances)
        assert window.cap_reached is False

    @pytest.mark.asyncio
    async def test_single_override_moves_one_occurrence(self, planner: TaskPlanner, weekly_task: Task) -> None:
        await planner.edit_occurrence(
            "user-1",
            weekly_task.id,
            MONDAYS[1],
            "single",
            OccurrenceChanges(start=SetTo(LocalStart(time=time(11, 0)))),
        )

        window = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        assert len(window.instances) == 4
        shifted = [i for i in window.instances if i.is_modified]
        assert len(shifted) == 1
        assert shifted[0].start_time == MONDAYS[1] + timedelta(hours=2)
        assert shifted[0].original_occurrence_time == MONDAYS[1]
        unchanged = [i.start_time for i in window.instances if not i.is_modified]
        assert unchanged == [MONDAYS[0], MONDAYS[2], MONDAYS[3]]

    @pytest.mark.asyncio
    async def test_future_split_mid_series(self, planner: TaskPlanner, weekly_task: Task) -> None:
        await planner.toggle_completion("user-1", weekly_task.id, MONDAYS[3], True)

        new_task = await planner.edit_occurrence(
            "user-1",
            weekly_task.id,
            MONDAYS[2],
            "future",
            OccurrenceChanges(
                title=SetTo("X"),
                recurrence=SetTo(RecurrenceSpec(frequency="weekly", interval=2)),
            ),
        )

        old = await planner.store.get_task(weekly_task.id)
        assert old is not None
        assert old.rule_text == "FREQ=WEEKLY;INTERVAL=1;UNTIL=2024-03-18T08:59:59.999Z"
        assert old.rule is not None
        assert old.rule.until == MONDAYS[1] + timedelta(days=6, hours=23, minutes=59, seconds=59, milliseconds=999)

        assert isinstance(new_task, Task)
        assert new_task.dtstart == MONDAYS[2]
        assert new_task.rule_text == "FREQ=WEEKLY;INTERVAL=2"
        assert new_task.title == "X"

        assert [e.original_occurrence_time for e in await planner.store.list_exceptions(weekly_task.id)] == []
        assert await planner.store.list_exceptions(new_task.id) == []

    @pytest.mark.asyncio
    async def test_future_split_keeps_occurrence_sets_disjoint(self, planner: TaskPlanner, weekly_task: Task) -> None:
        before = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        new_task = await planner.edit_occurrence(
            "user-1", weekly_task.id, MONDAYS[2], "future", OccurrenceChanges(title=SetTo("Water cacti"))
        )
        after = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        originals = [i.original_occurrence_time for i in after.instances]
        assert originals == [i.original_occurrence_time for i in before.instances]
        assert len(set(originals)) == len(originals)
        assert [i.task_id for i in after.instances] == [weekly_task.id] * 2 + [new_task.id] * 2

    @pytest.mark.asyncio
    async def test_all_scope_edit_wipes_exceptions(self, planner: TaskPlanner, weekly_task: Task) -> None:
        await planner.edit_occurrence(
            "user-1", weekly_task.id, MONDAYS[1], "single", OccurrenceChanges(title=SetTo("Ferns"))
        )
        await planner.toggle_completion("user-1", weekly_task.id, MONDAYS[2], True)
        assert len(await planner.store.list_exceptions(weekly_task.id)) == 2

        await planner.edit_occurrence(
            "user-1", weekly_task.id, MONDAYS[0], "all", OccurrenceChanges(title=SetTo("Water everything"))
        )

        assert await planner.store.list_exceptions(weekly_task.id) == []

    @pytest.mark.asyncio
    async def test_daily_series_keeps_local_time_across_dst(self, planner: TaskPlanner) -> None:
        await planner.create_series(
            "user-1",
            "Morning pages",
            "Pen",
            "2024-03-07",
            "09:00",
            "America/New_York",
            20,
            {"frequency": "daily", "end_type": "after", "occurrences": 7},
        )

        window = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        assert len(window.instances) == 7
        local_times = {TimeZoneConverter.to_local(i.start_time, "America/New_York")[1] for i in window.instances}
        assert local_times == {time(9, 0)}
        assert {i.start_time.hour for i in window.instances} == {13, 14}

    @pytest.mark.asyncio
    async def test_never_ending_series_is_capped_and_reported(self, planner: TaskPlanner) -> None:
        task = await planner.create_series(
            "user-1", "Stretch", None, "2024-03-01", "07:00", "UTC", 10, {"frequency": "daily"}
        )

        window = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        assert len(window.instances) == planner.settings.max_occurrences
        assert window.cap_reached is True
        assert window.capped_task_ids == (task.id,)

    @pytest.mark.asyncio
    async def test_materialize_is_repeatable(self, planner: TaskPlanner, weekly_task: Task) -> None:
        await planner.toggle_completion("user-1", weekly_task.id, MONDAYS[0], True)

        first = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)
        second = await planner.materialize_window("user-1", SIX_WEEKS_START, SIX_WEEKS_END)

        assert first == second

    @pytest.mark.asyncio
    async def test_other_users_tasks_are_not_visible(self, planner: TaskPlanner, weekly_task: Task) -> None:
        window = await planner.materialize_window("user-2", SIX_WEEKS_START, SIX_WEEKS_END)
        assert window.instances == []
