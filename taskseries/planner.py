"""TaskPlanner wires settings, store, expander and mutator into one entry point."""

from __future__ import annotations

import datetime
import logging
from typing import Any, Optional, Union

from .config import PlannerSettings
from .core.timezone_utils import format_instant, truncate_ms
from .exceptions import AuthorizationError, TaskNotFoundError, ValidationError
from .materializer import materialize
from .models import EditScope, MaterializedWindow, OccurrenceChanges, RecurrenceSpec, Task, TaskException
from .mutator import ScopedMutator
from .recurrence.expander import RuleExpander
from .store.database import DatabaseManager

logger = logging.getLogger(__name__)


class TaskPlanner:
    """Operation surface for the UI/session layer.

    Reads go through the materializer; writes go through ScopedMutator.
    """

    def __init__(
        self,
        settings: Optional[PlannerSettings] = None,
        store: Optional[DatabaseManager] = None,
    ):
        self.settings = settings or PlannerSettings()
        self.store = store or DatabaseManager(
            self.settings.database_path, busy_timeout=self.settings.busy_timeout_seconds
        )
        self.expander = RuleExpander.from_settings(self.settings)
        self.mutator = ScopedMutator(self.store, self.settings, self.expander)

    async def initialize(self) -> None:
        await self.store.initialize()

    async def load_window(
        self, actor_id: str, start: datetime.datetime, end: datetime.datetime
    ) -> tuple[list[Task], list[TaskException]]:
        """Load the actor's tasks and exceptions relevant to ``[start, end]``."""
        if not actor_id:
            raise AuthorizationError("An authenticated user is required.")
        start, end = truncate_ms(start), truncate_ms(end)
        if end < start:
            raise ValidationError("end", "Window end must not be before its start.")

        tasks = await self.store.fetch_tasks_for_window(actor_id, start, end)
        exceptions = await self.store.fetch_exceptions([task.id for task in tasks], start, end)
        return tasks, exceptions

    async def materialize_window(
        self, actor_id: str, start: datetime.datetime, end: datetime.datetime
    ) -> MaterializedWindow:
        """Display-ready instances of the actor's tasks in ``[start, end]``."""
        tasks, exceptions = await self.load_window(actor_id, start, end)
        window = materialize(tasks, exceptions, start, end, self.expander)
        logger.debug(
            "Window %s..%s for user %s: %d task(s), %d exception(s), %d instance(s)",
            format_instant(start),
            format_instant(end),
            actor_id,
            len(tasks),
            len(exceptions),
            len(window.instances),
        )
        return window

    async def series_occurrences(self, actor_id: str, task_id: str) -> tuple[datetime.datetime, ...]:
        """All original occurrence instants of one task.

        Raises:
            TaskNotFoundError: If the task does not exist
            AuthorizationError: If ``actor_id`` does not own it
            CapExceededError: If the series is longer than the safety cap
        """
        if not actor_id:
            raise AuthorizationError("An authenticated user is required.")
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.user_id != actor_id:
            raise AuthorizationError("You are not allowed to view this task.")
        if task.rule is None:
            return (task.dtstart,)
        return self.expander.expand_series(task.rule, task.dtstart, task.timezone, task_id=task.id)

    async def create_series(
        self,
        actor_id: str,
        title: Any,
        icon_name: Any,
        local_date: Any,
        local_time: Any,
        timezone: Any,
        duration_minutes: Any,
        recurrence: Union[RecurrenceSpec, dict[str, Any], None],
        max_duration: Optional[int] = None,
    ) -> Task:
        return await self.mutator.create_series(
            actor_id,
            title,
            icon_name,
            local_date,
            local_time,
            timezone,
            duration_minutes,
            recurrence,
            max_duration=max_duration,
        )

    async def edit_occurrence(
        self,
        actor_id: str,
        task_id: str,
        original_occurrence_time: datetime.datetime,
        scope: Union[EditScope, str],
        changes: OccurrenceChanges,
        max_duration: Optional[int] = None,
    ) -> Union[Task, TaskException]:
        return await self.mutator.edit_occurrence(
            actor_id, task_id, original_occurrence_time, scope, changes, max_duration=max_duration
        )

    async def delete_occurrence(
        self,
        actor_id: str,
        task_id: str,
        original_occurrence_time: datetime.datetime,
        scope: Union[EditScope, str],
    ) -> Optional[Union[Task, TaskException]]:
        return await self.mutator.delete_occurrence(actor_id, task_id, original_occurrence_time, scope)

    async def toggle_completion(
        self,
        actor_id: str,
        task_id: str,
        original_occurrence_time: datetime.datetime,
        new_state: bool,
    ) -> TaskException:
        return await self.mutator.toggle_completion(actor_id, task_id, original_occurrence_time, new_state)
