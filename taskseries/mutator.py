"""Scoped edits and deletes of task series.

Every operation decides on ``(is_recurring, scope)``:

- single, recurring: upsert one exception row; the rule is never touched
- all: rewrite the task row and drop its exceptions
- future: split the series into a truncated old task and a new task
- non-recurring tasks have one occurrence, so every scope acts on the row

Each operation runs in one store transaction and is retried once on conflict.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional, TypeVar, Union

from .config import PlannerSettings
from .core.timezone_utils import ONE_MILLISECOND, TimeZoneConverter, format_instant, now_utc, truncate_ms
from .exceptions import AuthorizationError, ConflictError, RuleParseError, TaskNotFoundError, ValidationError
from .models import (
    CLEARED,
    EditScope,
    LocalStart,
    OccurrenceChanges,
    RecurrenceSpec,
    SetTo,
    Task,
    TaskException,
    TaskStatus,
)
from .recurrence.expander import RuleExpander
from .recurrence.rule import AfterCount, RecurrenceRule
from .store.database import DatabaseManager, StoreTransaction
from .validation import (
    build_rule,
    parse_local_date,
    parse_local_time,
    parse_recurrence_spec,
    validate_duration,
    validate_icon,
    validate_timezone,
    validate_title,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

_SINGLE_SCOPE_FIELDS = frozenset({"title", "start", "duration_minutes"})


@dataclass(frozen=True)
class SeriesSplit:
    """Writes needed to split a series at ``split_instant``.

    Attributes:
        old_task: Old task with its rule truncated, or None when it must be deleted
        delete_old: True when the split is at or before the old series start
        new_task: Task carrying the series forward, None for a plain truncation
        exception_ids_to_delete: Old-task exceptions at or after the split
    """

    old_task: Optional[Task]
    delete_old: bool
    new_task: Optional[Task]
    exception_ids_to_delete: tuple[str, ...]


def split_series(
    old_task: Task,
    new_task_draft: Optional[Task],
    split_instant: datetime.datetime,
    exceptions: Iterable[TaskException] = (),
) -> SeriesSplit:
    """Describe the writes that split ``old_task`` at ``split_instant``.

    The old rule ends at ``split_instant - 1ms`` with any COUNT dropped. When
    that leaves no occurrence (split at or before ``dtstart``) the old task is
    deleted instead. Exceptions at or after the split are not carried over:
    the new task's occurrence keys derive from its own start.

    Args:
        old_task: Recurring task being split
        new_task_draft: Task to insert for the continuation, or None
        split_instant: Original instant of the first occurrence that moves over
        exceptions: The old task's exceptions

    Returns:
        SeriesSplit describing the writes; nothing is persisted here

    Raises:
        ValueError: If ``old_task`` has no rule or the draft has another owner
    """
    if old_task.rule is None:
        raise ValueError(f"task {old_task.id} is not recurring")
    if new_task_draft is not None and new_task_draft.user_id != old_task.user_id:
        raise ValueError("new task must belong to the owner of the split task")

    split = truncate_ms(split_instant)
    doomed = tuple(
        exc.id for exc in exceptions if exc.task_id == old_task.id and exc.original_occurrence_time >= split
    )

    if split <= old_task.dtstart:
        return SeriesSplit(
            old_task=None, delete_old=True, new_task=new_task_draft, exception_ids_to_delete=doomed
        )

    old_until = split - ONE_MILLISECOND
    current_until = old_task.rule.until
    if current_until is not None and current_until < old_until:
        old_until = current_until
    truncated = old_task.model_copy(update={"rule": old_task.rule.with_until(old_until)})
    return SeriesSplit(
        old_task=truncated, delete_old=False, new_task=new_task_draft, exception_ids_to_delete=doomed
    )


class ScopedMutator:
    """Transactional create, edit, delete and completion operations for task series."""

    def __init__(
        self,
        store: DatabaseManager,
        settings: Optional[PlannerSettings] = None,
        expander: Optional[RuleExpander] = None,
    ):
        self.store = store
        self.settings = settings or PlannerSettings()
        self.expander = expander or RuleExpander.from_settings(self.settings)

    # ------------------------------------------------------------------
    # plumbing

    async def _run(self, description: str, operation: Callable[[StoreTransaction], Awaitable[R]]) -> R:
        attempts = 1 + max(0, min(self.settings.conflict_retries, 1))
        for attempt in range(1, attempts + 1):
            try:
                async with self.store.transaction() as tx:
                    return await operation(tx)
            except ConflictError as e:
                if attempt >= attempts:
                    logger.warning("Conflict during %s persisted after %d attempt(s)", description, attempt)
                    raise ConflictError() from e
                logger.warning("Conflict during %s, retrying (%d/%d)", description, attempt, attempts - 1)
        raise ConflictError()

    async def duration_ceiling(self, override: Optional[int] = None) -> int:
        """Caller value, else the ``task_limits`` system setting, else settings."""
        if override is not None:
            return override
        stored = await self.store.get_max_duration_minutes()
        return stored if stored is not None else self.settings.max_duration_minutes

    @staticmethod
    def _require_actor(actor_id: Optional[str]) -> str:
        if not actor_id or not isinstance(actor_id, str):
            raise AuthorizationError("An authenticated user is required.")
        return actor_id

    @staticmethod
    async def _load_owned(tx: StoreTransaction, task_id: str, actor_id: str) -> Task:
        task = await tx.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.user_id != actor_id:
            logger.warning("User %s denied access to task %s", actor_id, task_id)
            raise AuthorizationError()
        return task

    def _check_occurrence(self, task: Task, original: datetime.datetime) -> None:
        if task.rule is None:
            is_member = original == task.dtstart
        else:
            is_member = (
                self.expander.occurrence_index(task.rule, task.dtstart, task.timezone, original) is not None
            )
        if not is_member:
            raise ValidationError(
                "original_occurrence_time",
                f"{format_instant(original)} is not an occurrence of this task.",
            )

    @staticmethod
    def _parse_scope(scope: Union[EditScope, str]) -> EditScope:
        try:
            return EditScope(scope)
        except ValueError as e:
            raise ValidationError("scope", f"Unknown scope {scope!r}.") from e

    @staticmethod
    def _local_start(
        base_instant: datetime.datetime, base_zone: str, local: LocalStart, zone: str
    ) -> datetime.datetime:
        base_date, base_time = TimeZoneConverter.to_local(base_instant, base_zone)
        return TimeZoneConverter.to_utc(
            local.date if local.date is not None else base_date,
            local.time if local.time is not None else base_time,
            zone,
        )

    # ------------------------------------------------------------------
    # create

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
        """Validate form input and insert a new task.

        Args:
            actor_id: Authenticated owner
            title: Task title (trimmed, required)
            icon_name: Icon, defaulting to the configured icon
            local_date: ``YYYY-MM-DD`` in ``timezone``
            local_time: ``HH:mm`` in ``timezone``
            timezone: IANA zone, defaulting to the configured zone
            duration_minutes: Minutes in ``[1, ceiling]``
            recurrence: Form recurrence; frequency ``once`` makes a one-off task
            max_duration: Optional caller-supplied duration ceiling

        Returns:
            The stored Task

        Raises:
            ValidationError: If any input is missing or malformed
            AuthorizationError: If no actor is given
        """
        actor_id = self._require_actor(actor_id)
        clean_title = validate_title(title)
        start_date = parse_local_date(local_date)
        start_time = parse_local_time(local_time)
        zone = validate_timezone(timezone, default=self.settings.default_timezone)
        duration = validate_duration(duration_minutes, await self.duration_ceiling(max_duration))
        spec = parse_recurrence_spec(recurrence)
        icon = validate_icon(icon_name, self.settings.default_icon)

        dtstart = TimeZoneConverter.to_utc(start_date, start_time, zone)
        task = Task(
            id=str(uuid.uuid4()),
            user_id=actor_id,
            title=clean_title,
            icon_name=icon,
            dtstart=dtstart,
            duration_minutes=duration,
            rule=build_rule(spec, dtstart, zone),
            timezone=zone,
        )

        async def _insert(tx: StoreTransaction) -> Task:
            return await tx.insert_task(task)

        stored = await self._run("create_series", _insert)
        logger.info(
            "Created task %s for user %s (rule=%s, dtstart=%s)",
            stored.id,
            actor_id,
            stored.rule_text or "once",
            format_instant(stored.dtstart),
        )
        return stored

    # ------------------------------------------------------------------
    # edit

    async def edit_occurrence(
        self,
        actor_id: str,
        task_id: str,
        original_occurrence_time: datetime.datetime,
        scope: Union[EditScope, str],
        changes: OccurrenceChanges,
        max_duration: Optional[int] = None,
    ) -> Union[Task, TaskException]:
        """Apply ``changes`` to one occurrence, the following ones, or the whole series.

        Returns:
            The upserted TaskException for ``single`` on a recurring task, the
            updated Task for ``all``, the newly created Task for ``future``

        Raises:
            ValidationError: If changes or the occurrence are invalid
            AuthorizationError: If ``actor_id`` does not own the task
            TaskNotFoundError: If the task does not exist
            ConflictError: If the task kept changing underneath the edit
        """
        actor_id = self._require_actor(actor_id)
        requested = self._parse_scope(scope)
        original = truncate_ms(original_occurrence_time)
        ceiling = await self.duration_ceiling(max_duration)

        async def _edit(tx: StoreTransaction) -> Union[Task, TaskException]:
            task = await self._load_owned(tx, task_id, actor_id)
            self._check_occurrence(task, original)
            effective = requested if task.is_recurring else EditScope.ALL
            if effective == EditScope.SINGLE:
                return await self._edit_single(tx, task, original, changes, ceiling)
            if effective == EditScope.FUTURE:
                return await self._edit_future(tx, task, original, changes, ceiling)
            return await self._edit_all(tx, task, original, changes, ceiling)

        result = await self._run(f"edit_occurrence[{requested.value}]", _edit)
        logger.info(
            "Edited task %s at %s scope=%s fields=%s -> %s %s",
            task_id,
            format_instant(original),
            requested.value,
            ",".join(changes.changed_fields()) or "-",
            type(result).__name__,
            result.id,
        )
        return result

    async def _edit_single(
        self,
        tx: StoreTransaction,
        task: Task,
        original: datetime.datetime,
        changes: OccurrenceChanges,
        ceiling: int,
    ) -> TaskException:
        for name in changes.changed_fields():
            if name not in _SINGLE_SCOPE_FIELDS:
                raise ValidationError(name, "This field can only be changed for the whole series.")

        fields: dict[str, Any] = {"is_cancelled": False}
        if isinstance(changes.title, SetTo):
            fields["override_title"] = validate_title(changes.title.value)
        elif changes.title is CLEARED:
            fields["override_title"] = None

        if isinstance(changes.start, SetTo):
            existing = await tx.get_exception(task.id, original)
            current = existing.new_start_time if existing is not None and existing.new_start_time else original
            new_start = self._local_start(current, task.timezone, changes.start.value, task.timezone)
            fields["new_start_time"] = None if new_start == original else new_start
        elif changes.start is CLEARED:
            fields["new_start_time"] = None

        if isinstance(changes.duration_minutes, SetTo):
            fields["new_duration_minutes"] = validate_duration(changes.duration_minutes.value, ceiling)
        elif changes.duration_minutes is CLEARED:
            fields["new_duration_minutes"] = None

        return await tx.upsert_exception(task.id, task.user_id, original, fields)

    def _apply_series_fields(self, task: Task, changes: OccurrenceChanges, ceiling: int) -> dict[str, Any]:
        update: dict[str, Any] = {}
        if isinstance(changes.title, SetTo):
            update["title"] = validate_title(changes.title.value)
        elif changes.title is CLEARED:
            raise ValidationError("title", "Title is required.")

        if isinstance(changes.icon_name, SetTo):
            update["icon_name"] = validate_icon(changes.icon_name.value, self.settings.default_icon)
        elif changes.icon_name is CLEARED:
            update["icon_name"] = self.settings.default_icon

        if isinstance(changes.duration_minutes, SetTo):
            update["duration_minutes"] = validate_duration(changes.duration_minutes.value, ceiling)
        elif changes.duration_minutes is CLEARED:
            raise ValidationError("duration_minutes", "Duration is required.")

        if isinstance(changes.timezone, SetTo):
            update["timezone"] = validate_timezone(changes.timezone.value)
        elif changes.timezone is CLEARED:
            update["timezone"] = self.settings.default_timezone

        if isinstance(changes.status, SetTo):
            update["status"] = TaskStatus(changes.status.value)
        return update

    async def _edit_all(
        self,
        tx: StoreTransaction,
        task: Task,
        original: datetime.datetime,
        changes: OccurrenceChanges,
        ceiling: int,
    ) -> Task:
        update = self._apply_series_fields(task, changes, ceiling)
        zone = update.get("timezone", task.timezone)

        if changes.start is CLEARED:
            raise ValidationError("date", "The series start cannot be cleared.")
        delta = datetime.timedelta(0)
        if isinstance(changes.start, SetTo):
            original_wall = TimeZoneConverter.wall_clock(original, task.timezone)
            local = changes.start.value
            new_wall = datetime.datetime.combine(
                local.date if local.date is not None else original_wall.date(),
                local.time if local.time is not None else original_wall.time(),
            )
            delta = new_wall - original_wall
        if delta or zone != task.timezone:
            dtstart_wall = TimeZoneConverter.wall_clock(task.dtstart, task.timezone)
            update["dtstart"] = TimeZoneConverter.localize(dtstart_wall + delta, zone)
        dtstart = update.get("dtstart", task.dtstart)

        rule: Optional[RecurrenceRule] = task.rule
        if isinstance(changes.recurrence, SetTo):
            rule = build_rule(changes.recurrence.value, dtstart, zone)
        elif changes.recurrence is CLEARED:
            rule = None
        if rule is not None:
            try:
                rule.validate_against(dtstart)
            except RuleParseError as e:
                raise ValidationError("recurrence.end_date", "The series would end before it starts.") from e
        update["rule"] = rule

        updated = await tx.update_task(task.model_copy(update=update), task.version)
        if task.is_recurring or updated.is_recurring or updated.dtstart != task.dtstart:
            removed = await tx.delete_all_exceptions(task.id)
            logger.debug("Removed %d exception(s) from task %s", removed, task.id)
        return updated

    def _continuation_rule(
        self,
        task: Task,
        original: datetime.datetime,
        new_start: datetime.datetime,
        zone: str,
        recurrence: Any,
    ) -> Optional[RecurrenceRule]:
        if isinstance(recurrence, SetTo):
            return build_rule(recurrence.value, new_start, zone)
        if recurrence is CLEARED or task.rule is None:
            return None

        rule = task.rule
        if isinstance(rule.end, AfterCount):
            before = self.expander.count_before(rule, task.dtstart, task.timezone, original)
            rule = rule.with_count(rule.end.count - before)
        try:
            rule.validate_against(new_start)
        except RuleParseError as e:
            raise ValidationError("date", "The new start is after the end of the series.") from e
        return rule

    async def _edit_future(
        self,
        tx: StoreTransaction,
        task: Task,
        original: datetime.datetime,
        changes: OccurrenceChanges,
        ceiling: int,
    ) -> Task:
        update = self._apply_series_fields(task, changes, ceiling)
        zone = update.get("timezone", task.timezone)

        if changes.start is CLEARED:
            raise ValidationError("date", "The series start cannot be cleared.")
        local = changes.start.value if isinstance(changes.start, SetTo) else LocalStart()
        if local == LocalStart() and zone == task.timezone:
            new_start = original
        else:
            new_start = self._local_start(original, task.timezone, local, zone)

        draft = Task(
            id=str(uuid.uuid4()),
            user_id=task.user_id,
            title=update.get("title", task.title),
            icon_name=update.get("icon_name", task.icon_name),
            dtstart=new_start,
            duration_minutes=update.get("duration_minutes", task.duration_minutes),
            rule=self._continuation_rule(task, original, new_start, zone, changes.recurrence),
            timezone=zone,
            status=update.get("status", TaskStatus.ACTIVE),
        )

        plan = split_series(task, draft, original, await tx.list_exceptions(task.id))
        await self._persist_split(tx, task, plan)
        return await tx.insert_task(draft)

    @staticmethod
    async def _persist_split(tx: StoreTransaction, task: Task, plan: SeriesSplit) -> Optional[Task]:
        if plan.delete_old:
            await tx.delete_task(task.id, task.version)
            logger.debug("Split at series start, deleted task %s", task.id)
            return None
        if plan.old_task is None:
            raise ValueError("split plan keeps the old task but carries no truncated row")
        truncated = await tx.update_task(plan.old_task, task.version)
        removed = await tx.delete_exceptions(plan.exception_ids_to_delete)
        logger.debug("Truncated task %s to %s, removed %d exception(s)", task.id, truncated.rule_text, removed)
        return truncated

    # ------------------------------------------------------------------
    # delete

    async def delete_occurrence(
        self,
        actor_id: str,
        task_id: str,
        original_occurrence_time: datetime.datetime,
        scope: Union[EditScope, str],
    ) -> Optional[Union[Task, TaskException]]:
        """Cancel one occurrence, end the series before it, or delete the series.

        Returns:
            The cancelling TaskException for ``single`` on a recurring task, the
            truncated Task for ``future`` (None if the task was deleted), None
            for ``all`` and for non-recurring tasks

        Raises:
            ValidationError: If the occurrence does not belong to the task
            AuthorizationError: If ``actor_id`` does not own the task
            TaskNotFoundError: If the task does not exist
            ConflictError: If the task kept changing underneath the delete
        """
        actor_id = self._require_actor(actor_id)
        requested = self._parse_scope(scope)
        original = truncate_ms(original_occurrence_time)

        async def _delete(tx: StoreTransaction) -> Optional[Union[Task, TaskException]]:
            task = await self._load_owned(tx, task_id, actor_id)
            self._check_occurrence(task, original)
            effective = requested if task.is_recurring else EditScope.ALL

            if effective == EditScope.SINGLE:
                return await tx.upsert_exception(
                    task.id,
                    task.user_id,
                    original,
                    {
                        "is_cancelled": True,
                        "is_complete": False,
                        "completion_time": None,
                        "new_start_time": None,
                        "new_duration_minutes": None,
                        "override_title": None,
                    },
                )
            if effective == EditScope.FUTURE:
                plan = split_series(task, None, original, await tx.list_exceptions(task.id))
                return await self._persist_split(tx, task, plan)

            await tx.delete_task(task.id, task.version)
            return None

        result = await self._run(f"delete_occurrence[{requested.value}]", _delete)
        logger.info(
            "Deleted task %s at %s scope=%s -> %s",
            task_id,
            format_instant(original),
            requested.value,
            type(result).__name__ if result is not None else "removed",
        )
        return result

    # ------------------------------------------------------------------
    # completion

    async def toggle_completion(
        self,
        actor_id: str,
        task_id: str,
        original_occurrence_time: datetime.datetime,
        new_state: bool,
    ) -> TaskException:
        """Mark one occurrence complete or not complete.

        Completion is always stored on the occurrence's exception row, also for
        one-off tasks, so the series itself is never touched.
        """
        actor_id = self._require_actor(actor_id)
        original = truncate_ms(original_occurrence_time)
        completed_at = now_utc() if new_state else None

        async def _toggle(tx: StoreTransaction) -> TaskException:
            task = await self._load_owned(tx, task_id, actor_id)
            self._check_occurrence(task, original)
            return await tx.upsert_exception(
                task.id,
                task.user_id,
                original,
                {"is_complete": bool(new_state), "completion_time": completed_at},
            )

        result = await self._run("toggle_completion", _toggle)
        logger.info(
            "Marked task %s at %s %s",
            task_id,
            format_instant(original),
            "complete" if new_state else "not complete",
        )
        return result

    async def delete_future_occurrences(
        self, actor_id: str, task_id: str, original_occurrence_time: datetime.datetime
    ) -> Optional[Task]:
        """Shorthand for ``delete_occurrence(..., scope="future")``."""
        result = await self.delete_occurrence(actor_id, task_id, original_occurrence_time, EditScope.FUTURE)
        return result if isinstance(result, Task) else None

    async def delete_series(self, actor_id: str, task_id: str) -> None:
        """Delete a task and, by cascade, all of its exceptions."""
        actor_id = self._require_actor(actor_id)

        async def _delete(tx: StoreTransaction) -> None:
            task = await self._load_owned(tx, task_id, actor_id)
            await tx.delete_task(task.id, task.version)

        await self._run("delete_series", _delete)
        logger.info("Deleted task %s", task_id)
