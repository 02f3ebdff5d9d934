"""Overlay of per-occurrence exceptions onto rule-expanded occurrences.

Everything here is a pure function of its inputs: no store access, no caching,
and inputs are never mutated, so concurrent callers need no coordination.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable
from typing import Optional

from .core.timezone_utils import format_instant, truncate_ms
from .models import CalculatedInstance, MaterializedWindow, Task, TaskException, TaskStatus
from .recurrence.expander import RuleExpander

logger = logging.getLogger(__name__)

ExceptionKey = tuple[str, datetime.datetime]


def instance_id(task_id: str, original: datetime.datetime) -> str:
    """Synthetic id of an occurrence that has no exception row."""
    return f"{task_id}-{format_instant(original)}"


def index_exceptions(exceptions: Iterable[TaskException]) -> dict[ExceptionKey, TaskException]:
    """Key exceptions by ``(task_id, original_occurrence_time)``."""
    return {exc.key: exc for exc in exceptions}


def overlay(
    task: Task, original: datetime.datetime, exception: Optional[TaskException]
) -> Optional[CalculatedInstance]:
    """Apply ``exception`` to the raw occurrence at ``original``.

    Returns:
        The display instance, or None when the occurrence is cancelled
    """
    if exception is None:
        return CalculatedInstance(
            id=instance_id(task.id, original),
            task_id=task.id,
            title=task.title,
            icon_name=task.icon_name,
            timezone=task.timezone,
            start_time=original,
            end_time=original + datetime.timedelta(minutes=task.duration_minutes),
            duration_minutes=task.duration_minutes,
            original_occurrence_time=original,
            is_recurring=task.is_recurring,
        )

    if exception.is_cancelled:
        return None

    start = exception.new_start_time if exception.new_start_time is not None else original
    duration = (
        exception.new_duration_minutes
        if exception.new_duration_minutes is not None
        else task.duration_minutes
    )
    return CalculatedInstance(
        id=exception.id,
        task_id=task.id,
        exception_id=exception.id,
        title=exception.override_title if exception.override_title is not None else task.title,
        icon_name=task.icon_name,
        timezone=task.timezone,
        start_time=start,
        end_time=start + datetime.timedelta(minutes=duration),
        duration_minutes=duration,
        original_occurrence_time=original,
        is_recurring=task.is_recurring,
        is_complete=exception.is_complete,
        completion_time=exception.completion_time,
    )


def materialize(
    tasks: Iterable[Task],
    exceptions: Iterable[TaskException],
    range_start: datetime.datetime,
    range_end: datetime.datetime,
    expander: Optional[RuleExpander] = None,
) -> MaterializedWindow:
    """Compute display instances for ``[range_start, range_end]``.

    The window filter applies to each occurrence's original instant. Cancelled
    occurrences are dropped. Output is ordered by effective start, then task id,
    then original instant.

    Args:
        tasks: Task rows in scope
        exceptions: Exception rows for those tasks
        range_start: Inclusive window start
        range_end: Inclusive window end
        expander: Expander carrying the configured safety cap

    Returns:
        MaterializedWindow with the instances and the ids of capped tasks
    """
    expander = expander or RuleExpander()
    range_start = truncate_ms(range_start)
    range_end = truncate_ms(range_end)
    by_key = index_exceptions(exceptions)

    instances: list[CalculatedInstance] = []
    capped: list[str] = []
    for task in tasks:
        if task.status == TaskStatus.ARCHIVED:
            continue

        if task.rule is None:
            originals: Iterable[datetime.datetime] = (
                (task.dtstart,) if range_start <= task.dtstart <= range_end else ()
            )
        else:
            result = expander.expand(task.rule, task.dtstart, task.timezone, range_start, range_end)
            if result.cap_reached:
                capped.append(task.id)
            originals = result.instants

        for original in originals:
            instance = overlay(task, original, by_key.get((task.id, original)))
            if instance is not None:
                instances.append(instance)

    instances.sort(key=lambda i: (i.start_time, i.task_id, i.original_occurrence_time))
    logger.debug(
        "Materialized %d instance(s) for window %s..%s (%d capped task(s))",
        len(instances),
        format_instant(range_start),
        format_instant(range_end),
        len(capped),
    )
    return MaterializedWindow(instances=instances, capped_task_ids=tuple(capped))


def calculate_instances_for_range(
    tasks: Iterable[Task],
    exceptions: Iterable[TaskException],
    range_start: datetime.datetime,
    range_end: datetime.datetime,
    expander: Optional[RuleExpander] = None,
) -> list[CalculatedInstance]:
    """Instance list for a window; see ``materialize`` for the cap flag."""
    return materialize(tasks, exceptions, range_start, range_end, expander).instances
