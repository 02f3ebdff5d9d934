"""Exception hierarchy for taskseries.

Every error raised across the package boundary derives from TaskSeriesError so
callers (CLI, HTTP routes) can map failures to user-facing messages in one place.
"""

from __future__ import annotations

from typing import Optional


class TaskSeriesError(Exception):
    """Base exception for all taskseries errors.

    The message is safe to show to an end user.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TaskSeriesError):
    """Input failed validation; nothing was written.

    Raised when:
    - title, date, time or duration are missing or malformed
    - recurrence frequency, interval or end condition is invalid
    - an occurrence instant is not part of the series it claims to belong to

    Attributes:
        field: Dotted name of the offending input field (e.g. "recurrence.interval")
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class RuleParseError(ValidationError):
    """Textual recurrence rule could not be parsed or is semantically invalid."""

    def __init__(self, message: str, field: str = "rule") -> None:
        super().__init__(field, message)


class AuthorizationError(TaskSeriesError):
    """Actor does not own the task it is trying to mutate.

    Fatal to the operation and never retried.
    """

    def __init__(self, message: str = "You are not allowed to modify this task.") -> None:
        super().__init__(message)


class TaskNotFoundError(TaskSeriesError):
    """The referenced task does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found.")
        self.task_id = task_id


class ConflictError(TaskSeriesError):
    """Store-level uniqueness, lock or concurrent-modification conflict.

    Callers may retry once after re-reading; ScopedMutator does this internally.
    """

    def __init__(self, message: str = "Task was modified concurrently, please retry.") -> None:
        super().__init__(message)


class CapExceededError(TaskSeriesError):
    """A series would need more raw occurrences than the configured cap allows.

    The expander and materializer never raise this; they flag capped results instead.
    It is raised only by callers that require the complete series.
    """

    def __init__(self, limit: int, task_id: Optional[str] = None) -> None:
        target = f"Task {task_id}" if task_id else "Series"
        super().__init__(f"{target} exceeds the limit of {limit} occurrences.")
        self.limit = limit
        self.task_id = task_id


class StoreError(TaskSeriesError):
    """Unexpected persistence failure not attributable to a conflict."""


class ConfigurationError(TaskSeriesError):
    """Settings file or environment could not be loaded."""
