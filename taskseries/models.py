"""Data models for task series, occurrence overrides and materialized instances."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, NamedTuple, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .core.timezone_utils import format_instant, truncate_ms
from .recurrence.rule import RecurrenceRule, format_rule, parse_rule

T = TypeVar("T")


class TaskStatus(str, Enum):
    """Lifecycle state of a task series."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class EditScope(str, Enum):
    """Breadth of an edit or delete."""

    SINGLE = "single"
    FUTURE = "future"
    ALL = "all"


class RepeatFrequency(str, Enum):
    """Recurrence choices offered when authoring a task."""

    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EndType(str, Enum):
    """How an authored recurrence ends."""

    NEVER = "never"
    AFTER = "after"
    ON = "on"


def _utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return truncate_ms(value)


class Task(BaseModel):
    """Series definition row.

    A task without a rule has exactly one occurrence at ``dtstart``.
    """

    id: str = Field(..., description="Stable task identifier")
    user_id: str = Field(..., description="Owner of the task")
    title: str = Field(..., description="Task title")
    icon_name: str = Field(default="Activity", description="Icon shown next to the task")
    dtstart: datetime.datetime = Field(..., description="UTC instant of the first occurrence")
    duration_minutes: int = Field(..., gt=0, description="Duration of each occurrence")
    rule: Optional[RecurrenceRule] = Field(default=None, description="Recurrence rule, None for one-off")
    timezone: str = Field(default="UTC", description="IANA zone the task was authored in")
    status: TaskStatus = Field(default=TaskStatus.ACTIVE, description="Lifecycle state")
    version: int = Field(default=1, description="Optimistic concurrency counter")
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @field_validator("rule", mode="before")
    @classmethod
    def _parse_rule_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_rule(value) if value.strip() else None
        return value

    @field_validator("dtstart", "created_at", "updated_at")
    @classmethod
    def _normalize_instant(cls, value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return _utc(value)

    @property
    def is_recurring(self) -> bool:
        return self.rule is not None

    @property
    def rule_text(self) -> Optional[str]:
        return format_rule(self.rule) if self.rule is not None else None

    @field_serializer("rule")
    def _serialize_rule(self, value: Optional[RecurrenceRule]) -> Optional[str]:
        return format_rule(value) if value is not None else None

    @field_serializer("dtstart", "created_at", "updated_at")
    def _serialize_instant(self, value: Optional[datetime.datetime]) -> Optional[str]:
        return format_instant(value) if value is not None else None


class TaskException(BaseModel):
    """Per-occurrence override keyed by ``(task_id, original_occurrence_time)``."""

    id: str = Field(..., description="Exception identifier")
    task_id: str = Field(..., description="Owning task")
    user_id: str = Field(..., description="Owner of the task")
    original_occurrence_time: datetime.datetime = Field(
        ..., description="UTC instant the unmodified rule produces"
    )
    override_title: Optional[str] = None
    new_start_time: Optional[datetime.datetime] = None
    new_duration_minutes: Optional[int] = Field(default=None, gt=0)
    is_cancelled: bool = False
    is_complete: bool = False
    completion_time: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator(
        "original_occurrence_time", "new_start_time", "completion_time", "created_at", "updated_at"
    )
    @classmethod
    def _normalize_instant(cls, value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return _utc(value)

    @property
    def key(self) -> tuple[str, datetime.datetime]:
        return (self.task_id, self.original_occurrence_time)

    @field_serializer(
        "original_occurrence_time", "new_start_time", "completion_time", "created_at", "updated_at"
    )
    def _serialize_instant(self, value: Optional[datetime.datetime]) -> Optional[str]:
        return format_instant(value) if value is not None else None


class CalculatedInstance(BaseModel):
    """Display-ready occurrence; computed on every read and never persisted."""

    id: str = Field(..., description="Exception id, or '<task_id>-<original instant>'")
    task_id: str
    exception_id: Optional[str] = None
    title: str
    icon_name: str
    timezone: str
    start_time: datetime.datetime
    end_time: datetime.datetime
    duration_minutes: int
    original_occurrence_time: datetime.datetime
    is_recurring: bool = False
    is_complete: bool = False
    completion_time: Optional[datetime.datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_modified(self) -> bool:
        return self.start_time != self.original_occurrence_time

    @field_serializer("start_time", "end_time", "original_occurrence_time", "completion_time")
    def _serialize_instant(self, value: Optional[datetime.datetime]) -> Optional[str]:
        return format_instant(value) if value is not None else None


class RecurrenceSpec(BaseModel):
    """Recurrence as entered on the task form, before it becomes a RecurrenceRule."""

    frequency: RepeatFrequency = Field(..., description="once, daily, weekly, monthly or yearly")
    interval: Optional[int] = Field(default=1, description="Every N units")
    end_type: EndType = Field(default=EndType.NEVER, description="never, after or on")
    occurrences: Optional[int] = Field(default=None, description="Occurrence count for 'after'")
    end_date: Optional[str] = Field(default=None, description="YYYY-MM-DD for 'on'")

    model_config = ConfigDict(frozen=True)


class Change(Enum):
    """Field-level change markers that carry no value."""

    UNCHANGED = "unchanged"
    CLEARED = "cleared"


UNCHANGED = Change.UNCHANGED
CLEARED = Change.CLEARED


@dataclass(frozen=True)
class SetTo(Generic[T]):
    """Field-level change that sets a new value."""

    value: T


FieldChange = Union[Change, SetTo[T]]


class LocalStart(NamedTuple):
    """New wall-clock start; a missing part keeps the occurrence's current value."""

    date: Optional[datetime.date] = None
    time: Optional[datetime.time] = None


@dataclass(frozen=True)
class OccurrenceChanges:
    """Edits requested for an occurrence or series.

    Each field is UNCHANGED (leave as is), CLEARED (drop the override or the
    value) or SetTo(value).
    """

    title: FieldChange[str] = UNCHANGED
    icon_name: FieldChange[str] = UNCHANGED
    start: FieldChange[LocalStart] = UNCHANGED
    duration_minutes: FieldChange[int] = UNCHANGED
    timezone: FieldChange[str] = UNCHANGED
    recurrence: FieldChange[RecurrenceSpec] = UNCHANGED
    status: FieldChange[TaskStatus] = UNCHANGED

    def changed_fields(self) -> list[str]:
        return [name for name in self.__dataclass_fields__ if getattr(self, name) is not UNCHANGED]

    @property
    def is_empty(self) -> bool:
        return not self.changed_fields()


@dataclass(frozen=True)
class MaterializedWindow:
    """Result of materializing a window.

    Attributes:
        instances: Ordered display-ready instances
        capped_task_ids: Tasks whose occurrences were limited by the safety cap
    """

    instances: list[CalculatedInstance] = field(default_factory=list)
    capped_task_ids: tuple[str, ...] = ()

    @property
    def cap_reached(self) -> bool:
        return bool(self.capped_task_ids)
