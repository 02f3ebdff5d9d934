"""Input validation shared by task creation, edits and the HTTP surface.

Every failure raises ValidationError carrying the offending field name; no
function here touches the store.
"""

from __future__ import annotations

import datetime
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from .core.timezone_utils import TimeZoneConverter, is_valid_zone
from .exceptions import ValidationError
from .models import (
    CLEARED,
    UNCHANGED,
    EndType,
    FieldChange,
    LocalStart,
    OccurrenceChanges,
    RecurrenceSpec,
    RepeatFrequency,
    SetTo,
    TaskStatus,
)
from .recurrence.rule import AfterCount, EndCondition, Frequency, NeverEnd, RecurrenceRule, UntilInstant

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def validate_title(title: Any, field: str = "title") -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError(field, "Title is required.")
    title = title.strip()
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(field, f"Title must be at most {TITLE_MAX_LENGTH} characters.")
    return title


def parse_local_date(value: Any, field: str = "date") -> datetime.date:
    """Parse ``YYYY-MM-DD``; date objects pass through."""
    if isinstance(value, datetime.datetime):
        raise ValidationError(field, "Expected a date without a time.")
    if isinstance(value, datetime.date):
        return value
    if not isinstance(value, str) or not _DATE_RE.match(value.strip()):
        raise ValidationError(field, "Date must be in YYYY-MM-DD format.")
    try:
        return datetime.date.fromisoformat(value.strip())
    except ValueError as e:
        raise ValidationError(field, f"Invalid date {value!r}.") from e


def parse_local_time(value: Any, field: str = "time") -> datetime.time:
    """Parse 24-hour ``HH:mm``; time objects pass through."""
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if not isinstance(value, str):
        raise ValidationError(field, "Time must be in HH:mm format.")
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValidationError(field, "Time must be in HH:mm format.")
    return datetime.time(int(match.group(1)), int(match.group(2)))


def validate_duration(value: Any, max_duration: int, field: str = "duration_minutes") -> int:
    """Check that ``value`` is an integer number of minutes in ``[1, max_duration]``."""
    if isinstance(value, bool):
        raise ValidationError(field, "Duration must be a whole number of minutes.")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationError(field, "Duration must be a whole number of minutes.")
    if value < 1 or value > max_duration:
        raise ValidationError(field, f"Duration must be between 1 and {max_duration} minutes.")
    return value


def validate_timezone(name: Any, default: Optional[str] = None, field: str = "timezone") -> str:
    zone = name or default
    if not isinstance(zone, str) or not is_valid_zone(zone):
        raise ValidationError(field, f"Unknown timezone {zone!r}.")
    return zone


def validate_icon(name: Any, default: str, field: str = "icon_name") -> str:
    if name is None or (isinstance(name, str) and not name.strip()):
        return default
    if not isinstance(name, str):
        raise ValidationError(field, "Icon name must be text.")
    return name.strip()


def parse_recurrence_spec(value: Any, field: str = "recurrence") -> RecurrenceSpec:
    """Coerce form input (mapping or RecurrenceSpec) into a RecurrenceSpec."""
    if isinstance(value, RecurrenceSpec):
        return value
    if value is None:
        raise ValidationError(f"{field}.frequency", "Frequency is required.")
    if not isinstance(value, dict):
        raise ValidationError(field, "Recurrence must be an object.")
    try:
        return RecurrenceSpec.model_validate(value)
    except PydanticValidationError as e:
        error = e.errors()[0]
        loc = ".".join(str(part) for part in error.get("loc", ()))
        raise ValidationError(f"{field}.{loc}" if loc else field, error.get("msg", "Invalid value.")) from e


def build_rule(
    spec: RecurrenceSpec,
    dtstart: datetime.datetime,
    timezone: str,
    field: str = "recurrence",
) -> Optional[RecurrenceRule]:
    """Turn a form recurrence into a RecurrenceRule anchored at ``dtstart``.

    ``once`` yields None. ``on`` ends at 23:59:59.999 local time on the end date.

    Raises:
        ValidationError: For a missing or invalid interval, count or end date
    """
    if spec.frequency == RepeatFrequency.ONCE:
        return None

    interval = 1 if spec.interval is None else spec.interval
    if interval < 1:
        raise ValidationError(f"{field}.interval", "Interval must be at least 1.")

    end: EndCondition = NeverEnd()
    if spec.end_type == EndType.AFTER:
        if spec.occurrences is None or spec.occurrences < 1:
            raise ValidationError(f"{field}.occurrences", "Number of occurrences must be at least 1.")
        end = AfterCount(spec.occurrences)
    elif spec.end_type == EndType.ON:
        if not spec.end_date:
            raise ValidationError(f"{field}.end_date", "End date is required.")
        end_date = parse_local_date(spec.end_date, field=f"{field}.end_date")
        start_date, _ = TimeZoneConverter.to_local(dtstart, timezone)
        if end_date < start_date:
            raise ValidationError(f"{field}.end_date", "End date must not be before the start date.")
        end = UntilInstant(TimeZoneConverter.end_of_local_day(end_date, timezone))

    return RecurrenceRule(frequency=Frequency(spec.frequency.value.upper()), interval=interval, end=end)


def _change(payload: dict[str, Any], key: str) -> FieldChange[Any]:
    if key not in payload:
        return UNCHANGED
    value = payload[key]
    return CLEARED if value is None else SetTo(value)


def changes_from_payload(payload: dict[str, Any]) -> OccurrenceChanges:
    """Build OccurrenceChanges from a JSON-style mapping.

    An absent key leaves the field unchanged; an explicit null clears it. ``date``
    and ``time`` together form the new start.
    """
    if not isinstance(payload, dict):
        raise ValidationError("changes", "Changes must be an object.")

    title = _change(payload, "title")
    if isinstance(title, SetTo):
        title = SetTo(validate_title(title.value))

    icon = _change(payload, "icon_name")
    if isinstance(icon, SetTo) and not isinstance(icon.value, str):
        raise ValidationError("icon_name", "Icon name must be text.")

    start: FieldChange[LocalStart] = UNCHANGED
    if "date" in payload or "time" in payload:
        raw_date, raw_time = payload.get("date"), payload.get("time")
        if raw_date is None and raw_time is None:
            start = CLEARED
        else:
            start = SetTo(
                LocalStart(
                    date=parse_local_date(raw_date) if raw_date is not None else None,
                    time=parse_local_time(raw_time) if raw_time is not None else None,
                )
            )

    duration = _change(payload, "duration_minutes")
    if isinstance(duration, SetTo) and (isinstance(duration.value, bool) or not isinstance(duration.value, int)):
        raise ValidationError("duration_minutes", "Duration must be a whole number of minutes.")

    timezone = _change(payload, "timezone")
    if isinstance(timezone, SetTo):
        timezone = SetTo(validate_timezone(timezone.value))

    recurrence = _change(payload, "recurrence")
    if isinstance(recurrence, SetTo):
        recurrence = SetTo(parse_recurrence_spec(recurrence.value))

    status = _change(payload, "status")
    if isinstance(status, SetTo):
        try:
            status = SetTo(TaskStatus(status.value))
        except ValueError as e:
            raise ValidationError("status", f"Unknown status {status.value!r}.") from e
    elif status is CLEARED:
        raise ValidationError("status", "Status cannot be cleared.")

    return OccurrenceChanges(
        title=title,
        icon_name=icon,
        start=start,
        duration_minutes=duration,
        timezone=timezone,
        recurrence=recurrence,
        status=status,
    )
