"""Recurrence rule value object and its compact textual codec.

Rules are fixed-interval only: every N days, weeks, months or years, ending
never, after a number of occurrences, or at an instant. The stored text form is
a small subset of RFC 5545 RRULE syntax::

    FREQ=DAILY;INTERVAL=2;COUNT=10
    FREQ=WEEKLY;INTERVAL=1;UNTIL=2025-01-01T00:00:00Z
    FREQ=MONTHLY;INTERVAL=1
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from ..core.timezone_utils import truncate_ms
from ..exceptions import RuleParseError

logger = logging.getLogger(__name__)

RULE_VERSION = "1"

_ISO_UNTIL_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,3}))?Z$"
)
_BASIC_UNTIL_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})Z$")


class Frequency(str, Enum):
    """Supported recurrence units."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


@dataclass(frozen=True)
class NeverEnd:
    """Series continues until the safety cap."""


@dataclass(frozen=True)
class AfterCount:
    """Series ends after ``count`` occurrences."""

    count: int

    def __post_init__(self) -> None:
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count < 1:
            raise RuleParseError(f"COUNT must be a positive integer, got {self.count!r}")


@dataclass(frozen=True)
class UntilInstant:
    """Series ends at (and includes) the UTC instant ``until``."""

    until: datetime.datetime

    def __post_init__(self) -> None:
        if not isinstance(self.until, datetime.datetime) or self.until.tzinfo is None:
            raise RuleParseError(f"UNTIL must be a timezone-aware datetime, got {self.until!r}")
        object.__setattr__(self, "until", truncate_ms(self.until))


EndCondition = Union[NeverEnd, AfterCount, UntilInstant]


@dataclass(frozen=True)
class RecurrenceRule:
    """Frequency, interval and end condition of a recurring task.

    Instances are immutable; use ``with_end``/``with_until``/``with_count`` to
    derive a modified rule. Count and until are mutually exclusive by
    construction: a rule has exactly one end condition.
    """

    frequency: Frequency
    interval: int = 1
    end: EndCondition = field(default_factory=NeverEnd)

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "frequency", Frequency(self.frequency))
        except ValueError as e:
            raise RuleParseError(f"Unsupported frequency {self.frequency!r}") from e
        if isinstance(self.interval, bool) or not isinstance(self.interval, int) or self.interval < 1:
            raise RuleParseError(f"INTERVAL must be at least 1, got {self.interval!r}")
        if not isinstance(self.end, (NeverEnd, AfterCount, UntilInstant)):
            raise RuleParseError(f"Unsupported end condition {self.end!r}")

    @property
    def count(self) -> Optional[int]:
        return self.end.count if isinstance(self.end, AfterCount) else None

    @property
    def until(self) -> Optional[datetime.datetime]:
        return self.end.until if isinstance(self.end, UntilInstant) else None

    def with_end(self, end: EndCondition) -> RecurrenceRule:
        return dataclasses.replace(self, end=end)

    def with_until(self, until: datetime.datetime) -> RecurrenceRule:
        """Return a copy ending at ``until``; any COUNT is dropped."""
        return self.with_end(UntilInstant(until))

    def with_count(self, count: int) -> RecurrenceRule:
        """Return a copy ending after ``count`` occurrences; any UNTIL is dropped."""
        return self.with_end(AfterCount(count))

    def validate_against(self, dtstart: datetime.datetime) -> None:
        """Check the end condition against the series start.

        Raises:
            RuleParseError: If UNTIL precedes ``dtstart``
        """
        until = self.until
        if until is not None and until < truncate_ms(dtstart):
            raise RuleParseError("UNTIL must not precede the series start")


def _format_until(until: datetime.datetime) -> str:
    until = truncate_ms(until)
    text = until.strftime("%Y-%m-%dT%H:%M:%S")
    if until.microsecond:
        text += f".{until.microsecond // 1000:03d}"
    return text + "Z"


def _parse_until(value: str) -> datetime.datetime:
    match = _ISO_UNTIL_RE.match(value) or _BASIC_UNTIL_RE.match(value)
    if not match:
        raise RuleParseError(f"UNTIL must be a UTC date-time ending in 'Z', got {value!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    millis = 0
    if match.re is _ISO_UNTIL_RE and match.group(7):
        millis = int(match.group(7).ljust(3, "0"))
    try:
        return datetime.datetime(
            year, month, day, hour, minute, second, millis * 1000, tzinfo=datetime.UTC
        )
    except ValueError as e:
        raise RuleParseError(f"Invalid UNTIL value {value!r}") from e


def _parse_positive_int(name: str, value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise RuleParseError(f"{name} must be a positive integer, got {value!r}")
    number = int(value)
    if number < 1:
        raise RuleParseError(f"{name} must be at least 1, got {value!r}")
    return number


def _rule_body(text: str) -> str:
    """Extract the single RRULE body, skipping DTSTART lines and the RRULE: prefix."""
    bodies = []
    for raw_line in text.strip().splitlines():
        line = raw_line.strip()
        if not line:
            continue
        upper = line.upper()
        if upper.startswith("DTSTART"):
            continue
        if upper.startswith("RRULE:"):
            line = line[len("RRULE:") :]
        bodies.append(line)
    if len(bodies) != 1:
        raise RuleParseError("Rule text must contain exactly one RRULE line")
    return bodies[0]


def parse_rule(text: str, dtstart: Optional[datetime.datetime] = None) -> RecurrenceRule:
    """Parse stored rule text.

    Args:
        text: Rule text such as ``FREQ=DAILY;INTERVAL=2;COUNT=10``
        dtstart: Optional series start; when given UNTIL is checked against it

    Returns:
        Parsed RecurrenceRule

    Raises:
        RuleParseError: On unknown or duplicate tokens, an unsupported
            frequency, interval < 1, both COUNT and UNTIL, or UNTIL before dtstart
    """
    if not text or not isinstance(text, str):
        raise RuleParseError("Rule text is empty")

    tokens: dict[str, str] = {}
    for part in _rule_body(text).split(";"):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        if not sep or not value.strip():
            raise RuleParseError(f"Malformed rule token {part!r}")
        if key in tokens:
            raise RuleParseError(f"Duplicate rule token {key}")
        tokens[key] = value.strip()

    version = tokens.pop("VERSION", RULE_VERSION)
    if version != RULE_VERSION:
        raise RuleParseError(f"Unsupported rule version {version!r}")

    if "FREQ" not in tokens:
        raise RuleParseError("Rule is missing FREQ")
    freq_text = tokens.pop("FREQ").upper()
    try:
        frequency = Frequency(freq_text)
    except ValueError as e:
        raise RuleParseError(f"Unsupported frequency {freq_text!r}") from e

    interval = 1
    if "INTERVAL" in tokens:
        interval = _parse_positive_int("INTERVAL", tokens.pop("INTERVAL"))

    count_text = tokens.pop("COUNT", None)
    until_text = tokens.pop("UNTIL", None)
    if tokens:
        raise RuleParseError(f"Unsupported rule token(s): {', '.join(sorted(tokens))}")
    if count_text is not None and until_text is not None:
        raise RuleParseError("Rule cannot have both COUNT and UNTIL")

    end: EndCondition = NeverEnd()
    if count_text is not None:
        end = AfterCount(_parse_positive_int("COUNT", count_text))
    elif until_text is not None:
        end = UntilInstant(_parse_until(until_text.upper()))

    rule = RecurrenceRule(frequency=frequency, interval=interval, end=end)
    if dtstart is not None:
        rule.validate_against(dtstart)
    return rule


def format_rule(rule: RecurrenceRule) -> str:
    """Render ``rule`` in canonical text form.

    Emits at most one of COUNT and UNTIL; a rule that never ends has neither.
    """
    parts = [f"FREQ={rule.frequency.value}", f"INTERVAL={rule.interval}"]
    if isinstance(rule.end, AfterCount):
        parts.append(f"COUNT={rule.end.count}")
    elif isinstance(rule.end, UntilInstant):
        parts.append(f"UNTIL={_format_until(rule.end.until)}")
    return ";".join(parts)
