"""Expansion of recurrence rules into concrete UTC occurrence instants."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from ..core.timezone_utils import TimeZoneConverter, truncate_ms
from ..exceptions import CapExceededError
from .rule import AfterCount, Frequency, RecurrenceRule, UntilInstant

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 25

_STEP_UNITS = {
    Frequency.DAILY: "days",
    Frequency.WEEKLY: "weeks",
    Frequency.MONTHLY: "months",
    Frequency.YEARLY: "years",
}


@dataclass
class RuleExpanderConfig:
    """Configuration for rule expansion."""

    max_occurrences: int = DEFAULT_MAX_OCCURRENCES

    @classmethod
    def from_settings(cls, settings: Any) -> RuleExpanderConfig:
        """Extract expansion configuration from a settings object.

        Args:
            settings: Configuration object, typically PlannerSettings

        Returns:
            RuleExpanderConfig with values from settings or defaults
        """
        return cls(max_occurrences=getattr(settings, "max_occurrences", DEFAULT_MAX_OCCURRENCES))


@dataclass(frozen=True)
class ExpansionResult:
    """Occurrences of one series inside a window.

    Attributes:
        instants: Ordered UTC instants inside the window
        cap_reached: True when the series had further occurrences up to the
            window end that the safety cap suppressed
    """

    instants: tuple[datetime.datetime, ...]
    cap_reached: bool = False

    def __iter__(self) -> Iterator[datetime.datetime]:
        return iter(self.instants)

    def __len__(self) -> int:
        return len(self.instants)


class RuleExpander:
    """Steps a rule's anchor forward in wall-clock time and converts each step to UTC.

    Stepping is always computed from the anchor (``anchor + k * interval``) so
    month and year arithmetic clamps to the end of shorter months without
    drifting, and the local time of day survives daylight-saving changes.
    """

    def __init__(self, config: Optional[RuleExpanderConfig] = None):
        self.config = config or RuleExpanderConfig()
        if self.config.max_occurrences < 1:
            raise ValueError("max_occurrences must be at least 1")

    @classmethod
    def from_settings(cls, settings: Any) -> RuleExpander:
        return cls(RuleExpanderConfig.from_settings(settings))

    @property
    def max_occurrences(self) -> int:
        return self.config.max_occurrences

    def _step(
        self,
        rule: RecurrenceRule,
        anchor: datetime.datetime,
        anchor_local: datetime.datetime,
        timezone: str,
        k: int,
    ) -> datetime.datetime:
        if k == 0:
            return anchor
        delta = relativedelta(**{_STEP_UNITS[rule.frequency]: rule.interval * k})
        return TimeZoneConverter.localize(anchor_local + delta, timezone, quiet=True)

    def iter_occurrences(
        self,
        rule: RecurrenceRule,
        anchor_instant: datetime.datetime,
        anchor_timezone: str,
        until: Optional[datetime.datetime] = None,
    ) -> Iterator[tuple[int, datetime.datetime]]:
        """Yield ``(index, instant)`` for every occurrence the rule produces.

        Stops at the rule's end condition, the safety cap, or the first instant
        after ``until``, whichever comes first.
        """
        for k, instant, _capped in self._walk(rule, anchor_instant, anchor_timezone, until):
            if instant is None:
                return
            yield k, instant

    def _walk(
        self,
        rule: RecurrenceRule,
        anchor_instant: datetime.datetime,
        anchor_timezone: str,
        horizon: Optional[datetime.datetime],
    ) -> Iterator[tuple[int, Optional[datetime.datetime], bool]]:
        anchor = truncate_ms(anchor_instant)
        anchor_local = TimeZoneConverter.wall_clock(anchor, anchor_timezone)
        k = 0
        while True:
            if isinstance(rule.end, AfterCount) and k >= rule.end.count:
                return
            instant = self._step(rule, anchor, anchor_local, anchor_timezone, k)
            if isinstance(rule.end, UntilInstant) and instant > rule.end.until:
                return
            if horizon is not None and instant > horizon:
                return
            if k >= self.config.max_occurrences:
                yield k, None, True
                return
            yield k, instant, False
            k += 1

    def expand(
        self,
        rule: RecurrenceRule,
        anchor_instant: datetime.datetime,
        anchor_timezone: str,
        window_start: datetime.datetime,
        window_end: datetime.datetime,
    ) -> ExpansionResult:
        """Expand ``rule`` into the occurrences inside ``[window_start, window_end]``.

        Instants before ``window_start`` are still stepped through so the cap
        and COUNT apply to the whole series, not to this window.

        Args:
            rule: Recurrence rule of the series
            anchor_instant: UTC instant of the first occurrence (dtstart)
            anchor_timezone: IANA zone the series was authored in
            window_start: Inclusive window start
            window_end: Inclusive window end

        Returns:
            ExpansionResult with the in-window instants and the cap flag
        """
        window_start = truncate_ms(window_start)
        window_end = truncate_ms(window_end)
        instants: list[datetime.datetime] = []
        cap_reached = False
        if window_end < window_start:
            return ExpansionResult(instants=())

        for _k, instant, capped in self._walk(rule, anchor_instant, anchor_timezone, window_end):
            if capped:
                cap_reached = True
                break
            if instant is not None and instant >= window_start:
                instants.append(instant)

        if cap_reached:
            logger.warning(
                "Occurrences limited to %d for %s rule anchored at %s",
                self.config.max_occurrences,
                rule.frequency.value,
                anchor_instant.isoformat(),
            )
        logger.debug(
            "Expanded %s/%d rule: %d occurrence(s) in window, cap_reached=%s",
            rule.frequency.value,
            rule.interval,
            len(instants),
            cap_reached,
        )
        return ExpansionResult(instants=tuple(instants), cap_reached=cap_reached)

    def expand_series(
        self,
        rule: RecurrenceRule,
        anchor_instant: datetime.datetime,
        anchor_timezone: str,
        task_id: Optional[str] = None,
    ) -> tuple[datetime.datetime, ...]:
        """Every occurrence of a bounded series.

        Raises:
            CapExceededError: If the series never ends or has more occurrences
                than the safety cap allows
        """
        instants: list[datetime.datetime] = []
        for _k, instant, capped in self._walk(rule, anchor_instant, anchor_timezone, None):
            if capped:
                raise CapExceededError(self.config.max_occurrences, task_id=task_id)
            if instant is not None:
                instants.append(instant)
        return tuple(instants)

    def occurrence_index(
        self,
        rule: RecurrenceRule,
        anchor_instant: datetime.datetime,
        anchor_timezone: str,
        instant: datetime.datetime,
    ) -> Optional[int]:
        """Return the zero-based index of ``instant`` in the series, or None."""
        target = truncate_ms(instant)
        for k, occurrence in self.iter_occurrences(rule, anchor_instant, anchor_timezone, target):
            if occurrence == target:
                return k
        return None

    def count_before(
        self,
        rule: RecurrenceRule,
        anchor_instant: datetime.datetime,
        anchor_timezone: str,
        instant: datetime.datetime,
    ) -> int:
        """Count the series occurrences strictly before ``instant``."""
        target = truncate_ms(instant)
        return sum(
            1
            for _k, occurrence in self.iter_occurrences(rule, anchor_instant, anchor_timezone, target)
            if occurrence < target
        )
