"""Timezone conversion and instant formatting utilities for taskseries.

Tasks are authored in wall-clock time in an IANA zone and stored as UTC
instants. Everything that moves between the two goes through TimeZoneConverter
so that creation, expansion and display share one daylight-saving policy:

- local times are resolved with PEP 495 ``fold=0``
- ambiguous times (clocks fall back) resolve to the earlier instant
- non-existent times (clocks spring forward) shift forward by the gap length
"""

from __future__ import annotations

import datetime
import logging
import os
import zoneinfo
from functools import lru_cache
from typing import Optional

from dateutil import parser as date_parser

from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

TEST_TIME_ENV = "TASKSERIES_TEST_TIME"

# Millisecond-precision UTC text form; lexical order equals chronological order
INSTANT_FORMAT = "%Y-%m-%dT%H:%M:%S"

ONE_MILLISECOND = datetime.timedelta(milliseconds=1)


def now_utc() -> datetime.datetime:
    """Return current UTC time truncated to milliseconds.

    Can be overridden for testing via TASKSERIES_TEST_TIME environment variable.
    Format: ISO 8601 datetime string (e.g., "2024-03-04T09:00:00Z")

    Returns:
        Current time in UTC with timezone info
    """
    test_time = os.environ.get(TEST_TIME_ENV)
    if test_time:
        try:
            dt = date_parser.isoparse(test_time)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=datetime.UTC)
            return truncate_ms(dt)
        except ValueError as e:
            logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV, test_time, e)

    return truncate_ms(datetime.datetime.now(datetime.UTC))


def truncate_ms(dt: datetime.datetime) -> datetime.datetime:
    """Convert an aware datetime to UTC and drop sub-millisecond precision.

    Raises:
        ValueError: If ``dt`` is naive
    """
    if dt.tzinfo is None:
        raise ValueError(f"naive datetime not allowed here: {dt!r}")
    dt = dt.astimezone(datetime.UTC)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def format_instant(dt: datetime.datetime) -> str:
    """Format an instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = truncate_ms(dt)
    return f"{dt.strftime(INSTANT_FORMAT)}.{dt.microsecond // 1000:03d}Z"


def parse_instant(value: str, field: str = "instant") -> datetime.datetime:
    """Parse an ISO-8601 instant into an aware UTC datetime.

    Naive values are taken to be UTC.

    Args:
        value: ISO-8601 text, e.g. "2024-03-04T09:00:00Z" or "2024-03-04T09:00:00.000+00:00"
        field: Field name reported on failure

    Raises:
        ValidationError: If the value is not a valid ISO-8601 datetime
    """
    if not value or not isinstance(value, str):
        raise ValidationError(field, "A date and time is required.")
    try:
        dt = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError) as e:
        raise ValidationError(field, f"Invalid date/time {value!r}.") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.UTC)
    return truncate_ms(dt)


@lru_cache(maxsize=64)
def resolve_zone(name: Optional[str]) -> zoneinfo.ZoneInfo:
    """Resolve an IANA zone name.

    Raises:
        ValidationError: If the name is empty or not a known IANA zone
    """
    if not name:
        raise ValidationError("timezone", "A timezone is required.")
    try:
        return zoneinfo.ZoneInfo(name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError("timezone", f"Unknown timezone {name!r}.") from e


def is_valid_zone(name: Optional[str]) -> bool:
    """Return True if ``name`` is a usable IANA zone."""
    try:
        resolve_zone(name)
    except ValidationError:
        return False
    return True


class TimeZoneConverter:
    """Moves between wall-clock time in a task's zone and UTC instants."""

    @staticmethod
    def localize(
        naive: datetime.datetime, zone_name: str, *, quiet: bool = False
    ) -> datetime.datetime:
        """Resolve a naive wall-clock datetime in ``zone_name`` to a UTC instant.

        Args:
            naive: Wall-clock datetime without tzinfo
            zone_name: IANA zone the wall-clock time belongs to
            quiet: Log DST resolutions at DEBUG instead of WARNING

        Returns:
            Aware UTC datetime truncated to milliseconds
        """
        zone = resolve_zone(zone_name)
        candidate = naive.replace(tzinfo=zone, fold=0)
        instant = truncate_ms(candidate)
        log = logger.debug if quiet else logger.warning

        round_trip = instant.astimezone(zone).replace(tzinfo=None, fold=0)
        if round_trip != naive.replace(microsecond=(naive.microsecond // 1000) * 1000):
            log(
                "Local time %s does not exist in %s, shifted to %s",
                naive.isoformat(),
                zone_name,
                round_trip.isoformat(),
            )
        elif naive.replace(tzinfo=zone, fold=1).utcoffset() != candidate.utcoffset():
            log(
                "Local time %s is ambiguous in %s, using earlier instant %s",
                naive.isoformat(),
                zone_name,
                format_instant(instant),
            )
        return instant

    @classmethod
    def to_utc(
        cls, local_date: datetime.date, local_time: datetime.time, zone_name: str
    ) -> datetime.datetime:
        """Convert a local date and time in ``zone_name`` to a UTC instant."""
        return cls.localize(datetime.datetime.combine(local_date, local_time), zone_name)

    @staticmethod
    def to_local(
        instant: datetime.datetime, zone_name: str
    ) -> tuple[datetime.date, datetime.time]:
        """Convert a UTC instant to a (date, time) pair in ``zone_name``."""
        local = instant.astimezone(resolve_zone(zone_name))
        return local.date(), local.time().replace(tzinfo=None, fold=0)

    @staticmethod
    def wall_clock(instant: datetime.datetime, zone_name: str) -> datetime.datetime:
        """Return the naive wall-clock datetime of ``instant`` in ``zone_name``."""
        return instant.astimezone(resolve_zone(zone_name)).replace(tzinfo=None, fold=0)

    @classmethod
    def end_of_local_day(cls, local_date: datetime.date, zone_name: str) -> datetime.datetime:
        """Return the UTC instant of 23:59:59.999 on ``local_date`` in ``zone_name``."""
        return cls.to_utc(local_date, datetime.time(23, 59, 59, 999000), zone_name)
