"""Unit tests for taskseries.core.timezone_utils."""

import logging
from datetime import UTC, date, datetime, time, timedelta, timezone

import pytest

from taskseries.core.timezone_utils import (
    TEST_TIME_ENV,
    TimeZoneConverter,
    format_instant,
    is_valid_zone,
    now_utc,
    parse_instant,
    resolve_zone,
    truncate_ms,
)
from taskseries.exceptions import ValidationError

pytestmark = pytest.mark.unit


class TestInstants:
    def test_truncate_ms_when_microseconds_then_dropped_and_utc(self) -> None:
        value = datetime(2024, 1, 1, 12, 0, 0, 123999, tzinfo=timezone(timedelta(hours=1)))
        assert truncate_ms(value) == datetime(2024, 1, 1, 11, 0, 0, 123000, tzinfo=UTC)

    def test_truncate_ms_when_naive_then_raises(self) -> None:
        with pytest.raises(ValueError):
            truncate_ms(datetime(2024, 1, 1))

    def test_format_instant_when_whole_second_then_zero_millis(self) -> None:
        assert format_instant(datetime(2024, 3, 4, 9, 0, tzinfo=UTC)) == "2024-03-04T09:00:00.000Z"

    def test_format_instant_lexical_order_matches_time_order(self) -> None:
        earlier = datetime(2024, 3, 4, 9, 0, 0, 5000, tzinfo=UTC)
        later = datetime(2024, 3, 4, 9, 0, 0, 50000, tzinfo=UTC)
        assert format_instant(earlier) < format_instant(later)

    @pytest.mark.parametrize(
        "text",
        ["2024-03-04T09:00:00Z", "2024-03-04T09:00:00.000Z", "2024-03-04T10:00:00+01:00", "2024-03-04T09:00:00"],
    )
    def test_parse_instant_when_iso_then_utc(self, text: str) -> None:
        assert parse_instant(text) == datetime(2024, 3, 4, 9, 0, tzinfo=UTC)

    @pytest.mark.parametrize("text", ["", "yesterday", "2024-13-01T00:00:00Z"])
    def test_parse_instant_when_invalid_then_validation_error(self, text: str) -> None:
        with pytest.raises(ValidationError) as excinfo:
            parse_instant(text, field="start")
        assert excinfo.value.field == "start"

    def test_now_utc_when_test_time_set_then_overridden(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(TEST_TIME_ENV, "2024-03-04T09:00:00Z")
        assert now_utc() == datetime(2024, 3, 4, 9, 0, tzinfo=UTC)

    def test_now_utc_when_test_time_invalid_then_real_clock(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.setenv(TEST_TIME_ENV, "not-a-date")
        with caplog.at_level(logging.WARNING):
            result = now_utc()
        assert result.tzinfo is not None
        assert result.year >= 2024
        assert TEST_TIME_ENV in caplog.text


class TestZones:
    def test_resolve_zone_when_known_then_zoneinfo(self) -> None:
        assert str(resolve_zone("Europe/Berlin")) == "Europe/Berlin"

    @pytest.mark.parametrize("name", ["", None, "Mars/Olympus_Mons"])
    def test_resolve_zone_when_unknown_then_raises(self, name: str | None) -> None:
        with pytest.raises(ValidationError) as excinfo:
            resolve_zone(name)
        assert excinfo.value.field == "timezone"

    def test_is_valid_zone(self) -> None:
        assert is_valid_zone("America/New_York")
        assert not is_valid_zone("Nowhere/Special")


class TestTimeZoneConverter:
    """Conversions follow fold=0: gaps shift forward, overlaps take the earlier instant."""

    def test_to_utc_when_standard_time_then_offset_applied(self) -> None:
        result = TimeZoneConverter.to_utc(date(2024, 1, 15), time(9, 0), "America/New_York")
        assert result == datetime(2024, 1, 15, 14, 0, tzinfo=UTC)

    def test_to_utc_when_in_gap_then_shifted_forward(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="taskseries.core.timezone_utils"):
            result = TimeZoneConverter.to_utc(date(2024, 3, 10), time(2, 30), "America/New_York")

        assert result == datetime(2024, 3, 10, 7, 30, tzinfo=UTC)
        assert TimeZoneConverter.to_local(result, "America/New_York") == (date(2024, 3, 10), time(3, 30))
        assert "does not exist" in caplog.text

    def test_to_utc_when_ambiguous_then_earlier_instant(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="taskseries.core.timezone_utils"):
            result = TimeZoneConverter.to_utc(date(2024, 11, 3), time(1, 30), "America/New_York")

        assert result == datetime(2024, 11, 3, 5, 30, tzinfo=UTC)
        assert "ambiguous" in caplog.text

    def test_localize_when_quiet_then_no_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="taskseries.core.timezone_utils"):
            TimeZoneConverter.localize(datetime(2024, 3, 10, 2, 30), "America/New_York", quiet=True)
        assert caplog.records == []

    def test_to_local_when_utc_instant_then_wall_clock(self) -> None:
        local_date, local_time = TimeZoneConverter.to_local(
            datetime(2024, 7, 1, 22, 30, tzinfo=UTC), "Asia/Tokyo"
        )
        assert (local_date, local_time) == (date(2024, 7, 2), time(7, 30))

    def test_end_of_local_day_then_last_millisecond(self) -> None:
        result = TimeZoneConverter.end_of_local_day(date(2024, 6, 30), "Europe/Berlin")
        assert result == datetime(2024, 6, 30, 21, 59, 59, 999000, tzinfo=UTC)
