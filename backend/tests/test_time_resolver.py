from __future__ import annotations

from datetime import datetime, timezone

import pytest

from reminder_delivery.errors import ValidationFailure
from reminder_delivery.time_resolver import TimeResolver


def _resolver(now: datetime) -> TimeResolver:
    return TimeResolver(clock=lambda: now)


def test_resolve_converts_wall_clock_to_utc_instant() -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    resolved = resolver.resolve("2024-06-01T09:00", "America/New_York")

    assert resolved.instant == datetime(2024, 6, 1, 13, 0, tzinfo=timezone.utc)
    assert resolved.display_time == "Jun 01, 2024, 09:00 AM EDT"
    assert resolved.timezone == "America/New_York"


def test_resolve_is_idempotent() -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    first = resolver.resolve("2024-12-24T18:45", "Europe/Berlin")
    second = resolver.resolve("2024-12-24T18:45", "Europe/Berlin")

    assert first == second
    assert first.instant == datetime(2024, 12, 24, 17, 45, tzinfo=timezone.utc)


def test_resolve_accepts_space_separator_and_seconds() -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    resolved = resolver.resolve("2024-06-01 09:00:00", "UTC")

    assert resolved.instant == datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


def test_resolve_rejects_spring_forward_gap() -> None:
    resolver = _resolver(datetime(2024, 3, 1, tzinfo=timezone.utc))

    with pytest.raises(ValidationFailure) as exc_info:
        resolver.resolve("2024-03-10T02:30", "America/New_York")

    assert exc_info.value.reason == "nonexistent_time"
    assert "daylight saving" in exc_info.value.message


def test_resolve_accepts_ambiguous_fall_back_time_as_first_occurrence() -> None:
    resolver = _resolver(datetime(2024, 10, 1, tzinfo=timezone.utc))

    resolved = resolver.resolve("2024-11-03T01:30", "America/New_York")

    assert resolved.instant == datetime(2024, 11, 3, 5, 30, tzinfo=timezone.utc)
    assert resolved.display_time.endswith("EDT")


def test_resolve_rejects_unknown_timezone() -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    with pytest.raises(ValidationFailure) as exc_info:
        resolver.resolve("2024-06-01T09:00", "Mars/Olympus_Mons")

    assert exc_info.value.reason == "invalid_timezone"


def test_resolve_rejects_blank_timezone() -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    with pytest.raises(ValidationFailure) as exc_info:
        resolver.resolve("2024-06-01T09:00", "  ")

    assert exc_info.value.reason == "invalid_timezone"


@pytest.mark.parametrize("raw", ["tomorrow at nine", "2024-13-01T09:00", "2024-06-01T09:00+02:00"])
def test_resolve_rejects_bad_wall_clock(raw: str) -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    with pytest.raises(ValidationFailure) as exc_info:
        resolver.resolve(raw, "UTC")

    assert exc_info.value.reason == "invalid_datetime"


@pytest.mark.parametrize("raw", ["2024-06-02", "20240602T1200", "2024-06-02T12", "2024-W22-7T12:00"])
def test_resolve_rejects_date_only_and_compact_forms(raw: str) -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))

    with pytest.raises(ValidationFailure) as exc_info:
        resolver.resolve(raw, "UTC")

    assert exc_info.value.reason == "invalid_datetime"


def test_resolve_rejects_past_and_immediate_times() -> None:
    now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
    resolver = _resolver(now)

    with pytest.raises(ValidationFailure) as past:
        resolver.resolve("2024-06-01T08:59", "UTC")
    with pytest.raises(ValidationFailure) as immediate:
        resolver.resolve("2024-06-01T09:00", "UTC")

    assert past.value.reason == "past_time"
    assert immediate.value.reason == "past_time"


def test_describe_validates_zone_only() -> None:
    resolver = _resolver(datetime(2024, 6, 1, tzinfo=timezone.utc))
    instant = datetime(2020, 1, 1, 12, 0, tzinfo=timezone.utc)

    described = resolver.describe(instant, "Asia/Tokyo")

    assert described.instant == instant
    assert described.display_time == "Jan 01, 2020, 09:00 PM JST"
    with pytest.raises(ValidationFailure):
        resolver.describe(instant, "Nowhere/City")


def test_local_wall_clock_round_trips_through_resolve() -> None:
    resolver = _resolver(datetime(2024, 5, 1, tzinfo=timezone.utc))
    resolved = resolver.resolve("2024-07-04T20:15", "America/Los_Angeles")

    assert resolver.local_wall_clock(resolved.instant, "America/Los_Angeles") == "2024-07-04T20:15"


def test_popular_timezones_report_current_offsets() -> None:
    resolver = _resolver(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))

    zones = {info.identifier: info for info in resolver.popular_timezones()}

    assert len(zones) == 10
    assert zones["UTC"].current_offset == "UTC"
    assert zones["America/New_York"].current_offset == "EST"
    assert zones["America/New_York"].display_name == "America/New York"
    assert zones["Asia/Tokyo"].current_time.hour == 21
