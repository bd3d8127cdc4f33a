from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .clock import Clock, coerce_utc, now_utc
from .errors import ValidationFailure

NONEXISTENT_TIME_TOLERANCE = timedelta(seconds=60)

_WALL_CLOCK_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?"
)

POPULAR_TIMEZONES = (
    "UTC",
    "America/New_York",
    "America/Los_Angeles",
    "America/Chicago",
    "Europe/London",
    "Europe/Berlin",
    "Europe/Paris",
    "Asia/Tokyo",
    "Asia/Shanghai",
    "Australia/Sydney",
)


@dataclass(frozen=True)
class ResolvedTime:
    instant: datetime
    display_time: str
    timezone: str


@dataclass(frozen=True)
class TimezoneInfo:
    identifier: str
    display_name: str
    current_offset: str
    current_time: datetime


def load_zone(timezone_name: str) -> ZoneInfo:
    normalized = timezone_name.strip()
    if not normalized:
        raise ValidationFailure("invalid_timezone", "timezone is required")
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ValidationFailure("invalid_timezone", f"Invalid timezone: {timezone_name}") from exc


def parse_wall_clock(local_datetime: str) -> datetime:
    raw = local_datetime.strip()
    invalid = ValidationFailure(
        "invalid_datetime",
        f"Invalid local time {local_datetime!r}; expected YYYY-MM-DDTHH:MM",
    )
    # fromisoformat alone also takes date-only and compact basic-format strings.
    if _WALL_CLOCK_RE.fullmatch(raw) is None:
        raise invalid
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise invalid from exc
    if parsed.tzinfo is not None:
        raise ValidationFailure(
            "invalid_datetime",
            "Local time must be a wall-clock time without a UTC offset",
        )
    return parsed.replace(microsecond=0)


def format_display(instant: datetime, zone: ZoneInfo) -> str:
    local = coerce_utc(instant).astimezone(zone)
    return local.strftime("%b %d, %Y, %I:%M %p %Z")


class TimeResolver:
    """Turns a recipient's wall-clock time into an absolute UTC delivery instant.

    Rejects unknown zones, times that are not strictly in the future, and wall
    clocks that do not exist in the zone (spring-forward gaps). ``now`` always
    comes from the injected clock.
    """

    def __init__(self, *, clock: Clock = now_utc) -> None:
        self._clock = clock

    def resolve(self, local_datetime: str, timezone_name: str) -> ResolvedTime:
        zone = load_zone(timezone_name)
        wall_clock = parse_wall_clock(local_datetime)

        # fold=0 puts gap times on the pre-transition offset, so the round trip below moves them.
        instant = coerce_utc(wall_clock.replace(tzinfo=zone, fold=0))

        if instant <= coerce_utc(self._clock()):
            raise ValidationFailure("past_time", "Scheduled time must be in the future")

        projected = instant.astimezone(zone).replace(tzinfo=None)
        if abs(projected - wall_clock) > NONEXISTENT_TIME_TOLERANCE:
            raise ValidationFailure(
                "nonexistent_time",
                f"{wall_clock.isoformat(timespec='minutes')} does not exist in {zone.key} "
                "due to a daylight saving time transition",
            )

        return ResolvedTime(
            instant=instant,
            display_time=format_display(instant, zone),
            timezone=zone.key,
        )

    def describe(self, instant: datetime, timezone_name: str) -> ResolvedTime:
        zone = load_zone(timezone_name)
        normalized = coerce_utc(instant)
        return ResolvedTime(
            instant=normalized,
            display_time=format_display(normalized, zone),
            timezone=zone.key,
        )

    def local_wall_clock(self, instant: datetime, timezone_name: str) -> str:
        zone = load_zone(timezone_name)
        return coerce_utc(instant).astimezone(zone).strftime("%Y-%m-%dT%H:%M")

    def popular_timezones(self) -> list[TimezoneInfo]:
        now = coerce_utc(self._clock())
        result: list[TimezoneInfo] = []
        for identifier in POPULAR_TIMEZONES:
            local = now.astimezone(ZoneInfo(identifier))
            result.append(
                TimezoneInfo(
                    identifier=identifier,
                    display_name=identifier.replace("_", " "),
                    current_offset=local.strftime("%Z"),
                    current_time=local,
                )
            )
        return result
