"""Recurring time windows: find the active and the upcoming period of a schedule."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from dateutil import rrule

__all__ = ["RecurrenceRule", "Period", "ScheduleError", "match_schedule"]

_FREQUENCIES = {
    "Daily": (rrule.DAILY, 0, 0, 1),
    "Weekly": (rrule.WEEKLY, 0, 0, 7),
    "Monthly": (rrule.MONTHLY, 0, 1, 0),
    "Yearly": (rrule.YEARLY, 1, 0, 0),
}

# The smallest step a datetime can express.
_TICK = timedelta(microseconds=1)


class ScheduleError(ValueError):
    """Raised when a schedule cannot be evaluated."""


@dataclass(frozen=True)
class RecurrenceRule:
    """How often a period repeats and until when; an empty frequency means once."""

    frequency: str = ""
    until_time: datetime | None = None


def _rfc3339(moment: datetime) -> str:
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class Period:
    """A time window with a start and an end."""

    start_time: datetime
    end_time: datetime

    def __str__(self) -> str:
        return f"{_rfc3339(self.start_time)}-{_rfc3339(self.end_time)}"


def _elapsed(later: datetime, earlier: datetime) -> timedelta:
    """Absolute time between two instants, independent of wall-clock shifts."""
    if later.tzinfo is not None and earlier.tzinfo is not None:
        return later.astimezone(timezone.utc) - earlier.astimezone(timezone.utc)
    return later - earlier


def _shift_calendar(moment: datetime, years: int, months: int, days: int) -> datetime:
    """Add calendar units, letting overflowing days roll into the next month."""
    month_index = moment.month - 1 + months
    year = moment.year + years + month_index // 12
    month = month_index % 12 + 1
    first = moment.replace(year=year, month=month, day=1)
    return first + timedelta(days=moment.day - 1 + days)


def match_schedule(
    now: datetime,
    start_time: datetime,
    end_time: datetime,
    recurrence_rule: RecurrenceRule,
) -> tuple[Period | None, Period | None]:
    """Return ``(active, upcoming)`` periods of the schedule as seen at ``now``."""
    frequency = recurrence_rule.frequency

    if frequency == "":
        if now < start_time:
            return None, Period(start_time, end_time)
        if now < end_time:
            return Period(start_time, end_time), None
        return None, None

    try:
        freq_value, years, months, days = _FREQUENCIES[frequency]
    except KeyError:
        raise ScheduleError(
            f'invalid freq {frequency!r}: It must be one of "Daily", "Weekly", "Monthly", and "Yearly"'
        ) from None

    freq_duration_later = _shift_calendar(now, years, months, days)
    freq_duration = _elapsed(freq_duration_later, now)

    override_duration = _elapsed(end_time, start_time)
    if override_duration > freq_duration:
        raise ScheduleError(
            f"override's duration {override_duration} must be equal to or shorter than "
            f"the duration implied by freq {frequency!r} ({freq_duration})"
        )

    try:
        rule = rrule.rrule(freq_value, dtstart=start_time, until=recurrence_rule.until_time)
    except (TypeError, ValueError) as exc:
        raise ScheduleError(str(exc)) from exc

    active_starts = rule.between(now - override_duration + _TICK, now, inc=True)
    if len(active_starts) > 1:
        raise ScheduleError(f"unexpected number of active overrides found: {active_starts}")

    active = None
    if active_starts:
        first = active_starts[0]
        active = Period(first, first + override_duration)

    upcoming_starts = rule.between(now + _TICK, freq_duration_later, inc=True)
    upcoming = None
    if upcoming_starts:
        first = upcoming_starts[0]
        upcoming = Period(first, first + override_duration)

    return active, upcoming