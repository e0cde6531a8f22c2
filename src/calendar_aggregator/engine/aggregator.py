"""Bucket raw events, reminders and holidays into per-day groups for a month grid.

Datetimes are interpreted in the zone they carry; record sources normalize
them to the configured local timezone, so ``value.date()`` is the local day.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, Literal, Sequence

from ..adapters.calendar.base import RecordSource
from ..domain.models import CalendarDay, CalendarEvent, CalendarMonth, Holiday, Reminder
from ..errors import FetchFailedError, InvalidInputError

LOGGER = logging.getLogger(__name__)

GRID_WEEKS = 6
GRID_DAYS = GRID_WEEKS * 7
GRID_PADDING_DAYS = 7

WeekStart = Literal["sunday", "monday"]


def validate_year_month(year: int, month: int) -> None:
    if isinstance(year, bool) or not isinstance(year, int) or not 1 <= year <= 9999:
        raise InvalidInputError(f"Invalid year: {year!r}")
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise InvalidInputError(f"Invalid month: {month!r}")


def shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    new_year, month_zero = divmod(year * 12 + (month - 1) + offset, 12)
    return new_year, month_zero + 1


def week_position(day: date) -> int:
    """Absolute weekday index with Sunday=0 .. Saturday=6."""
    return (day.weekday() + 1) % 7


def grid_dates(year: int, month: int, *, week_start: WeekStart = "sunday") -> list[date]:
    validate_year_month(year, month)
    first = date(year, month, 1)
    lead = week_position(first) if week_start == "sunday" else first.weekday()
    grid_start = first - timedelta(days=lead)
    return [grid_start + timedelta(days=offset) for offset in range(GRID_DAYS)]


def fetch_range(year: int, month: int, *, week_start: WeekStart = "sunday") -> tuple[date, date]:
    """Return the half-open ``[start, end)`` day range fetched for a month.

    Seven days of padding either side of the month, widened where the
    six-week grid reaches further.
    """
    validate_year_month(year, month)
    first = date(year, month, 1)
    next_year, next_month = shift_month(year, month, 1)
    padded_start = first - timedelta(days=GRID_PADDING_DAYS)
    padded_end = date(next_year, next_month, 1) + timedelta(days=GRID_PADDING_DAYS)
    dates = grid_dates(year, month, week_start=week_start)
    return min(padded_start, dates[0]), max(padded_end, dates[-1] + timedelta(days=1))


def day_bounds(day: date, zone: tzinfo | None) -> tuple[datetime, datetime]:
    day_start = datetime.combine(day, time.min, tzinfo=zone)
    return day_start, day_start + timedelta(days=1)


def event_occurs_on(event: CalendarEvent, day: date) -> bool:
    if event.is_all_day:
        return event.start_day <= day <= event.end_day
    day_start, day_end = day_bounds(day, event.start.tzinfo)
    return event.end > day_start and event.start < day_end


def reminder_occurs_on(reminder: Reminder, day: date, *, today: date) -> bool:
    # Undated reminders only show up on the day the aggregation treats as today.
    if reminder.due is None:
        return day == today
    return reminder.due.date() == day


def holiday_occurs_on(holiday: Holiday, day: date) -> bool:
    return holiday.date == day


def build_day(
    day: date,
    events: Iterable[CalendarEvent],
    reminders: Iterable[Reminder],
    holidays: Iterable[Holiday],
    *,
    today: date,
) -> CalendarDay:
    return CalendarDay(
        date=day,
        events=tuple(event for event in events if event_occurs_on(event, day)),
        reminders=tuple(reminder for reminder in reminders if reminder_occurs_on(reminder, day, today=today)),
        holidays=tuple(holiday for holiday in holidays if holiday_occurs_on(holiday, day)),
    )


def build_month(
    year: int,
    month: int,
    events: Sequence[CalendarEvent],
    reminders: Sequence[Reminder],
    holidays: Sequence[Holiday],
    *,
    today: date,
    week_start: WeekStart = "sunday",
) -> CalendarMonth:
    days = tuple(
        build_day(day, events, reminders, holidays, today=today)
        for day in grid_dates(year, month, week_start=week_start)
    )
    return CalendarMonth(year=year, month=month, days=days)


async def fetch_records(
    source: RecordSource,
    range_start: datetime,
    range_end: datetime,
) -> tuple[list[CalendarEvent], list[Reminder], list[Holiday]]:
    """Fetch all three record kinds concurrently; any failure fails the whole range."""
    results = await asyncio.gather(
        source.fetch_events(range_start, range_end),
        source.fetch_reminders(range_start, range_end),
        source.fetch_holidays(range_start, range_end),
        return_exceptions=True,
    )
    for label, result in zip(("events", "reminders", "holidays"), results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            raise FetchFailedError(
                f"Fetching {label} for {range_start.isoformat()}..{range_end.isoformat()} failed: {result}"
            ) from result

    events, reminders, holidays = results
    return list(events), list(reminders), list(holidays)


async def fetch_month(
    source: RecordSource,
    year: int,
    month: int,
    *,
    today: date,
    week_start: WeekStart = "sunday",
    zone: tzinfo | None = None,
) -> CalendarMonth:
    range_start_day, range_end_day = fetch_range(year, month, week_start=week_start)
    range_start, _ = day_bounds(range_start_day, zone)
    range_end, _ = day_bounds(range_end_day, zone)

    events, reminders, holidays = await fetch_records(source, range_start, range_end)
    calendar_month = build_month(
        year,
        month,
        events,
        reminders,
        holidays,
        today=today,
        week_start=week_start,
    )
    LOGGER.debug(
        "Aggregated %d events, %d reminders, %d holidays into %s",
        len(events),
        len(reminders),
        len(holidays),
        calendar_month.key,
    )
    return calendar_month


async def fetch_day(
    source: RecordSource,
    day: date,
    *,
    today: date,
    zone: tzinfo | None = None,
) -> CalendarDay:
    day_start, day_end = day_bounds(day, zone)
    events, reminders, holidays = await fetch_records(source, day_start, day_end)
    return build_day(day, events, reminders, holidays, today=today)
