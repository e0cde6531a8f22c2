from __future__ import annotations

import sys
from datetime import date
from typing import Callable, Sequence

from ..domain.models import (
    CalendarDay,
    CalendarDisplayItem,
    CalendarEvent,
    ContinuousEventInfo,
    ContinuousEventItem,
    EventItem,
    HolidayItem,
    Reminder,
    ReminderItem,
)
from .aggregator import week_position


def _event_sort_key(event: CalendarEvent) -> tuple:
    if event.is_all_day:
        return (1, event.title)
    return (0, event.start)


def sort_events(events: Sequence[CalendarEvent]) -> list[CalendarEvent]:
    """Timed events by start time, then all-day events by title."""
    return sorted(events, key=_event_sort_key)


def _reminder_sort_key(reminder: Reminder) -> tuple:
    priority = reminder.priority or sys.maxsize
    if reminder.has_time and reminder.due is not None:
        return (reminder.is_completed, priority, 0, reminder.due, reminder.title)
    # Date-only reminders are still ordered by due date; undated ones go last.
    due_rank = (0, reminder.due) if reminder.due is not None else (1,)
    return (reminder.is_completed, priority, 1, due_rank, reminder.title)


def sort_reminders(reminders: Sequence[Reminder]) -> list[Reminder]:
    """Incomplete first, then priority (0 = none sorts last), timed before date-only, due, title."""
    return sorted(reminders, key=_reminder_sort_key)


def continuous_event_info(event: CalendarEvent, target: date) -> ContinuousEventInfo | None:
    start_day = event.start_day
    end_day = event.end_day
    if start_day == end_day or not start_day <= target <= end_day:
        return None

    position = week_position(target)
    is_start = target == start_day
    return ContinuousEventInfo(
        event=event,
        show_title=is_start or position == 0,
        is_start=is_start,
        is_end=target == end_day,
        week_position=position,
    )


def compose_display_items(
    day: CalendarDay,
    *,
    show_holidays: bool = True,
    holiday_filter: Callable[[str | None], bool] | None = None,
) -> list[CalendarDisplayItem]:
    """Render order for one day cell: holidays, events, then reminders.

    ``holiday_filter`` receives each holiday's calendar id; holidays it
    rejects are left out without touching the stored day.
    """
    items: list[CalendarDisplayItem] = []

    if show_holidays:
        items.extend(
            HolidayItem(holiday=holiday)
            for holiday in day.holidays
            if holiday_filter is None or holiday_filter(holiday.calendar_id)
        )

    for event in sort_events(day.events):
        info = continuous_event_info(event, day.date)
        if info is not None:
            items.append(ContinuousEventItem(info=info))
        else:
            items.append(EventItem(event=event))

    items.extend(ReminderItem(reminder=reminder) for reminder in sort_reminders(day.reminders))
    return items
