from .aggregator import (
    build_day,
    build_month,
    event_occurs_on,
    fetch_day,
    fetch_month,
    fetch_range,
    grid_dates,
    reminder_occurs_on,
    shift_month,
    week_position,
)
from .composer import compose_display_items, continuous_event_info, sort_events, sort_reminders
from .loader import LoadPriority, LoadRequest, LoadScheduler

__all__ = [
    "LoadPriority",
    "LoadRequest",
    "LoadScheduler",
    "build_day",
    "build_month",
    "compose_display_items",
    "continuous_event_info",
    "event_occurs_on",
    "fetch_day",
    "fetch_month",
    "fetch_range",
    "grid_dates",
    "reminder_occurs_on",
    "shift_month",
    "sort_events",
    "sort_reminders",
    "week_position",
]
