from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_LAST_MINUTE = time(23, 59)


def is_all_day_span(start: datetime, end: datetime) -> bool:
    """Return True when ``start``..``end`` runs midnight-to-midnight.

    The start must sit at 00:00 and the end either at 23:59 on or after the
    start day, or at 00:00 on a later day.
    """
    if start.hour != 0 or start.minute != 0:
        return False
    end_clock = time(end.hour, end.minute)
    if end_clock == _LAST_MINUTE:
        return end.date() >= start.date()
    if end_clock == time.min:
        return end.date() > start.date()
    return False


def last_covered_day(start: datetime, end: datetime) -> date:
    # An end at exactly midnight of a later day is exclusive.
    if end > start and end.time() == time.min and end.date() > start.date():
        return end.date() - timedelta(days=1)
    return end.date()


class CalendarEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    title: str
    start: datetime
    end: datetime
    calendar_color: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("calendar event id must not be empty")
        return text

    @model_validator(mode="after")
    def validate_time_range(self) -> CalendarEvent:
        if self.end < self.start:
            raise ValueError("calendar event end must be >= start")
        return self

    @property
    def is_all_day(self) -> bool:
        return is_all_day_span(self.start, self.end)

    @property
    def start_day(self) -> date:
        return self.start.date()

    @property
    def end_day(self) -> date:
        return last_covered_day(self.start, self.end)

    @property
    def is_multi_day(self) -> bool:
        return self.start_day != self.end_day


class Reminder(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    title: str
    due: datetime | None = None
    has_time: bool = False
    priority: int = Field(default=0, ge=0)
    is_completed: bool = False
    calendar_color: str | None = None

    @model_validator(mode="after")
    def validate_time_flag(self) -> Reminder:
        if self.due is None and self.has_time:
            raise ValueError("reminder without a due date cannot have a time")
        return self


class Holiday(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    title: str
    date: date
    calendar_color: str | None = None
    calendar_id: str | None = None

    @property
    def id(self) -> str:
        return f"holiday_{self.date.isoformat()}_{self.title}"


class CalendarDay(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    date: date
    events: tuple[CalendarEvent, ...] = ()
    reminders: tuple[Reminder, ...] = ()
    holidays: tuple[Holiday, ...] = ()

    @field_validator("date", mode="before")
    @classmethod
    def strip_time(cls, value: object) -> object:
        if isinstance(value, datetime):
            return value.date()
        return value

    @property
    def is_holiday(self) -> bool:
        return bool(self.holidays)

    @property
    def has_items(self) -> bool:
        return bool(self.events or self.reminders or self.holidays)

    @property
    def total_item_count(self) -> int:
        return len(self.events) + len(self.reminders) + len(self.holidays)


class CalendarMonth(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    year: int = Field(ge=1, le=9999)
    month: int = Field(ge=1, le=12)
    days: tuple[CalendarDay, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.year}_{self.month:02d}"

    @property
    def month_index(self) -> int:
        return self.year * 12 + self.month

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def day_for(self, target: date) -> CalendarDay | None:
        if isinstance(target, datetime):
            target = target.date()
        for day in self.days:
            if day.date == target:
                return day
        return None


class ContinuousEventInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: CalendarEvent
    show_title: bool
    is_start: bool
    is_end: bool
    week_position: int = Field(ge=0, le=6)


class HolidayItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["holiday"] = "holiday"
    holiday: Holiday

    @property
    def item_id(self) -> str:
        return self.holiday.id


class EventItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["event"] = "event"
    event: CalendarEvent

    @property
    def item_id(self) -> str:
        return f"event_{self.event.id}"


class ContinuousEventItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["continuous_event"] = "continuous_event"
    info: ContinuousEventInfo

    @property
    def item_id(self) -> str:
        return f"continuous_{self.info.event.id}"


class ReminderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["reminder"] = "reminder"
    reminder: Reminder

    @property
    def item_id(self) -> str:
        return f"reminder_{self.reminder.id}"


CalendarDisplayItem = Annotated[
    Union[HolidayItem, EventItem, ContinuousEventItem, ReminderItem],
    Field(discriminator="kind"),
]
