"""Shared fixtures for the calendar aggregator test suite.

``FakeRecordSource`` stands in for a real calendar store: it serves in-memory
records, logs every range it was asked for, can be told to fail for given
months, and can hold fetches behind an ``asyncio.Event``.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Iterable

import pytest

from calendar_aggregator.domain.models import CalendarEvent, Holiday, Reminder
from calendar_aggregator.service import CalendarAggregationService
from calendar_aggregator.storage.cache import CalendarCache


class FakeRecordSource:
    def __init__(
        self,
        *,
        events: Iterable[CalendarEvent] = (),
        reminders: Iterable[Reminder] = (),
        holidays: Iterable[Holiday] = (),
    ) -> None:
        self.events = list(events)
        self.reminders = list(reminders)
        self.holidays = list(holidays)
        self.calls: list[tuple[str, datetime, datetime]] = []
        self.month_fetches: list[tuple[int, int]] = []
        self.failing_months: set[tuple[int, int]] = set()
        self.gate: asyncio.Event | None = None

    @staticmethod
    def month_of(range_start: datetime, range_end: datetime) -> tuple[int, int]:
        midpoint = range_start + (range_end - range_start) / 2
        return midpoint.year, midpoint.month

    def fetch_count(self, year: int, month: int) -> int:
        return self.month_fetches.count((year, month))

    async def fetch_events(self, range_start: datetime, range_end: datetime) -> list[CalendarEvent]:
        self.calls.append(("events", range_start, range_end))
        month = self.month_of(range_start, range_end)
        self.month_fetches.append(month)
        # Snapshot before the gate, like a read that started before the store changed.
        events = [event for event in self.events if event.start < range_end and event.end > range_start]
        if self.gate is not None:
            await self.gate.wait()
        if month in self.failing_months:
            raise RuntimeError(f"store unavailable for {month[0]}-{month[1]:02d}")
        return events

    async def fetch_reminders(self, range_start: datetime, range_end: datetime) -> list[Reminder]:
        self.calls.append(("reminders", range_start, range_end))
        return [
            reminder
            for reminder in self.reminders
            if reminder.due is None or range_start.date() <= reminder.due.date() < range_end.date()
        ]

    async def fetch_holidays(self, range_start: datetime, range_end: datetime) -> list[Holiday]:
        self.calls.append(("holidays", range_start, range_end))
        return [
            holiday for holiday in self.holidays if range_start.date() <= holiday.date < range_end.date()
        ]


def make_event(
    event_id: str,
    start: datetime,
    end: datetime,
    title: str | None = None,
    color: str | None = None,
) -> CalendarEvent:
    return CalendarEvent(id=event_id, title=title or event_id, start=start, end=end, calendar_color=color)


def make_all_day(event_id: str, first: date, last: date, title: str | None = None) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        title=title or event_id,
        start=datetime(first.year, first.month, first.day, 0, 0),
        end=datetime(last.year, last.month, last.day, 23, 59),
    )


@pytest.fixture
def fake_source() -> FakeRecordSource:
    return FakeRecordSource()


@pytest.fixture
def cache() -> CalendarCache:
    return CalendarCache()


@pytest.fixture
def service(fake_source: FakeRecordSource, cache: CalendarCache) -> CalendarAggregationService:
    return CalendarAggregationService(
        fake_source,
        cache=cache,
        today_provider=lambda: date(2025, 3, 15),
    )
