from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ...domain.models import CalendarEvent, Holiday, Reminder


class RecordSourceError(RuntimeError):
    """Raised when records cannot be loaded from a calendar store."""


class RecordSource(Protocol):
    async def fetch_events(self, range_start: datetime, range_end: datetime) -> list[CalendarEvent]:
        """Return events overlapping ``[range_start, range_end)``."""

    async def fetch_reminders(self, range_start: datetime, range_end: datetime) -> list[Reminder]:
        """Return reminders due in the range, plus undated reminders."""

    async def fetch_holidays(self, range_start: datetime, range_end: datetime) -> list[Holiday]:
        """Return holidays from the selected holiday calendars, if enabled."""
