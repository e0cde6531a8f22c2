from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, tzinfo
from typing import Callable, Iterable

from .adapters.calendar.base import RecordSource
from .adapters.calendar.ics import HolidaySelection
from .domain.models import CalendarDay, CalendarDisplayItem, CalendarMonth
from .engine.aggregator import WeekStart, fetch_day, fetch_month, shift_month, validate_year_month
from .engine.composer import compose_display_items
from .engine.loader import LoadPriority, LoadScheduler
from .errors import InvalidInputError
from .settings import AppSettings
from .storage.cache import CalendarCache, CacheStatistics, display_items_cache_key, month_cache_key

LOGGER = logging.getLogger(__name__)


class CalendarAggregationService:
    """Month, day and window queries for the calendar UI.

    Owns one ``CalendarCache`` and the ``LoadScheduler`` that fills it; both
    live exactly as long as the service instance.
    """

    def __init__(
        self,
        source: RecordSource,
        *,
        cache: CalendarCache | None = None,
        zone: tzinfo | None = None,
        week_start: WeekStart = "sunday",
        show_holidays: bool = True,
        window_range: int = 1,
        today_provider: Callable[[], date] | None = None,
        holiday_selection: HolidaySelection | None = None,
    ) -> None:
        self._source = source
        self._cache = cache if cache is not None else CalendarCache()
        self._zone = zone
        self._week_start = week_start
        self._show_holidays = show_holidays
        self._window_range = window_range
        self._today_provider = today_provider or (lambda: datetime.now(zone).date())
        self._holiday_selection = holiday_selection
        self._scheduler = LoadScheduler(self._cache, self._load_month_from_source)

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        source: RecordSource,
        *,
        holiday_selection: HolidaySelection | None = None,
    ) -> CalendarAggregationService:
        cache_settings = settings.yaml.cache
        return cls(
            source,
            cache=CalendarCache(
                max_months=cache_settings.max_months,
                max_display_days=cache_settings.max_display_days,
                expiry_months=cache_settings.expiry_months,
            ),
            zone=settings.timezone,
            week_start=settings.yaml.grid.week_start,
            show_holidays=settings.yaml.holidays.show,
            window_range=settings.yaml.loading.window_range,
            holiday_selection=holiday_selection,
        )

    @property
    def cache(self) -> CalendarCache:
        return self._cache

    @property
    def scheduler(self) -> LoadScheduler:
        return self._scheduler

    @property
    def show_holidays(self) -> bool:
        return self._show_holidays

    @property
    def holiday_selection(self) -> HolidaySelection | None:
        return self._holiday_selection

    @property
    def window_range(self) -> int:
        return self._window_range

    def today(self) -> date:
        return self._today_provider()

    async def fetch_month(
        self,
        year: int,
        month: int,
        priority: LoadPriority = LoadPriority.CRITICAL,
    ) -> CalendarMonth:
        return await self._scheduler.load(year, month, priority)

    async def fetch_day(self, day: date) -> CalendarDay:
        if isinstance(day, datetime):
            day = day.date()
        if not isinstance(day, date):
            raise InvalidInputError(f"Invalid day: {day!r}")

        cached_month = self._cache.get_month(month_cache_key(day.year, day.month))
        if cached_month is not None:
            cached_day = cached_month.day_for(day)
            if cached_day is not None:
                return cached_day

        return await fetch_day(self._source, day, today=self.today(), zone=self._zone)

    async def fetch_window(self, center: date, window_range: int | None = None) -> list[CalendarMonth]:
        if not isinstance(center, date):
            raise InvalidInputError(f"Invalid window center: {center!r}")
        span = self._window_range if window_range is None else window_range
        return await self._scheduler.load_window(center.year, center.month, span)

    def prefetch(
        self,
        year: int,
        month: int,
        priority: LoadPriority = LoadPriority.LOW,
    ) -> asyncio.Task[None]:
        return self._scheduler.prefetch(year, month, priority)

    def prefetch_adjacent(self, year: int, month: int, span: int = 2) -> list[asyncio.Task[None]]:
        """Warm the months around ``(year, month)`` without blocking the caller."""
        validate_year_month(year, month)
        tasks = []
        for offset in range(-span, span + 1):
            if offset == 0:
                continue
            target_year, target_month = shift_month(year, month, offset)
            if self._scheduler.is_month_cached(target_year, target_month):
                continue
            tasks.append(self.prefetch(target_year, target_month, LoadPriority.for_offset(offset)))
        return tasks

    def get_or_compose_display_items(self, day: CalendarDay) -> tuple[CalendarDisplayItem, ...]:
        key = display_items_cache_key(day.date)
        cached = self._cache.get_display_items(key)
        if cached is not None:
            return cached

        selection = self._holiday_selection
        items = tuple(
            compose_display_items(
                day,
                show_holidays=self._show_holidays,
                holiday_filter=selection.allows if selection is not None else None,
            )
        )
        self._cache.set_display_items(key, items)
        return items

    async def fetch_display_items(self, day: date) -> tuple[CalendarDisplayItem, ...]:
        """Cached display items for ``day``, fetching the day only on a miss."""
        if isinstance(day, datetime):
            day = day.date()
        if not isinstance(day, date):
            raise InvalidInputError(f"Invalid day: {day!r}")
        cached = self._cache.get_display_items(display_items_cache_key(day))
        if cached is not None:
            return cached
        return self.get_or_compose_display_items(await self.fetch_day(day))

    def on_holiday_visibility_changed(self, show: bool) -> None:
        self._show_holidays = show
        LOGGER.info("Holiday visibility changed to %s; clearing display items", show)
        self._cache.clear_display_items()

    def on_holiday_calendars_changed(
        self,
        calendar_ids: Iterable[str] | None = None,
        *,
        enabled: bool | None = None,
    ) -> None:
        if self._holiday_selection is not None:
            if enabled is not None:
                self._holiday_selection.enabled = enabled
            if calendar_ids is not None:
                self._holiday_selection.calendar_ids = {value.strip() for value in calendar_ids if value.strip()}
        LOGGER.info("Selected holiday calendars changed; clearing display items")
        self._cache.clear_display_items()

    def on_store_changed(self) -> None:
        LOGGER.info("Calendar store changed; clearing all cached data")
        self._scheduler.invalidate()
        self._cache.clear_all()

    def handle_memory_pressure(self, now: datetime | date | None = None) -> int:
        return self._cache.clear_expired(now or self.today())

    def cache_statistics(self) -> CacheStatistics:
        return self._cache.stats()

    def cancel_all(self) -> int:
        return self._scheduler.cancel_all()

    async def aclose(self) -> None:
        await self._scheduler.aclose()

    async def _load_month_from_source(self, year: int, month: int) -> CalendarMonth:
        return await fetch_month(
            self._source,
            year,
            month,
            today=self.today(),
            week_start=self._week_start,
            zone=self._zone,
        )
