from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .adapters.calendar import (
    HolidaySelection,
    IcsRecordSource,
    MultiSourceRecordSource,
    RecordSourceError,
    RemoteIcsRecordSource,
)
from .errors import CalendarAggregatorError
from .service import CalendarAggregationService
from .settings import AppSettings

LOGGER = logging.getLogger(__name__)

CACHE_SWEEP_JOB_ID = "calendar_cache_sweep_job"
WINDOW_WARMUP_JOB_ID = "calendar_window_warmup_job"


def build_holiday_selection(settings: AppSettings) -> HolidaySelection:
    holidays = settings.yaml.holidays
    return HolidaySelection(enabled=holidays.enabled, calendar_ids=set(holidays.calendar_ids))


def build_record_source(
    settings: AppSettings,
    *,
    holiday_selection: HolidaySelection | None = None,
) -> MultiSourceRecordSource:
    sources: list[IcsRecordSource | RemoteIcsRecordSource] = []
    for source in settings.yaml.sources:
        if source.type == "ics":
            if source.path is None:
                raise ValueError("calendar source path was missing for type 'ics'")

            source_path = source.path
            if not source_path.is_absolute():
                source_path = (settings.project_root / source_path).resolve()

            sources.append(
                IcsRecordSource(
                    path=source_path,
                    timezone_name=settings.env.calendar_timezone,
                    source_name=source.name,
                    kind=source.kind,
                    calendar_id=source.id,
                    calendar_color=source.color,
                )
            )
            continue

        if source.type == "ics_url":
            if source.url is None:
                raise ValueError("calendar source url was missing for type 'ics_url'")
            sources.append(
                RemoteIcsRecordSource(
                    url=source.url,
                    timezone_name=settings.env.calendar_timezone,
                    source_name=source.name,
                    kind=source.kind,
                    calendar_id=source.id,
                    calendar_color=source.color,
                )
            )
            continue

        raise ValueError(f"Unsupported calendar source type: {source.type}")

    return MultiSourceRecordSource(
        sources,
        holiday_selection=holiday_selection or build_holiday_selection(settings),
    )


def run_cache_sweep_job(service: CalendarAggregationService) -> int:
    swept_at = datetime.now(timezone.utc)
    removed = service.handle_memory_pressure()
    stats = service.cache_statistics()
    LOGGER.info(
        "Cache sweep at %s removed %d entries (%d months, %d display entries, ~%s)",
        swept_at.isoformat(),
        removed,
        stats.month_count,
        stats.display_items_count,
        stats.memory_estimate,
    )
    return removed


async def run_window_warmup_job(service: CalendarAggregationService) -> int:
    today = service.today()
    try:
        months = await service.fetch_window(today)
    except (CalendarAggregatorError, RecordSourceError):
        LOGGER.exception("Window warm-up around %s failed", today.isoformat())
        return 0
    LOGGER.info("Window warm-up around %s loaded %d months", today.isoformat(), len(months))
    return len(months)


def build_maintenance_scheduler(
    service: CalendarAggregationService,
    settings: AppSettings,
) -> AsyncIOScheduler:
    maintenance = settings.yaml.maintenance
    scheduler = AsyncIOScheduler(timezone=settings.timezone)
    scheduler.add_job(
        run_cache_sweep_job,
        "interval",
        kwargs={"service": service},
        minutes=maintenance.sweep_interval_minutes,
        jitter=maintenance.jitter_seconds,
        id=CACHE_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=120,
    )
    scheduler.add_job(
        run_window_warmup_job,
        "interval",
        kwargs={"service": service},
        minutes=maintenance.warmup_interval_minutes,
        jitter=maintenance.jitter_seconds,
        id=WINDOW_WARMUP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=120,
    )
    return scheduler
