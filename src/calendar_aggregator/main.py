from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .adapters.calendar import HolidaySelection
from .errors import CalendarAggregatorError, FetchFailedError, InvalidInputError, LoadCancelledError, NotFoundError
from .scheduler import build_holiday_selection, build_maintenance_scheduler, build_record_source
from .service import CalendarAggregationService
from .settings import AppSettings, load_settings

SignalName = Literal["store-changed", "holiday-visibility", "holiday-calendars", "memory-pressure"]

ERROR_STATUS_CODES: dict[type[CalendarAggregatorError], int] = {
    InvalidInputError: 400,
    NotFoundError: 404,
    LoadCancelledError: 503,
    FetchFailedError: 502,
}


class SignalPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    show: bool | None = None
    enabled: bool | None = None
    calendar_ids: list[str] | None = Field(default=None)


def _get_service(request: Request) -> CalendarAggregationService:
    return request.app.state.service


def _status_code_for(error: CalendarAggregatorError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(
    *,
    settings: AppSettings | None = None,
    service: CalendarAggregationService | None = None,
    holiday_selection: HolidaySelection | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        app_settings = settings or load_settings()
        app_service = service
        if app_service is None:
            selection = holiday_selection or build_holiday_selection(app_settings)
            source = build_record_source(app_settings, holiday_selection=selection)
            app_service = CalendarAggregationService.from_settings(
                app_settings,
                source,
                holiday_selection=selection,
            )

        scheduler = build_maintenance_scheduler(app_service, app_settings)
        if start_scheduler:
            scheduler.start()

        application.state.settings = app_settings
        application.state.service = app_service
        application.state.scheduler = scheduler
        application.state.started_at_utc = datetime.now(timezone.utc)

        try:
            yield
        finally:
            if scheduler.running:
                scheduler.shutdown(wait=False)
            await app_service.aclose()

    application = FastAPI(title="Calendar Aggregator", version="0.1.0", lifespan=lifespan)

    @application.exception_handler(CalendarAggregatorError)
    async def aggregator_error_handler(request: Request, exc: CalendarAggregatorError) -> JSONResponse:
        return JSONResponse(
            {"error": type(exc).__name__, "detail": str(exc)},
            status_code=_status_code_for(exc),
        )

    @application.get("/health", response_class=JSONResponse)
    async def health(request: Request) -> JSONResponse:
        app_settings: AppSettings = request.app.state.settings
        app_service = _get_service(request)
        stats = app_service.cache_statistics()
        return JSONResponse(
            {
                "status": "ok",
                "service": "calendar-aggregator",
                "environment": app_settings.env.calendar_env,
                "timezone": app_settings.env.calendar_timezone,
                "scheduler_running": request.app.state.scheduler.running,
                "cache": {
                    "months": stats.month_count,
                    "display_items": stats.display_items_count,
                    "memory_estimate": stats.memory_estimate,
                    "oldest_entry_at": stats.oldest_entry_at.isoformat() if stats.oldest_entry_at else None,
                },
                "queued_loads": app_service.scheduler.queued_keys,
                "timestamp_utc": datetime.now(timezone.utc).isoformat(),
            }
        )

    @application.get("/api/months/{year}/{month}", response_class=JSONResponse)
    async def get_month(request: Request, year: int, month: int) -> JSONResponse:
        calendar_month = await _get_service(request).fetch_month(year, month)
        return JSONResponse(calendar_month.model_dump(mode="json"))

    @application.get("/api/days/{day}", response_class=JSONResponse)
    async def get_day(request: Request, day: date) -> JSONResponse:
        calendar_day = await _get_service(request).fetch_day(day)
        return JSONResponse(calendar_day.model_dump(mode="json"))

    @application.get("/api/days/{day}/items", response_class=JSONResponse)
    async def get_day_items(request: Request, day: date) -> JSONResponse:
        items = await _get_service(request).fetch_display_items(day)
        return JSONResponse(
            {
                "date": day.isoformat(),
                "items": [item.model_dump(mode="json") for item in items],
            }
        )

    @application.get("/api/window", response_class=JSONResponse)
    async def get_window(
        request: Request,
        center: date,
        window_range: int | None = Query(default=None, alias="range", ge=0, le=6),
    ) -> JSONResponse:
        months = await _get_service(request).fetch_window(center, window_range)
        return JSONResponse(
            {
                "center": center.isoformat(),
                "months": [calendar_month.model_dump(mode="json") for calendar_month in months],
            }
        )

    @application.post("/api/signals/{signal}", response_class=JSONResponse)
    async def post_signal(
        request: Request,
        signal: SignalName,
        payload: SignalPayload | None = None,
    ) -> JSONResponse:
        app_service = _get_service(request)
        body = payload or SignalPayload()
        result: dict[str, Any] = {"signal": signal}

        if signal == "store-changed":
            app_service.on_store_changed()
        elif signal == "holiday-visibility":
            if body.show is None:
                raise HTTPException(status_code=422, detail="'show' is required for holiday-visibility")
            app_service.on_holiday_visibility_changed(body.show)
            result["show"] = body.show
        elif signal == "holiday-calendars":
            app_service.on_holiday_calendars_changed(body.calendar_ids, enabled=body.enabled)
            selection = app_service.holiday_selection
            if selection is not None:
                result["enabled"] = selection.enabled
                result["calendar_ids"] = sorted(selection.calendar_ids)
        else:
            result["removed"] = app_service.handle_memory_pressure()

        return JSONResponse(result)

    return application


app = create_app()
