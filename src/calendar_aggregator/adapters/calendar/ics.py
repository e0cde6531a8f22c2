from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Iterator, Literal, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...domain.models import CalendarEvent, Holiday, Reminder
from .base import RecordSourceError

DEFAULT_TIMEOUT_SECONDS = 10

SourceKind = Literal["events", "holidays"]


@dataclass(slots=True)
class _ParsedDateTime:
    value: datetime
    all_day: bool


@dataclass(slots=True)
class IcsRecords:
    events: list[CalendarEvent] = field(default_factory=list)
    reminders: list[Reminder] = field(default_factory=list)
    holidays: list[Holiday] = field(default_factory=list)


@dataclass(slots=True)
class HolidaySelection:
    """Holiday gating read from configuration; mutated by the settings layer."""

    enabled: bool = True
    calendar_ids: set[str] = field(default_factory=set)

    def allows(self, calendar_id: str | None) -> bool:
        if not self.enabled:
            return False
        if not self.calendar_ids:
            return True
        return calendar_id is not None and calendar_id in self.calendar_ids


def _read_ics_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        try:
            return path.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError) as exc:
            raise RecordSourceError(f"Unable to read ICS file: {path}") from exc
    except OSError as exc:
        raise RecordSourceError(f"Unable to read ICS file: {path}") from exc


def _fetch_ics_text(url: str) -> str:
    request = Request(url, headers={"User-Agent": "calendar-aggregator/0.1"})
    try:
        with urlopen(request, timeout=DEFAULT_TIMEOUT_SECONDS) as response:
            payload_bytes = response.read()
    except (HTTPError, URLError, TimeoutError, OSError) as exc:
        raise RecordSourceError(f"Unable to fetch ICS URL: {url}") from exc

    for encoding in ("utf-8", "utf-8-sig"):
        try:
            return payload_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue

    raise RecordSourceError(f"Unable to decode ICS payload from URL: {url}")


def _unfold_lines(raw_text: str) -> list[str]:
    unfolded: list[str] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.rstrip("\r\n")
        if line.startswith((" ", "\t")) and unfolded:
            unfolded[-1] += line[1:]
            continue
        unfolded.append(line)
    return unfolded


def _parse_property(line: str) -> tuple[str, dict[str, str], str]:
    if ":" not in line:
        raise RecordSourceError("Malformed ICS property line")
    head, value = line.split(":", 1)

    tokens = head.split(";")
    name = tokens[0].strip().upper()
    params: dict[str, str] = {}
    for token in tokens[1:]:
        if "=" not in token:
            continue
        key, raw_value = token.split("=", 1)
        params[key.strip().upper()] = raw_value.strip()

    return name, params, value.strip()


def _parse_compact_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError as exc:
        raise RecordSourceError(f"Invalid ICS date value: {value}") from exc


def _parse_compact_datetime(value: str) -> datetime:
    for fmt in ("%Y%m%dT%H%M%S", "%Y%m%dT%H%M"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise RecordSourceError(f"Invalid ICS datetime value: {value}")


def _parse_date_or_datetime(
    *,
    value: str,
    params: dict[str, str],
    default_timezone: ZoneInfo,
) -> _ParsedDateTime:
    raw_value = value.strip()
    value_type = params.get("VALUE", "").upper()
    if value_type == "DATE" or "T" not in raw_value:
        parsed_date = _parse_compact_date(raw_value)
        return _ParsedDateTime(
            value=datetime.combine(parsed_date, time.min, tzinfo=default_timezone),
            all_day=True,
        )

    if raw_value.endswith("Z"):
        parsed_utc = _parse_compact_datetime(raw_value[:-1]).replace(tzinfo=timezone.utc)
        return _ParsedDateTime(value=parsed_utc.astimezone(default_timezone), all_day=False)

    parsed = _parse_compact_datetime(raw_value)
    timezone_value: ZoneInfo = default_timezone
    tzid = params.get("TZID")
    if tzid:
        try:
            timezone_value = ZoneInfo(tzid)
        except ZoneInfoNotFoundError:
            timezone_value = default_timezone

    return _ParsedDateTime(
        value=parsed.replace(tzinfo=timezone_value).astimezone(default_timezone),
        all_day=False,
    )


def _iter_components(lines: Sequence[str], component: str) -> Iterator[list[str]]:
    begin = f"BEGIN:{component}"
    end = f"END:{component}"
    block: list[str] = []
    inside = False
    for raw_line in lines:
        upper = raw_line.strip().upper()
        if upper == begin:
            inside = True
            block = []
            continue
        if upper == end:
            if inside:
                yield block
            inside = False
            block = []
            continue
        if inside:
            block.append(raw_line)


def _properties(block: Sequence[str]) -> Iterator[tuple[str, dict[str, str], str]]:
    for raw_line in block:
        if raw_line.strip():
            yield _parse_property(raw_line)


def _parse_event_block(
    *,
    block: Sequence[str],
    fallback_id: str,
    default_timezone: ZoneInfo,
    calendar_color: str | None,
) -> CalendarEvent | None:
    uid: str | None = None
    summary: str | None = None
    dtstart: _ParsedDateTime | None = None
    dtend: _ParsedDateTime | None = None

    for name, params, value in _properties(block):
        if name == "UID" and uid is None:
            uid = value
        elif name == "SUMMARY" and summary is None:
            summary = value
        elif name == "DTSTART" and dtstart is None:
            dtstart = _parse_date_or_datetime(value=value, params=params, default_timezone=default_timezone)
        elif name == "DTEND" and dtend is None:
            dtend = _parse_date_or_datetime(value=value, params=params, default_timezone=default_timezone)

    if dtstart is None:
        return None

    all_day = dtstart.all_day
    start = dtstart.value
    if dtend is None:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    else:
        all_day = all_day and dtend.all_day
        end = dtend.value

    if end <= start:
        end = start + (timedelta(days=1) if all_day else timedelta(minutes=30))

    return CalendarEvent(
        id=(uid or "").strip() or fallback_id,
        title=(summary or "").strip() or "Untitled event",
        start=start,
        end=end,
        calendar_color=calendar_color,
    )


def _parse_todo_block(
    *,
    block: Sequence[str],
    fallback_id: str,
    default_timezone: ZoneInfo,
    calendar_color: str | None,
) -> Reminder:
    uid: str | None = None
    summary: str | None = None
    due: _ParsedDateTime | None = None
    dtstart: _ParsedDateTime | None = None
    priority = 0
    completed = False

    for name, params, value in _properties(block):
        if name == "UID" and uid is None:
            uid = value
        elif name == "SUMMARY" and summary is None:
            summary = value
        elif name == "DUE" and due is None:
            due = _parse_date_or_datetime(value=value, params=params, default_timezone=default_timezone)
        elif name == "DTSTART" and dtstart is None:
            dtstart = _parse_date_or_datetime(value=value, params=params, default_timezone=default_timezone)
        elif name == "PRIORITY":
            try:
                priority = max(int(value), 0)
            except ValueError:
                priority = 0
        elif name == "STATUS":
            completed = completed or value.upper() == "COMPLETED"
        elif name == "COMPLETED":
            completed = True

    due_value = due or dtstart
    return Reminder(
        id=(uid or "").strip() or fallback_id,
        title=(summary or "").strip() or "Untitled reminder",
        due=due_value.value if due_value is not None else None,
        has_time=due_value is not None and not due_value.all_day,
        priority=priority,
        is_completed=completed,
        calendar_color=calendar_color,
    )


def parse_ics_records(
    raw_text: str,
    *,
    source_name: str,
    timezone_value: ZoneInfo,
    kind: SourceKind = "events",
    calendar_id: str | None = None,
    calendar_color: str | None = None,
) -> IcsRecords:
    """Parse one ICS document into events/reminders, or holidays for a holiday calendar."""
    lines = _unfold_lines(raw_text)
    records = IcsRecords()

    for index, block in enumerate(_iter_components(lines, "VEVENT")):
        event = _parse_event_block(
            block=block,
            fallback_id=f"{source_name}-event-{index}",
            default_timezone=timezone_value,
            calendar_color=calendar_color,
        )
        if event is None:
            continue
        if kind == "holidays":
            records.holidays.append(
                Holiday(
                    title=event.title,
                    date=event.start_day,
                    calendar_color=calendar_color,
                    calendar_id=calendar_id or source_name,
                )
            )
        else:
            records.events.append(event)

    if kind == "events":
        for index, block in enumerate(_iter_components(lines, "VTODO")):
            records.reminders.append(
                _parse_todo_block(
                    block=block,
                    fallback_id=f"{source_name}-todo-{index}",
                    default_timezone=timezone_value,
                    calendar_color=calendar_color,
                )
            )

    return records


class _IcsRecordSourceBase:
    def __init__(
        self,
        *,
        source_name: str,
        timezone_name: str,
        kind: SourceKind,
        calendar_id: str | None,
        calendar_color: str | None,
    ) -> None:
        self._source_name = source_name
        self._kind = kind
        self._calendar_id = calendar_id or source_name
        self._calendar_color = calendar_color
        try:
            self._timezone = ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError as exc:
            raise RecordSourceError(f"Unknown timezone for calendar source: {timezone_name}") from exc

    @property
    def source_name(self) -> str:
        return self._source_name

    @property
    def kind(self) -> SourceKind:
        return self._kind

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    def _load_text(self) -> str:
        raise NotImplementedError

    async def _load_records(self) -> IcsRecords:
        raw_text = await asyncio.to_thread(self._load_text)
        return parse_ics_records(
            raw_text,
            source_name=self._source_name,
            timezone_value=self._timezone,
            kind=self._kind,
            calendar_id=self._calendar_id,
            calendar_color=self._calendar_color,
        )

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self._timezone)
        return value.astimezone(self._timezone)

    async def fetch_events(self, range_start: datetime, range_end: datetime) -> list[CalendarEvent]:
        if self._kind != "events":
            return []
        start, end = self._localize(range_start), self._localize(range_end)
        records = await self._load_records()
        return [event for event in records.events if event.start < end and event.end > start]

    async def fetch_reminders(self, range_start: datetime, range_end: datetime) -> list[Reminder]:
        if self._kind != "events":
            return []
        first_day = self._localize(range_start).date()
        end_day = self._localize(range_end).date()
        records = await self._load_records()
        return [
            reminder
            for reminder in records.reminders
            if reminder.due is None or first_day <= self._localize(reminder.due).date() < end_day
        ]

    async def fetch_holidays(self, range_start: datetime, range_end: datetime) -> list[Holiday]:
        if self._kind != "holidays":
            return []
        first_day = self._localize(range_start).date()
        end_day = self._localize(range_end).date()
        records = await self._load_records()
        return [holiday for holiday in records.holidays if first_day <= holiday.date < end_day]


class IcsRecordSource(_IcsRecordSourceBase):
    def __init__(
        self,
        *,
        path: Path,
        timezone_name: str,
        source_name: str | None = None,
        kind: SourceKind = "events",
        calendar_id: str | None = None,
        calendar_color: str | None = None,
    ) -> None:
        self._path = Path(path)
        super().__init__(
            source_name=(source_name or "").strip() or self._path.stem or self._path.name,
            timezone_name=timezone_name,
            kind=kind,
            calendar_id=calendar_id,
            calendar_color=calendar_color,
        )

    def _load_text(self) -> str:
        return _read_ics_text(self._path)


class RemoteIcsRecordSource(_IcsRecordSourceBase):
    def __init__(
        self,
        *,
        url: str,
        timezone_name: str,
        source_name: str | None = None,
        kind: SourceKind = "events",
        calendar_id: str | None = None,
        calendar_color: str | None = None,
    ) -> None:
        self._url = url.strip()
        default_source_name = urlparse(self._url).netloc or "Remote ICS"
        super().__init__(
            source_name=(source_name or "").strip() or default_source_name,
            timezone_name=timezone_name,
            kind=kind,
            calendar_id=calendar_id,
            calendar_color=calendar_color,
        )

    def _load_text(self) -> str:
        return _fetch_ics_text(self._url)


class MultiSourceRecordSource:
    """Fans a range fetch out to several sources; any failing source fails the call."""

    def __init__(
        self,
        sources: Sequence[IcsRecordSource | RemoteIcsRecordSource],
        *,
        holiday_selection: HolidaySelection | None = None,
    ) -> None:
        self._sources = list(sources)
        self._holiday_selection = holiday_selection or HolidaySelection()

    @property
    def sources(self) -> list[IcsRecordSource | RemoteIcsRecordSource]:
        return list(self._sources)

    @property
    def holiday_selection(self) -> HolidaySelection:
        return self._holiday_selection

    async def fetch_events(self, range_start: datetime, range_end: datetime) -> list[CalendarEvent]:
        batches = await asyncio.gather(
            *(source.fetch_events(range_start, range_end) for source in self._sources)
        )
        events = [event for batch in batches for event in batch]
        events.sort(key=lambda event: (event.start, event.title.lower()))
        return events

    async def fetch_reminders(self, range_start: datetime, range_end: datetime) -> list[Reminder]:
        batches = await asyncio.gather(
            *(source.fetch_reminders(range_start, range_end) for source in self._sources)
        )
        return [reminder for batch in batches for reminder in batch]

    async def fetch_holidays(self, range_start: datetime, range_end: datetime) -> list[Holiday]:
        selected = [
            source
            for source in self._sources
            if source.kind == "holidays" and self._holiday_selection.allows(source.calendar_id)
        ]
        if not selected:
            return []
        batches = await asyncio.gather(
            *(source.fetch_holidays(range_start, range_end) for source in selected)
        )
        return [holiday for batch in batches for holiday in batch]
