from .base import RecordSource, RecordSourceError
from .ics import (
    HolidaySelection,
    IcsRecordSource,
    MultiSourceRecordSource,
    RemoteIcsRecordSource,
    parse_ics_records,
)

__all__ = [
    "HolidaySelection",
    "IcsRecordSource",
    "MultiSourceRecordSource",
    "RecordSource",
    "RecordSourceError",
    "RemoteIcsRecordSource",
    "parse_ics_records",
]
