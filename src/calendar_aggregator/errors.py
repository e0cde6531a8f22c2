from __future__ import annotations


class CalendarAggregatorError(RuntimeError):
    """Base class for errors surfaced by the aggregation engine."""


class InvalidInputError(CalendarAggregatorError):
    """Raised when a year/month/date argument is malformed."""


class FetchFailedError(CalendarAggregatorError):
    """Raised when the record source could not supply a complete range.

    The underlying source error is chained as ``__cause__``.
    """


class NotFoundError(CalendarAggregatorError):
    """Raised when no data exists for a requested identifier."""


class LoadCancelledError(CalendarAggregatorError):
    """Delivered to callers whose pending load was cancelled."""
