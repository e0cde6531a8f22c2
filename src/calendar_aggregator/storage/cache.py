from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Generic, Iterator, Sequence, TypeVar

from ..domain.models import CalendarDisplayItem, CalendarMonth

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 12
DEFAULT_EXPIRY_MONTHS = 6

# Rough per-entry footprint used by ``stats()``, in KB.
_MONTH_ENTRY_KB = 50
_DISPLAY_ENTRY_KB = 100

T = TypeVar("T")


def month_cache_key(year: int, month: int) -> str:
    return f"{year}_{month:02d}"


def display_items_cache_key(day: date) -> str:
    if isinstance(day, datetime):
        day = day.date()
    return day.isoformat()


def date_from_cache_key(key: str) -> date | None:
    """Parse a month key (``2025_03``) or a display key (``2025-03-15``)."""
    try:
        if "_" in key:
            year_text, month_text = key.split("_", 1)
            return date(int(year_text), int(month_text), 1)
        return date.fromisoformat(key)
    except ValueError:
        return None


def months_before(reference: date, months: int) -> date:
    index = reference.year * 12 + (reference.month - 1) - months
    year, month_zero = divmod(index, 12)
    return date(year, month_zero + 1, 1)


class ReadWriteLock:
    """Many concurrent readers or one exclusive writer."""

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._condition:
            while self._writing or self._writers_waiting:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writing or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writing = True
        try:
            yield
        finally:
            with self._condition:
                self._writing = False
                self._condition.notify_all()


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    stored_at: datetime


class BoundedDateCache(Generic[T]):
    """Key/value map capped at ``max_entries``.

    Past capacity, the entries whose keys parse to the oldest calendar date are
    evicted first; keys that do not parse are evicted before any dated key.
    """

    def __init__(self, name: str, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._name = name
        self._max_entries = max_entries
        self._entries: dict[str, CacheEntry] = {}
        self._lock = ReadWriteLock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def get(self, key: str) -> T | None:
        with self._lock.read():
            entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def oldest_stored_at(self) -> datetime | None:
        with self._lock.read():
            return min((entry.stored_at for entry in self._entries.values()), default=None)

    def set(self, key: str, value: T) -> None:
        with self._lock.write():
            self._entries[key] = CacheEntry(key=key, value=value, stored_at=datetime.now(timezone.utc))
            self._evict_overflow()

    def remove(self, key: str) -> bool:
        with self._lock.write():
            return self._entries.pop(key, None) is not None

    def remove_older_than(self, cutoff: date) -> list[str]:
        with self._lock.write():
            expired = []
            for key in self._entries:
                key_date = date_from_cache_key(key)
                if key_date is None or key_date < cutoff:
                    expired.append(key)
            for key in expired:
                del self._entries[key]
        return expired

    def clear(self) -> int:
        with self._lock.write():
            count = len(self._entries)
            self._entries.clear()
        return count

    def keys(self) -> list[str]:
        with self._lock.read():
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock.read():
            return key in self._entries

    def _evict_overflow(self) -> None:
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return

        def eviction_rank(key: str) -> tuple[int, date]:
            key_date = date_from_cache_key(key)
            if key_date is None:
                return (0, date.min)
            return (1, key_date)

        for key in sorted(self._entries, key=eviction_rank)[:overflow]:
            del self._entries[key]
            LOGGER.debug("Evicted '%s' from %s cache", key, self._name)


@dataclass(slots=True, frozen=True)
class CacheStatistics:
    month_count: int
    display_items_count: int
    memory_estimate_kb: int
    oldest_entry_at: datetime | None = None

    @property
    def memory_estimate(self) -> str:
        if self.memory_estimate_kb > 1024:
            return f"{self.memory_estimate_kb // 1024}MB"
        return f"{self.memory_estimate_kb}KB"


class CalendarCache:
    """Month data and per-day display items, each behind its own lock."""

    def __init__(
        self,
        *,
        max_months: int = DEFAULT_MAX_ENTRIES,
        max_display_days: int = DEFAULT_MAX_ENTRIES,
        expiry_months: int = DEFAULT_EXPIRY_MONTHS,
    ) -> None:
        if expiry_months < 0:
            raise ValueError("expiry_months must be >= 0")
        self._months: BoundedDateCache[CalendarMonth] = BoundedDateCache("month", max_entries=max_months)
        self._display_items: BoundedDateCache[tuple[CalendarDisplayItem, ...]] = BoundedDateCache(
            "display_items",
            max_entries=max_display_days,
        )
        self._expiry_months = expiry_months

    def get_month(self, key: str) -> CalendarMonth | None:
        return self._months.get(key)

    def set_month(self, key: str, month: CalendarMonth) -> None:
        self._months.set(key, month)

    def remove_month(self, key: str) -> bool:
        return self._months.remove(key)

    def month_keys(self) -> list[str]:
        return self._months.keys()

    def get_display_items(self, key: str) -> tuple[CalendarDisplayItem, ...] | None:
        return self._display_items.get(key)

    def set_display_items(self, key: str, items: Sequence[CalendarDisplayItem]) -> None:
        self._display_items.set(key, tuple(items))

    def remove_display_items(self, key: str) -> bool:
        return self._display_items.remove(key)

    def display_item_keys(self) -> list[str]:
        return self._display_items.keys()

    def clear_display_items(self) -> int:
        cleared = self._display_items.clear()
        LOGGER.info("Cleared %d display item cache entries", cleared)
        return cleared

    def clear_all(self) -> None:
        months = self._months.clear()
        items = self._display_items.clear()
        LOGGER.info("Cleared calendar cache (%d months, %d display item entries)", months, items)

    def clear_expired(self, now: datetime | date | None = None) -> int:
        reference = now or datetime.now(timezone.utc)
        if isinstance(reference, datetime):
            reference = reference.date()
        cutoff = months_before(reference, self._expiry_months)

        expired_months = self._months.remove_older_than(cutoff)
        expired_items = self._display_items.remove_older_than(cutoff)
        if expired_months or expired_items:
            LOGGER.info(
                "Expired %d months and %d display item entries older than %s",
                len(expired_months),
                len(expired_items),
                cutoff.isoformat(),
            )
        return len(expired_months) + len(expired_items)

    def stats(self) -> CacheStatistics:
        month_count = len(self._months)
        items_count = len(self._display_items)
        stored = [
            stamp
            for stamp in (self._months.oldest_stored_at(), self._display_items.oldest_stored_at())
            if stamp is not None
        ]
        return CacheStatistics(
            month_count=month_count,
            display_items_count=items_count,
            memory_estimate_kb=month_count * _MONTH_ENTRY_KB + items_count * _DISPLAY_ENTRY_KB,
            oldest_entry_at=min(stored, default=None),
        )
