from .cache import (
    BoundedDateCache,
    CacheEntry,
    CacheStatistics,
    CalendarCache,
    ReadWriteLock,
    date_from_cache_key,
    display_items_cache_key,
    month_cache_key,
)

__all__ = [
    "BoundedDateCache",
    "CacheEntry",
    "CacheStatistics",
    "CalendarCache",
    "ReadWriteLock",
    "date_from_cache_key",
    "display_items_cache_key",
    "month_cache_key",
]
