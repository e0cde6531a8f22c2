"""Priority-ordered, deduplicating month loader in front of ``CalendarCache``.

Every month key has at most one pending-or-running request. Callers asking
for a month that is already queued or in flight share that request's future
instead of triggering a second fetch.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Awaitable, Callable

from ..domain.models import CalendarMonth
from ..errors import CalendarAggregatorError, FetchFailedError, InvalidInputError, LoadCancelledError
from ..storage.cache import CalendarCache, month_cache_key
from .aggregator import shift_month, validate_year_month

LOGGER = logging.getLogger(__name__)

MonthFetcher = Callable[[int, int], Awaitable[CalendarMonth]]


class LoadPriority(IntEnum):
    CRITICAL = 0  # month on screen
    HIGH = 1  # adjacent month
    MEDIUM = 2  # two months away
    LOW = 3  # background prefetch

    @classmethod
    def for_offset(cls, offset: int) -> LoadPriority:
        distance = abs(offset)
        if distance == 0:
            return cls.CRITICAL
        if distance == 1:
            return cls.HIGH
        if distance == 2:
            return cls.MEDIUM
        return cls.LOW


@dataclass(frozen=True, slots=True)
class LoadRequest:
    year: int
    month: int
    priority: LoadPriority
    completion: asyncio.Future[CalendarMonth] = field(compare=False, repr=False)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def key(self) -> str:
        return month_cache_key(self.year, self.month)


class LoadScheduler:
    def __init__(self, cache: CalendarCache, fetch_month: MonthFetcher) -> None:
        self._cache = cache
        self._fetch_month = fetch_month
        self._queue: list[LoadRequest] = []
        self._pending: dict[str, asyncio.Future[CalendarMonth]] = {}
        self._lock = asyncio.Lock()
        self._drain_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._active_key: str | None = None
        self._generation = 0

    @property
    def queued_keys(self) -> list[str]:
        return [request.key for request in self._queue]

    @property
    def active_key(self) -> str | None:
        return self._active_key

    def invalidate(self) -> None:
        """Mark every in-flight fetch as stale; it is refetched instead of cached."""
        self._generation += 1

    def is_month_cached(self, year: int, month: int) -> bool:
        return self._cache.get_month(month_cache_key(year, month)) is not None

    def is_loading(self, year: int, month: int) -> bool:
        return month_cache_key(year, month) in self._pending

    async def load(self, year: int, month: int, priority: LoadPriority = LoadPriority.CRITICAL) -> CalendarMonth:
        validate_year_month(year, month)
        priority = LoadPriority(priority)
        key = month_cache_key(year, month)

        cached = self._cache.get_month(key)
        if cached is not None:
            LOGGER.debug("Month cache hit for '%s'", key)
            return cached

        async with self._lock:
            completion = self._pending.get(key)
            if completion is not None:
                self._promote(key, priority)
                LOGGER.debug("Joining pending load for '%s'", key)
            else:
                completion = asyncio.get_running_loop().create_future()
                self._pending[key] = completion
                self._enqueue(LoadRequest(year=year, month=month, priority=priority, completion=completion))
                self._ensure_draining()

        # Shielded so one caller being cancelled does not cancel the shared load.
        return await asyncio.shield(completion)

    def prefetch(self, year: int, month: int, priority: LoadPriority = LoadPriority.LOW) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._prefetch(year, month, priority))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def load_window(self, center_year: int, center_month: int, window_range: int = 1) -> list[CalendarMonth]:
        """Load the center month first, then the surrounding months concurrently.

        Months that fail are left out of the result instead of failing the window.
        """
        validate_year_month(center_year, center_month)
        if window_range < 0:
            raise InvalidInputError(f"Invalid window range: {window_range!r}")

        results: list[CalendarMonth] = []
        try:
            results.append(await self.load(center_year, center_month, LoadPriority.CRITICAL))
        except CalendarAggregatorError as exc:
            LOGGER.warning("Window center %d-%02d failed to load: %s", center_year, center_month, exc)

        offsets = [offset for offset in range(-window_range, window_range + 1) if offset != 0]
        targets = [shift_month(center_year, center_month, offset) for offset in offsets]
        outcomes = await asyncio.gather(
            *(
                self.load(year, month, LoadPriority.for_offset(offset))
                for offset, (year, month) in zip(offsets, targets)
            ),
            return_exceptions=True,
        )
        for (year, month), outcome in zip(targets, outcomes):
            if isinstance(outcome, CalendarMonth):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                LOGGER.warning("Window month %d-%02d dropped: %s", year, month, outcome)
            else:
                raise outcome

        return sorted(results, key=lambda calendar_month: calendar_month.month_index)

    def cancel_all(self) -> int:
        """Release every waiting caller with ``LoadCancelledError``.

        A fetch that already started keeps running and still fills the cache.
        """
        cancelled = 0
        for key, completion in list(self._pending.items()):
            if not completion.done():
                completion.set_exception(LoadCancelledError(f"Load for '{key}' was cancelled"))
                # Nobody may be awaiting this future; mark it retrieved.
                completion.exception()
                cancelled += 1
        self._pending.clear()
        self._queue.clear()
        if cancelled:
            LOGGER.info("Cancelled %d pending calendar loads", cancelled)
        return cancelled

    async def aclose(self) -> None:
        self.cancel_all()
        tasks = [task for task in (self._drain_task, *self._background) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_task = None

    def _enqueue(self, request: LoadRequest) -> None:
        # Stable: lands after every queued request of equal or higher urgency.
        index = bisect.bisect_right([queued.priority for queued in self._queue], request.priority)
        self._queue.insert(index, request)
        LOGGER.debug("Queued '%s' at %s (position %d)", request.key, request.priority.name, index)

    def _promote(self, key: str, priority: LoadPriority) -> None:
        for index, queued in enumerate(self._queue):
            if queued.key != key:
                continue
            if priority < queued.priority:
                del self._queue[index]
                self._enqueue(
                    LoadRequest(
                        year=queued.year,
                        month=queued.month,
                        priority=priority,
                        completion=queued.completion,
                        request_id=queued.request_id,
                    )
                )
            return

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            request = self._queue.pop(0)
            self._active_key = request.key
            try:
                await self._process(request)
            finally:
                self._active_key = None

    async def _process(self, request: LoadRequest) -> None:
        key = request.key
        completion = request.completion
        try:
            cached = self._cache.get_month(key)
            if cached is not None:
                self._resolve(completion, cached)
                return

            while True:
                generation = self._generation
                try:
                    calendar_month = await self._fetch_month(request.year, request.month)
                except CalendarAggregatorError as exc:
                    LOGGER.warning("Loading '%s' failed: %s", key, exc)
                    self._fail(completion, exc)
                    return
                except Exception as exc:
                    LOGGER.warning("Loading '%s' failed: %s", key, exc)
                    failure = FetchFailedError(f"Loading '{key}' failed: {exc}")
                    failure.__cause__ = exc
                    self._fail(completion, failure)
                    return
                if generation == self._generation:
                    break
                LOGGER.info("Refetching '%s'; the store changed while it loaded", key)

            self._cache.set_month(key, calendar_month)
            LOGGER.info("Loaded '%s' at %s priority", key, request.priority.name)
            self._resolve(completion, calendar_month)
        except asyncio.CancelledError:
            self._fail(completion, LoadCancelledError(f"Load for '{key}' was cancelled"))
            raise
        finally:
            # A newer request may own the key after cancel_all().
            if self._pending.get(key) is completion:
                del self._pending[key]

    async def _prefetch(self, year: int, month: int, priority: LoadPriority) -> None:
        try:
            await self.load(year, month, priority)
        except LoadCancelledError:
            LOGGER.debug("Prefetch of %d-%02d cancelled", year, month)
        except CalendarAggregatorError:
            LOGGER.exception("Prefetch of %d-%02d failed", year, month)

    @staticmethod
    def _resolve(completion: asyncio.Future[CalendarMonth], value: CalendarMonth) -> None:
        if not completion.done():
            completion.set_result(value)

    @staticmethod
    def _fail(completion: asyncio.Future[CalendarMonth], error: BaseException) -> None:
        if not completion.done():
            completion.set_exception(error)
            completion.exception()
