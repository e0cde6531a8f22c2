"""Tests for LoadScheduler: dedup, priority ordering, failure delivery, cancellation.

Fetches are held behind an ``asyncio.Event`` so the queue can be inspected
while one month is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Callable

import pytest

from calendar_aggregator.domain.models import CalendarDay, CalendarMonth
from calendar_aggregator.engine.loader import LoadPriority, LoadRequest, LoadScheduler
from calendar_aggregator.errors import FetchFailedError, InvalidInputError, LoadCancelledError
from calendar_aggregator.storage.cache import CalendarCache

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _month(year: int, month: int) -> CalendarMonth:
    return CalendarMonth(year=year, month=month, days=(CalendarDay(date=date(year, month, 1)),))


class RecordingFetcher:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []
        self.failing: set[tuple[int, int]] = set()
        self.gates: dict[tuple[int, int], asyncio.Event] = {}

    def gate(self, year: int, month: int) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[(year, month)] = event
        return event

    async def __call__(self, year: int, month: int) -> CalendarMonth:
        self.calls.append((year, month))
        gate = self.gates.get((year, month))
        if gate is not None:
            await gate.wait()
        if (year, month) in self.failing:
            raise RuntimeError(f"store unavailable for {year}-{month:02d}")
        return _month(year, month)


async def _wait_until(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was never met")


@pytest.fixture
def fetcher() -> RecordingFetcher:
    return RecordingFetcher()


@pytest.fixture
def scheduler(cache: CalendarCache, fetcher: RecordingFetcher) -> LoadScheduler:
    return LoadScheduler(cache, fetcher)


# ---------------------------------------------------------------------------
# Priorities and requests
# ---------------------------------------------------------------------------


class TestLoadPriority:
    def test_lower_value_is_more_urgent(self) -> None:
        assert LoadPriority.CRITICAL < LoadPriority.HIGH < LoadPriority.MEDIUM < LoadPriority.LOW

    @pytest.mark.parametrize(
        ("offset", "expected"),
        [(0, LoadPriority.CRITICAL), (-1, LoadPriority.HIGH), (2, LoadPriority.MEDIUM), (-5, LoadPriority.LOW)],
    )
    def test_priority_for_offset(self, offset: int, expected: LoadPriority) -> None:
        assert LoadPriority.for_offset(offset) is expected

    async def test_request_key_and_unique_id(self) -> None:
        future = asyncio.get_running_loop().create_future()
        first = LoadRequest(year=2025, month=6, priority=LoadPriority.LOW, completion=future)
        second = LoadRequest(year=2025, month=6, priority=LoadPriority.LOW, completion=future)
        assert first.key == "2025_06"
        assert first.request_id != second.request_id


# ---------------------------------------------------------------------------
# load()
# ---------------------------------------------------------------------------


class TestLoad:
    async def test_cache_hit_skips_fetch(
        self, scheduler: LoadScheduler, cache: CalendarCache, fetcher: RecordingFetcher
    ) -> None:
        cached = _month(2025, 6)
        cache.set_month("2025_06", cached)

        assert await scheduler.load(2025, 6) is cached
        assert fetcher.calls == []

    async def test_successful_load_fills_cache(
        self, scheduler: LoadScheduler, cache: CalendarCache, fetcher: RecordingFetcher
    ) -> None:
        month = await scheduler.load(2025, 6)

        assert month.key == "2025_06"
        assert cache.get_month("2025_06") is month
        assert not scheduler.is_loading(2025, 6)
        assert scheduler.is_month_cached(2025, 6)

    async def test_concurrent_loads_share_one_fetch(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        first, second = await asyncio.gather(
            scheduler.load(2025, 6, LoadPriority.CRITICAL),
            scheduler.load(2025, 6, LoadPriority.CRITICAL),
        )

        assert first is second
        assert fetcher.calls == [(2025, 6)]

    async def test_queued_requests_are_served_by_priority(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        gate = fetcher.gate(2025, 1)
        blocker = asyncio.create_task(scheduler.load(2025, 1))
        await _wait_until(lambda: scheduler.active_key == "2025_01")

        waiters = [
            asyncio.create_task(scheduler.load(2025, 2, LoadPriority.LOW)),
            asyncio.create_task(scheduler.load(2025, 3, LoadPriority.CRITICAL)),
            asyncio.create_task(scheduler.load(2025, 4, LoadPriority.MEDIUM)),
        ]
        await _wait_until(lambda: len(scheduler.queued_keys) == 3)
        assert scheduler.queued_keys == ["2025_03", "2025_04", "2025_02"]

        gate.set()
        await asyncio.gather(blocker, *waiters)

        assert fetcher.calls == [(2025, 1), (2025, 3), (2025, 4), (2025, 2)]

    async def test_requests_issued_together_start_with_most_urgent(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        await asyncio.gather(
            scheduler.load(2025, 2, LoadPriority.LOW),
            scheduler.load(2025, 3, LoadPriority.CRITICAL),
            scheduler.load(2025, 4, LoadPriority.MEDIUM),
        )

        assert fetcher.calls == [(2025, 3), (2025, 4), (2025, 2)]

    async def test_equal_priority_keeps_arrival_order(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        gate = fetcher.gate(2025, 1)
        blocker = asyncio.create_task(scheduler.load(2025, 1))
        await _wait_until(lambda: scheduler.active_key == "2025_01")

        waiters = [
            asyncio.create_task(scheduler.load(2025, month, LoadPriority.HIGH)) for month in (5, 2, 9)
        ]
        await _wait_until(lambda: len(scheduler.queued_keys) == 3)

        assert scheduler.queued_keys == ["2025_05", "2025_02", "2025_09"]
        gate.set()
        await asyncio.gather(blocker, *waiters)

    async def test_more_urgent_joiner_promotes_queued_request(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        gate = fetcher.gate(2025, 1)
        blocker = asyncio.create_task(scheduler.load(2025, 1))
        await _wait_until(lambda: scheduler.active_key == "2025_01")

        background = asyncio.create_task(scheduler.load(2025, 2, LoadPriority.LOW))
        adjacent = asyncio.create_task(scheduler.load(2025, 3, LoadPriority.MEDIUM))
        await _wait_until(lambda: len(scheduler.queued_keys) == 2)
        assert scheduler.queued_keys == ["2025_03", "2025_02"]

        urgent = asyncio.create_task(scheduler.load(2025, 2, LoadPriority.CRITICAL))
        await _wait_until(lambda: scheduler.queued_keys == ["2025_02", "2025_03"])

        gate.set()
        low_result, _, urgent_result, _ = await asyncio.gather(background, adjacent, urgent, blocker)

        assert low_result is urgent_result
        assert fetcher.calls.count((2025, 2)) == 1

    async def test_cancelling_one_caller_keeps_shared_load(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        gate = fetcher.gate(2025, 6)
        impatient = asyncio.create_task(scheduler.load(2025, 6))
        patient = asyncio.create_task(scheduler.load(2025, 6))
        await _wait_until(lambda: scheduler.active_key == "2025_06")

        impatient.cancel()
        gate.set()

        month = await patient
        assert month.key == "2025_06"
        with pytest.raises(asyncio.CancelledError):
            await impatient

    async def test_invalidate_refetches_in_flight_month(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher, cache: CalendarCache
    ) -> None:
        gate = fetcher.gate(2025, 6)
        task = asyncio.create_task(scheduler.load(2025, 6))
        await _wait_until(lambda: fetcher.calls == [(2025, 6)])

        scheduler.invalidate()
        gate.set()

        assert (await task).key == "2025_06"
        assert fetcher.calls == [(2025, 6), (2025, 6)]
        assert cache.get_month("2025_06") is not None

    async def test_invalid_month_raises(self, scheduler: LoadScheduler) -> None:
        with pytest.raises(InvalidInputError):
            await scheduler.load(2025, 0)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_failure_reaches_every_waiter_and_is_not_cached(
        self, scheduler: LoadScheduler, cache: CalendarCache, fetcher: RecordingFetcher
    ) -> None:
        fetcher.failing.add((2025, 6))

        outcomes = await asyncio.gather(
            scheduler.load(2025, 6),
            scheduler.load(2025, 6, LoadPriority.LOW),
            return_exceptions=True,
        )

        assert all(isinstance(outcome, FetchFailedError) for outcome in outcomes)
        assert isinstance(outcomes[0].__cause__, RuntimeError)
        assert cache.get_month("2025_06") is None
        assert fetcher.calls == [(2025, 6)]

    async def test_next_load_after_failure_retries(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        fetcher.failing.add((2025, 6))
        with pytest.raises(FetchFailedError):
            await scheduler.load(2025, 6)

        fetcher.failing.clear()
        month = await scheduler.load(2025, 6)

        assert month.key == "2025_06"
        assert fetcher.calls == [(2025, 6), (2025, 6)]

    async def test_aggregator_errors_pass_through_unchanged(self, cache: CalendarCache) -> None:
        failure = FetchFailedError("source down")

        async def failing_fetch(year: int, month: int) -> CalendarMonth:
            raise failure

        scheduler = LoadScheduler(cache, failing_fetch)
        with pytest.raises(FetchFailedError) as excinfo:
            await scheduler.load(2025, 6)
        assert excinfo.value is failure

    async def test_prefetch_absorbs_failures(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher, caplog: pytest.LogCaptureFixture
    ) -> None:
        fetcher.failing.add((2025, 7))

        with caplog.at_level(logging.ERROR, logger="calendar_aggregator.engine.loader"):
            await scheduler.prefetch(2025, 7)

        assert "Prefetch of 2025-07 failed" in caplog.text


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


class TestLoadWindow:
    async def test_window_is_sorted_by_month(self, scheduler: LoadScheduler) -> None:
        months = await scheduler.load_window(2025, 1, 2)
        assert [month.key for month in months] == ["2024_11", "2024_12", "2025_01", "2025_02", "2025_03"]

    async def test_center_loads_first(self, scheduler: LoadScheduler, fetcher: RecordingFetcher) -> None:
        await scheduler.load_window(2025, 6, 1)
        assert fetcher.calls[0] == (2025, 6)

    async def test_failed_month_is_omitted(self, scheduler: LoadScheduler, fetcher: RecordingFetcher) -> None:
        fetcher.failing.add((2025, 7))

        months = await scheduler.load_window(2025, 6, 1)

        assert [month.key for month in months] == ["2025_05", "2025_06"]

    async def test_zero_range_loads_only_center(self, scheduler: LoadScheduler) -> None:
        months = await scheduler.load_window(2025, 6, 0)
        assert [month.key for month in months] == ["2025_06"]

    async def test_negative_range_is_rejected(self, scheduler: LoadScheduler) -> None:
        with pytest.raises(InvalidInputError):
            await scheduler.load_window(2025, 6, -1)


# ---------------------------------------------------------------------------
# cancel_all() / aclose()
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancel_all_releases_waiters(
        self, scheduler: LoadScheduler, cache: CalendarCache, fetcher: RecordingFetcher
    ) -> None:
        gate = fetcher.gate(2025, 1)
        running = asyncio.create_task(scheduler.load(2025, 1))
        await _wait_until(lambda: scheduler.active_key == "2025_01")
        queued = asyncio.create_task(scheduler.load(2025, 2, LoadPriority.LOW))
        await _wait_until(lambda: scheduler.queued_keys == ["2025_02"])

        assert scheduler.cancel_all() == 2
        assert scheduler.queued_keys == []

        with pytest.raises(LoadCancelledError):
            await queued
        with pytest.raises(LoadCancelledError):
            await running

        # The in-flight fetch still completes and fills the cache.
        gate.set()
        await _wait_until(lambda: cache.get_month("2025_01") is not None)
        assert (2025, 2) not in fetcher.calls

    async def test_cancel_all_with_nothing_pending(self, scheduler: LoadScheduler) -> None:
        assert scheduler.cancel_all() == 0

    async def test_load_after_cancel_all_starts_fresh(
        self, scheduler: LoadScheduler, fetcher: RecordingFetcher
    ) -> None:
        gate = fetcher.gate(2025, 1)
        running = asyncio.create_task(scheduler.load(2025, 1))
        await _wait_until(lambda: scheduler.active_key == "2025_01")
        scheduler.cancel_all()
        with pytest.raises(LoadCancelledError):
            await running

        gate.set()
        month = await scheduler.load(2025, 3)
        assert month.key == "2025_03"

    async def test_aclose_stops_the_drain(self, scheduler: LoadScheduler, fetcher: RecordingFetcher) -> None:
        fetcher.gate(2025, 1)
        running = asyncio.create_task(scheduler.load(2025, 1))
        await _wait_until(lambda: scheduler.active_key == "2025_01")

        await scheduler.aclose()

        with pytest.raises(LoadCancelledError):
            await running
        assert scheduler.active_key is None
