"""
End-to-end test of the full request path on a simulated timeline.

WorkerPool -> RequestProcessor -> ReservationScheduler -> MemoryReservationStore,
with MetricsExporter recording outcomes. Sleeps advance a fake clock instead
of blocking, so a minute of scheduling runs instantly.
"""

from bisect import bisect_right
from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from quota_scheduler import (
    CallResult,
    MetricsExporter,
    ProcessorConfig,
    ProviderRateLimitError,
    RequestProcessor,
    TokenUsage,
    WorkerPool,
)
from quota_scheduler.observability import constants as names


@pytest.fixture
def simulated_sleep(clock):
    async def fake_sleep(seconds):
        clock.advance(round(seconds * 1000))

    with patch("quota_scheduler.processor.processor.asyncio.sleep", side_effect=fake_sleep):
        yield


def max_in_any_window(times, window_ms):
    ordered = sorted(times)
    return max(
        (i + 1 - bisect_right(ordered, end - window_ms) for i, end in enumerate(ordered)),
        default=0,
    )


@pytest.mark.asyncio
async def test_batch_respects_rpm_budget(make_scheduler, memory_store, clock, simulated_sleep):
    scheduler = make_scheduler(max_requests_per_minute=60, headroom=0.5)
    registry = CollectorRegistry()
    exporter = MetricsExporter(scheduler, registry=registry)
    call_times = []

    async def call(payload):
        call_times.append(clock.now_ms)
        return CallResult(output=payload.upper(), usage=TokenUsage(3000, 1000))

    processor = RequestProcessor(
        scheduler, call, ProcessorConfig(jitter_max_ms=0, worker_pool_size=8), exporter=exporter
    )
    pool = WorkerPool(processor)

    outcomes = await pool.run([f"unit-{i}" for i in range(40)])

    assert all(o.ok for o in outcomes)
    assert [o.result.output for o in outcomes] == [f"UNIT-{i}" for i in range(40)]

    scheduled = [r.scheduled_time_ms for r in memory_store._reservations]
    assert len(scheduled) == 40
    assert max_in_any_window(scheduled, 60_000) <= 30
    assert min(call_times) == min(scheduled)

    assert memory_store._token_reservations == {}
    assert registry.get_sample_value(names.REQUESTS_TOTAL, {"outcome": "success"}) == 40

    await exporter.refresh()
    assert registry.get_sample_value(names.RESERVATIONS_CONFIRMED) == 40


@pytest.mark.asyncio
async def test_rate_limited_unit_is_retried(make_scheduler, memory_store, simulated_sleep):
    scheduler = make_scheduler()
    rejected = set()

    async def call(payload):
        if payload not in rejected:
            rejected.add(payload)
            raise ProviderRateLimitError()
        return CallResult(output=payload)

    processor = RequestProcessor(scheduler, call, ProcessorConfig(jitter_max_ms=0))

    outcomes = await WorkerPool(processor, size=2).run(["a", "b", "c"])

    assert [o.result.attempts for o in outcomes] == [2, 2, 2]
    assert memory_store._token_reservations == {}
    assert processor.get_stats()["rate_limit_retries"] == 3
