import random
from bisect import bisect_right
from unittest.mock import AsyncMock, Mock

import pytest

from quota_scheduler.backends.base import BaseReservationStore
from quota_scheduler.backends.memory import MemoryReservationStore
from quota_scheduler.backends.redis import RedisReservationStore
from quota_scheduler.exceptions import StoreOperationError, StoreUnavailableError
from quota_scheduler.scheduler.config import SchedulerConfig
from quota_scheduler.scheduler.models import Bottleneck
from quota_scheduler.scheduler.scheduler import ReservationScheduler, create_scheduler
from quota_scheduler.types.reservation import parse_token_handle

NOW = 1_700_000_000_000


class TestReserveSlot:
    @pytest.mark.asyncio
    async def test_first_reservation_is_immediate(self, make_scheduler):
        scheduler = make_scheduler()

        result = await scheduler.reserve_slot("worker-1", 4000)

        assert result.guaranteed is True
        assert result.wait_ms == 0
        assert result.scheduled_time_ms == NOW
        assert result.handle is not None
        assert result.metrics.requests_in_window == 1
        assert result.metrics.window_tokens == 4000

    @pytest.mark.asyncio
    async def test_scenario_a_single_worker_burst(self, make_scheduler):
        """safe_rpm=30: 30 spaced slots, the remaining 10 pushed past the window."""
        scheduler = make_scheduler(max_requests_per_minute=60, headroom=0.5)
        spacing = scheduler.config.min_spacing_ms

        results = [await scheduler.reserve_slot("worker-1", 100) for _ in range(40)]
        times = [r.scheduled_time_ms for r in results]

        gaps = [b - a for a, b in zip(times[:30], times[1:30])]
        assert all(spacing <= gap <= spacing + 30 for gap in gaps)
        assert all(t >= times[0] + 60_000 for t in times[30:])

        ordered = sorted(times)
        for index, end in enumerate(ordered):
            assert index + 1 - bisect_right(ordered, end - 60_000) <= 30

    @pytest.mark.asyncio
    async def test_scenario_b_tpm_deferral(self, make_scheduler):
        """A hold that would overflow TPM is pushed until the older hold ages out."""
        scheduler = make_scheduler(max_tokens_per_minute=10_000, headroom=1.0)
        spacing = scheduler.config.min_spacing_ms

        first = await scheduler.reserve_slot("worker-a", 6000)
        second = await scheduler.reserve_slot("worker-b", 5000)

        assert first.wait_ms == 0
        assert second.scheduled_time_ms == NOW + 60_000

        await scheduler.record_token_usage(4000, 2000)
        assert await scheduler.finalize_token_reservation(first.handle) is True

        third = await scheduler.reserve_slot("worker-c", 3000)

        # Only spacing after the deferred slot; no further TPM push.
        assert third.scheduled_time_ms == second.scheduled_time_ms + spacing

    @pytest.mark.asyncio
    async def test_finalized_usage_leaves_room_immediately(self, make_scheduler, clock):
        scheduler = make_scheduler(max_tokens_per_minute=10_000, headroom=1.0)

        first = await scheduler.reserve_slot("worker-a", 6000)
        await scheduler.record_token_usage(6000, 0)
        await scheduler.finalize_token_reservation(first.handle)
        clock.advance(100)

        result = await scheduler.reserve_slot("worker-b", 3000)

        assert result.wait_ms == 0
        assert result.metrics.window_tokens == 9000

    @pytest.mark.asyncio
    async def test_released_hold_frees_budget(self, make_scheduler, clock):
        scheduler = make_scheduler(max_tokens_per_minute=10_000, headroom=1.0)

        first = await scheduler.reserve_slot("worker-a", 8000)
        assert await scheduler.release_token_reservation(first.handle) is True
        clock.advance(100)

        result = await scheduler.reserve_slot("worker-b", 8000)

        assert result.wait_ms == 0

    @pytest.mark.asyncio
    async def test_estimate_below_one_is_coerced(self, make_scheduler):
        scheduler = make_scheduler()

        result = await scheduler.reserve_slot("worker-1", 0)

        assert parse_token_handle(result.handle).estimated_tokens == 1

    @pytest.mark.asyncio
    async def test_repeat_worker_in_same_second_is_penalized(self, make_scheduler):
        scheduler = make_scheduler(max_requests_per_minute=6000, headroom=1.0)

        first = await scheduler.reserve_slot("worker-1", 100)
        second = await scheduler.reserve_slot("worker-1", 100)
        other = await scheduler.reserve_slot("worker-2", 100)

        spacing = scheduler.config.min_spacing_ms
        assert second.scheduled_time_ms - first.scheduled_time_ms == spacing + 30
        assert other.scheduled_time_ms - second.scheduled_time_ms == spacing


class TestFallback:
    @pytest.fixture
    def failing_store(self):
        store = Mock(spec=BaseReservationStore)
        store.reserve = AsyncMock(side_effect=StoreUnavailableError("connection refused"))
        store.confirm = AsyncMock(side_effect=StoreUnavailableError("connection refused"))
        store.record_usage = AsyncMock(side_effect=StoreUnavailableError("connection refused"))
        store.remove_token_reservation = AsyncMock(
            side_effect=StoreUnavailableError("connection refused")
        )
        store.snapshot = AsyncMock(side_effect=StoreUnavailableError("connection refused"))
        return store

    @pytest.mark.asyncio
    async def test_scenario_c_store_unavailable(self, failing_store, clock):
        """An unreachable store yields an unguaranteed wait in [1000, 2000)."""
        scheduler = ReservationScheduler(
            failing_store, SchedulerConfig(), clock=clock, rng=random.Random(3)
        )

        for _ in range(20):
            result = await scheduler.reserve_slot("worker-1", 4000)
            assert result.guaranteed is False
            assert 1000 <= result.wait_ms < 2000
            assert result.scheduled_time_ms == NOW + result.wait_ms
            assert result.handle is None
            assert result.metrics.rpm_utilization_percent == 0.0

    @pytest.mark.asyncio
    async def test_fallback_range_is_configurable(self, failing_store, clock):
        config = SchedulerConfig(fallback_wait_min_ms=200, fallback_wait_max_ms=300)
        scheduler = ReservationScheduler(failing_store, config, clock=clock)

        result = await scheduler.reserve_slot("worker-1", 4000)

        assert 200 <= result.wait_ms < 300

    @pytest.mark.asyncio
    async def test_operation_error_also_falls_back(self, failing_store, clock):
        failing_store.reserve.side_effect = StoreOperationError("bad reply")
        scheduler = ReservationScheduler(failing_store, clock=clock)

        result = await scheduler.reserve_slot("worker-1", 4000)

        assert result.guaranteed is False

    @pytest.mark.asyncio
    async def test_best_effort_operations_swallow_store_errors(self, failing_store, clock):
        scheduler = ReservationScheduler(failing_store, clock=clock)

        await scheduler.confirm_reservation("worker-1", NOW)
        await scheduler.record_token_usage(100, 100)
        assert await scheduler.finalize_token_reservation("1:2:3:w") is False
        assert await scheduler.release_token_reservation("1:2:3:w") is False

    @pytest.mark.asyncio
    async def test_metrics_propagate_store_errors(self, failing_store, clock):
        scheduler = ReservationScheduler(failing_store, clock=clock)

        with pytest.raises(StoreUnavailableError):
            await scheduler.get_metrics()


class TestTokenReservations:
    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, make_scheduler):
        scheduler = make_scheduler()
        result = await scheduler.reserve_slot("worker-1", 4000)

        assert await scheduler.finalize_token_reservation(result.handle) is True
        assert await scheduler.finalize_token_reservation(result.handle) is False

    @pytest.mark.asyncio
    async def test_release_after_finalize_is_noop(self, make_scheduler):
        scheduler = make_scheduler()
        result = await scheduler.reserve_slot("worker-1", 4000)

        await scheduler.finalize_token_reservation(result.handle)

        assert await scheduler.release_token_reservation(result.handle) is False

    @pytest.mark.asyncio
    async def test_missing_handle_is_noop(self, make_scheduler):
        scheduler = make_scheduler()

        assert await scheduler.finalize_token_reservation(None) is False
        assert await scheduler.release_token_reservation("") is False

    @pytest.mark.asyncio
    async def test_negative_usage_is_clamped(self, make_scheduler):
        scheduler = make_scheduler()

        await scheduler.record_token_usage(-50, 200)
        metrics = await scheduler.get_metrics()

        assert metrics.tpm.used == 200


class TestGetMetrics:
    @pytest.mark.asyncio
    async def test_empty_state(self, make_scheduler):
        scheduler = make_scheduler()

        metrics = await scheduler.get_metrics()

        assert metrics.namespace == "test"
        assert metrics.rpm.current == 0
        assert metrics.rpm.safe == 950
        assert metrics.rpm.available_capacity == 950
        assert metrics.rpm.safety_margin_percent == 5.0
        assert metrics.tpm.current == 0
        assert metrics.bottleneck is Bottleneck.NONE
        assert metrics.health.status == "healthy"
        assert metrics.health.can_accept_more is True

    @pytest.mark.asyncio
    async def test_confirmation_rate_and_accuracy(self, make_scheduler, clock):
        scheduler = make_scheduler()
        result = await scheduler.reserve_slot("worker-1", 4000)
        await scheduler.reserve_slot("worker-2", 4000)

        clock.advance(50)
        await scheduler.confirm_reservation("worker-1", result.scheduled_time_ms)
        metrics = await scheduler.get_metrics()

        assert metrics.reservations.total == 2
        assert metrics.reservations.confirmed == 1
        assert metrics.reservations.confirmation_rate_percent == 50.0
        assert metrics.reservations.avg_accuracy_ms == 50.0
        assert metrics.active_requests == 1

    @pytest.mark.asyncio
    async def test_tpm_bottleneck(self, make_scheduler):
        scheduler = make_scheduler(max_tokens_per_minute=10_000, headroom=1.0)
        await scheduler.reserve_slot("worker-1", 8500)

        metrics = await scheduler.get_metrics()

        assert metrics.tpm.current == 8500
        assert metrics.tpm.reserved == 8500
        assert metrics.tpm.used == 0
        assert metrics.tpm.utilization_percent == 85.0
        assert metrics.bottleneck is Bottleneck.TPM
        assert metrics.health.status == "healthy"

    @pytest.mark.asyncio
    async def test_rpm_bottleneck_wins(self, make_scheduler):
        scheduler = make_scheduler(
            max_requests_per_minute=10, max_tokens_per_minute=1000, headroom=1.0
        )
        for i in range(9):
            await scheduler.reserve_slot(f"worker-{i}", 100)

        metrics = await scheduler.get_metrics()

        assert metrics.rpm.utilization_percent == 90.0
        assert metrics.tpm.utilization_percent == 90.0
        assert metrics.bottleneck is Bottleneck.RPM
        assert metrics.health.status == "busy"
        assert metrics.rpm.available_capacity == 1

    @pytest.mark.asyncio
    async def test_average_and_projected_tokens(self, make_scheduler):
        scheduler = make_scheduler()
        await scheduler.record_token_usage(1000, 500)

        metrics = await scheduler.get_metrics()

        assert metrics.tpm.avg_tokens_per_request == 1500.0
        assert metrics.tpm.projected_tpm == 1500 * 950

    @pytest.mark.asyncio
    async def test_metrics_serialize(self, make_scheduler):
        scheduler = make_scheduler()
        await scheduler.reserve_slot("worker-1", 100)

        payload = (await scheduler.get_metrics()).model_dump(mode="json")

        assert payload["bottleneck"] == "none"
        assert payload["rpm"]["current"] == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_reset_clears_state(self, make_scheduler):
        scheduler = make_scheduler()
        await scheduler.reserve_slot("worker-1", 4000)

        await scheduler.reset()
        metrics = await scheduler.get_metrics()

        assert metrics.rpm.current == 0
        assert metrics.tpm.current == 0
        assert metrics.reservations.total == 0

    @pytest.mark.asyncio
    async def test_health_check_delegates_to_store(self, make_scheduler):
        scheduler = make_scheduler()

        result = await scheduler.health_check()

        assert result.healthy is True
        assert result.backend_type == "memory"

    @pytest.mark.asyncio
    async def test_context_manager_closes_store(self, clock):
        store = Mock(spec=BaseReservationStore)
        store.close = AsyncMock()

        async with ReservationScheduler(store, clock=clock):
            pass

        store.close.assert_awaited_once()


class TestCreateScheduler:
    def test_defaults_to_memory_store(self):
        scheduler = create_scheduler(SchedulerConfig(namespace="jobs"))

        assert isinstance(scheduler.store, MemoryReservationStore)
        assert scheduler.store.namespace == "jobs"

    def test_redis_url_selects_redis_store(self):
        scheduler = create_scheduler(
            SchedulerConfig(namespace="jobs", key_prefix="qs-test"),
            redis_url="redis://localhost:6379/1",
        )

        assert isinstance(scheduler.store, RedisReservationStore)
        assert scheduler.store.redis_url == "redis://localhost:6379/1"
        assert scheduler.store.reservations_key.startswith("qs-test:{")
