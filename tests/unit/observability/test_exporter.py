import asyncio
import logging
from unittest.mock import AsyncMock, Mock, patch

import pytest
from prometheus_client import CollectorRegistry, Gauge

from quota_scheduler.observability import constants as names
from quota_scheduler.observability.exporter import MetricsExporter
from quota_scheduler.observability.protocols import OutcomeRecorderProtocol
from quota_scheduler.types.reservation import ReservationResult, UtilizationSnapshot


def reservation(wait_ms, guaranteed=True):
    return ReservationResult(
        scheduled_time_ms=0,
        wait_ms=wait_ms,
        guaranteed=guaranteed,
        metrics=UtilizationSnapshot(0, 0, 0, 0.0, 0.0),
    )


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler(max_requests_per_minute=60, max_tokens_per_minute=10_000, headroom=0.5)


@pytest.fixture
def exporter(scheduler, registry):
    return MetricsExporter(scheduler, registry=registry, interval=0.01)


class TestMetricsExporter:
    def test_implements_outcome_recorder(self, exporter):
        assert isinstance(exporter, OutcomeRecorderProtocol)

    def test_invalid_interval(self, scheduler, registry):
        with pytest.raises(ValueError):
            MetricsExporter(scheduler, registry=registry, interval=0)

    @pytest.mark.asyncio
    async def test_exporters_share_a_registry(self, scheduler, registry):
        first = MetricsExporter(scheduler, registry=registry)
        second = MetricsExporter(scheduler, registry=registry)

        first.record_request_outcome("success", 100)
        second.record_request_outcome("success", 100)
        await second.refresh()

        assert second.requests_total is first.requests_total
        assert registry.get_sample_value(names.REQUESTS_TOTAL, {"outcome": "success"}) == 2
        assert registry.get_sample_value(names.RPM_SAFE) == 30

    @pytest.mark.asyncio
    async def test_name_taken_by_foreign_metric(self, scheduler, registry, caplog):
        foreign = Gauge(names.RPM_CURRENT, "Registered by someone else", registry=registry)
        foreign.set(-1)

        with caplog.at_level(logging.WARNING):
            exporter = MetricsExporter(scheduler, registry=registry)

        assert names.RPM_CURRENT in caplog.text
        await scheduler.reserve_slot("worker-1", 1000)
        assert await exporter.refresh() is True
        assert registry.get_sample_value(names.RPM_CURRENT) == -1
        assert registry.get_sample_value(names.RPM_SAFE) == 30

    @pytest.mark.asyncio
    async def test_refresh_publishes_snapshot(self, exporter, scheduler, registry):
        for i in range(3):
            await scheduler.reserve_slot(f"worker-{i}", 1000)

        assert await exporter.refresh() is True

        assert registry.get_sample_value(names.RPM_CURRENT) == 3
        assert registry.get_sample_value(names.RPM_SAFE) == 30
        assert registry.get_sample_value(names.RPM_MAX) == 60
        assert registry.get_sample_value(names.RPM_AVAILABLE_CAPACITY) == 27
        assert registry.get_sample_value(names.TPM_RESERVED) == 3000
        assert registry.get_sample_value(names.TPM_SAFE) == 5000
        assert registry.get_sample_value(names.TPM_UTILIZATION_PERCENT) == 60.0
        assert registry.get_sample_value(names.RESERVATIONS_TOTAL) == 3

    @pytest.mark.asyncio
    async def test_bottleneck_is_one_hot(self, exporter, scheduler, registry):
        await scheduler.reserve_slot("worker-1", 4500)

        await exporter.refresh()

        assert registry.get_sample_value(names.BOTTLENECK, {"type": "tpm"}) == 1
        assert registry.get_sample_value(names.BOTTLENECK, {"type": "rpm"}) == 0
        assert registry.get_sample_value(names.BOTTLENECK, {"type": "none"}) == 0

    @pytest.mark.asyncio
    async def test_refresh_failure_is_counted(self, registry):
        scheduler = Mock()
        scheduler.get_metrics = AsyncMock(side_effect=RuntimeError("store down"))
        exporter = MetricsExporter(scheduler, registry=registry)

        assert await exporter.refresh() is False
        assert registry.get_sample_value(f"{names.METRICS_SCRAPE_ERRORS_TOTAL}") == 1

    def test_record_request_outcome(self, exporter, registry):
        exporter.record_request_outcome("success", 1500)
        exporter.record_request_outcome("success", 500)
        exporter.record_request_outcome("mystery", 10)

        assert registry.get_sample_value(names.REQUESTS_TOTAL, {"outcome": "success"}) == 2
        assert registry.get_sample_value(names.REQUESTS_TOTAL, {"outcome": "error"}) == 1
        duration = f"{names.REQUEST_DURATION_SECONDS}_sum"
        assert registry.get_sample_value(duration, {"outcome": "success"}) == pytest.approx(2.0)

    def test_record_reservation(self, exporter, registry):
        exporter.record_reservation(reservation(0))
        exporter.record_reservation(reservation(1500, guaranteed=False))

        count = f"{names.RESERVATION_WAIT_SECONDS}_count"
        total = f"{names.RESERVATION_WAIT_SECONDS}_sum"
        assert registry.get_sample_value(count, {"guaranteed": "true"}) == 1
        assert registry.get_sample_value(total, {"guaranteed": "false"}) == pytest.approx(1.5)

    def test_record_rate_limit_error(self, exporter, registry):
        exporter.record_rate_limit_error()

        assert registry.get_sample_value(names.RATE_LIMIT_ERRORS_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, exporter, registry):
        await exporter.start()
        assert exporter.is_running is True

        for _ in range(50):
            if registry.get_sample_value(names.RPM_SAFE) == 30:
                break
            await asyncio.sleep(0.01)

        await exporter.stop()

        assert exporter.is_running is False
        assert registry.get_sample_value(names.RPM_SAFE) == 30

    @pytest.mark.asyncio
    async def test_stop_without_start(self, exporter):
        await exporter.stop()

        assert exporter.is_running is False

    @pytest.mark.asyncio
    async def test_async_context_manager(self, exporter):
        async with exporter:
            assert exporter.is_running is True

        assert exporter.is_running is False

    def test_start_http_server(self, exporter, registry):
        with patch("quota_scheduler.observability.exporter.start_http_server") as start:
            assert exporter.start_http_server(port=9999) is True
            assert exporter.start_http_server(port=9999) is True

        start.assert_called_once_with(9999, addr="127.0.0.1", registry=registry)

    def test_start_http_server_failure(self, exporter):
        with patch(
            "quota_scheduler.observability.exporter.start_http_server",
            side_effect=OSError("address in use"),
        ):
            assert exporter.start_http_server(port=9999) is False
