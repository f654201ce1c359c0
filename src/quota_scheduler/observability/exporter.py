# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Prometheus exporter for the reservation scheduler.

MetricsExporter polls ``ReservationScheduler.get_metrics()`` on a fixed
interval and republishes each field as a gauge. It also implements
OutcomeRecorderProtocol, so a RequestProcessor can report per-call outcomes
and reservation waits straight into Prometheus counters and histograms.

Usage:
    exporter = MetricsExporter(scheduler)
    exporter.start_http_server(port=9090)
    await exporter.start()
    ...
    await exporter.stop()
"""

import asyncio
import contextlib
import logging
import weakref
from typing import Any, TypeVar

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from ..scheduler.models import Bottleneck, SchedulerMetrics
from ..scheduler.scheduler import ReservationScheduler
from ..types.reservation import ReservationResult
from . import constants as names

logger = logging.getLogger(__name__)

MetricT = TypeVar("MetricT", Counter, Gauge, Histogram)

# Metrics created by exporters, per registry. Exporters sharing a registry
# share these instances instead of registering the same name twice.
_REGISTERED: "weakref.WeakKeyDictionary[CollectorRegistry, dict[str, Any]]" = (
    weakref.WeakKeyDictionary()
)


def _get_or_create(
    metric_class: type[MetricT],
    registry: CollectorRegistry,
    name: str,
    documentation: str,
    labelnames: tuple[str, ...] = (),
    **kwargs: Any,
) -> MetricT | None:
    """
    Return the exporter metric called ``name`` on ``registry``, creating it once.

    Returns None when the name is already taken on the registry by a collector
    this module did not create. Callers skip recording into a missing metric.
    """
    cache = _REGISTERED.setdefault(registry, {})
    metric = cache.get(name)
    if isinstance(metric, metric_class):
        logger.debug(f"Reusing Prometheus metric {name}")
        return metric
    try:
        metric = metric_class(name, documentation, labelnames, registry=registry, **kwargs)
    except ValueError as e:
        logger.warning(f"Failed to create Prometheus metric {name}: {e}")
        return None
    cache[name] = metric
    return metric


class MetricsExporter:
    """
    Republishes scheduler snapshots and request outcomes as Prometheus metrics.

    Metrics are registered on ``registry`` (the default Prometheus registry
    when omitted). Exporters built on the same registry share one set of
    metrics. A metric whose name is already taken by a foreign collector is
    skipped with a warning.
    """

    def __init__(
        self,
        scheduler: ReservationScheduler,
        registry: CollectorRegistry | None = None,
        interval: float = 15.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.scheduler = scheduler
        self.interval = interval
        self._registry = registry if registry is not None else REGISTRY
        self._task: asyncio.Task[None] | None = None
        self._server_running = False
        self._gauges: dict[str, Gauge | None] = {}

        for name, documentation in (
            (names.RPM_CURRENT, "Reservations in the trailing RPM window"),
            (names.RPM_SAFE, "Safe requests-per-minute budget"),
            (names.RPM_MAX, "Provider requests-per-minute cap"),
            (names.RPM_UTILIZATION_PERCENT, "RPM utilization against the safe budget"),
            (names.RPM_AVAILABLE_CAPACITY, "Reservations still available in the window"),
            (names.TPM_CURRENT, "Used plus reserved tokens in the trailing window"),
            (names.TPM_RESERVED, "Tokens held by open token reservations"),
            (names.TPM_WINDOW, "Tokens counted against the TPM window"),
            (names.TPM_SAFE, "Safe tokens-per-minute budget"),
            (names.TPM_MAX, "Provider tokens-per-minute cap"),
            (names.TPM_UTILIZATION_PERCENT, "TPM utilization against the safe budget"),
            (names.AVG_TOKENS_PER_REQUEST, "Average recorded tokens per call"),
            (names.PROJECTED_TPM, "Average tokens per request times safe RPM"),
            (names.ACTIVE_REQUESTS, "Confirmed requests within retention"),
            (names.RESERVATIONS_TOTAL, "Reservations granted"),
            (names.RESERVATIONS_CONFIRMED, "Reservations confirmed"),
            (names.CONFIRMATION_RATE_PERCENT, "Confirmed as a percentage of granted"),
            (names.RESERVATION_ACCURACY_MS, "Average distance between slot and confirm"),
        ):
            self._gauges[name] = _get_or_create(Gauge, self._registry, name, documentation)

        self.bottleneck = _get_or_create(
            Gauge, self._registry, names.BOTTLENECK, "Current bottleneck (one-hot)", ("type",)
        )
        self.requests_total = _get_or_create(
            Counter, self._registry, names.REQUESTS_TOTAL, "External call outcomes", ("outcome",)
        )
        self.request_duration = _get_or_create(
            Histogram,
            self._registry,
            names.REQUEST_DURATION_SECONDS,
            "Time from submission to outcome",
            ("outcome",),
            buckets=names.REQUEST_DURATION_BUCKETS,
        )
        self.reservation_wait = _get_or_create(
            Histogram,
            self._registry,
            names.RESERVATION_WAIT_SECONDS,
            "Wait handed out by reservations",
            ("guaranteed",),
            buckets=names.WAIT_BUCKETS,
        )
        self.rate_limit_errors = _get_or_create(
            Counter,
            self._registry,
            names.RATE_LIMIT_ERRORS_TOTAL,
            "Provider rate-limit rejections despite a reservation",
        )
        self.scrape_errors = _get_or_create(
            Counter, self._registry, names.METRICS_SCRAPE_ERRORS_TOTAL, "Failed metrics refreshes"
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # === Snapshot Gauges ===

    async def refresh(self) -> bool:
        """
        Pull one snapshot into the gauges.

        Returns:
            True on success. Failures are counted and logged, never raised.
        """
        try:
            metrics = await self.scheduler.get_metrics()
            self._publish(metrics)
        except Exception as e:
            if self.scrape_errors is not None:
                self.scrape_errors.inc()
            logger.warning(f"Metrics refresh failed: {e}")
            return False
        return True

    def _publish(self, metrics: SchedulerMetrics) -> None:
        rpm, tpm, reservations = metrics.rpm, metrics.tpm, metrics.reservations
        values: dict[str, float] = {
            names.RPM_CURRENT: rpm.current,
            names.RPM_SAFE: rpm.safe,
            names.RPM_MAX: rpm.max,
            names.RPM_UTILIZATION_PERCENT: rpm.utilization_percent,
            names.RPM_AVAILABLE_CAPACITY: rpm.available_capacity,
            names.TPM_CURRENT: tpm.current,
            names.TPM_RESERVED: tpm.reserved,
            names.TPM_WINDOW: tpm.window_tokens,
            names.TPM_SAFE: tpm.safe,
            names.TPM_MAX: tpm.max,
            names.TPM_UTILIZATION_PERCENT: tpm.utilization_percent,
            names.AVG_TOKENS_PER_REQUEST: tpm.avg_tokens_per_request,
            names.PROJECTED_TPM: tpm.projected_tpm,
            names.ACTIVE_REQUESTS: metrics.active_requests,
            names.RESERVATIONS_TOTAL: reservations.total,
            names.RESERVATIONS_CONFIRMED: reservations.confirmed,
            names.CONFIRMATION_RATE_PERCENT: reservations.confirmation_rate_percent,
            names.RESERVATION_ACCURACY_MS: reservations.avg_accuracy_ms,
        }
        for name, value in values.items():
            gauge = self._gauges[name]
            if gauge is not None:
                gauge.set(value)
        if self.bottleneck is None:
            return
        for bottleneck in Bottleneck:
            self.bottleneck.labels(type=bottleneck.value).set(
                1 if metrics.bottleneck is bottleneck else 0
            )

    # === Request Path (OutcomeRecorderProtocol) ===

    def record_reservation(self, result: ReservationResult) -> None:
        if self.reservation_wait is None:
            return
        self.reservation_wait.labels(
            guaranteed=str(result.guaranteed).lower()
        ).observe(result.wait_ms / 1000)

    def record_request_outcome(self, outcome: str, duration_ms: float) -> None:
        if outcome not in names.OUTCOMES:
            logger.debug(f"Unknown request outcome {outcome!r}, recording as error")
            outcome = names.OUTCOME_ERROR
        if self.requests_total is not None:
            self.requests_total.labels(outcome=outcome).inc()
        if self.request_duration is not None:
            self.request_duration.labels(outcome=outcome).observe(duration_ms / 1000)

    def record_rate_limit_error(self) -> None:
        if self.rate_limit_errors is not None:
            self.rate_limit_errors.inc()

    # === Lifecycle ===

    async def start(self) -> None:
        """Start the background refresh loop. No-op if already running."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Metrics exporter started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Metrics exporter stopped")

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.interval)

    def start_http_server(self, host: str = "127.0.0.1", port: int = 9090) -> bool:
        """
        Expose the registry over HTTP for Prometheus to scrape.

        Binds to localhost by default. Pass host="0.0.0.0" for access from
        outside a container.

        Returns:
            True if the server is running
        """
        if self._server_running:
            logger.warning("Prometheus server already running")
            return True
        try:
            # start_http_server runs in a daemon thread
            start_http_server(port, addr=host, registry=self._registry)
        except OSError as e:
            logger.error(f"Failed to start Prometheus server: {e}")
            return False
        self._server_running = True
        logger.info(f"Prometheus metrics server started on {host}:{port}")
        return True

    async def __aenter__(self) -> "MetricsExporter":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.stop()
