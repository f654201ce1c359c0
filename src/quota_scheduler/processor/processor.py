# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Request Processor

Runs one unit of work through the reservation state machine:

    ESTIMATE -> RESERVE -> WAIT -> CONFIRM -> EXECUTE -> RECORD

A provider rate-limit rejection releases the token hold and loops back to
ESTIMATE under the configured RetryPolicy. Any other error from the external
call releases the hold and propagates unchanged.
"""

import asyncio
import logging
import random
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

from ..exceptions import ProviderRateLimitError, RateLimitRetriesExhaustedError
from ..observability.protocols import OutcomeRecorderProtocol
from ..protocols.call import ExternalCallProtocol
from ..protocols.classifier import RateLimitClassifierProtocol
from ..scheduler.config import ProcessorConfig
from ..scheduler.scheduler import ReservationScheduler
from ..types.reservation import ReservationResult
from ..types.result import CallResult, ProcessedResult, TokenUsage
from .diagnostics import ProcessorDiagnostics, ProcessorStats
from .estimator import TokenEstimator

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE_MARKERS = ("rate limit", "quota", "429")


def is_rate_limit_error(error: BaseException) -> bool:
    """
    Default classifier for provider rate-limit rejections.

    Matches ProviderRateLimitError, anything exposing ``status_code == 429``
    (directly or on an attached ``response``), exception classes whose name
    contains "ratelimit", and messages mentioning a rate limit or quota.
    """
    if isinstance(error, ProviderRateLimitError):
        return True
    if "ratelimit" in type(error).__name__.lower():
        return True
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    if status == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MESSAGE_MARKERS)


class RequestProcessor:
    """
    Executes units of work against a quota-limited external call.

    All rolling state (estimator windows, utilization samples, counters) is
    owned by the instance; ``reset()`` returns it to its initial state.

    Example:
        >>> processor = RequestProcessor(scheduler, call_provider)
        >>> result = await processor.submit_unit({"text": "..."})
        >>> result.guaranteed, result.wait_time_ms
    """

    def __init__(
        self,
        scheduler: ReservationScheduler,
        call: ExternalCallProtocol | Callable[[Any], Any],
        config: ProcessorConfig | None = None,
        estimator: TokenEstimator | None = None,
        exporter: OutcomeRecorderProtocol | None = None,
        classifier: RateLimitClassifierProtocol | Callable[[BaseException], bool] | None = None,
        worker_id: str | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            scheduler: Reservation scheduler shared by all workers
            call: Async callable performing the external call
            config: Processor configuration (defaults to ProcessorConfig())
            estimator: Token estimator; one is created from config if omitted
            exporter: Optional recorder for reservation and call outcomes
            classifier: Rate-limit classifier; defaults to is_rate_limit_error
            worker_id: Default worker id for submit_unit
            rng: Random source for wait jitter
        """
        self.scheduler = scheduler
        self.call = call
        self.config = config or ProcessorConfig()
        self.estimator = estimator or TokenEstimator(self.config)
        self.exporter = exporter
        self.classifier = classifier or is_rate_limit_error
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._rng = rng or random.Random()

        self._tpm_samples: deque[float] = deque(maxlen=self.config.sample_window)
        self._stats = ProcessorStats()
        self._diagnostics = ProcessorDiagnostics()

    # === Unit of Work ===

    async def submit_unit(self, payload: Any, worker_id: str | None = None) -> ProcessedResult:
        """
        Run one unit of work to completion.

        Args:
            payload: Opaque payload handed to the external call
            worker_id: Worker identity for fairness; defaults to the
                processor's own id

        Returns:
            ProcessedResult with the call output and scheduling details

        Raises:
            RateLimitRetriesExhaustedError: If a bounded retry policy gives up
            Exception: Any non-rate-limit error from the external call, as-is
        """
        worker = worker_id or self.worker_id
        started = time.monotonic()
        total_wait_ms = 0
        attempts = 0
        rate_limit_failures = 0

        while True:
            estimate = self.estimator.estimate(payload)
            reservation = await self.scheduler.reserve_slot(worker, estimate)
            self._track_reservation(reservation)

            call_issued = False
            try:
                wait_ms = reservation.wait_ms + self._jitter_ms()
                total_wait_ms += wait_ms
                await asyncio.sleep(wait_ms / 1000)

                await self.scheduler.confirm_reservation(worker, reservation.scheduled_time_ms)

                attempts += 1
                call_issued = True
                call_started = time.monotonic()
                result = await self.call(payload)
                processing_ms = _elapsed_ms(call_started)
            except asyncio.CancelledError:
                await asyncio.shield(self._abandon(reservation, estimate, call_issued))
                raise
            except Exception as e:
                await self.scheduler.release_token_reservation(reservation.handle)
                if not self.classifier(e):
                    self._stats.failed_requests += 1
                    self._record_outcome("error", started)
                    raise

                rate_limit_failures += 1
                self._stats.rate_limit_retries += 1
                self._diagnostics.rate_limit_retries += 1
                if self.exporter is not None:
                    self.exporter.record_rate_limit_error()

                policy = self.config.retry_policy
                if not policy.should_retry(rate_limit_failures):
                    self._stats.failed_requests += 1
                    self._record_outcome("rate_limit_abort", started)
                    logger.error(
                        f"Giving up on {worker} after {attempts} attempts: "
                        f"provider rate limit persisted ({e})"
                    )
                    raise RateLimitRetriesExhaustedError(attempts, e) from e

                self._record_outcome("rate_limit_error", started)
                logger.warning(
                    f"Provider rate limit for {worker} despite reservation "
                    f"(failure {rate_limit_failures}, estimate {estimate}); retrying: {e}"
                )
                if policy.backoff_ms:
                    await asyncio.sleep(policy.backoff_ms / 1000)
                continue

            usage = await self._record_usage(result, estimate, reservation)
            self._complete(reservation, total_wait_ms)
            self._record_outcome("success", started)

            return ProcessedResult(
                output=result.output,
                usage=usage,
                wait_time_ms=total_wait_ms,
                total_duration_ms=_elapsed_ms(started),
                processing_time_ms=processing_ms,
                guaranteed=reservation.guaranteed,
                worker_id=worker,
                rpm_utilization_percent=reservation.metrics.rpm_utilization_percent,
                tpm_utilization_percent=reservation.metrics.tpm_utilization_percent,
                estimated_tokens=estimate,
                attempts=attempts,
            )

    def _jitter_ms(self) -> int:
        if self.config.jitter_max_ms <= 0:
            return 0
        return int(self._rng.uniform(0, self.config.jitter_max_ms))

    def _track_reservation(self, reservation: ReservationResult) -> None:
        if reservation.guaranteed:
            self._tpm_samples.append(reservation.metrics.tpm_utilization_percent)
        else:
            self._stats.fallback_reservations += 1
        if self.exporter is not None:
            self.exporter.record_reservation(reservation)

    async def _record_usage(
        self, result: CallResult, estimate: int, reservation: ReservationResult
    ) -> TokenUsage | None:
        """Charge actual usage (or the estimate when none was reported) and close the hold."""
        usage = result.usage
        if usage is None:
            self._diagnostics.no_usage_count += 1
            logger.debug(f"No usage reported; recording estimate of {estimate} tokens")
            await self.scheduler.record_token_usage(estimate, 0)
            await self.scheduler.finalize_token_reservation(reservation.handle)
            return None

        input_tokens = usage.input_tokens(self.config.include_cached_tokens)
        # Providers that only report a total still consumed all of it.
        input_tokens = max(input_tokens, usage.total - usage.output_tokens)
        await self.scheduler.record_token_usage(input_tokens, usage.output_tokens)
        await self.scheduler.finalize_token_reservation(reservation.handle)
        self.estimator.observe(usage)
        self._diagnostics.record_estimate(estimate, usage.total)
        return usage

    async def _abandon(
        self, reservation: ReservationResult, estimate: int, call_issued: bool
    ) -> None:
        # Once the call is out the provider may already have charged it.
        if call_issued:
            await self.scheduler.record_token_usage(estimate, 0)
            await self.scheduler.finalize_token_reservation(reservation.handle)
        else:
            await self.scheduler.release_token_reservation(reservation.handle)

    def _complete(self, reservation: ReservationResult, wait_ms: int) -> None:
        stats = self._stats
        stats.processed_requests += 1
        stats.total_wait_ms += wait_ms
        if reservation.wait_ms == 0:
            stats.zero_wait_requests += 1

        diagnostics = self._diagnostics
        diagnostics.wait_ms.record(wait_ms)
        diagnostics.rpm_utilization_percent.record(reservation.metrics.rpm_utilization_percent)
        diagnostics.tpm_utilization_percent.record(reservation.metrics.tpm_utilization_percent)

        every = self.config.log_every_n_requests
        if every and stats.processed_requests % every == 0:
            summary = stats.as_dict()
            logger.info(
                f"Processed {stats.processed_requests} requests: "
                f"avg wait {summary['avg_wait_ms']}ms, "
                f"zero-wait {summary['zero_wait_rate_percent']}%, "
                f"rate-limit retries {stats.rate_limit_retries}, "
                f"fallback reservations {stats.fallback_reservations}"
            )

    def _record_outcome(self, outcome: str, started: float) -> None:
        if self.exporter is not None:
            self.exporter.record_request_outcome(outcome, _elapsed_ms(started))

    # === Backpressure ===

    def get_throttle_delay_ms(self) -> int:
        """
        Suggested extra delay before the next dispatch.

        A cooperative hint on top of the hard reservation guarantee: once
        enough samples exist, sustained or peak TPM utilization above the
        soft thresholds yields a delay proportional to the excess.
        """
        config = self.config
        samples = self._tpm_samples
        if len(samples) < config.min_throttle_samples:
            return 0
        average = sum(samples) / len(samples)
        excess = max(
            average - config.throttle_avg_threshold_percent,
            samples[-1] - config.throttle_peak_threshold_percent,
        )
        if excess <= 0:
            return 0
        delay = int(excess * config.throttle_ms_per_percent)
        return min(config.max_throttle_delay_ms, max(config.min_throttle_delay_ms, delay))

    # === Introspection ===

    def get_stats(self) -> dict[str, Any]:
        stats = self._stats.as_dict()
        stats["estimator"] = {
            "samples": self.estimator.sample_count,
            "floor": self.estimator.floor,
            "ceiling": self.estimator.ceiling,
            "estimation_failures": self.estimator.estimation_failures,
            **self.estimator.averages(),
        }
        stats["throttle_delay_ms"] = self.get_throttle_delay_ms()
        return stats

    def get_diagnostics(self) -> dict[str, Any]:
        return self._diagnostics.as_dict()

    def reset(self) -> None:
        """Clear rolling windows and counters."""
        self.estimator.reset()
        self._tpm_samples.clear()
        self._stats = ProcessorStats()
        self._diagnostics = ProcessorDiagnostics()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
