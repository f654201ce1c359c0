# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation Scheduler

The scheduler hands out future time slots for calls to a quota-limited
provider. Each slot is committed atomically in a shared store so that, across
every worker using the same namespace:

- no trailing 60s window holds more than ``safe_rpm`` reservations, and
- usage plus open token holds never exceed ``safe_tpm`` when a slot is granted.

When the store cannot be reached the scheduler degrades to a randomized
fallback wait and flags the reservation as unguaranteed rather than failing
the caller.
"""

import logging
import random
import time
import uuid
from collections.abc import Callable
from typing import Any

from ..backends.base import BaseReservationStore, HealthCheckResult
from ..exceptions import StoreError
from ..types.reservation import ReservationResult, SlotGrant, UtilizationSnapshot
from .config import SchedulerConfig
from .models import (
    HealthStatus,
    ReservationMetrics,
    RpmMetrics,
    SchedulerMetrics,
    TpmMetrics,
    classify_bottleneck,
)

logger = logging.getLogger(__name__)

# Utilization at or above which the scheduler reports itself as busy.
BUSY_UTILIZATION_PERCENT = 90.0


class ReservationScheduler:
    """
    Computes and commits RPM/TPM-safe time slots against a reservation store.

    Example:
        >>> scheduler = ReservationScheduler(MemoryReservationStore(), config)
        >>> reservation = await scheduler.reserve_slot("worker-1", 4000)
        >>> await asyncio.sleep(reservation.wait_ms / 1000)
        >>> await scheduler.confirm_reservation("worker-1", reservation.scheduled_time_ms)
    """

    def __init__(
        self,
        store: BaseReservationStore,
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            store: Reservation store shared by every worker
            config: Scheduler configuration (defaults to SchedulerConfig())
            clock: Returns the current time in seconds; defaults to time.time
            rng: Random source for fallback waits
        """
        self.config = config or SchedulerConfig()
        self.store = store
        self._limits = self.config.slot_limits()
        self._clock = clock or time.time
        self._rng = rng or random.Random()

    def now_ms(self) -> int:
        return round(self._clock() * 1000)

    # === Reservations ===

    async def reserve_slot(self, worker_id: str, estimated_tokens: int) -> ReservationResult:
        """
        Reserve the earliest RPM/TPM-safe slot for one call.

        Args:
            worker_id: Identifier of the calling worker
            estimated_tokens: Token estimate for the call; values below 1 are
                coerced to 1

        Returns:
            ReservationResult. Never raises for store failures: an unreachable
            store yields ``guaranteed=False`` with a randomized fallback wait.
        """
        if estimated_tokens < 1:
            logger.debug(f"Coercing estimate {estimated_tokens} to 1 for {worker_id}")
            estimated_tokens = 1

        now_ms = self.now_ms()
        try:
            grant = await self.store.reserve(
                now_ms,
                worker_id,
                estimated_tokens,
                self._limits,
                uuid.uuid4().hex,
            )
        except StoreError as e:
            return self._fallback_reservation(now_ms, worker_id, e)

        wait_ms = max(0, grant.scheduled_time_ms - now_ms)
        if grant.rpm_delayed or grant.tpm_delayed:
            logger.debug(
                f"Slot for {worker_id} deferred {wait_ms}ms "
                f"(rpm_delayed={grant.rpm_delayed}, tpm_delayed={grant.tpm_delayed}, "
                f"tokens={grant.held_tokens})"
            )
        return ReservationResult(
            scheduled_time_ms=grant.scheduled_time_ms,
            wait_ms=wait_ms,
            guaranteed=True,
            metrics=self._utilization(grant),
            handle=grant.handle,
        )

    def _fallback_reservation(
        self, now_ms: int, worker_id: str, error: Exception
    ) -> ReservationResult:
        wait_ms = self._rng.randrange(
            self.config.fallback_wait_min_ms, self.config.fallback_wait_max_ms
        )
        logger.warning(
            f"Reservation store unavailable for {worker_id}, "
            f"using unguaranteed fallback wait of {wait_ms}ms: {error}"
        )
        return ReservationResult(
            scheduled_time_ms=now_ms + wait_ms,
            wait_ms=wait_ms,
            guaranteed=False,
            metrics=UtilizationSnapshot(
                requests_in_window=0,
                active_requests=0,
                window_tokens=0,
                rpm_utilization_percent=0.0,
                tpm_utilization_percent=0.0,
            ),
            handle=None,
        )

    def _utilization(self, grant: SlotGrant) -> UtilizationSnapshot:
        window_tokens = grant.used_tokens + grant.reserved_tokens
        return UtilizationSnapshot(
            requests_in_window=grant.requests_in_window,
            active_requests=grant.active_requests,
            window_tokens=window_tokens,
            rpm_utilization_percent=_percent(grant.requests_in_window, self.config.safe_rpm),
            tpm_utilization_percent=_percent(window_tokens, self.config.safe_tpm),
        )

    async def confirm_reservation(self, worker_id: str, scheduled_time_ms: int) -> None:
        """Mark a reservation as in flight. Best-effort; failures are logged."""
        try:
            await self.store.confirm(
                self.now_ms(), worker_id, scheduled_time_ms, self._limits
            )
        except Exception as e:
            logger.warning(f"Failed to confirm reservation for {worker_id}: {e}")

    async def record_token_usage(self, input_tokens: int, output_tokens: int) -> None:
        """Append actual usage at the current time. Best-effort; failures are logged."""
        tokens = max(0, input_tokens) + max(0, output_tokens)
        try:
            await self.store.record_usage(self.now_ms(), tokens, self._limits)
        except Exception as e:
            logger.warning(f"Failed to record token usage ({tokens} tokens): {e}")

    async def finalize_token_reservation(self, handle: str | None) -> bool:
        """
        Remove a token hold once real usage has been recorded.

        Idempotent: finalizing an already-removed hold is a no-op.

        Returns:
            True if this call removed the hold
        """
        return await self._remove_hold(handle, "finalize")

    async def release_token_reservation(self, handle: str | None) -> bool:
        """Remove a token hold for a call that was abandoned before consuming budget."""
        return await self._remove_hold(handle, "release")

    async def _remove_hold(self, handle: str | None, action: str) -> bool:
        if not handle:
            return False
        try:
            removed = await self.store.remove_token_reservation(handle)
        except Exception as e:
            logger.warning(f"Failed to {action} token reservation {handle}: {e}")
            return False
        if not removed:
            logger.debug(f"Token reservation {handle} already removed ({action})")
        return removed

    # === Observability ===

    async def get_metrics(self) -> SchedulerMetrics:
        """
        Snapshot utilization, confirmation rate and the current bottleneck.

        Raises:
            StoreError: If the store cannot be read
        """
        config = self.config
        snapshot = await self.store.snapshot(self.now_ms(), self._limits)

        rpm_current = snapshot.requests_in_window
        rpm_util = _percent(rpm_current, config.safe_rpm)
        tpm_current = snapshot.used_tokens + snapshot.reserved_tokens
        tpm_util = _percent(tpm_current, config.safe_tpm)
        avg_tokens = (
            snapshot.used_tokens / snapshot.usage_entries if snapshot.usage_entries else 0.0
        )
        counters = snapshot.counters
        available = max(0, config.safe_rpm - rpm_current)

        return SchedulerMetrics(
            namespace=config.namespace,
            rpm=RpmMetrics(
                current=rpm_current,
                safe=config.safe_rpm,
                max=config.max_requests_per_minute,
                utilization_percent=rpm_util,
                actual_utilization_percent=_percent(
                    rpm_current, config.max_requests_per_minute
                ),
                available_capacity=available,
                safety_margin_percent=round((1 - config.headroom) * 100, 1),
                burst_capacity=config.safe_requests_per_second,
            ),
            tpm=TpmMetrics(
                current=tpm_current,
                used=snapshot.used_tokens,
                reserved=snapshot.reserved_tokens,
                window_tokens=tpm_current,
                safe=config.safe_tpm,
                max=config.max_tokens_per_minute,
                utilization_percent=tpm_util,
                avg_tokens_per_request=round(avg_tokens, 1),
                projected_tpm=round(avg_tokens * config.safe_rpm),
            ),
            active_requests=snapshot.active_requests,
            reservations=ReservationMetrics(
                total=counters.total_reservations,
                confirmed=counters.confirmed_requests,
                confirmation_rate_percent=_percent(
                    counters.confirmed_requests, counters.total_reservations
                ),
                avg_accuracy_ms=(
                    round(counters.total_accuracy_ms / counters.confirmed_requests, 1)
                    if counters.confirmed_requests
                    else 0.0
                ),
            ),
            bottleneck=classify_bottleneck(
                rpm_util, tpm_util, config.bottleneck_threshold_percent
            ),
            health=HealthStatus(
                status=(
                    "healthy"
                    if max(rpm_util, tpm_util) < BUSY_UTILIZATION_PERCENT
                    else "busy"
                ),
                can_accept_more=available > 0 and tpm_current < config.safe_tpm,
            ),
        )

    async def health_check(self) -> HealthCheckResult:
        return await self.store.health_check()

    # === Lifecycle ===

    async def reset(self) -> None:
        """Clear all scheduler state. Intended for tests and operations."""
        await self.store.clear()
        logger.info(f"Reservation scheduler state reset ({self.config.namespace})")

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> "ReservationScheduler":
        return self

    async def __aexit__(self, exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()


def _percent(value: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return round(value / total * 100, 1)


def create_scheduler(
    config: SchedulerConfig | None = None,
    redis_url: str | None = None,
    redis_client: Any | None = None,
) -> ReservationScheduler:
    """
    Build a scheduler with the appropriate store.

    A Redis store is used when ``redis_url`` or ``redis_client`` is given,
    otherwise an in-process memory store.
    """
    config = config or SchedulerConfig()
    store: BaseReservationStore
    if redis_url is not None or redis_client is not None:
        from ..backends.redis import RedisReservationStore

        store = RedisReservationStore(
            redis_url=redis_url,
            redis_client=redis_client,
            namespace=config.namespace,
            key_prefix=config.key_prefix,
        )
    else:
        from ..backends.memory import MemoryReservationStore

        store = MemoryReservationStore(namespace=config.namespace)
    return ReservationScheduler(store, config)
