# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
MemoryReservationStore for the Quota Scheduler

This module provides an in-process store that doesn't require Redis.
Suitable for tests, development, and deployments where every worker lives in
one event loop.
"""

import asyncio
import bisect
import logging
from dataclasses import replace

from ..scheduler.planner import plan_slot, second_bucket
from ..types.reservation import (
    ActiveRequest,
    MetricsCounters,
    Reservation,
    SlotGrant,
    SlotLimits,
    StoreSnapshot,
    TokenReservation,
    TokenUsageEntry,
    WorkerFairnessEntry,
    make_token_handle,
    parse_token_handle,
)
from .base import BaseReservationStore, HealthCheckResult

logger = logging.getLogger(__name__)


class MemoryReservationStore(BaseReservationStore):
    """
    An in-memory reservation store.

    Key Features:
    - Async-safe operations using a single asyncio.Lock
    - Inline pruning of every window on each mutation
    - Metrics counters that expire after ``metrics_ttl_seconds`` of inactivity

    Note:
        State is not shared across processes. Run one RedisReservationStore
        instead when workers span processes or hosts.
    """

    def __init__(self, namespace: str = "default") -> None:
        super().__init__(namespace)

        # Sorted by scheduled time
        self._reservations: list[Reservation] = []
        self._active: list[ActiveRequest] = []
        self._usage: list[TokenUsageEntry] = []
        self._token_reservations: dict[str, TokenReservation] = {}
        self._fairness: dict[tuple[str, int], WorkerFairnessEntry] = {}

        self._counters = MetricsCounters()
        self._counters_expire_at_ms: int | None = None

        self._lock = asyncio.Lock()

    # === Housekeeping ===

    def _prune(self, now_ms: int, limits: SlotLimits) -> None:
        retention_floor = now_ms - limits.reservation_retention_ms
        cut = bisect.bisect_left(
            self._reservations,
            retention_floor,
            key=lambda r: r.scheduled_time_ms,
        )
        if cut:
            del self._reservations[:cut]

        self._active = [a for a in self._active if a.started_at_ms >= retention_floor]

        token_floor = now_ms - limits.token_window_ms
        self._usage = [u for u in self._usage if u.timestamp_ms >= token_floor]
        expired = [
            handle
            for handle, hold in self._token_reservations.items()
            if hold.scheduled_time_ms < token_floor
        ]
        for handle in expired:
            del self._token_reservations[handle]

        fairness_floor = now_ms - limits.fairness_window_ms
        self._fairness = {
            key: entry
            for key, entry in self._fairness.items()
            if entry.timestamp_ms >= fairness_floor
        }

    def _live_counters(self, now_ms: int) -> MetricsCounters:
        if self._counters_expire_at_ms is not None and now_ms >= self._counters_expire_at_ms:
            self._counters = MetricsCounters()
            self._counters_expire_at_ms = None
        return self._counters

    def _touch_counters(self, now_ms: int, limits: SlotLimits) -> MetricsCounters:
        counters = self._live_counters(now_ms)
        self._counters_expire_at_ms = now_ms + limits.metrics_ttl_seconds * 1000
        return counters

    def _window_totals(self, now_ms: int, limits: SlotLimits) -> tuple[int, int, int, int]:
        rpm_floor = now_ms - limits.rpm_window_ms
        token_floor = now_ms - limits.token_window_ms
        requests = len(self._reservations) - bisect.bisect_right(
            self._reservations, rpm_floor, key=lambda r: r.scheduled_time_ms
        )
        active = sum(1 for a in self._active if a.started_at_ms > rpm_floor)
        used = sum(u.token_count for u in self._usage if u.timestamp_ms > token_floor)
        reserved = sum(
            hold.estimated_tokens
            for hold in self._token_reservations.values()
            if hold.scheduled_time_ms > token_floor
        )
        return requests, active, used, reserved

    # === Store Operations ===

    async def reserve(
        self,
        now_ms: int,
        worker_id: str,
        estimated_tokens: int,
        limits: SlotLimits,
        nonce: str,
    ) -> SlotGrant:
        async with self._lock:
            self._prune(now_ms, limits)

            bucket = second_bucket(now_ms)
            token_entries = [(u.timestamp_ms, u.token_count) for u in self._usage]
            token_entries.extend(
                (hold.scheduled_time_ms, hold.estimated_tokens)
                for hold in self._token_reservations.values()
            )
            plan = plan_slot(
                now_ms=now_ms,
                estimated_tokens=estimated_tokens,
                reservation_times=[r.scheduled_time_ms for r in self._reservations],
                token_entries=token_entries,
                worker_in_bucket=(worker_id, bucket) in self._fairness,
                limits=limits,
            )

            scheduled = plan.scheduled_time_ms
            handle = make_token_handle(scheduled, plan.held_tokens, nonce, worker_id)
            bisect.insort_right(
                self._reservations,
                Reservation(worker_id=worker_id, scheduled_time_ms=scheduled, nonce=nonce),
                key=lambda r: r.scheduled_time_ms,
            )
            self._token_reservations[handle] = parse_token_handle(handle)
            self._fairness[(worker_id, bucket)] = WorkerFairnessEntry(
                worker_id=worker_id, second_bucket=bucket, timestamp_ms=now_ms
            )

            counters = self._touch_counters(now_ms, limits)
            counters.total_reservations += 1

            requests, active, used, reserved = self._window_totals(now_ms, limits)
            return SlotGrant(
                scheduled_time_ms=scheduled,
                handle=handle,
                held_tokens=plan.held_tokens,
                requests_in_window=requests,
                active_requests=active,
                used_tokens=used,
                reserved_tokens=reserved,
                rpm_delayed=plan.rpm_delayed,
                tpm_delayed=plan.tpm_delayed,
                fairness_penalized=plan.fairness_penalized,
            )

    async def confirm(
        self,
        now_ms: int,
        worker_id: str,
        scheduled_time_ms: int,
        limits: SlotLimits,
    ) -> None:
        async with self._lock:
            self._prune(now_ms, limits)
            self._active.append(ActiveRequest(worker_id=worker_id, started_at_ms=now_ms))
            counters = self._touch_counters(now_ms, limits)
            counters.confirmed_requests += 1
            counters.total_accuracy_ms += abs(now_ms - scheduled_time_ms)

    async def record_usage(self, now_ms: int, tokens: int, limits: SlotLimits) -> None:
        async with self._lock:
            self._prune(now_ms, limits)
            self._usage.append(TokenUsageEntry(timestamp_ms=now_ms, token_count=tokens))
            counters = self._touch_counters(now_ms, limits)
            counters.total_usage_tokens += tokens

    async def remove_token_reservation(self, handle: str) -> bool:
        async with self._lock:
            return self._token_reservations.pop(handle, None) is not None

    async def snapshot(self, now_ms: int, limits: SlotLimits) -> StoreSnapshot:
        async with self._lock:
            requests, active, used, reserved = self._window_totals(now_ms, limits)
            token_floor = now_ms - limits.token_window_ms
            return StoreSnapshot(
                requests_in_window=requests,
                active_requests=active,
                used_tokens=used,
                reserved_tokens=reserved,
                usage_entries=sum(1 for u in self._usage if u.timestamp_ms > token_floor),
                counters=replace(self._live_counters(now_ms)),
            )

    async def clear(self) -> None:
        async with self._lock:
            self._reservations.clear()
            self._active.clear()
            self._usage.clear()
            self._token_reservations.clear()
            self._fairness.clear()
            self._counters = MetricsCounters()
            self._counters_expire_at_ms = None

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(
            healthy=True,
            backend_type="memory",
            namespace=self.namespace,
            metadata={
                "reservations": len(self._reservations),
                "open_token_reservations": len(self._token_reservations),
                "usage_entries": len(self._usage),
            },
        )
