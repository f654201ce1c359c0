# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation data types shared by the scheduler and its stores.

All timestamps are integer milliseconds since the epoch.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Reservation:
    """A commitment that ``worker_id`` may call the provider at ``scheduled_time_ms``."""

    worker_id: str
    scheduled_time_ms: int
    nonce: str


@dataclass(frozen=True)
class ActiveRequest:
    """A confirmed, in-flight call. Observability only."""

    worker_id: str
    started_at_ms: int


@dataclass(frozen=True)
class TokenUsageEntry:
    """Actual tokens consumed by a completed call."""

    timestamp_ms: int
    token_count: int


@dataclass(frozen=True)
class TokenReservation:
    """
    Provisional hold on TPM budget accompanying a Reservation.

    Removed once real usage is recorded or the call is abandoned.
    """

    handle: str
    scheduled_time_ms: int
    estimated_tokens: int
    worker_id: str


@dataclass(frozen=True)
class WorkerFairnessEntry:
    worker_id: str
    second_bucket: int
    timestamp_ms: int


@dataclass
class MetricsCounters:
    """Monotonic counters used for confirmation rate and accuracy."""

    total_reservations: int = 0
    confirmed_requests: int = 0
    total_accuracy_ms: int = 0
    total_usage_tokens: int = 0


def make_token_handle(
    scheduled_time_ms: int, tokens: int, nonce: str, worker_id: str
) -> str:
    """
    Build the opaque handle identifying a token reservation.

    The scheduled time and token count lead the handle so stores can sum a
    window without a second lookup. Worker ids may contain ':' so they go last.
    """
    return f"{scheduled_time_ms}:{tokens}:{nonce}:{worker_id}"


def parse_token_handle(handle: str) -> TokenReservation:
    """Inverse of :func:`make_token_handle`."""
    scheduled, tokens, _nonce, worker_id = handle.split(":", 3)
    return TokenReservation(
        handle=handle,
        scheduled_time_ms=int(scheduled),
        estimated_tokens=int(tokens),
        worker_id=worker_id,
    )


@dataclass(frozen=True)
class SlotGrant:
    """
    Result of an atomic ``reserve`` against a store.

    The counts describe the trailing windows ending at the request time,
    including the reservation just committed.
    """

    scheduled_time_ms: int
    handle: str
    held_tokens: int
    requests_in_window: int
    active_requests: int
    used_tokens: int
    reserved_tokens: int
    rpm_delayed: bool = False
    tpm_delayed: bool = False
    fairness_penalized: bool = False


@dataclass(frozen=True)
class StoreSnapshot:
    """Point-in-time read of store state, used for metrics."""

    requests_in_window: int
    active_requests: int
    used_tokens: int
    reserved_tokens: int
    usage_entries: int
    counters: MetricsCounters


@dataclass(frozen=True)
class UtilizationSnapshot:
    """Utilization returned alongside every reservation."""

    requests_in_window: int
    active_requests: int
    window_tokens: int
    rpm_utilization_percent: float
    tpm_utilization_percent: float


@dataclass(frozen=True)
class ReservationResult:
    """
    Outcome of ``ReservationScheduler.reserve_slot``.

    Attributes:
        scheduled_time_ms: When the caller may issue its call
        wait_ms: How long to sleep before calling
        guaranteed: False when the store was unreachable and the wait is a
            randomized fallback with no budget enforcement
        metrics: Utilization at grant time
        handle: Token reservation handle, or None in fallback mode
    """

    scheduled_time_ms: int
    wait_ms: int
    guaranteed: bool
    metrics: UtilizationSnapshot
    handle: str | None = None


@dataclass(frozen=True)
class SlotLimits:
    """Numeric budgets and tunables consumed by the planner and the stores."""

    safe_rpm: int
    safe_tpm: int
    min_spacing_ms: int
    worker_slot_penalty_ms: int
    tpm_backoff_scale_ms: int
    rpm_window_ms: int
    token_window_ms: int
    reservation_retention_ms: int
    fairness_window_ms: int
    metrics_ttl_seconds: int
