# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Slot planning for the reservation scheduler.

``plan_slot`` computes the earliest time a new call may be issued without
breaking the RPM or TPM budgets. It is a pure function over a view of the
store; callers are responsible for running it inside the store's critical
section and committing the result. ``backends/lua/reserve_slot.lua`` carries
the same algorithm for Redis and must be kept in step with this module.
"""

from bisect import bisect_right
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ..types.reservation import SlotLimits


@dataclass(frozen=True)
class SlotPlan:
    scheduled_time_ms: int
    held_tokens: int
    window_tokens: int
    rpm_delayed: bool
    tpm_delayed: bool
    fairness_penalized: bool


def second_bucket(now_ms: int) -> int:
    """The 1-second fairness bucket containing ``now_ms``."""
    return now_ms // 1000


def held_tokens(estimated_tokens: int, safe_tpm: int) -> int:
    """
    Tokens actually held for a reservation.

    An estimate larger than the whole safe budget could never fit, so it is
    capped at ``safe_tpm``.
    """
    return max(1, min(estimated_tokens, safe_tpm))


def plan_slot(
    now_ms: int,
    estimated_tokens: int,
    reservation_times: Sequence[int],
    token_entries: Iterable[tuple[int, int]],
    worker_in_bucket: bool,
    limits: SlotLimits,
) -> SlotPlan:
    """
    Compute the slot for a new reservation.

    Args:
        now_ms: Current time
        estimated_tokens: Token estimate for the call (already coerced to >= 1)
        reservation_times: Scheduled times of live reservations, ascending
        token_entries: ``(timestamp_ms, tokens)`` for usage entries and open
            token reservations
        worker_in_bucket: Whether the worker already reserved in the current
            second bucket
        limits: Budgets and tunables

    Returns:
        The planned slot. Every guard only moves the candidate forward, and
        the candidate always lies after every existing reservation, so the
        trailing window ending at the candidate is the only one that matters.
    """
    spacing = limits.min_spacing_ms
    held = held_tokens(estimated_tokens, limits.safe_tpm)

    if reservation_times:
        candidate = max(now_ms, reservation_times[-1] + spacing)
    else:
        candidate = now_ms

    # RPM: the oldest reservation that keeps the window full must age out.
    rpm_delayed = False
    first_live = bisect_right(reservation_times, candidate - limits.rpm_window_ms)
    in_window = len(reservation_times) - first_live
    if in_window >= limits.safe_rpm:
        pivot = reservation_times[first_live + in_window - limits.safe_rpm]
        candidate = max(candidate, pivot + limits.rpm_window_ms + spacing)
        rpm_delayed = True

    # TPM: keep pushing until the hold fits.
    tpm_delayed = False
    entries = sorted(token_entries)
    window_tokens = 0
    while True:
        floor = candidate - limits.token_window_ms
        start = bisect_right(entries, floor, key=lambda entry: entry[0])
        live = entries[start:]
        window_tokens = sum(tokens for _, tokens in live)
        overshoot = window_tokens + held - limits.safe_tpm
        if overshoot <= 0 or not live:
            break
        window_delay = live[0][0] + limits.token_window_ms - candidate
        proportional_delay = max(
            spacing, (overshoot * limits.tpm_backoff_scale_ms) // limits.safe_tpm
        )
        candidate += max(window_delay, proportional_delay)
        tpm_delayed = True

    if worker_in_bucket:
        candidate += limits.worker_slot_penalty_ms

    return SlotPlan(
        scheduled_time_ms=candidate,
        held_tokens=held,
        window_tokens=window_tokens,
        rpm_delayed=rpm_delayed,
        tpm_delayed=tpm_delayed,
        fairness_penalized=worker_in_bucket,
    )
