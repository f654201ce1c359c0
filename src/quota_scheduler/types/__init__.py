# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Data types for reservations and processed results."""

from .reservation import (
    ActiveRequest,
    MetricsCounters,
    Reservation,
    ReservationResult,
    SlotGrant,
    SlotLimits,
    StoreSnapshot,
    TokenReservation,
    TokenUsageEntry,
    UtilizationSnapshot,
    WorkerFairnessEntry,
    make_token_handle,
    parse_token_handle,
)
from .result import CallResult, ProcessedResult, TokenUsage

__all__ = [
    "ActiveRequest",
    "CallResult",
    "MetricsCounters",
    "ProcessedResult",
    "Reservation",
    "ReservationResult",
    "SlotGrant",
    "SlotLimits",
    "StoreSnapshot",
    "TokenReservation",
    "TokenUsage",
    "TokenUsageEntry",
    "UtilizationSnapshot",
    "WorkerFairnessEntry",
    "make_token_handle",
    "parse_token_handle",
]
