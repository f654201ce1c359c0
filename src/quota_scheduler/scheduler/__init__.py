# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation scheduling for RPM/TPM-limited providers.

This module provides:
- SchedulerConfig, ProcessorConfig, RetryPolicy: Configuration
- plan_slot: Pure slot computation shared with the in-memory store
- ReservationScheduler, create_scheduler: The scheduler and its factory
- SchedulerMetrics, Bottleneck: Metrics snapshot models
"""

from .config import ProcessorConfig, RetryPolicy, SchedulerConfig
from .models import (
    Bottleneck,
    HealthStatus,
    ReservationMetrics,
    RpmMetrics,
    SchedulerMetrics,
    TpmMetrics,
    classify_bottleneck,
)
from .planner import SlotPlan, plan_slot
from .scheduler import ReservationScheduler, create_scheduler

__all__ = [
    "Bottleneck",
    "HealthStatus",
    # Config
    "ProcessorConfig",
    # Scheduler
    "ReservationMetrics",
    "ReservationScheduler",
    "RetryPolicy",
    "RpmMetrics",
    "SchedulerConfig",
    "SchedulerMetrics",
    "SlotPlan",
    "TpmMetrics",
    "classify_bottleneck",
    "create_scheduler",
    "plan_slot",
]
