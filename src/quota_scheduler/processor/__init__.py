# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Request processing on top of the reservation scheduler.

Available components:
- RequestProcessor: Per-unit reservation state machine
- TokenEstimator: Heuristic plus moving-average token estimation
- WorkerPool: Bounded concurrent dispatch with shared backpressure
"""

from .diagnostics import ProcessorDiagnostics, ProcessorStats, RunningStat
from .estimator import TokenEstimator, count_payload_chars
from .pool import UnitOutcome, WorkerPool
from .processor import RequestProcessor, is_rate_limit_error

__all__ = [
    "ProcessorDiagnostics",
    "ProcessorStats",
    "RequestProcessor",
    "RunningStat",
    "TokenEstimator",
    "UnitOutcome",
    "WorkerPool",
    "count_payload_chars",
    "is_rate_limit_error",
]
