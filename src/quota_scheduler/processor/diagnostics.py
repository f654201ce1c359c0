# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Per-processor performance counters and aggregated diagnostics.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class RunningStat:
    """Count, min, max and mean of a stream of values."""

    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def record(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "min": round(self.minimum or 0.0, 1),
            "avg": round(self.mean, 1),
            "max": round(self.maximum or 0.0, 1),
        }


@dataclass
class ProcessorStats:
    """Running counters for one processor."""

    processed_requests: int = 0
    total_wait_ms: int = 0
    zero_wait_requests: int = 0
    failed_requests: int = 0
    rate_limit_retries: int = 0
    fallback_reservations: int = 0

    def as_dict(self) -> dict[str, Any]:
        processed = self.processed_requests
        return {
            "processed_requests": processed,
            "failed_requests": self.failed_requests,
            "rate_limit_retries": self.rate_limit_retries,
            "fallback_reservations": self.fallback_reservations,
            "total_wait_ms": self.total_wait_ms,
            "avg_wait_ms": round(self.total_wait_ms / processed) if processed else 0,
            "zero_wait_requests": self.zero_wait_requests,
            "zero_wait_rate_percent": (
                round(self.zero_wait_requests / processed * 100, 1) if processed else 0.0
            ),
        }


@dataclass
class ProcessorDiagnostics:
    """
    Aggregated view of how well reservations and estimates matched reality.

    ``estimation_error_percent`` is |actual - estimate| / actual for calls
    that reported usage.
    """

    wait_ms: RunningStat = field(default_factory=RunningStat)
    rpm_utilization_percent: RunningStat = field(default_factory=RunningStat)
    tpm_utilization_percent: RunningStat = field(default_factory=RunningStat)
    estimation_error_percent: RunningStat = field(default_factory=RunningStat)
    no_usage_count: int = 0
    rate_limit_retries: int = 0

    def record_estimate(self, estimated: int, actual: int) -> None:
        if actual > 0:
            self.estimation_error_percent.record(abs(actual - estimated) / actual * 100)

    def as_dict(self) -> dict[str, Any]:
        return {
            "count": self.wait_ms.count,
            "wait_ms": self.wait_ms.as_dict(),
            "rpm_utilization_percent": self.rpm_utilization_percent.as_dict(),
            "tpm_utilization_percent": self.tpm_utilization_percent.as_dict(),
            "estimation_error_percent": self.estimation_error_percent.as_dict(),
            "no_usage_count": self.no_usage_count,
            "rate_limit_retries": self.rate_limit_retries,
        }
