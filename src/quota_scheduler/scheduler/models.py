# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metrics snapshot models for the reservation scheduler.

These are pydantic models so operators can serialize a snapshot with
``model_dump()`` / ``model_dump_json()`` for dashboards and health endpoints.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class Bottleneck(str, Enum):
    """Which budget currently limits throughput."""

    RPM = "rpm"
    TPM = "tpm"
    NONE = "none"


class RpmMetrics(BaseModel):
    current: int = Field(ge=0)
    safe: int = Field(ge=1)
    max: int = Field(ge=1)
    utilization_percent: float = Field(ge=0)
    """Utilization against the safe budget."""
    actual_utilization_percent: float = Field(ge=0)
    """Utilization against the provider hard cap."""
    available_capacity: int = Field(ge=0)
    safety_margin_percent: float
    burst_capacity: int = Field(ge=0)
    """Requests per second the spacing permits."""


class TpmMetrics(BaseModel):
    current: int = Field(ge=0)
    """Used plus reserved tokens in the trailing window."""
    used: int = Field(ge=0)
    reserved: int = Field(ge=0)
    window_tokens: int = Field(ge=0)
    safe: int = Field(ge=1)
    max: int = Field(ge=1)
    utilization_percent: float = Field(ge=0)
    avg_tokens_per_request: float = Field(ge=0)
    projected_tpm: int = Field(ge=0)
    """Average tokens per request times safe RPM."""


class ReservationMetrics(BaseModel):
    total: int = Field(ge=0)
    confirmed: int = Field(ge=0)
    confirmation_rate_percent: float = Field(ge=0)
    avg_accuracy_ms: float = Field(ge=0)


class HealthStatus(BaseModel):
    status: str
    can_accept_more: bool


class SchedulerMetrics(BaseModel):
    """
    Point-in-time view of scheduler state.

    ``bottleneck`` is derived from the two utilization figures: RPM wins when
    both exceed the threshold.
    """

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    namespace: str = "default"
    rpm: RpmMetrics
    tpm: TpmMetrics
    active_requests: int = Field(ge=0)
    reservations: ReservationMetrics
    bottleneck: Bottleneck = Bottleneck.NONE
    health: HealthStatus

    @model_validator(mode="after")
    def _validate_consistency(self) -> "SchedulerMetrics":
        """Reject snapshots whose TPM breakdown doesn't add up."""
        if self.tpm.current != self.tpm.used + self.tpm.reserved:
            raise ValueError("tpm.current must equal tpm.used + tpm.reserved")
        return self


def classify_bottleneck(
    rpm_utilization_percent: float,
    tpm_utilization_percent: float,
    threshold_percent: float = 80.0,
) -> Bottleneck:
    if rpm_utilization_percent > threshold_percent:
        return Bottleneck.RPM
    if tpm_utilization_percent > threshold_percent:
        return Bottleneck.TPM
    return Bottleneck.NONE
