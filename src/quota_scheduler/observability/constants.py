# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

All metric names use the `quota_scheduler_` prefix.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`
    - Gauges use present-tense descriptive names

Labels are limited to small enums (`outcome`, `guaranteed`, `type`). Never
label by worker id, request id or timestamp.
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "quota_scheduler"
"""Prefix for all Prometheus metrics in this library."""


# =============================================================================
# RPM Gauges
# =============================================================================

RPM_CURRENT = f"{METRIC_PREFIX}_rpm_current"
"""Reservations in the trailing RPM window."""

RPM_SAFE = f"{METRIC_PREFIX}_rpm_safe"
"""Safe requests-per-minute budget (hard cap times headroom)."""

RPM_MAX = f"{METRIC_PREFIX}_rpm_max"
"""Provider hard cap on requests per minute."""

RPM_UTILIZATION_PERCENT = f"{METRIC_PREFIX}_rpm_utilization_percent"
"""RPM utilization against the safe budget."""

RPM_AVAILABLE_CAPACITY = f"{METRIC_PREFIX}_rpm_available_capacity"
"""Reservations still available in the trailing window."""


# =============================================================================
# TPM Gauges
# =============================================================================

TPM_CURRENT = f"{METRIC_PREFIX}_tpm_current"
"""Used plus reserved tokens in the trailing window."""

TPM_RESERVED = f"{METRIC_PREFIX}_tpm_reserved"
"""Tokens held by open token reservations."""

TPM_WINDOW = f"{METRIC_PREFIX}_tpm_window_tokens"
"""Tokens counted against the TPM window."""

TPM_SAFE = f"{METRIC_PREFIX}_tpm_safe"
"""Safe tokens-per-minute budget."""

TPM_MAX = f"{METRIC_PREFIX}_tpm_max"
"""Provider hard cap on tokens per minute."""

TPM_UTILIZATION_PERCENT = f"{METRIC_PREFIX}_tpm_utilization_percent"
"""TPM utilization against the safe budget."""

AVG_TOKENS_PER_REQUEST = f"{METRIC_PREFIX}_avg_tokens_per_request"
"""Average recorded tokens per call in the window."""

PROJECTED_TPM = f"{METRIC_PREFIX}_projected_tpm"
"""Average tokens per request times the safe RPM."""


# =============================================================================
# Reservation Gauges
# =============================================================================

ACTIVE_REQUESTS = f"{METRIC_PREFIX}_active_requests"
"""Confirmed requests still within retention."""

RESERVATIONS_TOTAL = f"{METRIC_PREFIX}_reservations"
"""Reservations granted since the metrics hash was created."""

RESERVATIONS_CONFIRMED = f"{METRIC_PREFIX}_reservations_confirmed"
"""Reservations confirmed by their workers."""

CONFIRMATION_RATE_PERCENT = f"{METRIC_PREFIX}_confirmation_rate_percent"
"""Confirmed reservations as a percentage of granted ones."""

RESERVATION_ACCURACY_MS = f"{METRIC_PREFIX}_reservation_accuracy_ms"
"""Average |confirm time - scheduled time|."""

BOTTLENECK = f"{METRIC_PREFIX}_bottleneck"
"""One-hot gauge labelled by `type` (rpm, tpm, none)."""


# =============================================================================
# Request Path Metrics
# =============================================================================

REQUESTS_TOTAL = f"{METRIC_PREFIX}_requests_total"
"""External call outcomes labelled by `outcome`."""

REQUEST_DURATION_SECONDS = f"{METRIC_PREFIX}_request_duration_seconds"
"""Time from submission to outcome, labelled by `outcome`."""

RESERVATION_WAIT_SECONDS = f"{METRIC_PREFIX}_reservation_wait_seconds"
"""Wait handed out by reservations, labelled by `guaranteed`."""

RATE_LIMIT_ERRORS_TOTAL = f"{METRIC_PREFIX}_rate_limit_errors_total"
"""Provider rate-limit rejections despite a reservation."""

METRICS_SCRAPE_ERRORS_TOTAL = f"{METRIC_PREFIX}_metrics_scrape_errors_total"
"""Failed metrics refreshes."""


# =============================================================================
# Outcomes
# =============================================================================

OUTCOME_SUCCESS = "success"
OUTCOME_RATE_LIMIT_ERROR = "rate_limit_error"
OUTCOME_RATE_LIMIT_ABORT = "rate_limit_abort"
OUTCOME_ERROR = "error"

OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_RATE_LIMIT_ERROR, OUTCOME_RATE_LIMIT_ABORT, OUTCOME_ERROR)


# =============================================================================
# Histogram Buckets
# =============================================================================

REQUEST_DURATION_BUCKETS: list[float] = [
    0.1,
    0.25,
    0.5,
    1.0,
    2.0,
    5.0,
    10.0,
    20.0,
    30.0,
    60.0,
    120.0,
    300.0,
]
"""Request duration buckets (in seconds, up to 5 minutes)."""

WAIT_BUCKETS: list[float] = [
    0.0,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.0,
    5.0,
    10.0,
    20.0,
    30.0,
    60.0,
    120.0,
    300.0,
]
"""Reservation wait buckets (in seconds); 0 captures immediate grants."""


__all__ = [
    "ACTIVE_REQUESTS",
    "AVG_TOKENS_PER_REQUEST",
    "BOTTLENECK",
    "CONFIRMATION_RATE_PERCENT",
    "METRICS_SCRAPE_ERRORS_TOTAL",
    "METRIC_PREFIX",
    "OUTCOMES",
    "OUTCOME_ERROR",
    "OUTCOME_RATE_LIMIT_ABORT",
    "OUTCOME_RATE_LIMIT_ERROR",
    "OUTCOME_SUCCESS",
    "PROJECTED_TPM",
    "RATE_LIMIT_ERRORS_TOTAL",
    "REQUESTS_TOTAL",
    "REQUEST_DURATION_BUCKETS",
    "REQUEST_DURATION_SECONDS",
    "RESERVATIONS_CONFIRMED",
    "RESERVATIONS_TOTAL",
    "RESERVATION_ACCURACY_MS",
    "RESERVATION_WAIT_SECONDS",
    "RPM_AVAILABLE_CAPACITY",
    "RPM_CURRENT",
    "RPM_MAX",
    "RPM_SAFE",
    "RPM_UTILIZATION_PERCENT",
    "TPM_CURRENT",
    "TPM_MAX",
    "TPM_RESERVED",
    "TPM_SAFE",
    "TPM_UTILIZATION_PERCENT",
    "TPM_WINDOW",
    "WAIT_BUCKETS",
]
