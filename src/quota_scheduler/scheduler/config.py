# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Configuration for the Quota Scheduler

This module provides the configuration classes for the reservation scheduler,
the request processor and its retry policy. Provider hard caps are reduced by
a headroom ratio to produce the "safe" budgets that reservations enforce.
"""

import math
import os
from dataclasses import dataclass, field

from ..exceptions import ConfigurationError
from ..types.reservation import SlotLimits

ENV_PREFIX = "QUOTA_SCHEDULER_"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e


@dataclass
class SchedulerConfig:
    """
    Configuration for the reservation scheduler.

    The defaults for the fairness penalty and the proportional TPM backoff
    were tuned against a single provider; treat them as starting points.
    """

    # === Provider Quotas ===

    max_requests_per_minute: int = 1000
    """Provider hard cap on requests per minute."""

    max_tokens_per_minute: int = 1_000_000
    """Provider hard cap on tokens per minute."""

    headroom: float = 0.95
    """Fraction of each hard cap the scheduler may use, in (0, 1]."""

    # === Slot Computation ===

    worker_slot_penalty_ms: int = 30
    """Extra spacing added when a worker reserves twice in one second bucket."""

    tpm_backoff_scale_ms: int = 60_000
    """Scale of the proportional TPM delay (overshoot / safe_tpm * scale)."""

    # === Windows and Retention ===

    rpm_window_ms: int = 60_000
    """Trailing window for the RPM budget."""

    token_window_ms: int = 60_000
    """Trailing window for the TPM budget; usage and token holds are pruned after it."""

    reservation_retention_ms: int = 120_000
    """Retention for reservations and active requests."""

    fairness_window_ms: int = 10_000
    """Retention for worker fairness entries."""

    metrics_ttl_seconds: int = 300
    """TTL for the metrics counters, refreshed on every write."""

    # === Degraded Mode ===

    fallback_wait_min_ms: int = 1000
    """Lower bound of the randomized wait returned when the store is unreachable."""

    fallback_wait_max_ms: int = 2000
    """Exclusive upper bound of the randomized fallback wait."""

    # === Observability ===

    bottleneck_threshold_percent: float = 80.0
    """Utilization above which RPM or TPM is reported as the bottleneck."""

    # === Store Keys ===

    key_prefix: str = "qs"
    """Prefix for every store key."""

    namespace: str = "default"
    """Scheduler instance name; schedulers sharing a namespace share budgets."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.max_requests_per_minute < 1:
            raise ConfigurationError("max_requests_per_minute must be at least 1")
        if self.max_tokens_per_minute < 1:
            raise ConfigurationError("max_tokens_per_minute must be at least 1")
        if not 0 < self.headroom <= 1.0:
            raise ConfigurationError("headroom must be between 0 (exclusive) and 1.0")
        if self.safe_rpm < 1:
            raise ConfigurationError(
                "max_requests_per_minute * headroom must allow at least one request"
            )
        if self.safe_tpm < 1:
            raise ConfigurationError(
                "max_tokens_per_minute * headroom must allow at least one token"
            )
        if self.worker_slot_penalty_ms < 0:
            raise ConfigurationError("worker_slot_penalty_ms must be non-negative")
        if self.tpm_backoff_scale_ms < 0:
            raise ConfigurationError("tpm_backoff_scale_ms must be non-negative")
        for name in (
            "rpm_window_ms",
            "token_window_ms",
            "reservation_retention_ms",
            "fairness_window_ms",
            "metrics_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.reservation_retention_ms < self.rpm_window_ms:
            raise ConfigurationError(
                "reservation_retention_ms must cover at least one rpm_window_ms"
            )
        if self.fairness_window_ms < 1000:
            raise ConfigurationError("fairness_window_ms must cover a full second bucket")
        if not 0 <= self.fallback_wait_min_ms < self.fallback_wait_max_ms:
            raise ConfigurationError(
                "fallback wait range must satisfy 0 <= fallback_wait_min_ms < fallback_wait_max_ms"
            )
        if not 0 < self.bottleneck_threshold_percent <= 100:
            raise ConfigurationError("bottleneck_threshold_percent must be in (0, 100]")
        if not self.key_prefix or not self.namespace:
            raise ConfigurationError("key_prefix and namespace must be non-empty")

    @property
    def safe_rpm(self) -> int:
        """Requests per minute the scheduler will grant."""
        return math.floor(self.max_requests_per_minute * self.headroom)

    @property
    def safe_tpm(self) -> int:
        """Tokens per minute the scheduler will grant."""
        return math.floor(self.max_tokens_per_minute * self.headroom)

    @property
    def safe_requests_per_second(self) -> int:
        return max(1, self.safe_rpm // 60)

    @property
    def min_spacing_ms(self) -> int:
        """Minimum gap between consecutive reservations."""
        return math.ceil(1000 / self.safe_requests_per_second)

    def slot_limits(self) -> SlotLimits:
        """Numeric limits handed to the stores on every operation."""
        return SlotLimits(
            safe_rpm=self.safe_rpm,
            safe_tpm=self.safe_tpm,
            min_spacing_ms=self.min_spacing_ms,
            worker_slot_penalty_ms=self.worker_slot_penalty_ms,
            tpm_backoff_scale_ms=self.tpm_backoff_scale_ms,
            rpm_window_ms=self.rpm_window_ms,
            token_window_ms=self.token_window_ms,
            reservation_retention_ms=self.reservation_retention_ms,
            fairness_window_ms=self.fairness_window_ms,
            metrics_ttl_seconds=self.metrics_ttl_seconds,
        )

    @classmethod
    def from_env(cls, **overrides: object) -> "SchedulerConfig":
        """
        Build a configuration from ``QUOTA_SCHEDULER_*`` environment variables.

        Recognised variables: MAX_RPM, MAX_TPM, HEADROOM, WORKER_SLOT_PENALTY_MS,
        TPM_BACKOFF_SCALE_MS, KEY_PREFIX, NAMESPACE. Keyword overrides win over
        the environment.
        """
        values: dict[str, object] = {
            "max_requests_per_minute": _env_int("MAX_RPM", cls.max_requests_per_minute),
            "max_tokens_per_minute": _env_int("MAX_TPM", cls.max_tokens_per_minute),
            "headroom": _env_float("HEADROOM", cls.headroom),
            "worker_slot_penalty_ms": _env_int(
                "WORKER_SLOT_PENALTY_MS", cls.worker_slot_penalty_ms
            ),
            "tpm_backoff_scale_ms": _env_int(
                "TPM_BACKOFF_SCALE_MS", cls.tpm_backoff_scale_ms
            ),
            "key_prefix": os.environ.get(f"{ENV_PREFIX}KEY_PREFIX") or cls.key_prefix,
            "namespace": os.environ.get(f"{ENV_PREFIX}NAMESPACE") or cls.namespace,
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]


@dataclass
class RetryPolicy:
    """
    Retry policy for provider-side rate-limit rejections.

    A correct scheduler makes these rare, so the default keeps retrying
    indefinitely. Set ``max_rate_limit_retries`` to bound the loop.
    """

    max_rate_limit_retries: int | None = None
    """Maximum retries after a rate-limit rejection. None means unbounded."""

    backoff_ms: int = 0
    """Extra pause before re-estimating after a rejection."""

    def __post_init__(self) -> None:
        if self.max_rate_limit_retries is not None and self.max_rate_limit_retries < 0:
            raise ConfigurationError("max_rate_limit_retries must be non-negative or None")
        if self.backoff_ms < 0:
            raise ConfigurationError("backoff_ms must be non-negative")

    @property
    def unbounded(self) -> bool:
        return self.max_rate_limit_retries is None

    def should_retry(self, rate_limit_failures: int) -> bool:
        """Whether to try again after ``rate_limit_failures`` consecutive rejections."""
        if self.max_rate_limit_retries is None:
            return True
        return rate_limit_failures <= self.max_rate_limit_retries


@dataclass
class ProcessorConfig:
    """
    Configuration for the request processor and its token estimator.
    """

    # === Concurrency ===

    worker_pool_size: int = 16
    """Number of concurrent workers used by WorkerPool."""

    # === Token Estimation ===

    expected_output_tokens: int = 1000
    """Default expected completion size, part of the estimate floor."""

    overhead_tokens: int = 2600
    """Fixed per-call overhead (cached instructions, system prompt)."""

    chars_per_token: float = 4.0
    """Characters per token for the payload heuristic."""

    hard_token_ceiling: int = 15_000
    """Absolute upper bound for any estimate."""

    ceiling_buffer_tokens: int = 1500
    """Buffer added above the largest recently observed usage."""

    sample_window: int = 10
    """Number of recent calls kept in each rolling window."""

    include_cached_tokens: bool = False
    """Count cached prompt tokens as input when recording usage."""

    # === Waiting ===

    jitter_max_ms: int = 500
    """Upper bound of the random jitter added to every wait."""

    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    """Policy for provider rate-limit rejections."""

    # === Backpressure ===

    min_throttle_samples: int = 3
    """TPM utilization samples required before throttling is suggested."""

    throttle_avg_threshold_percent: float = 85.0
    """Average TPM utilization above which throttling starts."""

    throttle_peak_threshold_percent: float = 95.0
    """Latest TPM utilization above which throttling starts."""

    throttle_ms_per_percent: int = 1000
    """Suggested delay per percentage point of excess utilization."""

    min_throttle_delay_ms: int = 1000
    """Lower clamp for a non-zero throttle delay."""

    max_throttle_delay_ms: int = 20_000
    """Upper clamp for the throttle delay."""

    # === Diagnostics ===

    log_every_n_requests: int = 50
    """Emit a performance log line every N processed requests (0 disables)."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.worker_pool_size < 1:
            raise ConfigurationError("worker_pool_size must be at least 1")
        if self.expected_output_tokens < 0:
            raise ConfigurationError("expected_output_tokens must be non-negative")
        if self.overhead_tokens < 0:
            raise ConfigurationError("overhead_tokens must be non-negative")
        if self.chars_per_token <= 0:
            raise ConfigurationError("chars_per_token must be positive")
        if self.hard_token_ceiling < 1:
            raise ConfigurationError("hard_token_ceiling must be at least 1")
        if self.token_floor > self.hard_token_ceiling:
            raise ConfigurationError(
                "overhead_tokens + expected_output_tokens must not exceed hard_token_ceiling"
            )
        if self.ceiling_buffer_tokens < 0:
            raise ConfigurationError("ceiling_buffer_tokens must be non-negative")
        if self.sample_window < 1:
            raise ConfigurationError("sample_window must be at least 1")
        if self.jitter_max_ms < 0:
            raise ConfigurationError("jitter_max_ms must be non-negative")
        if self.min_throttle_samples < 1:
            raise ConfigurationError("min_throttle_samples must be at least 1")
        if not 0 <= self.min_throttle_delay_ms <= self.max_throttle_delay_ms:
            raise ConfigurationError(
                "throttle clamp must satisfy 0 <= min_throttle_delay_ms <= max_throttle_delay_ms"
            )
        if self.log_every_n_requests < 0:
            raise ConfigurationError("log_every_n_requests must be non-negative")

    @property
    def token_floor(self) -> int:
        """Smallest estimate ever produced."""
        return self.overhead_tokens + self.expected_output_tokens

    @classmethod
    def from_env(cls, **overrides: object) -> "ProcessorConfig":
        """
        Build a configuration from ``QUOTA_SCHEDULER_*`` environment variables.

        Recognised variables: WORKER_POOL_SIZE, EXPECTED_OUTPUT_TOKENS,
        HARD_TOKEN_CEILING, MAX_RATE_LIMIT_RETRIES, INCLUDE_CACHED_TOKENS.
        """
        retries_raw = os.environ.get(f"{ENV_PREFIX}MAX_RATE_LIMIT_RETRIES")
        cached_raw = os.environ.get(f"{ENV_PREFIX}INCLUDE_CACHED_TOKENS", "")
        values: dict[str, object] = {
            "worker_pool_size": _env_int("WORKER_POOL_SIZE", cls.worker_pool_size),
            "expected_output_tokens": _env_int(
                "EXPECTED_OUTPUT_TOKENS", cls.expected_output_tokens
            ),
            "hard_token_ceiling": _env_int("HARD_TOKEN_CEILING", cls.hard_token_ceiling),
            "include_cached_tokens": cached_raw.lower() in ("1", "true", "yes"),
            "retry_policy": RetryPolicy(
                max_rate_limit_retries=(
                    _env_int("MAX_RATE_LIMIT_RETRIES", 0) if retries_raw else None
                )
            ),
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]
