# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Quota Scheduler - Distributed RPM/TPM admission control for API clients.

Many concurrent workers share one provider quota expressed both as requests
per minute and tokens per minute. Instead of reacting to rate-limit errors,
each worker reserves a future time slot that is guaranteed not to push
either budget past a safe fraction of the provider's cap.

Key Features:
    - Atomic slot reservation across processes (Redis + Lua) or in-process
    - Token holds that are finalized or released as calls complete
    - Adaptive token estimation from recent actual usage
    - Degraded fallback waits when the reservation store is unreachable
    - Prometheus metrics for utilization, bottlenecks and call outcomes

Quick Start:
    >>> from quota_scheduler import (
    ...     RequestProcessor, SchedulerConfig, create_scheduler, CallResult, TokenUsage
    ... )
    >>>
    >>> async def call_provider(payload):
    ...     response = await client.complete(payload)
    ...     return CallResult(response.text, TokenUsage(response.prompt, response.output))
    >>>
    >>> scheduler = create_scheduler(
    ...     SchedulerConfig(max_requests_per_minute=1000, max_tokens_per_minute=1_000_000),
    ...     redis_url="redis://localhost:6379",
    ... )
    >>> async with scheduler:
    ...     processor = RequestProcessor(scheduler, call_provider)
    ...     result = await processor.submit_unit({"text": "..."})

Main Exports:
    - ReservationScheduler, create_scheduler: Slot reservation
    - RequestProcessor, WorkerPool, TokenEstimator: Request execution
    - MemoryReservationStore, RedisReservationStore: Reservation stores
    - MetricsExporter: Prometheus exporter
    - SchedulerConfig, ProcessorConfig, RetryPolicy: Configuration

Version: 1.0.0
"""

__version__ = "1.0.0"

from .backends import (
    BaseReservationStore,
    HealthCheckResult,
    MemoryReservationStore,
    RedisReservationStore,
)
from .exceptions import (
    ConfigurationError,
    EstimationError,
    ProviderRateLimitError,
    QuotaSchedulerError,
    RateLimitRetriesExhaustedError,
    StoreError,
    StoreOperationError,
    StoreUnavailableError,
)
from .observability import MetricsExporter, OutcomeRecorderProtocol
from .processor import (
    RequestProcessor,
    TokenEstimator,
    UnitOutcome,
    WorkerPool,
    is_rate_limit_error,
)
from .protocols import ExternalCallProtocol, RateLimitClassifierProtocol
from .scheduler import (
    Bottleneck,
    ProcessorConfig,
    ReservationScheduler,
    RetryPolicy,
    SchedulerConfig,
    SchedulerMetrics,
    create_scheduler,
)
from .types import (
    CallResult,
    ProcessedResult,
    ReservationResult,
    TokenReservation,
    TokenUsage,
    UtilizationSnapshot,
)

__all__ = [
    # Stores
    "BaseReservationStore",
    "Bottleneck",
    # Types
    "CallResult",
    # Exceptions
    "ConfigurationError",
    "EstimationError",
    # Protocols
    "ExternalCallProtocol",
    "HealthCheckResult",
    "MemoryReservationStore",
    # Observability
    "MetricsExporter",
    "OutcomeRecorderProtocol",
    "ProcessedResult",
    # Config
    "ProcessorConfig",
    "ProviderRateLimitError",
    "QuotaSchedulerError",
    "RateLimitClassifierProtocol",
    "RateLimitRetriesExhaustedError",
    "RedisReservationStore",
    # Processing
    "RequestProcessor",
    "ReservationResult",
    # Scheduling
    "ReservationScheduler",
    "RetryPolicy",
    "SchedulerConfig",
    "SchedulerMetrics",
    "StoreError",
    "StoreOperationError",
    "StoreUnavailableError",
    "TokenEstimator",
    "TokenReservation",
    "TokenUsage",
    "UnitOutcome",
    "UtilizationSnapshot",
    "WorkerPool",
    "__version__",
    "create_scheduler",
    "is_rate_limit_error",
]
