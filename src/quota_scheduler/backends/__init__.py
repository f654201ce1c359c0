# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation store implementations.

Available stores:
- BaseReservationStore: Abstract base class defining the store interface
- MemoryReservationStore: In-process store for single-event-loop deployments
- RedisReservationStore: Redis store for schedulers spread across processes

Supporting types:
- HealthCheckResult: Structured result from store health checks
"""

from quota_scheduler.backends.base import BaseReservationStore, HealthCheckResult
from quota_scheduler.backends.memory import MemoryReservationStore
from quota_scheduler.backends.redis import RedisReservationStore

__all__ = [
    "BaseReservationStore",
    "HealthCheckResult",
    "MemoryReservationStore",
    "RedisReservationStore",
]
