# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base Reservation Store for the Quota Scheduler

This module provides the BaseReservationStore abstract class that defines the
interface every store implementation must satisfy.

A store holds five time-indexed collections (reservations, active requests,
token usage, token reservations, worker fairness) and one set of metrics
counters. Every operation is atomic on its own; ``reserve`` is the only one
whose read-compute-write cycle carries the budget guarantees.
"""

import abc
import logging
from dataclasses import dataclass
from typing import Any

from ..types.reservation import SlotGrant, SlotLimits, StoreSnapshot

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """
    Structured health check result for store monitoring.

    Attributes:
        healthy: Whether the store is operational
        backend_type: Type of store (e.g., 'redis', 'memory')
        namespace: Store namespace
        error: Error message if unhealthy
        metadata: Additional store-specific information
    """

    healthy: bool
    backend_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


class BaseReservationStore(abc.ABC):
    """
    Abstract interface for reservation stores.

    Implementations must make ``reserve`` a single atomic transaction:
    concurrent callers must never observe the same state and both commit
    a slot computed from it.
    """

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace

    @abc.abstractmethod
    async def reserve(
        self,
        now_ms: int,
        worker_id: str,
        estimated_tokens: int,
        limits: SlotLimits,
        nonce: str,
    ) -> SlotGrant:
        """
        Prune, plan and commit a reservation plus its token hold.

        Raises:
            StoreUnavailableError: If the store cannot be reached
            StoreOperationError: If the store rejects the operation
        """
        pass

    @abc.abstractmethod
    async def confirm(
        self,
        now_ms: int,
        worker_id: str,
        scheduled_time_ms: int,
        limits: SlotLimits,
    ) -> None:
        """Record an in-flight request and its scheduling accuracy."""
        pass

    @abc.abstractmethod
    async def record_usage(self, now_ms: int, tokens: int, limits: SlotLimits) -> None:
        """Append an actual-usage entry at ``now_ms``."""
        pass

    @abc.abstractmethod
    async def remove_token_reservation(self, handle: str) -> bool:
        """
        Remove a token hold.

        Returns:
            True if the hold existed, False if it was already removed
        """
        pass

    @abc.abstractmethod
    async def snapshot(self, now_ms: int, limits: SlotLimits) -> StoreSnapshot:
        """Read window totals and counters without mutating anything."""
        pass

    @abc.abstractmethod
    async def clear(self) -> None:
        """Delete all state for this namespace."""
        pass

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        return None

    async def __aenter__(self) -> "BaseReservationStore":
        return self

    async def __aexit__(self, exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()
