# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for per-call outcome recording.

The request processor reports every reservation and call outcome through
this protocol, so any backend (Prometheus, StatsD, an in-memory test double)
can receive them. MetricsExporter is the bundled implementation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..types.reservation import ReservationResult


@runtime_checkable
class OutcomeRecorderProtocol(Protocol):
    """
    Protocol for receiving reservation and request outcomes.

    Implementations must be cheap and must not raise; they run on the
    request path.

    Example:
        >>> class PrintRecorder:
        ...     def record_reservation(self, result): print(result.wait_ms)
        ...     def record_request_outcome(self, outcome, duration_ms): pass
        ...     def record_rate_limit_error(self): pass
        >>>
        >>> isinstance(PrintRecorder(), OutcomeRecorderProtocol)
        True
    """

    def record_reservation(self, result: ReservationResult) -> None:
        """
        Record the wait handed out by a reservation.

        Args:
            result: The reservation returned by the scheduler
        """
        ...

    def record_request_outcome(self, outcome: str, duration_ms: float) -> None:
        """
        Record the outcome of one external call attempt.

        Args:
            outcome: One of ``success``, ``rate_limit_error``,
                ``rate_limit_abort`` or ``error``
            duration_ms: Time since the unit of work was submitted
        """
        ...

    def record_rate_limit_error(self) -> None:
        """Record a provider rate-limit rejection."""
        ...


__all__ = ["OutcomeRecorderProtocol"]
