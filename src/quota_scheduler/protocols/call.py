# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the external call guarded by the scheduler."""

from typing import Any, Protocol, runtime_checkable

from ..types.result import CallResult


@runtime_checkable
class ExternalCallProtocol(Protocol):
    """
    Protocol for the quota-limited external call.

    Any async callable taking the payload and returning a CallResult
    satisfies it. Raise ProviderRateLimitError (or any exception carrying
    ``status_code == 429``) when the provider rejects the call for rate
    limiting; every other exception is treated as fatal for the unit of work.
    """

    async def __call__(self, payload: Any) -> CallResult:
        """
        Perform the call.

        Args:
            payload: Opaque unit of work submitted to the processor

        Returns:
            CallResult with the provider output and, if reported, token usage
        """
        ...
