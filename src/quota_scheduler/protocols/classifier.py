# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for recognising provider rate-limit errors."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class RateLimitClassifierProtocol(Protocol):
    """
    Decides whether an exception raised by the external call is a
    provider-side rate-limit rejection.

    Providers with unusual error shapes can supply their own implementation
    to RequestProcessor.
    """

    def __call__(self, error: BaseException) -> bool: ...
