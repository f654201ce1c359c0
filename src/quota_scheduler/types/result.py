# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Result contracts for external calls and processed units of work.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    """
    Token usage reported by the provider for a single call.

    ``total_tokens`` falls back to prompt + output when the provider omits it.
    """

    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int | None = None
    cached_tokens: int = 0

    @property
    def total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return self.prompt_tokens + self.output_tokens

    def input_tokens(self, include_cached: bool = False) -> int:
        """Input tokens to charge against the TPM budget."""
        if include_cached:
            return self.prompt_tokens + self.cached_tokens
        return self.prompt_tokens


@dataclass(frozen=True)
class CallResult:
    """
    What an external call returns to the processor.

    A missing ``usage`` is a normal outcome: the processor then records its
    own estimate so the token hold is never left open.
    """

    output: Any
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class ProcessedResult:
    """
    The external call's output plus rate-limit bookkeeping.

    Attributes:
        output: Whatever the external call produced
        usage: Provider-reported usage, if any
        wait_time_ms: Time spent waiting for reservations, jitter included
        total_duration_ms: Wall time from submission to completion
        processing_time_ms: Wall time of the successful external call
        guaranteed: Whether the final reservation was store-backed
        worker_id: Worker that ran the unit
        rpm_utilization_percent: RPM utilization at the final grant
        tpm_utilization_percent: TPM utilization at the final grant
        estimated_tokens: Estimate used for the final reservation
        attempts: External call attempts, rate-limited ones included
    """

    output: Any
    usage: TokenUsage | None
    wait_time_ms: int
    total_duration_ms: int
    processing_time_ms: int
    guaranteed: bool
    worker_id: str
    rpm_utilization_percent: float
    tpm_utilization_percent: float
    estimated_tokens: int
    attempts: int = 1
