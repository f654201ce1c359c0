# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the quota scheduler.

All exceptions inherit from QuotaSchedulerError, making it easy to catch
every scheduler-originated error with a single except clause. Errors raised
by the external call itself are never wrapped; they reach the caller as-is.
"""


class QuotaSchedulerError(Exception):
    """Base exception for all quota scheduler errors.

    Example:
        try:
            result = await processor.submit_unit(payload)
        except QuotaSchedulerError as e:
            logger.error(f"Quota scheduler error: {e}")
    """

    pass


class ConfigurationError(QuotaSchedulerError, ValueError):
    """Raised when configuration is invalid.

    Subclasses ValueError, matching dataclass validation conventions.
    Common causes include non-positive quotas, a headroom outside (0, 1],
    or a token floor that exceeds the hard token ceiling.
    """

    pass


class StoreError(QuotaSchedulerError):
    """Base class for reservation store failures."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the reservation store cannot be reached.

    The scheduler never lets this escape ``reserve_slot``: it degrades to
    an unguaranteed fallback wait instead.

    Example:
        try:
            snapshot = await store.snapshot(now_ms)
        except StoreUnavailableError:
            logger.warning("Reservation store unreachable")
    """

    pass


class StoreOperationError(StoreError):
    """Raised when a store operation fails after the connection is established.

    Typically an unexpected script response or a server-side error.
    """

    pass


class ProviderRateLimitError(QuotaSchedulerError):
    """Raised by an external call that the provider rejected for rate limiting.

    The request processor absorbs this error in its retry loop. A non-zero
    steady-state count points to insufficient headroom or estimation drift.

    Attributes:
        retry_after: Provider-suggested wait in seconds, if known.
        status_code: Always 429 so generic classifiers recognise it.

    Example:
        async def call(payload):
            response = await client.post(url, json=payload)
            if response.status_code == 429:
                raise ProviderRateLimitError("quota exhausted")
            ...
    """

    status_code = 429

    def __init__(self, message: str = "Provider rate limit", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitRetriesExhaustedError(QuotaSchedulerError):
    """Raised when a bounded retry policy gives up on provider rate limits.

    Only possible when ``RetryPolicy.max_rate_limit_retries`` is set.

    Attributes:
        attempts: Number of external call attempts made.
        last_error: The final rate-limit error returned by the provider.
    """

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        super().__init__(
            f"Provider rate limit persisted after {attempts} attempts"
        )
        self.attempts = attempts
        self.last_error = last_error


class EstimationError(QuotaSchedulerError):
    """Raised when the token heuristic cannot process a payload.

    The estimator recovers from this locally by falling back to the
    configured overhead constant.
    """

    pass
