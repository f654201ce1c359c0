# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Token estimation for the request processor.

The estimate is the larger of a character-count heuristic over the payload
and the moving average of recent actual usage, clamped between a floor
(overhead + expected output) and a ceiling that tracks the largest recent
call plus a buffer, never above the hard ceiling.
"""

import logging
import math
from collections import deque
from collections.abc import Mapping
from typing import Any

from ..exceptions import EstimationError
from ..scheduler.config import ProcessorConfig
from ..types.result import TokenUsage

logger = logging.getLogger(__name__)

# Nesting beyond this is treated as malformed (usually a reference cycle).
MAX_PAYLOAD_DEPTH = 64


def count_payload_chars(payload: Any, _depth: int = 0) -> int:
    """
    Count the characters a payload would contribute to a prompt.

    Strings and bytes count by length, mappings by keys and values, other
    iterables by their items, and scalars by their string form.

    Raises:
        EstimationError: If the payload is too deeply nested or cannot be
            rendered as text
    """
    if _depth > MAX_PAYLOAD_DEPTH:
        raise EstimationError(f"Payload nesting exceeds {MAX_PAYLOAD_DEPTH} levels")
    if payload is None:
        return 0
    if isinstance(payload, (str, bytes, bytearray)):
        return len(payload)
    if isinstance(payload, Mapping):
        return sum(
            count_payload_chars(key, _depth + 1) + count_payload_chars(value, _depth + 1)
            for key, value in payload.items()
        )
    if isinstance(payload, (list, tuple, set, frozenset)):
        return sum(count_payload_chars(item, _depth + 1) for item in payload)
    try:
        return len(str(payload))
    except Exception as e:
        raise EstimationError(f"Cannot render {type(payload).__name__} as text: {e}") from e


class TokenEstimator:
    """
    Adaptive token estimator with rolling windows of recent usage.

    One estimator belongs to one RequestProcessor; ``reset()`` returns it to
    its initial state.
    """

    def __init__(self, config: ProcessorConfig | None = None) -> None:
        self.config = config or ProcessorConfig()
        window = self.config.sample_window
        self._prompt_tokens: deque[int] = deque(maxlen=window)
        self._output_tokens: deque[int] = deque(maxlen=window)
        self._total_tokens: deque[int] = deque(maxlen=window)
        self.estimation_failures = 0

    @property
    def floor(self) -> int:
        return self.config.token_floor

    @property
    def ceiling(self) -> int:
        """Adaptive upper bound, never above the hard ceiling."""
        hard = self.config.hard_token_ceiling
        if not self._total_tokens:
            return hard
        adaptive = max(self._total_tokens) + self.config.ceiling_buffer_tokens
        return min(hard, max(self.floor, adaptive))

    @property
    def moving_average(self) -> float | None:
        if not self._total_tokens:
            return None
        return sum(self._total_tokens) / len(self._total_tokens)

    @property
    def sample_count(self) -> int:
        return len(self._total_tokens)

    def heuristic(self, payload: Any) -> int:
        """Character-count estimate plus the fixed overhead."""
        try:
            chars = count_payload_chars(payload)
        except (EstimationError, RecursionError) as e:
            self.estimation_failures += 1
            logger.warning(f"Token heuristic failed, using overhead only: {e}")
            return self.config.overhead_tokens
        return math.ceil(chars / self.config.chars_per_token) + self.config.overhead_tokens

    def estimate(self, payload: Any) -> int:
        """Token estimate for ``payload``, always within [floor, hard ceiling]."""
        estimate = self.heuristic(payload)
        average = self.moving_average
        if average is not None:
            estimate = max(estimate, math.ceil(average))
        return min(self.ceiling, max(self.floor, estimate))

    def observe(self, usage: TokenUsage) -> None:
        """Feed the actual usage of a completed call into the rolling windows."""
        self._prompt_tokens.append(usage.prompt_tokens)
        self._output_tokens.append(usage.output_tokens)
        self._total_tokens.append(usage.total)

    def averages(self) -> dict[str, float]:
        def _mean(values: deque[int]) -> float:
            return round(sum(values) / len(values), 1) if values else 0.0

        return {
            "prompt_tokens": _mean(self._prompt_tokens),
            "output_tokens": _mean(self._output_tokens),
            "total_tokens": _mean(self._total_tokens),
        }

    def reset(self) -> None:
        self._prompt_tokens.clear()
        self._output_tokens.clear()
        self._total_tokens.clear()
        self.estimation_failures = 0
