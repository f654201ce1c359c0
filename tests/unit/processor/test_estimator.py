import pytest

from quota_scheduler.exceptions import EstimationError
from quota_scheduler.processor.estimator import (
    MAX_PAYLOAD_DEPTH,
    TokenEstimator,
    count_payload_chars,
)
from quota_scheduler.scheduler.config import ProcessorConfig
from quota_scheduler.types.result import TokenUsage


class Unprintable:
    def __str__(self):
        raise RuntimeError("no text form")


def nested(depth):
    payload = "leaf"
    for _ in range(depth):
        payload = [payload]
    return payload


class TestCountPayloadChars:
    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            (None, 0),
            ("", 0),
            ("hello", 5),
            (b"abc", 3),
            ({"key": "value"}, 8),
            (["ab", ("cd", "e")], 5),
            (12345, 5),
            ({"n": [1, 22, None]}, 4),
        ],
    )
    def test_counts(self, payload, expected):
        assert count_payload_chars(payload) == expected

    def test_deep_nesting_raises(self):
        with pytest.raises(EstimationError, match="nesting"):
            count_payload_chars(nested(MAX_PAYLOAD_DEPTH + 5))

    def test_unrenderable_value_raises(self):
        with pytest.raises(EstimationError, match="Unprintable"):
            count_payload_chars({"x": Unprintable()})


class TestTokenEstimator:
    @pytest.fixture
    def estimator(self):
        return TokenEstimator(ProcessorConfig())

    def test_empty_payload_uses_floor(self, estimator):
        assert estimator.estimate("") == 3600
        assert estimator.estimate(None) == 3600

    def test_heuristic_above_floor(self, estimator):
        # 8000 chars / 4 + 2600 overhead
        assert estimator.estimate("x" * 8000) == 4600

    def test_huge_payload_capped_at_hard_ceiling(self, estimator):
        assert estimator.estimate("x" * 1_000_000) == 15_000

    def test_estimate_stays_within_bounds(self, estimator):
        payloads = ["", "x", "x" * 10_000_000, nested(500), {"a": Unprintable()}]
        for payload in payloads:
            assert 3600 <= estimator.estimate(payload) <= 15_000

    def test_heuristic_failure_falls_back_to_overhead(self, estimator):
        assert estimator.heuristic(nested(200)) == 2600
        assert estimator.estimation_failures == 1

    def test_moving_average_after_ten_calls(self, estimator):
        for _ in range(10):
            estimator.observe(TokenUsage(prompt_tokens=3000, output_tokens=1000))

        assert estimator.moving_average == 4000
        assert estimator.ceiling == 5500
        assert estimator.estimate("short prompt") == 4000

    def test_ceiling_tracks_recent_maximum(self, estimator):
        estimator.observe(TokenUsage(prompt_tokens=8000, output_tokens=1000))

        assert estimator.ceiling == 10_500
        assert estimator.estimate("x" * 1_000_000) == 10_500

    def test_ceiling_never_below_floor(self, estimator):
        estimator.observe(TokenUsage(prompt_tokens=100, output_tokens=50))

        assert estimator.ceiling == 3600
        assert estimator.estimate("x" * 100_000) == 3600

    def test_window_is_bounded(self):
        estimator = TokenEstimator(ProcessorConfig(sample_window=3))
        for total in (9000, 1000, 1000, 1000):
            estimator.observe(TokenUsage(prompt_tokens=total, output_tokens=0))

        assert estimator.sample_count == 3
        assert estimator.moving_average == 1000

    def test_reported_total_wins(self, estimator):
        estimator.observe(TokenUsage(prompt_tokens=100, output_tokens=100, total_tokens=5000))

        assert estimator.moving_average == 5000

    def test_averages(self, estimator):
        estimator.observe(TokenUsage(prompt_tokens=3000, output_tokens=1000))
        estimator.observe(TokenUsage(prompt_tokens=2000, output_tokens=500))

        assert estimator.averages() == {
            "prompt_tokens": 2500.0,
            "output_tokens": 750.0,
            "total_tokens": 3250.0,
        }

    def test_reset(self, estimator):
        estimator.observe(TokenUsage(prompt_tokens=3000, output_tokens=1000))
        estimator.heuristic(nested(200))

        estimator.reset()

        assert estimator.sample_count == 0
        assert estimator.moving_average is None
        assert estimator.ceiling == 15_000
        assert estimator.estimation_failures == 0
