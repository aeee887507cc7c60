"""
Tests for the exponential backoff retry strategy.
"""

import random

import pytest

from coffeeshop.core.errors import FatalTaskError, TransientExternalError
from coffeeshop.services.queues.retry import ExponentialBackoffRetry, RetryPolicy
from coffeeshop.services.queues.tasks import TaskData


def make_task(retried: int, max_retry: int = 3) -> TaskData:
    return TaskData(
        task_type="upload_s3_object", payload="{}", retried=retried, max_retry=max_retry
    )


class TestShouldRetry:
    @pytest.fixture
    def strategy(self):
        return ExponentialBackoffRetry(RetryPolicy(jitter=False))

    def test_retries_while_budget_remains(self, strategy):
        error = TransientExternalError("boom", service="s3")

        assert strategy.should_retry(make_task(retried=1), error)
        assert strategy.should_retry(make_task(retried=2), error)

    def test_stops_when_budget_spent(self, strategy):
        error = TransientExternalError("boom", service="s3")

        assert not strategy.should_retry(make_task(retried=3), error)

    def test_zero_budget_never_retries(self, strategy):
        assert not strategy.should_retry(make_task(retried=1, max_retry=0), RuntimeError())

    def test_fatal_error_never_retried(self, strategy):
        assert not strategy.should_retry(make_task(retried=0), FatalTaskError("bad"))


class TestCalculateDelay:
    def test_exponential_growth_without_jitter(self):
        strategy = ExponentialBackoffRetry(
            RetryPolicy(base_delay_seconds=2.0, multiplier=2.0, jitter=False)
        )

        assert strategy.calculate_delay(1) == 2.0
        assert strategy.calculate_delay(2) == 4.0
        assert strategy.calculate_delay(3) == 8.0

    def test_delay_capped(self):
        strategy = ExponentialBackoffRetry(
            RetryPolicy(base_delay_seconds=10.0, max_delay_seconds=30.0, jitter=False)
        )

        assert strategy.calculate_delay(10) == 30.0

    def test_jitter_stays_within_quarter(self):
        strategy = ExponentialBackoffRetry(
            RetryPolicy(base_delay_seconds=4.0, jitter=True), rng=random.Random(7)
        )

        for _ in range(50):
            delay = strategy.calculate_delay(1)
            assert 3.0 <= delay <= 5.0

    def test_minimum_delay(self):
        strategy = ExponentialBackoffRetry(
            RetryPolicy(base_delay_seconds=0.1, jitter=True), rng=random.Random(1)
        )

        assert all(strategy.calculate_delay(1) >= 0.1 for _ in range(20))

    def test_policy_from_settings(self):
        policy = RetryPolicy.from_settings()

        assert policy.base_delay_seconds > 0
        assert policy.max_delay_seconds >= policy.base_delay_seconds
