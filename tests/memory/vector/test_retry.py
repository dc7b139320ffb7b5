import asyncio
import random
from types import SimpleNamespace

import pytest

from muse_memory.memory.vector import retry
from muse_memory.memory.vector.retry import RetryPolicy


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def test_backoff_delay_is_full_jitter_under_cap():
    policy = RetryPolicy(max_retries=5, base_delay=0.25, max_delay=1.0)
    rng = random.Random(7)
    for attempt in range(6):
        cap = min(0.25 * 2 ** attempt, 1.0)
        for _ in range(20):
            assert 0.0 <= retry.backoff_delay(attempt, policy, rng) <= cap


def test_backoff_delay_zero_policy():
    assert retry.backoff_delay(3, RetryPolicy.none()) == 0.0


@pytest.mark.parametrize(
    "exc, expected",
    [
        (asyncio.TimeoutError(), True),
        (ConnectionResetError(), True),
        (StatusError(429), True),
        (StatusError(408), True),
        (StatusError(503), True),
        (StatusError(400), False),
        (StatusError(404), False),
        (ValueError("bad"), False),
    ],
)
def test_is_retryable(exc, expected):
    assert retry.is_retryable(exc) is expected


def test_status_of_reads_common_attributes():
    assert retry.status_of(SimpleNamespace(code=502)) == 502
    assert retry.status_of(SimpleNamespace(status=True)) is None
    assert retry.status_of(ValueError()) is None


def test_call_with_retry_recovers_after_transient_failures():
    attempts = []
    sleeps = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise StatusError(503)
        return "ok"

    async def fake_sleep(delay):
        sleeps.append(delay)

    result = asyncio.run(
        retry.call_with_retry(flaky, RetryPolicy(max_retries=3), sleep=fake_sleep, rng=random.Random(1))
    )
    assert result == "ok"
    assert len(attempts) == 3
    assert len(sleeps) == 2


def test_call_with_retry_gives_up_after_budget():
    attempts = []

    async def always_down():
        attempts.append(1)
        raise StatusError(500)

    async def fake_sleep(delay):
        pass

    with pytest.raises(StatusError):
        asyncio.run(retry.call_with_retry(always_down, RetryPolicy(max_retries=2), sleep=fake_sleep))
    assert len(attempts) == 3


def test_call_with_retry_does_not_retry_client_errors():
    attempts = []

    async def bad_request():
        attempts.append(1)
        raise StatusError(400)

    with pytest.raises(StatusError):
        asyncio.run(retry.call_with_retry(bad_request, RetryPolicy(max_retries=5)))
    assert len(attempts) == 1


def test_call_with_retry_timeout_is_retryable_then_terminal():
    attempts = []

    async def slow():
        attempts.append(1)
        await asyncio.sleep(1)

    async def fake_sleep(delay):
        pass

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(
            retry.call_with_retry(slow, RetryPolicy(max_retries=1), timeout=0.01, sleep=fake_sleep)
        )
    assert len(attempts) == 2


def test_none_policy_means_single_attempt():
    attempts = []

    async def down():
        attempts.append(1)
        raise StatusError(503)

    with pytest.raises(StatusError):
        asyncio.run(retry.call_with_retry(down, RetryPolicy.none()))
    assert len(attempts) == 1
