from dataclasses import dataclass

import pytest
import requests

from distributor.models import RetryPolicy
from distributor.queries import (
    TRANSFER_TOPIC,
    call_with_retries,
    is_rate_limit_error,
    is_transient_error,
)


@dataclass
class MockResponse:
    status_code: int


def http_error(status: int) -> requests.exceptions.HTTPError:
    return requests.exceptions.HTTPError(f"{status} Error", response=MockResponse(status))


def test_transfer_topic():
    assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@pytest.mark.parametrize(
    "error",
    [
        http_error(429),
        ValueError({"code": -32005, "message": "query returned more than 10000 results"}),
        ValueError("Log response size limit exceeded"),
        RuntimeError("Too Many Requests"),
        RuntimeError("you have hit the rate limit"),
    ],
)
def test_rate_limit_errors(error):
    assert is_rate_limit_error(error)
    assert is_transient_error(error)


@pytest.mark.parametrize(
    "error",
    [
        http_error(503),
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.ReadTimeout("read timed out"),
        IOError("connection reset by peer"),
    ],
)
def test_transient_errors(error):
    assert not is_rate_limit_error(error)
    assert is_transient_error(error)


@pytest.mark.parametrize(
    "error",
    [ValueError("execution reverted"), KeyError("balanceOf"), http_error(400)],
)
def test_permanent_errors(error):
    assert not is_transient_error(error)


def test_call_with_retries_recovers():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise requests.exceptions.ConnectionError("refused")
        return 42

    policy = RetryPolicy(max_attempts=5, base_delay=1, backoff=2)
    assert call_with_retries(flaky, policy, sleeps.append) == 42
    assert sleeps == [1, 2]


def test_call_with_retries_gives_up():
    sleeps = []

    def always_down():
        raise http_error(429)

    with pytest.raises(requests.exceptions.HTTPError):
        call_with_retries(always_down, RetryPolicy(max_attempts=3), sleeps.append)
    assert len(sleeps) == 2


def test_call_with_retries_does_not_retry_permanent_errors():
    sleeps = []

    def reverted():
        raise ValueError("execution reverted")

    with pytest.raises(ValueError, match="reverted"):
        call_with_retries(reverted, RetryPolicy(), sleeps.append)
    assert sleeps == []
