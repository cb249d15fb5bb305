import pytest

from coach_stream.errors import (
    AuthenticationError,
    ConnectionEstablishmentError,
    ServerError,
    StreamAbortedError,
    StreamProtocolError,
)
from coach_stream.recovery import (
    DEFAULT_ADVICE,
    RecoveryPolicy,
    advise_message,
    categorize_error,
    is_retryable,
)

from fakes import SleepRecorder


class Flaky:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_execute_retries_with_linear_backoff_and_resets_on_success():
    sleeper = SleepRecorder()
    policy = RecoveryPolicy(max_retries=3, retry_delay=1.0, sleep=sleeper)
    op = Flaky([ConnectionEstablishmentError("network down"), ServerError(503, "busy")])

    out = await policy.execute(op, "connect")

    assert out == "ok"
    assert op.calls == 3
    assert sleeper.delays == [1.0, 2.0]
    state = policy.state
    assert not state.is_recovering
    assert state.attempt_count == 0
    assert state.current_strategy is None


@pytest.mark.asyncio
async def test_execute_records_strategy_per_retry_and_clamps():
    sleeper = SleepRecorder()
    policy = RecoveryPolicy(max_retries=4, retry_delay=0.5, strategies=["retry", "offline-mode"], sleep=sleeper)
    seen = []

    async def op():
        seen.append(policy.state.current_strategy)
        raise ConnectionEstablishmentError("connect refused")

    with pytest.raises(ConnectionEstablishmentError):
        await policy.execute(op, "connect")

    assert seen == [None, "retry", "offline-mode", "offline-mode", "offline-mode"]
    assert sleeper.delays == [0.5, 1.0, 1.5, 2.0]
    state = policy.state
    assert state.current_strategy == "exhausted"
    assert state.attempt_count == 4
    assert not state.is_recovering
    assert state.last_error_message == "connect refused"


@pytest.mark.asyncio
async def test_exhaustion_reraises_last_error():
    policy = RecoveryPolicy(max_retries=2, retry_delay=0, sleep=SleepRecorder())
    errors = [ServerError(500, "a"), ServerError(502, "b"), ServerError(503, "c")]
    op = Flaky(errors[:])

    with pytest.raises(ServerError) as ei:
        await policy.execute(op)

    assert ei.value.status_code == 503
    assert op.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_immediately():
    sleeper = SleepRecorder()
    policy = RecoveryPolicy(sleep=sleeper)
    op = Flaky([AuthenticationError("401 unauthorized")])

    with pytest.raises(AuthenticationError):
        await policy.execute(op)

    assert op.calls == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_custom_classifier_is_honoured():
    policy = RecoveryPolicy(max_retries=1, retry_delay=0, should_retry=lambda e: True, sleep=SleepRecorder())
    op = Flaky([ValueError("anything")])
    assert await policy.execute(op) == "ok"


@pytest.mark.parametrize("exc, expected", [
    (ConnectionEstablishmentError("dns"), True),
    (ServerError(500, ""), True),
    (ServerError(429, ""), True),
    (ServerError(404, ""), False),
    (AuthenticationError("nope"), False),
    (StreamProtocolError("bad"), False),
    (StreamAbortedError("peer closed"), False),
])
def test_is_retryable(exc, expected):
    assert is_retryable(exc) is expected


@pytest.mark.parametrize("text, category", [
    ("Timeout while building context - please try again", "timeout"),
    ("Server error 429: slow down", "rate_limit"),
    ("rate limit exceeded", "rate_limit"),
    ("network error while connecting: ConnectError", "network"),
    ("Failed to fetch", "network"),
    ("Not authenticated (401) - please sign in again", "auth"),
    ("Request aborted: peer closed", "aborted"),
    ("Server error 500: boom", "server_error"),
    ("weird", "unknown"),
])
def test_categorize_error(text, category):
    assert categorize_error(text) == category


def test_advise_message_maps_categories_and_falls_back():
    assert "too long" in advise_message("request timeout")
    assert "Too many requests" in advise_message("HTTP 429")
    assert "connection" in advise_message("NetworkError when attempting to fetch").lower()
    assert "sign in" in advise_message("auth token expired")
    assert advise_message("something odd") == DEFAULT_ADVICE
    assert RecoveryPolicy().advise_message("something odd") == DEFAULT_ADVICE
