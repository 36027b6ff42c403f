import logging

import httpx
import pytest

from bitacora.errors import NotFoundError, TransientStoreError, ValidationError
from bitacora.retry import (
    EXTERNAL_RETRY,
    NO_RETRY,
    PERSISTENCE_RETRY,
    RetryPolicy,
    compute_delay_ms,
    is_transient_error,
    with_retry,
)


class CodedError(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.calls = 0
        self.result = result

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.test/quote")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))


def test_default_policies() -> None:
    assert (PERSISTENCE_RETRY.max_retries, PERSISTENCE_RETRY.base_delay_ms, PERSISTENCE_RETRY.max_delay_ms) == (3, 1000, 8000)
    assert (EXTERNAL_RETRY.max_retries, EXTERNAL_RETRY.base_delay_ms, EXTERNAL_RETRY.max_delay_ms) == (2, 500, 5000)


def test_compute_delay_bounds() -> None:
    policy = RetryPolicy(max_retries=5, base_delay_ms=1000, max_delay_ms=8000, backoff_factor=2)
    assert compute_delay_ms(0, policy, jitter=1.0) == 1000
    assert compute_delay_ms(2, policy, jitter=1.0) == 4000
    assert compute_delay_ms(5, policy, jitter=1.0) == 8000
    for attempt in range(4):
        delay = compute_delay_ms(attempt, policy)
        assert 1000 * 2**attempt * 0.75 <= delay <= min(8000, 1000 * 2**attempt * 1.25)


def test_transient_classification() -> None:
    assert is_transient_error(TransientStoreError("down"))
    assert is_transient_error(CodedError("unavailable"))
    assert is_transient_error(CodedError("deadline-exceeded"))
    assert is_transient_error(ConnectionError("reset"))
    assert is_transient_error(TimeoutError())
    assert is_transient_error(_status_error(503))
    assert is_transient_error(_status_error(429))
    assert is_transient_error(httpx.ConnectError("refused"))
    assert not is_transient_error(_status_error(404))
    assert not is_transient_error(CodedError("permission-denied"))
    assert not is_transient_error(ValidationError("bad"))
    assert not is_transient_error(NotFoundError("chapter", "x"))
    assert not is_transient_error(KeyError("x"))


@pytest.mark.asyncio
async def test_retries_transient_then_succeeds() -> None:
    operation = Flaky([CodedError("UNAVAILABLE"), CodedError("ABORTED")])
    sleep = RecordingSleep()
    result = await with_retry(operation, PERSISTENCE_RETRY, name="test", sleep=sleep)
    assert result == "ok"
    assert operation.calls == 3
    assert len(sleep.delays) == 2
    assert 0.75 <= sleep.delays[0] <= 1.25
    assert 1.5 <= sleep.delays[1] <= 2.5


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried() -> None:
    operation = Flaky([ValidationError("bad payload")])
    sleep = RecordingSleep()
    with pytest.raises(ValidationError):
        await with_retry(operation, PERSISTENCE_RETRY, name="test", sleep=sleep)
    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exhaustion_surfaces_transient_store_error() -> None:
    operation = Flaky([ConnectionError("reset")] * 5)
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=2, base_delay_ms=10, max_delay_ms=50)
    with pytest.raises(TransientStoreError):
        await with_retry(operation, policy, name="test", sleep=sleep)
    assert operation.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_no_retry_policy_makes_a_single_attempt() -> None:
    operation = Flaky([ConnectionError("reset")])
    sleep = RecordingSleep()
    with pytest.raises(TransientStoreError, match="once failed after 1 attempt"):
        await with_retry(operation, NO_RETRY, name="once", sleep=sleep)
    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_each_retry_is_logged(caplog) -> None:
    operation = Flaky([CodedError("UNAVAILABLE")])
    with caplog.at_level(logging.WARNING, logger="bitacora.retry"):
        assert await with_retry(operation, PERSISTENCE_RETRY, name="quote", sleep=RecordingSleep()) == "ok"
    assert "quote failed (UNAVAILABLE), retry 1/3" in caplog.text
