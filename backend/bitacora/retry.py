import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import BitacoraError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_CODES = frozenset(
    {
        "UNAVAILABLE",
        "RESOURCE_EXHAUSTED",
        "DEADLINE_EXCEEDED",
        "ABORTED",
        "INTERNAL",
        "CANCELLED",
    }
)
TRANSIENT_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 8000
    backoff_factor: float = 2.0


PERSISTENCE_RETRY = RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=8000, backoff_factor=2.0)
EXTERNAL_RETRY = RetryPolicy(max_retries=2, base_delay_ms=500, max_delay_ms=5000, backoff_factor=2.0)
NO_RETRY = RetryPolicy(max_retries=0, base_delay_ms=0, max_delay_ms=0)


def compute_delay_ms(attempt: int, policy: RetryPolicy, jitter: float | None = None) -> float:
    factor = random.uniform(0.75, 1.25) if jitter is None else jitter
    return min(policy.max_delay_ms, policy.base_delay_ms * (policy.backoff_factor ** attempt) * factor)


def _normalize_code(code: Any) -> str:
    return str(code).strip().upper().replace("-", "_")


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, TransientStoreError):
        return True
    if isinstance(exc, BitacoraError):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_HTTP_STATUSES
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    code = getattr(exc, "code", None)
    return code is not None and _normalize_code(code) in TRANSIENT_CODES


def _policy_wait(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    def wait(retry_state: RetryCallState) -> float:
        return compute_delay_ms(retry_state.attempt_number - 1, policy) / 1000

    return wait


def _log_before_sleep(name: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "%s failed (%s), retry %d/%d in %.0f ms",
            name,
            exc,
            retry_state.attempt_number,
            policy.max_retries,
            delay * 1000,
        )

    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = PERSISTENCE_RETRY,
    *,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await operation()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=_policy_wait(policy),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_log_before_sleep(name, policy),
        sleep=sleep,
        reraise=True,
    )
    try:
        return await retrying(attempt)
    except Exception as exc:
        if not is_transient_error(exc):
            raise
        logger.error("%s failed after %d attempt(s): %s", name, attempts, exc)
        if isinstance(exc, TransientStoreError):
            raise
        raise TransientStoreError(f"{name} failed after {attempts} attempt(s): {exc}") from exc
