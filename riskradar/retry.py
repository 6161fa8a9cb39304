"""Failure classification and backoff retries for provider calls.

The provider does not document a stable error shape for throttling, so the
classifier sniffs status codes, nested ``error`` payloads and message text.
The substring list is best effort and kept here as data.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import httpx


logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

RATE_LIMIT_STATUS_CODE = 429
RATE_LIMIT_STATUS = "RESOURCE_EXHAUSTED"
RATE_LIMIT_MARKERS = ("429", "quota", "exhausted", "RESOURCE_EXHAUSTED")
RATE_LIMIT_FLOOR_S = 15.0
RATE_LIMIT_FACTOR = 2.0
TRANSIENT_FACTOR = 1.5

SleepFn = Callable[[float], Awaitable[Any]]


class FailureKind(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    TRANSIENT = "TRANSIENT"


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_kind: FailureKind, last_error: BaseException):
        self.attempts = attempts
        self.last_kind = last_kind
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempt(s) ({last_kind.value}): {last_error}")


def _is_rate_limit_code(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value == RATE_LIMIT_STATUS_CODE


def _nested_error(exc: BaseException) -> Optional[Dict[str, Any]]:
    err = getattr(exc, "error", None)
    if isinstance(err, dict):
        return err
    response = getattr(exc, "response", None)
    if isinstance(response, httpx.Response):
        try:
            body = response.json()
        except Exception:
            return None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"]
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if _is_rate_limit_code(value) or value == RATE_LIMIT_STATUS:
            return FailureKind.RATE_LIMITED
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        if exc.response.status_code == RATE_LIMIT_STATUS_CODE:
            return FailureKind.RATE_LIMITED
    nested = _nested_error(exc)
    if nested is not None:
        if _is_rate_limit_code(nested.get("code")) or nested.get("status") == RATE_LIMIT_STATUS:
            return FailureKind.RATE_LIMITED
    message = str(exc)
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    return FailureKind.TRANSIENT


def next_rate_limit_delay(delay: float) -> float:
    if delay < RATE_LIMIT_FLOOR_S:
        return RATE_LIMIT_FLOOR_S
    return delay * RATE_LIMIT_FACTOR


def next_transient_delay(delay: float) -> float:
    return delay * TRANSIENT_FACTOR


@dataclass
class RetryState:
    attempts_remaining: int
    delay: float
    kind: Optional[FailureKind] = None

    def advance(self, kind: FailureKind) -> float:
        """Record a failure and return how long to wait before the next attempt."""
        self.kind = kind
        if kind is FailureKind.RATE_LIMITED:
            self.delay = next_rate_limit_delay(self.delay)
            return self.delay
        wait = self.delay
        self.delay = next_transient_delay(self.delay)
        return wait


def backoff_schedule(kinds: Iterable[FailureKind], initial_delay: float = 5.0) -> List[float]:
    state = RetryState(attempts_remaining=0, delay=initial_delay)
    return [state.advance(kind) for kind in kinds]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 5.0,
    *,
    sleep: SleepFn = asyncio.sleep,
    label: Optional[str] = None,
) -> T:
    state = RetryState(attempts_remaining=max(1, max_attempts), delay=initial_delay)
    attempts = 0
    name = label or "provider call"
    while True:
        attempts += 1
        state.attempts_remaining -= 1
        try:
            return await operation()
        except Exception as exc:
            kind = classify_failure(exc)
            if kind is FailureKind.RATE_LIMITED:
                # the quota pause is taken even when no attempt remains
                wait = state.advance(kind)
                logger.warning("%s rate limited (429); pausing %.1fs", name, wait)
                await sleep(wait)
                if state.attempts_remaining <= 0:
                    raise RetryExhaustedError(attempts, kind, exc) from exc
                continue
            if state.attempts_remaining <= 0:
                raise RetryExhaustedError(attempts, kind, exc) from exc
            wait = state.advance(kind)
            logger.warning("%s failed: %s; retrying in %.1fs", name, exc, wait)
            await sleep(wait)
