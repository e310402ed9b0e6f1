"""Retry policy, failure classification and the bounded retry loop.

Every remote call is retried the same way: a per-attempt timeout raced
against the call, exponential backoff with jitter after transient failures,
and an extra circuit delay once failures start piling up back to back.
Terminal failures and cancellation end the loop immediately.
"""

import asyncio
import logging
import random
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

import httpx
from botocore.exceptions import ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from ..models import FailureKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]

# Substrings that mark a transport-level failure in otherwise opaque errors
TRANSIENT_MARKERS = (
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "enotfound",
    "fetch failed",
    "connection reset",
)

TRANSIENT_S3_CODES = frozenset(
    {"InternalError", "ServiceUnavailable", "SlowDown", "RequestTimeout", "500", "502", "503", "504"}
)


class AttemptTimeout(Exception):
    """A single attempt did not finish within its time budget."""


class OperationCancelled(Exception):
    """The caller's cancellation signal fired."""


def classify_error(error: BaseException) -> FailureKind:
    """Classify an exception raised by a backend call.

    Args:
        error: The exception

    Returns:
        ``TRANSIENT`` for timeouts, connection/DNS failures and 5xx
        responses, ``CANCELLED`` for caller aborts, ``TERMINAL`` otherwise
    """
    if isinstance(error, OperationCancelled):
        return FailureKind.CANCELLED

    if isinstance(error, (AttemptTimeout, asyncio.TimeoutError)):
        return FailureKind.TRANSIENT

    if isinstance(error, ClientError):
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        code = str(error.response.get("Error", {}).get("Code", ""))
        if 500 <= status < 600 or code in TRANSIENT_S3_CODES:
            return FailureKind.TRANSIENT
        return FailureKind.TERMINAL

    if isinstance(error, (HTTPClientError, BotoConnectionError)):
        return FailureKind.TRANSIENT

    if isinstance(error, httpx.HTTPStatusError):
        if 500 <= error.response.status_code < 600:
            return FailureKind.TRANSIENT
        return FailureKind.TERMINAL

    if isinstance(error, httpx.TransportError):
        return FailureKind.TRANSIENT

    if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror)):
        return FailureKind.TRANSIENT

    message = str(error).lower()
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return FailureKind.TRANSIENT

    return FailureKind.TERMINAL


def describe_error(error: Optional[BaseException]) -> str:
    """One-line, human-readable description of an error."""
    if error is None:
        return "unknown error"
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        code = err.get("Code", "Unknown")
        message = err.get("Message") or code
        return f"{code} (HTTP {status}): {message}" if status else f"{code}: {message}"
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}: {error.response.reason_phrase}"
    text = str(error).strip()
    return text or type(error).__name__


@dataclass
class RetryPolicy:
    """Retry budget and delay schedule. All durations are in seconds.

    Backoff after failed attempt ``n``:
        min(base_delay * 2**(n-1), max_backoff) + uniform(0, max_jitter)
    Circuit delay before an attempt once ``circuit_threshold`` or more
    consecutive failures have happened:
        min(circuit_base + circuit_step * consecutive_failures, circuit_max)
    """

    max_attempts: int = 5
    attempt_timeout: float = 25.0
    base_delay: float = 1.0
    max_backoff: float = 10.0
    max_jitter: float = 1.0
    circuit_threshold: int = 2
    circuit_base: float = 5.0
    circuit_step: float = 2.0
    circuit_max: float = 15.0

    def backoff_floor(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (attempt - 1), self.max_backoff)

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_floor(attempt) + random.uniform(0, self.max_jitter)

    def circuit_delay(self, consecutive_failures: int) -> float:
        if consecutive_failures < self.circuit_threshold:
            return 0.0
        return min(self.circuit_base + self.circuit_step * consecutive_failures, self.circuit_max)


@dataclass
class RetryOutcome(Generic[T]):
    """Result of ``call_with_retries``."""

    ok: bool
    value: Optional[T] = None
    attempts: int = 0
    failure: Optional[FailureKind] = None
    last_error: Optional[BaseException] = None
    delays: List[float] = field(default_factory=list)


async def race(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    cancel: Optional[asyncio.Event] = None,
    label: str = "operation",
) -> T:
    """Await ``awaitable`` against a timer and an optional cancel signal.

    A ``timeout`` of None waits for the call or the cancel signal only.

    On timeout or cancellation the pending task is cancelled. For calls
    running in an executor thread this only abandons the result; the
    transport request itself may still complete.

    Raises:
        AttemptTimeout: If the timer fires first
        OperationCancelled: If ``cancel`` is set first
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{label} cancelled")
    raise AttemptTimeout(f"{label} timeout after {timeout:g} seconds")


async def pause(seconds: float, cancel: Optional[asyncio.Event] = None, sleep: SleepFn = asyncio.sleep) -> bool:
    """Wait ``seconds`` unless cancelled.

    Returns:
        False if ``cancel`` fired before or during the wait
    """
    if cancel is not None and cancel.is_set():
        return False
    if seconds <= 0:
        return True
    if cancel is None:
        await sleep(seconds)
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False


async def call_with_retries(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    cancel: Optional[asyncio.Event] = None,
    sleep: SleepFn = asyncio.sleep,
    time_each_attempt: bool = True,
) -> RetryOutcome[T]:
    """Run ``operation(attempt)`` until it succeeds or the budget runs out.

    Attempts run strictly one after another. The consecutive-failure count
    lives in this call only, so independent calls never share retry state.

    Args:
        operation: Factory for one attempt; receives the 1-based attempt number
        policy: Retry budget and delay schedule
        label: Operation name used in log lines and timeout messages
        cancel: Optional caller cancellation signal
        sleep: Sleep function used for backoff waits when ``cancel`` is None
        time_each_attempt: Race each attempt against ``policy.attempt_timeout``.
            Pass False when the operation applies its own timeouts.

    Returns:
        RetryOutcome; ``failure`` is TERMINAL after the first terminal error,
        CANCELLED when aborted, TRANSIENT when every attempt failed transiently
    """
    consecutive_failures = 0
    last_error: Optional[BaseException] = None
    delays: List[float] = []
    attempts = 0
    timeout = policy.attempt_timeout if time_each_attempt else None

    def _cancelled() -> RetryOutcome[T]:
        logger.warning(f"{label}: cancelled after {attempts} attempt(s)")
        return RetryOutcome(
            ok=False,
            attempts=attempts,
            failure=FailureKind.CANCELLED,
            last_error=OperationCancelled(f"{label} cancelled"),
            delays=delays,
        )

    for attempt in range(1, policy.max_attempts + 1):
        circuit = policy.circuit_delay(consecutive_failures)
        if circuit > 0:
            logger.info(
                f"{label}: circuit delay {circuit:.1f}s after {consecutive_failures} consecutive failures"
            )
            delays.append(circuit)
            if not await pause(circuit, cancel, sleep):
                return _cancelled()
        elif cancel is not None and cancel.is_set():
            return _cancelled()

        attempts = attempt
        logger.info(f"{label}: attempt {attempt}/{policy.max_attempts}")

        try:
            value = await race(operation(attempt), timeout, cancel, label)
        except OperationCancelled:
            return _cancelled()
        except Exception as e:
            last_error = e
            consecutive_failures += 1
            kind = classify_error(e)

            if kind == FailureKind.TERMINAL:
                logger.error(f"{label}: non-retryable error on attempt {attempt}: {describe_error(e)}")
                return RetryOutcome(
                    ok=False,
                    attempts=attempt,
                    failure=FailureKind.TERMINAL,
                    last_error=e,
                    delays=delays,
                )

            logger.warning(
                f"{label}: transient error on attempt {attempt}/{policy.max_attempts} "
                f"(consecutive failures: {consecutive_failures}): {describe_error(e)}"
            )
            if attempt < policy.max_attempts:
                delay = policy.backoff_delay(attempt)
                logger.info(f"{label}: retrying in {delay:.2f}s")
                delays.append(delay)
                if not await pause(delay, cancel, sleep):
                    return _cancelled()
            continue

        if attempt > 1:
            logger.info(f"{label}: succeeded on attempt {attempt}")
        return RetryOutcome(ok=True, value=value, attempts=attempt, delays=delays)

    logger.error(f"{label}: all {policy.max_attempts} attempts failed: {describe_error(last_error)}")
    return RetryOutcome(
        ok=False,
        attempts=attempts,
        failure=FailureKind.TRANSIENT,
        last_error=last_error,
        delays=delays,
    )
