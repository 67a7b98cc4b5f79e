"""
Retry Policy - failure classification and capped exponential backoff.

``classify`` and ``backoff_delay`` are pure.  ``retry_async`` is the generic
combinator used by the submitter: it runs a fallible async operation,
consults a ``RetryPolicy`` on failure and sleeps between attempts.  The
sleep is the only suspension point it adds, and it honours an optional
``CancelToken``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..errors import (
    CallError,
    ConfigurationError,
    ErrorCode,
    OperationCancelled,
    ResolutionError,
    TransactionError,
    iter_messages,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Classification(str, Enum):
    TERMINAL = "terminal"
    RETRYABLE = "retryable"


TERMINAL_SIGNATURES: tuple[str, ...] = (
    "insufficient funds",
    "reverted",
    "invalid opcode",
    "out of gas",
    "nonce too high",
    "underpriced",
    "user rejected",
    "user denied",
    "rejected by user",
    "action_rejected",
)

TERMINAL_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.INSUFFICIENT_FUNDS,
    ErrorCode.TRANSACTION_REVERTED,
    ErrorCode.INVALID_OPCODE,
    ErrorCode.OUT_OF_GAS,
    ErrorCode.NONCE_TOO_HIGH,
    ErrorCode.FEE_UNDERPRICED,
    ErrorCode.USER_REJECTED,
})

_FATAL_TYPES = (ConfigurationError, ResolutionError, CallError, OperationCancelled)


def classify(error: BaseException) -> Classification:
    """Classify an error as terminal or retryable."""
    if isinstance(error, _FATAL_TYPES):
        return Classification.TERMINAL
    if isinstance(error, TransactionError) and error.code in TERMINAL_CODES:
        return Classification.TERMINAL
    for message in iter_messages(error):
        if any(signature in message for signature in TERMINAL_SIGNATURES):
            return Classification.TERMINAL
    return Classification.RETRYABLE


def is_retryable(error: BaseException) -> bool:
    return classify(error) is Classification.RETRYABLE


def backoff_delay(
    attempt_index: int,
    initial_delay: float,
    multiplier: float,
    cap: float,
) -> float:
    """``min(initial_delay * multiplier ** attempt_index, cap)``."""
    if attempt_index < 0:
        raise ValueError("attempt_index must be >= 0")
    return min(initial_delay * multiplier ** attempt_index, cap)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def classify(self, error: BaseException) -> Classification:
        return classify(error)

    def delay(self, attempt_index: int) -> float:
        return backoff_delay(attempt_index, self.initial_delay, self.multiplier, self.max_delay)

    def should_retry(self, error: BaseException, retries_done: int) -> bool:
        return retries_done < self.max_retries and is_retryable(error)

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        return RetryPolicy(max_retries, self.initial_delay, self.multiplier, self.max_delay)


class CancelToken:
    """Explicit, opt-in cancellation for retry loops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(ErrorCode.CANCELLED, self.reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def cancellable_sleep(
    delay: float,
    cancel: Optional[CancelToken] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Sleep for ``delay`` seconds, waking early if ``cancel`` fires."""
    if cancel is None:
        await sleep(delay)
        return

    cancel.raise_if_cancelled()
    sleeper = asyncio.ensure_future(sleep(delay))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
    cancel.raise_if_cancelled()


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    cancel: Optional[CancelToken] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, fails terminally or retries run out.

    Args:
        operation: Async callable receiving the 0-based attempt index
        policy: Retry policy (classification + backoff)
        on_retry: Called with (retry_index, error, delay) before sleeping;
                  may be sync or async.  Raising from it aborts the loop.
        cancel: Optional cancellation token
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        The operation's result

    Raises:
        The last error when it is terminal or retries are exhausted, or
        OperationCancelled when ``cancel`` fires.
    """
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return await operation(attempt)
        except OperationCancelled:
            raise
        except Exception as exc:
            if not policy.should_retry(exc, attempt):
                raise
            delay = policy.delay(attempt)
            logger.info(
                "Retrying after %s (retry %d/%d, delay %.2fs)",
                exc.__class__.__name__, attempt + 1, policy.max_retries, delay,
            )
            if on_retry is not None:
                result = on_retry(attempt, exc, delay)
                if inspect.isawaitable(result):
                    await result
            await cancellable_sleep(delay, cancel, sleep)
            attempt += 1


__all__ = [
    "Classification",
    "TERMINAL_CODES",
    "TERMINAL_SIGNATURES",
    "classify",
    "is_retryable",
    "backoff_delay",
    "RetryPolicy",
    "CancelToken",
    "cancellable_sleep",
    "retry_async",
]
