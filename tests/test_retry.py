"""Unit tests for engine/retry.py."""

from __future__ import annotations

import pytest

from chainward.engine.retry import (
    CancelToken,
    Classification,
    RetryPolicy,
    backoff_delay,
    classify,
    is_retryable,
    retry_async,
)
from chainward.errors import (
    CallError,
    ConfigurationError,
    ErrorCode,
    OperationCancelled,
    ResolutionError,
    TransactionError,
)


class TestBackoffDelay:
    """Capped exponential backoff."""

    def test_doubling_sequence_in_ms(self) -> None:
        delays = [backoff_delay(n, 1000, 2, 30_000) for n in range(4)]
        assert delays == [1000, 2000, 4000, 8000]

    def test_capped(self) -> None:
        assert backoff_delay(10, 1.0, 2.0, 30.0) == 30.0

    def test_first_attempt_is_initial_delay(self) -> None:
        assert backoff_delay(0, 0.5, 3.0, 10.0) == 0.5

    def test_negative_index_rejected(self) -> None:
        with pytest.raises(ValueError):
            backoff_delay(-1, 1.0, 2.0, 30.0)

    def test_policy_delay_matches_formula(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0)
        assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]


class TestClassify:
    @pytest.mark.parametrize(
        "message",
        [
            "insufficient funds for gas * price + value",
            "execution reverted: not owner",
            "invalid opcode: INVALID",
            "out of gas",
            "nonce too high",
            "replacement transaction underpriced",
            "User rejected the request",
            "MetaMask Tx Signature: User denied transaction signature.",
            "Transaction rejected by user",
            "ACTION_REJECTED",
        ],
    )
    def test_terminal_signatures(self, message: str) -> None:
        assert classify(RuntimeError(message)) is Classification.TERMINAL

    @pytest.mark.parametrize(
        "message",
        ["network timeout", "502 Bad Gateway", "nonce too low", "connection reset by peer"],
    )
    def test_transient_failures_are_retryable(self, message: str) -> None:
        assert classify(RuntimeError(message)) is Classification.RETRYABLE
        assert is_retryable(RuntimeError(message))

    def test_signature_found_in_cause_chain(self) -> None:
        try:
            try:
                raise RuntimeError("insufficient funds")
            except RuntimeError as inner:
                raise RuntimeError("send failed") from inner
        except RuntimeError as outer:
            assert classify(outer) is Classification.TERMINAL

    def test_terminal_codes(self) -> None:
        err = TransactionError(ErrorCode.TRANSACTION_REVERTED, "status 0")
        assert classify(err) is Classification.TERMINAL

    def test_confirmation_timeout_is_retryable(self) -> None:
        err = TransactionError(ErrorCode.CONFIRMATION_TIMEOUT, "not confirmed within 120s")
        assert classify(err) is Classification.RETRYABLE

    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError(ErrorCode.MISSING_SIGNER, "no signer"),
            ResolutionError(ErrorCode.ABI_NOT_FOUND, "no abi"),
            CallError(ErrorCode.METHOD_NOT_FOUND, "no method"),
            OperationCancelled(),
        ],
    )
    def test_engine_errors_are_terminal(self, error: Exception) -> None:
        assert classify(error) is Classification.TERMINAL


class TestRetryPolicy:
    def test_should_retry_respects_budget(self) -> None:
        policy = RetryPolicy(max_retries=2)
        err = RuntimeError("timeout")
        assert policy.should_retry(err, 0)
        assert policy.should_retry(err, 1)
        assert not policy.should_retry(err, 2)

    def test_never_retries_terminal(self) -> None:
        policy = RetryPolicy(max_retries=5)
        assert not policy.should_retry(RuntimeError("insufficient funds"), 0)

    def test_with_max_retries_keeps_backoff(self) -> None:
        policy = RetryPolicy(max_retries=3, initial_delay=0.5, multiplier=3.0, max_delay=9.0)
        other = policy.with_max_retries(0)
        assert other.max_retries == 0
        assert (other.initial_delay, other.multiplier, other.max_delay) == (0.5, 3.0, 9.0)


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_returns_first_success(self, clock) -> None:
        attempts: list[int] = []

        async def op(attempt: int) -> str:
            attempts.append(attempt)
            return "ok"

        assert await retry_async(op, RetryPolicy(), sleep=clock.sleep) == "ok"
        assert attempts == [0]
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self, clock) -> None:
        retried: list[tuple[int, float]] = []

        async def op(attempt: int) -> str:
            if attempt < 2:
                raise RuntimeError("timeout")
            return "ok"

        result = await retry_async(
            op,
            RetryPolicy(max_retries=3, initial_delay=1.0, multiplier=2.0),
            on_retry=lambda n, exc, delay: retried.append((n, delay)),
            sleep=clock.sleep,
        )
        assert result == "ok"
        assert retried == [(0, 1.0), (1, 2.0)]
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_bounded_attempts(self, clock) -> None:
        attempts: list[int] = []

        async def op(attempt: int) -> None:
            attempts.append(attempt)
            raise RuntimeError("timeout")

        with pytest.raises(RuntimeError, match="timeout"):
            await retry_async(op, RetryPolicy(max_retries=3), sleep=clock.sleep)
        assert attempts == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_terminal_short_circuit(self, clock) -> None:
        attempts: list[int] = []

        async def op(attempt: int) -> None:
            attempts.append(attempt)
            raise RuntimeError("insufficient funds")

        with pytest.raises(RuntimeError):
            await retry_async(op, RetryPolicy(max_retries=3), sleep=clock.sleep)
        assert attempts == [0]
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_async_on_retry_is_awaited(self, clock) -> None:
        seen: list[int] = []

        async def on_retry(n: int, exc: BaseException, delay: float) -> None:
            seen.append(n)

        async def op(attempt: int) -> str:
            if attempt == 0:
                raise RuntimeError("timeout")
            return "ok"

        await retry_async(op, RetryPolicy(), on_retry=on_retry, sleep=clock.sleep)
        assert seen == [0]

    @pytest.mark.asyncio
    async def test_cancel_token_stops_loop(self, clock) -> None:
        token = CancelToken()
        attempts: list[int] = []

        async def op(attempt: int) -> None:
            attempts.append(attempt)
            token.cancel("user aborted")
            raise RuntimeError("timeout")

        with pytest.raises(OperationCancelled, match="user aborted"):
            await retry_async(op, RetryPolicy(max_retries=5), cancel=token, sleep=clock.sleep)
        assert attempts == [0]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self) -> None:
        token = CancelToken()
        token.cancel()

        async def op(attempt: int) -> str:
            return "ok"

        with pytest.raises(OperationCancelled):
            await retry_async(op, RetryPolicy(), cancel=token)
