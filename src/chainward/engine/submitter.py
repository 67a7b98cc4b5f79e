"""
Transaction Submitter - estimate, broadcast, confirm, retry.

``send`` drives one logical transaction through the network.  Every attempt
re-reads the nonce and fees, re-estimates gas, signs, broadcasts and polls
for confirmation.  Failures are normalized, classified by the
``RetryPolicy`` and either retried after a backoff delay or surfaced.  The
``TransactionLedger`` records the whole history and the ``EventChannel``
publishes each step.

The retry loop runs in its own task and callers await it through
``asyncio.shield``: cancelling the awaiting coroutine does not stop an
in-flight submission.  Pass a ``CancelToken`` in ``TxOptions`` to stop it
explicitly.

Nonces are not coordinated across concurrent sends from the same signer.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..errors import (
    CallError,
    ChainwardError,
    ConfigurationError,
    ErrorCode,
    ErrorContext,
    OperationCancelled,
    TransactionError,
    normalize_transaction_error,
)
from ..pneuma.abi import MethodSpec
from ..pneuma.resolver import ContractHandle
from ..pneuma.rpc import ExecutionContext, Receipt
from ..sigil.eth import Signer
from ..utils import uuidv7
from .events import EventChannel, TxEvent, TxEventType
from .ledger import TransactionLedger, TxStatus
from .retry import CancelToken, RetryPolicy, cancellable_sleep, retry_async

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_GAS_BUFFER_PERCENT = 20


@dataclass
class TxOptions:
    """Per-send overrides, labels and callbacks."""

    value: int = 0
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    nonce: Optional[int] = None
    confirmations: Optional[int] = None
    max_retries: Optional[int] = None

    # Ledger labels (default: method name and contract type)
    action: Optional[str] = None
    module: Optional[str] = None
    data: Optional[dict[str, Any]] = None

    on_sent: Optional[Callable[[str], Any]] = None
    on_confirmed: Optional[Callable[[Receipt], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None

    cancel: Optional[CancelToken] = None


class _SendState:
    """Mutable bookkeeping for one ``send`` across its attempts."""

    def __init__(self, ref: str) -> None:
        self.ref = ref
        self.entry_id: Optional[str] = None
        self.attempt_hash: Optional[str] = None


class TransactionSubmitter:
    def __init__(
        self,
        ledger: TransactionLedger,
        events: EventChannel,
        policy: Optional[RetryPolicy] = None,
        *,
        confirmations: int = 1,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        gas_buffer_percent: int = DEFAULT_GAS_BUFFER_PERCENT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.events = events
        self.policy = policy or RetryPolicy()
        self.confirmations = confirmations
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.gas_buffer_percent = gas_buffer_percent
        self._sleep = sleep
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def send(
        self,
        handle: ContractHandle,
        method: str,
        args: Sequence[Any] = (),
        options: Optional[TxOptions] = None,
    ) -> Receipt:
        """
        Submit a state-changing call and wait for its confirmation.

        Args:
            handle: Resolved contract handle with a signer bound
            method: Method name or full signature
            args: Method arguments
            options: Overrides, ledger labels, callbacks, cancel token

        Returns:
            The confirmed transaction's Receipt

        Raises:
            ConfigurationError: No signer on the handle
            CallError: Method not declared by the ABI
            TransactionError: Terminal failure or retries exhausted
            OperationCancelled: ``options.cancel`` fired
        """
        options = options or TxOptions()
        if handle.signer is None:
            raise ConfigurationError(
                ErrorCode.MISSING_SIGNER,
                "Signer required for transactions; resolve the contract with a signer",
            )
        spec = handle.methods.get(method, len(args))

        state = _SendState(ref=str(uuidv7()))
        unsubscribers = self._register_callbacks(state.ref, options)

        task = asyncio.ensure_future(self._run(handle, handle.signer, spec, list(args), options, state))
        self._background.add(task)

        def _finished(done: asyncio.Task) -> None:
            self._background.discard(done)
            for unsubscribe in unsubscribers:
                unsubscribe()
            if not done.cancelled():
                # Mark the exception retrieved when the caller went away
                done.exception()

        task.add_done_callback(_finished)
        return await asyncio.shield(task)

    def _register_callbacks(self, ref: str, options: TxOptions) -> list[Callable[[], None]]:
        unsubscribers = []
        if options.on_sent is not None:
            on_sent = options.on_sent
            unsubscribers.append(self.events.subscribe(
                lambda event: on_sent(event.hash), types=[TxEventType.SENT], ref=ref, once=True,
            ))
        if options.on_confirmed is not None:
            on_confirmed = options.on_confirmed
            unsubscribers.append(self.events.subscribe(
                lambda event: on_confirmed(event.receipt), types=[TxEventType.CONFIRMED], ref=ref, once=True,
            ))
        if options.on_error is not None:
            on_error = options.on_error
            unsubscribers.append(self.events.subscribe(
                lambda event: on_error(event.error), types=[TxEventType.FAILED], ref=ref, once=True,
            ))
        return unsubscribers

    async def _run(
        self,
        handle: ContractHandle,
        signer: Signer,
        spec: MethodSpec,
        args: list[Any],
        options: TxOptions,
        state: _SendState,
    ) -> Receipt:
        policy = self.policy
        if options.max_retries is not None:
            policy = policy.with_max_retries(options.max_retries)
        action = options.action or spec.name
        module = options.module or handle.contract_type

        def error_context(attempt: int) -> ErrorContext:
            return ErrorContext(
                contract=handle.address,
                method=spec.name,
                network=handle.network,
                attempt=attempt + 1,
                max_attempts=policy.max_retries + 1,
            )

        def ensure_entry() -> str:
            if state.entry_id is None:
                state.entry_id = self.ledger.add(
                    hash=state.attempt_hash or "",
                    action=action,
                    module=module,
                    status=TxStatus.PENDING,
                    data=options.data,
                    retry_config={"max_retries": policy.max_retries},
                )
            return state.entry_id

        async def attempt(index: int) -> Receipt:
            state.attempt_hash = None
            try:
                return await self._attempt(handle, signer, spec, args, options, state, ensure_entry)
            except Exception as exc:
                raise normalize_transaction_error(exc, error_context(index))

        def on_retry(index: int, exc: BaseException, delay: float) -> None:
            entry_id = ensure_entry()
            message = str(exc)
            self.ledger.record_retry(entry_id, message, state.attempt_hash)
            self.events.emit(TxEvent(
                type=TxEventType.RETRYING,
                ref=state.ref,
                entry_id=entry_id,
                hash=state.attempt_hash,
                error=exc,
                attempt=index + 1,
                delay=delay,
                message=message,
            ))

        try:
            receipt = await retry_async(
                attempt,
                policy,
                on_retry=on_retry,
                cancel=options.cancel,
                sleep=self._sleep,
            )
        except Exception as exc:
            error = exc if isinstance(exc, ChainwardError) else normalize_transaction_error(exc)
            entry_id = ensure_entry()
            self.ledger.retry_failed(entry_id, str(error))
            logger.warning("Transaction %s.%s failed: %s", module, action, error)
            self.events.emit(TxEvent(
                type=TxEventType.FAILED,
                ref=state.ref,
                entry_id=entry_id,
                hash=state.attempt_hash,
                error=error,
                message=str(error),
            ))
            if error is exc:
                raise
            raise error from exc

        entry_id = ensure_entry()
        entry = self.ledger.get_by_id(entry_id)
        if entry is not None and entry.retry_count > 0:
            self.ledger.retry_success(entry_id, receipt.hash, receipt.gas_used)
        else:
            self.ledger.update(entry_id, status=TxStatus.SUCCESS, hash=receipt.hash, gas_used=receipt.gas_used)
        logger.info("Transaction %s confirmed in block %d", receipt.hash, receipt.block_number)
        self.events.emit(TxEvent(
            type=TxEventType.CONFIRMED,
            ref=state.ref,
            entry_id=entry_id,
            hash=receipt.hash,
            receipt=receipt,
        ))
        return receipt

    async def _attempt(
        self,
        handle: ContractHandle,
        signer: Signer,
        spec: MethodSpec,
        args: list[Any],
        options: TxOptions,
        state: _SendState,
        ensure_entry: Callable[[], str],
    ) -> Receipt:
        context = handle.context
        tx = await self._build_transaction(handle, signer, spec, args, options, state)
        raw = signer.sign_transaction(tx)
        if inspect.isawaitable(raw):
            raw = await raw

        tx_hash = await context.broadcast(raw)
        state.attempt_hash = tx_hash
        if state.entry_id is None:
            ensure_entry()
        else:
            self.ledger.update(state.entry_id, hash=tx_hash)
        logger.info("Broadcast %s.%s as %s", handle.contract_type, spec.name, tx_hash)
        self.events.emit(TxEvent(
            type=TxEventType.SENT,
            ref=state.ref,
            entry_id=state.entry_id,
            hash=tx_hash,
        ))

        confirmations = self.confirmations if options.confirmations is None else options.confirmations
        receipt = await self._await_receipt(context, tx_hash, confirmations, options.cancel)
        if not receipt.succeeded:
            raise TransactionError(
                ErrorCode.TRANSACTION_REVERTED,
                f"Transaction {tx_hash} reverted",
                details=receipt.to_dict(),
            )
        return receipt

    async def _build_transaction(
        self,
        handle: ContractHandle,
        signer: Signer,
        spec: MethodSpec,
        args: list[Any],
        options: TxOptions,
        state: _SendState,
    ) -> dict[str, Any]:
        context = handle.context
        tx: dict[str, Any] = {
            "from": signer.address,
            "to": handle.address,
            "data": spec.encode_call(args),
            "value": options.value,
            "chainId": await context.chain_id(),
        }

        if options.nonce is not None:
            tx["nonce"] = options.nonce
        else:
            tx["nonce"] = await context.get_pending_sequence_number(signer.address)

        if options.gas_price is not None:
            tx["gasPrice"] = options.gas_price
        elif options.max_fee_per_gas is not None:
            tx["maxFeePerGas"] = options.max_fee_per_gas
            if options.max_priority_fee_per_gas is not None:
                tx["maxPriorityFeePerGas"] = options.max_priority_fee_per_gas
        else:
            fees = await context.get_fee_info()
            tx.update(fees.as_tx_fields())

        if options.gas_limit is not None:
            tx["gas"] = options.gas_limit
        else:
            estimate_tx = {k: tx[k] for k in ("from", "to", "data", "value")}
            try:
                estimate = await context.estimate_cost(estimate_tx)
            except Exception as exc:
                message = f"Gas estimation failed for {spec.name}, using signer default: {exc}"
                logger.warning(message)
                self.events.emit(TxEvent(
                    type=TxEventType.WARNING,
                    ref=state.ref,
                    entry_id=state.entry_id,
                    error=exc,
                    message=message,
                ))
            else:
                tx["gas"] = estimate * (100 + self.gas_buffer_percent) // 100
        return tx

    async def _await_receipt(
        self,
        context: ExecutionContext,
        tx_hash: str,
        confirmations: int,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Receipt:
        timeout = self.confirmation_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        while True:
            try:
                receipt = await context.wait_for_confirmation(tx_hash, confirmations)
            except ChainwardError:
                raise
            except Exception as exc:
                # Already broadcast; keep polling until the deadline
                logger.debug("Receipt lookup for %s failed: %s", tx_hash, exc)
                receipt = None
            if receipt is not None:
                return receipt
            if self._clock() >= deadline:
                raise TransactionError(
                    ErrorCode.CONFIRMATION_TIMEOUT,
                    f"Transaction {tx_hash} not confirmed within {timeout:g}s",
                )
            logger.debug("Waiting for %s (%d confirmation(s))", tx_hash, confirmations)
            await cancellable_sleep(self.poll_interval, cancel, self._sleep)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def call(self, handle: ContractHandle, method: str, args: Sequence[Any] = ()) -> Any:
        """
        Run a read-only call and decode its result.

        Raises:
            CallError: Unknown method, or any failure of the call itself
        """
        spec = handle.methods.get(method, len(args))
        data = spec.encode_call(list(args))
        tx: dict[str, Any] = {"to": handle.address, "data": data}
        if handle.signer is not None:
            tx["from"] = handle.signer.address
        try:
            result = await handle.context.call(tx)
            return spec.decode_result(result)
        except OperationCancelled:
            raise
        except Exception as exc:
            raise CallError(
                ErrorCode.CONTRACT_CALL_FAILED,
                f"Call to {spec.name} failed: {exc}",
                cause=exc,
                context=ErrorContext(contract=handle.address, method=spec.name, network=handle.network),
            ) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def get_gas_price(self, context: ExecutionContext) -> int:
        fees = await context.get_fee_info()
        return fees.gas_price or fees.max_fee_per_gas or 0

    async def get_nonce(self, context: ExecutionContext, address: str) -> int:
        return await context.get_pending_sequence_number(address)

    async def wait_for_transaction(
        self,
        context: ExecutionContext,
        tx_hash: str,
        confirmations: int = 1,
        timeout: Optional[float] = None,
    ) -> Receipt:
        """Wait for a known hash using the same confirmation loop as ``send``, without retries."""
        return await self._await_receipt(context, tx_hash, confirmations, timeout=timeout)


__all__ = [
    "TxOptions",
    "TransactionSubmitter",
]
