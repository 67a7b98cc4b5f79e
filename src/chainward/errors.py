"""
Error taxonomy for Chainward.

Every error raised to callers is a ``ChainwardError`` carrying a
machine-readable ``code``, a human message and (when wrapping) the original
cause.  Subclasses tell the retry policy how to treat the failure:

- ConfigurationError: missing signer/provider/credentials (fatal)
- ResolutionError:    ABI/address not found or malformed (fatal)
- TransactionError:   broadcast/confirmation failures (classified)
- CallError:          unknown method or read-call failure (fatal)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    # Configuration
    INVALID_CONFIG = "INVALID_CONFIG"
    MISSING_API_KEY = "MISSING_API_KEY"
    INVALID_NETWORK = "INVALID_NETWORK"
    MISSING_PROVIDER = "MISSING_PROVIDER"
    MISSING_SIGNER = "MISSING_SIGNER"

    # Registry API
    API_REQUEST_FAILED = "API_REQUEST_FAILED"
    API_TIMEOUT = "API_TIMEOUT"
    API_UNAUTHORIZED = "API_UNAUTHORIZED"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_NOT_FOUND = "API_NOT_FOUND"

    # Contracts
    CONTRACT_NOT_FOUND = "CONTRACT_NOT_FOUND"
    CONTRACT_CALL_FAILED = "CONTRACT_CALL_FAILED"
    METHOD_NOT_FOUND = "METHOD_NOT_FOUND"
    ABI_NOT_FOUND = "ABI_NOT_FOUND"
    INVALID_ABI = "INVALID_ABI"
    INVALID_ADDRESS = "INVALID_ADDRESS"

    # Transactions
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    GAS_ESTIMATION_FAILED = "GAS_ESTIMATION_FAILED"
    TRANSACTION_REVERTED = "TRANSACTION_REVERTED"
    INVALID_OPCODE = "INVALID_OPCODE"
    OUT_OF_GAS = "OUT_OF_GAS"
    NONCE_TOO_LOW = "NONCE_TOO_LOW"
    NONCE_TOO_HIGH = "NONCE_TOO_HIGH"
    FEE_UNDERPRICED = "FEE_UNDERPRICED"
    USER_REJECTED = "USER_REJECTED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"

    # Engine
    CANCELLED = "CANCELLED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class ErrorContext:
    """Debugging context attached to an error."""

    contract: Optional[str] = None
    method: Optional[str] = None
    network: Optional[str] = None
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    suggestion: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ChainwardError(Exception):
    """Base error with a code, a message and an optional original cause."""

    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        code: ErrorCode | str | None = None,
        message: str = "",
        *,
        cause: Optional[BaseException] = None,
        details: Any = None,
        context: Optional[ErrorContext] = None,
    ) -> None:
        self.code = ErrorCode(code) if code is not None else self.default_code
        self.message = message or self.code.value
        self.cause = cause
        self.details = details
        self.context = context
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        code: ErrorCode | str | None = None,
    ) -> "ChainwardError":
        """Wrap a foreign exception; ChainwardErrors pass through unchanged."""
        if isinstance(exc, ChainwardError):
            return exc
        message = str(exc) or exc.__class__.__name__
        return cls(code, message, cause=exc)

    def is_(self, code: ErrorCode | str) -> bool:
        return self.code == ErrorCode(code)

    def to_user_message(self) -> str:
        msg = self.message
        ctx = self.context
        if ctx is None:
            return msg
        if ctx.contract:
            msg += f" (Contract: {ctx.contract})"
        if ctx.method:
            msg += f" (Method: {ctx.method})"
        if ctx.network:
            msg += f" (Network: {ctx.network})"
        if ctx.attempt and ctx.max_attempts:
            msg += f" (Attempt {ctx.attempt}/{ctx.max_attempts})"
        if ctx.suggestion:
            msg += f"\nSuggestion: {ctx.suggestion}"
        return msg

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "context": asdict(self.context) if self.context else None,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class ConfigurationError(ChainwardError):
    default_code = ErrorCode.INVALID_CONFIG


class ResolutionError(ChainwardError):
    default_code = ErrorCode.ABI_NOT_FOUND


class InvalidABIError(ResolutionError):
    default_code = ErrorCode.INVALID_ABI


class InvalidAddressError(ResolutionError):
    default_code = ErrorCode.INVALID_ADDRESS


class TransactionError(ChainwardError):
    default_code = ErrorCode.TRANSACTION_FAILED


class CallError(ChainwardError):
    default_code = ErrorCode.CONTRACT_CALL_FAILED


class OperationCancelled(ChainwardError):
    default_code = ErrorCode.CANCELLED


class LedgerTransitionError(ChainwardError, ValueError):
    default_code = ErrorCode.INVALID_TRANSITION


# ---------------------------------------------------------------------------
# Message-based normalization of raw node / wallet errors
# ---------------------------------------------------------------------------

# Ordered: the first matching signature decides the code.
_MESSAGE_CODES: tuple[tuple[tuple[str, ...], ErrorCode], ...] = (
    (("insufficient funds",), ErrorCode.INSUFFICIENT_FUNDS),
    (("user rejected", "user denied", "rejected by user", "action_rejected"), ErrorCode.USER_REJECTED),
    (("invalid opcode",), ErrorCode.INVALID_OPCODE),
    (("out of gas",), ErrorCode.OUT_OF_GAS),
    (("nonce too high",), ErrorCode.NONCE_TOO_HIGH),
    (("nonce too low",), ErrorCode.NONCE_TOO_LOW),
    (("underpriced",), ErrorCode.FEE_UNDERPRICED),
    (("reverted",), ErrorCode.TRANSACTION_REVERTED),
)

_SUGGESTIONS: dict[ErrorCode, str] = {
    ErrorCode.INSUFFICIENT_FUNDS: "Top up the signer account to cover value plus gas",
    ErrorCode.NONCE_TOO_HIGH: "Check for pending transactions from the same signer",
    ErrorCode.FEE_UNDERPRICED: "Raise the fee fields or let the engine fetch current fees",
    ErrorCode.CONFIRMATION_TIMEOUT: "The transaction may still confirm; check the hash later",
}


def iter_messages(exc: BaseException) -> list[str]:
    """Lower-cased messages of ``exc`` and its cause chain."""
    messages: list[str] = []
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        messages.append(str(current).lower())
        current = current.__cause__ or getattr(current, "cause", None)
    return messages


def code_for_message(exc: BaseException) -> Optional[ErrorCode]:
    """Map a raw error to a specific transaction code, if one matches."""
    messages = iter_messages(exc)
    for needles, code in _MESSAGE_CODES:
        if any(needle in message for needle in needles for message in messages):
            return code
    return None


def normalize_transaction_error(
    exc: BaseException,
    context: Optional[ErrorContext] = None,
) -> ChainwardError:
    """Normalize any failure on the write path into a single error shape.

    ConfigurationError / ResolutionError / CallError / OperationCancelled are
    returned as-is.  Everything else becomes a TransactionError whose code is
    derived from the message when the original did not carry a specific one.
    """
    if isinstance(exc, (ConfigurationError, ResolutionError, CallError, OperationCancelled)):
        return exc

    if isinstance(exc, TransactionError) and exc.code != ErrorCode.TRANSACTION_FAILED:
        if context is not None and exc.context is None:
            exc.context = context
        return exc

    code = code_for_message(exc) or ErrorCode.TRANSACTION_FAILED
    if isinstance(exc, TransactionError):
        exc.code = code
        if context is not None and exc.context is None:
            exc.context = context
        err: ChainwardError = exc
    else:
        err = TransactionError(code, str(exc) or exc.__class__.__name__, cause=exc, context=context)

    if err.context is not None and err.context.suggestion is None:
        err.context.suggestion = _SUGGESTIONS.get(err.code)
    return err


__all__ = [
    "ErrorCode",
    "ErrorContext",
    "ChainwardError",
    "ConfigurationError",
    "ResolutionError",
    "InvalidABIError",
    "InvalidAddressError",
    "TransactionError",
    "CallError",
    "OperationCancelled",
    "LedgerTransitionError",
    "code_for_message",
    "iter_messages",
    "normalize_transaction_error",
]
