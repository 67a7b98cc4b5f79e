"""
Chainward - resilient contract transactions for EVM chains.

Resolves contracts to callable handles, submits transactions with
classified retry and backoff, and keeps an observable ledger of every
attempt.
"""

__all__ = [
    # Facade
    "Chainward",
    "EngineConfig",
    # Errors
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
    # Resolver
    "ContractHandle",
    "ContractResolver",
    "ExecutionMode",
    "TokenStandard",
    "verify_standard",
    # Retry
    "Classification",
    "RetryPolicy",
    "CancelToken",
    "backoff_delay",
    "classify",
    "retry_async",
    # Submitter
    "TransactionSubmitter",
    "TxOptions",
    # Ledger
    "TransactionLedger",
    "LedgerEntry",
    "PreviousAttempt",
    "RetryConfig",
    "TxStatus",
    "CanRetryRule",
    "get_default_ledger",
    "reset_default_ledger",
    # Events
    "EventChannel",
    "TxEvent",
    "TxEventType",
    # Collaborators
    "ExecutionContext",
    "JsonRpcContext",
    "Receipt",
    "FeeInfo",
    "MetadataService",
    "RegistryClient",
    "ContractInfo",
    "Signer",
    "LocalSigner",
]

from .config import EngineConfig
from .engine.events import EventChannel, TxEvent, TxEventType
from .engine.ledger import (
    CanRetryRule,
    LedgerEntry,
    PreviousAttempt,
    RetryConfig,
    TransactionLedger,
    TxStatus,
    get_default_ledger,
    reset_default_ledger,
)
from .engine.retry import (
    CancelToken,
    Classification,
    RetryPolicy,
    backoff_delay,
    classify,
    retry_async,
)
from .engine.submitter import TransactionSubmitter, TxOptions
from .errors import (
    CallError,
    ChainwardError,
    ConfigurationError,
    ErrorCode,
    ErrorContext,
    InvalidABIError,
    InvalidAddressError,
    LedgerTransitionError,
    OperationCancelled,
    ResolutionError,
    TransactionError,
)
from .pneuma.registry import ContractInfo, MetadataService, RegistryClient
from .pneuma.resolver import ContractHandle, ContractResolver, ExecutionMode, TokenStandard, verify_standard
from .pneuma.rpc import ExecutionContext, FeeInfo, JsonRpcContext, Receipt
from .sdk import Chainward
from .sigil.eth import LocalSigner, Signer
