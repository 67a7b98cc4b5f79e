"""
Transaction Ledger - bounded, observable store of submission attempts.

The ledger is the single source of truth for what happened to every
``send``: it records the current broadcast hash, the retry history and the
terminal outcome, and pushes a fresh snapshot to subscribers after every
mutation.

``can_retry`` recomputation in ``update`` follows ``CanRetryRule``:

- LEGACY (default): an entry counts as retryable if either the new or the
  previous status is ``failed``.  An entry moved failed -> success through
  ``update`` therefore keeps ``can_retry == True``.  Callers that relied on
  retrying a superseded transaction depend on this.
- STRICT: ``can_retry`` is true only while ``status == failed`` and
  retries remain.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from ..errors import ErrorCode, LedgerTransitionError
from ..utils import epoch_ms, utc_now

logger = logging.getLogger(__name__)


class TxStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class CanRetryRule(str, Enum):
    LEGACY = "legacy"
    STRICT = "strict"


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    delay_ms: int = 1000
    backoff_multiplier: float = 2


@dataclass(frozen=True)
class PreviousAttempt:
    attempt_number: int
    timestamp: datetime
    error: str
    hash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attemptNumber": self.attempt_number,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
            "hash": self.hash,
        }


@dataclass
class LedgerEntry:
    id: str
    hash: str
    action: str
    module: str
    status: TxStatus
    timestamp: datetime
    retry_count: int = 0
    max_retries: int = 3
    can_retry: bool = False
    previous_attempts: list[PreviousAttempt] = field(default_factory=list)
    gas_used: Optional[str] = None
    error: Optional[str] = None
    data: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Structural contract consumed by UIs and logs."""
        return {
            "id": self.id,
            "hash": self.hash,
            "action": self.action,
            "module": self.module,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "gasUsed": self.gas_used,
            "error": self.error,
            "data": copy.deepcopy(self.data),
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "canRetry": self.can_retry,
            "previousAttempts": [a.to_dict() for a in self.previous_attempts],
        }


Snapshot = list[LedgerEntry]
LedgerListener = Callable[[Snapshot], Any]

UPDATABLE_FIELDS = frozenset({"hash", "status", "gas_used", "error", "data", "action", "module"})

# Statuses reachable from each status.  SUCCESS is final; FAILED is final
# once retries are exhausted (checked separately).
_TRANSITIONS: dict[TxStatus, frozenset[TxStatus]] = {
    TxStatus.PENDING: frozenset(TxStatus),
    TxStatus.RETRYING: frozenset({TxStatus.RETRYING, TxStatus.SUCCESS, TxStatus.FAILED}),
    TxStatus.FAILED: frozenset({TxStatus.RETRYING, TxStatus.SUCCESS, TxStatus.FAILED}),
    TxStatus.SUCCESS: frozenset({TxStatus.SUCCESS}),
}


class TransactionLedger:
    def __init__(
        self,
        max_entries: int = 50,
        can_retry_rule: CanRetryRule = CanRetryRule.LEGACY,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._entries: list[LedgerEntry] = []  # newest first
        self._listeners: list[LedgerListener] = []
        self._max_entries = max_entries
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self.can_retry_rule = CanRetryRule(can_retry_rule)
        self._default_retry_config = retry_config or RetryConfig()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(
        self,
        *,
        hash: str,
        action: str,
        module: str,
        status: TxStatus | str = TxStatus.PENDING,
        data: Optional[dict[str, Any]] = None,
        retry_config: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Add a new entry and return its id.

        Args:
            hash: Broadcast hash ("" when nothing was broadcast yet)
            action: Caller label, usually the contract method
            module: Caller label, usually the contract type
            status: Initial status (default: pending)
            data: Free-form metadata stored with the entry
            retry_config: Overrides merged over the default RetryConfig

        Returns:
            The new entry id (``tx-<n>-<epoch_ms>``)
        """
        config = replace(self._default_retry_config, **(retry_config or {}))
        if config.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        status = TxStatus(status)

        with self._lock:
            entry_id = f"tx-{next(self._ids)}-{epoch_ms()}"
            entry = LedgerEntry(
                id=entry_id,
                hash=hash,
                action=action,
                module=module,
                status=status,
                timestamp=utc_now(),
                retry_count=0,
                max_retries=config.max_retries,
                can_retry=status is TxStatus.FAILED and config.max_retries > 0,
                previous_attempts=[],
                data=copy.deepcopy(data),
            )
            self._entries.insert(0, entry)
            if len(self._entries) > self._max_entries:
                evicted = self._entries[self._max_entries:]
                del self._entries[self._max_entries:]
                logger.debug("Evicted %d ledger entries", len(evicted))
            self._notify()
        return entry_id

    def update(self, entry_id: str, **fields: Any) -> None:
        """Apply a partial update; unknown ids are ignored."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update ledger fields: {', '.join(sorted(unknown))}")

        with self._lock:
            entry = self._find(entry_id)
            if entry is None:
                return
            previous_status = entry.status
            new_status = TxStatus(fields.get("status", previous_status))
            self._check_transition(entry, new_status)

            for name, value in fields.items():
                if name == "status":
                    value = new_status
                elif name == "data":
                    value = copy.deepcopy(value)
                setattr(entry, name, value)

            entry.can_retry = self._recompute_can_retry(entry, previous_status)
            self._notify()

    def record_retry(self, entry_id: str, error: str, new_hash: Optional[str] = None) -> None:
        """Append an attempt record and move the entry to ``retrying``."""
        with self._lock:
            entry = self._find(entry_id)
            if entry is None:
                return
            if entry.retry_count >= entry.max_retries:
                logger.warning(
                    "Ignoring retry for %s: %d/%d retries already used",
                    entry_id, entry.retry_count, entry.max_retries,
                )
                return
            self._check_transition(entry, TxStatus.RETRYING)

            entry.previous_attempts = [
                *entry.previous_attempts,
                PreviousAttempt(
                    attempt_number=entry.retry_count + 1,
                    timestamp=utc_now(),
                    error=error,
                    hash=new_hash,
                ),
            ]
            entry.retry_count += 1
            entry.status = TxStatus.RETRYING
            entry.can_retry = False
            if new_hash:
                entry.hash = new_hash
            self._notify()

    def retry_success(self, entry_id: str, hash: str, gas_used: Optional[str] = None) -> None:
        with self._lock:
            entry = self._find(entry_id)
            if entry is None:
                return
            self._check_transition(entry, TxStatus.SUCCESS)
            entry.status = TxStatus.SUCCESS
            entry.hash = hash
            entry.gas_used = gas_used
            entry.error = None
            entry.can_retry = False
            self._notify()

    def retry_failed(self, entry_id: str, error: str) -> None:
        with self._lock:
            entry = self._find(entry_id)
            if entry is None:
                return
            self._check_transition(entry, TxStatus.FAILED)
            entry.status = TxStatus.FAILED
            entry.error = error
            entry.can_retry = entry.retry_count < entry.max_retries
            self._notify()

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._notify()

    def set_max_entries(self, max_entries: int) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        with self._lock:
            self._max_entries = max_entries
            if len(self._entries) > max_entries:
                del self._entries[max_entries:]
                self._notify()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    # ------------------------------------------------------------------
    # Queries (all return copies)
    # ------------------------------------------------------------------

    def get_all(self) -> Snapshot:
        with self._lock:
            return self._snapshot()

    def get_by_id(self, entry_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._find(entry_id)
            return copy.deepcopy(entry) if entry is not None else None

    def get_by_status(self, status: TxStatus | str) -> Snapshot:
        status = TxStatus(status)
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries if e.status is status]

    def get_by_module(self, module: str) -> Snapshot:
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries if e.module == module]

    def get_failed_retryable(self) -> Snapshot:
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._entries
                if e.status is TxStatus.FAILED and e.can_retry
            ]

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        """Deliver the current snapshot now and after every mutation."""
        with self._lock:
            self._listeners.append(listener)
            self._deliver(listener, self._snapshot())

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Retry configuration
    # ------------------------------------------------------------------

    def set_default_retry_config(self, **changes: Any) -> None:
        self._default_retry_config = replace(self._default_retry_config, **changes)

    def get_default_retry_config(self) -> RetryConfig:
        return self._default_retry_config

    def calculate_retry_delay(self, retry_count: int) -> float:
        """Backoff delay in milliseconds for the given retry count."""
        config = self._default_retry_config
        return config.delay_ms * config.backoff_multiplier ** retry_count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find(self, entry_id: str) -> Optional[LedgerEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def _check_transition(self, entry: LedgerEntry, new_status: TxStatus) -> None:
        exhausted_failure = (
            entry.status is TxStatus.FAILED and entry.retry_count >= entry.max_retries
        )
        allowed = new_status in _TRANSITIONS[entry.status]
        if exhausted_failure and new_status is not TxStatus.FAILED:
            allowed = False
        if not allowed:
            raise LedgerTransitionError(
                ErrorCode.INVALID_TRANSITION,
                f"Ledger entry {entry.id} cannot move from "
                f"{entry.status.value} to {new_status.value}",
            )

    def _recompute_can_retry(self, entry: LedgerEntry, previous_status: TxStatus) -> bool:
        retries_left = entry.retry_count < entry.max_retries
        if self.can_retry_rule is CanRetryRule.STRICT:
            return entry.status is TxStatus.FAILED and retries_left
        return (
            entry.status is TxStatus.FAILED or previous_status is TxStatus.FAILED
        ) and retries_left

    def _snapshot(self) -> Snapshot:
        return copy.deepcopy(self._entries)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self._snapshot()
        for listener in list(self._listeners):
            self._deliver(listener, snapshot)

    @staticmethod
    def _deliver(listener: LedgerListener, snapshot: Snapshot) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("Ledger listener %r failed", listener)


# ---------------------------------------------------------------------------
# Default instance
# ---------------------------------------------------------------------------

_default_ledger: Optional[TransactionLedger] = None
_default_lock = threading.Lock()


def get_default_ledger() -> TransactionLedger:
    """Process-wide convenience ledger, created on first use."""
    global _default_ledger
    with _default_lock:
        if _default_ledger is None:
            _default_ledger = TransactionLedger()
        return _default_ledger


def reset_default_ledger() -> None:
    """Drop the convenience ledger; the next get creates a fresh one."""
    global _default_ledger
    with _default_lock:
        _default_ledger = None


__all__ = [
    "TxStatus",
    "CanRetryRule",
    "RetryConfig",
    "PreviousAttempt",
    "LedgerEntry",
    "TransactionLedger",
    "UPDATABLE_FIELDS",
    "get_default_ledger",
    "reset_default_ledger",
]
