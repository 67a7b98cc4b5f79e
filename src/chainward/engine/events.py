"""
Event channel for transaction lifecycle events.

The submitter emits typed events (sent, confirmed, retrying, failed,
warning).  Per-send callbacks are ordinary subscribers registered with
``once=True`` and filtered by the send's correlation ``ref``; cancelling a
callback is simply unsubscribing it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


class TxEventType(str, Enum):
    SENT = "sent"
    CONFIRMED = "confirmed"
    RETRYING = "retrying"
    FAILED = "failed"
    WARNING = "warning"


@dataclass(frozen=True)
class TxEvent:
    type: TxEventType
    ref: str
    entry_id: Optional[str] = None
    hash: Optional[str] = None
    receipt: Any = None
    error: Optional[BaseException] = None
    attempt: int = 0
    delay: Optional[float] = None
    message: Optional[str] = None


Listener = Callable[[TxEvent], Any]
Unsubscribe = Callable[[], None]


@dataclass(eq=False)
class _Subscription:
    listener: Listener
    types: Optional[frozenset[TxEventType]]
    ref: Optional[str]
    once: bool

    def matches(self, event: TxEvent) -> bool:
        if self.types is not None and event.type not in self.types:
            return False
        return self.ref is None or self.ref == event.ref


class EventChannel:
    def __init__(self) -> None:
        self._subs: list[_Subscription] = []
        self._lock = threading.RLock()

    def subscribe(
        self,
        listener: Listener,
        *,
        types: Optional[Iterable[TxEventType]] = None,
        ref: Optional[str] = None,
        once: bool = False,
    ) -> Unsubscribe:
        """
        Register a listener.

        Args:
            listener: Called with each matching TxEvent
            types: Only deliver these event types (default: all)
            ref: Only deliver events for this send (default: all sends)
            once: Remove the listener after its first delivery

        Returns:
            Idempotent unsubscribe function
        """
        sub = _Subscription(
            listener=listener,
            types=frozenset(TxEventType(t) for t in types) if types is not None else None,
            ref=ref,
            once=once,
        )
        with self._lock:
            self._subs.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subs:
                    self._subs.remove(sub)

        return unsubscribe

    def once(
        self,
        listener: Listener,
        *,
        types: Optional[Iterable[TxEventType]] = None,
        ref: Optional[str] = None,
    ) -> Unsubscribe:
        return self.subscribe(listener, types=types, ref=ref, once=True)

    def emit(self, event: TxEvent) -> None:
        with self._lock:
            targets = [sub for sub in self._subs if sub.matches(event)]
            for sub in targets:
                if sub.once:
                    self._subs.remove(sub)

        for sub in targets:
            try:
                sub.listener(event)
            except Exception:
                logger.exception("Error in event listener for %s", event.type.value)

    def listener_count(self, event_type: Optional[TxEventType] = None) -> int:
        with self._lock:
            if event_type is None:
                return len(self._subs)
            return sum(
                1 for sub in self._subs
                if sub.types is None or TxEventType(event_type) in sub.types
            )

    def event_types(self) -> list[TxEventType]:
        """Event types with at least one listener; unfiltered listeners count for all."""
        with self._lock:
            seen: set[TxEventType] = set()
            for sub in self._subs:
                seen.update(sub.types if sub.types is not None else TxEventType)
        return [t for t in TxEventType if t in seen]

    def clear(self) -> None:
        with self._lock:
            self._subs.clear()
