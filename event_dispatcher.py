"""
Event Dispatcher
================

Consumes the worker message stream:
- event / snapshot messages go to every registered subscriber in arrival order
- done merges the reported watermarks into the CheckpointStore
- error is attributed to its file (transient) or to the batch (fatal)

Subscribers are explicit handles registered with subscribe(). A failing
subscriber is logged and skipped; it never blocks other subscribers or the
checkpoint commit. The last message of each kind is kept so a subscriber
attaching late can ask for a replay.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Union

from checkpoint_store import CheckpointStore
from error_handling import ErrorHandler, JournalReadError, WorkerError
from journal_events import EventKind
from journal_worker import (
    DoneMessage,
    ErrorMessage,
    EventMessage,
    ProgressMessage,
    SnapshotKind,
    SnapshotMessage,
    WorkerMessage,
    is_terminal,
)


logger = logging.getLogger("explorer.dispatcher")

Deliverable = Union[EventMessage, SnapshotMessage]
MessageKind = Union[EventKind, SnapshotKind]
Subscriber = Callable[[Deliverable], None]


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

@dataclass
class Subscription:
    callback: Subscriber
    kinds: Optional[frozenset] = None   # None = every kind
    name: str = ""
    failures: int = 0

    def wants(self, kind: MessageKind) -> bool:
        return self.kinds is None or kind in self.kinds


@dataclass
class BatchOutcome:
    """Summary of one pumped batch"""
    events: int = 0
    snapshots: int = 0
    errors: List[ErrorMessage] = field(default_factory=list)
    committed: bool = False
    watermarks: Dict[str, int] = field(default_factory=dict)

    @property
    def fatal(self) -> bool:
        return any(error.fatal for error in self.errors)


def _kind_of(message: Deliverable) -> MessageKind:
    return message.kind


# ============================================================================
# DISPATCHER
# ============================================================================

class EventDispatcher:
    """Fans worker messages out to subscribers and commits checkpoints"""

    def __init__(self, checkpoints: CheckpointStore, error_handler: Optional[ErrorHandler] = None):
        self.checkpoints = checkpoints
        self.error_handler = error_handler or ErrorHandler(logger)

        self._lock = threading.RLock()
        self._subscriptions: List[Subscription] = []
        self._last: Dict[MessageKind, Deliverable] = {}
        self._progress_listeners: List[Callable[[ProgressMessage], None]] = []

    # ------------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------------

    def subscribe(
        self,
        callback: Subscriber,
        kinds: Optional[Iterable[MessageKind]] = None,
        name: Optional[str] = None,
        replay: bool = False
    ) -> Subscription:
        """
        Register a subscriber.

        Args:
            callback: Called with each EventMessage / SnapshotMessage
            kinds: Restrict to these EventKind / SnapshotKind values
            name: Label used in logs
            replay: Immediately deliver the cached last value of each wanted kind
        """
        subscription = Subscription(
            callback=callback,
            kinds=frozenset(kinds) if kinds is not None else None,
            name=name or getattr(callback, "__qualname__", repr(callback)),
        )
        with self._lock:
            self._subscriptions.append(subscription)

        if replay:
            self.replay(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_progress_listener(self, callback: Callable[[ProgressMessage], None]):
        with self._lock:
            self._progress_listeners.append(callback)

    # ------------------------------------------------------------------------
    # Replay cache
    # ------------------------------------------------------------------------

    def last(self, kind: MessageKind) -> Optional[Deliverable]:
        with self._lock:
            return self._last.get(kind)

    def replay(self, subscription: Subscription) -> int:
        """Deliver the last cached message of every kind the subscriber wants"""
        with self._lock:
            cached = [m for k, m in self._last.items() if subscription.wants(k)]
        for message in cached:
            self._deliver(subscription, message)
        return len(cached)

    # ------------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------------

    def dispatch(self, message: WorkerMessage, outcome: Optional[BatchOutcome] = None):
        """Handle one worker message"""
        if isinstance(message, (EventMessage, SnapshotMessage)):
            kind = _kind_of(message)
            with self._lock:
                # Re-insert so replay order follows arrival order
                self._last.pop(kind, None)
                self._last[kind] = message
                subscriptions = list(self._subscriptions)

            for subscription in subscriptions:
                if subscription.wants(kind):
                    self._deliver(subscription, message)

            if outcome is not None:
                if isinstance(message, EventMessage):
                    outcome.events += 1
                else:
                    outcome.snapshots += 1

        elif isinstance(message, ProgressMessage):
            with self._lock:
                listeners = list(self._progress_listeners)
            for listener in listeners:
                try:
                    listener(message)
                except Exception as e:
                    logger.error(f"Progress listener failed: {e}")

        elif isinstance(message, DoneMessage):
            self.checkpoints.merge(message.updated_checkpoints)
            logger.info(f"Committed checkpoints for {len(message.updated_checkpoints)} journal(s)")
            if outcome is not None:
                outcome.committed = True
                outcome.watermarks = dict(message.watermarks)

        elif isinstance(message, ErrorMessage):
            self._handle_error(message)
            if outcome is not None:
                outcome.errors.append(message)

    def pump(self, messages: Iterable[WorkerMessage]) -> BatchOutcome:
        """Dispatch a whole batch; stops after the terminal message"""
        outcome = BatchOutcome()
        for message in messages:
            self.dispatch(message, outcome)
            if is_terminal(message):
                break
        return outcome

    def _deliver(self, subscription: Subscription, message: Deliverable):
        try:
            subscription.callback(message)
        except Exception as e:
            subscription.failures += 1
            logger.error(f"Subscriber {subscription.name} failed on {_kind_of(message).value}: {e}")

    def _handle_error(self, message: ErrorMessage):
        if message.fatal:
            self.error_handler.handle_error(
                WorkerError(message.message, context={"file": message.file})
            )
        else:
            # Transient per-file errors are logged, not shown to the user
            self.error_handler.handle_error(
                JournalReadError(message.file or "?", message.message),
                notify_user=False
            )
