"""
outbox.py - Post-commit side effects

Notifications, rank-check triggers and inquiry-thread creation run only after
the financial transaction committed, and their failure never reaches the
caller of the financial operation.

Core concepts:
1. OutboxEvent: Immutable description of one side effect
2. Outbox: FIFO queue with a handler per action and delivered-id deduplication
3. Handlers: Plain functions bound to a collaborator, (event) -> None
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Callable, Deque, Dict, List, Optional, Set
import logging
import threading

from .collaborators import InquiryThreads, Notification, Notifier, RankChecker

logger = logging.getLogger(__name__)

ACTION_NOTIFY = "notify"
ACTION_RANK_CHECK = "rank_check"
ACTION_INQUIRY_THREAD = "inquiry_thread"


# ============================================================================
# EVENT DATA STRUCTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class OutboxEvent:
    """
    Immutable post-commit side effect.

    Attributes:
        sequence: Publication order within the outbox
        created_at: Ledger time at which the triggering transaction committed
        action: Handler key ("notify", "rank_check", "inquiry_thread")
        recipient: User the effect is addressed to (may be empty)
        subject: Short machine-readable event name
        params: Frozen tuple of (key, value) pairs
        dedup_key: When set, the event is delivered at most once per key
    """
    sequence: int
    created_at: datetime
    action: str
    recipient: str = ""
    subject: str = ""
    params: tuple = ()
    dedup_key: str = ""

    @property
    def params_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    @property
    def event_id(self) -> str:
        """Deterministic ID for deduplication."""
        if self.dedup_key:
            return f"{self.action}:{self.dedup_key}"
        return f"{self.action}:{self.sequence}"


OutboxHandler = Callable[[OutboxEvent], None]


# ============================================================================
# OUTBOX
# ============================================================================

class Outbox:
    """
    Queue of side effects awaiting delivery.

    Design:
    - publish() only records; nothing runs until dispatch()
    - dispatch() drains the queue in publication order
    - A handler exception is logged and the event parked in ``failed``;
      other events keep flowing
    - A delivered event_id is never delivered again
    - publish() and dispatch() are safe to call from several threads;
      handlers run under the lock, so dispatch is serialized
    """

    def __init__(self):
        self._queue: Deque[OutboxEvent] = deque()
        self._handlers: Dict[str, OutboxHandler] = {}
        self._delivered: Set[str] = set()
        self._ignored: Set[str] = set()
        self._next_sequence = 0
        self._lock = threading.RLock()
        self.failed: List[OutboxEvent] = []

    def register(self, action: str, handler: OutboxHandler) -> None:
        """Register a handler function for an action type."""
        self._handlers[action] = handler

    def ignore(self, action: str) -> None:
        """Drop events for an action that deliberately has no handler."""
        self._ignored.add(action)

    def publish(
        self,
        created_at: datetime,
        action: str,
        recipient: str = "",
        subject: str = "",
        params: Optional[Dict[str, Any]] = None,
        dedup_key: str = "",
    ) -> OutboxEvent:
        with self._lock:
            event = OutboxEvent(
                sequence=self._next_sequence,
                created_at=created_at,
                action=action,
                recipient=recipient,
                subject=subject,
                params=tuple(sorted((params or {}).items())),
                dedup_key=dedup_key,
            )
            self._next_sequence += 1
            self._queue.append(event)
        return event

    def dispatch(self) -> int:
        """
        Deliver every queued event.

        Returns the number of events delivered in this call.
        """
        delivered = 0
        with self._lock:
            while self._queue:
                event = self._queue.popleft()
                if event.event_id in self._delivered:
                    logger.debug("Skipping already delivered event %s", event.event_id)
                    continue
                handler = self._handlers.get(event.action)
                if handler is None:
                    if event.action in self._ignored:
                        logger.debug("No collaborator for %s; dropping %s", event.action, event.event_id)
                    else:
                        logger.warning("No handler registered for %s; dropping %s", event.action, event.event_id)
                    continue
                try:
                    handler(event)
                except Exception:
                    logger.exception("Side effect %s failed; parked for retry", event.event_id)
                    self.failed.append(event)
                    continue
                self._delivered.add(event.event_id)
                delivered += 1
        return delivered

    def retry_failed(self) -> int:
        """Requeue parked events and dispatch again."""
        with self._lock:
            retry, self.failed = self.failed, []
            self._queue.extend(retry)
            return self.dispatch()

    def pending_count(self) -> int:
        """Number of events waiting for dispatch."""
        return len(self._queue)

    def was_delivered(self, event_id: str) -> bool:
        return event_id in self._delivered


# ============================================================================
# HANDLER FUNCTIONS
# ============================================================================

def handle_notify(notifier: Notifier, event: OutboxEvent) -> None:
    params = event.params_dict
    notifier.notify(
        event.recipient,
        Notification(subject=event.subject, message=params.pop("message", ""), params=params),
    )


def handle_rank_check(rank_checker: RankChecker, event: OutboxEvent) -> None:
    params = event.params_dict
    rank_checker.trigger_rank_check(
        params["slot_id"], tuple(params.get("keywords", ())), params.get("keyword_id"),
    )


def handle_inquiry_thread(threads: InquiryThreads, event: OutboxEvent) -> None:
    params = event.params_dict
    threads.ensure_inquiry_thread(
        params["buyer_id"], params["seller_id"], params["campaign_id"], params["slot_id"],
    )


def create_default_outbox(
    notifier: Optional[Notifier] = None,
    rank_checker: Optional[RankChecker] = None,
    inquiry_threads: Optional[InquiryThreads] = None,
) -> Outbox:
    """
    Create an Outbox with a handler registered for each supplied collaborator.

    Actions whose collaborator is omitted are ignored quietly.
    """
    outbox = Outbox()
    bindings = (
        (ACTION_NOTIFY, handle_notify, notifier),
        (ACTION_RANK_CHECK, handle_rank_check, rank_checker),
        (ACTION_INQUIRY_THREAD, handle_inquiry_thread, inquiry_threads),
    )
    for action, handler, collaborator in bindings:
        if collaborator is None:
            outbox.ignore(action)
        else:
            outbox.register(action, partial(handler, collaborator))
    return outbox
