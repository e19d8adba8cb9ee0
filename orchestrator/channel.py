"""
Agent Runtime - Decision Channel

Message passing between whoever resolves an approval ticket (a reviewer UI,
a manual trigger, the expiry timer) and the resume handler. Resolution
commits first, then publishes a DecisionEvent; the ApprovalGate subscribes
and is the only writer that moves an execution out of WAITING_FOR_APPROVAL.

Delivery is at-least-once. Subscribers must be idempotent.

Transports:
  - InlineDecisionChannel: dispatch in the publisher's thread (dev/test)
  - QueueDecisionChannel:  background consumer thread with redelivery
"""

from __future__ import annotations

import abc
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.history import ApprovalOutcomeType

logger = logging.getLogger("agent_runtime.channel")


@dataclass(frozen=True)
class DecisionEvent:
    """A resolved approval ticket, or its expiry."""
    ticket_id: str
    execution_id: str
    outcome: ApprovalOutcomeType
    reviewer: str = ""
    notes: str = ""
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    published_at: float = field(default_factory=time.time)

    @property
    def approved(self) -> bool:
        return self.outcome == ApprovalOutcomeType.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "execution_id": self.execution_id,
            "outcome": self.outcome.value,
            "reviewer": self.reviewer,
            "notes": self.notes,
            "event_id": self.event_id,
            "published_at": self.published_at,
        }


Subscriber = Callable[[DecisionEvent], Any]


class DecisionChannel(abc.ABC):
    """Publish/subscribe transport for decision events."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    @abc.abstractmethod
    def publish(self, event: DecisionEvent) -> None:
        ...

    def close(self) -> None:
        pass


class InlineDecisionChannel(DecisionChannel):
    """Synchronous dispatch. Subscriber exceptions reach the publisher."""

    def publish(self, event: DecisionEvent) -> None:
        logger.debug("Publishing %s for ticket %s", event.outcome.value, event.ticket_id)
        for handler in list(self._subscribers):
            handler(event)


class QueueDecisionChannel(DecisionChannel):
    """
    Background consumer. A subscriber that raises gets the event again,
    up to max_deliveries, after retry_delay seconds.
    """

    def __init__(self, max_deliveries: int = 5, retry_delay: float = 1.0):
        super().__init__()
        self.max_deliveries = max_deliveries
        self.retry_delay = retry_delay
        self._queue: queue.Queue = queue.Queue()
        self._stopped = threading.Event()
        self._redeliveries = 0
        self._redeliveries_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._consume, name="decision-channel", daemon=True,
        )
        self._thread.start()

    def publish(self, event: DecisionEvent) -> None:
        self._queue.put((event, 1))

    def join(self, timeout: float | None = None) -> bool:
        """
        Wait until every queued event has been handled, including events
        waiting out retry_delay before redelivery. For tests/shutdown.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._queue.unfinished_tasks or self._redeliveries:
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(0.01)
        return True

    def _consume(self):
        while not self._stopped.is_set():
            try:
                event, attempt = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                for handler in list(self._subscribers):
                    handler(event)
            except Exception as e:
                if attempt < self.max_deliveries:
                    logger.warning(
                        "Handler failed for %s (delivery %d/%d), redelivering: %s",
                        event.event_id, attempt, self.max_deliveries, e,
                    )
                    self._schedule_redelivery(event, attempt + 1)
                else:
                    logger.error(
                        "Dropping %s for ticket %s after %d deliveries: %s",
                        event.event_id, event.ticket_id, attempt, e, exc_info=True,
                    )
            finally:
                self._queue.task_done()

    def _schedule_redelivery(self, event: DecisionEvent, attempt: int) -> None:
        with self._redeliveries_lock:
            self._redeliveries += 1
        timer = threading.Timer(self.retry_delay, self._redeliver, args=(event, attempt))
        timer.daemon = True
        timer.start()

    def _redeliver(self, event: DecisionEvent, attempt: int) -> None:
        # Queued before the count drops so join() never sees an empty gap
        self._queue.put((event, attempt))
        with self._redeliveries_lock:
            self._redeliveries -= 1

    def close(self) -> None:
        self._stopped.set()
        self._thread.join(timeout=2)
