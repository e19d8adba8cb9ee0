"""
Agent Runtime - Approval Gate

Suspend/resume protocol around REQUEST_APPROVAL.

    RUNNING ──suspend──▶ WAITING_FOR_APPROVAL ──approved──▶ RUNNING (re-driven)
                                 │ ├──rejected──▶ FAILED
                                 │ └──expired───▶ TIMEOUT
                                 └──cancel────▶ STOPPED  (store.request_cancel)

Suspension holds no thread: the run loop persists WAITING_FOR_APPROVAL with
the ticket id and deadline, arms a timer here and returns. The gate is the
channel subscriber for decision events and the only writer of WAITING
transitions. Each transition is one guarded update on
(status == WAITING_FOR_APPROVAL AND approval_ticket_id == X), so a decision
and the timeout racing for the same ticket apply exactly once; the loser
and any redelivery are no-ops. A decision that lands before WAITING commits
finds the execution still RUNNING and is ignored, so suspend() and the
timer both replay the decision of an already-resolved ticket.

Timers live in process memory. After a restart, rearm_waiting() restores
them from persisted deadlines and sweep() expires anything already overdue.
start_sweeper() repeats sweep() on an interval, catching timers lost to a
crash and decisions whose event never arrived.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from engine.history import ApprovalOutcome, ApprovalOutcomeType
from engine.logging import ExecutionLogger
from orchestrator.approvals import ApprovalStore, TicketStatus
from orchestrator.channel import DecisionChannel, DecisionEvent
from orchestrator.store import ExecutionStore
from orchestrator.types import Execution, ExecutionStatus

logger = logging.getLogger("agent_runtime.gate")


class ApprovalGate:
    """Timers, decision handling and crash-recovery sweeps for approvals."""

    def __init__(
        self,
        store: ExecutionStore,
        approvals: ApprovalStore,
        channel: DecisionChannel,
        on_resume: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.approvals = approvals
        self.channel = channel
        self.on_resume = on_resume
        self._clock = clock
        self._timers: dict[str, threading.Timer] = {}
        self._sweeper: threading.Timer | None = None
        self._sweep_interval = 0.0
        self._lock = threading.Lock()
        channel.subscribe(self.handle)

    # ─── Suspension ──────────────────────────────────────────────

    def suspend(self, execution: Execution, ticket_id: str) -> bool:
        """
        RUNNING → WAITING_FOR_APPROVAL on ticket_id, then arm the timer.

        Refused (False) if the execution left RUNNING or a cancel was
        requested while the approval tool was in flight.
        """
        deadline = self._clock() + execution.config.approval_timeout_seconds
        applied = self.store.transition(
            execution.execution_id,
            ExecutionStatus.RUNNING,
            ExecutionStatus.WAITING_FOR_APPROVAL,
            actor="run_loop",
            reason=f"Awaiting approval ticket {ticket_id}",
            require_not_cancelled=True,
            updates={"approval_ticket_id": ticket_id, "approval_deadline": deadline},
        )
        if not applied:
            return False
        self.arm(execution.execution_id, ticket_id, deadline)
        ticket = self.approvals.get_ticket(ticket_id)
        if ticket is not None and ticket.status != TicketStatus.PENDING:
            # Decided before WAITING committed; its first event found us RUNNING
            logger.info("Ticket %s was %s before suspension; replaying the decision",
                        ticket_id, ticket.status,
                        extra={"execution_id": execution.execution_id, "ticket_id": ticket_id})
            self.approvals.republish(ticket_id)
        return True

    def arm(self, execution_id: str, ticket_id: str, deadline: float) -> None:
        delay = max(deadline - self._clock(), 0.0)
        timer = threading.Timer(delay, self._on_timeout, args=(execution_id, ticket_id))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(ticket_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[ticket_id] = timer
        timer.start()
        logger.debug("Armed approval timer for %s in %.1fs", ticket_id, delay,
                     extra={"execution_id": execution_id, "ticket_id": ticket_id})

    def disarm(self, ticket_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(ticket_id, None)
        if timer is not None:
            timer.cancel()

    def armed(self) -> list[str]:
        with self._lock:
            return list(self._timers)

    def _on_timeout(self, execution_id: str, ticket_id: str) -> None:
        with self._lock:
            self._timers.pop(ticket_id, None)
        logger.info("Approval timer fired for ticket %s", ticket_id,
                    extra={"execution_id": execution_id, "ticket_id": ticket_id})
        self._expire(execution_id, ticket_id)

    def _expire(self, execution_id: str, ticket_id: str) -> bool:
        """Expire the ticket; the published EXPIRED event drives TIMEOUT."""
        if self.approvals.expire(ticket_id):
            return True
        ticket = self.approvals.get_ticket(ticket_id)
        if ticket is None:
            # Ticket unknown to the approval store: expire the execution directly
            self.channel.publish(DecisionEvent(
                ticket_id=ticket_id,
                execution_id=execution_id,
                outcome=ApprovalOutcomeType.EXPIRED,
                reviewer="system",
                notes="Approval timed out",
            ))
            return True
        current = self.store.get_execution(execution_id)
        if (current is not None
                and current.status == ExecutionStatus.WAITING_FOR_APPROVAL
                and current.approval_ticket_id == ticket_id):
            # Decided, but the event never landed while we were waiting
            return self.approvals.republish(ticket_id)
        return False

    # ─── Resume handler ──────────────────────────────────────────

    def handle(self, event: DecisionEvent) -> bool:
        """
        Apply a decision event. Idempotent: returns False (and changes
        nothing) when the execution is no longer waiting on this ticket.
        """
        execution = self.store.get_execution(event.execution_id)
        if execution is None:
            logger.warning("Decision for unknown execution %s (ticket %s)",
                           event.execution_id, event.ticket_id)
            return False
        if (execution.status != ExecutionStatus.WAITING_FOR_APPROVAL
                or execution.approval_ticket_id != event.ticket_id):
            logger.debug("Ignoring %s for ticket %s: execution is %s",
                         event.outcome.value, event.ticket_id, execution.status.value)
            return False

        outcome = ApprovalOutcome(
            ticket_id=event.ticket_id,
            execution_id=execution.execution_id,
            iteration=execution.current_iteration - 1,
            outcome=event.outcome,
            reviewer=event.reviewer,
            notes=event.notes,
        )
        actor = f"reviewer:{event.reviewer}" if event.reviewer else "approval"

        if event.outcome == ApprovalOutcomeType.APPROVED:
            applied = self.store.transition(
                execution.execution_id,
                ExecutionStatus.WAITING_FOR_APPROVAL,
                ExecutionStatus.RUNNING,
                actor=actor,
                reason=event.notes or "Approved",
                ticket_id=event.ticket_id,
                updates={"approval_deadline": None},
                outcome=outcome,
            )
        elif event.outcome == ApprovalOutcomeType.REJECTED:
            applied = self.store.transition(
                execution.execution_id,
                ExecutionStatus.WAITING_FOR_APPROVAL,
                ExecutionStatus.FAILED,
                actor=actor,
                reason=event.notes or "Rejected",
                ticket_id=event.ticket_id,
                updates={
                    "error_message": f"Approval rejected by {event.reviewer or 'reviewer'}"
                                     + (f": {event.notes}" if event.notes else ""),
                    "approval_deadline": None,
                },
                outcome=outcome,
            )
        else:
            applied = self.store.transition(
                execution.execution_id,
                ExecutionStatus.WAITING_FOR_APPROVAL,
                ExecutionStatus.TIMEOUT,
                actor="timer",
                reason="Approval timed out",
                ticket_id=event.ticket_id,
                updates={
                    "error_message": (
                        f"No approval decision within "
                        f"{execution.config.approval_timeout_seconds:g}s"
                    ),
                },
                outcome=outcome,
            )

        if not applied:
            return False

        self.disarm(event.ticket_id)
        ExecutionLogger(
            execution.execution_id, execution.agent_type, execution.parent_execution_id,
        ).on_decision_applied(event.ticket_id, event.outcome.value, event.reviewer)

        if event.outcome == ApprovalOutcomeType.APPROVED and self.on_resume is not None:
            self.on_resume(execution.execution_id)
        return True

    # ─── Recovery ────────────────────────────────────────────────

    def sweep(self, now: float | None = None) -> int:
        """
        Resolve WAITING executions whose deadline has passed.

        A pending ticket is expired. A ticket that was decided but whose
        event never reached us (crash between commit and publish) has its
        decision published again. Returns the number of executions acted on.
        """
        now = self._clock() if now is None else now
        count = 0
        for execution in self.store.find_overdue(now):
            ticket_id = execution.approval_ticket_id
            if not ticket_id:
                continue
            self.disarm(ticket_id)
            if self._expire(execution.execution_id, ticket_id):
                count += 1
        if count:
            logger.info("Approval sweep resolved %d overdue executions", count)
        return count

    # ─── Periodic sweep ──────────────────────────────────────────

    def start_sweeper(self, interval: float) -> bool:
        """Run sweep() every interval seconds on a daemon timer until stopped."""
        if interval <= 0:
            return False
        with self._lock:
            if self._sweep_interval:
                return False
            self._sweep_interval = interval
            self._schedule_sweep()
        logger.info("Approval sweeper started: every %gs", interval)
        return True

    def stop_sweeper(self) -> None:
        with self._lock:
            self._sweep_interval = 0.0
            timer, self._sweeper = self._sweeper, None
        if timer is not None:
            timer.cancel()

    def _schedule_sweep(self) -> None:
        # Caller holds self._lock
        timer = threading.Timer(self._sweep_interval, self._periodic_sweep)
        timer.daemon = True
        self._sweeper = timer
        timer.start()

    def _periodic_sweep(self) -> None:
        try:
            self.sweep()
        except Exception as e:
            logger.error("Approval sweep failed: %s", e, exc_info=True)
        with self._lock:
            if self._sweep_interval:
                self._schedule_sweep()

    def rearm_waiting(self) -> int:
        """Restore timers for every WAITING execution (after a restart)."""
        count = 0
        for execution in self.store.find_waiting():
            if execution.approval_ticket_id and execution.approval_deadline is not None:
                self.arm(execution.execution_id, execution.approval_ticket_id,
                         execution.approval_deadline)
                count += 1
        return count

    def shutdown(self) -> None:
        self.stop_sweeper()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
