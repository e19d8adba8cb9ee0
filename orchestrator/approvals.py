"""
Agent Runtime - Approval Tickets

The approval collaborator: REQUEST_APPROVAL creates a ticket here; a human
(or a manual trigger, or the expiry timer) resolves it. Resolution is a
guarded PENDING → resolved update, so competing resolvers of one ticket
cannot both win. Only the winner publishes a DecisionEvent.

The store is transport-agnostic:
  - InMemoryApprovalStore: dev/test, same process
  - SQLApprovalStore:      tickets in the execution database

Consumers list pending tickets and call decide(); they never touch the
execution row directly.
"""

from __future__ import annotations

import abc
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from engine.actions import ActionType
from engine.db import DatabaseBackend
from engine.history import ApprovalOutcomeType
from engine.tools import BaseTool, ToolResult
from orchestrator.channel import DecisionChannel, DecisionEvent

logger = logging.getLogger("agent_runtime.approvals")


# ─── Ticket ──────────────────────────────────────────────────────────

class TicketStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


_OUTCOME_BY_STATUS = {
    TicketStatus.APPROVED: ApprovalOutcomeType.APPROVED,
    TicketStatus.REJECTED: ApprovalOutcomeType.REJECTED,
    TicketStatus.EXPIRED: ApprovalOutcomeType.EXPIRED,
}


@dataclass
class ApprovalTicket:
    """A pending (or resolved) human decision for one execution."""
    ticket_id: str
    execution_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = TicketStatus.PENDING
    created_at: float = 0.0
    resolved_at: float | None = None
    reviewer: str = ""
    notes: str = ""

    @staticmethod
    def create(execution_id: str, content: str, metadata: dict[str, Any] | None = None) -> ApprovalTicket:
        return ApprovalTicket(
            ticket_id=f"apr_{uuid.uuid4().hex[:12]}",
            execution_id=execution_id,
            content=content,
            metadata=dict(metadata or {}),
            created_at=time.time(),
        )

    def to_event(self) -> DecisionEvent | None:
        """The decision this ticket resolved to, or None while pending."""
        outcome = _OUTCOME_BY_STATUS.get(self.status)
        if outcome is None:
            return None
        return DecisionEvent(
            ticket_id=self.ticket_id,
            execution_id=self.execution_id,
            outcome=outcome,
            reviewer=self.reviewer,
            notes=self.notes,
        )


# ─── Abstract Store ──────────────────────────────────────────────────

class ApprovalStore(abc.ABC):
    """
    Ticket persistence plus the publish-after-commit step.

    Subclasses implement _insert/_get/_list/_resolve; decide() and expire()
    are shared so every transport publishes the same way.
    """

    def __init__(self, channel: DecisionChannel | None = None):
        self.channel = channel

    def create_ticket(
        self,
        execution_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        ticket = ApprovalTicket.create(execution_id, content, metadata)
        self._insert(ticket)
        logger.info("Approval ticket %s created for %s", ticket.ticket_id, execution_id,
                    extra={"execution_id": execution_id, "ticket_id": ticket.ticket_id})
        return ticket.ticket_id

    def decide(self, ticket_id: str, approved: bool, reviewer: str = "", notes: str = "") -> bool:
        """
        Resolve a pending ticket and publish the decision.

        Returns False if the ticket is unknown or was already resolved
        (another reviewer, the manual path, or the expiry timer got there
        first).
        """
        status = TicketStatus.APPROVED if approved else TicketStatus.REJECTED
        return self._resolve_and_publish(ticket_id, status, reviewer, notes)

    def expire(self, ticket_id: str) -> bool:
        return self._resolve_and_publish(ticket_id, TicketStatus.EXPIRED, "system", "Approval timed out")

    def cancel(self, ticket_id: str, reason: str = "") -> bool:
        """Withdraw a pending ticket. Publishes nothing."""
        return self._resolve(ticket_id, TicketStatus.CANCELLED, "system", reason)

    def republish(self, ticket_id: str) -> bool:
        """Publish a resolved ticket's decision again (lost-delivery recovery)."""
        ticket = self.get_ticket(ticket_id)
        event = ticket.to_event() if ticket else None
        if event is None or self.channel is None:
            return False
        self.channel.publish(event)
        return True

    def _resolve_and_publish(self, ticket_id: str, status: str, reviewer: str, notes: str) -> bool:
        if not self._resolve(ticket_id, status, reviewer, notes):
            logger.debug("Ticket %s not pending, %s ignored", ticket_id, status)
            return False
        logger.info("Ticket %s resolved %s by %s", ticket_id, status, reviewer or "unknown",
                    extra={"ticket_id": ticket_id})
        if self.channel is not None:
            self.republish(ticket_id)
        return True

    def list_pending(self, execution_id: str | None = None) -> list[ApprovalTicket]:
        return self.list_tickets(status=TicketStatus.PENDING, execution_id=execution_id)

    @abc.abstractmethod
    def _insert(self, ticket: ApprovalTicket) -> None:
        ...

    @abc.abstractmethod
    def _resolve(self, ticket_id: str, status: str, reviewer: str, notes: str) -> bool:
        """PENDING → status, only if still PENDING."""
        ...

    @abc.abstractmethod
    def get_ticket(self, ticket_id: str) -> ApprovalTicket | None:
        ...

    @abc.abstractmethod
    def list_tickets(
        self,
        status: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalTicket]:
        ...


# ─── In-Memory Implementation ────────────────────────────────────────

class InMemoryApprovalStore(ApprovalStore):
    """In-process tickets for dev/test."""

    def __init__(self, channel: DecisionChannel | None = None):
        super().__init__(channel)
        self._tickets: dict[str, ApprovalTicket] = {}
        self._lock = threading.Lock()

    def _insert(self, ticket: ApprovalTicket) -> None:
        with self._lock:
            self._tickets[ticket.ticket_id] = ticket

    def _resolve(self, ticket_id: str, status: str, reviewer: str, notes: str) -> bool:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None or ticket.status != TicketStatus.PENDING:
                return False
            ticket.status = status
            ticket.reviewer = reviewer
            ticket.notes = notes
            ticket.resolved_at = time.time()
            return True

    def get_ticket(self, ticket_id: str) -> ApprovalTicket | None:
        return self._tickets.get(ticket_id)

    def list_tickets(
        self,
        status: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalTicket]:
        tickets = list(self._tickets.values())
        if status:
            tickets = [t for t in tickets if t.status == status]
        if execution_id:
            tickets = [t for t in tickets if t.execution_id == execution_id]
        return sorted(tickets, key=lambda t: t.created_at)


# ─── SQL Implementation ──────────────────────────────────────────────

class SQLApprovalStore(ApprovalStore):
    """Tickets in a database shared with the ExecutionStore."""

    def __init__(self, db: DatabaseBackend, channel: DecisionChannel | None = None):
        super().__init__(channel)
        self.db = db
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS approval_tickets (
                ticket_id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'PENDING',
                created_at REAL NOT NULL,
                resolved_at REAL,
                reviewer TEXT DEFAULT '',
                notes TEXT DEFAULT ''
            );
            CREATE INDEX IF NOT EXISTS idx_tickets_status
                ON approval_tickets(status);
            CREATE INDEX IF NOT EXISTS idx_tickets_execution
                ON approval_tickets(execution_id)
        """)

    def _insert(self, ticket: ApprovalTicket) -> None:
        self.db.execute(
            """INSERT INTO approval_tickets
               (ticket_id, execution_id, content, metadata, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (ticket.ticket_id, ticket.execution_id, ticket.content,
             json.dumps(ticket.metadata, default=str), ticket.status, ticket.created_at),
        )

    def _resolve(self, ticket_id: str, status: str, reviewer: str, notes: str) -> bool:
        cur = self.db.execute(
            """UPDATE approval_tickets
               SET status = ?, reviewer = ?, notes = ?, resolved_at = ?
               WHERE ticket_id = ? AND status = ?""",
            (status, reviewer, notes, time.time(), ticket_id, TicketStatus.PENDING),
        )
        return cur.rowcount == 1

    def get_ticket(self, ticket_id: str) -> ApprovalTicket | None:
        row = self.db.fetchone(
            "SELECT * FROM approval_tickets WHERE ticket_id = ?", (ticket_id,)
        )
        return self._row_to_ticket(row) if row else None

    def list_tickets(
        self,
        status: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalTicket]:
        query = "SELECT * FROM approval_tickets WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if execution_id:
            query += " AND execution_id = ?"
            params.append(execution_id)
        query += " ORDER BY created_at ASC"
        return [self._row_to_ticket(r) for r in self.db.fetchall(query, tuple(params))]

    def _row_to_ticket(self, row: dict[str, Any]) -> ApprovalTicket:
        return ApprovalTicket(
            ticket_id=row["ticket_id"],
            execution_id=row["execution_id"],
            content=row["content"],
            metadata=json.loads(row["metadata"] or "{}"),
            status=row["status"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            reviewer=row["reviewer"] or "",
            notes=row["notes"] or "",
        )


# ─── REQUEST_APPROVAL tool ───────────────────────────────────────────

class RequestApprovalTool(BaseTool):
    """Creates an approval ticket; the run loop suspends on its ticket_id."""

    action_type = ActionType.REQUEST_APPROVAL
    name = "request_approval"
    description = "Create a human approval ticket and suspend the execution"
    parameter_schema = {
        "execution_id": "string (required) - execution being suspended",
        "content": "string (required) - what the reviewer is asked to approve",
        "reason": "string (optional) - why approval is needed",
    }

    def __init__(self, approvals: ApprovalStore):
        self.approvals = approvals

    def run(self, parameters: dict[str, Any]) -> ToolResult:
        metadata = {k: v for k, v in parameters.items()
                    if k not in ("execution_id", "content")}
        ticket_id = self.approvals.create_ticket(
            parameters["execution_id"], parameters["content"], metadata,
        )
        return ToolResult.ok({"ticket_id": ticket_id, "status": TicketStatus.PENDING})
