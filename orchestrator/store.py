"""
Agent Runtime - Execution Store

Durable state for executions, their ActionRecord audit log, folded-in
approval outcomes and the status transition log.

Every status change is a single conditional UPDATE guarded on the current
status (and, for approval decisions, on the ticket id). A lost race is
reported as False, never raised. ActionRecords are only ever inserted, and
only while the execution is RUNNING. Each record commits in its own
transaction before the counter write, and reads derive current_iteration,
total_actions and total_cost from the log, so a failed counter write never
loses the record or its cost.

Usage:
    store = ExecutionStore(create_backend("sqlite", path="agent_runtime.db"))
    store.create_execution(execution)
    store.append_action(record)
    applied = store.transition(eid, ExecutionStatus.WAITING_FOR_APPROVAL,
                               ExecutionStatus.TIMEOUT, actor="timer",
                               ticket_id=ticket_id)
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Iterable

from engine.actions import ActionType
from engine.db import DatabaseBackend, SQLiteBackend, TransientInfrastructureError
from engine.history import ActionHistory, ActionRecord, ApprovalOutcome, ApprovalOutcomeType
from engine.resilience import retry_transient
from orchestrator.types import (
    AgentConfig,
    Execution,
    ExecutionStatus,
    Goal,
    TransitionRecord,
    check_transition,
)

logger = logging.getLogger("agent_runtime.store")


class StaleExecutionError(Exception):
    """An ActionRecord was offered for an execution that is no longer RUNNING."""
    pass


class DuplicateIterationError(StaleExecutionError):
    """Another driver already recorded this iteration."""
    pass


# Columns a transition may set besides status
_TRANSITION_COLUMNS = {
    "result", "error_message", "approval_ticket_id", "approval_deadline",
}


SCHEMA = """
    CREATE TABLE IF NOT EXISTS executions (
        execution_id TEXT PRIMARY KEY,
        agent_type TEXT NOT NULL,
        status TEXT NOT NULL,
        goal TEXT NOT NULL,
        config TEXT NOT NULL,
        current_iteration INTEGER NOT NULL DEFAULT 0,
        total_actions INTEGER NOT NULL DEFAULT 0,
        total_cost REAL NOT NULL DEFAULT 0.0,
        started_at REAL NOT NULL,
        completed_at REAL,
        updated_at REAL NOT NULL,
        result TEXT,
        error_message TEXT,
        requested_by TEXT DEFAULT '',
        parent_execution_id TEXT,
        approval_ticket_id TEXT,
        approval_deadline REAL,
        cancel_requested INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS action_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        iteration INTEGER NOT NULL,
        action_type TEXT NOT NULL,
        input TEXT NOT NULL,
        output TEXT NOT NULL,
        success INTEGER NOT NULL,
        error_message TEXT,
        cost_units REAL NOT NULL DEFAULT 0.0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        reasoning TEXT DEFAULT '',
        created_at REAL NOT NULL,
        UNIQUE (execution_id, iteration)
    );

    CREATE TABLE IF NOT EXISTS approval_outcomes (
        ticket_id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        iteration INTEGER NOT NULL,
        outcome TEXT NOT NULL,
        reviewer TEXT DEFAULT '',
        notes TEXT DEFAULT '',
        decided_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS transitions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        from_status TEXT NOT NULL,
        to_status TEXT NOT NULL,
        actor TEXT NOT NULL,
        reason TEXT DEFAULT '',
        at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_exec_status ON executions(status);
    CREATE INDEX IF NOT EXISTS idx_exec_ticket ON executions(approval_ticket_id);
    CREATE INDEX IF NOT EXISTS idx_actions_exec ON action_records(execution_id);
    CREATE INDEX IF NOT EXISTS idx_outcomes_exec ON approval_outcomes(execution_id);
    CREATE INDEX IF NOT EXISTS idx_transitions_exec ON transitions(execution_id)
"""

# Counters are read from the action log, so a deferred counter write never shows
_SELECT_EXECUTION = """
    SELECT e.*,
           COALESCE((SELECT MAX(a.iteration) + 1 FROM action_records a
                     WHERE a.execution_id = e.execution_id), 0) AS logged_iteration,
           (SELECT COUNT(*) FROM action_records a
            WHERE a.execution_id = e.execution_id) AS logged_actions,
           COALESCE((SELECT SUM(a.cost_units) FROM action_records a
                     WHERE a.execution_id = e.execution_id), 0) AS logged_cost
    FROM executions e
"""


class ExecutionStore:
    """Conditional-update store for executions and their audit log."""

    def __init__(self, db: DatabaseBackend | None = None, max_write_attempts: int = 4):
        self.db = db or SQLiteBackend(":memory:")
        self.max_write_attempts = max_write_attempts
        self.db.executescript(SCHEMA)

    # ── Write plumbing ──────────────────────────────────────────

    def _write(self, label: str, fn: Callable[[], Any]) -> Any:
        """Run a write with bounded retry on transient backend errors."""
        try:
            return retry_transient(
                fn,
                retry_on=self.db.transient_errors,
                max_attempts=self.max_write_attempts,
                label=label,
            )
        except self.db.transient_errors as e:
            raise TransientInfrastructureError(f"{label} failed: {e}") from e

    # ── Executions ──────────────────────────────────────────────

    def create_execution(self, execution: Execution) -> None:
        def _insert():
            self.db.execute(
                """INSERT INTO executions
                   (execution_id, agent_type, status, goal, config,
                    current_iteration, total_actions, total_cost,
                    started_at, completed_at, updated_at, result, error_message,
                    requested_by, parent_execution_id, approval_ticket_id,
                    approval_deadline, cancel_requested)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    execution.execution_id,
                    execution.agent_type,
                    execution.status.value,
                    json.dumps(execution.goal.to_dict()),
                    json.dumps(execution.config.to_dict()),
                    execution.current_iteration,
                    execution.total_actions,
                    execution.total_cost,
                    execution.started_at,
                    execution.completed_at,
                    execution.updated_at,
                    json.dumps(execution.result) if execution.result is not None else None,
                    execution.error_message,
                    execution.requested_by,
                    execution.parent_execution_id,
                    execution.approval_ticket_id,
                    execution.approval_deadline,
                    1 if execution.cancel_requested else 0,
                ),
            )
        self._write("create_execution", _insert)
        logger.debug("Created execution %s", execution.execution_id,
                     extra={"execution_id": execution.execution_id})

    def get_execution(self, execution_id: str) -> Execution | None:
        row = self.db.fetchone(
            f"{_SELECT_EXECUTION} WHERE e.execution_id = ?", (execution_id,)
        )
        return self._row_to_execution(row) if row else None

    def list_executions(
        self,
        status: ExecutionStatus | None = None,
        agent_type: str | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        clauses, params = [], []
        if status is not None:
            clauses.append("e.status = ?")
            params.append(ExecutionStatus(status).value)
        if agent_type:
            clauses.append("e.agent_type = ?")
            params.append(agent_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.fetchall(
            f"{_SELECT_EXECUTION} {where} ORDER BY e.started_at DESC LIMIT ?",
            tuple(params) + (limit,),
        )
        return [self._row_to_execution(r) for r in rows]

    def find_by_ticket(self, ticket_id: str) -> Execution | None:
        row = self.db.fetchone(
            f"{_SELECT_EXECUTION} WHERE e.approval_ticket_id = ?", (ticket_id,)
        )
        return self._row_to_execution(row) if row else None

    def _row_to_execution(self, row: dict[str, Any]) -> Execution:
        return Execution(
            execution_id=row["execution_id"],
            agent_type=row["agent_type"],
            status=ExecutionStatus(row["status"]),
            goal=Goal.from_dict(json.loads(row["goal"])),
            config=AgentConfig.from_mapping(json.loads(row["config"])),
            current_iteration=int(row["logged_iteration"]),
            total_actions=int(row["logged_actions"]),
            total_cost=float(row["logged_cost"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
            result=json.loads(row["result"]) if row["result"] else None,
            error_message=row["error_message"],
            requested_by=row["requested_by"] or "",
            parent_execution_id=row["parent_execution_id"],
            approval_ticket_id=row["approval_ticket_id"],
            approval_deadline=row["approval_deadline"],
            cancel_requested=bool(row["cancel_requested"]),
        )

    # ── Guarded transitions ─────────────────────────────────────

    def transition(
        self,
        execution_id: str,
        from_status: ExecutionStatus,
        to_status: ExecutionStatus,
        *,
        actor: str,
        reason: str = "",
        ticket_id: str | None = None,
        require_not_cancelled: bool = False,
        updates: dict[str, Any] | None = None,
        outcome: ApprovalOutcome | None = None,
    ) -> bool:
        """
        Apply from_status → to_status only if the row is still in from_status
        (and still suspended on ticket_id, when given).

        The transition log row and any approval outcome are written in the
        same transaction, so only the winner of a race leaves a trace.
        Returns False when the guard did not match.
        """
        check_transition(from_status, to_status)
        updates = dict(updates or {})
        unknown = set(updates) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Transition cannot set columns: {sorted(unknown)}")

        now = time.time()
        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to_status.value, now]
        if to_status.is_terminal:
            sets.append("completed_at = ?")
            params.append(now)
        for column, value in updates.items():
            sets.append(f"{column} = ?")
            params.append(json.dumps(value) if column == "result" and value is not None else value)

        where = ["execution_id = ?", "status = ?"]
        params.extend([execution_id, from_status.value])
        if ticket_id is not None:
            where.append("approval_ticket_id = ?")
            params.append(ticket_id)
        if require_not_cancelled:
            where.append("cancel_requested = 0")

        sql = f"UPDATE executions SET {', '.join(sets)} WHERE {' AND '.join(where)}"

        def _apply() -> bool:
            with self.db.transaction():
                cur = self.db.execute(sql, tuple(params))
                if cur.rowcount != 1:
                    return False
                self._insert_transition(TransitionRecord(
                    execution_id=execution_id,
                    from_status=from_status,
                    to_status=to_status,
                    actor=actor,
                    reason=reason,
                    at=now,
                ))
                if outcome is not None:
                    self._insert_outcome(outcome)
                return True

        applied = self._write(f"transition {from_status.value}->{to_status.value}", _apply)
        if applied:
            logger.info(
                "Execution %s: %s -> %s (%s)",
                execution_id, from_status.value, to_status.value, actor,
                extra={"execution_id": execution_id, "to_status": to_status.value},
            )
        else:
            logger.debug(
                "Transition %s -> %s for %s not applied (guard did not match)",
                from_status.value, to_status.value, execution_id,
            )
        return applied

    def request_cancel(self, execution_id: str, actor: str = "cancel") -> ExecutionStatus | None:
        """
        Cooperative cancel.

        WAITING_FOR_APPROVAL → STOPPED immediately (returns STOPPED).
        RUNNING → cancel flag set, loop stops at its next iteration
        boundary (returns RUNNING). Terminal or unknown → None.
        """
        now = time.time()

        def _apply() -> ExecutionStatus | None:
            with self.db.transaction():
                cur = self.db.execute(
                    """UPDATE executions
                       SET status = ?, cancel_requested = 1, completed_at = ?, updated_at = ?
                       WHERE execution_id = ? AND status = ?""",
                    (ExecutionStatus.STOPPED.value, now, now, execution_id,
                     ExecutionStatus.WAITING_FOR_APPROVAL.value),
                )
                if cur.rowcount == 1:
                    self._insert_transition(TransitionRecord(
                        execution_id=execution_id,
                        from_status=ExecutionStatus.WAITING_FOR_APPROVAL,
                        to_status=ExecutionStatus.STOPPED,
                        actor=actor,
                        reason="Cancelled while waiting for approval",
                        at=now,
                    ))
                    return ExecutionStatus.STOPPED
                cur = self.db.execute(
                    """UPDATE executions SET cancel_requested = 1, updated_at = ?
                       WHERE execution_id = ? AND status = ?""",
                    (now, execution_id, ExecutionStatus.RUNNING.value),
                )
                if cur.rowcount == 1:
                    return ExecutionStatus.RUNNING
                return None

        return self._write("request_cancel", _apply)

    def is_cancel_requested(self, execution_id: str) -> bool:
        row = self.db.fetchone(
            "SELECT cancel_requested FROM executions WHERE execution_id = ?",
            (execution_id,),
        )
        return bool(row and row["cancel_requested"])

    def _insert_transition(self, t: TransitionRecord) -> None:
        self.db.execute(
            """INSERT INTO transitions
               (execution_id, from_status, to_status, actor, reason, at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (t.execution_id, t.from_status.value, t.to_status.value,
             t.actor, t.reason, t.at),
        )

    def _insert_outcome(self, o: ApprovalOutcome) -> None:
        self.db.execute(
            """INSERT INTO approval_outcomes
               (ticket_id, execution_id, iteration, outcome, reviewer, notes, decided_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (o.ticket_id, o.execution_id, o.iteration, o.outcome.value,
             o.reviewer, o.notes, o.decided_at),
        )

    def list_transitions(self, execution_id: str) -> list[TransitionRecord]:
        rows = self.db.fetchall(
            "SELECT * FROM transitions WHERE execution_id = ? ORDER BY id",
            (execution_id,),
        )
        return [
            TransitionRecord(
                execution_id=r["execution_id"],
                from_status=ExecutionStatus(r["from_status"]),
                to_status=ExecutionStatus(r["to_status"]),
                actor=r["actor"],
                reason=r["reason"] or "",
                at=r["at"],
            )
            for r in rows
        ]

    # ── Action records ──────────────────────────────────────────

    def append_action(self, record: ActionRecord) -> None:
        """
        Insert one ActionRecord, only while the execution is RUNNING, then
        bring the execution's counters up to date in a second write.

        The record commits on its own: once the tool has run, its record and
        cost survive even if the counter write fails afterwards. A failed
        counter write is logged and left for reconcile_counters(); reads
        derive the counters from the log in the meantime.

        Raises StaleExecutionError if the execution left RUNNING, and
        DuplicateIterationError if the iteration number is already taken.
        """
        def _insert():
            cur = self.db.execute(
                """INSERT INTO action_records
                   (execution_id, iteration, action_type, input, output, success,
                    error_message, cost_units, duration_ms, reasoning, created_at)
                   SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                   WHERE EXISTS (SELECT 1 FROM executions
                                 WHERE execution_id = ? AND status = ?)""",
                (
                    record.execution_id,
                    record.iteration,
                    record.action_type.value,
                    json.dumps(record.input, default=str),
                    json.dumps(record.output, default=str),
                    1 if record.success else 0,
                    record.error_message,
                    record.cost_units,
                    record.duration_ms,
                    record.reasoning,
                    record.created_at,
                    record.execution_id,
                    ExecutionStatus.RUNNING.value,
                ),
            )
            if cur.rowcount != 1:
                raise StaleExecutionError(
                    f"Execution {record.execution_id} is not RUNNING; "
                    f"iteration {record.iteration} not recorded"
                )

        try:
            self._write("append_action", _insert)
        except self.db.integrity_errors as e:
            raise DuplicateIterationError(
                f"Iteration {record.iteration} of {record.execution_id} already recorded"
            ) from e

        try:
            self.reconcile_counters(record.execution_id)
        except TransientInfrastructureError as e:
            logger.warning("Iteration %d of %s recorded; counter update deferred: %s",
                           record.iteration, record.execution_id, e,
                           extra={"execution_id": record.execution_id})

    def reconcile_counters(self, execution_id: str) -> None:
        """Rewrite current_iteration, total_actions and total_cost from the action log."""
        def _update():
            self.db.execute(
                """UPDATE executions
                   SET current_iteration = COALESCE((SELECT MAX(iteration) + 1
                                                     FROM action_records
                                                     WHERE execution_id = ?), 0),
                       total_actions = (SELECT COUNT(*) FROM action_records
                                        WHERE execution_id = ?),
                       total_cost = COALESCE((SELECT SUM(cost_units) FROM action_records
                                              WHERE execution_id = ?), 0),
                       updated_at = ?
                   WHERE execution_id = ?""",
                (execution_id, execution_id, execution_id, time.time(), execution_id),
            )
        self._write("reconcile_counters", _update)

    def list_actions(self, execution_id: str) -> list[ActionRecord]:
        rows = self.db.fetchall(
            "SELECT * FROM action_records WHERE execution_id = ? ORDER BY iteration",
            (execution_id,),
        )
        return [
            ActionRecord(
                execution_id=r["execution_id"],
                iteration=r["iteration"],
                action_type=ActionType(r["action_type"]),
                input=json.loads(r["input"]),
                output=json.loads(r["output"]),
                success=bool(r["success"]),
                error_message=r["error_message"],
                cost_units=r["cost_units"],
                duration_ms=r["duration_ms"],
                reasoning=r["reasoning"] or "",
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def list_outcomes(self, execution_id: str) -> list[ApprovalOutcome]:
        rows = self.db.fetchall(
            "SELECT * FROM approval_outcomes WHERE execution_id = ? ORDER BY iteration",
            (execution_id,),
        )
        return [
            ApprovalOutcome(
                ticket_id=r["ticket_id"],
                execution_id=r["execution_id"],
                iteration=r["iteration"],
                outcome=ApprovalOutcomeType(r["outcome"]),
                reviewer=r["reviewer"] or "",
                notes=r["notes"] or "",
                decided_at=r["decided_at"],
            )
            for r in rows
        ]

    def load_history(self, execution_id: str) -> ActionHistory:
        """Rebuild the planner-visible history from the audit log."""
        return ActionHistory.from_records(
            self.list_actions(execution_id),
            self.list_outcomes(execution_id),
        )

    # ── Queries ─────────────────────────────────────────────────

    def find_waiting(self) -> list[Execution]:
        return self.list_executions(status=ExecutionStatus.WAITING_FOR_APPROVAL, limit=10_000)

    def find_running(self) -> list[Execution]:
        return self.list_executions(status=ExecutionStatus.RUNNING, limit=10_000)

    def find_overdue(self, now: float | None = None) -> list[Execution]:
        now = time.time() if now is None else now
        rows = self.db.fetchall(
            f"""{_SELECT_EXECUTION}
                WHERE e.status = ? AND e.approval_deadline IS NOT NULL
                  AND e.approval_deadline <= ?""",
            (ExecutionStatus.WAITING_FOR_APPROVAL.value, now),
        )
        return [self._row_to_execution(r) for r in rows]

    def stats(self) -> dict[str, Any]:
        by_status = {
            r["status"]: r["n"]
            for r in self.db.fetchall(
                "SELECT status, COUNT(*) AS n FROM executions GROUP BY status"
            )
        }
        totals = self.db.fetchone(
            "SELECT COUNT(*) AS n, COALESCE(SUM(cost_units), 0) AS cost FROM action_records"
        ) or {"n": 0, "cost": 0.0}
        return {
            "executions_by_status": by_status,
            "total_actions": totals["n"],
            "total_cost": totals["cost"],
        }

    def close(self):
        self.db.close()


def check_invariants(execution: Execution, records: Iterable[ActionRecord]) -> list[str]:
    """Counter/audit-log consistency problems for one execution (empty when sound)."""
    records = list(records)
    problems = []
    iterations = [r.iteration for r in records]
    if len(iterations) != len(set(iterations)):
        problems.append("duplicate iteration numbers")
    if execution.total_actions != len(records):
        problems.append(f"total_actions {execution.total_actions} != {len(records)} records")
    expected_iteration = max(iterations) + 1 if iterations else 0
    if execution.current_iteration != expected_iteration:
        problems.append(
            f"current_iteration {execution.current_iteration} != {expected_iteration}"
        )
    cost = sum(r.cost_units for r in records)
    if abs(execution.total_cost - cost) > 1e-9:
        problems.append(f"total_cost {execution.total_cost} != {cost}")
    return problems
