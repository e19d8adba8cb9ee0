"""
Agent Runtime - Run Loop

Drives one execution from its persisted row and ActionRecord history until
it reaches a terminal status or suspends for approval.

Per iteration, in order:
  1. cancel flag set                 → STOPPED
  2. accumulated cost over ceiling   → BUDGET_EXCEEDED
  3. plan(goal, history)             → Done: SUCCEEDED
  4. iteration budget exhausted      → BUDGET_EXCEEDED, nothing executed
  5. Abort                           → FAILED
  6. resolve the tool                → miss: FAILED (not retried)
  7. execute, commit the record, then the counters; re-check cost
  8. successful REQUEST_APPROVAL     → WAITING_FOR_APPROVAL, drive returns
  9. anything else, including a failed tool, goes round again; the
     planner decides what a failure means

The planner is still consulted once the iteration budget is spent, so a
goal the last permitted action completed ends SUCCEEDED.

drive() is safe to call for any execution id at any time: it does nothing
unless the row is RUNNING, and two drivers racing on one execution cannot
both record the same iteration.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Mapping

from agents import PLANNERS, AgentType, Abort, Done, Planner, apply_approval_policy
from engine.actions import ActionType
from engine.budget import BudgetTracker
from engine.db import TransientInfrastructureError
from engine.history import ActionHistory, ActionRecord
from engine.logging import ExecutionLogger
from engine.tools import ConfigurationError, ToolNotRegistered, ToolRegistry, ToolResult
from orchestrator.gate import ApprovalGate
from orchestrator.store import DuplicateIterationError, ExecutionStore, StaleExecutionError
from orchestrator.types import Execution, ExecutionStatus

logger = logging.getLogger("agent_runtime.run_loop")


class RunLoop:
    """The per-execution state machine. Stateless between drive() calls."""

    def __init__(
        self,
        store: ExecutionStore,
        tools: ToolRegistry,
        gate: ApprovalGate,
        planners: Mapping[AgentType, Planner] | None = None,
    ):
        self.store = store
        self.tools = tools
        self.gate = gate
        self.planners = dict(planners or PLANNERS)
        self._active: set[str] = set()
        self._rerun: set[str] = set()
        self._active_lock = threading.Lock()

    def drive(self, execution_id: str) -> ExecutionStatus | None:
        """
        Run the execution until it leaves RUNNING. Returns the status it
        was left in (None for an unknown id).

        TransientInfrastructureError from the store propagates; the row
        stays RUNNING and a later drive() picks up from the history.
        """
        with self._active_lock:
            if execution_id in self._active:
                # The active driver runs once more when it finishes
                self._rerun.add(execution_id)
                logger.debug("Execution %s is already being driven", execution_id)
                return None
            self._active.add(execution_id)
        try:
            while True:
                status = self._drive(execution_id)
                with self._active_lock:
                    if execution_id not in self._rerun:
                        self._active.discard(execution_id)
                        return status
                    self._rerun.discard(execution_id)
        except BaseException:
            with self._active_lock:
                self._active.discard(execution_id)
                self._rerun.discard(execution_id)
            raise

    def _drive(self, execution_id: str) -> ExecutionStatus | None:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            logger.warning("drive() called for unknown execution %s", execution_id)
            return None
        if execution.status != ExecutionStatus.RUNNING:
            logger.debug("Execution %s is %s, nothing to drive",
                         execution_id, execution.status.value)
            return execution.status

        try:
            self.store.reconcile_counters(execution_id)
        except TransientInfrastructureError as e:
            logger.warning("Counter reconcile for %s deferred: %s", execution_id, e,
                           extra={"execution_id": execution_id})

        trace = ExecutionLogger(execution_id, execution.agent_type,
                                execution.parent_execution_id)
        history = self.store.load_history(execution_id)
        if not len(history):
            trace.on_execution_start(execution.goal.goal_type, execution.requested_by)

        try:
            planner = self._planner(execution.agent_type)
        except ConfigurationError as e:
            return self._finish(execution, trace, history, ExecutionStatus.FAILED, error=str(e))

        budget = BudgetTracker(execution.config.max_iterations, execution.config.max_cost_units)

        while True:
            iteration = history.next_iteration

            if self.store.is_cancel_requested(execution_id):
                return self._finish(execution, trace, history, ExecutionStatus.STOPPED,
                                    reason="Cancellation requested")

            exhausted = budget.iterations_exhausted(iteration)
            verdict = budget.cost_exceeded(history.total_cost)
            if verdict:
                return self._finish(execution, trace, history, ExecutionStatus.BUDGET_EXCEEDED,
                                    error=(exhausted or verdict).reason)

            if not exhausted:
                trace.on_iteration_start(iteration, history.total_cost)

            try:
                decision = planner(execution.goal, history)
            except Exception as e:
                logger.error("Planner for %s raised at iteration %d: %s",
                             execution_id, iteration, e, exc_info=True,
                             extra={"execution_id": execution_id})
                return self._finish(execution, trace, history, ExecutionStatus.FAILED,
                                    error=f"Planner error: {e}")
            decision = apply_approval_policy(decision, execution.config, history)

            if isinstance(decision, Done):
                trace.on_plan(iteration, "done", reasoning=decision.summary)
                return self._finish(
                    execution, trace, history, ExecutionStatus.SUCCEEDED,
                    result={"summary": decision.summary, **decision.outputs},
                    reason=decision.summary,
                )
            if exhausted:
                # Every iteration is spent; only a finished goal gets out of this
                return self._finish(execution, trace, history,
                                    ExecutionStatus.BUDGET_EXCEEDED, error=exhausted.reason)
            if isinstance(decision, Abort):
                trace.on_plan(iteration, "abort", reasoning=decision.reason)
                return self._finish(execution, trace, history, ExecutionStatus.FAILED,
                                    error=decision.reason)

            action_type = decision.action_type
            trace.on_plan(iteration, "action", action_type.value, decision.reasoning)

            try:
                tool = self.tools.resolve(action_type)
            except ToolNotRegistered as e:
                logger.error("No tool for %s in execution %s", action_type.value, execution_id,
                             extra={"execution_id": execution_id})
                return self._finish(execution, trace, history, ExecutionStatus.FAILED,
                                    error=str(e))

            parameters = {**decision.parameters, "execution_id": execution_id}
            started = time.monotonic()
            result = self.tools.execute(tool, parameters)
            duration_ms = int((time.monotonic() - started) * 1000)

            record = ActionRecord(
                execution_id=execution_id,
                iteration=iteration,
                action_type=action_type,
                input=parameters,
                output=dict(result.output),
                success=result.success,
                error_message=result.error_message,
                cost_units=result.cost_units,
                duration_ms=duration_ms,
                reasoning=decision.reasoning,
            )
            try:
                self.store.append_action(record)
            except DuplicateIterationError:
                logger.warning("Iteration %d of %s was recorded by another driver; yielding",
                               iteration, execution_id)
                self._withdraw(action_type, result)
                return self._current_status(execution_id)
            except StaleExecutionError:
                logger.info("Execution %s left RUNNING while %s was in flight",
                            execution_id, action_type.value)
                self._withdraw(action_type, result)
                return self._current_status(execution_id)

            history.append(record)
            trace.on_action_complete(iteration, action_type.value, result.success,
                                     result.cost_units, duration_ms,
                                     result.error_message or "")

            verdict = budget.check_after_action(history.total_cost)
            if verdict:
                self._withdraw(action_type, result)
                return self._finish(execution, trace, history,
                                    ExecutionStatus.BUDGET_EXCEEDED, error=verdict.reason)

            if action_type == ActionType.REQUEST_APPROVAL and result.success:
                return self._suspend(execution, trace, history, result)

    # ─── Helpers ─────────────────────────────────────────────────

    def _planner(self, agent_type: str) -> Planner:
        try:
            return self.planners[AgentType(agent_type)]
        except (ValueError, KeyError):
            raise ConfigurationError(f"No planner for agent type {agent_type!r}") from None

    def _suspend(
        self,
        execution: Execution,
        trace: ExecutionLogger,
        history: ActionHistory,
        result: ToolResult,
    ) -> ExecutionStatus | None:
        ticket_id = result.output.get("ticket_id")
        if not ticket_id:
            return self._finish(execution, trace, history, ExecutionStatus.FAILED,
                                error="REQUEST_APPROVAL tool returned no ticket_id")
        if self.gate.suspend(execution, ticket_id):
            current = self.store.get_execution(execution.execution_id)
            deadline = current.approval_deadline if current else None
            trace.on_transition(ExecutionStatus.RUNNING.value,
                                ExecutionStatus.WAITING_FOR_APPROVAL.value,
                                f"Awaiting approval ticket {ticket_id}")
            trace.on_suspended(ticket_id, deadline or 0.0)
            # A decision replayed during suspension may already have moved it on
            return current.status if current else ExecutionStatus.WAITING_FOR_APPROVAL
        # Cancel arrived while the approval tool was in flight
        self.gate.approvals.cancel(ticket_id, "Execution cancelled before suspension")
        return self._finish(execution, trace, history, ExecutionStatus.STOPPED,
                            reason="Cancellation requested")

    def _withdraw(self, action_type: ActionType, result: ToolResult) -> None:
        """Cancel a ticket the loop will not wait on."""
        if action_type == ActionType.REQUEST_APPROVAL and result.success:
            ticket_id = result.output.get("ticket_id")
            if ticket_id:
                self.gate.approvals.cancel(ticket_id, "Execution stopped before suspension")

    def _current_status(self, execution_id: str) -> ExecutionStatus | None:
        current = self.store.get_execution(execution_id)
        return current.status if current else None

    def _finish(
        self,
        execution: Execution,
        trace: ExecutionLogger,
        history: ActionHistory,
        status: ExecutionStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        reason: str = "",
    ) -> ExecutionStatus | None:
        updates: dict[str, Any] = {}
        if result is not None:
            updates["result"] = result
        if error:
            updates["error_message"] = error
        applied = self.store.transition(
            execution.execution_id,
            ExecutionStatus.RUNNING,
            status,
            actor="run_loop",
            reason=reason or error or "",
            updates=updates,
        )
        if not applied:
            current = self._current_status(execution.execution_id)
            logger.info("Execution %s left RUNNING before %s applied (now %s)",
                        execution.execution_id, status.value,
                        current.value if current else "missing")
            return current
        trace.on_transition(ExecutionStatus.RUNNING.value, status.value, reason or error or "")
        trace.on_execution_end(status.value, len(history), history.total_cost,
                               time.time() - execution.started_at)
        return status
