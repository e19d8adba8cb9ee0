"""
Agent Runtime - Orchestrator

Public surface of the engine:

    start(agent_type, goal) → execution_id      (non-blocking)
    get_status(execution_id) → Execution
    get_actions(execution_id) → [ActionRecord]
    cancel(execution_id) → bool

plus the approval entry point (deliver_decision) and operational hooks
(recover, sweep_expired, stats, wait, shutdown).

The Orchestrator owns nothing long-running itself: run loops go to the
worker backend, approval timers live in the ApprovalGate, and all state is
in the ExecutionStore. Any number of Orchestrators over the same store
(API process, arq workers) see the same executions.
"""

from __future__ import annotations

import copy
import importlib
import logging
import os
import time
from pathlib import Path
from typing import Any, Mapping

from agents import AgentSpec, Planner, get_agent
from engine.actions import ActionType
from engine.config import DEFAULTS, deep_merge, get_config_value, load_config
from engine.db import create_backend as create_db_backend
from engine.history import ActionHistory, ActionRecord
from engine.logging import ExecutionLogger
from engine.tools import BaseTool, ConfigurationError, ToolRegistry, ToolResult
from orchestrator.approvals import ApprovalStore, RequestApprovalTool, SQLApprovalStore
from orchestrator.channel import DecisionChannel, InlineDecisionChannel
from orchestrator.gate import ApprovalGate
from orchestrator.run_loop import RunLoop
from orchestrator.store import ExecutionStore
from orchestrator.types import (
    AgentConfig,
    Execution,
    ExecutionStatus,
    Goal,
    InvalidGoalError,
    TransitionRecord,
)
from orchestrator.worker import WorkerBackend
from orchestrator.worker import create_backend as create_worker_backend

logger = logging.getLogger("agent_runtime.orchestrator")


class DelegationDepthExceeded(Exception):
    """Raised when a delegation chain grows past max_delegation_depth."""
    pass


# ─── DELEGATE_AGENT tool ─────────────────────────────────────────────

class DelegateAgentTool(BaseTool):
    """
    Starts a child execution on behalf of a running one. The child runs
    independently; the parent records the child id and moves on.
    """

    action_type = ActionType.DELEGATE_AGENT
    name = "delegate_agent"
    description = "Start a child agent execution for a sub-goal"
    parameter_schema = {
        "execution_id": "string (required) - delegating execution",
        "agent_type": "string (required) - agent type to start",
        "goal_type": "string (required) - goal type for the child",
    }
    _RESERVED = ("execution_id", "agent_type", "goal_type")

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator

    def run(self, parameters: dict[str, Any]) -> ToolResult:
        parent_id = parameters["execution_id"]
        try:
            goal = Goal(
                goal_type=parameters["goal_type"],
                parameters={k: v for k, v in parameters.items() if k not in self._RESERVED},
                requested_by=f"agent:{parent_id}",
            )
            child_id = self.orchestrator.start(
                parameters["agent_type"],
                goal,
                requested_by=f"agent:{parent_id}",
                parent_execution_id=parent_id,
            )
        except (ConfigurationError, InvalidGoalError, DelegationDepthExceeded) as e:
            return ToolResult.failed(f"Delegation failed: {e}")
        return ToolResult.ok({
            "child_execution_id": child_id,
            "agent_type": parameters["agent_type"],
            "goal_type": parameters["goal_type"],
        })


# ─── Orchestrator ────────────────────────────────────────────────────

class Orchestrator:
    """Starts, observes and cancels agent executions."""

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: dict[str, Any] | None = None,
        store: ExecutionStore | None = None,
        tools: ToolRegistry | None = None,
        approvals: ApprovalStore | None = None,
        channel: DecisionChannel | None = None,
        backend: WorkerBackend | None = None,
        planners: Mapping[Any, Planner] | None = None,
    ):
        if config is not None:
            self.config = deep_merge(copy.deepcopy(DEFAULTS), config)
        else:
            self.config = load_config(base_path=str(config_path or ""))

        self.store = store or ExecutionStore(create_db_backend(
            self._cfg("store.backend", "sqlite"),
            path=self._cfg("store.path", "agent_runtime.db"),
            dsn=self._cfg("store.dsn", ""),
        ))
        if channel is None:
            channel = approvals.channel if approvals is not None and approvals.channel else None
        self.channel = channel or InlineDecisionChannel()
        self.approvals = approvals or SQLApprovalStore(self.store.db, self.channel)
        if self.approvals.channel is None:
            self.approvals.channel = self.channel

        self.tools = tools if tools is not None else self._build_tools()
        if not self.tools.has(ActionType.REQUEST_APPROVAL):
            self.tools.register(RequestApprovalTool(self.approvals))
        if not self.tools.has(ActionType.DELEGATE_AGENT):
            self.tools.register(DelegateAgentTool(self))

        self.backend = backend or create_worker_backend(
            mode=os.environ.get("AR_WORKER_MODE") or self._cfg("worker.mode", "thread"),
            max_workers=int(self._cfg("worker.max_workers", 4)),
            redis_url=self._cfg("worker.redis_url", "redis://localhost:6379"),
        )
        self.gate = ApprovalGate(self.store, self.approvals, self.channel,
                                 on_resume=self._submit)
        self.loop = RunLoop(self.store, self.tools, self.gate, planners)
        self.gate.start_sweeper(float(self._cfg("approvals.sweep_interval_seconds", 0) or 0))

        self._agent_defaults = dict(self._cfg("defaults", {}) or {})
        self._enabled = set(self._cfg("agents.enabled", []) or [])
        self.max_delegation_depth = int(self._cfg("defaults.max_delegation_depth", 5))

    def _cfg(self, path: str, default: Any = None) -> Any:
        return get_config_value(path, self.config, default)

    def _build_tools(self) -> ToolRegistry:
        """Empty registry, or the one built by tools.factory ("module:function")."""
        factory = self._cfg("tools.factory", "")
        if not factory:
            return ToolRegistry(
                breaker_threshold=int(self._cfg("circuit_breaker.threshold", 5)),
                breaker_reset_seconds=float(self._cfg("circuit_breaker.reset_seconds", 60)),
            )
        module_name, _, attr = factory.partition(":")
        if not attr:
            raise ConfigurationError(f"tools.factory must be 'module:function', got {factory!r}")
        registry = getattr(importlib.import_module(module_name), attr)()
        if not isinstance(registry, ToolRegistry):
            raise ConfigurationError(f"{factory} did not return a ToolRegistry")
        logger.info("Tool registry built by %s: %d tools", factory, len(registry.list_tools()))
        return registry

    # ─── Core operations ─────────────────────────────────────────

    def start(
        self,
        agent_type: str,
        goal: Goal | dict[str, Any],
        config: AgentConfig | Mapping[str, Any] | None = None,
        requested_by: str = "",
        parent_execution_id: str | None = None,
    ) -> str:
        """
        Validate, persist a RUNNING execution and hand its loop to the
        worker backend. The row exists before this returns.

        Raises ConfigurationError for an unknown or disabled agent type and
        InvalidGoalError for a goal the agent cannot take.
        """
        spec = get_agent(agent_type)
        if self._enabled and spec.agent_type.value not in self._enabled:
            raise ConfigurationError(f"Agent type {spec.agent_type.value} is not enabled")

        if not isinstance(goal, Goal):
            goal = Goal.from_dict(dict(goal))
        self._validate_goal(spec, goal)

        if isinstance(config, AgentConfig):
            agent_config = config
        else:
            agent_config = AgentConfig.from_mapping(dict(config or {}), self._agent_defaults)

        if parent_execution_id:
            self._check_delegation(parent_execution_id)

        execution = Execution.create(
            spec.agent_type.value, goal, agent_config,
            requested_by=requested_by,
            parent_execution_id=parent_execution_id,
        )
        self.store.create_execution(execution)
        logger.info(
            "Started %s execution %s (goal %s)",
            spec.agent_type.value, execution.execution_id, goal.goal_type,
            extra={"execution_id": execution.execution_id,
                   "parent_execution_id": parent_execution_id},
        )
        self._submit(execution.execution_id)
        return execution.execution_id

    def get_status(self, execution_id: str) -> Execution | None:
        return self.store.get_execution(execution_id)

    def get_actions(self, execution_id: str) -> list[ActionRecord]:
        return self.store.list_actions(execution_id)

    def get_history(self, execution_id: str) -> ActionHistory:
        return self.store.load_history(execution_id)

    def cancel(self, execution_id: str, actor: str = "cancel") -> bool:
        """
        Request cooperative cancellation. False when the execution is
        unknown or already terminal.

        A waiting execution stops at once and its ticket is withdrawn; a
        running one stops at its next iteration boundary.
        """
        outcome = self.store.request_cancel(execution_id, actor=actor)
        if outcome is None:
            return False
        execution = self.store.get_execution(execution_id)
        if outcome == ExecutionStatus.STOPPED and execution is not None:
            ticket_id = execution.approval_ticket_id
            if ticket_id:
                self.gate.disarm(ticket_id)
                self.approvals.cancel(ticket_id, "Execution cancelled")
            trace = ExecutionLogger(execution_id, execution.agent_type,
                                    execution.parent_execution_id)
            trace.on_transition(ExecutionStatus.WAITING_FOR_APPROVAL.value,
                                ExecutionStatus.STOPPED.value, "Cancelled while waiting")
            trace.on_execution_end(ExecutionStatus.STOPPED.value, execution.total_actions,
                                   execution.total_cost, time.time() - execution.started_at)
        logger.info("Cancel requested for %s (%s)", execution_id, outcome.value,
                    extra={"execution_id": execution_id})
        return True

    # ─── Approvals ───────────────────────────────────────────────

    def deliver_decision(
        self,
        ticket_id: str,
        approved: bool,
        reviewer: str = "",
        notes: str = "",
    ) -> bool:
        """
        Resolve an approval ticket. Human reviewers and agents use the same
        path; whoever resolves the ticket first wins and the rest get False.
        """
        return self.approvals.decide(ticket_id, approved, reviewer=reviewer, notes=notes)

    def list_pending_approvals(self, execution_id: str | None = None) -> list[dict[str, Any]]:
        return [
            {
                "ticket_id": t.ticket_id,
                "execution_id": t.execution_id,
                "content": t.content,
                "metadata": t.metadata,
                "created_at": t.created_at,
            }
            for t in self.approvals.list_pending(execution_id)
        ]

    def sweep_expired(self, now: float | None = None) -> int:
        return self.gate.sweep(now)

    # ─── Recovery ────────────────────────────────────────────────

    def recover(self) -> dict[str, int]:
        """
        Startup recovery: expire overdue approvals, re-arm timers for the
        rest, and re-drive every RUNNING execution from its history.
        """
        expired = self.gate.sweep()
        rearmed = self.gate.rearm_waiting()
        running = self.store.find_running()
        for execution in running:
            self._submit(execution.execution_id)
        summary = {"redriven": len(running), "rearmed": rearmed, "expired": expired}
        logger.info("Recovery: %s", summary)
        return summary

    # ─── Queries ─────────────────────────────────────────────────

    def list_executions(
        self,
        status: ExecutionStatus | str | None = None,
        agent_type: str | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        return self.store.list_executions(
            status=ExecutionStatus(status) if status else None,
            agent_type=agent_type,
            limit=limit,
        )

    def get_transitions(self, execution_id: str) -> list[TransitionRecord]:
        return self.store.list_transitions(execution_id)

    def get_children(self, execution_id: str) -> list[Execution]:
        return [e for e in self.store.list_executions(limit=10_000)
                if e.parent_execution_id == execution_id]

    def stats(self) -> dict[str, Any]:
        return {
            **self.store.stats(),
            "jobs": self.backend.tracker.stats,
            "pending_approvals": len(self.approvals.list_pending()),
            "armed_timers": len(self.gate.armed()),
        }

    def wait(
        self,
        execution_id: str,
        timeout: float = 30.0,
        include_waiting: bool = True,
        poll_interval: float = 0.02,
    ) -> Execution | None:
        """
        Poll until the execution is terminal (or suspended for approval,
        when include_waiting). Returns the last snapshot seen.
        """
        deadline = time.monotonic() + timeout
        while True:
            execution = self.store.get_execution(execution_id)
            if execution is None or execution.is_terminal:
                return execution
            if include_waiting and execution.status == ExecutionStatus.WAITING_FOR_APPROVAL:
                return execution
            if time.monotonic() >= deadline:
                return execution
            time.sleep(poll_interval)

    def shutdown(self):
        self.gate.shutdown()
        self.backend.shutdown()
        self.channel.close()

    # ─── Internals ───────────────────────────────────────────────

    def _submit(self, execution_id: str) -> None:
        self.backend.submit(execution_id, self.loop.drive)

    def _validate_goal(self, spec: AgentSpec, goal: Goal) -> None:
        if goal.goal_type not in spec.goal_types:
            raise InvalidGoalError(
                f"{spec.agent_type.value} does not handle goal type {goal.goal_type!r}; "
                f"expected one of {list(spec.goal_types)}"
            )
        missing = goal.missing(*spec.required_parameters)
        if missing:
            raise InvalidGoalError(
                f"Goal for {spec.agent_type.value} is missing required parameters: {missing}"
            )

    def _check_delegation(self, parent_execution_id: str) -> None:
        parent = self.store.get_execution(parent_execution_id)
        if parent is None:
            raise ConfigurationError(f"Unknown parent execution {parent_execution_id}")
        depth, seen = 1, {parent.execution_id}
        current = parent
        while current is not None and current.parent_execution_id:
            if current.parent_execution_id in seen:
                break
            seen.add(current.parent_execution_id)
            depth += 1
            current = self.store.get_execution(current.parent_execution_id)
        if depth > self.max_delegation_depth:
            raise DelegationDepthExceeded(
                f"Delegation depth {depth} exceeds limit {self.max_delegation_depth} "
                f"(parent {parent_execution_id})"
            )
