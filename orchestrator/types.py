"""
Agent Runtime - Orchestrator Type Definitions

Goals, per-execution configuration, the Execution row and its status
transition table.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from engine.actions import ActionType


# ─── Status Machine ─────────────────────────────────────────────────

class ExecutionStatus(str, enum.Enum):
    """Lifecycle states for one agent execution."""
    RUNNING = "RUNNING"
    WAITING_FOR_APPROVAL = "WAITING_FOR_APPROVAL"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"
    TIMEOUT = "TIMEOUT"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
    ExecutionStatus.STOPPED,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.BUDGET_EXCEEDED,
})

# Valid transitions: {from_status: [valid_to_statuses]}
VALID_TRANSITIONS = {
    ExecutionStatus.RUNNING: [
        ExecutionStatus.WAITING_FOR_APPROVAL,
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.STOPPED,
        ExecutionStatus.BUDGET_EXCEEDED,
    ],
    ExecutionStatus.WAITING_FOR_APPROVAL: [
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.STOPPED,
    ],
    ExecutionStatus.SUCCEEDED: [],
    ExecutionStatus.FAILED: [],
    ExecutionStatus.STOPPED: [],
    ExecutionStatus.TIMEOUT: [],
    ExecutionStatus.BUDGET_EXCEEDED: [],
}


class IllegalTransition(Exception):
    """Raised when a transition outside VALID_TRANSITIONS is requested."""
    pass


def check_transition(from_status: ExecutionStatus, to_status: ExecutionStatus) -> None:
    if to_status not in VALID_TRANSITIONS[from_status]:
        raise IllegalTransition(
            f"Cannot transition from {from_status.value} to {to_status.value}. "
            f"Valid: {[s.value for s in VALID_TRANSITIONS[from_status]]}"
        )


# ─── Goal ───────────────────────────────────────────────────────────

class InvalidGoalError(ValueError):
    """Goal is malformed or lacks parameters the agent requires."""
    pass


_SCALARS = (str, int, float, bool, type(None))


@dataclass
class Goal:
    """What an agent run must accomplish."""
    goal_type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    success_criteria: str = ""
    requested_by: str = ""
    goal_id: str = ""

    def __post_init__(self):
        if not self.goal_type:
            raise InvalidGoalError("goal_type is required")
        for key, value in self.parameters.items():
            if not isinstance(key, str):
                raise InvalidGoalError(f"Parameter keys must be strings: {key!r}")
            if not isinstance(value, _SCALARS):
                raise InvalidGoalError(
                    f"Parameter {key!r} must be a scalar, got {type(value).__name__}"
                )
        if not self.goal_id:
            self.goal_id = f"goal_{uuid.uuid4().hex[:12]}"

    def get(self, key: str, default: Any = None) -> Any:
        value = self.parameters.get(key)
        return default if value is None else value

    def missing(self, *keys: str) -> list[str]:
        return [k for k in keys if self.parameters.get(k) in (None, "")]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Goal:
        return Goal(
            goal_type=data["goal_type"],
            parameters=dict(data.get("parameters") or {}),
            success_criteria=data.get("success_criteria", ""),
            requested_by=data.get("requested_by", ""),
            goal_id=data.get("goal_id", ""),
        )


# ─── Config ─────────────────────────────────────────────────────────

@dataclass
class AgentConfig:
    """Budget and approval policy for one execution."""
    max_iterations: int = 20
    max_cost_units: float = 5.0
    approval_timeout_seconds: float = 3600
    actions_requiring_approval: list[str] = field(default_factory=lambda: [
        ActionType.COMMIT_CHANGES.value,
        ActionType.CREATE_PULL_REQUEST.value,
        ActionType.DELETE_FILE.value,
        ActionType.MERGE_PR.value,
    ])
    actions_never_requiring_approval: list[str] = field(default_factory=lambda: [
        ActionType.FETCH_JIRA_STORY.value,
        ActionType.QUERY_ELEMENT_REGISTRY.value,
        ActionType.READ_FILE.value,
    ])
    custom: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        if self.max_cost_units < 0:
            raise ValueError("max_cost_units must be >= 0")
        if self.approval_timeout_seconds <= 0:
            raise ValueError("approval_timeout_seconds must be > 0")

    def requires_approval(self, action_type: ActionType | str) -> bool:
        """Never-list wins over the requiring-list."""
        name = str(getattr(action_type, "value", action_type))
        if name in self.actions_never_requiring_approval:
            return False
        return name in self.actions_requiring_approval

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_mapping(
        data: dict[str, Any] | None,
        defaults: dict[str, Any] | None = None,
    ) -> AgentConfig:
        """Build from a dict, filling gaps from the config file's defaults."""
        merged = {**(defaults or {}), **(data or {})}
        known = {
            "max_iterations", "max_cost_units", "approval_timeout_seconds",
            "actions_requiring_approval", "actions_never_requiring_approval", "custom",
        }
        kwargs = {k: v for k, v in merged.items() if k in known}
        if "max_iterations" in kwargs:
            kwargs["max_iterations"] = int(kwargs["max_iterations"])
        if "max_cost_units" in kwargs:
            kwargs["max_cost_units"] = float(kwargs["max_cost_units"])
        if "approval_timeout_seconds" in kwargs:
            kwargs["approval_timeout_seconds"] = float(kwargs["approval_timeout_seconds"])
        return AgentConfig(**kwargs)


# ─── Execution ──────────────────────────────────────────────────────

@dataclass
class Execution:
    """
    Durable row for one agent run.

    Counters are derived from the ActionRecord history on every run-loop
    entry; the stored copies exist for cheap status queries.
    """
    execution_id: str
    agent_type: str
    status: ExecutionStatus
    goal: Goal
    config: AgentConfig
    current_iteration: int = 0
    total_actions: int = 0
    total_cost: float = 0.0
    started_at: float = 0.0
    completed_at: float | None = None
    updated_at: float = 0.0
    result: dict[str, Any] | None = None
    error_message: str | None = None
    requested_by: str = ""
    parent_execution_id: str | None = None

    # Approval suspension
    approval_ticket_id: str | None = None
    approval_deadline: float | None = None

    # Cooperative cancellation
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @staticmethod
    def create(
        agent_type: str,
        goal: Goal,
        config: AgentConfig,
        requested_by: str = "",
        parent_execution_id: str | None = None,
    ) -> Execution:
        now = time.time()
        return Execution(
            execution_id=f"exe_{uuid.uuid4().hex[:12]}",
            agent_type=agent_type,
            status=ExecutionStatus.RUNNING,
            goal=goal,
            config=config,
            started_at=now,
            updated_at=now,
            requested_by=requested_by or goal.requested_by,
            parent_execution_id=parent_execution_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "agent_type": self.agent_type,
            "status": self.status.value,
            "goal": self.goal.to_dict(),
            "config": self.config.to_dict(),
            "current_iteration": self.current_iteration,
            "total_actions": self.total_actions,
            "total_cost": self.total_cost,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error_message": self.error_message,
            "requested_by": self.requested_by,
            "parent_execution_id": self.parent_execution_id,
            "approval_ticket_id": self.approval_ticket_id,
            "approval_deadline": self.approval_deadline,
            "cancel_requested": self.cancel_requested,
        }


@dataclass(frozen=True)
class TransitionRecord:
    """Audit row for one applied status transition."""
    execution_id: str
    from_status: ExecutionStatus
    to_status: ExecutionStatus
    actor: str
    reason: str
    at: float = field(default_factory=time.time)
