"""
Agent Runtime - Orchestrator

Starts agent executions, drives their run loops on a worker backend and
suspends them at human approval points.

Usage:
    from orchestrator import Orchestrator, Goal

    orch = Orchestrator("agent_runtime.yaml", tools=registry)
    eid = orch.start("TEST_GENERATOR", Goal("GENERATE_TEST", {"jira_key": "QA-12"}))
    orch.get_status(eid).status

The Orchestrator itself is loaded lazily: agents import orchestrator.types,
and orchestrator.runtime imports agents.
"""

from orchestrator.types import (
    AgentConfig,
    Execution,
    ExecutionStatus,
    Goal,
    IllegalTransition,
    InvalidGoalError,
    TERMINAL_STATUSES,
)


def __getattr__(name):
    if name in ("Orchestrator", "DelegateAgentTool"):
        from orchestrator import runtime
        return getattr(runtime, name)
    raise AttributeError(f"module 'orchestrator' has no attribute {name!r}")
