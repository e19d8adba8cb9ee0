"""
Agent Runtime - Agent Variants

Closed dispatch table from AgentType to its planner. Adding a variant means
adding a module with GOAL_TYPES, REQUIRED_PARAMETERS and plan(), then one
entry below.

Usage:
    from agents import get_agent

    spec = get_agent("SELF_HEALING_FIXER")
    decision = spec.planner(goal, history)
"""

from __future__ import annotations

from agents import (
    failure_analyzer,
    flaky_test,
    quality_monitor,
    self_healing,
    test_generator,
)
from agents.base import (
    Abort,
    AgentSpec,
    AgentType,
    Done,
    NextAction,
    PlanDecision,
    Planner,
    apply_approval_policy,
)
from engine.tools import ConfigurationError


def _spec(agent_type: AgentType, module, description: str) -> AgentSpec:
    return AgentSpec(
        agent_type=agent_type,
        planner=module.plan,
        goal_types=tuple(module.GOAL_TYPES),
        required_parameters=tuple(module.REQUIRED_PARAMETERS),
        description=description,
    )


AGENTS: dict[AgentType, AgentSpec] = {
    AgentType.TEST_GENERATOR: _spec(
        AgentType.TEST_GENERATOR, test_generator,
        "Generate an automated test from a JIRA story and open a PR",
    ),
    AgentType.SELF_HEALING_FIXER: _spec(
        AgentType.SELF_HEALING_FIXER, self_healing,
        "Repair a test broken by a changed locator",
    ),
    AgentType.FLAKY_TEST_FIXER: _spec(
        AgentType.FLAKY_TEST_FIXER, flaky_test,
        "Diagnose and stabilise an intermittently failing test",
    ),
    AgentType.FAILURE_ANALYZER: _spec(
        AgentType.FAILURE_ANALYZER, failure_analyzer,
        "Classify a test failure and report it",
    ),
    AgentType.QUALITY_MONITOR: _spec(
        AgentType.QUALITY_MONITOR, quality_monitor,
        "Report suite health and optionally open remediation",
    ),
}

PLANNERS: dict[AgentType, Planner] = {t: s.planner for t, s in AGENTS.items()}


def get_agent(agent_type: AgentType | str) -> AgentSpec:
    """Look up a variant; unknown names raise ConfigurationError."""
    try:
        return AGENTS[AgentType(agent_type)]
    except (ValueError, KeyError):
        raise ConfigurationError(
            f"Unknown agent type: {agent_type!r}. "
            f"Available: {[t.value for t in AGENTS]}"
        ) from None


__all__ = [
    "AGENTS", "PLANNERS", "get_agent",
    "AgentSpec", "AgentType", "Planner", "PlanDecision",
    "NextAction", "Done", "Abort", "apply_approval_policy",
]
