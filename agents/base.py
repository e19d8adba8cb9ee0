"""
Agent Runtime - Planner Contract

A planner is a pure function:

    plan(goal, history) -> NextAction | Done | Abort

It may look only at the goal and the ActionHistory (records plus folded-in
approval outcomes). No clocks, no randomness, no I/O: the run loop may be
re-driven from persisted history after a crash and must arrive at the same
next action.

Agent variants form a closed set (AgentType). Each variant is registered
in agents.AGENTS with its planner, accepted goal types and required goal
parameters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union

from engine.actions import ActionType
from engine.history import ActionHistory, ActionRecord
from orchestrator.types import AgentConfig, Goal

# Keys the run loop adds to every tool input; not part of the planner's intent
CONTEXT_KEYS = ("execution_id",)

DEFAULT_MAX_CONSECUTIVE_FAILURES = 3


class AgentType(str, Enum):
    TEST_GENERATOR = "TEST_GENERATOR"
    SELF_HEALING_FIXER = "SELF_HEALING_FIXER"
    FLAKY_TEST_FIXER = "FLAKY_TEST_FIXER"
    FAILURE_ANALYZER = "FAILURE_ANALYZER"
    QUALITY_MONITOR = "QUALITY_MONITOR"


# ─── Decisions ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class NextAction:
    action_type: ActionType
    parameters: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""


@dataclass(frozen=True)
class Done:
    summary: str
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Abort:
    reason: str


PlanDecision = Union[NextAction, Done, Abort]
Planner = Callable[[Goal, ActionHistory], PlanDecision]


@dataclass(frozen=True)
class AgentSpec:
    """Registration entry for one agent variant."""
    agent_type: AgentType
    planner: Planner
    goal_types: tuple[str, ...]
    required_parameters: tuple[str, ...] = ()
    description: str = ""


# ─── Shared helpers ─────────────────────────────────────────────────

def planner_params(record: ActionRecord) -> dict[str, Any]:
    """A record's input without the run loop's context keys."""
    return {k: v for k, v in record.input.items() if k not in CONTEXT_KEYS}


def retry_or_abort(
    goal: Goal,
    history: ActionHistory,
    exempt: tuple[ActionType, ...] = (),
) -> PlanDecision | None:
    """
    Shared failure policy.

    When the latest action failed, repeat it as a new iteration until it
    has failed max_consecutive_failures times in a row, then abort.
    Action types in exempt report outcomes the planner branches on
    itself (a failing test run), so they are left alone.
    """
    last = history.last()
    if last is None or last.success or last.action_type in exempt:
        return None
    limit = int(goal.get("max_consecutive_failures", DEFAULT_MAX_CONSECUTIVE_FAILURES))
    failures = history.consecutive_failures(last.action_type)
    if failures >= limit:
        return Abort(
            f"{last.action_type.value} failed {failures} consecutive times: "
            f"{last.error_message or 'unknown error'}"
        )
    return NextAction(
        last.action_type,
        planner_params(last),
        reasoning=f"Retrying {last.action_type.value} after failure "
                  f"({failures}/{limit}): {last.error_message or 'unknown error'}",
    )


def after(history: ActionHistory, action_type: ActionType, since: int = 0,
          **match: Any) -> ActionRecord | None:
    """Latest successful record of action_type at or after iteration since,
    optionally requiring input[key] == value for every match item."""
    for r in reversed(history.of_type(action_type, since)):
        if not r.success:
            continue
        if all(r.input.get(k) == v for k, v in match.items()):
            return r
    return None


def approved(history: ActionHistory, request: ActionRecord | None) -> bool:
    outcome = history.outcome_for(request)
    return outcome is not None and outcome.approved


def approval_request(content: str, kind: str, **extra: Any) -> NextAction:
    params = {"content": content, "kind": kind}
    params.update(extra)
    return NextAction(ActionType.REQUEST_APPROVAL, params,
                      reasoning=f"Human approval required ({kind})")


def publish_fix_steps(
    history: ActionHistory,
    since: int,
    branch: str,
    commit_message: str,
    pr_title: str,
    files: str,
    summary: Callable[[ActionRecord], Done],
    kind: str = "publish_fix",
) -> PlanDecision:
    """
    Approval → branch → commit → pull request, common to every agent
    that ends in a pull request.

    Steps are looked up from iteration since onward so an earlier,
    unrelated approval does not count.
    """
    request = after(history, ActionType.REQUEST_APPROVAL, since, kind=kind)
    if request is None:
        return approval_request(
            f"Publish fix on branch {branch}: {commit_message}",
            kind=kind, branch=branch, files=files,
        )
    if not approved(history, request):
        return Abort(f"{kind} was not approved")
    start = request.iteration
    if after(history, ActionType.CREATE_BRANCH, start) is None:
        return NextAction(ActionType.CREATE_BRANCH, {"branch": branch},
                          reasoning="Isolate the fix on its own branch")
    if after(history, ActionType.COMMIT_CHANGES, start) is None:
        return NextAction(
            ActionType.COMMIT_CHANGES,
            {"branch": branch, "message": commit_message, "files": files},
            reasoning="Commit the verified change",
        )
    pr = after(history, ActionType.CREATE_PULL_REQUEST, start)
    if pr is None:
        return NextAction(
            ActionType.CREATE_PULL_REQUEST,
            {"branch": branch, "title": pr_title, "body": commit_message},
            reasoning="Open a pull request for review",
        )
    return summary(pr)


def apply_approval_policy(
    decision: PlanDecision,
    config: AgentConfig,
    history: ActionHistory,
) -> PlanDecision:
    """
    Put a REQUEST_APPROVAL in front of any action the config marks as
    requiring approval, unless the execution already holds an approved
    ticket. Deterministic in (decision, config, history).
    """
    if not isinstance(decision, NextAction):
        return decision
    if decision.action_type == ActionType.REQUEST_APPROVAL:
        return decision
    if not config.requires_approval(decision.action_type):
        return decision
    if any(o.approved for o in history.outcomes):
        return decision
    return NextAction(
        ActionType.REQUEST_APPROVAL,
        {
            "content": f"Approval required before {decision.action_type.value}",
            "kind": "policy",
            "pending_action": decision.action_type.value,
        },
        reasoning=f"Config requires approval for {decision.action_type.value}",
    )


def run_passed(record: ActionRecord | None) -> bool:
    """An EXECUTE_TEST record counts as passing when the tool succeeded and
    did not report passed=False."""
    return record is not None and record.success and record.output.get("passed", True) is not False


def candidate_locators(raw: Any, exclude: str = "") -> list[str]:
    """Normalise a suggestion list (strings or {"locator": ...} dicts),
    keeping order, dropping duplicates and the excluded locator."""
    result: list[str] = []
    for item in raw or []:
        locator = item.get("locator") if isinstance(item, dict) else item
        if not locator or not isinstance(locator, str):
            continue
        if locator == exclude or locator in result:
            continue
        result.append(locator)
    return result


def truthy(value: Any) -> bool:
    """Goal flags arrive as bools or strings ("true", "1", "yes")."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
