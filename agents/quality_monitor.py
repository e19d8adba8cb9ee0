"""
Agent Runtime - Quality Monitor

Suite-level health check.

    QUERY_TEST_ANALYTICS → ANALYZE_TEST_STABILITY → GENERATE_REPORT
      → [tests below threshold and open_remediation:
         REQUEST_APPROVAL → DELEGATE_AGENT(FLAKY_TEST_FIXER) for the worst test]
      → Done
"""

from __future__ import annotations

from typing import Any

from agents.base import (
    Abort,
    Done,
    NextAction,
    PlanDecision,
    after,
    approval_request,
    approved,
    retry_or_abort,
    truthy,
)
from engine.actions import ActionType
from engine.history import ActionHistory
from orchestrator.types import Goal

GOAL_TYPES = ("MONITOR_QUALITY",)
REQUIRED_PARAMETERS: tuple[str, ...] = ()

DEFAULT_THRESHOLD = 0.9
DEFAULT_WINDOW_DAYS = 7


def _below(tests: list[dict[str, Any]], threshold: float) -> list[dict[str, Any]]:
    """Tests under threshold, worst first; ties broken by id."""
    unstable = [t for t in tests
                if t.get("test_id") and float(t.get("pass_rate", 1.0)) < threshold]
    return sorted(unstable, key=lambda t: (float(t.get("pass_rate", 1.0)), str(t["test_id"])))


def plan(goal: Goal, history: ActionHistory) -> PlanDecision:
    failure = retry_or_abort(goal, history)
    if failure is not None:
        return failure

    threshold = float(goal.get("threshold", DEFAULT_THRESHOLD))

    analytics = after(history, ActionType.QUERY_TEST_ANALYTICS)
    if analytics is None:
        params = {"scope": "suite",
                  "window_days": int(goal.get("window_days", DEFAULT_WINDOW_DAYS))}
        if goal.get("suite"):
            params["suite"] = goal.get("suite")
        return NextAction(ActionType.QUERY_TEST_ANALYTICS, params,
                          reasoning="Collect pass rates for the suite")

    unstable = _below(analytics.output.get("tests") or [], threshold)

    stability = after(history, ActionType.ANALYZE_TEST_STABILITY, analytics.iteration)
    if stability is None:
        return NextAction(
            ActionType.ANALYZE_TEST_STABILITY,
            {"test_ids": ",".join(str(t["test_id"]) for t in unstable),
             "threshold": threshold},
            reasoning=f"{len(unstable)} test(s) under {threshold:.0%}; check for flakiness",
        )

    flaky = [str(t) for t in stability.output.get("flaky_tests") or []]
    worst = str(unstable[0]["test_id"]) if unstable else ""

    report = after(history, ActionType.GENERATE_REPORT, stability.iteration)
    if report is None:
        return NextAction(
            ActionType.GENERATE_REPORT,
            {
                "report_type": "quality",
                "threshold": threshold,
                "total_tests": len(analytics.output.get("tests") or []),
                "below_threshold": len(unstable),
                "flaky": len(flaky),
                "worst_test": worst,
            },
            reasoning="Summarise suite health",
        )

    outputs: dict[str, Any] = {
        "healthy": not unstable,
        "below_threshold": [t["test_id"] for t in unstable],
        "flaky_tests": flaky,
        "report_url": report.output.get("report_url", ""),
    }

    if not unstable or not truthy(goal.get("open_remediation", False)):
        return Done(
            "Suite healthy" if not unstable else f"{len(unstable)} test(s) below threshold",
            outputs,
        )

    request = after(history, ActionType.REQUEST_APPROVAL, report.iteration, kind="remediation")
    if request is None:
        return approval_request(
            f"Open a flaky-test fix for {worst} "
            f"(pass rate {float(unstable[0].get('pass_rate', 0.0)):.0%})",
            kind="remediation",
            test_id=worst,
        )
    if not approved(history, request):
        return Abort(f"Remediation for {worst} was not approved")

    delegated = after(history, ActionType.DELEGATE_AGENT, request.iteration)
    if delegated is None:
        return NextAction(
            ActionType.DELEGATE_AGENT,
            {"agent_type": "FLAKY_TEST_FIXER", "goal_type": "FIX_FLAKY_TEST",
             "test_id": worst},
            reasoning=f"Remediate the worst test {worst}",
        )

    outputs["child_execution_id"] = delegated.output.get("child_execution_id")
    return Done(f"Opened remediation for {worst}", outputs)
