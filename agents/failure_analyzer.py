"""
Agent Runtime - Failure Analyzer

Classifies why a test fails and reports it.

    QUERY_TEST_ANALYTICS → ANALYZE_FAILURE → RECORD_FAILURE_PATTERN
      → [auto_remediate and a fixable category: DELEGATE_AGENT]
      → GENERATE_REPORT → Done(category)
"""

from __future__ import annotations

from agents.base import Done, NextAction, PlanDecision, after, retry_or_abort, truthy
from engine.actions import ActionType
from engine.history import ActionHistory
from orchestrator.types import Goal

GOAL_TYPES = ("ANALYZE_FAILURE",)
REQUIRED_PARAMETERS = ("test_id",)

DEFAULT_WINDOW_DAYS = 30

# category → (agent type, goal type) that can fix it
REMEDIATION = {
    "LOCATOR_BRITTLENESS": ("SELF_HEALING_FIXER", "FIX_BROKEN_LOCATOR"),
    "FLAKINESS": ("FLAKY_TEST_FIXER", "FIX_FLAKY_TEST"),
}


def plan(goal: Goal, history: ActionHistory) -> PlanDecision:
    failure = retry_or_abort(goal, history)
    if failure is not None:
        return failure

    test_id = str(goal.get("test_id"))

    analytics = after(history, ActionType.QUERY_TEST_ANALYTICS)
    if analytics is None:
        return NextAction(
            ActionType.QUERY_TEST_ANALYTICS,
            {"test_id": test_id, "window_days": int(goal.get("window_days", DEFAULT_WINDOW_DAYS))},
            reasoning="Pull the recent run history for the test",
        )

    analysis = after(history, ActionType.ANALYZE_FAILURE, analytics.iteration)
    if analysis is None:
        recent = analytics.output.get("recent_errors") or []
        return NextAction(
            ActionType.ANALYZE_FAILURE,
            {
                "test_id": test_id,
                "error_message": goal.get("error_message") or (recent[0] if recent else ""),
                "pass_rate": analytics.output.get("pass_rate"),
                "failures": analytics.output.get("failures"),
            },
            reasoning="Classify the failure from its error and history",
        )

    category = str(analysis.output.get("category") or analysis.output.get("root_cause") or "UNKNOWN")
    summary = str(analysis.output.get("summary", ""))

    pattern = after(history, ActionType.RECORD_FAILURE_PATTERN, analysis.iteration)
    if pattern is None:
        return NextAction(
            ActionType.RECORD_FAILURE_PATTERN,
            {"test_id": test_id, "category": category, "summary": summary},
            reasoning=f"Record {category} for trend analysis",
        )

    delegated = None
    if truthy(goal.get("auto_remediate", False)) and category in REMEDIATION:
        delegated = after(history, ActionType.DELEGATE_AGENT, pattern.iteration)
        if delegated is None:
            agent_type, goal_type = REMEDIATION[category]
            return NextAction(
                ActionType.DELEGATE_AGENT,
                {
                    "agent_type": agent_type,
                    "goal_type": goal_type,
                    "test_id": test_id,
                    "error_message": goal.get("error_message") or summary or category,
                },
                reasoning=f"Hand {category} over to {agent_type}",
            )

    since = delegated.iteration if delegated is not None else pattern.iteration
    report = after(history, ActionType.GENERATE_REPORT, since)
    if report is None:
        params = {
            "report_type": "failure_analysis",
            "test_id": test_id,
            "category": category,
            "summary": summary,
            "confidence": analysis.output.get("confidence"),
        }
        if delegated is not None:
            params["child_execution_id"] = delegated.output.get("child_execution_id")
        return NextAction(ActionType.GENERATE_REPORT, params,
                          reasoning="Publish the analysis")

    outputs = {
        "test_id": test_id,
        "category": category,
        "summary": summary,
        "report_url": report.output.get("report_url", ""),
    }
    if delegated is not None:
        outputs["child_execution_id"] = delegated.output.get("child_execution_id")
    return Done(f"{test_id} failure classified as {category}", outputs)
