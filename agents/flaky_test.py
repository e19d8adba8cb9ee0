"""
Agent Runtime - Flaky Test Fixer

    ANALYZE_TEST_STABILITY  (stable → Done)
      → ANALYZE_FAILURE → RECORD_FAILURE_PATTERN
      → LOCATOR_BRITTLENESS: DELEGATE_AGENT(SELF_HEALING_FIXER) → Done
      → otherwise, up to max_fix_attempts times:
            SUGGEST_FIX → MODIFY_FILE → EXECUTE_TEST (stability run)
      → verified: REQUEST_APPROVAL → CREATE_BRANCH → COMMIT_CHANGES
                  → CREATE_PULL_REQUEST → Done(fixed=True)
      → exhausted: REQUEST_APPROVAL (manual review) → Done(fixed=False)
"""

from __future__ import annotations

import re

from agents.base import (
    Done,
    NextAction,
    PlanDecision,
    after,
    approval_request,
    publish_fix_steps,
    retry_or_abort,
    run_passed,
)
from engine.actions import ActionType
from engine.history import ActionHistory, ActionRecord
from orchestrator.types import Goal

GOAL_TYPES = ("FIX_FLAKY_TEST",)
REQUIRED_PARAMETERS = ("test_id",)

DEFAULT_MAX_FIX_ATTEMPTS = 3
DEFAULT_STABILITY_RUNS = 5

LOCATOR_BRITTLENESS = "LOCATOR_BRITTLENESS"


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "test"


def plan(goal: Goal, history: ActionHistory) -> PlanDecision:
    failure = retry_or_abort(goal, history, exempt=(ActionType.EXECUTE_TEST,))
    if failure is not None:
        return failure

    test_id = str(goal.get("test_id"))
    runs = int(goal.get("stability_runs", DEFAULT_STABILITY_RUNS))
    max_attempts = int(goal.get("max_fix_attempts", DEFAULT_MAX_FIX_ATTEMPTS))
    test_file = str(goal.get("test_file", test_id))

    stability = after(history, ActionType.ANALYZE_TEST_STABILITY)
    if stability is None:
        return NextAction(
            ActionType.ANALYZE_TEST_STABILITY,
            {"test_id": test_id, "runs": runs},
            reasoning="Measure how often the test fails",
        )
    if not stability.output.get("flaky", False):
        return Done(
            f"{test_id} is stable; nothing to fix",
            {"fixed": False, "flaky": False, "test_id": test_id,
             "pass_rate": stability.output.get("pass_rate")},
        )

    analysis = after(history, ActionType.ANALYZE_FAILURE, stability.iteration)
    if analysis is None:
        return NextAction(
            ActionType.ANALYZE_FAILURE,
            {"test_id": test_id,
             "failures": stability.output.get("failures", []),
             "pass_rate": stability.output.get("pass_rate")},
            reasoning="Classify the intermittent failures",
        )
    root_cause = str(analysis.output.get("root_cause") or analysis.output.get("category") or "UNKNOWN")
    summary = str(analysis.output.get("summary", ""))

    pattern = after(history, ActionType.RECORD_FAILURE_PATTERN, analysis.iteration)
    if pattern is None:
        return NextAction(
            ActionType.RECORD_FAILURE_PATTERN,
            {"test_id": test_id, "category": root_cause, "summary": summary},
            reasoning=f"Remember {root_cause} for {test_id}",
        )

    if root_cause == LOCATOR_BRITTLENESS:
        delegated = after(history, ActionType.DELEGATE_AGENT, pattern.iteration)
        if delegated is None:
            return NextAction(
                ActionType.DELEGATE_AGENT,
                {
                    "agent_type": "SELF_HEALING_FIXER",
                    "goal_type": "FIX_BROKEN_LOCATOR",
                    "test_id": test_id,
                    "error_message": summary or f"Brittle locator in {test_id}",
                    "test_file": test_file,
                },
                reasoning="Locator brittleness is the self-healing fixer's job",
            )
        return Done(
            f"Delegated {test_id} to the self-healing fixer",
            {"fixed": False, "delegated": True, "test_id": test_id,
             "root_cause": root_cause,
             "child_execution_id": delegated.output.get("child_execution_id")},
        )

    suggestions = _successful(history, ActionType.SUGGEST_FIX, pattern.iteration)
    if suggestions:
        latest = suggestions[-1]
        modify = after(history, ActionType.MODIFY_FILE, latest.iteration)
        if modify is None:
            return NextAction(
                ActionType.MODIFY_FILE,
                {"path": test_file, "patch": latest.output.get("patch", ""),
                 "fix_attempt": len(suggestions)},
                reasoning=f"Apply fix attempt {len(suggestions)}",
            )
        verify = history.of_type(ActionType.EXECUTE_TEST, modify.iteration)
        if not verify:
            return NextAction(
                ActionType.EXECUTE_TEST,
                {"test_id": test_id, "test_file": test_file, "runs": runs,
                 "mode": "stability"},
                reasoning=f"Run {test_id} {runs} times to confirm the fix",
            )
        if run_passed(verify[-1]):
            return _publish(history, test_id, test_file, root_cause,
                            verify[-1], len(suggestions))

    if len(suggestions) < max_attempts:
        previous = ""
        if suggestions:
            last_run = history.of_type(ActionType.EXECUTE_TEST, suggestions[-1].iteration)
            if last_run:
                previous = str(last_run[-1].error_message or last_run[-1].output.get("summary", ""))
        return NextAction(
            ActionType.SUGGEST_FIX,
            {"test_id": test_id, "root_cause": root_cause, "summary": summary,
             "attempt": len(suggestions) + 1, "previous_error": previous},
            reasoning=f"Fix attempt {len(suggestions) + 1} of {max_attempts}",
        )

    review = after(history, ActionType.REQUEST_APPROVAL, pattern.iteration, kind="manual_review")
    if review is None:
        return approval_request(
            f"{max_attempts} fix attempts for flaky test {test_id} ({root_cause}) "
            f"did not stabilise it; manual review needed",
            kind="manual_review",
            test_id=test_id,
            root_cause=root_cause,
        )
    return Done(
        f"Could not stabilise {test_id}; handed over for manual review",
        {"fixed": False, "flaky": True, "test_id": test_id,
         "root_cause": root_cause, "attempts": len(suggestions), "manual_review": True},
    )


def _successful(history: ActionHistory, action_type: ActionType, since: int) -> list[ActionRecord]:
    return [r for r in history.of_type(action_type, since) if r.success]


def _publish(
    history: ActionHistory,
    test_id: str,
    test_file: str,
    root_cause: str,
    verified: ActionRecord,
    attempts: int,
) -> PlanDecision:
    def _done(pr: ActionRecord) -> Done:
        return Done(
            f"Stabilised {test_id} after {attempts} attempt(s)",
            {"fixed": True, "flaky": True, "test_id": test_id,
             "root_cause": root_cause, "attempts": attempts,
             "pr_url": pr.output.get("pr_url", "")},
        )

    return publish_fix_steps(
        history,
        since=verified.iteration,
        branch=f"fix/flaky-{_slug(test_id)}",
        commit_message=f"Stabilise flaky test {test_id} ({root_cause})",
        pr_title=f"Flaky fix: {test_id}",
        files=test_file,
        summary=_done,
    )
