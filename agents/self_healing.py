"""
Agent Runtime - Self-Healing Fixer

Repairs a test broken by a changed UI locator.

    EXTRACT_BROKEN_LOCATOR → QUERY_ELEMENT_REGISTRY
      → for each registry alternative: MODIFY_FILE → EXECUTE_TEST
      → registry exhausted: READ_FILE (page HTML) → DISCOVER_LOCATOR
      → for each AI suggestion: MODIFY_FILE → EXECUTE_TEST
      → nothing verified: REQUEST_APPROVAL (manual review) → Done(fixed=False)
      → verified: UPDATE_ELEMENT_REGISTRY → REQUEST_APPROVAL
                  → CREATE_BRANCH → COMMIT_CHANGES → CREATE_PULL_REQUEST
                  → Done(fixed=True)

Each MODIFY_FILE replaces whatever locator the previous attempt left in the
file, so the file always holds exactly one candidate. A failing EXECUTE_TEST
moves on to the next candidate instead of being retried.
"""

from __future__ import annotations

import re

from agents.base import (
    Done,
    NextAction,
    PlanDecision,
    after,
    approval_request,
    candidate_locators,
    publish_fix_steps,
    retry_or_abort,
    run_passed,
)
from engine.actions import ActionType
from engine.history import ActionHistory, ActionRecord
from orchestrator.types import Goal

GOAL_TYPES = ("FIX_BROKEN_LOCATOR",)
REQUIRED_PARAMETERS = ("test_id", "error_message")


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "test"


def plan(goal: Goal, history: ActionHistory) -> PlanDecision:
    failure = retry_or_abort(goal, history, exempt=(ActionType.EXECUTE_TEST,))
    if failure is not None:
        return failure

    test_id = str(goal.get("test_id"))
    error_message = str(goal.get("error_message"))

    extract = after(history, ActionType.EXTRACT_BROKEN_LOCATOR)
    if extract is None:
        params = {"test_id": test_id, "error_message": error_message}
        if goal.get("test_file"):
            params["test_file"] = goal.get("test_file")
        return NextAction(ActionType.EXTRACT_BROKEN_LOCATOR, params,
                          reasoning="Find the locator named in the failure")

    broken = str(extract.output.get("locator", ""))
    element = str(extract.output.get("element_name") or broken)
    page = str(extract.output.get("page") or goal.get("page_url", ""))
    test_file = str(goal.get("test_file") or extract.output.get("file_path") or test_id)

    query = after(history, ActionType.QUERY_ELEMENT_REGISTRY, extract.iteration)
    if query is None:
        return NextAction(
            ActionType.QUERY_ELEMENT_REGISTRY,
            {"element_name": element, "page": page, "broken_locator": broken},
            reasoning=f"Look up known alternatives for {element}",
        )

    attempts = [r for r in history.of_type(ActionType.MODIFY_FILE, query.iteration) if r.success]
    tried = [str(r.input.get("new_locator")) for r in attempts]

    if attempts:
        latest = attempts[-1]
        runs = history.of_type(ActionType.EXECUTE_TEST, latest.iteration)
        if not runs:
            return NextAction(
                ActionType.EXECUTE_TEST,
                {"test_id": test_id, "test_file": test_file,
                 "locator": latest.input.get("new_locator")},
                reasoning=f"Verify candidate {latest.input.get('new_locator')}",
            )
        if run_passed(runs[-1]):
            return _publish(history, goal, runs[-1], latest, broken, element, page, test_file)

    current = tried[-1] if tried else broken

    for candidate in candidate_locators(query.output.get("alternatives"), broken):
        if candidate not in tried:
            return _modify(test_file, current, candidate, "registry")

    page_html = after(history, ActionType.READ_FILE, query.iteration, purpose="page_html")
    if page_html is None:
        return NextAction(
            ActionType.READ_FILE,
            {
                "path": str(goal.get("page_snapshot", f"snapshots/{_slug(test_id)}.html")),
                "purpose": "page_html",
                "page": page,
            },
            reasoning="Registry alternatives exhausted; capture the page for discovery",
        )

    discovery = after(history, ActionType.DISCOVER_LOCATOR, page_html.iteration)
    if discovery is None:
        return NextAction(
            ActionType.DISCOVER_LOCATOR,
            {
                "broken_locator": broken,
                "element_name": element,
                "error_message": error_message,
                "page_html": page_html.output.get("content", ""),
            },
            reasoning="Ask the model for locator candidates from the live page",
        )

    for candidate in candidate_locators(discovery.output.get("suggestions"), broken):
        if candidate not in tried:
            return _modify(test_file, current, candidate, "ai")

    review = after(history, ActionType.REQUEST_APPROVAL, query.iteration, kind="manual_review")
    if review is None:
        return approval_request(
            f"No candidate locator for {element} made {test_id} pass "
            f"({len(tried)} tried); manual review needed",
            kind="manual_review",
            test_id=test_id,
            broken_locator=broken,
        )
    return Done(
        f"Could not repair {test_id}; handed over for manual review",
        {"fixed": False, "test_id": test_id, "broken_locator": broken,
         "tried": tried, "manual_review": True},
    )


def _modify(test_file: str, old: str, new: str, source: str) -> NextAction:
    return NextAction(
        ActionType.MODIFY_FILE,
        {"path": test_file, "old_locator": old, "new_locator": new, "source": source},
        reasoning=f"Try {source} candidate {new}",
    )


def _publish(
    history: ActionHistory,
    goal: Goal,
    run: ActionRecord,
    winner: ActionRecord,
    broken: str,
    element: str,
    page: str,
    test_file: str,
) -> PlanDecision:
    test_id = str(goal.get("test_id"))
    locator = str(winner.input.get("new_locator"))
    source = str(winner.input.get("source", ""))

    update = after(history, ActionType.UPDATE_ELEMENT_REGISTRY, run.iteration)
    if update is None:
        return NextAction(
            ActionType.UPDATE_ELEMENT_REGISTRY,
            {"element_name": element, "page": page, "locator": locator,
             "previous_locator": broken},
            reasoning=f"Record {locator} as the working locator for {element}",
        )

    def _done(pr: ActionRecord) -> Done:
        return Done(
            f"Repaired {test_id}: {broken} -> {locator}",
            {
                "fixed": True,
                "test_id": test_id,
                "old_locator": broken,
                "new_locator": locator,
                "source": source,
                "pr_url": pr.output.get("pr_url", ""),
            },
        )

    return publish_fix_steps(
        history,
        since=update.iteration,
        branch=f"fix/locator-{_slug(test_id)}",
        commit_message=f"Heal locator for {element} in {test_id}",
        pr_title=f"Self-healing: {test_id}",
        files=test_file,
        summary=_done,
    )
