"""
Agent Runtime - Test Support

Scripted tools, hand-built histories and an in-memory Orchestrator
for the test suites.
"""

import os
import sqlite3
import sys
from typing import Any

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.actions import ActionType
from engine.db import SQLiteBackend
from engine.history import ActionHistory, ActionRecord, ApprovalOutcome, ApprovalOutcomeType
from engine.tools import BaseTool, ToolRegistry, ToolResult
from orchestrator.runtime import Orchestrator
from orchestrator.store import ExecutionStore
from orchestrator.worker import InlineBackend


class ScriptedTool(BaseTool):
    """
    Returns canned outputs in order, then `default` forever. An entry may be
    a dict (success), a ToolResult, an exception to raise, or a callable
    taking the parameters. Every call's parameters are kept in .calls.
    """

    description = "Scripted test tool"

    def __init__(self, action_type, responses=None, default=None,
                 cost_units=0.0, on_call=None):
        self.action_type = ActionType(action_type)
        self.name = f"scripted_{self.action_type.value.lower()}"
        self.parameter_schema = {}
        self.responses = list(responses or [])
        self.default = {} if default is None else default
        self.cost_units = cost_units
        self.on_call = on_call
        self.calls: list[dict[str, Any]] = []

    def run(self, parameters):
        self.calls.append(dict(parameters))
        if self.on_call is not None:
            self.on_call(parameters)
        out = self.responses.pop(0) if self.responses else self.default
        if callable(out):
            out = out(parameters)
        if isinstance(out, Exception):
            raise out
        if isinstance(out, ToolResult):
            return out
        return ToolResult.ok(out, cost_units=self.cost_units)


# Outputs that walk every planner down its happy path
HAPPY_OUTPUTS = {
    ActionType.FETCH_JIRA_STORY: {"summary": "User can log in",
                                  "acceptance_criteria": "Valid credentials reach the dashboard"},
    ActionType.GENERATE_TEST_CODE: {"code": "test('login', async () => {})",
                                    "file_path": "tests/generated/qa-12.spec.ts"},
    ActionType.WRITE_FILE: {"written": True},
    ActionType.READ_FILE: {"content": "<button data-testid='submit'>Go</button>"},
    ActionType.MODIFY_FILE: {"modified": True},
    ActionType.CREATE_BRANCH: {"branch": "created"},
    ActionType.COMMIT_CHANGES: {"sha": "abc1234"},
    ActionType.CREATE_PULL_REQUEST: {"pr_url": "https://git.example.com/qa/pulls/7"},
    ActionType.EXTRACT_BROKEN_LOCATOR: {"locator": "#submit-btn", "element_name": "submit",
                                        "page": "/login", "file_path": "tests/login.spec.ts"},
    ActionType.QUERY_ELEMENT_REGISTRY: {"alternatives": ["[data-testid=submit]"]},
    ActionType.DISCOVER_LOCATOR: {"suggestions": [{"locator": "button:has-text('Go')"}]},
    ActionType.EXECUTE_TEST: {"passed": True},
    ActionType.UPDATE_ELEMENT_REGISTRY: {"updated": True},
    ActionType.ANALYZE_TEST_STABILITY: {"flaky": True, "pass_rate": 0.6,
                                        "failures": ["Timeout waiting for #cart"],
                                        "flaky_tests": ["checkout_test"]},
    ActionType.ANALYZE_FAILURE: {"category": "TIMING", "root_cause": "TIMING",
                                 "summary": "Race on cart render", "confidence": 0.8},
    ActionType.RECORD_FAILURE_PATTERN: {"recorded": True},
    ActionType.SUGGEST_FIX: {"patch": "await page.waitForSelector('#cart')"},
    ActionType.QUERY_TEST_ANALYTICS: {"runs": 40, "failures": 6, "pass_rate": 0.85,
                                      "recent_errors": ["Timeout waiting for #cart"],
                                      "tests": [{"test_id": "login_test", "pass_rate": 1.0},
                                                {"test_id": "checkout_test", "pass_rate": 0.7}]},
    ActionType.GENERATE_REPORT: {"report_url": "https://reports.example.com/r/1"},
}


def scripted_registry(overrides=None, costs=None, **kwargs):
    """
    A ToolRegistry with a ScriptedTool for every HAPPY_OUTPUTS action type.
    overrides maps ActionType → list of responses (replayed before the
    happy default). Returns (registry, {ActionType: ScriptedTool}).
    """
    registry = ToolRegistry(**kwargs)
    tools = {}
    overrides = overrides or {}
    costs = costs or {}
    for action_type, default in HAPPY_OUTPUTS.items():
        tool = ScriptedTool(action_type, responses=overrides.get(action_type),
                            default=default, cost_units=costs.get(action_type, 0.0))
        registry.register(tool)
        tools[action_type] = tool
    return registry, tools


def make_orchestrator(tools=None, config=None, backend=None, channel=None, approvals=None,
                      planners=None, store=None):
    """Orchestrator over an in-memory store with the inline backend."""
    return Orchestrator(
        config=config or {},
        store=store or ExecutionStore(SQLiteBackend(":memory:")),
        planners=planners,
        tools=tools if tools is not None else ToolRegistry(),
        backend=backend or InlineBackend(),
        channel=channel,
        approvals=approvals,
    )


def build_history(*steps, outcomes=(), execution_id="exe_test"):
    """
    steps: (action_type, input, output) or (action_type, input, output, success).
    outcomes: (iteration, ApprovalOutcomeType) pairs; the REQUEST_APPROVAL
    record at that iteration gets ticket tkt_<iteration>.
    """
    decided = dict(outcomes)
    records = []
    for i, step in enumerate(steps):
        action_type, params, output = step[0], dict(step[1]), dict(step[2])
        success = step[3] if len(step) > 3 else True
        if action_type == ActionType.REQUEST_APPROVAL and success:
            output.setdefault("ticket_id", f"tkt_{i}")
        records.append(ActionRecord(
            execution_id=execution_id,
            iteration=i,
            action_type=action_type,
            input={**params, "execution_id": execution_id},
            output=output,
            success=success,
            error_message=None if success else "boom",
        ))
    approvals = [
        ApprovalOutcome(ticket_id=f"tkt_{i}", execution_id=execution_id,
                        iteration=i, outcome=outcome, reviewer="qa-lead")
        for i, outcome in decided.items()
    ]
    return ActionHistory.from_records(records, approvals)


APPROVED = ApprovalOutcomeType.APPROVED


def happy_registry():
    """tools.factory target for the configuration tests."""
    return scripted_registry()[0]


class CounterWriteFailingBackend(SQLiteBackend):
    """SQLite whose execution counter UPDATE reports a locked database until switched off."""

    fail_counter_writes = True

    def execute(self, sql, params=()):
        if self.fail_counter_writes and "SET current_iteration" in sql:
            raise sqlite3.OperationalError("database is locked")
        return super().execute(sql, params)
