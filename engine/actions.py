"""
Agent Runtime - Action Types

Every tool invocation is keyed by an ActionType. The registry holds exactly
one tool per key; planners emit NextAction(action_type, parameters).

Action types are grouped into categories by name so tool catalogues and
dashboards can be organized without a second lookup table.
"""

from __future__ import annotations

from enum import Enum


class ActionType(str, Enum):
    """Closed set of actions an agent may take."""

    # Issue tracker
    FETCH_JIRA_STORY = "FETCH_JIRA_STORY"
    UPDATE_JIRA_STATUS = "UPDATE_JIRA_STATUS"
    ADD_JIRA_COMMENT = "ADD_JIRA_COMMENT"

    # AI operations
    GENERATE_TEST_CODE = "GENERATE_TEST_CODE"
    ANALYZE_FAILURE = "ANALYZE_FAILURE"
    SUGGEST_FIX = "SUGGEST_FIX"
    PLAN_NEXT_STEP = "PLAN_NEXT_STEP"
    DISCOVER_LOCATOR = "DISCOVER_LOCATOR"

    # Test execution
    EXECUTE_TEST = "EXECUTE_TEST"
    VALIDATE_TEST = "VALIDATE_TEST"
    ANALYZE_TEST_STABILITY = "ANALYZE_TEST_STABILITY"

    # Files
    READ_FILE = "READ_FILE"
    WRITE_FILE = "WRITE_FILE"
    DELETE_FILE = "DELETE_FILE"
    MODIFY_FILE = "MODIFY_FILE"

    # Version control
    CREATE_BRANCH = "CREATE_BRANCH"
    COMMIT_CHANGES = "COMMIT_CHANGES"
    CREATE_PULL_REQUEST = "CREATE_PULL_REQUEST"
    MERGE_PR = "MERGE_PR"

    # Registries
    QUERY_ELEMENT_REGISTRY = "QUERY_ELEMENT_REGISTRY"
    QUERY_PAGE_OBJECT_REGISTRY = "QUERY_PAGE_OBJECT_REGISTRY"
    UPDATE_ELEMENT_REGISTRY = "UPDATE_ELEMENT_REGISTRY"
    EXTRACT_BROKEN_LOCATOR = "EXTRACT_BROKEN_LOCATOR"

    # Approval
    REQUEST_APPROVAL = "REQUEST_APPROVAL"

    # Analytics
    QUERY_TEST_ANALYTICS = "QUERY_TEST_ANALYTICS"
    RECORD_FAILURE_PATTERN = "RECORD_FAILURE_PATTERN"
    GENERATE_REPORT = "GENERATE_REPORT"

    # Orchestration
    DELEGATE_AGENT = "DELEGATE_AGENT"


# Prefix/substring rules, first match wins
_CATEGORY_RULES: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [
    ("Approval Workflow", (), ("APPROVAL",)),
    ("JIRA Integration", (), ("JIRA",)),
    ("Data Retrieval", ("QUERY_", "EXTRACT_"), ()),
    ("AI Operations", ("GENERATE_", "ANALYZE_", "SUGGEST_", "DISCOVER_", "PLAN_"), ()),
    ("Git Operations", ("CREATE_BRANCH", "COMMIT_", "MERGE_", "CREATE_PULL"), ()),
    ("Test Execution", ("EXECUTE_", "VALIDATE_"), ()),
    ("File Operations", (), ("FILE",)),
    ("Registry Updates", ("UPDATE_ELEMENT", "RECORD_"), ()),
]


def category_of(action_type: ActionType | str) -> str:
    """Group an action type by naming convention."""
    name = ActionType(action_type).value
    for category, prefixes, substrings in _CATEGORY_RULES:
        if any(name.startswith(p) for p in prefixes):
            return category
        if any(s in name for s in substrings):
            return category
    return "Other"
