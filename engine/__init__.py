"""
Agent Runtime - Engine Package

Building blocks with no dependency on the orchestrator or the agents:

  - engine.actions:    ActionType catalogue and categories
  - engine.tools:      ToolContract, ToolRegistry, ToolResult
  - engine.history:    ActionRecord, ActionHistory, ApprovalOutcome
  - engine.budget:     would_exceed, BudgetTracker
  - engine.resilience: CircuitBreaker, retry_transient
  - engine.db:         SQLite / Postgres backends
  - engine.config:     YAML config loading
  - engine.logging:    JSON logging, ExecutionLogger
"""

from engine.actions import ActionType, category_of
from engine.budget import BudgetTracker, would_exceed
from engine.history import ActionHistory, ActionRecord, ApprovalOutcome, ApprovalOutcomeType
from engine.tools import (
    BaseTool,
    ConfigurationError,
    FunctionTool,
    ToolContract,
    ToolExecutionError,
    ToolNotRegistered,
    ToolRegistry,
    ToolResult,
)
