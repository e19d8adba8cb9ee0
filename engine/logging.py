"""
Agent Runtime - Structured Logging

JSON log lines for every execution event, correlated by execution id.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Every entry emitted through ExecutionLogger carries execution_id and
    agent_type so a whole run can be reconstructed with one grep
  - Plain module loggers (agent_runtime.store, agent_runtime.gate, ...) keep
    printf-style messages; anything passed via extra= is merged into the JSON

Usage:
    from engine.logging import ExecutionLogger, configure_logging

    configure_logging(level="INFO")
    log = ExecutionLogger(execution_id="exe_ab12", agent_type="TEST_GENERATOR")
    log.on_execution_start(goal_type="GENERATE_TEST")
    log.on_action_complete(iteration=0, action_type="FETCH_JIRA_STORY",
                           success=True, cost_units=0.0, duration_ms=12)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "agent_runtime"

# Attributes present on every LogRecord; anything else came from extra=
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {
    "message", "asctime", "structured",
}


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("AR_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # extra={...} fields from plain logger calls
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    json_format: bool = True,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the agent_runtime logger tree.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        json_format: JSON lines when True, plain text otherwise
        service_name: Service name in JSON entries

    Returns:
        The configured root logger for agent_runtime
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
        ))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the agent_runtime namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Execution Logger
# ═══════════════════════════════════════════════════════════════════

class ExecutionLogger:
    """
    Structured lifecycle events for one execution.

    The execution id doubles as the trace id; delegated child executions
    carry parent_execution_id so a delegation tree can be stitched back
    together.
    """

    def __init__(
        self,
        execution_id: str,
        agent_type: str = "",
        parent_execution_id: str | None = None,
    ):
        self.execution_id = execution_id
        self.agent_type = agent_type
        self.parent_execution_id = parent_execution_id
        self._logger = get_logger("trace")

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "execution_id": self.execution_id,
            "agent_type": self.agent_type,
        }
        if self.parent_execution_id:
            fields["parent_execution_id"] = self.parent_execution_id
        return fields

    def _emit(self, level: int, event: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "event": event, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=event,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Lifecycle ───────────────────────────────────────────────

    def on_execution_start(self, goal_type: str, requested_by: str = "") -> None:
        self._emit(logging.INFO, "execution_start",
                   goal_type=goal_type, requested_by=requested_by)

    def on_iteration_start(self, iteration: int, total_cost: float) -> None:
        self._emit(logging.DEBUG, "iteration_start",
                   iteration=iteration, total_cost=total_cost)

    def on_plan(self, iteration: int, decision: str, action_type: str = "",
                reasoning: str = "") -> None:
        self._emit(logging.DEBUG, "plan",
                   iteration=iteration, decision=decision,
                   action_type=action_type, reasoning=reasoning[:500])

    def on_action_complete(
        self,
        iteration: int,
        action_type: str,
        success: bool,
        cost_units: float,
        duration_ms: int,
        error: str = "",
    ) -> None:
        level = logging.INFO if success else logging.WARNING
        fields: dict[str, Any] = {
            "iteration": iteration,
            "action_type": action_type,
            "success": success,
            "cost_units": cost_units,
            "duration_ms": duration_ms,
        }
        if error:
            fields["error"] = error[:500]
        self._emit(level, "action_complete", **fields)

    def on_transition(self, from_status: str, to_status: str, reason: str = "") -> None:
        self._emit(logging.INFO, "transition",
                   from_status=from_status, to_status=to_status,
                   reason=reason[:500])

    def on_suspended(self, ticket_id: str, deadline: float) -> None:
        self._emit(logging.INFO, "suspended",
                   ticket_id=ticket_id, deadline=deadline)

    def on_decision_applied(self, ticket_id: str, outcome: str, reviewer: str = "") -> None:
        self._emit(logging.INFO, "decision_applied",
                   ticket_id=ticket_id, outcome=outcome, reviewer=reviewer)

    def on_execution_end(
        self,
        status: str,
        total_actions: int,
        total_cost: float,
        elapsed_s: float,
    ) -> None:
        self._emit(
            logging.INFO, "execution_end",
            status=status,
            total_actions=total_actions,
            total_cost=round(total_cost, 6),
            elapsed_s=round(elapsed_s, 2),
        )
