"""
Agent Runtime - Tool Registry

Uniform interface to the external capabilities an agent can invoke.

A "tool" performs one named external effect (fetch a story, call an AI
provider, write a file, open a pull request) and is keyed by ActionType.
Parameters and outputs are untyped dicts so new tools can be added without
touching the orchestrator.

Two failure classes are kept strictly apart:
  - ToolNotRegistered (a ConfigurationError): nothing is registered for the
    action type. A deployment defect; the execution fails, never retried.
  - ToolResult(success=False): the tool ran (or was refused by its circuit
    breaker or parameter validation) and reported failure. The planner
    decides what to do next.

Usage:
    registry = ToolRegistry()
    registry.register_function(
        ActionType.FETCH_JIRA_STORY,
        lambda params: {"summary": jira.get(params["jira_key"]).summary},
        description="Fetch a story from the issue tracker",
        parameter_schema={"jira_key": "string (required) - issue key"},
    )

    tool = registry.resolve(ActionType.FETCH_JIRA_STORY)
    result = registry.execute(tool, {"jira_key": "QA-12"})
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from engine.actions import ActionType, category_of
from engine.resilience import CircuitBreaker

logger = logging.getLogger("agent_runtime.tools")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Deployment defect: unknown agent type, unregistered or duplicate tool."""
    pass


class ToolNotRegistered(ConfigurationError):
    """No tool is registered for the requested action type."""

    def __init__(self, action_type: ActionType | str):
        self.action_type = str(getattr(action_type, "value", action_type))
        super().__init__(f"No tool registered for action type {self.action_type}")


class ToolExecutionError(Exception):
    """Raised by tool bodies to report a failure with a clean message."""
    pass


# ---------------------------------------------------------------------------
# Tool contract
# ---------------------------------------------------------------------------

@dataclass
class ToolResult:
    """Outcome of a single tool invocation."""
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    cost_units: float = 0.0

    @staticmethod
    def ok(output: dict[str, Any] | None = None, cost_units: float = 0.0) -> ToolResult:
        return ToolResult(success=True, output=dict(output or {}), cost_units=cost_units)

    @staticmethod
    def failed(error: str, output: dict[str, Any] | None = None,
               cost_units: float = 0.0) -> ToolResult:
        return ToolResult(success=False, output=dict(output or {}),
                          error_message=error, cost_units=cost_units)


@runtime_checkable
class ToolContract(Protocol):
    """What the run loop needs from a tool."""
    action_type: ActionType
    name: str
    description: str
    parameter_schema: dict[str, str]

    def validate(self, parameters: dict[str, Any]) -> bool:
        ...

    def execute(self, parameters: dict[str, Any]) -> ToolResult:
        ...


def required_parameters(schema: dict[str, str]) -> list[str]:
    """Parameter names whose schema entry is marked (required)."""
    return [name for name, desc in schema.items() if "(required)" in desc]


class BaseTool:
    """
    Convenience base for tools.

    Subclasses set action_type/name/description/parameter_schema and
    implement run(parameters) -> dict or ToolResult. validate() checks
    that every (required) parameter is present and non-empty.
    """

    action_type: ActionType
    name: str = ""
    description: str = ""
    parameter_schema: dict[str, str] = {}

    def validate(self, parameters: dict[str, Any]) -> bool:
        for key in required_parameters(self.parameter_schema):
            if parameters.get(key) in (None, ""):
                return False
        return True

    def run(self, parameters: dict[str, Any]) -> dict[str, Any] | ToolResult:
        raise NotImplementedError

    def execute(self, parameters: dict[str, Any]) -> ToolResult:
        out = self.run(parameters)
        if isinstance(out, ToolResult):
            return out
        return ToolResult.ok(out)


class FunctionTool(BaseTool):
    """Adapts a plain callable (params -> dict | ToolResult) to the contract."""

    def __init__(
        self,
        action_type: ActionType | str,
        fn: Callable[[dict[str, Any]], dict[str, Any] | ToolResult],
        name: str = "",
        description: str = "",
        parameter_schema: dict[str, str] | None = None,
        cost_units: float = 0.0,
    ):
        self.action_type = ActionType(action_type)
        self.fn = fn
        self.name = name or self.action_type.value.lower()
        self.description = description
        self.parameter_schema = dict(parameter_schema or {})
        self.cost_units = cost_units

    def run(self, parameters: dict[str, Any]) -> dict[str, Any] | ToolResult:
        out = self.fn(parameters)
        if isinstance(out, ToolResult):
            return out
        return ToolResult.ok(out, cost_units=self.cost_units)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ToolRegistry:
    """
    Exactly one tool per action type, each behind its own circuit breaker.
    """

    def __init__(
        self,
        breaker_threshold: int = 5,
        breaker_reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._tools: dict[ActionType, ToolContract] = {}
        self._breakers: dict[ActionType, CircuitBreaker] = {}
        self._breaker_threshold = breaker_threshold
        self._breaker_reset_seconds = breaker_reset_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def register(self, tool: ToolContract, replace: bool = False) -> None:
        """Register a tool under its action type."""
        key = ActionType(tool.action_type)
        with self._lock:
            if key in self._tools and not replace:
                raise ConfigurationError(
                    f"Tool already registered for {key.value}: {self._tools[key].name}"
                )
            if key in self._tools:
                logger.warning("Replacing tool for %s: %s -> %s",
                               key.value, self._tools[key].name, tool.name)
            self._tools[key] = tool
            self._breakers[key] = CircuitBreaker(
                name=key.value,
                threshold=self._breaker_threshold,
                reset_seconds=self._breaker_reset_seconds,
                clock=self._clock,
            )
        logger.debug("Registered tool %s for %s", tool.name, key.value)

    def register_function(
        self,
        action_type: ActionType | str,
        fn: Callable[[dict[str, Any]], dict[str, Any] | ToolResult],
        description: str = "",
        parameter_schema: dict[str, str] | None = None,
        cost_units: float = 0.0,
        replace: bool = False,
    ) -> FunctionTool:
        tool = FunctionTool(action_type, fn, description=description,
                            parameter_schema=parameter_schema, cost_units=cost_units)
        self.register(tool, replace=replace)
        return tool

    def unregister(self, action_type: ActionType | str) -> None:
        key = ActionType(action_type)
        with self._lock:
            self._tools.pop(key, None)
            self._breakers.pop(key, None)

    def has(self, action_type: ActionType | str) -> bool:
        return ActionType(action_type) in self._tools

    def resolve(self, action_type: ActionType | str) -> ToolContract:
        """Look up the tool for an action type. Raises ToolNotRegistered."""
        try:
            key = ActionType(action_type)
        except ValueError:
            raise ToolNotRegistered(action_type)
        tool = self._tools.get(key)
        if tool is None:
            raise ToolNotRegistered(key)
        return tool

    def list_tools(self) -> list[ActionType]:
        return list(self._tools.keys())

    def breaker(self, action_type: ActionType | str) -> CircuitBreaker:
        return self._breakers[ActionType(action_type)]

    def execute(self, tool: ToolContract, parameters: dict[str, Any]) -> ToolResult:
        """
        Invoke a resolved tool.

        Never raises: breaker refusals, invalid parameters and exceptions
        from the tool body all come back as ToolResult(success=False).
        """
        key = ActionType(tool.action_type)
        breaker = self._breakers.get(key)

        if breaker is not None and not breaker.allow():
            logger.warning("Circuit open for %s, call refused", key.value)
            return ToolResult.failed(f"Circuit breaker open for {key.value}")

        try:
            valid = tool.validate(parameters)
        except Exception as e:
            logger.warning("Parameter validation raised for %s: %s", key.value, e)
            valid = False
        if not valid:
            return ToolResult.failed("Invalid parameters")

        try:
            result = tool.execute(parameters)
        except ToolExecutionError as e:
            result = ToolResult.failed(str(e))
        except Exception as e:
            logger.error("Tool %s raised %s: %s", tool.name, type(e).__name__, e,
                         exc_info=True)
            result = ToolResult.failed(f"{type(e).__name__}: {e}")

        result = _normalize(result)
        if breaker is not None:
            if result.success:
                breaker.record_success()
            else:
                breaker.record_failure()
        return result

    def invoke(self, action_type: ActionType | str, parameters: dict[str, Any]) -> ToolResult:
        """resolve() then execute(). Raises ToolNotRegistered on a miss."""
        return self.execute(self.resolve(action_type), parameters)

    # ── Introspection ───────────────────────────────────────────

    def categories(self) -> dict[str, list[str]]:
        """Registered action types grouped by category."""
        grouped: dict[str, list[str]] = {}
        for key in sorted(self._tools, key=lambda k: k.value):
            grouped.setdefault(category_of(key), []).append(key.value)
        return grouped

    def catalog(self) -> str:
        """Human-readable catalogue of every registered tool."""
        if not self._tools:
            return "No tools registered."
        lines = ["=== AVAILABLE TOOLS ==="]
        for category, keys in sorted(self.categories().items()):
            lines.append("")
            lines.append(f"[{category}]")
            for key in keys:
                tool = self._tools[ActionType(key)]
                lines.append(f"  - {key} ({tool.name}): {tool.description}")
                for param, desc in tool.parameter_schema.items():
                    lines.append(f"      {param}: {desc}")
        return "\n".join(lines)


def _normalize(result: Any) -> ToolResult:
    """Coerce a tool's return into a well-formed ToolResult."""
    if not isinstance(result, ToolResult):
        return ToolResult.failed(
            f"Tool returned {type(result).__name__}, expected ToolResult"
        )
    if result.output is None:
        result.output = {}
    try:
        cost = float(result.cost_units or 0.0)
    except (TypeError, ValueError):
        cost = 0.0
    if cost < 0:
        logger.warning("Tool reported negative cost %s, clamping to 0", cost)
        cost = 0.0
    result.cost_units = cost
    if not result.success and not result.error_message:
        result.error_message = "Tool reported failure"
    return result
