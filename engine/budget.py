"""
Agent Runtime - Budget Tracking

Iteration and cost ceilings for one execution.

Budgets are plain checks, not exceptions: the run loop asks the tracker
before each iteration and again after a metered tool returns, and a
positive answer becomes the BUDGET_EXCEEDED terminal status. The true cost
of some actions (an AI call) is known only after they run, so a single
overshoot is tolerated and forces termination at the next check.

Usage:
    budget = BudgetTracker(max_iterations=20, max_cost_units=5.0)
    verdict = budget.check_before_iteration(current_iteration, total_cost)
    if verdict:
        finish(BUDGET_EXCEEDED, verdict.reason)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("agent_runtime.budget")


def would_exceed(current_total: float, proposed_delta: float, limit: float) -> bool:
    """True when current_total + proposed_delta is over limit."""
    return current_total + proposed_delta > limit


@dataclass
class BudgetVerdict:
    """Why a budget check failed."""
    kind: str           # iterations | cost
    current: float
    limit: float

    @property
    def reason(self) -> str:
        if self.kind == "iterations":
            return f"Iteration budget exhausted: {int(self.current)} of {int(self.limit)} used"
        return f"Cost budget exceeded: {self.current:.4f} > {self.limit:.4f}"


class BudgetTracker:
    """Applies would_exceed to an execution's iteration and cost ceilings."""

    def __init__(self, max_iterations: int, max_cost_units: float):
        self.max_iterations = max_iterations
        self.max_cost_units = max_cost_units

    def iterations_exhausted(self, current_iteration: int) -> BudgetVerdict | None:
        # Starting iteration N consumes one more slot
        if would_exceed(current_iteration, 1, self.max_iterations):
            return BudgetVerdict("iterations", current_iteration, self.max_iterations)
        return None

    def cost_exceeded(self, total_cost: float) -> BudgetVerdict | None:
        if would_exceed(total_cost, 0.0, self.max_cost_units):
            return BudgetVerdict("cost", total_cost, self.max_cost_units)
        return None

    def check_before_iteration(
        self,
        current_iteration: int,
        total_cost: float,
    ) -> BudgetVerdict | None:
        """Iteration count first, then accumulated cost."""
        return self.iterations_exhausted(current_iteration) or self.cost_exceeded(total_cost)

    def check_after_action(self, total_cost: float) -> BudgetVerdict | None:
        verdict = self.cost_exceeded(total_cost)
        if verdict:
            logger.info("Metered action pushed cost over budget: %s", verdict.reason)
        return verdict

    def remaining(self, current_iteration: int, total_cost: float) -> dict[str, Any]:
        return {
            "iterations": max(self.max_iterations - current_iteration, 0),
            "cost_units": max(self.max_cost_units - total_cost, 0.0),
        }
