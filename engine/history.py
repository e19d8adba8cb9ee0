"""
Agent Runtime - Action History

Append-only, totally ordered log of every tool invocation for one
execution, plus the approval outcomes folded in by the resume handler.

The history is what planners see. It is always rebuilt from the store on
entry to the run loop (never cached across a suspension), and the
execution's counters are derived from it:

    current_iteration == max(record.iteration) + 1   (0 when empty)
    total_actions     == len(records)
    total_cost        == sum(record.cost_units)

Usage:
    history = ActionHistory.from_records(store.list_actions(eid),
                                         store.list_outcomes(eid))
    last = history.last()
    if history.consecutive_failures(ActionType.EXECUTE_TEST) >= 3:
        ...
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator

from engine.actions import ActionType


# ═══════════════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActionRecord:
    """One tool invocation and its outcome. Immutable once written."""
    execution_id: str
    iteration: int
    action_type: ActionType
    input: dict[str, Any]
    output: dict[str, Any]
    success: bool
    error_message: str | None = None
    cost_units: float = 0.0
    duration_ms: int = 0
    reasoning: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "iteration": self.iteration,
            "action_type": self.action_type.value,
            "input": self.input,
            "output": self.output,
            "success": self.success,
            "error_message": self.error_message,
            "cost_units": self.cost_units,
            "duration_ms": self.duration_ms,
            "reasoning": self.reasoning,
            "created_at": self.created_at,
        }


class ApprovalOutcomeType(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class ApprovalOutcome:
    """The decision for one approval ticket, as seen by the planner."""
    ticket_id: str
    execution_id: str
    iteration: int          # iteration of the REQUEST_APPROVAL record
    outcome: ApprovalOutcomeType
    reviewer: str = ""
    notes: str = ""
    decided_at: float = field(default_factory=time.time)

    @property
    def approved(self) -> bool:
        return self.outcome == ApprovalOutcomeType.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "execution_id": self.execution_id,
            "iteration": self.iteration,
            "outcome": self.outcome.value,
            "reviewer": self.reviewer,
            "notes": self.notes,
            "decided_at": self.decided_at,
        }


# ═══════════════════════════════════════════════════════════════════
# History
# ═══════════════════════════════════════════════════════════════════

class ActionHistory:
    """Ordered records for one execution with read helpers for planners."""

    def __init__(self):
        self._records: list[ActionRecord] = []
        self._outcomes: dict[str, ApprovalOutcome] = {}

    @classmethod
    def from_records(
        cls,
        records: Iterable[ActionRecord],
        outcomes: Iterable[ApprovalOutcome] = (),
    ) -> ActionHistory:
        history = cls()
        for r in sorted(records, key=lambda r: r.iteration):
            history.append(r)
        for o in outcomes:
            history.add_outcome(o)
        return history

    # ── Writes (append-only) ────────────────────────────────────

    def append(self, record: ActionRecord) -> None:
        if self._records and record.iteration <= self._records[-1].iteration:
            raise ValueError(
                f"Iteration {record.iteration} does not follow "
                f"{self._records[-1].iteration}"
            )
        self._records.append(record)

    def add_outcome(self, outcome: ApprovalOutcome) -> None:
        if outcome.ticket_id in self._outcomes:
            raise ValueError(f"Outcome already recorded for ticket {outcome.ticket_id}")
        self._outcomes[outcome.ticket_id] = outcome

    # ── Counters ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ActionRecord]:
        return iter(self._records)

    @property
    def records(self) -> tuple[ActionRecord, ...]:
        return tuple(self._records)

    @property
    def outcomes(self) -> tuple[ApprovalOutcome, ...]:
        return tuple(sorted(self._outcomes.values(), key=lambda o: o.iteration))

    @property
    def next_iteration(self) -> int:
        return self._records[-1].iteration + 1 if self._records else 0

    @property
    def total_cost(self) -> float:
        return sum(r.cost_units for r in self._records)

    def cost_by_action(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for r in self._records:
            totals[r.action_type.value] = totals.get(r.action_type.value, 0.0) + r.cost_units
        return totals

    # ── Planner queries ─────────────────────────────────────────

    def last(self) -> ActionRecord | None:
        return self._records[-1] if self._records else None

    def of_type(self, action_type: ActionType, since: int = 0) -> list[ActionRecord]:
        return [r for r in self._records
                if r.action_type == action_type and r.iteration >= since]

    def last_of(self, action_type: ActionType, success: bool | None = None) -> ActionRecord | None:
        for r in reversed(self._records):
            if r.action_type != action_type:
                continue
            if success is None or r.success == success:
                return r
        return None

    def succeeded(self, action_type: ActionType, since: int = 0) -> bool:
        return any(r.success for r in self.of_type(action_type, since))

    def consecutive_failures(self, action_type: ActionType | None = None) -> int:
        """Failures at the tail of the history (optionally of one type)."""
        count = 0
        for r in reversed(self._records):
            if r.success:
                break
            if action_type is not None and r.action_type != action_type:
                break
            count += 1
        return count

    def outcome_for(self, record: ActionRecord | None) -> ApprovalOutcome | None:
        """Decision folded in for a REQUEST_APPROVAL record, if any."""
        if record is None:
            return None
        ticket_id = record.output.get("ticket_id")
        if not ticket_id:
            return None
        return self._outcomes.get(ticket_id)

    def fingerprint(self) -> str:
        """Stable hash of records and outcomes, for replay comparisons."""
        payload = {
            "records": [
                {k: v for k, v in r.to_dict().items() if k not in ("created_at", "duration_ms")}
                for r in self._records
            ],
            "outcomes": [
                {k: v for k, v in o.to_dict().items() if k != "decided_at"}
                for o in self.outcomes
            ],
        }
        blob = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()
