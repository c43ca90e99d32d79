"""
Agent Engine — Execution State Machine

    running → completed | failed | needs_review | cancelled

Terminal states have no exits. Every transition is validated, stamped
with completion metrics and logged; steps are never touched.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from agent_engine.errors import IllegalStateTransition
from agent_engine.types import (
    AgentExecution,
    ExecutionOutcome,
    ExecutionStatus,
    StepStatus,
)

logger = logging.getLogger("agent_engine.state_machine")


# Valid transitions: {from_status: [valid_to_statuses]}
VALID_TRANSITIONS = {
    ExecutionStatus.RUNNING: [
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.NEEDS_REVIEW,
        ExecutionStatus.CANCELLED,
    ],
    ExecutionStatus.COMPLETED: [],
    ExecutionStatus.FAILED: [],
    ExecutionStatus.NEEDS_REVIEW: [],
    ExecutionStatus.CANCELLED: [],
}


@dataclass
class TransitionRecord:
    """Immutable record of a status change."""
    execution_id: str
    from_status: ExecutionStatus
    to_status: ExecutionStatus
    reason: str
    timestamp: float = field(default_factory=time.time)


def can_transition(from_status: ExecutionStatus, to_status: ExecutionStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def build_outcome(
    execution: AgentExecution,
    reason: str,
    summary: str = "",
    human_message: str | None = None,
    error: str | None = None,
) -> ExecutionOutcome:
    completed = [s for s in execution.steps if s.status == StepStatus.COMPLETED]
    failed = [s for s in execution.steps if s.status == StepStatus.FAILED]
    tools_used: list[str] = []
    for s in completed:
        if s.tool_name and s.tool_name not in tools_used:
            tools_used.append(s.tool_name)
    if not summary:
        summary = (
            f"{len(completed)} of {len(execution.steps)} steps completed"
            + (f" using {', '.join(tools_used)}" if tools_used else "")
        )
    return ExecutionOutcome(
        summary=summary,
        reason=reason,
        human_message=human_message,
        error=error,
        completed_steps=len(completed),
        failed_steps=len(failed),
        tools_used=tools_used,
    )


def transition(
    execution: AgentExecution,
    to_status: ExecutionStatus,
    reason: str = "",
    summary: str = "",
    human_message: str | None = None,
    error: str | None = None,
    now: float | None = None,
) -> TransitionRecord:
    """
    Move an execution to a terminal status in place.

    Raises:
        IllegalStateTransition: if the execution is already terminal or
        the target is not reachable
    """
    current = execution.status
    if not can_transition(current, to_status):
        raise IllegalStateTransition(
            f"Execution {execution.execution_id}: cannot transition "
            f"{current.value} → {to_status.value}"
        )

    now = time.time() if now is None else now
    execution.status = to_status
    execution.outcome = build_outcome(
        execution, reason, summary=summary, human_message=human_message, error=error,
    )
    execution.completed_at = now
    execution.execution_time_ms = round((now - execution.created_at) * 1000, 1)

    logger.info(
        "Execution %s: %s → %s (%s)",
        execution.execution_id, current.value, to_status.value, reason,
    )
    return TransitionRecord(
        execution_id=execution.execution_id,
        from_status=current,
        to_status=to_status,
        reason=reason,
        timestamp=now,
    )
