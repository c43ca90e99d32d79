"""
Agent Engine — Status & Cancellation

Pull-based status: callers read an ExecutionStatusView whenever they
like; nothing is pushed. Cancellation is cooperative through a
per-execution CancellationToken that the orchestrator checks at its
checkpoints. In-flight LLM or tool calls are allowed to finish.

poll_until_terminal() is the polling-client contract: read status every
`interval_s` seconds (2s by default) until the execution leaves
`running`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable

from agent_engine.errors import CancellationRequested
from agent_engine.types import AgentExecution, ExecutionOutcome, ExecutionStatus

logger = logging.getLogger("agent_engine.status")

DEFAULT_POLL_INTERVAL_S = 2.0


# ═══════════════════════════════════════════════════════════════════
# Cancellation
# ═══════════════════════════════════════════════════════════════════

class CancellationToken:
    """One per execution run. Thread-safe; cancel() is idempotent."""

    def __init__(self, execution_id: str = ""):
        self.execution_id = execution_id
        self._event = threading.Event()
        self.requested_at: float | None = None
        self.reason = ""

    def cancel(self, reason: str = "cancelled by request"):
        if not self._event.is_set():
            self.requested_at = time.time()
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise CancellationRequested(self.reason or "cancelled")


class CancellationRegistry:
    """Tokens of executions currently running in this process."""

    def __init__(self):
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def create(self, execution_id: str) -> CancellationToken:
        token = CancellationToken(execution_id)
        with self._lock:
            self._tokens[execution_id] = token
        return token

    def get(self, execution_id: str) -> CancellationToken | None:
        with self._lock:
            return self._tokens.get(execution_id)

    def cancel(self, execution_id: str) -> bool:
        token = self.get(execution_id)
        if token is None:
            return False
        token.cancel()
        return True

    def release(self, execution_id: str):
        with self._lock:
            self._tokens.pop(execution_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


# ═══════════════════════════════════════════════════════════════════
# Status View
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CurrentStepView:
    step_number: int
    action: str
    reasoning: str
    status: str


@dataclass
class ExecutionStatusView:
    """Snapshot returned by get_status()."""
    execution_id: str
    agent_id: str
    status: ExecutionStatus
    current_step: CurrentStepView | None
    total_steps: int
    estimated_cost_usd: float
    tokens_used: int
    llm_call_count: int
    cancelled: bool
    created_at: float
    completed_at: float | None = None
    execution_time_ms: float | None = None
    outcome: ExecutionOutcome | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @staticmethod
    def from_execution(execution: AgentExecution) -> ExecutionStatusView:
        last = execution.current_step
        current = None
        if last is not None:
            current = CurrentStepView(
                step_number=last.step_number,
                action=last.action,
                reasoning=last.reasoning,
                status=last.status.value,
            )
        return ExecutionStatusView(
            execution_id=execution.execution_id,
            agent_id=execution.agent_id,
            status=execution.status,
            current_step=current,
            total_steps=execution.total_steps,
            estimated_cost_usd=round(execution.cost_usd, 6),
            tokens_used=execution.tokens_used,
            llm_call_count=execution.llm_call_count,
            cancelled=execution.cancelled,
            created_at=execution.created_at,
            completed_at=execution.completed_at,
            execution_time_ms=execution.execution_time_ms,
            outcome=execution.outcome,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


# ═══════════════════════════════════════════════════════════════════
# Polling
# ═══════════════════════════════════════════════════════════════════

def poll_until_terminal(
    get_status: Callable[[str], ExecutionStatusView],
    execution_id: str,
    interval_s: float = DEFAULT_POLL_INTERVAL_S,
    timeout_s: float | None = None,
    on_update: Callable[[ExecutionStatusView], None] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ExecutionStatusView:
    """
    Poll get_status until the execution is terminal.

    Raises:
        TimeoutError: timeout_s elapsed first
    """
    deadline = None if timeout_s is None else clock() + timeout_s
    while True:
        view = get_status(execution_id)
        if on_update is not None:
            on_update(view)
        if view.is_terminal:
            return view
        if deadline is not None and clock() >= deadline:
            raise TimeoutError(
                f"Execution {execution_id} still {view.status.value} after {timeout_s:.1f}s"
            )
        sleep_fn(interval_s)
