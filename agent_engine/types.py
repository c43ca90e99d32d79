"""
Agent Engine — Type Definitions

Data structures for agent definitions, executions, steps, memories
and budgets. Pydantic schemas for LLM-facing payloads live in
agent_engine.schemas; everything here is a plain dataclass.
"""

from __future__ import annotations

import enum
import re
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agent_engine.schemas import MemoryConditions, MemoryContent


# Only bare identifiers are placeholders; any other braces are literal text
_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ─── Enums ──────────────────────────────────────────────────────────

class ExecutionStatus(str, enum.Enum):
    """Lifecycle states for an agent execution."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class StepStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, enum.Enum):
    MANUAL = "manual"
    EVENT = "event"


class FeedbackType(str, enum.Enum):
    CORRECTION = "correction"
    APPROVAL = "approval"
    REJECTION = "rejection"


class MemoryScope(str, enum.Enum):
    ENTITY = "entity"
    PATTERN = "pattern"
    CONFIG = "config"


class OnError(str, enum.Enum):
    """What the loop does after a tool has failed for good."""
    SKIP = "skip"     # record the failed step, keep reasoning
    FAIL = "fail"     # execution → failed
    RETRY = "retry"   # retry exhausted → escalate to needs_review


# ─── Agent Definition ───────────────────────────────────────────────

@dataclass(frozen=True)
class AgentDefinition:
    """
    Immutable configuration referenced by executions.

    goal_template uses str.format placeholders filled from the
    goal_overrides passed to trigger(); unknown placeholders are
    left as-is.
    """
    agent_id: str
    organization_id: str
    name: str
    goal_template: str
    allowed_tools: tuple[str, ...] = ()
    max_iterations: int = 10
    confidence_threshold: float = 0.5
    max_tokens_per_execution: int = 200_000
    max_cost_per_execution: float = 1.00
    max_cost_per_org_daily: float = 25.00
    custom_instructions: str = ""
    model: str = "default"
    is_active: bool = True

    @staticmethod
    def create(organization_id: str, name: str, goal_template: str, **kwargs) -> AgentDefinition:
        if "allowed_tools" in kwargs:
            kwargs["allowed_tools"] = tuple(kwargs["allowed_tools"])
        return AgentDefinition(
            agent_id=f"agt_{uuid.uuid4().hex[:12]}",
            organization_id=organization_id,
            name=name,
            goal_template=goal_template,
            **kwargs,
        )

    def render_goal(self, overrides: dict[str, Any] | None = None) -> str:
        if not overrides:
            return self.goal_template

        def fill(match: re.Match) -> str:
            key = match.group(1)
            return str(overrides[key]) if key in overrides else match.group(0)

        return _PLACEHOLDER.sub(fill, self.goal_template)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["allowed_tools"] = list(self.allowed_tools)
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> AgentDefinition:
        d = dict(d)
        d["allowed_tools"] = tuple(d.get("allowed_tools") or ())
        return AgentDefinition(**d)


# ─── Steps & Outcome ────────────────────────────────────────────────

@dataclass
class ExecutionStep:
    """
    One loop iteration. Appended once, never mutated.

    Retried tool calls stay on a single step: `attempts` counts the
    calls made and `retries` keeps one entry per failed attempt.
    """
    step_number: int
    reasoning: str
    action: str
    status: StepStatus
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_output: Any = None
    model: str = ""
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    attempts: int = 0
    retries: list[dict[str, Any]] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @staticmethod
    def from_dict(d: dict[str, Any]) -> ExecutionStep:
        d = dict(d)
        d["status"] = StepStatus(d["status"])
        return ExecutionStep(**d)


@dataclass
class ExecutionOutcome:
    """Summary attached to an execution when it reaches a terminal state."""
    summary: str = ""
    reason: str = ""
    human_message: str | None = None
    error: str | None = None
    completed_steps: int = 0
    failed_steps: int = 0
    tools_used: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any] | None) -> ExecutionOutcome | None:
        if d is None:
            return None
        return ExecutionOutcome(**d)


# ─── Execution ──────────────────────────────────────────────────────

@dataclass
class AgentExecution:
    """One run of an agent definition."""
    execution_id: str
    agent_id: str
    organization_id: str
    goal: str
    trigger_type: TriggerType
    status: ExecutionStatus = ExecutionStatus.RUNNING
    steps: list[ExecutionStep] = field(default_factory=list)
    outcome: ExecutionOutcome | None = None
    cancelled: bool = False
    triggered_by: str | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    llm_call_count: int = 0
    memories_used: list[str] = field(default_factory=list)
    input_context: dict[str, Any] = field(default_factory=dict)   # trigger inputs, used for memory matching
    prompt_version: str = ""
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    execution_time_ms: float | None = None

    @staticmethod
    def create(
        agent: AgentDefinition,
        goal: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: str | None = None,
        prompt_version: str = "",
        input_context: dict[str, Any] | None = None,
    ) -> AgentExecution:
        return AgentExecution(
            execution_id=f"exe_{uuid.uuid4().hex[:12]}",
            agent_id=agent.agent_id,
            organization_id=agent.organization_id,
            goal=goal,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
            prompt_version=prompt_version,
            input_context=dict(input_context or {}),
        )

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> ExecutionStep | None:
        return self.steps[-1] if self.steps else None


# ─── Tools ──────────────────────────────────────────────────────────

@dataclass
class ToolContext:
    """Passed to every tool handler alongside its validated input."""
    organization_id: str
    agent_id: str
    execution_id: str
    attempt: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Captured outcome of one tool invocation."""
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str = ""   # "" | validation | timeout | transient | permanent
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0

    @property
    def transient(self) -> bool:
        return self.error_kind in ("timeout", "transient")


# ─── Memory ─────────────────────────────────────────────────────────

@dataclass
class Memory:
    """A learned fact. Archived, never deleted."""
    memory_id: str
    organization_id: str
    agent_id: str
    scope: MemoryScope
    content: MemoryContent
    entity_key: str | None = None
    category: str | None = None
    conditions: MemoryConditions | None = None
    confidence: float = 0.6
    correct_count: int = 0
    total_count: int = 0
    usage_count: int = 0
    is_archived: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @staticmethod
    def new_id() -> str:
        return f"mem_{uuid.uuid4().hex[:12]}"

    def to_retrieved(self, relevance_score: float) -> RetrievedMemory:
        return RetrievedMemory(
            memory_id=self.memory_id,
            scope=self.scope,
            entity_key=self.entity_key,
            category=self.category,
            content=self.content,
            conditions=self.conditions,
            confidence=self.confidence,
            correct_count=self.correct_count,
            total_count=self.total_count,
            usage_count=self.usage_count,
            relevance_score=relevance_score,
        )


@dataclass
class RetrievedMemory:
    """Memory as handed to the prompt, with its ranking score."""
    memory_id: str
    scope: MemoryScope
    entity_key: str | None
    category: str | None
    content: MemoryContent
    conditions: MemoryConditions | None
    confidence: float
    correct_count: int
    total_count: int
    usage_count: int
    relevance_score: float


# ─── Feedback & Budget ──────────────────────────────────────────────

@dataclass
class Feedback:
    """Human feedback on a finished execution."""
    type: FeedbackType
    details: dict[str, Any] = field(default_factory=dict)
    submitted_by: str | None = None


@dataclass
class CostBudget:
    """Per-execution limits and running counters."""
    max_tokens_per_execution: int
    max_cost_per_execution: float
    max_cost_per_org_daily: float
    current_tokens_used: int = 0
    current_cost_used: float = 0.0

    @property
    def remaining_cost(self) -> float:
        return max(0.0, self.max_cost_per_execution - self.current_cost_used)

    @staticmethod
    def for_agent(agent: AgentDefinition) -> CostBudget:
        return CostBudget(
            max_tokens_per_execution=agent.max_tokens_per_execution,
            max_cost_per_execution=agent.max_cost_per_execution,
            max_cost_per_org_daily=agent.max_cost_per_org_daily,
        )
