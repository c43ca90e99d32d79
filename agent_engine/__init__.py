"""
Agent Engine

Bounded LLM reasoning loop with a statically registered tool table,
confidence-scored memory, per-execution and per-org cost ceilings and
a pull-based status surface.

Light imports only: the chat-model factory (agent_engine.llm) pulls in
langchain provider packages lazily and is not re-exported here.
"""

from agent_engine.errors import (
    AgentEngineError, BudgetExceeded, CancellationRequested,
    IllegalStateTransition, LLMProtocolError, NotFoundError,
    ToolExecutionError, UnknownToolError, ValidationError,
)
from agent_engine.types import (
    AgentDefinition, AgentExecution, CostBudget, ExecutionOutcome,
    ExecutionStatus, ExecutionStep, Feedback, FeedbackType, Memory,
    MemoryScope, OnError, RetrievedMemory, StepStatus, ToolContext,
    ToolResult, TriggerType,
)
from agent_engine.schemas import (
    LearningLesson, MemoryConditions, MemoryContent, ReasoningDecision,
)
from agent_engine.tools import ToolRegistry, ToolSpec
from agent_engine.store import ExecutionStore, SQLiteStore
from agent_engine.memory import MemoryStore
from agent_engine.cost import BudgetTracker, OrgDailyLedger, PricingTable
from agent_engine.decision import DecisionClient, DecisionResult
from agent_engine.orchestrator import Orchestrator
from agent_engine.status import (
    CancellationToken, ExecutionStatusView, poll_until_terminal,
)
from agent_engine.service import AgentService

__version__ = "0.1.0"
