"""
Agent Engine — Agent Service

The external interface. Callers register agent definitions, trigger
executions, read status, cancel and give feedback; executions run on a
bounded thread pool, one task per execution.

Usage:
    service = AgentService.from_config(registry)
    agent = service.register_agent(AgentDefinition.create(
        organization_id="org_1", name="reconciler",
        goal_template="Reconcile {account} for {month}",
        allowed_tools=["fetch_statement", "match_transactions"],
    ))
    execution_id = service.trigger(agent.agent_id, goal_overrides={"account": "1010", "month": "2026-03"})
    view = service.wait(execution_id, timeout=120)
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from typing import Any, Callable

import pydantic

from agent_engine.config import load_config
from agent_engine.context import PROMPT_VERSION, ContextAssembler
from agent_engine.cost import OrgDailyLedger, PricingTable
from agent_engine.decision import DecisionClient
from agent_engine.errors import NotFoundError
from agent_engine.llm import create_llm, detect_provider, resolve_model
from agent_engine.memory import MemoryStore
from agent_engine.orchestrator import Orchestrator
from agent_engine.retry import RetryPolicy, policy_from_config
from agent_engine.schemas import LearningLesson
from agent_engine.state_machine import transition
from agent_engine.status import CancellationRegistry, ExecutionStatusView
from agent_engine.store import ExecutionStore, SQLiteStore
from agent_engine.tools import ToolRegistry
from agent_engine.types import (
    AgentDefinition,
    AgentExecution,
    ExecutionStatus,
    ExecutionStep,
    Feedback,
    FeedbackType,
    Memory,
    TriggerType,
)

logger = logging.getLogger("agent_engine.service")


class AgentService:
    """Thread-safe facade over the orchestrator, store and memory."""

    def __init__(
        self,
        store: ExecutionStore,
        registry: ToolRegistry,
        memory: MemoryStore,
        decision_client: DecisionClient | None = None,
        config: dict[str, Any] | None = None,
        retry_policy: RetryPolicy | None = None,
        assembler: ContextAssembler | None = None,
        max_workers: int | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ):
        self.config = config if config is not None else load_config()
        self.store = store
        self.registry = registry
        self.memory = memory
        self.ledger = OrgDailyLedger(store)
        self.retry_policy = retry_policy or policy_from_config(self.config)
        self.assembler = assembler or ContextAssembler.from_config(self.config)
        self.pricing = PricingTable.from_config(self.config)
        self._decision_client = decision_client
        self._clients: dict[str, DecisionClient] = {}
        self._sleep_fn = sleep_fn or time.sleep
        self.tokens = CancellationRegistry()

        if not registry.frozen:
            registry.freeze()

        workers = max_workers or int((self.config.get("worker") or {}).get("max_workers", 4))
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="ae_worker",
        )
        self._futures: dict[str, concurrent.futures.Future] = {}
        self._lock = threading.Lock()
        logger.info("AgentService started: max_workers=%d", workers)

    @classmethod
    def from_config(
        cls,
        registry: ToolRegistry,
        config: dict[str, Any] | None = None,
        store: ExecutionStore | None = None,
        decision_client: DecisionClient | None = None,
    ) -> AgentService:
        config = config if config is not None else load_config()
        if store is None:
            store = SQLiteStore((config.get("store") or {}).get("path", "agent_engine.db"))
        memory = MemoryStore.from_config(store, config)
        return cls(store, registry, memory, decision_client=decision_client, config=config)

    # ── Agents ──────────────────────────────────────────────────

    def define_agent(self, organization_id: str, name: str, goal_template: str,
                     **kwargs) -> AgentDefinition:
        """Create and register a definition; unset limits come from `budgets`."""
        for key, value in (self.config.get("budgets") or {}).items():
            kwargs.setdefault(key, value)
        return self.register_agent(
            AgentDefinition.create(organization_id, name, goal_template, **kwargs)
        )

    def register_agent(self, definition: AgentDefinition) -> AgentDefinition:
        """Validate and persist a definition. Raises ValueError."""
        if definition.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if not 0.0 <= definition.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        if definition.max_cost_per_execution <= 0 or definition.max_tokens_per_execution <= 0:
            raise ValueError("execution budget limits must be positive")
        unknown = [t for t in definition.allowed_tools if self.registry.get(t) is None]
        if unknown:
            raise ValueError(f"Unknown tools in allowed_tools: {', '.join(unknown)}")
        self.store.save_agent(definition)
        logger.info("Registered agent %s (%s)", definition.agent_id, definition.name)
        return definition

    def get_agent(self, agent_id: str) -> AgentDefinition:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    # ── Executions ──────────────────────────────────────────────

    def trigger(
        self,
        agent_id: str,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        goal_overrides: dict[str, Any] | None = None,
        triggered_by: str | None = None,
    ) -> str:
        """Create a running execution and queue it. Returns the execution id."""
        agent = self.get_agent(agent_id)
        if not agent.is_active:
            raise ValueError(f"Agent {agent_id} is inactive")

        execution = AgentExecution.create(
            agent,
            goal=agent.render_goal(goal_overrides),
            trigger_type=TriggerType(trigger_type),
            triggered_by=triggered_by,
            prompt_version=PROMPT_VERSION,
            input_context=goal_overrides,
        )
        self.store.create_execution(execution)
        token = self.tokens.create(execution.execution_id)

        future = self._pool.submit(self._run, agent, execution.execution_id, token)
        with self._lock:
            self._futures[execution.execution_id] = future
        logger.info("Triggered execution %s for agent %s (%s)",
                    execution.execution_id, agent_id, execution.trigger_type.value)
        return execution.execution_id

    def _run(self, agent: AgentDefinition, execution_id: str, token):
        try:
            orchestrator = Orchestrator(
                self.store,
                self.registry,
                self.decision_client_for(agent),
                self.memory,
                ledger=self.ledger,
                assembler=self.assembler,
                retry_policy=self.retry_policy,
                sleep_fn=self._sleep_fn,
            )
            return orchestrator.run(execution_id, token)
        except Exception as e:
            logger.exception("Worker failed for execution %s", execution_id)
            execution = self.store.get_execution(execution_id)
            if execution is not None and not execution.status.is_terminal:
                transition(execution, ExecutionStatus.FAILED, "worker error",
                           error=f"{type(e).__name__}: {e}")
                self.store.update_execution(execution)
            return execution
        finally:
            self.tokens.release(execution_id)

    def decision_client_for(self, agent: AgentDefinition) -> DecisionClient:
        if self._decision_client is not None:
            return self._decision_client
        with self._lock:
            client = self._clients.get(agent.model)
            if client is None:
                provider = detect_provider(self.config)
                llm_cfg = self.config.get("llm") or {}
                client = DecisionClient(
                    create_llm(agent.model, provider=provider, config=self.config),
                    model_name=resolve_model(agent.model, provider, self.config),
                    pricing=self.pricing,
                    policy=self.retry_policy,
                    timeout_s=float((self.config.get("timeouts") or {}).get("llm_s", 60.0)),
                    estimated_output_tokens=int(llm_cfg.get("estimated_output_tokens", 400)),
                )
                self._clients[agent.model] = client
            return client

    def get_execution(self, execution_id: str) -> AgentExecution:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    def get_status(self, execution_id: str) -> ExecutionStatusView:
        return ExecutionStatusView.from_execution(self.get_execution(execution_id))

    def get_steps(self, execution_id: str) -> list[ExecutionStep]:
        return self.get_execution(execution_id).steps

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation and return immediately. The run stops at its
        next checkpoint. Returns False when the execution is already terminal.
        """
        execution = self.store.get_execution(execution_id, include_steps=False)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        if execution.status.is_terminal:
            return False
        self.store.mark_cancelled(execution_id)
        self.tokens.cancel(execution_id)
        logger.info("Cancellation requested for %s", execution_id)
        return True

    def wait(self, execution_id: str, timeout: float | None = None) -> ExecutionStatusView:
        """Block until the execution's worker task finishes (in-process callers only)."""
        with self._lock:
            future = self._futures.get(execution_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                raise TimeoutError(f"Execution {execution_id} still running after {timeout}s") from None
        return self.get_status(execution_id)

    # ── Feedback & memory ───────────────────────────────────────

    def submit_feedback(self, execution_id: str, feedback: Feedback) -> dict[str, Any]:
        """
        approval   → memories used by the run reinforced as correct
        rejection  → reinforced as incorrect
        correction → reinforced as incorrect, and details["lesson"] learned
        """
        execution = self.get_execution(execution_id)
        if not execution.status.is_terminal:
            raise ValueError(f"Execution {execution_id} is still running")

        feedback_type = FeedbackType(feedback.type)
        was_correct = feedback_type == FeedbackType.APPROVAL
        reinforced = []
        for memory_id in execution.memories_used:
            memory = self.memory.reinforce(memory_id, was_correct)
            reinforced.append({"memory_id": memory_id, "confidence": round(memory.confidence, 6)})

        lesson_memory_id = None
        if feedback_type == FeedbackType.CORRECTION and feedback.details.get("lesson"):
            raw = dict(feedback.details["lesson"])
            raw.setdefault("is_correction", True)
            try:
                lesson = LearningLesson.model_validate(raw)
            except pydantic.ValidationError as e:
                raise ValueError(f"Invalid lesson: {e.errors()[:3]}") from e
            learned = self.memory.apply_lesson(execution.organization_id, execution.agent_id, lesson)
            lesson_memory_id = learned.memory_id

        logger.info("Feedback %s on %s: %d memories reinforced%s",
                    feedback_type.value, execution_id, len(reinforced),
                    f", lesson → {lesson_memory_id}" if lesson_memory_id else "")
        return {
            "execution_id": execution_id,
            "type": feedback_type.value,
            "reinforced": reinforced,
            "lesson_memory_id": lesson_memory_id,
        }

    def list_memories(self, agent_id: str, include_archived: bool = False) -> list[Memory]:
        agent = self.get_agent(agent_id)
        return self.memory.list(agent.organization_id, agent_id=agent_id,
                                include_archived=include_archived)

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)
        logger.info("AgentService shut down")
