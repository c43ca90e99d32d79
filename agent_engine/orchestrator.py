"""
Agent Engine — Orchestrator

The bounded reasoning loop. One run drives one execution from `running`
to exactly one terminal status:

    for each iteration (at most max_iterations):
        checkpoint      cancel flag / token → cancelled
                        budget already spent → needs_review
        assemble        goal, step window, memories, tool catalog
        decide          one LLM call (budget-checked, transport retried)
        checkpoint      cancel that arrived mid-decision → cancelled, no step
        route           needs_human → needs_review
                        done        → completed
                        no tool     → reasoning-only step
                        unknown     → failed step, needs_review
                        duplicate   → skipped step, needs_review
                        tool        → invoke (one retry if transient),
                                      append step, apply on_error

Every iteration appends at most one step. Steps are persisted before the
status moves, so each terminal outcome keeps the full step log and the
true cost counters.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

from agent_engine.context import ContextAssembler
from agent_engine.cost import BudgetTracker, OrgDailyLedger
from agent_engine.decision import DecisionClient, DecisionResult
from agent_engine.errors import (
    BudgetExceeded,
    CancellationRequested,
    LLMProtocolError,
    NotFoundError,
    UnknownToolError,
    ValidationError,
)
from agent_engine.logging import ExecutionLogger
from agent_engine.memory import MemoryStore
from agent_engine.retry import RetryPolicy, calculate_backoff, DEFAULT_POLICY
from agent_engine.state_machine import transition
from agent_engine.status import CancellationToken
from agent_engine.store import ExecutionStore
from agent_engine.tools import ToolRegistry, ToolSpec
from agent_engine.types import (
    AgentDefinition,
    AgentExecution,
    CostBudget,
    ExecutionStatus,
    ExecutionStep,
    OnError,
    StepStatus,
    ToolContext,
    ToolResult,
)

logger = logging.getLogger("agent_engine.orchestrator")

MAX_ITERATIONS_REASON = "max iterations reached"


def call_key(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    return tool_name + ":" + json.dumps(tool_input or {}, sort_keys=True, default=str)


class Orchestrator:
    """Runs executions. Stateless between runs; safe to share across workers."""

    def __init__(
        self,
        store: ExecutionStore,
        registry: ToolRegistry,
        decision_client: DecisionClient,
        memory: MemoryStore,
        ledger: OrgDailyLedger | None = None,
        assembler: ContextAssembler | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.registry = registry
        self.decision_client = decision_client
        self.memory = memory
        self.ledger = ledger or OrgDailyLedger(store)
        self.assembler = assembler or ContextAssembler()
        self.retry_policy = retry_policy or DEFAULT_POLICY
        self._sleep = sleep_fn

    # ── Entry point ─────────────────────────────────────────────

    def run(self, execution_id: str, token: CancellationToken | None = None) -> AgentExecution:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        if execution.status.is_terminal:
            logger.info("Execution %s already %s; nothing to run",
                        execution_id, execution.status.value)
            return execution
        agent = self.store.get_agent(execution.agent_id)
        if agent is None:
            raise NotFoundError("agent", execution.agent_id)

        log = ExecutionLogger(execution_id, agent.agent_id, agent.organization_id)
        budget = BudgetTracker(
            CostBudget(
                max_tokens_per_execution=agent.max_tokens_per_execution,
                max_cost_per_execution=agent.max_cost_per_execution,
                max_cost_per_org_daily=agent.max_cost_per_org_daily,
                current_tokens_used=execution.tokens_used,
                current_cost_used=execution.cost_usd,
            ),
            agent.organization_id,
            self.ledger,
            on_exceeded=lambda e: log.budget_check_failed(e.limit, e.used, e.requested, e.ceiling),
        )
        budget.llm_calls = execution.llm_call_count
        t0 = time.monotonic()

        token = token or CancellationToken(execution_id)
        try:
            self._loop(execution, agent, budget, log, token)
        except CancellationRequested:
            self._finish(execution, budget, log, ExecutionStatus.CANCELLED,
                         "cancelled by request")
        except Exception as e:
            logger.exception("Execution %s crashed", execution_id)
            if not execution.status.is_terminal:
                self._finish(execution, budget, log, ExecutionStatus.FAILED,
                             "unexpected error", error=f"{type(e).__name__}: {e}")

        log.execution_end(
            status=execution.status.value,
            steps=execution.total_steps,
            tokens_used=execution.tokens_used,
            cost_usd=execution.cost_usd,
            llm_calls=execution.llm_call_count,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        return execution

    # ── Loop ────────────────────────────────────────────────────

    def _loop(self, execution: AgentExecution, agent: AgentDefinition,
              budget: BudgetTracker, log: ExecutionLogger,
              token: CancellationToken):
        memories = self.memory.retrieve(
            agent.organization_id,
            agent_id=agent.agent_id,
            query_context=execution.input_context or None,
            min_confidence=agent.confidence_threshold,
        )
        for m in memories:
            if m.memory_id not in execution.memories_used:
                execution.memories_used.append(m.memory_id)
        self.store.update_execution(execution)
        log.execution_start(goal=execution.goal,
                            trigger_type=execution.trigger_type.value,
                            memories=len(memories))

        seen_calls = {
            call_key(s.tool_name, s.tool_input)
            for s in execution.steps
            if s.tool_name and s.status != StepStatus.SKIPPED
        }
        catalog = self.registry.catalog(agent.allowed_tools)

        while True:
            # Checkpoint: nothing external happens past a failed check
            self._checkpoint(execution, token)

            iteration = execution.total_steps + 1
            if iteration > agent.max_iterations:
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             MAX_ITERATIONS_REASON)
                return
            try:
                budget.check_remaining()
            except BudgetExceeded as e:
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             f"budget exhausted: {e}")
                return

            context = self.assembler.assemble(
                goal=execution.goal,
                steps=execution.steps,
                memories=memories,
                tool_catalog=catalog,
                iteration=iteration,
                max_iterations=agent.max_iterations,
                custom_instructions=agent.custom_instructions,
                remaining_cost_usd=budget.budget.remaining_cost,
            )

            try:
                result = self.decision_client.decide(context, budget=budget)
            except BudgetExceeded as e:
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             f"budget exhausted: {e}")
                return
            except LLMProtocolError as e:
                self._append(execution, budget, log, ExecutionStep(
                    step_number=iteration,
                    reasoning="",
                    action="protocol_error",
                    status=StepStatus.FAILED,
                    tool_output={"error": str(e), "raw_response": e.raw_response[:2000]},
                    model=self.decision_client.model_name,
                    attempts=1,
                ))
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             f"protocol violation: {e}")
                return
            except Exception as e:
                self._finish(execution, budget, log, ExecutionStatus.FAILED,
                             "unrecoverable LLM error", error=f"{type(e).__name__}: {e}")
                return

            decision = result.decision
            log.decision(iteration, decision.action, decision.tool_name,
                         decision.done, decision.needs_human,
                         tokens=result.tokens_used, reasoning=decision.reasoning)

            # Checkpoint: cancel arrived while the decision was in flight
            self._checkpoint(execution, token)

            if decision.needs_human:
                self._append(execution, budget, log,
                             self._decision_step(iteration, result, "request_human"))
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             "human input requested",
                             human_message=decision.human_message or decision.reasoning)
                return

            if decision.done:
                self._append(execution, budget, log,
                             self._decision_step(iteration, result, "complete"))
                self._finish(execution, budget, log, ExecutionStatus.COMPLETED,
                             "goal achieved", summary=self._summary(execution, decision.reasoning))
                return

            if not decision.tool_name:
                self._append(execution, budget, log,
                             self._decision_step(iteration, result, "reason"))
                continue

            try:
                spec = self.registry.resolve(decision.tool_name, agent.allowed_tools)
            except UnknownToolError as e:
                step = self._decision_step(iteration, result, "unknown_tool",
                                           status=StepStatus.FAILED)
                step.tool_output = {"error": str(e)}
                self._append(execution, budget, log, step)
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             f"protocol violation: {e}")
                return

            key = call_key(spec.name, decision.tool_input)
            if key in seen_calls:
                step = self._decision_step(iteration, result, "deduplicated",
                                           status=StepStatus.SKIPPED)
                step.tool_output = {"skipped": "identical call already made in this execution"}
                self._append(execution, budget, log, step)
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             f"duplicate tool call: {spec.name}")
                return

            outcome = self._call_tool(execution, agent, spec, result, iteration, budget, log)
            if outcome is None:
                return      # budget ran out before the first attempt
            seen_calls.add(key)
            step, tool_result, budget_error = outcome
            self._append(execution, budget, log, step)

            if budget_error is not None and not tool_result.success:
                self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                             f"budget exhausted: {budget_error}", error=tool_result.error)
                return
            if tool_result.success:
                continue
            if spec.on_error == OnError.SKIP:
                continue
            if spec.on_error == OnError.FAIL:
                self._finish(execution, budget, log, ExecutionStatus.FAILED,
                             f"tool {spec.name} failed", error=tool_result.error)
                return
            self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                         f"retries exhausted for tool {spec.name}", error=tool_result.error)
            return

    # ── Tool call ───────────────────────────────────────────────

    def _call_tool(self, execution: AgentExecution, agent: AgentDefinition,
                   spec: ToolSpec, result: DecisionResult, iteration: int,
                   budget: BudgetTracker, log: ExecutionLogger
                   ) -> tuple[ExecutionStep, ToolResult, BudgetExceeded | None] | None:
        """
        Invoke with at most one retry for transient failures. Returns None
        (after finishing the execution) when the budget forbids the first
        attempt.
        """
        decision = result.decision
        retries: list[dict[str, Any]] = []
        tool_result: ToolResult | None = None
        attempts = 0
        budget_error: BudgetExceeded | None = None

        for attempt in range(1, self.retry_policy.max_attempts + 1):
            try:
                budget.check_budget(spec.estimated_cost_usd, spec.estimated_tokens)
            except BudgetExceeded as e:
                budget_error = e
                break

            attempts = attempt
            ctx = ToolContext(
                organization_id=agent.organization_id,
                agent_id=agent.agent_id,
                execution_id=execution.execution_id,
                attempt=attempt,
            )
            try:
                tool_result = self.registry.invoke(spec.name, decision.tool_input, ctx,
                                                   allowed=agent.allowed_tools)
            except ValidationError as e:
                tool_result = ToolResult(success=False, error=str(e), error_kind="validation")

            budget.record(tool_result.tokens_used, tool_result.cost_usd)
            if tool_result.success or not tool_result.transient:
                break
            if attempt >= self.retry_policy.max_attempts:
                break
            if tool_result.error_kind == "timeout" and not self.registry.settle(
                    execution.execution_id, self.registry.timeout_for(spec)):
                # The timed-out handler is still running; a retry would overlap it
                tool_result.error = f"{tool_result.error}; not retried while the call is still running"
                break

            delay = calculate_backoff(attempt - 1, self.retry_policy)
            retries.append({
                "attempt": attempt,
                "error": tool_result.error,
                "error_kind": tool_result.error_kind,
                "duration_ms": round(tool_result.duration_ms, 1),
                "backoff_s": round(delay, 3),
            })
            log.tool_call(iteration, spec.name, False, attempt,
                          tool_result.duration_ms, tool_result.error)
            self._sleep(delay)

        if tool_result is None:
            # Budget refused the first attempt: no call made, no step
            self._finish(execution, budget, log, ExecutionStatus.NEEDS_REVIEW,
                         f"budget exhausted: {budget_error}")
            return None

        if budget_error is not None:
            retries.append({"attempt": attempts + 1, "error": str(budget_error),
                            "error_kind": "budget"})

        log.tool_call(iteration, spec.name, tool_result.success, attempts,
                      tool_result.duration_ms, tool_result.error)

        step = self._decision_step(
            iteration, result, decision.action or spec.name,
            status=StepStatus.COMPLETED if tool_result.success else StepStatus.FAILED,
        )
        step.tool_name = spec.name
        step.tool_output = tool_result.data if tool_result.success else {
            "error": tool_result.error,
            "error_kind": tool_result.error_kind,
        }
        step.tokens_used += tool_result.tokens_used
        step.cost_usd += tool_result.cost_usd
        step.duration_ms += tool_result.duration_ms + sum(r.get("duration_ms", 0.0) for r in retries)
        step.attempts = attempts
        step.retries = retries
        return step, tool_result, budget_error

    # ── Helpers ─────────────────────────────────────────────────

    def _decision_step(self, iteration: int, result: DecisionResult, default_action: str,
                       status: StepStatus = StepStatus.COMPLETED) -> ExecutionStep:
        d = result.decision
        return ExecutionStep(
            step_number=iteration,
            reasoning=d.reasoning,
            action=d.action or default_action,
            status=status,
            tool_name=d.tool_name,
            tool_input=d.tool_input,
            model=result.model,
            tokens_used=result.tokens_used,
            cost_usd=result.cost_usd,
            duration_ms=round(result.latency_ms, 1),
        )

    def _checkpoint(self, execution: AgentExecution, token: CancellationToken):
        """Raise CancellationRequested when the token or the persisted flag is set."""
        if not token.is_cancelled and self.store.is_cancelled(execution.execution_id):
            token.cancel()
        if token.is_cancelled:
            execution.cancelled = True
        token.raise_if_cancelled()

    def _sync_counters(self, execution: AgentExecution, budget: BudgetTracker):
        execution.tokens_used = budget.tokens_used
        execution.cost_usd = budget.cost_used
        execution.llm_call_count = budget.llm_calls

    def _append(self, execution: AgentExecution, budget: BudgetTracker,
                log: ExecutionLogger, step: ExecutionStep):
        self.store.append_step(execution.execution_id, step)
        execution.steps.append(step)
        self._sync_counters(execution, budget)
        self.store.update_execution(execution)
        log.step_appended(step.step_number, step.status.value, step.action)

    def _finish(self, execution: AgentExecution, budget: BudgetTracker,
                log: ExecutionLogger, status: ExecutionStatus, reason: str, **outcome):
        self._sync_counters(execution, budget)
        record = transition(execution, status, reason, **outcome)
        self.store.update_execution(execution)
        log.status_transition(record.from_status.value, record.to_status.value, reason)

    @staticmethod
    def _summary(execution: AgentExecution, final_reasoning: str) -> str:
        tool_steps = [s for s in execution.steps
                      if s.tool_name and s.status == StepStatus.COMPLETED]
        lines = [final_reasoning.strip()] if final_reasoning.strip() else []
        for s in tool_steps:
            lines.append(f"step {s.step_number}: {s.action} ({s.tool_name})")
        return "\n".join(lines) or f"Completed after {execution.total_steps} steps"
