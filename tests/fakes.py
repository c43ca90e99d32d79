"""
Shared test doubles: a scripted chat model, tool input schemas and a
builder that wires an in-memory engine together. No network.
"""

import json
import os
import sys
import threading
import time

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _base not in sys.path:
    sys.path.insert(0, _base)

from langchain_core.messages import AIMessage
from pydantic import BaseModel

from agent_engine.cost import ModelPricing, OrgDailyLedger, PricingTable
from agent_engine.decision import DecisionClient
from agent_engine.memory import MemoryStore
from agent_engine.orchestrator import Orchestrator
from agent_engine.retry import RetryPolicy
from agent_engine.store import SQLiteStore
from agent_engine.tools import ToolRegistry
from agent_engine.types import AgentDefinition, AgentExecution

MODEL = "test-model"

# $1 per million input tokens, $2 per million output tokens
PRICING = PricingTable({
    "default": ModelPricing("default", 1.0, 2.0),
    MODEL: ModelPricing(MODEL, 1.0, 2.0),
})

NO_JITTER = RetryPolicy(max_retries=1, backoff_base=0.01, backoff_max=0.01, jitter=0.0)


def no_sleep(seconds):
    pass


def decision(reasoning="thinking", action="", tool_name=None, tool_input=None,
             done=False, needs_human=False, human_message=None) -> dict:
    return {
        "reasoning": reasoning,
        "action": action,
        "tool_name": tool_name,
        "tool_input": tool_input,
        "done": done,
        "needs_human": needs_human,
        "human_message": human_message,
    }


class ScriptedLLM:
    """
    Chat model double. Each script item is a dict (sent as JSON), a raw
    string, an exception instance (raised) or a callable (called, then
    its return value is used). The last item repeats once the script
    runs out.
    """

    def __init__(self, script, input_tokens=100, output_tokens=20, delay_s=0.0):
        self.script = list(script)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.delay_s = delay_s
        self.calls = []
        self._lock = threading.Lock()

    def invoke(self, messages):
        with self._lock:
            index = len(self.calls)
            self.calls.append(messages)
            item = self.script[min(index, len(self.script) - 1)]
        if self.delay_s:
            time.sleep(self.delay_s)
        if callable(item) and not isinstance(item, type):
            item = item()
        if isinstance(item, BaseException):
            raise item
        content = item if isinstance(item, str) else json.dumps(item)
        return AIMessage(
            content=content,
            usage_metadata={
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_tokens": self.input_tokens + self.output_tokens,
            },
        )


# ── Tool schemas ─────────────────────────────────────────────────

class StatementInput(BaseModel):
    account: str
    month: str = "2026-03"


class MatchInput(BaseModel):
    account: str
    tolerance: float = 0.01


# ── Wiring ───────────────────────────────────────────────────────

class Harness:
    """In-memory store, registry, memory and ledger for one test."""

    def __init__(self, registry=None):
        self.store = SQLiteStore(":memory:")
        self.registry = registry or ToolRegistry(default_timeout_s=5.0)
        self.memory = MemoryStore(self.store)
        self.ledger = OrgDailyLedger(self.store)

    def client(self, llm, timeout_s=5.0):
        return DecisionClient(llm, model_name=MODEL, pricing=PRICING, policy=NO_JITTER,
                              timeout_s=timeout_s, sleep_fn=no_sleep)

    def agent(self, **kwargs) -> AgentDefinition:
        kwargs.setdefault("allowed_tools", self.registry.list_tools())
        agent = AgentDefinition.create("org_test", "reconciler",
                                       "Reconcile account {account}", **kwargs)
        self.store.save_agent(agent)
        return agent

    def execution(self, agent, goal="Reconcile account 1010") -> AgentExecution:
        execution = AgentExecution.create(agent, goal)
        self.store.create_execution(execution)
        return execution

    def orchestrator(self, llm, timeout_s=5.0) -> Orchestrator:
        return Orchestrator(self.store, self.registry, self.client(llm, timeout_s),
                            self.memory, ledger=self.ledger, retry_policy=NO_JITTER,
                            sleep_fn=no_sleep)

    def run(self, llm, agent=None, token=None, **agent_kwargs) -> AgentExecution:
        agent = agent or self.agent(**agent_kwargs)
        execution = self.execution(agent)
        return self.orchestrator(llm).run(execution.execution_id, token)
