"""
Agent Engine — Cost Budget Tracking

Every LLM and tool call is checked against three ceilings before it is
made:
  - tokens per execution
  - cost per execution
  - cost per organization per UTC day (shared by concurrent executions)

Actual usage is recorded afterwards. The org daily aggregate lives in the
store as integer micro-dollars and is incremented in SQL, so two workers
adding $0.02 and $0.03 always leave exactly $0.05.

Pricing table lives in agent_config.yaml:

    pricing:
      default:     {input_per_million: 0.15, output_per_million: 0.60}
      gpt-4o-mini: {input_per_million: 0.15, output_per_million: 0.60}

Usage:
    ledger = OrgDailyLedger(store)
    budget = BudgetTracker(CostBudget.for_agent(agent), agent.organization_id, ledger)
    budget.check_budget(estimated_cost=0.002, estimated_tokens=1500)
    ...
    budget.record(tokens=1432, cost=0.0018)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from agent_engine.errors import BudgetExceeded
from agent_engine.store import ExecutionStore
from agent_engine.types import CostBudget

logger = logging.getLogger("agent_engine.cost")

MICROS_PER_USD = 1_000_000


def to_micros(cost_usd: float) -> int:
    return int(round(cost_usd * MICROS_PER_USD))


def from_micros(micros: int) -> float:
    return micros / MICROS_PER_USD


# ═══════════════════════════════════════════════════════════════════
# Pricing
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ModelPricing:
    """Pricing per million tokens for a model."""
    model: str
    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        """Calculate cost in USD."""
        input_cost = (input_tokens / 1_000_000) * self.input_per_million
        output_cost = (output_tokens / 1_000_000) * self.output_per_million
        return input_cost + output_cost


# Conservative estimate for models missing from the table
UNKNOWN_MODEL_PRICING = ModelPricing("unknown", 1.00, 3.00)


def load_pricing(config: dict[str, Any]) -> dict[str, ModelPricing]:
    """Build the pricing table from the `pricing` section of a loaded config."""
    result = {}
    for model, prices in (config.get("pricing") or {}).items():
        result[model] = ModelPricing(
            model=model,
            input_per_million=float(prices.get("input_per_million", 0.0)),
            output_per_million=float(prices.get("output_per_million", 0.0)),
        )
    return result


class PricingTable:
    """Model → price lookup with a `default` row and a conservative fallback."""

    def __init__(self, pricing: dict[str, ModelPricing]):
        self._pricing = pricing
        self._warned: set[str] = set()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PricingTable:
        return cls(load_pricing(config))

    def for_model(self, model: str) -> ModelPricing:
        pricing = self._pricing.get(model) or self._pricing.get("default")
        if pricing is not None:
            return pricing
        if model not in self._warned:
            logger.warning(
                "No pricing for model '%s' — using conservative estimate "
                "($%.2f/M input, $%.2f/M output). Add it to agent_config.yaml → pricing.",
                model, UNKNOWN_MODEL_PRICING.input_per_million,
                UNKNOWN_MODEL_PRICING.output_per_million,
            )
            self._warned.add(model)
        return UNKNOWN_MODEL_PRICING

    def cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return self.for_model(model).cost(input_tokens, output_tokens)


# ═══════════════════════════════════════════════════════════════════
# Org Daily Ledger
# ═══════════════════════════════════════════════════════════════════

def utc_day(ts: float | None = None) -> str:
    ts = time.time() if ts is None else ts
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


class OrgDailyLedger:
    """Organization-wide spend per UTC day, backed by the store."""

    def __init__(self, store: ExecutionStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def day(self) -> str:
        return utc_day(self._clock())

    def add(self, organization_id: str, cost_usd: float, tokens: int = 0) -> float:
        """Add usage; returns the org's new total for today in USD."""
        total = self.store.add_org_cost(
            organization_id, self.day(), to_micros(cost_usd), tokens,
        )
        return from_micros(total)

    def spent_today(self, organization_id: str) -> float:
        return from_micros(self.store.get_org_cost(organization_id, self.day()))


# ═══════════════════════════════════════════════════════════════════
# Budget Tracker
# ═══════════════════════════════════════════════════════════════════

class BudgetTracker:
    """
    Per-execution budget guard.

    Thread-safe. One tracker per execution; the org ceiling is shared
    through the ledger. The check is advisory against concurrent
    executions: two runs may both pass the org check and then record,
    overshooting by at most one call each.
    """

    def __init__(
        self,
        budget: CostBudget,
        organization_id: str,
        ledger: OrgDailyLedger,
        on_exceeded: Callable[[BudgetExceeded], None] | None = None,
    ):
        self.budget = budget
        self.organization_id = organization_id
        self.ledger = ledger
        self._on_exceeded = on_exceeded
        self._lock = threading.Lock()
        self.llm_calls = 0

    def check_budget(self, estimated_cost: float, estimated_tokens: int = 0):
        """Raise BudgetExceeded if the estimate would cross any ceiling."""
        with self._lock:
            used_cost = self.budget.current_cost_used
            used_tokens = self.budget.current_tokens_used

        error = None
        if to_micros(used_cost) + to_micros(estimated_cost) > to_micros(self.budget.max_cost_per_execution):
            error = BudgetExceeded("execution cost", used_cost, estimated_cost,
                                   self.budget.max_cost_per_execution)
        elif used_tokens + estimated_tokens > self.budget.max_tokens_per_execution:
            error = BudgetExceeded("execution tokens", used_tokens, estimated_tokens,
                                   self.budget.max_tokens_per_execution)
        else:
            spent = self.ledger.spent_today(self.organization_id)
            if to_micros(spent) + to_micros(estimated_cost) > to_micros(self.budget.max_cost_per_org_daily):
                error = BudgetExceeded("organization daily cost", spent, estimated_cost,
                                       self.budget.max_cost_per_org_daily)

        if error is not None:
            if self._on_exceeded is not None:
                self._on_exceeded(error)
            raise error

    def record(self, tokens: int, cost: float, llm_call: bool = False):
        """Record actual usage on the execution and the org aggregate."""
        with self._lock:
            if llm_call:
                self.llm_calls += 1
            self.budget.current_tokens_used += int(tokens)
            self.budget.current_cost_used += cost
        if cost or tokens:
            self.ledger.add(self.organization_id, cost, tokens)

    @property
    def tokens_used(self) -> int:
        with self._lock:
            return self.budget.current_tokens_used

    @property
    def cost_used(self) -> float:
        with self._lock:
            return self.budget.current_cost_used

    def check_remaining(self):
        """Raise BudgetExceeded once any ceiling has been reached."""
        with self._lock:
            used_cost = self.budget.current_cost_used
            used_tokens = self.budget.current_tokens_used

        error = None
        if to_micros(used_cost) >= to_micros(self.budget.max_cost_per_execution):
            error = BudgetExceeded("execution cost", used_cost, 0.0,
                                   self.budget.max_cost_per_execution)
        elif used_tokens >= self.budget.max_tokens_per_execution:
            error = BudgetExceeded("execution tokens", used_tokens, 0,
                                   self.budget.max_tokens_per_execution)
        else:
            spent = self.ledger.spent_today(self.organization_id)
            if to_micros(spent) >= to_micros(self.budget.max_cost_per_org_daily):
                error = BudgetExceeded("organization daily cost", spent, 0.0,
                                       self.budget.max_cost_per_org_daily)

        if error is not None:
            if self._on_exceeded is not None:
                self._on_exceeded(error)
            raise error

    @property
    def exhausted(self) -> bool:
        try:
            self.check_remaining()
        except BudgetExceeded:
            return True
        return False
