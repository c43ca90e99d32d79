"""
Agent Engine — LLM Decision Client

One call per loop iteration: prompt in, validated ReasoningDecision out.

  - Transport failures (timeout, rate limit, 5xx, network) are retried
    with backoff; the budget is checked before every attempt.
  - Unparseable or schema-invalid output raises LLMProtocolError. A wrong
    answer is never retried.
  - Token usage comes from the chat model's usage_metadata, falling back
    to a character-based estimate; cost comes from the pricing table.

Usage:
    client = DecisionClient(create_llm("default"), model_name="gpt-4o-mini",
                            pricing=PricingTable.from_config(cfg))
    result = client.decide(context, budget=tracker)
    result.decision.tool_name
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import pydantic
from langchain_core.messages import HumanMessage, SystemMessage

from agent_engine.context import DecisionContext
from agent_engine.cost import BudgetTracker, PricingTable
from agent_engine.errors import LLMProtocolError
from agent_engine.retry import RetryPolicy, call_with_retry
from agent_engine.schemas import ReasoningDecision

logger = logging.getLogger("agent_engine.decision")

_CHARS_PER_TOKEN = 4


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def extract_json(text: str) -> dict:
    """
    Pull the first JSON object out of an LLM response.

    Tolerates markdown fences, prose around the object and unescaped
    backslashes or raw newlines inside strings.
    """
    code_block_match = re.search(r'```(?:json)?\s*\n?(.*?)\n?```', text, re.DOTALL)
    if code_block_match:
        text = code_block_match.group(1).strip()

    brace_start = text.find('{')
    if brace_start == -1:
        raise ValueError(f"No JSON object found in response: {text[:200]}")

    depth = 0
    in_string = False
    escape_next = False
    json_end = None
    for i in range(brace_start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if c == '\\' and in_string:
            escape_next = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == '{':
            depth += 1
        elif c == '}':
            depth -= 1
            if depth == 0:
                json_end = i + 1
                break

    if json_end is None:
        raise ValueError(f"Unterminated JSON object in response: {text[brace_start:brace_start + 200]}")
    json_str = text[brace_start:json_end]

    try:
        return json.loads(json_str)
    except json.JSONDecodeError:
        pass

    fixed = re.sub(r'\\(?!["\\/bfnrtu])', r'\\\\', json_str)
    try:
        return json.loads(fixed)
    except json.JSONDecodeError:
        pass

    return json.loads(_escape_control_chars(fixed))


def _escape_control_chars(s: str) -> str:
    out = []
    in_str = False
    esc = False
    for ch in s:
        if esc:
            out.append(ch)
            esc = False
            continue
        if ch == '\\' and in_str:
            out.append(ch)
            esc = True
            continue
        if ch == '"':
            in_str = not in_str
            out.append(ch)
            continue
        if in_str and ord(ch) < 32:
            out.append({'\n': '\\n', '\r': '\\r', '\t': '\\t'}.get(ch, f'\\u{ord(ch):04x}'))
        else:
            out.append(ch)
    return ''.join(out)


def parse_decision(raw: str) -> ReasoningDecision:
    """Parse and validate raw model text. Raises LLMProtocolError."""
    try:
        payload = extract_json(raw)
    except (ValueError, json.JSONDecodeError) as e:
        raise LLMProtocolError(f"Unparseable decision: {e}", raw_response=raw) from e
    if not isinstance(payload, dict):
        raise LLMProtocolError("Decision is not a JSON object", raw_response=raw)
    try:
        decision = ReasoningDecision.model_validate(payload)
    except pydantic.ValidationError as e:
        raise LLMProtocolError(f"Schema-invalid decision: {e.errors()[:3]}", raw_response=raw) from e
    return decision


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

@dataclass
class DecisionResult:
    decision: ReasoningDecision
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    attempts: int = 1
    latency_ms: float = 0.0
    attempt_log: list[dict[str, Any]] = field(default_factory=list)

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class DecisionClient:
    """Wraps a langchain chat model for the reasoning loop."""

    def __init__(
        self,
        llm: Any,
        model_name: str = "default",
        pricing: PricingTable | None = None,
        policy: RetryPolicy | None = None,
        timeout_s: float = 60.0,
        estimated_output_tokens: int = 400,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.llm = llm
        self.model_name = model_name
        self.pricing = pricing or PricingTable({})
        self.policy = policy
        self.timeout_s = timeout_s
        self.estimated_output_tokens = estimated_output_tokens
        self._sleep = sleep_fn
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="llm",
        )

    def estimate(self, context: DecisionContext) -> tuple[float, int]:
        """(cost, tokens) estimate used for the pre-call budget check."""
        prompt_chars = len(context.system_prompt()) + len(context.user_prompt())
        input_tokens = prompt_chars // _CHARS_PER_TOKEN + 1
        cost = self.pricing.cost(self.model_name, input_tokens, self.estimated_output_tokens)
        return cost, input_tokens + self.estimated_output_tokens

    def _invoke(self, messages: list) -> Any:
        future = self._executor.submit(self.llm.invoke, messages)
        try:
            return future.result(timeout=self.timeout_s)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise TimeoutError(f"LLM call timed out after {self.timeout_s:.1f}s") from None

    def decide(self, context: DecisionContext, budget: BudgetTracker | None = None) -> DecisionResult:
        """
        Raises:
            BudgetExceeded:   before any attempt that would cross a ceiling
            LLMProtocolError: unusable output (not retried)
            Exception:        the last transport error once retries run out
        """
        system, user = context.system_prompt(), context.user_prompt()
        messages = [SystemMessage(content=system), HumanMessage(content=user)]
        est_cost, est_tokens = self.estimate(context)

        def check(attempt: int):
            if budget is not None:
                budget.check_budget(est_cost, est_tokens)

        def attempt_call(attempt: int):
            try:
                return self._invoke(messages)
            except Exception:
                if budget is not None:
                    budget.record(0, 0.0, llm_call=True)
                raise

        t0 = time.monotonic()
        outcome = call_with_retry(
            attempt_call, self.policy, budget_check=check,
            sleep_fn=self._sleep, label="decision",
        )
        response = outcome.value
        raw = _response_text(response)

        input_tokens, output_tokens = self._usage(response, system + user, raw)
        cost = self.pricing.cost(self.model_name, input_tokens, output_tokens)
        if budget is not None:
            budget.record(input_tokens + output_tokens, cost, llm_call=True)

        decision = parse_decision(raw)
        latency_ms = (time.monotonic() - t0) * 1000
        logger.debug(
            "Decision in %.0fms (attempts=%d, tokens=%d, cost=$%.6f): action=%s tool=%s",
            latency_ms, outcome.attempts, input_tokens + output_tokens, cost,
            decision.action, decision.tool_name,
        )
        return DecisionResult(
            decision=decision,
            model=self.model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            attempts=outcome.attempts,
            latency_ms=latency_ms,
            attempt_log=outcome.attempt_log,
        )

    @staticmethod
    def _usage(response: Any, prompt: str, raw: str) -> tuple[int, int]:
        usage = getattr(response, "usage_metadata", None) or {}
        if usage.get("input_tokens") is not None or usage.get("output_tokens") is not None:
            return int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)
        return len(prompt) // _CHARS_PER_TOKEN + 1, len(raw) // _CHARS_PER_TOKEN + 1
