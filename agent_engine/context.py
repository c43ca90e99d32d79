"""
Agent Engine — Context Assembly

Builds the bounded input for one decision:
  - goal and custom instructions
  - recency window: the last `recent_steps` steps in full, older ones
    as one-line summaries (at most `max_summarized_steps`, oldest dropped)
  - memory snippets retrieved at the start of the run
  - tool catalog (names, descriptions, JSON input schemas)

The rendered prompt is versioned with PROMPT_VERSION; executions record
the version they were run with.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from agent_engine.types import ExecutionStep, RetrievedMemory

PROMPT_VERSION = "agent-loop/3"

_OUTPUT_CHARS = 1200
_SUMMARY_CHARS = 120


@dataclass
class DecisionContext:
    """Everything the decision model sees for one iteration."""
    goal: str
    iteration: int
    max_iterations: int
    tool_catalog: list[dict[str, Any]]
    recent_steps: list[ExecutionStep] = field(default_factory=list)
    summarized_steps: list[str] = field(default_factory=list)
    omitted_steps: int = 0
    memories: list[RetrievedMemory] = field(default_factory=list)
    custom_instructions: str = ""
    remaining_cost_usd: float | None = None

    def system_prompt(self) -> str:
        lines = [
            "You are an autonomous operations agent. Work toward the goal one tool call at a time.",
            "Respond with a single JSON object and nothing else:",
            '{"reasoning": str, "action": str, "tool_name": str|null, "tool_input": object|null,',
            ' "done": bool, "needs_human": bool, "human_message": str|null}',
            "",
            "Rules:",
            "  - Call only tools from the catalog, with input matching their schema.",
            "  - Set done=true when the goal is achieved; tool_name must then be null.",
            "  - Set needs_human=true with a human_message when you cannot proceed safely.",
            "  - Never repeat a tool call with identical input.",
        ]
        if self.custom_instructions:
            lines += ["", "Additional instructions:", self.custom_instructions.strip()]
        return "\n".join(lines)

    def user_prompt(self) -> str:
        parts = [f"GOAL:\n{self.goal}", ""]
        parts.append(f"ITERATION: {self.iteration} of {self.max_iterations}")
        if self.remaining_cost_usd is not None:
            parts.append(f"REMAINING BUDGET: ${self.remaining_cost_usd:.4f}")
        parts.append("")

        parts.append("TOOLS:")
        if self.tool_catalog:
            for tool in self.tool_catalog:
                schema = json.dumps(tool["input_schema"].get("properties", {}), default=str)
                parts.append(f"  - {tool['name']}: {tool['description']}")
                parts.append(f"    input: {schema}")
        else:
            parts.append("  (no tools available)")
        parts.append("")

        if self.memories:
            parts.append("LEARNED CONTEXT (confidence in brackets):")
            for m in self.memories:
                label = m.entity_key or m.category or m.scope.value
                parts.append(f"  - [{m.confidence:.2f}] {label}: {m.content.description}")
            parts.append("")

        parts.append("HISTORY:")
        if not (self.recent_steps or self.summarized_steps):
            parts.append("  (none — this is the first step)")
        if self.omitted_steps:
            parts.append(f"  ... {self.omitted_steps} earlier steps omitted")
        parts.extend(f"  {line}" for line in self.summarized_steps)
        for step in self.recent_steps:
            parts.append(f"  Step {step.step_number} [{step.status.value}] {step.action}")
            parts.append(f"    reasoning: {step.reasoning}")
            if step.tool_name:
                parts.append(f"    tool: {step.tool_name} {json.dumps(step.tool_input, default=str)}")
                parts.append(f"    output: {_truncate(_dump(step.tool_output), _OUTPUT_CHARS)}")
        return "\n".join(parts)


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def summarize_step(step: ExecutionStep) -> str:
    head = f"Step {step.step_number} [{step.status.value}] {step.action}"
    if step.tool_name:
        head += f" via {step.tool_name}"
    return _truncate(f"{head}: {step.reasoning}", _SUMMARY_CHARS)


class ContextAssembler:
    """Turns execution state into a DecisionContext."""

    def __init__(self, recent_steps: int = 5, max_summarized_steps: int = 20):
        self.recent_steps = max(0, recent_steps)
        self.max_summarized_steps = max(0, max_summarized_steps)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ContextAssembler:
        section = config.get("context", {}) or {}
        return cls(
            recent_steps=int(section.get("recent_steps", 5)),
            max_summarized_steps=int(section.get("max_summarized_steps", 20)),
        )

    def assemble(
        self,
        goal: str,
        steps: list[ExecutionStep],
        memories: list[RetrievedMemory],
        tool_catalog: list[dict[str, Any]],
        iteration: int,
        max_iterations: int,
        custom_instructions: str = "",
        remaining_cost_usd: float | None = None,
    ) -> DecisionContext:
        split = max(0, len(steps) - self.recent_steps)
        recent = list(steps[split:])
        older = steps[:split]
        kept = older[-self.max_summarized_steps:] if self.max_summarized_steps else []
        return DecisionContext(
            goal=goal,
            iteration=iteration,
            max_iterations=max_iterations,
            tool_catalog=tool_catalog,
            recent_steps=recent,
            summarized_steps=[summarize_step(s) for s in kept],
            omitted_steps=len(older) - len(kept),
            memories=list(memories),
            custom_instructions=custom_instructions,
            remaining_cost_usd=remaining_cost_usd,
        )
