"""
Agent Engine — Error Taxonomy

Every failure the reasoning loop distinguishes has its own type so the
orchestrator can route it without string matching:

  ValidationError        — tool input does not match the tool's schema
  BudgetExceeded         — a pre-call budget check failed (always terminal)
  ToolExecutionError     — tool handler failed; `transient` decides retry
  LLMProtocolError       — unparseable / schema-invalid decision, or a
                           tool name the registry does not know (terminal)
  CancellationRequested  — cooperative cancel observed at a checkpoint
  IllegalStateTransition — attempted to leave a terminal execution status

Timeouts use the builtin TimeoutError; retry.is_retryable() treats it as
transient.
"""

from __future__ import annotations

from typing import Any


class AgentEngineError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(AgentEngineError):
    """Raised when raw tool input fails schema validation."""

    def __init__(self, tool_name: str, errors: list[dict[str, Any]] | list[str]):
        self.tool_name = tool_name
        self.errors = errors
        summary = "; ".join(
            e.get("msg", str(e)) if isinstance(e, dict) else str(e)
            for e in errors[:5]
        )
        super().__init__(f"Invalid input for tool '{tool_name}': {summary}")


class BudgetExceeded(AgentEngineError):
    """Raised when a call would push usage past an execution or org ceiling."""

    def __init__(self, limit: str, used: float, requested: float, ceiling: float):
        self.limit = limit
        self.used = used
        self.requested = requested
        self.ceiling = ceiling
        super().__init__(
            f"{limit} ceiling {ceiling:.6g} would be exceeded "
            f"(used {used:.6g} + requested {requested:.6g})"
        )


class ToolExecutionError(AgentEngineError):
    """
    Raised by tool handlers (or the registry on their behalf).

    transient=True marks rate limits, network blips and the like: the
    orchestrator retries those exactly once.
    """

    def __init__(self, message: str, transient: bool = False, tool_name: str = ""):
        self.transient = transient
        self.tool_name = tool_name
        super().__init__(message)


class LLMProtocolError(AgentEngineError):
    """The decision could not be used as-is. Never retried."""

    def __init__(self, message: str, raw_response: str = ""):
        self.raw_response = raw_response
        super().__init__(message)


class UnknownToolError(LLMProtocolError):
    """The decision named a tool that is not registered or not allowed."""

    def __init__(self, tool_name: str, known: list[str] | None = None):
        self.tool_name = tool_name
        self.known = known or []
        super().__init__(
            f"Unknown tool '{tool_name}' (registered: {', '.join(self.known) or 'none'})"
        )


class CancellationRequested(AgentEngineError):
    """Cancellation observed at a loop checkpoint."""
    pass


class IllegalStateTransition(AgentEngineError):
    """Raised when an execution status change is not allowed."""
    pass


class NotFoundError(AgentEngineError, KeyError):
    """Unknown execution, agent or memory id."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier!r} not found")

    def __str__(self) -> str:
        return self.args[0]
