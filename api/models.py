"""
Agent Engine — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by the server and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any

from agent_engine.types import FeedbackType, TriggerType


_TRIGGER_TYPES = {t.value for t in TriggerType}
_FEEDBACK_TYPES = {t.value for t in FeedbackType}


@dataclass
class AgentRequest:
    """POST /v1/agents request body. Unset limits fall back to config budgets."""
    organization_id: str
    name: str
    goal_template: str
    allowed_tools: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)

    _OPTION_KEYS = (
        "max_iterations", "confidence_threshold", "max_tokens_per_execution",
        "max_cost_per_execution", "max_cost_per_org_daily",
        "custom_instructions", "model", "is_active",
    )

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> AgentRequest:
        return cls(
            organization_id=body.get("organization_id", ""),
            name=body.get("name", ""),
            goal_template=body.get("goal_template", ""),
            allowed_tools=body.get("allowed_tools", []),
            options={k: body[k] for k in cls._OPTION_KEYS if k in body},
        )

    def validate(self) -> list[str]:
        errors = []
        for name in ("organization_id", "name", "goal_template"):
            value = getattr(self, name)
            if not value or not isinstance(value, str):
                errors.append(f"{name} is required and must be a string")
        if not isinstance(self.allowed_tools, list) or \
                not all(isinstance(t, str) for t in self.allowed_tools):
            errors.append("allowed_tools must be a list of strings")
        max_iterations = self.options.get("max_iterations", 1)
        if not isinstance(max_iterations, int) or max_iterations < 1:
            errors.append("max_iterations must be a positive integer")
        return errors


@dataclass
class TriggerRequest:
    """POST /v1/agents/{id}/executions request body."""
    trigger_type: str = TriggerType.MANUAL.value
    goal_overrides: dict[str, Any] = field(default_factory=dict)
    triggered_by: str | None = None

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if self.trigger_type not in _TRIGGER_TYPES:
            errors.append(f"trigger_type must be one of: {', '.join(sorted(_TRIGGER_TYPES))}")
        if not isinstance(self.goal_overrides, dict):
            errors.append("goal_overrides must be an object")
        if self.triggered_by is not None and not isinstance(self.triggered_by, str):
            errors.append("triggered_by must be a string")
        return errors


@dataclass
class TriggerResponse:
    """POST /v1/agents/{id}/executions response — returned before the run starts."""
    execution_id: str
    agent_id: str
    status: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeedbackRequest:
    """POST /v1/executions/{id}/feedback body."""
    type: str
    details: dict[str, Any] = field(default_factory=dict)
    submitted_by: str | None = None

    def validate(self) -> list[str]:
        errors = []
        if self.type not in _FEEDBACK_TYPES:
            errors.append(f"type must be one of: {', '.join(sorted(_FEEDBACK_TYPES))}")
        if not isinstance(self.details, dict):
            errors.append("details must be an object")
        elif self.type == FeedbackType.CORRECTION.value and "lesson" in self.details \
                and not isinstance(self.details["lesson"], dict):
            errors.append("details.lesson must be an object")
        return errors


@dataclass
class CancelResponse:
    """POST /v1/executions/{id}/cancel response."""
    execution_id: str
    cancel_requested: bool
    status: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
