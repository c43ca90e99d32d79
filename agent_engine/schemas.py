"""
Agent Engine - Structured Schemas

Pydantic contracts for everything that crosses a trust boundary:
  - ReasoningDecision: one LLM decision per loop iteration
  - MemoryContent / MemoryConditions: the structured body of a memory
  - LearningLesson: a feedback-derived fact, validated per scope

The LLM may answer in camelCase (toolName, needsHuman, ...); aliases
accept both spellings.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agent_engine.types import MemoryScope


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

class ReasoningDecision(BaseModel):
    """What the decision model wants to do next."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reasoning: str = Field(description="Why this is the next action")
    action: str = Field(default="", description="Short label for the action")
    tool_name: Optional[str] = Field(
        default=None, alias="toolName",
        description="Registered tool to invoke, or null",
    )
    tool_input: Optional[dict[str, Any]] = Field(
        default=None, alias="toolInput",
        description="Arguments for the tool, matching its input schema",
    )
    done: bool = Field(default=False, description="Goal achieved; stop the loop")
    needs_human: bool = Field(
        default=False, alias="needsHuman",
        description="Hand off to a human reviewer",
    )
    human_message: Optional[str] = Field(
        default=None, alias="humanMessage",
        description="Message for the reviewer when needs_human is set",
    )

    @field_validator("tool_name")
    @classmethod
    def _blank_tool_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


# ---------------------------------------------------------------------------
# Memory body
# ---------------------------------------------------------------------------

class MemoryContent(BaseModel):
    """Human-readable fact plus supporting observations."""
    description: str = Field(min_length=1)
    evidence: list[str] = Field(default_factory=list)
    first_observed: Optional[str] = None   # ISO date
    last_confirmed: Optional[str] = None   # ISO date


class MemoryConditions(BaseModel):
    """Structural match conditions for pattern memories."""
    vendor: Optional[str] = None
    amount_range: Optional[tuple[float, float]] = None
    desc_contains: Optional[str] = None
    account_number: Optional[str] = None

    @field_validator("amount_range")
    @classmethod
    def _ordered_range(cls, v):
        if v is not None and v[0] > v[1]:
            raise ValueError("amount_range lower bound exceeds upper bound")
        return v


class LearningLesson(BaseModel):
    """
    A lesson distilled from human feedback.

    Discriminants by scope:
      entity  — entity_key required (a vendor, a customer, an account)
      pattern — category required; conditions optional
      config  — category required; no entity_key
    """
    scope: MemoryScope
    entity_key: Optional[str] = None
    category: Optional[str] = None
    content: MemoryContent
    conditions: Optional[MemoryConditions] = None
    is_correction: bool = False

    @model_validator(mode="after")
    def _check_discriminants(self):
        if self.scope == MemoryScope.ENTITY and not self.entity_key:
            raise ValueError("entity lessons require entity_key")
        if self.scope in (MemoryScope.PATTERN, MemoryScope.CONFIG) and not self.category:
            raise ValueError(f"{self.scope.value} lessons require category")
        if self.scope == MemoryScope.CONFIG and self.entity_key:
            raise ValueError("config lessons must not carry entity_key")
        return self
