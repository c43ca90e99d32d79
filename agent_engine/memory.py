"""
Agent Engine — Memory Store

Confidence-scored long-term memory, scoped per organization and agent.

Ranking:
    relevance = 0.5 · confidence + 0.2 · recency + 0.3 · condition_match

    recency          exp decay on updated_at with a configurable half-life
    condition_match  share of the memory's conditions (vendor, amount range,
                     description keyword, account, entity key) satisfied by
                     the query context; 0 when nothing can be compared

Reinforcement (Beta prior anchored on the current confidence):
    total += 1; correct += was_correct
    confidence = (w · confidence + correct) / (w + total), clamped to [0, 1]

Memories are archived, never deleted.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from agent_engine.errors import NotFoundError
from agent_engine.schemas import LearningLesson, MemoryConditions
from agent_engine.store import ExecutionStore
from agent_engine.types import Memory, MemoryScope, RetrievedMemory

logger = logging.getLogger("agent_engine.memory")

CONFIDENCE_WEIGHT = 0.5
RECENCY_WEIGHT = 0.2
CONDITION_WEIGHT = 0.3

_DAY_S = 86_400.0


def smoothed_confidence(old: float, correct: int, total: int, prior_weight: float) -> float:
    """Beta-prior update. One sample cannot move the score past the raw ratio."""
    if prior_weight + total <= 0:
        return max(0.0, min(1.0, old))
    value = (prior_weight * old + correct) / (prior_weight + total)
    return max(0.0, min(1.0, value))


def recency_score(updated_at: float, now: float, half_life_days: float) -> float:
    if half_life_days <= 0:
        return 0.0
    age_days = max(0.0, (now - updated_at) / _DAY_S)
    return 0.5 ** (age_days / half_life_days)


def condition_match(memory: Memory, query_context: dict[str, Any] | None) -> float:
    """Fraction of comparable conditions satisfied by query_context."""
    if not query_context:
        return 0.0

    checks: list[bool] = []
    ctx_entity = query_context.get("entity_key") or query_context.get("vendor")
    if memory.entity_key and ctx_entity:
        checks.append(_same(memory.entity_key, ctx_entity))

    cond: MemoryConditions | None = memory.conditions
    if cond is not None:
        if cond.vendor and query_context.get("vendor"):
            checks.append(_same(cond.vendor, query_context["vendor"]))
        if cond.amount_range and query_context.get("amount") is not None:
            low, high = cond.amount_range
            try:
                amount = float(query_context["amount"])
            except (TypeError, ValueError):
                checks.append(False)
            else:
                checks.append(low <= amount <= high)
        if cond.desc_contains and query_context.get("description"):
            checks.append(cond.desc_contains.lower() in str(query_context["description"]).lower())
        if cond.account_number and query_context.get("account_number"):
            checks.append(str(cond.account_number) == str(query_context["account_number"]))

    if not checks:
        return 0.0
    return sum(checks) / len(checks)


def _same(a: Any, b: Any) -> bool:
    return str(a).strip().lower() == str(b).strip().lower()


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class MemoryStore:
    """Retrieve, reinforce and learn memories on top of an ExecutionStore."""

    def __init__(
        self,
        store: ExecutionStore,
        top_k: int = 5,
        initial_confidence: float = 0.6,
        prior_weight: float = 2.0,
        confidence_floor: float = 0.5,
        recency_half_life_days: float = 30.0,
        clock=time.time,
    ):
        self.store = store
        self.top_k = top_k
        self.initial_confidence = initial_confidence
        self.prior_weight = prior_weight
        self.confidence_floor = confidence_floor
        self.recency_half_life_days = recency_half_life_days
        self._clock = clock

    @classmethod
    def from_config(cls, store: ExecutionStore, config: dict[str, Any]) -> MemoryStore:
        section = config.get("memory", {}) or {}
        return cls(
            store,
            top_k=int(section.get("top_k", 5)),
            initial_confidence=float(section.get("initial_confidence", 0.6)),
            prior_weight=float(section.get("prior_weight", 2.0)),
            confidence_floor=float(section.get("confidence_floor", 0.5)),
            recency_half_life_days=float(section.get("recency_half_life_days", 30.0)),
        )

    # ── Retrieval ───────────────────────────────────────────────

    def score(self, memory: Memory, query_context: dict[str, Any] | None, now: float) -> float:
        return (
            CONFIDENCE_WEIGHT * memory.confidence
            + RECENCY_WEIGHT * recency_score(memory.updated_at, now, self.recency_half_life_days)
            + CONDITION_WEIGHT * condition_match(memory, query_context)
        )

    def retrieve(
        self,
        organization_id: str,
        agent_id: str | None = None,
        scope: MemoryScope | str | None = None,
        entity_key: str | None = None,
        category: str | None = None,
        query_context: dict[str, Any] | None = None,
        limit: int | None = None,
        min_confidence: float | None = None,
    ) -> list[RetrievedMemory]:
        """
        Top-K active memories by relevance. Usage counts of the returned
        memories are incremented.
        """
        floor = self.confidence_floor if min_confidence is None else min_confidence
        limit = self.top_k if limit is None else limit
        if limit <= 0:
            return []

        candidates = self.store.query_memories(
            organization_id,
            agent_id=agent_id,
            scope=MemoryScope(scope) if scope else None,
            entity_key=entity_key,
            category=category,
        )
        now = self._clock()
        scored = [
            (self.score(m, query_context, now), m)
            for m in candidates
            if m.confidence >= floor
        ]
        scored.sort(key=lambda pair: (pair[0], pair[1].confidence), reverse=True)
        top = scored[:limit]

        self.store.increment_memory_usage([m.memory_id for _, m in top])
        results = []
        for relevance, m in top:
            m.usage_count += 1
            results.append(m.to_retrieved(round(relevance, 6)))

        logger.debug(
            "Retrieved %d/%d memories for org=%s agent=%s (floor=%.2f)",
            len(results), len(candidates), organization_id, agent_id, floor,
        )
        return results

    # ── Reinforcement ───────────────────────────────────────────

    def reinforce(self, memory_id: str, was_correct: bool) -> Memory:
        with self.store.transaction():
            memory = self.store.get_memory(memory_id)
            if memory is None:
                raise NotFoundError("memory", memory_id)
            memory.total_count += 1
            if was_correct:
                memory.correct_count += 1
            old = memory.confidence
            memory.confidence = smoothed_confidence(
                old, memory.correct_count, memory.total_count, self.prior_weight,
            )
            memory.updated_at = self._clock()
            if was_correct:
                memory.content = memory.content.model_copy(update={"last_confirmed": _today()})
            self.store.update_memory(memory)

        logger.info(
            "Reinforced memory %s (correct=%s): %.3f → %.3f [%d/%d]",
            memory_id, was_correct, old, memory.confidence,
            memory.correct_count, memory.total_count,
        )
        return memory

    def apply_lesson(self, organization_id: str, agent_id: str, lesson: LearningLesson) -> Memory:
        """
        Upsert by (scope, entity_key, category). A new memory starts at
        the initial confidence; an existing one is reinforced and takes
        the lesson's description.
        """
        with self.store.transaction():
            existing = [
                m for m in self.store.query_memories(
                    organization_id, agent_id=agent_id, scope=lesson.scope,
                    category=lesson.category,
                )
                if m.entity_key == lesson.entity_key and m.category == lesson.category
            ]
            if not existing:
                now = self._clock()
                content = lesson.content
                if content.first_observed is None:
                    content = content.model_copy(update={"first_observed": _today()})
                memory = Memory(
                    memory_id=Memory.new_id(),
                    organization_id=organization_id,
                    agent_id=agent_id,
                    scope=lesson.scope,
                    entity_key=lesson.entity_key,
                    category=lesson.category,
                    content=content,
                    conditions=lesson.conditions,
                    confidence=self.initial_confidence,
                    created_at=now,
                    updated_at=now,
                )
                self.store.insert_memory(memory)
                logger.info("Learned memory %s (%s/%s/%s)", memory.memory_id,
                            lesson.scope.value, lesson.entity_key, lesson.category)
                return memory

            memory = existing[0]
            evidence = list(memory.content.evidence)
            evidence.extend(e for e in lesson.content.evidence if e not in evidence)
            memory.content = memory.content.model_copy(update={
                "description": lesson.content.description,
                "evidence": evidence,
            })
            if lesson.conditions is not None:
                memory.conditions = lesson.conditions
            self.store.update_memory(memory)
            return self.reinforce(memory.memory_id, was_correct=True)

    # ── Audit ───────────────────────────────────────────────────

    def archive(self, memory_id: str) -> Memory:
        with self.store.transaction():
            memory = self.store.get_memory(memory_id)
            if memory is None:
                raise NotFoundError("memory", memory_id)
            memory.is_archived = True
            memory.updated_at = self._clock()
            self.store.update_memory(memory)
        logger.info("Archived memory %s", memory_id)
        return memory

    def get(self, memory_id: str) -> Memory:
        memory = self.store.get_memory(memory_id)
        if memory is None:
            raise NotFoundError("memory", memory_id)
        return memory

    def list(self, organization_id: str, agent_id: str | None = None,
             include_archived: bool = False) -> list[Memory]:
        return self.store.query_memories(
            organization_id, agent_id=agent_id, include_archived=include_archived,
        )
