"""
Agent Engine — Memory Store Tests

Tests:
  - smoothing: one negative sample lands between 8/11 and 0.8
  - confidence bounds and correct_count ≤ total_count
  - ranking: confidence, recency and condition match
  - floor filtering, top-k, usage counting
  - lessons: per-scope discriminants, upsert, evidence merge
  - archive instead of delete
"""

import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import fakes  # noqa: F401  (puts the project root on sys.path)

import pydantic

from agent_engine.errors import NotFoundError
from agent_engine.memory import (
    MemoryStore, condition_match, recency_score, smoothed_confidence,
)
from agent_engine.schemas import LearningLesson, MemoryConditions, MemoryContent
from agent_engine.store import SQLiteStore
from agent_engine.types import Memory, MemoryScope

NOW = 1_800_000_000.0
DAY = 86_400.0


def make_memory(store, confidence=0.8, correct=8, total=10, entity_key="Acme",
                category=None, scope=MemoryScope.ENTITY, conditions=None,
                updated_at=NOW, agent_id="agt_1", description="Acme pays net 45"):
    memory = Memory(
        memory_id=Memory.new_id(),
        organization_id="org_1",
        agent_id=agent_id,
        scope=scope,
        content=MemoryContent(description=description),
        entity_key=entity_key,
        category=category,
        conditions=conditions,
        confidence=confidence,
        correct_count=correct,
        total_count=total,
        created_at=updated_at,
        updated_at=updated_at,
    )
    store.insert_memory(memory)
    return memory


class MemoryTestCase(unittest.TestCase):

    def setUp(self):
        self.store = SQLiteStore(":memory:")
        self.memory = MemoryStore(self.store, clock=lambda: NOW)


# ═══════════════════════════════════════════════════════════════════
# Reinforcement
# ═══════════════════════════════════════════════════════════════════

class TestSmoothing(unittest.TestCase):

    def test_single_negative_sample_is_damped(self):
        value = smoothed_confidence(0.8, correct=8, total=11, prior_weight=2.0)
        self.assertLess(value, 0.8)
        self.assertGreater(value, 8 / 11)
        self.assertAlmostEqual(value, 9.6 / 13, places=9)

    def test_clamped(self):
        self.assertEqual(smoothed_confidence(1.0, 10, 5, 2.0), 1.0)
        self.assertEqual(smoothed_confidence(0.0, 0, 0, 0.0), 0.0)


class TestReinforce(MemoryTestCase):

    def test_negative_feedback(self):
        m = make_memory(self.store, confidence=0.8, correct=8, total=10)
        updated = self.memory.reinforce(m.memory_id, was_correct=False)

        self.assertEqual(updated.correct_count, 8)
        self.assertEqual(updated.total_count, 11)
        self.assertLess(updated.confidence, 0.8)
        self.assertGreater(updated.confidence, 8 / 11)
        stored = self.memory.get(m.memory_id)
        self.assertAlmostEqual(stored.confidence, updated.confidence, places=9)

    def test_positive_feedback_confirms(self):
        m = make_memory(self.store, confidence=0.6, correct=0, total=0)
        updated = self.memory.reinforce(m.memory_id, was_correct=True)

        self.assertGreater(updated.confidence, 0.6)
        self.assertIsNotNone(updated.content.last_confirmed)

    def test_invariants_hold_over_many_updates(self):
        m = make_memory(self.store, confidence=0.6, correct=0, total=0)
        for i in range(30):
            updated = self.memory.reinforce(m.memory_id, was_correct=(i % 3 == 0))
            self.assertGreaterEqual(updated.confidence, 0.0)
            self.assertLessEqual(updated.confidence, 1.0)
            self.assertLessEqual(updated.correct_count, updated.total_count)
        self.assertEqual(updated.total_count, 30)
        self.assertEqual(updated.correct_count, 10)

    def test_concurrent_reinforcement_loses_no_update(self):
        m = make_memory(self.store, confidence=0.6, correct=0, total=0)

        def worker():
            for _ in range(10):
                self.memory.reinforce(m.memory_id, was_correct=True)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        stored = self.memory.get(m.memory_id)
        self.assertEqual(stored.total_count, 40)
        self.assertEqual(stored.correct_count, 40)

    def test_unknown_memory(self):
        with self.assertRaises(NotFoundError):
            self.memory.reinforce("mem_missing", True)


# ═══════════════════════════════════════════════════════════════════
# Retrieval
# ═══════════════════════════════════════════════════════════════════

class TestRanking(MemoryTestCase):

    def test_recency_half_life(self):
        self.assertAlmostEqual(recency_score(NOW, NOW, 30.0), 1.0)
        self.assertAlmostEqual(recency_score(NOW - 30 * DAY, NOW, 30.0), 0.5)

    def test_condition_match(self):
        m = make_memory(self.store, conditions=MemoryConditions(
            vendor="Acme", amount_range=(100.0, 500.0), desc_contains="freight",
        ))
        self.assertEqual(condition_match(m, {}), 0.0)
        full = condition_match(m, {"vendor": "ACME", "amount": 250,
                                   "description": "Freight charges"})
        self.assertEqual(full, 1.0)
        partial = condition_match(m, {"vendor": "Acme", "amount": 900})
        # entity_key and vendor match, amount does not
        self.assertAlmostEqual(partial, 2 / 3)

    def test_higher_confidence_ranks_first(self):
        low = make_memory(self.store, confidence=0.55, entity_key="Low")
        high = make_memory(self.store, confidence=0.95, entity_key="High")
        results = self.memory.retrieve("org_1", agent_id="agt_1")
        self.assertEqual([r.memory_id for r in results], [high.memory_id, low.memory_id])
        self.assertGreater(results[0].relevance_score, results[1].relevance_score)

    def test_condition_match_can_outrank_confidence(self):
        generic = make_memory(self.store, confidence=0.8, entity_key="Other")
        specific = make_memory(self.store, confidence=0.7, entity_key="Acme")
        results = self.memory.retrieve("org_1", query_context={"vendor": "Acme"})
        self.assertEqual(results[0].memory_id, specific.memory_id)
        self.assertEqual(results[1].memory_id, generic.memory_id)

    def test_stale_memory_ranks_lower(self):
        stale = make_memory(self.store, confidence=0.8, entity_key="A",
                            updated_at=NOW - 365 * DAY)
        fresh = make_memory(self.store, confidence=0.8, entity_key="B")
        results = self.memory.retrieve("org_1")
        self.assertEqual([r.memory_id for r in results], [fresh.memory_id, stale.memory_id])

    def test_floor_and_top_k(self):
        for i in range(8):
            make_memory(self.store, confidence=0.6 + i * 0.04, entity_key=f"V{i}")
        make_memory(self.store, confidence=0.3, entity_key="Weak")

        results = self.memory.retrieve("org_1", limit=3)
        self.assertEqual(len(results), 3)
        self.assertTrue(all(r.confidence >= 0.5 for r in results))
        everything = self.memory.retrieve("org_1", limit=50)
        self.assertEqual(len(everything), 8)
        self.assertEqual(len(self.memory.retrieve("org_1", limit=50, min_confidence=0.0)), 9)

    def test_usage_count_incremented(self):
        m = make_memory(self.store)
        self.memory.retrieve("org_1")
        self.memory.retrieve("org_1")
        self.assertEqual(self.memory.get(m.memory_id).usage_count, 2)

    def test_scoped_to_org_and_agent(self):
        make_memory(self.store, agent_id="agt_other")
        self.assertEqual(self.memory.retrieve("org_1", agent_id="agt_1"), [])
        self.assertEqual(self.memory.retrieve("org_2"), [])


# ═══════════════════════════════════════════════════════════════════
# Lessons
# ═══════════════════════════════════════════════════════════════════

class TestLessons(MemoryTestCase):

    def test_scope_discriminants(self):
        with self.assertRaises(pydantic.ValidationError):
            LearningLesson.model_validate({"scope": "entity", "content": {"description": "x"}})
        with self.assertRaises(pydantic.ValidationError):
            LearningLesson.model_validate({"scope": "pattern", "content": {"description": "x"}})
        with self.assertRaises(pydantic.ValidationError):
            LearningLesson.model_validate({"scope": "config", "category": "c",
                                           "entity_key": "e", "content": {"description": "x"}})
        with self.assertRaises(pydantic.ValidationError):
            LearningLesson.model_validate({"scope": "entity", "entity_key": "e",
                                           "content": {"description": ""}})

    def test_new_lesson_starts_at_initial_confidence(self):
        lesson = LearningLesson.model_validate({
            "scope": "pattern", "category": "bank_fees",
            "content": {"description": "Monthly fees post on the last business day"},
            "conditions": {"desc_contains": "fee", "amount_range": [0, 50]},
        })
        m = self.memory.apply_lesson("org_1", "agt_1", lesson)

        self.assertEqual(m.confidence, 0.6)
        self.assertEqual(m.total_count, 0)
        self.assertIsNotNone(m.content.first_observed)
        self.assertEqual(m.conditions.amount_range, (0.0, 50.0))

    def test_repeated_lesson_updates_existing(self):
        first = LearningLesson.model_validate({
            "scope": "entity", "entity_key": "Acme",
            "content": {"description": "Acme pays net 30", "evidence": ["inv-1"]},
        })
        second = LearningLesson.model_validate({
            "scope": "entity", "entity_key": "Acme",
            "content": {"description": "Acme pays net 45", "evidence": ["inv-1", "inv-2"]},
        })
        a = self.memory.apply_lesson("org_1", "agt_1", first)
        b = self.memory.apply_lesson("org_1", "agt_1", second)

        self.assertEqual(a.memory_id, b.memory_id)
        self.assertEqual(b.content.description, "Acme pays net 45")
        self.assertEqual(b.content.evidence, ["inv-1", "inv-2"])
        self.assertEqual(b.total_count, 1)
        self.assertGreater(b.confidence, 0.6)
        self.assertEqual(len(self.memory.list("org_1")), 1)


class TestArchive(MemoryTestCase):

    def test_archived_memories_are_kept_but_not_retrieved(self):
        m = make_memory(self.store)
        self.memory.archive(m.memory_id)

        self.assertEqual(self.memory.retrieve("org_1"), [])
        self.assertEqual(self.memory.list("org_1"), [])
        kept = self.memory.list("org_1", include_archived=True)
        self.assertEqual([k.memory_id for k in kept], [m.memory_id])
        self.assertTrue(kept[0].is_archived)


if __name__ == "__main__":
    unittest.main()
