"""
Agent Engine — Agent Service Tests

Tests:
  - agent registration validation and config budget defaults
  - trigger → worker pool → terminal status; goal rendering
  - status polling while running, cancel of a running execution
  - cancel of a terminal execution is a no-op
  - feedback: approval/rejection reinforce used memories, correction learns
  - worker crash leaves the execution failed, never running
"""

import os
import sys
import threading
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import Harness, MatchInput, StatementInput, ScriptedLLM, decision, no_sleep

from agent_engine.config import DEFAULTS
from agent_engine.errors import NotFoundError
from agent_engine.schemas import LearningLesson
from agent_engine.service import AgentService
from agent_engine.status import poll_until_terminal
from agent_engine.types import (
    ExecutionStatus, Feedback, FeedbackType, TriggerType,
)


def fetch_statement(inp, ctx):
    return {"account": inp.account, "balance": 1200.0}


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.h = Harness()
        self.h.registry.register("fetch_statement", StatementInput, fetch_statement)
        self.llm = ScriptedLLM([decision(done=True, reasoning="reconciled")])
        self.service = self.make_service(self.llm)

    def make_service(self, llm):
        return AgentService(self.h.store, self.h.registry, self.h.memory,
                            decision_client=self.h.client(llm), config=dict(DEFAULTS),
                            sleep_fn=no_sleep, max_workers=2)

    def tearDown(self):
        self.service.shutdown(wait=True)

    def agent(self, **kwargs):
        return self.service.define_agent("org_1", "reconciler",
                                         "Reconcile account {account} for {month}", **kwargs)


class TestRegistration(ServiceTestCase):

    def test_budget_defaults_from_config(self):
        config = dict(DEFAULTS)
        config["budgets"] = {"max_cost_per_execution": 0.25}
        service = AgentService(self.h.store, self.h.registry, self.h.memory,
                               decision_client=self.h.client(self.llm), config=config)
        try:
            agent = service.define_agent("org_1", "a", "goal")
            self.assertEqual(agent.max_cost_per_execution, 0.25)
            explicit = service.define_agent("org_1", "b", "goal", max_cost_per_execution=0.5)
            self.assertEqual(explicit.max_cost_per_execution, 0.5)
        finally:
            service.shutdown()

    def test_unknown_allowed_tool(self):
        with self.assertRaises(ValueError):
            self.agent(allowed_tools=["fetch_statement", "wire_money"])

    def test_invalid_limits(self):
        with self.assertRaises(ValueError):
            self.agent(max_iterations=0)
        with self.assertRaises(ValueError):
            self.agent(confidence_threshold=1.5)

    def test_registry_frozen(self):
        self.assertTrue(self.h.registry.frozen)
        with self.assertRaises(RuntimeError):
            self.h.registry.register("late", MatchInput, fetch_statement)

    def test_get_agent(self):
        agent = self.agent(allowed_tools=["fetch_statement"])
        stored = self.service.get_agent(agent.agent_id)
        self.assertEqual(stored.name, "reconciler")
        self.assertEqual(stored.allowed_tools, ("fetch_statement",))
        with self.assertRaises(NotFoundError):
            self.service.get_agent("agt_missing")


class TestTrigger(ServiceTestCase):

    def test_trigger_runs_to_completion(self):
        agent = self.agent()
        execution_id = self.service.trigger(
            agent.agent_id, trigger_type="event",
            goal_overrides={"account": "1010", "month": "2026-03"}, triggered_by="webhook",
        )
        view = self.service.wait(execution_id, timeout=10)

        self.assertEqual(view.status, ExecutionStatus.COMPLETED)
        execution = self.service.get_execution(execution_id)
        self.assertEqual(execution.goal, "Reconcile account 1010 for 2026-03")
        self.assertEqual(execution.trigger_type, TriggerType.EVENT)
        self.assertEqual(execution.triggered_by, "webhook")
        self.assertEqual(execution.input_context, {"account": "1010", "month": "2026-03"})
        self.assertTrue(execution.prompt_version)
        self.assertEqual(len(self.service.get_steps(execution_id)), 1)
        self.assertEqual(len(self.service.tokens), 0)

    def test_inactive_agent(self):
        agent = self.agent(is_active=False)
        with self.assertRaises(ValueError):
            self.service.trigger(agent.agent_id)

    def test_unknown_agent_and_execution(self):
        with self.assertRaises(NotFoundError):
            self.service.trigger("agt_missing")
        with self.assertRaises(NotFoundError):
            self.service.get_status("exe_missing")
        with self.assertRaises(NotFoundError):
            self.service.cancel("exe_missing")


class TestStatusAndCancel(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.entered = threading.Event()
        self.release = threading.Event()

        def blocking(inp, ctx):
            self.entered.set()
            self.release.wait(5)
            return {"rows": 3}

        # a fresh, unfrozen registry for the blocking tool
        self.service.shutdown()
        self.h = Harness()
        self.h.registry.register("match", MatchInput, blocking)
        self.llm = ScriptedLLM([
            decision(tool_name="match", tool_input={"account": "1010"}),
            decision(tool_name="match", tool_input={"account": "2020"}),
            decision(done=True),
        ])
        self.service = self.make_service(self.llm)

    def test_status_while_running_then_cancel(self):
        agent = self.agent()
        execution_id = self.service.trigger(agent.agent_id)
        self.assertTrue(self.entered.wait(5))

        view = self.service.get_status(execution_id)
        self.assertEqual(view.status, ExecutionStatus.RUNNING)
        self.assertFalse(view.is_terminal)
        self.assertEqual(view.total_steps, 0)
        self.assertIsNone(view.current_step)

        self.assertTrue(self.service.cancel(execution_id))
        self.assertTrue(self.service.get_status(execution_id).cancelled)
        self.release.set()

        final = poll_until_terminal(self.service.get_status, execution_id,
                                    interval_s=0.01, timeout_s=10)
        self.assertEqual(final.status, ExecutionStatus.CANCELLED)
        # the in-flight tool call finished and was recorded; nothing after it
        self.assertEqual(final.total_steps, 1)
        self.assertEqual(final.current_step.status, "completed")
        self.assertEqual(len(self.llm.calls), 1)

    def test_cancel_terminal_is_noop(self):
        self.release.set()
        agent = self.agent()
        execution_id = self.service.trigger(agent.agent_id)
        view = self.service.wait(execution_id, timeout=10)
        self.assertEqual(view.status, ExecutionStatus.COMPLETED)

        self.assertFalse(self.service.cancel(execution_id))
        after = self.service.get_status(execution_id)
        self.assertEqual(after.status, ExecutionStatus.COMPLETED)
        self.assertFalse(after.cancelled)

    def test_wait_timeout(self):
        agent = self.agent()
        execution_id = self.service.trigger(agent.agent_id)
        with self.assertRaises(TimeoutError):
            self.service.wait(execution_id, timeout=0.05)
        self.release.set()
        self.service.wait(execution_id, timeout=10)


class TestFeedback(ServiceTestCase):

    def _run_with_memory(self):
        agent = self.agent()
        lesson = LearningLesson.model_validate({
            "scope": "entity", "entity_key": "Acme",
            "content": {"description": "Acme pays net 45"},
        })
        memory = self.h.memory.apply_lesson("org_1", agent.agent_id, lesson)
        execution_id = self.service.trigger(agent.agent_id)
        self.service.wait(execution_id, timeout=10)
        return agent, memory, execution_id

    def test_approval_reinforces_positively(self):
        _, memory, execution_id = self._run_with_memory()
        result = self.service.submit_feedback(execution_id, Feedback(FeedbackType.APPROVAL))

        self.assertEqual(result["type"], "approval")
        self.assertEqual([r["memory_id"] for r in result["reinforced"]], [memory.memory_id])
        updated = self.h.memory.get(memory.memory_id)
        self.assertGreater(updated.confidence, 0.6)
        self.assertEqual((updated.correct_count, updated.total_count), (1, 1))

    def test_rejection_reinforces_negatively(self):
        _, memory, execution_id = self._run_with_memory()
        self.service.submit_feedback(execution_id, Feedback(FeedbackType.REJECTION))
        updated = self.h.memory.get(memory.memory_id)
        self.assertLess(updated.confidence, 0.6)
        self.assertEqual((updated.correct_count, updated.total_count), (0, 1))

    def test_correction_learns_lesson(self):
        agent, memory, execution_id = self._run_with_memory()
        result = self.service.submit_feedback(execution_id, Feedback(
            FeedbackType.CORRECTION,
            details={"lesson": {
                "scope": "pattern", "category": "bank_fees",
                "content": {"description": "Bank fees post on the last business day"},
            }},
            submitted_by="controller@example.com",
        ))

        self.assertIsNotNone(result["lesson_memory_id"])
        learned = self.h.memory.get(result["lesson_memory_id"])
        self.assertEqual(learned.category, "bank_fees")
        self.assertEqual(learned.agent_id, agent.agent_id)
        self.assertLess(self.h.memory.get(memory.memory_id).confidence, 0.6)
        self.assertEqual(len(self.service.list_memories(agent.agent_id)), 2)

    def test_invalid_lesson(self):
        _, _, execution_id = self._run_with_memory()
        with self.assertRaises(ValueError):
            self.service.submit_feedback(execution_id, Feedback(
                FeedbackType.CORRECTION, details={"lesson": {"scope": "entity",
                                                             "content": {"description": "x"}}},
            ))


class TestWorkerCrash(ServiceTestCase):

    def test_crash_marks_failed(self):
        agent = self.agent()
        with patch.object(self.service, "decision_client_for",
                          side_effect=RuntimeError("provider not installed")):
            execution_id = self.service.trigger(agent.agent_id)
            view = self.service.wait(execution_id, timeout=10)

        self.assertEqual(view.status, ExecutionStatus.FAILED)
        self.assertEqual(view.outcome.reason, "worker error")
        self.assertIn("provider not installed", view.outcome.error)
        self.assertEqual(len(self.service.tokens), 0)


if __name__ == "__main__":
    unittest.main()
