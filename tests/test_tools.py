"""
Agent Engine — Tool Registry Tests

Tests:
  - registration fails fast on empty/duplicate names, bad schemas, bad handlers
  - frozen registry rejects new tools
  - resolve/catalog honour allowed_tools
  - invoke validates input, enforces timeouts and classifies failures
  - a call that outlives its timeout blocks later calls of the same execution
"""

import os
import sys
import threading
import time
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import MatchInput, StatementInput

from agent_engine.errors import ToolExecutionError, UnknownToolError, ValidationError
from agent_engine.tools import ToolRegistry
from agent_engine.types import OnError, ToolContext, ToolResult


CTX = ToolContext(organization_id="org_1", agent_id="agt_1", execution_id="exe_1")


def echo(inp, ctx):
    return {"account": inp.account, "execution_id": ctx.execution_id}


class TestRegistration(unittest.TestCase):

    def setUp(self):
        self.registry = ToolRegistry()

    def test_register_and_lookup(self):
        spec = self.registry.register("echo", StatementInput, echo, description="Echo input",
                                      on_error="fail", timeout_s=2.0)
        self.assertEqual(spec.on_error, OnError.FAIL)
        self.assertIs(self.registry.get("echo"), spec)
        self.assertEqual(self.registry.list_tools(), ["echo"])

    def test_duplicate_name(self):
        self.registry.register("echo", StatementInput, echo)
        with self.assertRaises(ValueError):
            self.registry.register("echo", MatchInput, echo)

    def test_empty_name(self):
        with self.assertRaises(ValueError):
            self.registry.register("  ", StatementInput, echo)

    def test_handler_must_be_callable(self):
        with self.assertRaises(ValueError):
            self.registry.register("echo", StatementInput, None)

    def test_schema_must_be_pydantic(self):
        with self.assertRaises(ValueError):
            self.registry.register("echo", dict, echo)

    def test_bad_timeout_and_policy(self):
        with self.assertRaises(ValueError):
            self.registry.register("echo", StatementInput, echo, timeout_s=0)
        with self.assertRaises(ValueError):
            self.registry.register("echo", StatementInput, echo, on_error="ignore")

    def test_frozen(self):
        self.registry.freeze()
        with self.assertRaises(RuntimeError):
            self.registry.register("echo", StatementInput, echo)

    def test_from_config(self):
        registry = ToolRegistry.from_config({"timeouts": {"tool_s": 12}})
        self.assertEqual(registry.default_timeout_s, 12.0)


class TestCatalog(unittest.TestCase):

    def setUp(self):
        self.registry = ToolRegistry()
        self.registry.register("fetch_statement", StatementInput, echo, description="Fetch")
        self.registry.register("match", MatchInput, echo, description="Match")

    def test_resolve_unknown(self):
        with self.assertRaises(UnknownToolError) as ctx:
            self.registry.resolve("wire_money")
        self.assertEqual(ctx.exception.tool_name, "wire_money")
        self.assertIn("fetch_statement", ctx.exception.known)

    def test_resolve_not_allowed(self):
        with self.assertRaises(UnknownToolError):
            self.registry.resolve("match", allowed=("fetch_statement",))
        self.assertEqual(self.registry.resolve("match", allowed=()).name, "match")

    def test_catalog_filtered(self):
        catalog = self.registry.catalog(("match",))
        self.assertEqual([c["name"] for c in catalog], ["match"])
        self.assertIn("account", catalog[0]["input_schema"]["properties"])
        self.assertEqual(len(self.registry.catalog()), 2)


class TestInvoke(unittest.TestCase):

    def setUp(self):
        self.registry = ToolRegistry(default_timeout_s=2.0)

    def test_success(self):
        self.registry.register("echo", StatementInput, echo)
        result = self.registry.invoke("echo", {"account": "1010"}, CTX)
        self.assertTrue(result.success)
        self.assertEqual(result.data, {"account": "1010", "execution_id": "exe_1"})
        self.assertGreaterEqual(result.duration_ms, 0.0)

    def test_invalid_input_raises(self):
        self.registry.register("echo", StatementInput, echo)
        with self.assertRaises(ValidationError) as ctx:
            self.registry.invoke("echo", {"month": "2026-03"}, CTX)
        self.assertEqual(ctx.exception.tool_name, "echo")

    def test_unknown_raises(self):
        with self.assertRaises(UnknownToolError):
            self.registry.invoke("nope", {}, CTX)

    def test_timeout(self):
        self.registry.register("slow", StatementInput,
                               lambda i, c: time.sleep(0.5) or {}, timeout_s=0.05)
        result = self.registry.invoke("slow", {"account": "1"}, CTX)
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "timeout")
        self.assertTrue(result.transient)

    def test_transient_and_permanent_errors(self):
        def flaky(inp, ctx):
            raise ToolExecutionError("upstream 503", transient=True)

        def broken(inp, ctx):
            raise ToolExecutionError("account closed")

        def network(inp, ctx):
            raise ConnectionError("reset")

        def bug(inp, ctx):
            raise KeyError("balance")

        for name, fn in (("flaky", flaky), ("broken", broken), ("network", network), ("bug", bug)):
            self.registry.register(name, StatementInput, fn)

        kinds = {
            name: self.registry.invoke(name, {"account": "1"}, CTX).error_kind
            for name in ("flaky", "broken", "network", "bug")
        }
        self.assertEqual(kinds, {
            "flaky": "transient", "broken": "permanent",
            "network": "transient", "bug": "permanent",
        })

    def test_handler_may_return_tool_result(self):
        self.registry.register("metered", StatementInput,
                               lambda i, c: ToolResult(success=True, data=[1], tokens_used=50,
                                                       cost_usd=0.001))
        result = self.registry.invoke("metered", {"account": "1"}, CTX)
        self.assertEqual(result.data, [1])
        self.assertEqual(result.tokens_used, 50)
        self.assertEqual(result.cost_usd, 0.001)


class TestTimedOutCalls(unittest.TestCase):

    def setUp(self):
        self.registry = ToolRegistry(default_timeout_s=0.05)
        self.release = threading.Event()
        self.calls = []
        self.registry.register("hang", StatementInput,
                               lambda i, c: self.release.wait(5) and {})
        self.registry.register("echo", StatementInput,
                               lambda i, c: self.calls.append(c.execution_id) or {})

    def tearDown(self):
        self.release.set()
        self.registry.shutdown(wait=True)

    def test_next_call_waits_for_hung_handler(self):
        self.assertEqual(self.registry.invoke("hang", {"account": "1"}, CTX).error_kind, "timeout")

        result = self.registry.invoke("echo", {"account": "1"}, CTX)
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "timeout")
        self.assertIn("not started", result.error)
        self.assertEqual(self.calls, [])

    def test_other_executions_are_not_blocked(self):
        self.registry.invoke("hang", {"account": "1"}, CTX)
        other = ToolContext(organization_id="org_1", agent_id="agt_1", execution_id="exe_2")

        self.assertTrue(self.registry.invoke("echo", {"account": "1"}, other).success)
        self.assertEqual(self.calls, ["exe_2"])

    def test_settle_after_release(self):
        self.registry.invoke("hang", {"account": "1"}, CTX)
        self.assertFalse(self.registry.settle("exe_1", 0.01))

        self.release.set()
        self.assertTrue(self.registry.settle("exe_1", 2.0))
        self.assertTrue(self.registry.invoke("echo", {"account": "1"}, CTX).success)
        self.assertEqual(self.calls, ["exe_1"])


if __name__ == "__main__":
    unittest.main()
