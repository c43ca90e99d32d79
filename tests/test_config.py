"""
Agent Engine — Config Loader Tests

Tests:
  - built-in defaults when no file exists
  - YAML file deep-merged over defaults
  - AE_SECTION__KEY environment overrides parsed as YAML scalars
  - AGENT_CONFIG_PATH selects the file
  - bundled agent_config.yaml is loadable and complete
  - LLM provider detection and alias resolution
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import fakes  # noqa: F401

from agent_engine.config import DEFAULTS, deep_merge, get_config_value, load_config
from agent_engine.llm import detect_provider, resolve_model


class ConfigTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "agent_config.yaml")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def write(self, text):
        with open(self.path, "w") as f:
            f.write(text)


class TestDeepMerge(unittest.TestCase):

    def test_nested_merge(self):
        merged = deep_merge({"a": {"x": 1, "y": 2}, "l": [1]}, {"a": {"y": 3}, "l": [2]})
        self.assertEqual(merged, {"a": {"x": 1, "y": 3}, "l": [2]})

    def test_inputs_untouched(self):
        base = {"a": {"x": 1}}
        deep_merge(base, {"a": {"x": 2}})
        self.assertEqual(base, {"a": {"x": 1}})


class TestLoadConfig(ConfigTestCase):

    def test_defaults_when_missing(self):
        cfg = load_config(os.path.join(self.tmpdir, "absent.yaml"), include_env_vars=False)
        self.assertEqual(cfg["memory"], DEFAULTS["memory"])
        self.assertEqual(cfg["_config_source"], os.path.join(self.tmpdir, "absent.yaml"))

    def test_file_overrides_defaults(self):
        self.write("memory:\n  top_k: 9\nretry:\n  max_retries: 2\n")
        cfg = load_config(self.path, include_env_vars=False)
        self.assertEqual(cfg["memory"]["top_k"], 9)
        self.assertEqual(cfg["memory"]["prior_weight"], 2.0)
        self.assertEqual(cfg["retry"]["max_retries"], 2)

    def test_env_overrides(self):
        self.write("memory:\n  top_k: 9\n")
        env = {"AE_MEMORY__TOP_K": "12", "AE_LOGGING__JSON": "false",
               "AE_TIMEOUTS__TOOL_S": "2.5"}
        with patch.dict(os.environ, env):
            cfg = load_config(self.path)
        self.assertEqual(cfg["memory"]["top_k"], 12)
        self.assertIs(cfg["logging"]["json"], False)
        self.assertEqual(cfg["timeouts"]["tool_s"], 2.5)

    def test_env_path(self):
        self.write("worker:\n  max_workers: 16\n")
        with patch.dict(os.environ, {"AGENT_CONFIG_PATH": self.path}):
            cfg = load_config(include_env_vars=False)
        self.assertEqual(cfg["worker"]["max_workers"], 16)

    def test_get_config_value(self):
        cfg = load_config(os.path.join(self.tmpdir, "absent.yaml"), include_env_vars=False)
        self.assertEqual(get_config_value("timeouts.llm_s", cfg), 60.0)
        self.assertEqual(get_config_value("timeouts.nope", cfg, default="d"), "d")


class TestBundledConfig(unittest.TestCase):

    def test_bundled_file(self):
        base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        cfg = load_config(os.path.join(base, "agent_config.yaml"), include_env_vars=False)
        for section in ("pricing", "retry", "budgets", "memory", "context",
                        "timeouts", "llm", "worker", "store", "logging"):
            self.assertIn(section, cfg)
        self.assertIn("default", cfg["pricing"])
        self.assertEqual(cfg["retry"]["max_retries"], 1)
        self.assertEqual(cfg["memory"]["initial_confidence"], 0.6)


class TestProviders(unittest.TestCase):

    CFG = {"llm": {"default_provider": "google", "models": {
        "default": {"openai": "gpt-4o-mini", "google": "gemini-2.0-flash"},
    }}}

    def test_env_wins(self):
        with patch.dict(os.environ, {"LLM_PROVIDER": "OpenAI"}):
            self.assertEqual(detect_provider(self.CFG), "openai")

    def test_config_default(self):
        with patch.dict(os.environ, {"LLM_PROVIDER": ""}):
            self.assertEqual(detect_provider(self.CFG), "google")

    def test_aliases(self):
        with patch.dict(os.environ, {"LLM_DEFAULT_MODEL": ""}):
            self.assertEqual(resolve_model("default", "google", self.CFG), "gemini-2.0-flash")
            self.assertEqual(resolve_model("default", "azure", self.CFG), "gpt-4o-mini")
        self.assertEqual(resolve_model("gpt-4.1", "openai", self.CFG), "gpt-4.1")

    def test_env_default_model(self):
        with patch.dict(os.environ, {"LLM_DEFAULT_MODEL": "gpt-4.1-mini"}):
            self.assertEqual(resolve_model("default", "openai", self.CFG), "gpt-4.1-mini")


if __name__ == "__main__":
    unittest.main()
