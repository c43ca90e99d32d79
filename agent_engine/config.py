"""
Agent Engine — Config Loader

Two-tier configuration loading:
  1. Base YAML file (agent_config.yaml, or AGENT_CONFIG_PATH)
  2. Environment variable overrides (AE_ prefixed)

Usage:
    from agent_engine.config import load_config, get_config_value

    cfg = load_config()
    top_k = get_config_value("memory.top_k", cfg, default=5)

Environment variables:
    AGENT_CONFIG_PATH        — path to the base YAML file
    AE_<SECTION>__<KEY>      — nested override, double underscore between
                               levels (e.g. AE_TIMEOUTS__TOOL_S=10)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("agent_engine.config")

_DEFAULT_PATH = Path(__file__).resolve().parent.parent / "agent_config.yaml"

# Used when no YAML file is present at all.
DEFAULTS: dict[str, Any] = {
    "pricing": {
        "default": {"input_per_million": 0.15, "output_per_million": 0.60},
    },
    "retry": {
        "max_retries": 1,
        "base_delay": 0.5,
        "max_delay": 8.0,
        "jitter": 0.25,
    },
    "budgets": {
        "max_tokens_per_execution": 200_000,
        "max_cost_per_execution": 1.00,
        "max_cost_per_org_daily": 25.00,
    },
    "memory": {
        "top_k": 5,
        "initial_confidence": 0.6,
        "prior_weight": 2.0,
        "confidence_floor": 0.5,
        "recency_half_life_days": 30.0,
    },
    "context": {
        "recent_steps": 5,
        "max_summarized_steps": 20,
    },
    "timeouts": {
        "llm_s": 60.0,
        "tool_s": 30.0,
    },
    "llm": {
        "default_provider": "openai",
        "max_output_tokens": 1024,
        "estimated_output_tokens": 400,
    },
    "worker": {
        "max_workers": 4,
    },
    "store": {
        "path": "agent_engine.db",
    },
    "logging": {
        "level": "INFO",
        "json": True,
    },
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "AE_") -> dict[str, Any]:
    """
    Load AE_ prefixed environment variables as config overrides.

      AE_MEMORY__TOP_K=8        → {"memory": {"top_k": 8}}
      AE_LOGGING__LEVEL=DEBUG   → {"logging": {"level": "DEBUG"}}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str | os.PathLike | None = None,
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration.

    Priority (highest wins):
      1. Environment variable overrides (AE_*)
      2. Base config file
      3. Built-in DEFAULTS
    """
    path = Path(base_path or os.environ.get("AGENT_CONFIG_PATH") or _DEFAULT_PATH)

    config = copy.deepcopy(DEFAULTS)
    if path.exists():
        with open(path) as f:
            config = deep_merge(config, yaml.safe_load(f) or {})
        logger.debug("Loaded base config: %s", path)
    else:
        logger.info("Config file %s not found — using built-in defaults", path)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_config_source"] = str(path)
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("timeouts.tool_s", cfg, 30.0)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
