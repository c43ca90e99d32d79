"""
Agent Engine — Structured Logging

JSON-lines logging for the reasoning loop. Every entry emitted through
ExecutionLogger carries trace_id = execution_id so a whole run can be
pulled out of the log stream with one filter.

Usage:
    from agent_engine.logging import ExecutionLogger, configure_logging

    configure_logging(level="INFO")
    log = ExecutionLogger(execution_id="exe_1a2b3c", agent_id="agt_9f8e",
                          organization_id="org_1")
    log.execution_start(goal="Reconcile March statements")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "agent_engine"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("AE_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    json_lines: bool = True,
    service_name: str = "agent_engine",
) -> logging.Logger:
    """
    Configure the agent_engine logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        json_lines: JSON formatter when true, plain text otherwise

    Returns:
        The configured agent_engine logger
    """
    logger = logging.getLogger("agent_engine")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("agent_engine."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_lines:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def configure_from_config(config: dict[str, Any]) -> logging.Logger:
    section = config.get("logging", {}) or {}
    return configure_logging(
        level=str(section.get("level", "INFO")),
        json_lines=bool(section.get("json", True)),
    )


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the agent_engine namespace."""
    if name:
        return logging.getLogger(f"agent_engine.{name}")
    return logging.getLogger("agent_engine")


# ═══════════════════════════════════════════════════════════════════
# Execution Logger
# ═══════════════════════════════════════════════════════════════════

class ExecutionLogger:
    """
    Structured event emitter bound to one execution.

    Events: execution_start, decision, tool_call, step_appended,
    status_transition, budget_check_failed, execution_end.
    """

    def __init__(self, execution_id: str, agent_id: str = "", organization_id: str = ""):
        self.trace_id = execution_id
        self.agent_id = agent_id
        self.organization_id = organization_id
        self._logger = get_logger("execution")

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "agent_id": self.agent_id,
            "organization_id": self.organization_id,
        }

    def _emit(self, level: int, event: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "event": event, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=event,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Events ──────────────────────────────────────────────────

    def execution_start(self, goal: str, trigger_type: str = "", memories: int = 0):
        self._emit(logging.INFO, "execution_start",
                   goal=goal, trigger_type=trigger_type, memories=memories)

    def decision(self, step_number: int, action: str, tool_name: str | None,
                 done: bool, needs_human: bool, tokens: int = 0,
                 reasoning: str = ""):
        fields: dict[str, Any] = {
            "step_number": step_number,
            "action": action,
            "tool_name": tool_name,
            "done": done,
            "needs_human": needs_human,
            "tokens": tokens,
        }
        # Full reasoning only at DEBUG
        if self._logger.isEnabledFor(logging.DEBUG):
            fields["reasoning"] = reasoning
        self._emit(logging.INFO, "decision", **fields)

    def tool_call(self, step_number: int, tool_name: str, success: bool,
                  attempts: int, duration_ms: float, error: str | None = None):
        level = logging.INFO if success else logging.WARNING
        self._emit(level, "tool_call",
                   step_number=step_number, tool_name=tool_name,
                   success=success, attempts=attempts,
                   duration_ms=round(duration_ms, 1), error=error)

    def step_appended(self, step_number: int, status: str, action: str):
        self._emit(logging.DEBUG, "step_appended",
                   step_number=step_number, status=status, action=action)

    def status_transition(self, from_status: str, to_status: str, reason: str = ""):
        self._emit(logging.INFO, "status_transition",
                   from_status=from_status, to_status=to_status, reason=reason)

    def budget_check_failed(self, limit: str, used: float, requested: float, ceiling: float):
        self._emit(logging.WARNING, "budget_check_failed",
                   limit=limit, used=used, requested=requested, ceiling=ceiling)

    def execution_end(self, status: str, steps: int, tokens_used: int,
                      cost_usd: float, llm_calls: int, elapsed_ms: float):
        self._emit(logging.INFO, "execution_end",
                   status=status, steps=steps, tokens_used=tokens_used,
                   cost_usd=round(cost_usd, 6), llm_calls=llm_calls,
                   elapsed_ms=round(elapsed_ms, 1))
