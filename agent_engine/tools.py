"""
Agent Engine — Tool Registry

A statically registered table of capabilities the reasoning loop may
invoke. Everything about a tool is checked when it is registered:
duplicate or empty names, missing handlers and non-pydantic input
schemas fail fast, and the table is frozen before executions run.

Contract:
    handler(input: <input_schema instance>, context: ToolContext) -> dict | ToolResult

    Raise ToolExecutionError(transient=True) for rate limits, network
    blips and other failures worth one retry.

Usage:
    class LookupInput(BaseModel):
        vendor: str

    registry = ToolRegistry()
    registry.register("lookup_vendor", LookupInput, lookup_vendor,
                      description="Find a vendor by name")
    registry.freeze()

    result = registry.invoke("lookup_vendor", {"vendor": "Acme"}, ctx)
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import pydantic
from pydantic import BaseModel

from agent_engine.errors import ToolExecutionError, UnknownToolError, ValidationError
from agent_engine.retry import is_retryable
from agent_engine.types import OnError, ToolContext, ToolResult

logger = logging.getLogger("agent_engine.tools")

ToolHandler = Callable[[BaseModel, ToolContext], Any]


@dataclass(frozen=True)
class ToolSpec:
    """Registration entry for a tool."""
    name: str
    input_schema: type[BaseModel]
    handler: ToolHandler
    description: str = ""
    on_error: OnError = OnError.SKIP
    timeout_s: float | None = None      # None → registry default
    estimated_cost_usd: float = 0.0     # checked against the budget before each call
    estimated_tokens: int = 0

    def catalog_entry(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema.model_json_schema(),
        }


class ToolRegistry:
    """
    Central registry of tools.

    Read-only once frozen; invoke() may be called from many executions
    at the same time.
    """

    def __init__(self, default_timeout_s: float = 30.0, max_workers: int = 8):
        self._tools: dict[str, ToolSpec] = {}
        self._frozen = False
        self._lock = threading.Lock()
        self._abandoned: dict[str, concurrent.futures.Future] = {}
        self.default_timeout_s = default_timeout_s
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tool",
        )

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ToolRegistry:
        timeouts = config.get("timeouts", {}) or {}
        return cls(default_timeout_s=float(timeouts.get("tool_s", 30.0)))

    # ── Registration ────────────────────────────────────────────

    def register(
        self,
        name: str,
        input_schema: type[BaseModel],
        handler: ToolHandler,
        description: str = "",
        on_error: OnError | str = OnError.SKIP,
        timeout_s: float | None = None,
        estimated_cost_usd: float = 0.0,
        estimated_tokens: int = 0,
    ) -> ToolSpec:
        """Register a tool. Raises ValueError on any malformed entry."""
        if not name or not name.strip():
            raise ValueError("Tool name must be non-empty")
        if handler is None or not callable(handler):
            raise ValueError(f"Tool '{name}' has no callable handler")
        if not (isinstance(input_schema, type) and issubclass(input_schema, BaseModel)):
            raise ValueError(f"Tool '{name}' input_schema must be a pydantic BaseModel subclass")
        if timeout_s is not None and timeout_s <= 0:
            raise ValueError(f"Tool '{name}' timeout_s must be positive")

        spec = ToolSpec(
            name=name,
            input_schema=input_schema,
            handler=handler,
            description=description,
            on_error=OnError(on_error),
            timeout_s=timeout_s,
            estimated_cost_usd=estimated_cost_usd,
            estimated_tokens=estimated_tokens,
        )
        with self._lock:
            if self._frozen:
                raise RuntimeError(f"Registry is frozen; cannot register '{name}'")
            if name in self._tools:
                raise ValueError(f"Tool '{name}' is already registered")
            self._tools[name] = spec
        logger.debug("Registered tool %s (on_error=%s)", name, spec.on_error.value)
        return spec

    def freeze(self):
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Lookup ──────────────────────────────────────────────────

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def resolve(self, name: str, allowed: tuple[str, ...] | list[str] = ()) -> ToolSpec:
        """Return the spec for `name`, or raise UnknownToolError."""
        spec = self._tools.get(name)
        visible = [n for n in self._tools if not allowed or n in allowed]
        if spec is None or (allowed and name not in allowed):
            raise UnknownToolError(name, known=visible)
        return spec

    def catalog(self, allowed: tuple[str, ...] | list[str] = ()) -> list[dict[str, Any]]:
        """Names, descriptions and JSON schemas for the prompt."""
        return [
            spec.catalog_entry()
            for name, spec in self._tools.items()
            if not allowed or name in allowed
        ]

    # ── Invocation ──────────────────────────────────────────────

    def timeout_for(self, spec: ToolSpec) -> float:
        return spec.timeout_s or self.default_timeout_s

    def validate_input(self, spec: ToolSpec, raw_input: dict[str, Any] | None) -> BaseModel:
        try:
            return spec.input_schema.model_validate(raw_input or {})
        except pydantic.ValidationError as e:
            raise ValidationError(spec.name, e.errors()) from e

    def invoke(
        self,
        name: str,
        raw_input: dict[str, Any] | None,
        context: ToolContext,
        allowed: tuple[str, ...] | list[str] = (),
    ) -> ToolResult:
        """
        Validate and run one tool call under its timeout.

        Raises:
            UnknownToolError: name not registered (or not allowed)
            ValidationError:  raw_input does not match the input schema

        Handler failures never raise; they come back as a failed
        ToolResult whose error_kind is timeout, transient or permanent.
        """
        spec = self.resolve(name, allowed)
        validated = self.validate_input(spec, raw_input)
        timeout = self.timeout_for(spec)

        t0 = time.monotonic()
        if not self.settle(context.execution_id, timeout):
            return ToolResult(
                success=False,
                error=(f"Tool '{name}' not started: an earlier call in this execution "
                       f"is still running after {timeout:.1f}s"),
                error_kind="timeout",
                duration_ms=_elapsed_ms(t0),
            )

        future = self._executor.submit(spec.handler, validated, context)
        try:
            output = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            # The worker thread is not interrupted; its late result is discarded.
            if not future.cancel():
                self._abandon(context.execution_id, future)
            return ToolResult(
                success=False,
                error=f"Tool '{name}' timed out after {timeout:.1f}s",
                error_kind="timeout",
                duration_ms=_elapsed_ms(t0),
            )
        except ToolExecutionError as e:
            return ToolResult(
                success=False,
                error=str(e),
                error_kind="transient" if e.transient else "permanent",
                duration_ms=_elapsed_ms(t0),
            )
        except Exception as e:
            return ToolResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                error_kind="transient" if is_retryable(e) else "permanent",
                duration_ms=_elapsed_ms(t0),
            )

        if isinstance(output, ToolResult):
            if not output.duration_ms:
                output.duration_ms = _elapsed_ms(t0)
            return output
        return ToolResult(success=True, data=output, duration_ms=_elapsed_ms(t0))

    # ── Timed-out calls ─────────────────────────────────────────

    def _abandon(self, execution_id: str, future: concurrent.futures.Future):
        with self._lock:
            self._abandoned[execution_id] = future

        def drop(done: concurrent.futures.Future):
            with self._lock:
                if self._abandoned.get(execution_id) is done:
                    del self._abandoned[execution_id]

        future.add_done_callback(drop)

    def settle(self, execution_id: str, timeout_s: float) -> bool:
        """
        Wait up to timeout_s for a timed-out call of this execution to
        return. False while it is still running: one execution never has
        two handlers in flight.
        """
        with self._lock:
            future = self._abandoned.get(execution_id)
        if future is None:
            return True
        done, _ = concurrent.futures.wait([future], timeout=timeout_s)
        return bool(done)

    def shutdown(self, wait: bool = False):
        self._executor.shutdown(wait=wait)


def _elapsed_ms(t0: float) -> float:
    return (time.monotonic() - t0) * 1000
