"""
Agent Engine — Execution Store

Persistence boundary for agents, executions, steps, memories and the
org-scoped daily cost aggregate. The engine talks only to the
ExecutionStore interface; SQLiteStore is the bundled implementation.

Concurrency:
  - One connection shared across worker threads, serialized by an RLock.
  - Counters (org daily cost, memory usage) are incremented in SQL
    (SET x = x + ?) so concurrent writers never lose an update.
  - transaction() wraps read-modify-write sequences in BEGIN IMMEDIATE.
  - Steps are keyed (execution_id, step_number); a duplicate append fails.

Usage:
    store = SQLiteStore("agent_engine.db")
    store.create_execution(execution)
    store.append_step(execution.execution_id, step)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from agent_engine.schemas import MemoryConditions, MemoryContent
from agent_engine.types import (
    AgentDefinition,
    AgentExecution,
    ExecutionOutcome,
    ExecutionStatus,
    ExecutionStep,
    Memory,
    MemoryScope,
    TriggerType,
)

logger = logging.getLogger("agent_engine.store")


# ═══════════════════════════════════════════════════════════════
# Abstract Interface
# ═══════════════════════════════════════════════════════════════

class ExecutionStore:
    """Abstract persistence interface."""

    @contextmanager
    def transaction(self) -> Iterator[None]:
        raise NotImplementedError

    # agents
    def save_agent(self, agent: AgentDefinition) -> None:
        raise NotImplementedError

    def get_agent(self, agent_id: str) -> AgentDefinition | None:
        raise NotImplementedError

    # executions
    def create_execution(self, execution: AgentExecution) -> None:
        raise NotImplementedError

    def get_execution(self, execution_id: str, include_steps: bool = True) -> AgentExecution | None:
        raise NotImplementedError

    def update_execution(self, execution: AgentExecution) -> None:
        raise NotImplementedError

    def mark_cancelled(self, execution_id: str) -> bool:
        raise NotImplementedError

    def is_cancelled(self, execution_id: str) -> bool:
        raise NotImplementedError

    # steps
    def append_step(self, execution_id: str, step: ExecutionStep) -> None:
        raise NotImplementedError

    def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        raise NotImplementedError

    def count_steps(self, execution_id: str) -> int:
        raise NotImplementedError

    # memories
    def insert_memory(self, memory: Memory) -> None:
        raise NotImplementedError

    def get_memory(self, memory_id: str) -> Memory | None:
        raise NotImplementedError

    def query_memories(self, organization_id: str, agent_id: str | None = None,
                       scope: MemoryScope | None = None, entity_key: str | None = None,
                       category: str | None = None,
                       include_archived: bool = False) -> list[Memory]:
        raise NotImplementedError

    def update_memory(self, memory: Memory) -> None:
        raise NotImplementedError

    def increment_memory_usage(self, memory_ids: list[str]) -> None:
        raise NotImplementedError

    # org costs
    def add_org_cost(self, organization_id: str, day: str, cost_micros: int, tokens: int) -> int:
        raise NotImplementedError

    def get_org_cost(self, organization_id: str, day: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS agents (
        agent_id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        definition TEXT NOT NULL,
        created_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS executions (
        execution_id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        goal TEXT NOT NULL,
        trigger_type TEXT NOT NULL,
        triggered_by TEXT,
        status TEXT NOT NULL DEFAULT 'running',
        cancelled INTEGER NOT NULL DEFAULT 0,
        outcome TEXT,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost_usd REAL NOT NULL DEFAULT 0.0,
        llm_call_count INTEGER NOT NULL DEFAULT 0,
        memories_used TEXT NOT NULL DEFAULT '[]',
        input_context TEXT NOT NULL DEFAULT '{}',
        prompt_version TEXT DEFAULT '',
        created_at REAL NOT NULL,
        completed_at REAL,
        execution_time_ms REAL
    );

    CREATE TABLE IF NOT EXISTS steps (
        execution_id TEXT NOT NULL,
        step_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL,
        created_at REAL NOT NULL,
        PRIMARY KEY (execution_id, step_number)
    );

    CREATE TABLE IF NOT EXISTS memories (
        memory_id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        entity_key TEXT,
        category TEXT,
        content TEXT NOT NULL,
        conditions TEXT,
        confidence REAL NOT NULL,
        correct_count INTEGER NOT NULL DEFAULT 0,
        total_count INTEGER NOT NULL DEFAULT 0,
        usage_count INTEGER NOT NULL DEFAULT 0,
        is_archived INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS org_costs (
        organization_id TEXT NOT NULL,
        day TEXT NOT NULL,
        cost_micros INTEGER NOT NULL DEFAULT 0,
        tokens INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (organization_id, day)
    );

    CREATE INDEX IF NOT EXISTS idx_executions_agent ON executions(agent_id);
    CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
    CREATE INDEX IF NOT EXISTS idx_memories_lookup
        ON memories(organization_id, agent_id, scope, is_archived);
"""


class SQLiteStore(ExecutionStore):
    """SQLite-backed store. Use ':memory:' for tests."""

    def __init__(self, db_path: str | Path = ":memory:", busy_timeout: int = 5000):
        self.db_path = str(db_path)
        # Autocommit; transaction() issues BEGIN IMMEDIATE explicitly
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(f"PRAGMA busy_timeout={busy_timeout}")
        self._lock = threading.RLock()
        self._in_transaction = False
        with self._lock:
            self.conn.executescript(_SCHEMA)
        logger.info("SQLite store initialized: %s", self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Explicit transaction boundary. Re-entrant: a nested call joins
        the outer transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
                self.conn.execute("COMMIT")
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            finally:
                self._in_transaction = False

    def _execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ─── Agents ──────────────────────────────────────────────────────

    def save_agent(self, agent: AgentDefinition) -> None:
        self._execute(
            "INSERT OR REPLACE INTO agents (agent_id, organization_id, definition, created_at) "
            "VALUES (?, ?, ?, ?)",
            (agent.agent_id, agent.organization_id, json.dumps(agent.to_dict()), time.time()),
        )

    def get_agent(self, agent_id: str) -> AgentDefinition | None:
        row = self._fetchone("SELECT definition FROM agents WHERE agent_id = ?", (agent_id,))
        if not row:
            return None
        return AgentDefinition.from_dict(json.loads(row["definition"]))

    # ─── Executions ──────────────────────────────────────────────────

    def create_execution(self, execution: AgentExecution) -> None:
        e = execution
        self._execute("""
            INSERT INTO executions
            (execution_id, agent_id, organization_id, goal, trigger_type, triggered_by,
             status, cancelled, outcome, tokens_used, cost_usd, llm_call_count,
             memories_used, input_context, prompt_version, created_at, completed_at,
             execution_time_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            e.execution_id, e.agent_id, e.organization_id, e.goal,
            e.trigger_type.value, e.triggered_by, e.status.value, int(e.cancelled),
            json.dumps(e.outcome.to_dict()) if e.outcome else None,
            e.tokens_used, e.cost_usd, e.llm_call_count,
            json.dumps(e.memories_used), json.dumps(e.input_context, default=str), e.prompt_version,
            e.created_at, e.completed_at, e.execution_time_ms,
        ))

    def update_execution(self, execution: AgentExecution) -> None:
        """Persist status, outcome and counters. Never clears the cancel flag."""
        e = execution
        self._execute("""
            UPDATE executions SET
                status = ?, outcome = ?, tokens_used = ?, cost_usd = ?,
                llm_call_count = ?, memories_used = ?, completed_at = ?,
                execution_time_ms = ?, cancelled = MAX(cancelled, ?)
            WHERE execution_id = ?
        """, (
            e.status.value,
            json.dumps(e.outcome.to_dict()) if e.outcome else None,
            e.tokens_used, e.cost_usd, e.llm_call_count,
            json.dumps(e.memories_used), e.completed_at, e.execution_time_ms,
            int(e.cancelled), e.execution_id,
        ))

    def get_execution(self, execution_id: str, include_steps: bool = True) -> AgentExecution | None:
        row = self._fetchone("SELECT * FROM executions WHERE execution_id = ?", (execution_id,))
        if not row:
            return None
        execution = self._row_to_execution(row)
        if include_steps:
            execution.steps = self.list_steps(execution_id)
        return execution

    def mark_cancelled(self, execution_id: str) -> bool:
        cur = self._execute(
            "UPDATE executions SET cancelled = 1 WHERE execution_id = ?", (execution_id,)
        )
        return cur.rowcount > 0

    def is_cancelled(self, execution_id: str) -> bool:
        row = self._fetchone(
            "SELECT cancelled FROM executions WHERE execution_id = ?", (execution_id,)
        )
        return bool(row and row["cancelled"])

    def _row_to_execution(self, row) -> AgentExecution:
        return AgentExecution(
            execution_id=row["execution_id"],
            agent_id=row["agent_id"],
            organization_id=row["organization_id"],
            goal=row["goal"],
            trigger_type=TriggerType(row["trigger_type"]),
            triggered_by=row["triggered_by"],
            status=ExecutionStatus(row["status"]),
            cancelled=bool(row["cancelled"]),
            outcome=ExecutionOutcome.from_dict(json.loads(row["outcome"])) if row["outcome"] else None,
            tokens_used=row["tokens_used"],
            cost_usd=row["cost_usd"],
            llm_call_count=row["llm_call_count"],
            memories_used=json.loads(row["memories_used"]),
            input_context=json.loads(row["input_context"] or "{}"),
            prompt_version=row["prompt_version"] or "",
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            execution_time_ms=row["execution_time_ms"],
        )

    # ─── Steps ───────────────────────────────────────────────────────

    def append_step(self, execution_id: str, step: ExecutionStep) -> None:
        """Append-only. Raises sqlite3.IntegrityError if the step number is taken."""
        self._execute(
            "INSERT INTO steps (execution_id, step_number, status, data, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (execution_id, step.step_number, step.status.value,
             json.dumps(step.to_dict(), default=str), step.timestamp),
        )

    def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        rows = self._fetchall(
            "SELECT data FROM steps WHERE execution_id = ? ORDER BY step_number",
            (execution_id,),
        )
        return [ExecutionStep.from_dict(json.loads(r["data"])) for r in rows]

    def count_steps(self, execution_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM steps WHERE execution_id = ?", (execution_id,)
        )
        return row["n"] if row else 0

    # ─── Memories ────────────────────────────────────────────────────

    def insert_memory(self, memory: Memory) -> None:
        m = memory
        self._execute("""
            INSERT INTO memories
            (memory_id, organization_id, agent_id, scope, entity_key, category,
             content, conditions, confidence, correct_count, total_count,
             usage_count, is_archived, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            m.memory_id, m.organization_id, m.agent_id, m.scope.value,
            m.entity_key, m.category, m.content.model_dump_json(),
            m.conditions.model_dump_json() if m.conditions else None,
            m.confidence, m.correct_count, m.total_count, m.usage_count,
            int(m.is_archived), m.created_at, m.updated_at,
        ))

    def update_memory(self, memory: Memory) -> None:
        """Write content, counters and flags. usage_count is left to increment_memory_usage()."""
        m = memory
        self._execute("""
            UPDATE memories SET
                content = ?, conditions = ?, confidence = ?, correct_count = ?,
                total_count = ?, is_archived = ?, updated_at = ?
            WHERE memory_id = ?
        """, (
            m.content.model_dump_json(),
            m.conditions.model_dump_json() if m.conditions else None,
            m.confidence, m.correct_count, m.total_count,
            int(m.is_archived), m.updated_at, m.memory_id,
        ))

    def get_memory(self, memory_id: str) -> Memory | None:
        row = self._fetchone("SELECT * FROM memories WHERE memory_id = ?", (memory_id,))
        return self._row_to_memory(row) if row else None

    def query_memories(self, organization_id: str, agent_id: str | None = None,
                       scope: MemoryScope | None = None, entity_key: str | None = None,
                       category: str | None = None,
                       include_archived: bool = False) -> list[Memory]:
        query = "SELECT * FROM memories WHERE organization_id = ?"
        params: list[Any] = [organization_id]
        if agent_id:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if scope:
            query += " AND scope = ?"
            params.append(MemoryScope(scope).value)
        if entity_key is not None:
            query += " AND entity_key = ?"
            params.append(entity_key)
        if category is not None:
            query += " AND category = ?"
            params.append(category)
        if not include_archived:
            query += " AND is_archived = 0"
        query += " ORDER BY updated_at DESC"
        return [self._row_to_memory(r) for r in self._fetchall(query, params)]

    def increment_memory_usage(self, memory_ids: list[str]) -> None:
        if not memory_ids:
            return
        with self.transaction():
            for memory_id in memory_ids:
                self._execute(
                    "UPDATE memories SET usage_count = usage_count + 1 WHERE memory_id = ?",
                    (memory_id,),
                )

    def _row_to_memory(self, row) -> Memory:
        return Memory(
            memory_id=row["memory_id"],
            organization_id=row["organization_id"],
            agent_id=row["agent_id"],
            scope=MemoryScope(row["scope"]),
            entity_key=row["entity_key"],
            category=row["category"],
            content=MemoryContent.model_validate_json(row["content"]),
            conditions=MemoryConditions.model_validate_json(row["conditions"]) if row["conditions"] else None,
            confidence=row["confidence"],
            correct_count=row["correct_count"],
            total_count=row["total_count"],
            usage_count=row["usage_count"],
            is_archived=bool(row["is_archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ─── Org Costs ───────────────────────────────────────────────────

    def add_org_cost(self, organization_id: str, day: str, cost_micros: int, tokens: int) -> int:
        """Atomically add to the org's bucket for `day`; returns the new total in micro-dollars."""
        with self.transaction():
            self._execute("""
                INSERT INTO org_costs (organization_id, day, cost_micros, tokens)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(organization_id, day) DO UPDATE SET
                    cost_micros = cost_micros + excluded.cost_micros,
                    tokens = tokens + excluded.tokens
            """, (organization_id, day, int(cost_micros), int(tokens)))
            return self.get_org_cost(organization_id, day)

    def get_org_cost(self, organization_id: str, day: str) -> int:
        row = self._fetchone(
            "SELECT cost_micros FROM org_costs WHERE organization_id = ? AND day = ?",
            (organization_id, day),
        )
        return row["cost_micros"] if row else 0

    def close(self) -> None:
        with self._lock:
            self.conn.close()
