"""Data access layer for Agent Foundry on PostgreSQL.

All SQL queries live here. The dispatcher, mediator and ledger never write
raw SQL; they call Repository methods that return Pydantic models. The
assignment and transition methods are compare-and-swap updates: the
expected state is part of the WHERE clause and a zero row count means
somebody else got there first.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from src.core.exceptions import DatabaseError
from src.core.models import (
    Agent,
    AgentRole,
    AgentStatus,
    ContentType,
    LedgerBlock,
    RejectedVerification,
    Task,
    TaskStatus,
    TraceEvent,
    VerifiedStatement,
)
from src.db.base import MUTABLE_TASK_FIELDS, RepositoryBase
from src.db.engine import DatabaseEngine

_JSON_TASK_FIELDS = frozenset({"result", "review_feedback"})
_UUID_TASK_FIELDS = frozenset({"assigned_to_agent_id"})


def _encode_task_value(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in _JSON_TASK_FIELDS:
        return json.dumps(value, default=str)
    if field in _UUID_TASK_FIELDS:
        return str(value)
    if field == "status":
        return TaskStatus(value).value
    return value


class Repository(RepositoryBase):
    """Data access layer wrapping DatabaseEngine with typed methods."""

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    # -------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        self.engine.execute(
            """INSERT INTO tasks (id, title, description, status, required_role, complexity_score,
                                  retry_count, is_deadlocked, context_packet, created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(task.id),
                task.title,
                task.description,
                task.status.value,
                task.required_role.value,
                task.complexity_score,
                task.retry_count,
                task.is_deadlocked,
                json.dumps(task.context_packet, default=str),
                task.created_at,
                task.updated_at,
            ],
        )
        return task

    def get_task(self, task_id: uuid.UUID) -> Optional[Task]:
        row = self.engine.fetch_one("SELECT * FROM tasks WHERE id = %s", [str(task_id)])
        if row is None:
            return None
        return _row_to_task(row)

    def list_tasks(self, status: Optional[TaskStatus] = None, limit: Optional[int] = None) -> list[Task]:
        query = "SELECT * FROM tasks"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = %s"
            params.append(status.value)
        query += " ORDER BY created_at ASC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        return [_row_to_task(r) for r in self.engine.fetch_all(query, params)]

    def get_dispatchable_tasks(self, limit: int, max_retry_count: int) -> list[Task]:
        rows = self.engine.fetch_all(
            """SELECT * FROM tasks
               WHERE status = 'QUEUED'
                  OR (status = 'NEEDS_REVISION' AND retry_count <= %s AND NOT is_deadlocked)
               ORDER BY created_at ASC
               LIMIT %s""",
            [max_retry_count, limit],
        )
        return [_row_to_task(r) for r in rows]

    def get_deadlock_candidates(self, retry_threshold: int) -> list[Task]:
        rows = self.engine.fetch_all(
            """SELECT * FROM tasks
               WHERE status IN ('NEEDS_REVISION', 'FAILED')
                 AND retry_count > %s
                 AND NOT is_deadlocked
               ORDER BY created_at ASC""",
            [retry_threshold],
        )
        return [_row_to_task(r) for r in rows]

    def count_in_progress_for_role(self, role: AgentRole) -> int:
        row = self.engine.fetch_one(
            """SELECT COUNT(*) AS cnt FROM tasks t
               JOIN agents a ON a.id = t.assigned_to_agent_id
               WHERE t.status = 'IN_PROGRESS' AND a.role = %s""",
            [role.value],
        )
        return int(row["cnt"]) if row else 0

    def assign_task(
        self,
        task_id: uuid.UUID,
        agent_id: uuid.UUID,
        expected_status: TaskStatus,
        trace_id: str,
    ) -> Optional[Task]:
        with self.engine.transaction() as cur:
            cur.execute(
                """UPDATE agents SET status = 'BUSY', current_task_id = %s, last_active_at = now()
                   WHERE id = %s AND status = 'IDLE'""",
                [str(task_id), str(agent_id)],
            )
            if cur.rowcount == 0:
                cur.connection.rollback()
                return None
            cur.execute(
                """UPDATE tasks
                   SET status = 'ASSIGNED',
                       assigned_to_agent_id = %s,
                       owner_agent_id = COALESCE(owner_agent_id, %s),
                       trace_id = %s,
                       updated_at = now()
                   WHERE id = %s AND status = %s
                   RETURNING *""",
                [str(agent_id), str(agent_id), trace_id, str(task_id), expected_status.value],
            )
            row = cur.fetchone()
            if row is None:
                # Task moved on; undo the worker claim.
                cur.connection.rollback()
                return None
        return _row_to_task(row)

    def transition_task(
        self,
        task_id: uuid.UUID,
        expected_status: TaskStatus,
        changes: dict[str, Any],
    ) -> Optional[Task]:
        unknown = set(changes) - MUTABLE_TASK_FIELDS
        if unknown:
            raise DatabaseError(f"Cannot update task fields: {sorted(unknown)}")
        assignments = [f"{field} = %s" for field in changes]
        params: list[Any] = [_encode_task_value(f, v) for f, v in changes.items()]
        assignments.append("updated_at = now()")
        params.extend([str(task_id), expected_status.value])
        row = self.engine.fetch_one(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE id = %s AND status = %s RETURNING *",
            params,
        )
        if row is None:
            return None
        return _row_to_task(row)

    def get_task_status_summary(self) -> dict[str, int]:
        rows = self.engine.fetch_all("SELECT status, COUNT(*) AS cnt FROM tasks GROUP BY status")
        return {r["status"]: int(r["cnt"]) for r in rows}

    # -------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------

    def create_agent(self, agent: Agent) -> Agent:
        self.engine.execute(
            """INSERT INTO agents (id, name, role, status, score, success_count, fail_count, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(agent.id),
                agent.name,
                agent.role.value,
                agent.status.value,
                agent.score,
                agent.success_count,
                agent.fail_count,
                agent.created_at,
            ],
        )
        return agent

    def get_agent(self, agent_id: uuid.UUID) -> Optional[Agent]:
        row = self.engine.fetch_one("SELECT * FROM agents WHERE id = %s", [str(agent_id)])
        if row is None:
            return None
        return _row_to_agent(row)

    def list_agents(
        self,
        role: Optional[AgentRole] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[Agent]:
        clauses = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role.value)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        query = "SELECT * FROM agents"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC"
        return [_row_to_agent(r) for r in self.engine.fetch_all(query, params)]

    def find_idle_agent(
        self,
        role: AgentRole,
        exclude: Optional[set[uuid.UUID]] = None,
    ) -> Optional[Agent]:
        excluded = [str(a) for a in (exclude or set())]
        row = self.engine.fetch_one(
            """SELECT * FROM agents
               WHERE role = %s AND status = 'IDLE' AND NOT (id::text = ANY(%s))
               ORDER BY last_active_at ASC NULLS FIRST, created_at ASC
               LIMIT 1""",
            [role.value, excluded],
        )
        if row is None:
            return None
        return _row_to_agent(row)

    def release_agent(
        self,
        agent_id: uuid.UUID,
        task_id: uuid.UUID,
        success: Optional[bool] = None,
    ) -> Optional[Agent]:
        success_inc = 1 if success is True else 0
        fail_inc = 1 if success is False else 0
        row = self.engine.fetch_one(
            """UPDATE agents
               SET status = CASE WHEN status = 'BUSY' THEN 'IDLE' ELSE status END,
                   current_task_id = NULL,
                   last_active_at = now(),
                   success_count = success_count + %s,
                   fail_count = fail_count + %s
               WHERE id = %s AND current_task_id = %s
               RETURNING *""",
            [success_inc, fail_inc, str(agent_id), str(task_id)],
        )
        if row is None:
            return None
        return _row_to_agent(row)

    def set_agent_status(self, agent_id: uuid.UUID, status: AgentStatus) -> Optional[Agent]:
        row = self.engine.fetch_one(
            "UPDATE agents SET status = %s WHERE id = %s RETURNING *",
            [status.value, str(agent_id)],
        )
        if row is None:
            return None
        return _row_to_agent(row)

    # -------------------------------------------------------------------
    # Audit trace
    # -------------------------------------------------------------------

    def save_trace_event(self, event: TraceEvent) -> TraceEvent:
        self.engine.execute(
            """INSERT INTO trace_events (id, sequence, task_id, agent_id, event, metadata, timestamp,
                                         event_hash, previous_hash, chain_hash)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(event.id),
                event.sequence,
                str(event.task_id) if event.task_id else None,
                event.agent_id,
                event.event,
                json.dumps(event.metadata, default=str),
                event.timestamp,
                event.event_hash,
                event.previous_hash,
                event.chain_hash,
            ],
        )
        return event

    def get_last_trace_event(self) -> Optional[TraceEvent]:
        row = self.engine.fetch_one("SELECT * FROM trace_events ORDER BY sequence DESC LIMIT 1")
        if row is None:
            return None
        return _row_to_trace_event(row)

    def list_trace_events(self, task_id: Optional[uuid.UUID] = None) -> list[TraceEvent]:
        if task_id is None:
            rows = self.engine.fetch_all("SELECT * FROM trace_events ORDER BY sequence ASC")
        else:
            rows = self.engine.fetch_all(
                "SELECT * FROM trace_events WHERE task_id = %s ORDER BY sequence ASC",
                [str(task_id)],
            )
        return [_row_to_trace_event(r) for r in rows]

    # -------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------

    def get_latest_block(self) -> Optional[LedgerBlock]:
        row = self.engine.fetch_one("SELECT * FROM ledger_blocks ORDER BY block_index DESC LIMIT 1")
        if row is None:
            return None
        block = _row_to_block(row)
        block.statements = self._statements_for(block.index)
        return block

    def save_block(self, block: LedgerBlock) -> LedgerBlock:
        self.engine.execute(
            """INSERT INTO ledger_blocks (block_index, id, previous_hash, hash, nonce, sealed, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (block_index) DO UPDATE
               SET hash = EXCLUDED.hash, nonce = EXCLUDED.nonce, sealed = EXCLUDED.sealed""",
            [
                block.index,
                str(block.id),
                block.previous_hash,
                block.hash,
                block.nonce,
                block.sealed,
                block.created_at,
            ],
        )
        return block

    def add_statement(self, statement: VerifiedStatement) -> VerifiedStatement:
        self.engine.execute(
            """INSERT INTO verified_statements
               (id, block_index, position, agent_id, task_id, content_type, content, content_hash,
                proof_hash, syntax_valid, sandbox_valid, api_valid, entropy_valid, safety_valid,
                critic_valid, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(statement.id),
                statement.block_index,
                statement.position,
                statement.agent_id,
                statement.task_id,
                statement.content_type.value,
                statement.content,
                statement.content_hash,
                statement.proof_hash,
                statement.syntax_valid,
                statement.sandbox_valid,
                statement.api_valid,
                statement.entropy_valid,
                statement.safety_valid,
                statement.critic_valid,
                statement.created_at,
            ],
        )
        return statement

    def list_blocks(self) -> list[LedgerBlock]:
        blocks = [
            _row_to_block(r)
            for r in self.engine.fetch_all("SELECT * FROM ledger_blocks ORDER BY block_index ASC")
        ]
        by_index = {b.index: b for b in blocks}
        rows = self.engine.fetch_all(
            "SELECT * FROM verified_statements ORDER BY block_index ASC, position ASC"
        )
        for row in rows:
            block = by_index.get(row["block_index"])
            if block is not None:
                block.statements.append(_row_to_statement(row))
        return blocks

    def save_rejection(self, rejection: RejectedVerification) -> RejectedVerification:
        self.engine.execute(
            """INSERT INTO rejected_verifications
               (id, agent_id, task_id, output_hash, failure_reason, message, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)""",
            [
                str(rejection.id),
                rejection.agent_id,
                rejection.task_id,
                rejection.output_hash,
                rejection.failure_reason.value,
                rejection.message,
                rejection.created_at,
            ],
        )
        return rejection

    def ledger_counts(self) -> dict[str, int]:
        row = self.engine.fetch_one(
            """SELECT
                 (SELECT COUNT(*) FROM ledger_blocks) AS blocks,
                 (SELECT COUNT(*) FROM ledger_blocks WHERE sealed) AS sealed_blocks,
                 (SELECT COUNT(*) FROM verified_statements) AS statements,
                 (SELECT COUNT(*) FROM rejected_verifications) AS rejections"""
        )
        if row is None:
            return {"blocks": 0, "sealed_blocks": 0, "statements": 0, "rejections": 0}
        return {key: int(value) for key, value in row.items()}

    def _statements_for(self, block_index: int) -> list[VerifiedStatement]:
        rows = self.engine.fetch_all(
            "SELECT * FROM verified_statements WHERE block_index = %s ORDER BY position ASC",
            [block_index],
        )
        return [_row_to_statement(r) for r in rows]

    def close(self) -> None:
        self.engine.close()


# ---------------------------------------------------------------------------
# Row -> model helpers
# ---------------------------------------------------------------------------

def _opt_uuid(value: Any) -> Optional[uuid.UUID]:
    return uuid.UUID(str(value)) if value else None


def _json_field(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_task(row: dict) -> Task:
    return Task(
        id=uuid.UUID(str(row["id"])),
        title=row["title"],
        description=row.get("description") or "",
        status=TaskStatus(row["status"]),
        required_role=AgentRole(row["required_role"]),
        complexity_score=row.get("complexity_score"),
        retry_count=row.get("retry_count", 0),
        is_deadlocked=row.get("is_deadlocked", False),
        owner_agent_id=_opt_uuid(row.get("owner_agent_id")),
        assigned_to_agent_id=_opt_uuid(row.get("assigned_to_agent_id")),
        trace_id=row.get("trace_id"),
        context_packet=_json_field(row.get("context_packet")) or {},
        output_artifact=row.get("output_artifact"),
        result=_json_field(row.get("result")),
        review_feedback=_json_field(row.get("review_feedback")),
        blocked_reason=row.get("blocked_reason"),
        error_message=row.get("error_message"),
        created_at=row.get("created_at", datetime.now(UTC)),
        updated_at=row.get("updated_at", datetime.now(UTC)),
        completed_at=row.get("completed_at"),
    )


def _row_to_agent(row: dict) -> Agent:
    return Agent(
        id=uuid.UUID(str(row["id"])),
        name=row["name"],
        role=AgentRole(row["role"]),
        status=AgentStatus(row["status"]),
        current_task_id=_opt_uuid(row.get("current_task_id")),
        score=row.get("score", 100.0),
        success_count=row.get("success_count", 0),
        fail_count=row.get("fail_count", 0),
        created_at=row.get("created_at", datetime.now(UTC)),
        last_active_at=row.get("last_active_at"),
    )


def _row_to_trace_event(row: dict) -> TraceEvent:
    return TraceEvent(
        id=uuid.UUID(str(row["id"])),
        sequence=row["sequence"],
        task_id=_opt_uuid(row.get("task_id")),
        agent_id=row.get("agent_id"),
        event=row["event"],
        metadata=_json_field(row.get("metadata")) or {},
        timestamp=row["timestamp"],
        event_hash=row["event_hash"],
        previous_hash=row["previous_hash"],
        chain_hash=row["chain_hash"],
    )


def _row_to_block(row: dict) -> LedgerBlock:
    return LedgerBlock(
        id=uuid.UUID(str(row["id"])),
        index=row["block_index"],
        previous_hash=row["previous_hash"],
        hash=row["hash"],
        nonce=row.get("nonce", 0),
        sealed=row.get("sealed", False),
        created_at=row.get("created_at", datetime.now(UTC)),
    )


def _row_to_statement(row: dict) -> VerifiedStatement:
    return VerifiedStatement(
        id=uuid.UUID(str(row["id"])),
        block_index=row["block_index"],
        position=row["position"],
        agent_id=row["agent_id"],
        task_id=row.get("task_id"),
        content_type=ContentType(row.get("content_type", "CODE")),
        content=row["content"],
        content_hash=row["content_hash"],
        proof_hash=row["proof_hash"],
        syntax_valid=row["syntax_valid"],
        sandbox_valid=row["sandbox_valid"],
        api_valid=row["api_valid"],
        entropy_valid=row["entropy_valid"],
        safety_valid=row["safety_valid"],
        critic_valid=row["critic_valid"],
        created_at=row.get("created_at", datetime.now(UTC)),
    )

