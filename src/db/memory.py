"""In-process repository backed by dictionaries.

Used for tests, local demos and `database.backend: memory`. A single
re-entrant lock makes every method atomic, which is what the
compare-and-swap methods need. Records are copied on the way in and out so
callers can never mutate stored state by accident.
"""

from __future__ import annotations

import threading
import uuid
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Optional

from src.core.exceptions import DatabaseError
from src.core.models import (
    Agent,
    AgentRole,
    AgentStatus,
    LedgerBlock,
    RejectedVerification,
    Task,
    TaskStatus,
    TraceEvent,
    VerifiedStatement,
)
from src.db.base import MUTABLE_TASK_FIELDS, RepositoryBase


def _idle_sort_key(agent: Agent) -> tuple:
    # Never-active workers first, then least recently active.
    last = agent.last_active_at or datetime.min.replace(tzinfo=UTC)
    return (agent.last_active_at is not None, last, agent.created_at)


class InMemoryRepository(RepositoryBase):

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[uuid.UUID, Task] = {}
        self._agents: dict[uuid.UUID, Agent] = {}
        self._trace: list[TraceEvent] = []
        self._blocks: dict[int, LedgerBlock] = {}
        self._rejections: list[RejectedVerification] = []

    # -------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise DatabaseError(f"Task {task.id} already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task

    def get_task(self, task_id: uuid.UUID) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self, status: Optional[TaskStatus] = None, limit: Optional[int] = None) -> list[Task]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
            if status is not None:
                tasks = [t for t in tasks if t.status == status]
            if limit is not None:
                tasks = tasks[:limit]
            return [t.model_copy(deep=True) for t in tasks]

    def get_dispatchable_tasks(self, limit: int, max_retry_count: int) -> list[Task]:
        with self._lock:
            eligible = [
                t for t in self._tasks.values()
                if t.status == TaskStatus.QUEUED
                or (
                    t.status == TaskStatus.NEEDS_REVISION
                    and t.retry_count <= max_retry_count
                    and not t.is_deadlocked
                )
            ]
            eligible.sort(key=lambda t: t.created_at)
            return [t.model_copy(deep=True) for t in eligible[:limit]]

    def get_deadlock_candidates(self, retry_threshold: int) -> list[Task]:
        with self._lock:
            found = [
                t for t in self._tasks.values()
                if t.status in (TaskStatus.NEEDS_REVISION, TaskStatus.FAILED)
                and t.retry_count > retry_threshold
                and not t.is_deadlocked
            ]
            found.sort(key=lambda t: t.created_at)
            return [t.model_copy(deep=True) for t in found]

    def count_in_progress_for_role(self, role: AgentRole) -> int:
        with self._lock:
            count = 0
            for task in self._tasks.values():
                if task.status != TaskStatus.IN_PROGRESS or task.assigned_to_agent_id is None:
                    continue
                holder = self._agents.get(task.assigned_to_agent_id)
                if holder is not None and holder.role == role:
                    count += 1
            return count

    def assign_task(
        self,
        task_id: uuid.UUID,
        agent_id: uuid.UUID,
        expected_status: TaskStatus,
        trace_id: str,
    ) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            agent = self._agents.get(agent_id)
            if task is None or agent is None:
                return None
            if task.status != expected_status or agent.status != AgentStatus.IDLE:
                return None
            now = datetime.now(UTC)
            task.status = TaskStatus.ASSIGNED
            task.assigned_to_agent_id = agent_id
            if task.owner_agent_id is None:
                task.owner_agent_id = agent_id
            task.trace_id = trace_id
            task.updated_at = now
            agent.status = AgentStatus.BUSY
            agent.current_task_id = task_id
            agent.last_active_at = now
            return task.model_copy(deep=True)

    def transition_task(
        self,
        task_id: uuid.UUID,
        expected_status: TaskStatus,
        changes: dict[str, Any],
    ) -> Optional[Task]:
        unknown = set(changes) - MUTABLE_TASK_FIELDS
        if unknown:
            raise DatabaseError(f"Cannot update task fields: {sorted(unknown)}")
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != expected_status:
                return None
            for key, value in changes.items():
                setattr(task, key, value)
            task.updated_at = datetime.now(UTC)
            return task.model_copy(deep=True)

    def get_task_status_summary(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(t.status.value for t in self._tasks.values()))

    # -------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------

    def create_agent(self, agent: Agent) -> Agent:
        with self._lock:
            if agent.id in self._agents:
                raise DatabaseError(f"Agent {agent.id} already exists")
            self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    def get_agent(self, agent_id: uuid.UUID) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def list_agents(
        self,
        role: Optional[AgentRole] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[Agent]:
        with self._lock:
            agents = sorted(self._agents.values(), key=lambda a: a.created_at)
            if role is not None:
                agents = [a for a in agents if a.role == role]
            if status is not None:
                agents = [a for a in agents if a.status == status]
            return [a.model_copy(deep=True) for a in agents]

    def find_idle_agent(
        self,
        role: AgentRole,
        exclude: Optional[set[uuid.UUID]] = None,
    ) -> Optional[Agent]:
        exclude = exclude or set()
        with self._lock:
            idle = [
                a for a in self._agents.values()
                if a.role == role and a.status == AgentStatus.IDLE and a.id not in exclude
            ]
            if not idle:
                return None
            return min(idle, key=_idle_sort_key).model_copy(deep=True)

    def release_agent(
        self,
        agent_id: uuid.UUID,
        task_id: uuid.UUID,
        success: Optional[bool] = None,
    ) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or agent.current_task_id != task_id:
                return None
            if agent.status == AgentStatus.BUSY:
                agent.status = AgentStatus.IDLE
            agent.current_task_id = None
            agent.last_active_at = datetime.now(UTC)
            if success is True:
                agent.success_count += 1
            elif success is False:
                agent.fail_count += 1
            return agent.model_copy(deep=True)

    def set_agent_status(self, agent_id: uuid.UUID, status: AgentStatus) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return None
            agent.status = status
            return agent.model_copy(deep=True)

    # -------------------------------------------------------------------
    # Audit trace
    # -------------------------------------------------------------------

    def save_trace_event(self, event: TraceEvent) -> TraceEvent:
        with self._lock:
            self._trace.append(event.model_copy(deep=True))
        return event

    def get_last_trace_event(self) -> Optional[TraceEvent]:
        with self._lock:
            return self._trace[-1].model_copy(deep=True) if self._trace else None

    def list_trace_events(self, task_id: Optional[uuid.UUID] = None) -> list[TraceEvent]:
        with self._lock:
            events = sorted(self._trace, key=lambda e: e.sequence)
            if task_id is not None:
                events = [e for e in events if e.task_id == task_id]
            return [e.model_copy(deep=True) for e in events]

    # -------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------

    def get_latest_block(self) -> Optional[LedgerBlock]:
        with self._lock:
            if not self._blocks:
                return None
            return self._blocks[max(self._blocks)].model_copy(deep=True)

    def save_block(self, block: LedgerBlock) -> LedgerBlock:
        with self._lock:
            existing = self._blocks.get(block.index)
            stored = block.model_copy(deep=True)
            # Statements are appended through add_statement only.
            stored.statements = existing.statements if existing else []
            self._blocks[block.index] = stored
        return block

    def add_statement(self, statement: VerifiedStatement) -> VerifiedStatement:
        with self._lock:
            block = self._blocks.get(statement.block_index)
            if block is None:
                raise DatabaseError(f"Block {statement.block_index} does not exist")
            block.statements.append(statement.model_copy(deep=True))
        return statement

    def list_blocks(self) -> list[LedgerBlock]:
        with self._lock:
            return [self._blocks[i].model_copy(deep=True) for i in sorted(self._blocks)]

    def save_rejection(self, rejection: RejectedVerification) -> RejectedVerification:
        with self._lock:
            self._rejections.append(rejection.model_copy(deep=True))
        return rejection

    def ledger_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "blocks": len(self._blocks),
                "sealed_blocks": sum(1 for b in self._blocks.values() if b.sealed),
                "statements": sum(len(b.statements) for b in self._blocks.values()),
                "rejections": len(self._rejections),
            }
