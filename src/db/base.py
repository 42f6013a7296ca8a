"""Storage interface shared by the PostgreSQL and in-memory repositories.

Every method that guards the single-assignment invariant is a
compare-and-swap: it applies its change only when the stored record is still
in the state the caller expects and reports a conflict by returning None.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

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

# Columns a caller may change through transition_task().
MUTABLE_TASK_FIELDS = frozenset({
    "status",
    "retry_count",
    "is_deadlocked",
    "assigned_to_agent_id",
    "output_artifact",
    "result",
    "review_feedback",
    "blocked_reason",
    "error_message",
    "completed_at",
})


class RepositoryBase(ABC):
    """Typed data access used by the dispatcher, mediator and ledger."""

    # -------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------

    @abstractmethod
    def create_task(self, task: Task) -> Task: ...

    @abstractmethod
    def get_task(self, task_id: uuid.UUID) -> Optional[Task]: ...

    @abstractmethod
    def list_tasks(self, status: Optional[TaskStatus] = None, limit: Optional[int] = None) -> list[Task]:
        """List tasks oldest first, optionally filtered by status."""

    @abstractmethod
    def get_dispatchable_tasks(self, limit: int, max_retry_count: int) -> list[Task]:
        """QUEUED tasks plus revision tasks still inside their retry budget, oldest first."""

    @abstractmethod
    def get_deadlock_candidates(self, retry_threshold: int) -> list[Task]:
        """NEEDS_REVISION/FAILED tasks with retry_count above the threshold, not yet flagged."""

    @abstractmethod
    def count_in_progress_for_role(self, role: AgentRole) -> int:
        """Number of IN_PROGRESS tasks currently held by workers of ``role``."""

    @abstractmethod
    def assign_task(
        self,
        task_id: uuid.UUID,
        agent_id: uuid.UUID,
        expected_status: TaskStatus,
        trace_id: str,
    ) -> Optional[Task]:
        """Atomically assign a task to an idle worker.

        Succeeds only if the task is still in ``expected_status`` and the worker
        is still IDLE. Sets the task ASSIGNED, records the holder (and the owner
        when unset) and marks the worker BUSY on the task. Returns the updated
        task, or None when either side changed underneath the caller.
        """

    @abstractmethod
    def transition_task(
        self,
        task_id: uuid.UUID,
        expected_status: TaskStatus,
        changes: dict[str, Any],
    ) -> Optional[Task]:
        """Apply ``changes`` only if the task is still in ``expected_status``."""

    @abstractmethod
    def get_task_status_summary(self) -> dict[str, int]: ...

    # -------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------

    @abstractmethod
    def create_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    def get_agent(self, agent_id: uuid.UUID) -> Optional[Agent]: ...

    @abstractmethod
    def list_agents(
        self,
        role: Optional[AgentRole] = None,
        status: Optional[AgentStatus] = None,
    ) -> list[Agent]: ...

    @abstractmethod
    def find_idle_agent(
        self,
        role: AgentRole,
        exclude: Optional[set[uuid.UUID]] = None,
    ) -> Optional[Agent]:
        """Least recently active IDLE worker of ``role`` not in ``exclude``."""

    @abstractmethod
    def release_agent(
        self,
        agent_id: uuid.UUID,
        task_id: uuid.UUID,
        success: Optional[bool] = None,
    ) -> Optional[Agent]:
        """Return a BUSY worker to IDLE if it still holds ``task_id``.

        ``success`` bumps success_count/fail_count when given.
        """

    @abstractmethod
    def set_agent_status(self, agent_id: uuid.UUID, status: AgentStatus) -> Optional[Agent]: ...

    # -------------------------------------------------------------------
    # Audit trace
    # -------------------------------------------------------------------

    @abstractmethod
    def save_trace_event(self, event: TraceEvent) -> TraceEvent: ...

    @abstractmethod
    def get_last_trace_event(self) -> Optional[TraceEvent]: ...

    @abstractmethod
    def list_trace_events(self, task_id: Optional[uuid.UUID] = None) -> list[TraceEvent]:
        """Trace events in sequence order."""

    # -------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------

    @abstractmethod
    def get_latest_block(self) -> Optional[LedgerBlock]:
        """Highest-index block with its statements, or None for an empty ledger."""

    @abstractmethod
    def save_block(self, block: LedgerBlock) -> LedgerBlock:
        """Insert or update a block header (hash, nonce, sealed)."""

    @abstractmethod
    def add_statement(self, statement: VerifiedStatement) -> VerifiedStatement: ...

    @abstractmethod
    def list_blocks(self) -> list[LedgerBlock]:
        """Every block in index order with its statements in position order."""

    @abstractmethod
    def save_rejection(self, rejection: RejectedVerification) -> RejectedVerification: ...

    @abstractmethod
    def ledger_counts(self) -> dict[str, int]:
        """Counts keyed by blocks, sealed_blocks, statements and rejections."""

    def close(self) -> None:
        """Release any held resources."""
