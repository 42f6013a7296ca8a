"""Task state machine for Agent Foundry.

Manages legal status transitions and enforces the state graph:
QUEUED → ASSIGNED → IN_PROGRESS → IN_REVIEW → COMPLETED, with revision,
failure, mediation (WAR_ROOM), test and QA states around it. Every write is
a compare-and-swap on the status the caller last saw.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from src.core.exceptions import AssignmentConflictError, InvalidTransitionError
from src.core.models import Task, TaskStatus
from src.db.base import RepositoryBase
from src.orchestrator.notifications import StatusNotifier

logger = logging.getLogger("foundry.orchestrator.task_router")

# Legal state transitions: each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.QUEUED: {TaskStatus.ASSIGNED, TaskStatus.BLOCKED},
    TaskStatus.ASSIGNED: {TaskStatus.IN_PROGRESS, TaskStatus.QUEUED, TaskStatus.BLOCKED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_REVIEW,
        TaskStatus.NEEDS_REVISION,
        TaskStatus.FAILED,
        TaskStatus.BLOCKED,
    },
    TaskStatus.IN_REVIEW: {
        TaskStatus.COMPLETED,
        TaskStatus.NEEDS_REVISION,
        TaskStatus.FAILED,
        TaskStatus.PENDING_TESTS,
        TaskStatus.IN_QA,
    },
    TaskStatus.PENDING_TESTS: {TaskStatus.IN_QA, TaskStatus.NEEDS_REVISION},
    TaskStatus.NEEDS_REVISION: {TaskStatus.ASSIGNED, TaskStatus.WAR_ROOM},
    TaskStatus.FAILED: {TaskStatus.QUEUED, TaskStatus.WAR_ROOM},
    TaskStatus.WAR_ROOM: {TaskStatus.IN_QA},
    TaskStatus.IN_QA: {TaskStatus.COMPLETED, TaskStatus.NEEDS_REVISION, TaskStatus.FAILED},
    TaskStatus.BLOCKED: {TaskStatus.QUEUED},
    TaskStatus.COMPLETED: set(),  # Terminal
}


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Check if a transition is legal."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


class TaskRouter:
    """Validates, persists and announces task status changes."""

    def __init__(self, repository: RepositoryBase, notifier: Optional[StatusNotifier] = None):
        self.repository = repository
        self.notifier = notifier

    def transition(
        self,
        task: Task,
        new_status: TaskStatus,
        changes: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Task:
        """Move a task to a new status.

        Args:
            task: The task as the caller last read it.
            new_status: Target status.
            changes: Extra column updates written in the same step.
            reason: Optional reason for the transition (logged).

        Returns:
            The updated Task as stored.

        Raises:
            InvalidTransitionError: The edge is not in the state graph.
            AssignmentConflictError: The stored status is no longer ``task.status``.
        """
        if not can_transition(task.status, new_status):
            raise InvalidTransitionError(str(task.id), task.status.value, new_status.value)

        updated = self.repository.transition_task(
            task.id, task.status, {**(changes or {}), "status": new_status},
        )
        if updated is None:
            raise AssignmentConflictError(
                f"Task {task.id} left {task.status.value} before it could move to {new_status.value}"
            )

        log_msg = f"Task '{task.title}': {task.status.value} → {new_status.value}"
        if reason:
            log_msg += f" ({reason})"
        logger.info(log_msg)

        if self.notifier is not None:
            self.notifier.task_changed(updated.id, updated.status)
        return updated

    def try_transition(
        self,
        task: Task,
        new_status: TaskStatus,
        changes: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Optional[Task]:
        """Like transition() but returns None when another writer got there first."""
        try:
            return self.transition(task, new_status, changes=changes, reason=reason)
        except AssignmentConflictError as e:
            logger.info("Skipped transition: %s", e)
            return None
