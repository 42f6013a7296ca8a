"""Dispatcher: assigns queued work to idle workers and escalates stuck work.

One ``run_cycle`` call:
1. Pulls a bounded, creation-ordered batch of dispatchable tasks.
2. Blocks tasks whose required context is missing.
3. Routes each task by complexity (fast-track / escalate), prefers the
   sticky owner for revisions, and applies backpressure to saturated
   high-tier roles.
4. Assigns through the repository's compare-and-swap, so overlapping
   cycles can never double-assign.
5. Moves tasks whose retry budget is exhausted to WAR_ROOM.

The worker result path (start, submit, review, fail) also lives here so
retry counters are only ever written by the dispatcher and the mediator.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from src.core.config import DispatcherConfig
from src.core.exceptions import AssignmentConflictError, RecordNotFoundError
from src.core.models import (
    HIGH_TIER_ROLES,
    REVISION_STATUSES,
    Agent,
    AgentRole,
    AgentStatus,
    Assignment,
    DispatchReport,
    Task,
    TaskStatus,
    VerificationResult,
)
from src.db.base import RepositoryBase
from src.orchestrator import audit as trace_events
from src.orchestrator.audit import AuditTrail
from src.orchestrator.notifications import StatusNotifier
from src.orchestrator.routing import apply_backpressure, route_by_complexity
from src.orchestrator.task_router import TaskRouter

logger = logging.getLogger("foundry.orchestrator.dispatcher")


class Dispatcher:
    """Routes tasks to workers and owns every retry-counter mutation."""

    def __init__(
        self,
        repository: RepositoryBase,
        config: Optional[DispatcherConfig] = None,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[StatusNotifier] = None,
    ):
        self.repository = repository
        self.config = config or DispatcherConfig()
        self.audit = audit
        self.notifier = notifier
        self.router = TaskRouter(repository, notifier)
        self._cycle_lock = threading.Lock()

    # -------------------------------------------------------------------
    # Dispatch cycle
    # -------------------------------------------------------------------

    def run_cycle(self) -> DispatchReport:
        """Run one dispatch cycle; returns immediately if one is in flight."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Dispatch cycle still running; skipping this tick")
            return DispatchReport(skipped=True)

        started = time.monotonic()
        try:
            report = DispatchReport()
            self._dispatch_batch(report)
            self.detect_deadlocks(report)
        finally:
            self._cycle_lock.release()

        report.duration_seconds = round(time.monotonic() - started, 4)
        if report.examined or report.deadlocked_tasks:
            logger.info(
                "Dispatch cycle: examined=%d assigned=%d skipped=%d blocked=%d deadlocked=%d",
                report.examined, len(report.assignments), len(report.skipped_tasks),
                len(report.blocked_tasks), len(report.deadlocked_tasks),
            )
        return report

    def _dispatch_batch(self, report: DispatchReport) -> None:
        tasks = self.repository.get_dispatchable_tasks(
            limit=self.config.batch_size,
            max_retry_count=self.config.deadlock_retry_threshold,
        )
        used_agents: set[uuid.UUID] = set()

        for task in tasks:
            report.examined += 1

            missing = missing_context(task)
            if missing and task.status == TaskStatus.QUEUED:
                self._block(task, missing, report)
                continue

            agent, effective_role, reason = self._resolve_assignee(task, used_agents)
            if agent is None:
                report.skipped_tasks[str(task.id)] = reason
                logger.debug("Task '%s' left %s: %s", task.title, task.status.value, reason)
                continue

            trace_id = str(uuid.uuid4())
            assigned = self.repository.assign_task(task.id, agent.id, task.status, trace_id)
            if assigned is None:
                report.skipped_tasks[str(task.id)] = "state changed before assignment"
                continue

            used_agents.add(agent.id)
            assignment = Assignment(
                task_id=task.id,
                agent_id=agent.id,
                required_role=task.required_role,
                effective_role=effective_role,
                reason=reason,
                trace_id=trace_id,
            )
            report.assignments.append(assignment)
            logger.info(
                "Assigned '%s' to %s (%s, required=%s, %s)",
                task.title, agent.name, effective_role.value, task.required_role.value, reason,
            )
            self._trace(task.id, agent.id, trace_events.TASK_ASSIGNED, {
                "required_role": task.required_role.value,
                "effective_role": effective_role.value,
                "reason": reason,
                "trace_id": trace_id,
                "previous_status": task.status.value,
            })
            self._notify_task(task.id, TaskStatus.ASSIGNED)
            self._notify_agent(agent.id, AgentStatus.BUSY)

    def _resolve_assignee(
        self,
        task: Task,
        used_agents: set[uuid.UUID],
    ) -> tuple[Optional[Agent], AgentRole, str]:
        effective, reason = route_by_complexity(
            task.required_role,
            task.complexity_score,
            self.config.fast_track_threshold,
            self.config.escalate_threshold,
        )

        if task.status in REVISION_STATUSES and task.owner_agent_id is not None:
            owner = self.repository.get_agent(task.owner_agent_id)
            if owner is not None and owner.status == AgentStatus.IDLE and owner.id not in used_agents:
                return owner, owner.role, "sticky owner"

        agent = self.repository.find_idle_agent(effective, exclude=used_agents)
        if agent is not None:
            return agent, effective, reason

        if effective in HIGH_TIER_ROLES:
            load = self.repository.count_in_progress_for_role(effective)
            downgraded = apply_backpressure(effective, load, self.config.backpressure_load_threshold)
            if downgraded is not None:
                agent = self.repository.find_idle_agent(downgraded, exclude=used_agents)
                if agent is not None:
                    return agent, downgraded, (
                        f"{reason}; backpressure: {effective.value} load {load} > "
                        f"{self.config.backpressure_load_threshold}"
                    )

        return None, effective, f"no idle {effective.value} worker"

    def _block(self, task: Task, missing: list[str], report: DispatchReport) -> None:
        reason = f"Missing required context: {', '.join(missing)}"
        updated = self.router.try_transition(task, TaskStatus.BLOCKED, {"blocked_reason": reason}, reason=reason)
        if updated is None:
            return
        report.blocked_tasks.append(str(task.id))
        self._trace(task.id, None, trace_events.TASK_BLOCKED, {"missing_context": missing})

    def detect_deadlocks(self, report: Optional[DispatchReport] = None) -> list[Task]:
        """Move every task past its retry budget to WAR_ROOM."""
        escalated = []
        for task in self.repository.get_deadlock_candidates(self.config.deadlock_retry_threshold):
            reason = (
                f"Retry budget exhausted after {task.retry_count} attempts; "
                "War Room mediation required."
            )
            updated = self.router.try_transition(
                task,
                TaskStatus.WAR_ROOM,
                {"is_deadlocked": True, "blocked_reason": reason},
                reason="deadlock",
            )
            if updated is None:
                continue
            logger.warning("Task '%s' deadlocked after %d retries; sent to War Room", task.title, task.retry_count)
            self._trace(task.id, task.owner_agent_id, trace_events.DEADLOCK_DETECTED, {
                "retry_count": task.retry_count,
                "previous_status": task.status.value,
                "blocked_reason": reason,
            })
            escalated.append(updated)
            if report is not None:
                report.deadlocked_tasks.append(str(task.id))
        return escalated

    # -------------------------------------------------------------------
    # Worker result path
    # -------------------------------------------------------------------

    def start_task(self, task_id: uuid.UUID, agent_id: uuid.UUID) -> Task:
        task = self._held_task(task_id, agent_id)
        return self.router.transition(task, TaskStatus.IN_PROGRESS, reason="worker started")

    def submit_result(
        self,
        task_id: uuid.UUID,
        agent_id: uuid.UUID,
        artifact: str,
        verification: VerificationResult,
    ) -> Task:
        """Record a worker's artifact, then release the worker.

        A verified artifact moves the task to IN_REVIEW. A rejected one moves
        it to NEEDS_REVISION with the failing checks as review feedback.
        """
        task = self._held_task(task_id, agent_id)
        if verification.passed:
            updated = self.router.transition(task, TaskStatus.IN_REVIEW, {
                "output_artifact": artifact,
                "result": {
                    "proof_hash": verification.proof_hash,
                    "verified_at": verification.timestamp.isoformat(),
                    "checks": {name: check.passed for name, check in verification.checks.items()},
                },
                "assigned_to_agent_id": None,
                "error_message": None,
            }, reason="verification passed")
        else:
            name, message = verification.first_failure
            updated = self.router.transition(task, TaskStatus.NEEDS_REVISION, {
                "output_artifact": artifact,
                "retry_count": task.retry_count + 1,
                "review_feedback": {
                    "source": "verification",
                    "failed_checks": verification.failed_checks,
                    "messages": {
                        n: verification.checks[n].message for n in verification.failed_checks
                    },
                    "proof_hash": verification.proof_hash,
                },
                "error_message": f"{name}: {message}",
                "assigned_to_agent_id": None,
            }, reason=f"verification failed at {name}")

        self._release(agent_id, task_id, success=verification.passed)
        return updated

    def record_review(
        self,
        task_id: uuid.UUID,
        approved: bool,
        feedback: Optional[dict[str, Any]] = None,
    ) -> Task:
        """Close a review or QA step: COMPLETED, or back to NEEDS_REVISION."""
        task = self._load(task_id)
        if task.status not in (TaskStatus.IN_REVIEW, TaskStatus.IN_QA):
            raise AssignmentConflictError(f"Task {task_id} is {task.status.value}, not under review")
        if approved:
            return self.router.transition(
                task, TaskStatus.COMPLETED, {"completed_at": datetime.now(UTC)}, reason="approved",
            )
        return self.router.transition(task, TaskStatus.NEEDS_REVISION, {
            "retry_count": task.retry_count + 1,
            "review_feedback": {"source": "review", **(feedback or {})},
        }, reason="changes requested")

    def request_tests(self, task_id: uuid.UUID) -> Task:
        """Hold a reviewed task until generated test coverage arrives: IN_REVIEW → PENDING_TESTS."""
        task = self._load(task_id)
        if task.status != TaskStatus.IN_REVIEW:
            raise AssignmentConflictError(f"Task {task_id} is {task.status.value}, not under review")
        return self.router.transition(task, TaskStatus.PENDING_TESTS, reason="awaiting test coverage")

    def record_tests(
        self,
        task_id: uuid.UUID,
        passed: bool,
        report: Optional[dict[str, Any]] = None,
    ) -> Task:
        """Close the test step: IN_QA when the tests pass, else NEEDS_REVISION with a retry charged."""
        task = self._load(task_id)
        if task.status != TaskStatus.PENDING_TESTS:
            raise AssignmentConflictError(f"Task {task_id} is {task.status.value}, not awaiting tests")
        if passed:
            return self.router.transition(task, TaskStatus.IN_QA, {
                "result": {**(task.result or {}), "tests": {"passed": True, **(report or {})}},
            }, reason="tests passed")
        return self.router.transition(task, TaskStatus.NEEDS_REVISION, {
            "retry_count": task.retry_count + 1,
            "review_feedback": {"source": "tests", **(report or {})},
        }, reason="tests failed")

    def fail_task(self, task_id: uuid.UUID, agent_id: uuid.UUID, error: str) -> Task:
        """The worker could not produce an artifact at all.

        An IN_PROGRESS task moves to FAILED with a retry charged. A task that
        never started goes back to QUEUED without penalty.
        """
        task = self._held_task(task_id, agent_id)
        if task.status == TaskStatus.ASSIGNED:
            updated = self.router.transition(task, TaskStatus.QUEUED, {
                "assigned_to_agent_id": None,
                "error_message": error,
            }, reason="worker gave up before starting")
        else:
            updated = self.router.transition(task, TaskStatus.FAILED, {
                "retry_count": task.retry_count + 1,
                "assigned_to_agent_id": None,
                "error_message": error,
            }, reason="generation failed")
        self._release(agent_id, task_id, success=False)
        return updated

    def requeue_failed(self, task_id: uuid.UUID) -> Task:
        """Manual retry: FAILED → QUEUED."""
        task = self._load(task_id)
        return self.router.transition(task, TaskStatus.QUEUED, {"error_message": None}, reason="requeued")

    def unblock(self, task_id: uuid.UUID) -> Task:
        task = self._load(task_id)
        return self.router.transition(task, TaskStatus.QUEUED, {"blocked_reason": None}, reason="unblocked")

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _load(self, task_id: uuid.UUID) -> Task:
        task = self.repository.get_task(task_id)
        if task is None:
            raise RecordNotFoundError(f"Task {task_id} not found")
        return task

    def _held_task(self, task_id: uuid.UUID, agent_id: uuid.UUID) -> Task:
        task = self._load(task_id)
        if task.assigned_to_agent_id != agent_id:
            raise AssignmentConflictError(f"Task {task_id} is not held by worker {agent_id}")
        return task

    def _release(self, agent_id: uuid.UUID, task_id: uuid.UUID, success: bool) -> None:
        agent = self.repository.release_agent(agent_id, task_id, success=success)
        if agent is not None:
            self._notify_agent(agent.id, agent.status)

    def _trace(self, task_id: Optional[uuid.UUID], agent_id: Any, event: str, metadata: dict) -> None:
        if self.audit is not None:
            self.audit.record(task_id, agent_id, event, metadata)

    def _notify_task(self, task_id: uuid.UUID, status: TaskStatus) -> None:
        if self.notifier is not None:
            self.notifier.task_changed(task_id, status)

    def _notify_agent(self, agent_id: uuid.UUID, status: AgentStatus) -> None:
        if self.notifier is not None:
            self.notifier.agent_changed(agent_id, status)


def missing_context(task: Task) -> list[str]:
    """Keys listed in ``context_packet['required_context']`` with no value."""
    required = task.context_packet.get("required_context") or []
    if isinstance(required, str):
        required = [required]
    return [key for key in required if task.context_packet.get(key) in (None, "", [], {})]
