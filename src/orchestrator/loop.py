"""Main orchestration loop for Agent Foundry.

Every interval the loop runs one dispatch cycle, hands each new assignment
to a worker thread (generation, verification and ledger append happen
there), and gives the War Room mediator one pass over deadlocked tasks.
Routing itself stays on the loop thread; overlapping cycles are skipped by
the dispatcher's own lock.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from src.agents.war_room import WarRoomMediator
from src.agents.worker import CodeWorker
from src.core.config import DispatcherConfig
from src.core.models import AgentResult, DispatchReport, MediationOutcome
from src.orchestrator.dispatcher import Dispatcher

logger = logging.getLogger("foundry.orchestrator.loop")


class OrchestratorLoop:
    """Interval loop: dispatch → worker pool → War Room.

    Injected dependencies:
        dispatcher: Assignment engine and state owner.
        worker: Agent that turns an ASSIGNED task into a verified artifact.
        mediator: Optional War Room mediator; deadlocks wait when absent.
        config: Dispatcher settings (interval, worker thread count).
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        worker: CodeWorker,
        mediator: Optional[WarRoomMediator] = None,
        config: Optional[DispatcherConfig] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.dispatcher = dispatcher
        self.worker = worker
        self.mediator = mediator
        self.config = config or DispatcherConfig()
        self._progress_callback = progress_callback
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.worker_threads),
            thread_name_prefix="foundry-worker",
        )
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._stop = threading.Event()
        self._last_run_summary: dict[str, Any] = {"iterations": 0, "stop_reason": "not_started"}

    def _notify(self, message: str) -> None:
        if self._progress_callback:
            self._progress_callback(message)

    def run_once(self) -> tuple[DispatchReport, list[MediationOutcome]]:
        """One iteration: dispatch, submit workers, mediate."""
        report = self.dispatcher.run_cycle()
        if report.skipped:
            self._notify("[SKIP] Previous dispatch cycle still running.")
        for assignment in report.assignments:
            task = self.dispatcher.repository.get_task(assignment.task_id)
            if task is None:
                logger.warning("Assigned task %s vanished before worker start", assignment.task_id)
                continue
            self._submit(task)
            self._notify(f"  Assigned '{task.title}' → {assignment.effective_role.value} ({assignment.reason})")

        for task_id in report.deadlocked_tasks:
            self._notify(f"  [WAR ROOM] Task {task_id} escalated after repeated failures")

        outcomes: list[MediationOutcome] = []
        if self.mediator is not None:
            outcomes = self.mediator.run_once()
            for outcome in outcomes:
                label = "RESOLVED" if outcome.resolved else "UNRESOLVED"
                self._notify(f"  [{label}] {outcome.task_id}: {outcome.reason}")
        return report, outcomes

    def _submit(self, task) -> Future:
        future = self._executor.submit(self.worker.run, task)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._on_worker_done)
        return future

    def _on_worker_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Worker thread crashed: %s", error)
            return
        result: AgentResult = future.result()
        if result.status != "success":
            logger.info("Worker finished task %s: %s (%s)",
                        result.data.get("task_id"), result.status, result.error)

    @property
    def in_flight(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def wait_for_workers(self, timeout: Optional[float] = None) -> None:
        """Block until every submitted worker run has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = list(self._pending)
            if not pending:
                return
            for future in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                future.exception(timeout=remaining)

    def run_loop(self, max_iterations: Optional[int] = None) -> int:
        """Run iterations every ``interval_seconds`` until stopped.

        Args:
            max_iterations: Optional safety limit; None runs until stop().

        Returns:
            Number of iterations run.
        """
        iterations = 0
        stop_reason = "stopped"
        self._stop.clear()
        logger.info("Orchestrator loop started (interval=%.1fs, threads=%d)",
                    self.config.interval_seconds, self.config.worker_threads)
        while not self._stop.is_set():
            if max_iterations is not None and iterations >= max_iterations:
                stop_reason = "max_iterations_reached"
                break
            report, outcomes = self.run_once()
            iterations += 1
            logger.info(
                "Iteration %d: %d assigned, %d blocked, %d deadlocked, %d mediated",
                iterations, len(report.assignments), len(report.blocked_tasks),
                len(report.deadlocked_tasks), len(outcomes),
            )
            if self._stop.wait(self.config.interval_seconds):
                break

        self._last_run_summary = {"iterations": iterations, "stop_reason": stop_reason}
        return iterations

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self, wait: bool = True) -> None:
        self.stop()
        self._executor.shutdown(wait=wait)

    def get_last_run_summary(self) -> dict[str, Any]:
        return dict(self._last_run_summary)
