"""Abstract base agent for Agent Foundry.

Code workers and the War Room mediator share one lifecycle: start and finish
log lines, per-status counters, and conversion of unexpected exceptions into
a failure AgentResult. The loop hands one worker instance to every pool
thread, so the counters are only touched under a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Optional

from src.core.models import AgentResult


class BaseAgent(ABC):
    """Base class for all Foundry agents.

    Subclasses implement `process()` and receive their collaborators
    (repository, generation backend, verifier) via __init__ injection.
    """

    def __init__(self, name: str, role: str):
        """
        Args:
            name: Agent name used in logs (e.g., "WarRoomMediator").
            role: Role key for generation parameters (e.g., "ARCHITECT").
        """
        self.name = name
        self.role = role
        self.logger = logging.getLogger(f"foundry.agent.{name.lower()}")
        self._metrics_lock = threading.Lock()
        self._by_status: Counter[str] = Counter()
        self._errors = 0
        self._last_duration = 0.0
        self._total_duration = 0.0

    @abstractmethod
    def process(self, input_data: Any) -> AgentResult:
        """Do the agent's work for one input."""

    def run(self, input_data: Any) -> AgentResult:
        """Call process() with lifecycle logging and metrics.

        An exception escaping process() is logged with its traceback and
        returned as a failure result, so one bad task cannot kill a pool thread.
        """
        self.logger.info("[%s] Starting: %s", self.name, _summarize_input(input_data))
        start = time.monotonic()
        try:
            result = self.process(input_data)
        except Exception as e:
            duration = time.monotonic() - start
            self._record(duration, status=None)
            self.logger.error("[%s] Error after %.2fs: %s", self.name, duration, e, exc_info=True)
            return AgentResult(
                agent_name=self.name,
                status="failure",
                error=str(e),
                duration_seconds=duration,
            )

        duration = time.monotonic() - start
        result.duration_seconds = duration
        self._record(duration, status=result.status)
        self.logger.info("[%s] Complete: status=%s (%.2fs)", self.name, result.status, duration)
        return result

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of the agent's counters; safe to mutate."""
        with self._metrics_lock:
            processed = sum(self._by_status.values())
            runs = processed + self._errors
            return {
                "total_processed": processed,
                "total_errors": self._errors,
                "by_status": dict(self._by_status),
                "last_duration_seconds": self._last_duration,
                "mean_duration_seconds": self._total_duration / runs if runs else 0.0,
            }

    def _record(self, duration: float, status: Optional[str]) -> None:
        with self._metrics_lock:
            self._last_duration = duration
            self._total_duration += duration
            if status is None:
                self._errors += 1
            else:
                self._by_status[status] += 1


def _summarize_input(input_data: Any) -> str:
    """Short log-safe description of an agent input."""
    title = getattr(input_data, "title", None)
    if title is None:
        return type(input_data).__name__
    task_id = getattr(input_data, "id", None)
    return f"task={task_id} '{title}'" if task_id else f"'{title}'"
