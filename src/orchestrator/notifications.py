"""Status notifications for task and worker transitions.

Every status change is fanned out to in-process subscribers and, when
configured, appended to a JSONL file. Delivery is best effort: a failing
subscriber is logged and never affects the transition that triggered it.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from src.core.models import StatusEvent

logger = logging.getLogger("foundry.orchestrator.notifications")

Subscriber = Callable[[StatusEvent], None]


class StatusNotifier:
    """Fan-out channel for StatusEvents."""

    def __init__(self, jsonl_path: Optional[Path] = None):
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def emit(self, entity_type: str, entity_id: Any, new_state: Any) -> StatusEvent:
        state = getattr(new_state, "value", new_state)
        event = StatusEvent(entity_type=entity_type, entity_id=str(entity_id), new_state=str(state))

        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:  # subscriber code is outside our control
                logger.warning("Status subscriber %r failed: %s", callback, e)

        self._write(event)
        return event

    def task_changed(self, task_id: Any, status: Any) -> StatusEvent:
        return self.emit("task", task_id, status)

    def agent_changed(self, agent_id: Any, status: Any) -> StatusEvent:
        return self.emit("agent", agent_id, status)

    def _write(self, event: StatusEvent) -> None:
        if self.jsonl_path is None:
            return
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event.model_dump(mode="json"), ensure_ascii=True) + "\n")
        except OSError as e:
            logger.warning("Could not write status event to %s: %s", self.jsonl_path, e)
