"""Hash-chained audit trail.

Every assignment, deadlock transition and ledger operation is appended as a
TraceEvent. Each event's ``chain_hash`` covers its own digest and the
previous event's chain hash, so deleting or editing a past event breaks the
chain from that point on. Events are also mirrored to a JSONL file for
external tooling.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from src.core.models import TraceEvent
from src.db.base import RepositoryBase
from src.verification.hashing import canonical_json, sha256_hex

logger = logging.getLogger("foundry.orchestrator.audit")

CHAIN_ROOT = "0" * 64

# Event names
TASK_ASSIGNED = "TASK_ASSIGNED"
TASK_BLOCKED = "TASK_BLOCKED"
DEADLOCK_DETECTED = "DEADLOCK_DETECTED"
DEADLOCK_RESOLVED = "DEADLOCK_RESOLVED"
DEADLOCK_MEDIATION_FAILED = "DEADLOCK_MEDIATION_FAILED"
LEDGER_APPEND = "LEDGER_APPEND"
LEDGER_REJECTED = "LEDGER_REJECTED"
BLOCK_SEALED = "BLOCK_SEALED"


@dataclass
class TraceIntegrity:
    valid: bool
    events_checked: int
    first_invalid_sequence: Optional[int] = None
    reason: str = ""


def event_digest(event: TraceEvent) -> str:
    payload = {
        "task_id": str(event.task_id) if event.task_id else None,
        "agent_id": event.agent_id,
        "event": event.event,
        "metadata": event.metadata,
        "timestamp": event.timestamp.astimezone(UTC).isoformat(),
    }
    return sha256_hex(canonical_json(payload))


class AuditTrail:
    """Appends trace events and checks the chain."""

    def __init__(self, repository: RepositoryBase, jsonl_path: Optional[Path] = None):
        self.repository = repository
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None
        self._lock = threading.Lock()

    def record(
        self,
        task_id: Optional[uuid.UUID],
        agent_id: Optional[Any],
        event: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TraceEvent:
        # Round-trip through JSON so the hashed metadata equals what storage returns.
        clean_metadata = json.loads(canonical_json(metadata or {}))
        with self._lock:
            last = self.repository.get_last_trace_event()
            trace = TraceEvent(
                sequence=(last.sequence + 1) if last else 1,
                task_id=task_id,
                agent_id=str(agent_id) if agent_id is not None else None,
                event=event,
                metadata=clean_metadata,
                timestamp=datetime.now(UTC),
                previous_hash=last.chain_hash if last else CHAIN_ROOT,
            )
            trace.event_hash = event_digest(trace)
            trace.chain_hash = sha256_hex(trace.previous_hash + trace.event_hash)
            saved = self.repository.save_trace_event(trace)

        logger.debug("Trace %s task=%s agent=%s", event, task_id, trace.agent_id)
        self._mirror(saved)
        return saved

    def verify_integrity(self) -> TraceIntegrity:
        events = self.repository.list_trace_events()
        previous = CHAIN_ROOT
        for count, event in enumerate(events, start=1):
            if event.previous_hash != previous:
                return self._broken(count, event, "previous hash does not match the prior event")
            if event.event_hash != event_digest(event):
                return self._broken(count, event, "event content does not match its digest")
            if event.chain_hash != sha256_hex(event.previous_hash + event.event_hash):
                return self._broken(count, event, "chain hash mismatch")
            previous = event.chain_hash
        return TraceIntegrity(valid=True, events_checked=len(events))

    def _broken(self, checked: int, event: TraceEvent, reason: str) -> TraceIntegrity:
        logger.error("Audit trail integrity failure at sequence %d: %s", event.sequence, reason)
        return TraceIntegrity(
            valid=False,
            events_checked=checked,
            first_invalid_sequence=event.sequence,
            reason=reason,
        )

    def _mirror(self, event: TraceEvent) -> None:
        if self.jsonl_path is None:
            return
        record = {
            "timestamp": event.timestamp.isoformat(),
            "sequence": event.sequence,
            "task_id": str(event.task_id) if event.task_id else None,
            "agent_id": event.agent_id,
            "event": event.event,
            "metadata": event.metadata,
            "chain_hash": event.chain_hash,
        }
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=True) + "\n")
        except OSError as e:
            logger.warning("Could not mirror trace event to %s: %s", self.jsonl_path, e)
