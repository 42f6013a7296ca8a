"""Proof ledger: append-only, hash-chained record of verified artifacts.

Content only reaches the ledger through ``verify_and_store``, which runs
the verification gate first and records a rejection instead when any check
fails. Appends are serialized by a lock (single writer). A block is sealed
by a bounded proof-of-work once it holds ``block_size`` statements, and a
new block chained to it is opened straight away.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from src.core.config import LedgerConfig
from src.core.exceptions import LedgerError
from src.core.models import (
    CHECK_ORDER,
    ChainIntegrityReport,
    CheckResult,
    ContentType,
    FailureReason,
    LedgerBlock,
    LedgerStats,
    RejectedVerification,
    StoreResult,
    VerificationResult,
    VerifiedStatement,
)
from src.db.base import RepositoryBase
from src.ledger.blocks import GENESIS_HASH, calculate_block_hash, mine_block
from src.orchestrator import audit as trace_events
from src.orchestrator.audit import AuditTrail
from src.verification.hashing import compute_proof_hash, sha256_hex
from src.verification.verifier import ArtifactVerifier

logger = logging.getLogger("foundry.ledger")

FAILURE_REASONS = {
    "syntax": FailureReason.SYNTAX_ERROR,
    "sandbox": FailureReason.SANDBOX_FAIL,
    "api": FailureReason.API_HALLUCINATION,
    "entropy": FailureReason.ENTROPY_VIOLATION,
    "safety": FailureReason.SAFETY_VIOLATION,
    "critic": FailureReason.CRITIC_REJECTED,
}


class ProofLedger:
    """Stores verified artifacts in hash-linked blocks."""

    def __init__(
        self,
        repository: RepositoryBase,
        verifier: ArtifactVerifier,
        config: Optional[LedgerConfig] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.repository = repository
        self.verifier = verifier
        self.config = config or LedgerConfig()
        self.audit = audit
        self._lock = threading.Lock()

    # -------------------------------------------------------------------
    # Verified append
    # -------------------------------------------------------------------

    def verify_and_store(
        self,
        agent_id: str,
        content: str,
        content_type: ContentType = ContentType.CODE,
        context: Optional[dict[str, Any]] = None,
    ) -> StoreResult:
        """Verify ``content`` and append it when every check passes.

        ``context`` may carry task_id, input_context, language and role_baseline.
        """
        context = context or {}
        task_id = context.get("task_id")
        task_id = str(task_id) if task_id is not None else None

        if content_type == ContentType.CODE:
            verification = self.verifier.verify(
                agent_id=agent_id,
                task_id=task_id,
                input_prompt=context.get("input_context", ""),
                candidate=content,
                language=context.get("language", "javascript"),
                role_baseline=context.get("role_baseline"),
            )
        else:
            verification = _verify_document(context.get("input_context", ""), content, content_type)

        if not verification.passed:
            self._record_rejection(agent_id, task_id, verification)
            return StoreResult(verified=False, verification=verification)

        statement = VerifiedStatement(
            agent_id=agent_id,
            task_id=task_id,
            content_type=content_type,
            content=content,
            content_hash=sha256_hex(content),
            proof_hash=verification.proof_hash,
            **{f"{name}_valid": verification.checks[name].passed for name in CHECK_ORDER},
        )
        block, stored = self.add_statement(statement)
        return StoreResult(verified=True, verification=verification, block=block, statement=stored)

    def add_statement(self, statement: VerifiedStatement) -> tuple[LedgerBlock, VerifiedStatement]:
        """Append to the open block, sealing it when full. Single writer."""
        with self._lock:
            block = self._open_block()
            statement = statement.model_copy(
                update={"block_index": block.index, "position": len(block.statements)}
            )
            stored = self.repository.add_statement(statement)
            block.statements.append(stored)
            block.hash = calculate_block_hash(block.index, block.previous_hash, _content_hashes(block), 0)
            block.nonce = 0
            self.repository.save_block(block)

            if len(block.statements) >= self.config.block_size:
                block = self._seal(block)

        logger.debug("Statement %s appended to block %d", stored.id, stored.block_index)
        self._trace(stored.task_id, stored.agent_id, trace_events.LEDGER_APPEND, {
            "block_index": stored.block_index,
            "position": stored.position,
            "content_hash": stored.content_hash,
            "proof_hash": stored.proof_hash,
        })
        return block, stored

    def _open_block(self) -> LedgerBlock:
        latest = self.repository.get_latest_block()
        if latest is None:
            logger.info("Creating genesis block")
            return self._new_block(0, GENESIS_HASH)
        if latest.sealed:
            return self._new_block(latest.index + 1, latest.hash)
        return latest

    def _new_block(self, index: int, previous_hash: str) -> LedgerBlock:
        block = LedgerBlock(
            index=index,
            previous_hash=previous_hash,
            hash=calculate_block_hash(index, previous_hash, [], 0),
        )
        return self.repository.save_block(block)

    def _seal(self, block: LedgerBlock) -> LedgerBlock:
        block_hash, nonce, solved = mine_block(
            block.index,
            block.previous_hash,
            _content_hashes(block),
            self.config.difficulty,
            self.config.max_pow_iterations,
        )
        if not solved:
            logger.warning(
                "Proof-of-work cap (%d) hit sealing block %d; sealing with nonce %d",
                self.config.max_pow_iterations, block.index, nonce,
            )
        block.hash = block_hash
        block.nonce = nonce
        block.sealed = True
        sealed = self.repository.save_block(block)
        sealed.statements = block.statements
        self._new_block(block.index + 1, block_hash)
        logger.info("Sealed block %d (nonce=%d, hash=%s...)", block.index, nonce, block_hash[:12])
        self._trace(None, None, trace_events.BLOCK_SEALED, {
            "block_index": block.index,
            "hash": block_hash,
            "nonce": nonce,
            "statements": len(block.statements),
        })
        return sealed

    def _record_rejection(self, agent_id: str, task_id: Optional[str], verification: VerificationResult) -> None:
        name, message = verification.first_failure
        rejection = RejectedVerification(
            agent_id=agent_id,
            task_id=task_id,
            output_hash=verification.output_hash,
            failure_reason=FAILURE_REASONS[name],
            message=message,
        )
        self.repository.save_rejection(rejection)
        self._trace(task_id, agent_id, trace_events.LEDGER_REJECTED, {
            "failure_reason": rejection.failure_reason.value,
            "message": message,
            "output_hash": verification.output_hash,
        })

    # -------------------------------------------------------------------
    # Integrity and statistics
    # -------------------------------------------------------------------

    def verify_chain_integrity(self) -> ChainIntegrityReport:
        """Recompute every block from its stored fields and content.

        Statement hashes are re-derived from the stored content, so editing a
        statement after the fact invalidates its block. Failures are logged
        at ERROR for operators; they never block appends.
        """
        blocks = self.repository.list_blocks()
        report = ChainIntegrityReport(valid=True, blocks_checked=len(blocks))
        previous_hash = GENESIS_HASH

        for expected_index, block in enumerate(blocks):
            reason = self._block_problem(block, expected_index, previous_hash)
            if reason:
                report.invalid_blocks.append(block.index)
                report.reasons[block.index] = reason
            previous_hash = block.hash

        if report.invalid_blocks:
            report.valid = False
            report.first_invalid_index = report.invalid_blocks[0]
            logger.error(
                "Ledger integrity check failed: invalid blocks %s (first: %d, %s)",
                report.invalid_blocks, report.first_invalid_index,
                report.reasons[report.first_invalid_index],
            )
        return report

    def _block_problem(self, block: LedgerBlock, expected_index: int, previous_hash: str) -> str:
        if block.index != expected_index:
            return f"expected index {expected_index}, found {block.index}"
        if block.previous_hash != previous_hash:
            return "previous hash does not match the prior block"
        for statement in block.statements:
            if sha256_hex(statement.content) != statement.content_hash:
                return f"statement {statement.position} content does not match its hash"
        recomputed = calculate_block_hash(block.index, block.previous_hash, _content_hashes(block), block.nonce)
        if recomputed != block.hash:
            return "stored hash does not match recomputed hash"
        return ""

    def get_stats(self) -> LedgerStats:
        counts = self.repository.ledger_counts()
        attempts = counts["statements"] + counts["rejections"]
        return LedgerStats(
            total_blocks=counts["blocks"],
            sealed_blocks=counts["sealed_blocks"],
            total_statements=counts["statements"],
            total_rejections=counts["rejections"],
            rejection_rate=round(counts["rejections"] / attempts, 4) if attempts else 0.0,
        )

    def get_block(self, index: int) -> LedgerBlock:
        for block in self.repository.list_blocks():
            if block.index == index:
                return block
        raise LedgerError(f"No ledger block with index {index}")

    def _trace(self, task_id: Optional[str], agent_id: Optional[str], event: str, metadata: dict) -> None:
        if self.audit is None:
            return
        self.audit.record(_as_uuid(task_id), agent_id, event, metadata)


def _content_hashes(block: LedgerBlock) -> list[str]:
    return [s.content_hash for s in sorted(block.statements, key=lambda s: s.position)]


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _verify_document(request: str, content: str, content_type: ContentType) -> VerificationResult:
    """Gate for non-code statements: JSON must parse, text is accepted as-is."""
    checks = {name: CheckResult.skip(f"Not applicable to {content_type.value}") for name in CHECK_ORDER}
    if content_type == ContentType.JSON:
        try:
            json.loads(content)
            checks["syntax"] = CheckResult(passed=True)
        except json.JSONDecodeError as e:
            checks["syntax"] = CheckResult(passed=False, message=f"Syntax error: {e.msg} (line {e.lineno})")

    input_hash = sha256_hex(request or "")
    output_hash = sha256_hex(content)
    timestamp = datetime.now(UTC)
    outcomes = {name: checks[name].passed for name in CHECK_ORDER}
    return VerificationResult(
        passed=all(outcomes.values()),
        checks=checks,
        proof_hash=compute_proof_hash(input_hash, output_hash, outcomes, timestamp.isoformat()),
        input_hash=input_hash,
        output_hash=output_hash,
        timestamp=timestamp,
        metadata={"content_type": content_type.value},
    )
