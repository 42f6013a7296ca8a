"""Tests for src/ledger — hash-chained blocks, sealing, integrity and stats."""

import uuid

import pytest

from src.core.config import LedgerConfig
from src.core.exceptions import LedgerError
from src.core.models import ContentType, FailureReason
from src.ledger.blocks import GENESIS_HASH, calculate_block_hash, meets_difficulty, mine_block
from src.ledger.proof_ledger import ProofLedger
from src.orchestrator import audit as trace_events
from src.verification.hashing import sha256_hex

GOOD_CODE = "const total = items.reduce((sum, item) => sum + item.id, 0);"
BAD_CODE = "const out = [1, 2, 2].unique();"


@pytest.fixture
def ledger(memory_repo, verifier, audit):
    return ProofLedger(memory_repo, verifier, LedgerConfig(block_size=2, difficulty=1), audit)


def _store(ledger, content=GOOD_CODE, **context):
    context.setdefault("input_context", "Sum item ids")
    return ledger.verify_and_store("agent-1", content, context=context)


class TestBlocks:
    def test_block_hash_is_deterministic(self):
        first = calculate_block_hash(0, GENESIS_HASH, ["a", "b"], 7)
        assert first == calculate_block_hash(0, GENESIS_HASH, ["a", "b"], 7)
        assert first != calculate_block_hash(0, GENESIS_HASH, ["b", "a"], 7)

    def test_mining_reaches_difficulty(self):
        block_hash, nonce, solved = mine_block(3, GENESIS_HASH, ["abc"], difficulty=2, max_iterations=100_000)
        assert solved
        assert meets_difficulty(block_hash, 2)
        assert block_hash == calculate_block_hash(3, GENESIS_HASH, ["abc"], nonce)

    def test_mining_cap_keeps_recomputable_hash(self):
        block_hash, nonce, solved = mine_block(0, GENESIS_HASH, ["abc"], difficulty=64, max_iterations=5)
        assert not solved
        assert nonce == 5
        assert block_hash == calculate_block_hash(0, GENESIS_HASH, ["abc"], 5)


class TestVerifyAndStore:
    def test_first_append_creates_genesis_block(self, ledger, memory_repo):
        result = _store(ledger, task_id=uuid.uuid4())
        assert result.verified
        assert result.block.index == 0
        assert result.block.previous_hash == GENESIS_HASH
        assert result.statement.position == 0
        assert result.statement.content_hash == sha256_hex(GOOD_CODE)
        assert result.statement.proof_hash == result.verification.proof_hash
        assert result.statement.sandbox_valid and result.statement.critic_valid

    def test_block_seals_at_capacity_and_chains(self, ledger, memory_repo):
        _store(ledger)
        sealed = _store(ledger).block
        assert sealed.sealed
        assert sealed.hash.startswith("0")
        blocks = memory_repo.list_blocks()
        assert [b.index for b in blocks] == [0, 1]
        assert blocks[1].previous_hash == blocks[0].hash
        assert not blocks[1].sealed

        third = _store(ledger)
        assert third.block.index == 1
        assert third.statement.position == 0

    def test_failed_verification_records_rejection(self, ledger, memory_repo, audit):
        result = _store(ledger, BAD_CODE)
        assert not result.verified
        assert result.block is None
        assert memory_repo.list_blocks() == []
        rejection = memory_repo._rejections[0]
        assert rejection.failure_reason == FailureReason.API_HALLUCINATION
        assert ".unique()" in rejection.message
        events = [e.event for e in memory_repo.list_trace_events()]
        assert events == [trace_events.LEDGER_REJECTED]

    def test_append_and_seal_are_traced(self, ledger, memory_repo):
        _store(ledger)
        _store(ledger)
        events = [e.event for e in memory_repo.list_trace_events()]
        assert events == [trace_events.LEDGER_APPEND, trace_events.LEDGER_APPEND, trace_events.BLOCK_SEALED]

    def test_json_document_statement(self, ledger):
        ok = ledger.verify_and_store("agent-1", '{"a": 1}', ContentType.JSON)
        bad = ledger.verify_and_store("agent-1", '{"a": ', ContentType.JSON)
        assert ok.verified
        assert ok.statement.content_type == ContentType.JSON
        assert not bad.verified
        assert bad.verification.checks["syntax"].message.startswith("Syntax error:")

    def test_text_document_is_accepted(self, ledger):
        assert ledger.verify_and_store("agent-1", "Design notes", ContentType.TEXT).verified


class TestChainIntegrity:
    def test_intact_chain_is_valid(self, ledger):
        for _ in range(5):
            _store(ledger)
        report = ledger.verify_chain_integrity()
        assert report.valid
        assert report.blocks_checked == 3
        assert report.invalid_blocks == []

    def test_empty_ledger_is_valid(self, ledger):
        report = ledger.verify_chain_integrity()
        assert report.valid
        assert report.blocks_checked == 0

    def test_edited_content_is_detected(self, ledger, memory_repo):
        _store(ledger)
        _store(ledger)
        _store(ledger)
        memory_repo._blocks[0].statements[1].content = "const total = 0;"
        report = ledger.verify_chain_integrity()
        assert not report.valid
        assert report.first_invalid_index == 0
        assert report.invalid_blocks == [0]
        assert report.reasons[0] == "statement 1 content does not match its hash"

    def test_rewritten_hash_breaks_block_hash(self, ledger, memory_repo):
        _store(ledger)
        _store(ledger)
        statement = memory_repo._blocks[0].statements[0]
        statement.content = "const forged = 1;"
        statement.content_hash = sha256_hex(statement.content)
        report = ledger.verify_chain_integrity()
        assert report.reasons[0] == "stored hash does not match recomputed hash"

    def test_broken_link_is_detected(self, ledger, memory_repo):
        _store(ledger)
        _store(ledger)
        memory_repo._blocks[1].previous_hash = "f" * 64
        report = ledger.verify_chain_integrity()
        assert report.invalid_blocks == [1]
        assert report.reasons[1] == "previous hash does not match the prior block"


class TestStats:
    def test_counts_and_rejection_rate(self, ledger):
        _store(ledger)
        _store(ledger)
        _store(ledger)
        _store(ledger, BAD_CODE)
        stats = ledger.get_stats()
        assert stats.total_blocks == 2
        assert stats.sealed_blocks == 1
        assert stats.total_statements == 3
        assert stats.total_rejections == 1
        assert stats.rejection_rate == 0.25

    def test_empty_stats(self, ledger):
        stats = ledger.get_stats()
        assert stats.total_blocks == 0
        assert stats.rejection_rate == 0.0

    def test_get_block(self, ledger):
        _store(ledger)
        assert ledger.get_block(0).statements[0].content == GOOD_CODE
        with pytest.raises(LedgerError):
            ledger.get_block(9)
