"""Contract tests for the repositories in src/db.

Every test runs against InMemoryRepository; the PostgreSQL run of the same
tests is skipped when no server is reachable.
"""

import uuid
from datetime import UTC, datetime

import pytest

from src.core.exceptions import DatabaseError
from src.core.models import (
    AgentRole,
    AgentStatus,
    ContentType,
    FailureReason,
    LedgerBlock,
    RejectedVerification,
    TaskStatus,
    TraceEvent,
    VerifiedStatement,
)
from src.db.memory import InMemoryRepository
from tests.conftest import make_agent, make_task, requires_postgres


@pytest.fixture(params=["memory", pytest.param("postgres", marks=requires_postgres)])
def repo(request):
    if request.param == "memory":
        return InMemoryRepository()
    return request.getfixturevalue("repository")


def _assigned(repo, role=AgentRole.MID_DEV):
    agent = repo.create_agent(make_agent(role))
    task = repo.create_task(make_task(role=role))
    assigned = repo.assign_task(task.id, agent.id, TaskStatus.QUEUED, "trace-1")
    return assigned, agent


class TestTasks:
    def test_create_and_get(self, repo):
        task = repo.create_task(make_task(description="Sum prices", complexity=35))
        fetched = repo.get_task(task.id)
        assert fetched.title == "Implement cart total"
        assert fetched.description == "Sum prices"
        assert fetched.status == TaskStatus.QUEUED
        assert fetched.complexity_score == 35
        assert fetched.context_packet == {"language": "javascript"}

    def test_get_missing(self, repo):
        assert repo.get_task(uuid.uuid4()) is None

    def test_list_by_status_and_limit(self, repo):
        first = repo.create_task(make_task("first"))
        repo.create_task(make_task("second"))
        repo.create_task(make_task("failed", status=TaskStatus.FAILED))
        queued = repo.list_tasks(status=TaskStatus.QUEUED)
        assert [t.title for t in queued] == ["first", "second"]
        assert [t.id for t in repo.list_tasks(limit=1)] == [first.id]

    def test_dispatchable_tasks(self, repo):
        queued = repo.create_task(make_task("queued"))
        revision = repo.create_task(make_task("revise", status=TaskStatus.NEEDS_REVISION, retry_count=1))
        repo.create_task(make_task("over budget", status=TaskStatus.NEEDS_REVISION, retry_count=3))
        repo.create_task(make_task("stuck", status=TaskStatus.NEEDS_REVISION, retry_count=1, is_deadlocked=True))
        repo.create_task(make_task("review", status=TaskStatus.IN_REVIEW))
        found = repo.get_dispatchable_tasks(limit=10, max_retry_count=2)
        assert [t.id for t in found] == [queued.id, revision.id]
        assert len(repo.get_dispatchable_tasks(limit=1, max_retry_count=2)) == 1

    def test_deadlock_candidates(self, repo):
        repo.create_task(make_task("fresh", status=TaskStatus.NEEDS_REVISION, retry_count=2))
        failed = repo.create_task(make_task("failed", status=TaskStatus.FAILED, retry_count=3))
        repo.create_task(make_task("flagged", status=TaskStatus.FAILED, retry_count=3, is_deadlocked=True))
        assert [t.id for t in repo.get_deadlock_candidates(retry_threshold=2)] == [failed.id]

    def test_status_summary(self, repo):
        repo.create_task(make_task("a"))
        repo.create_task(make_task("b"))
        repo.create_task(make_task("c", status=TaskStatus.BLOCKED))
        assert repo.get_task_status_summary() == {"QUEUED": 2, "BLOCKED": 1}


class TestAssignment:
    def test_assign_claims_task_and_worker(self, repo):
        task, agent = _assigned(repo)
        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_to_agent_id == agent.id
        assert task.owner_agent_id == agent.id
        assert task.trace_id == "trace-1"
        worker = repo.get_agent(agent.id)
        assert worker.status == AgentStatus.BUSY
        assert worker.current_task_id == task.id

    def test_stale_status_is_refused_and_worker_stays_idle(self, repo):
        agent = repo.create_agent(make_agent())
        task = repo.create_task(make_task())
        assert repo.assign_task(task.id, agent.id, TaskStatus.NEEDS_REVISION, "t") is None
        assert repo.get_agent(agent.id).status == AgentStatus.IDLE
        assert repo.get_task(task.id).status == TaskStatus.QUEUED

    def test_busy_worker_is_refused(self, repo):
        _, agent = _assigned(repo)
        other = repo.create_task(make_task("other"))
        assert repo.assign_task(other.id, agent.id, TaskStatus.QUEUED, "t") is None
        assert repo.get_task(other.id).assigned_to_agent_id is None

    def test_owner_is_kept_on_reassignment(self, repo):
        task, owner = _assigned(repo)
        repo.transition_task(task.id, TaskStatus.ASSIGNED, {"status": TaskStatus.NEEDS_REVISION})
        repo.release_agent(owner.id, task.id)
        helper = repo.create_agent(make_agent(name="helper"))
        again = repo.assign_task(task.id, helper.id, TaskStatus.NEEDS_REVISION, "trace-2")
        assert again.assigned_to_agent_id == helper.id
        assert again.owner_agent_id == owner.id

    def test_in_progress_count_by_role(self, repo):
        task, _ = _assigned(repo, AgentRole.SENIOR_DEV)
        assert repo.count_in_progress_for_role(AgentRole.SENIOR_DEV) == 0
        repo.transition_task(task.id, TaskStatus.ASSIGNED, {"status": TaskStatus.IN_PROGRESS})
        assert repo.count_in_progress_for_role(AgentRole.SENIOR_DEV) == 1
        assert repo.count_in_progress_for_role(AgentRole.MID_DEV) == 0


class TestTransition:
    def test_compare_and_swap(self, repo):
        task = repo.create_task(make_task())
        moved = repo.transition_task(task.id, TaskStatus.QUEUED, {
            "status": TaskStatus.BLOCKED,
            "blocked_reason": "Missing context: schema",
        })
        assert moved.status == TaskStatus.BLOCKED
        assert moved.blocked_reason == "Missing context: schema"
        assert repo.transition_task(task.id, TaskStatus.QUEUED, {"status": TaskStatus.FAILED}) is None

    def test_json_and_timestamp_fields(self, repo):
        task = repo.create_task(make_task())
        done_at = datetime.now(UTC)
        repo.transition_task(task.id, TaskStatus.QUEUED, {
            "result": {"proof_hash": "abc", "checks": ["syntax"]},
            "review_feedback": {"comment": "ok"},
            "output_artifact": "const x = 1;",
            "completed_at": done_at,
        })
        stored = repo.get_task(task.id)
        assert stored.result == {"proof_hash": "abc", "checks": ["syntax"]}
        assert stored.review_feedback == {"comment": "ok"}
        assert stored.output_artifact == "const x = 1;"
        assert stored.completed_at is not None

    def test_unknown_field_is_rejected(self, repo):
        task = repo.create_task(make_task())
        with pytest.raises(DatabaseError, match="Cannot update task fields"):
            repo.transition_task(task.id, TaskStatus.QUEUED, {"owner_agent_id": uuid.uuid4()})


class TestWorkers:
    def test_list_filters(self, repo):
        repo.create_agent(make_agent(AgentRole.MID_DEV, "mid"))
        repo.create_agent(make_agent(AgentRole.QA, "qa", status=AgentStatus.OFFLINE))
        assert [a.name for a in repo.list_agents(role=AgentRole.QA)] == ["qa"]
        assert [a.name for a in repo.list_agents(status=AgentStatus.IDLE)] == ["mid"]

    def test_find_idle_prefers_never_active_and_honours_exclude(self, repo):
        first = repo.create_agent(make_agent(name="first"))
        second = repo.create_agent(make_agent(name="second"))
        task, _ = _assigned(repo, AgentRole.JUNIOR_DEV)
        assert repo.find_idle_agent(AgentRole.JUNIOR_DEV) is None
        assert repo.find_idle_agent(AgentRole.MID_DEV).id == first.id
        assert repo.find_idle_agent(AgentRole.MID_DEV, exclude={first.id}).id == second.id

    def test_release_updates_counters(self, repo):
        task, agent = _assigned(repo)
        released = repo.release_agent(agent.id, task.id, success=False)
        assert released.status == AgentStatus.IDLE
        assert released.current_task_id is None
        assert released.fail_count == 1
        assert released.last_active_at is not None

    def test_release_for_another_task_is_refused(self, repo):
        task, agent = _assigned(repo)
        assert repo.release_agent(agent.id, uuid.uuid4()) is None
        assert repo.get_agent(agent.id).status == AgentStatus.BUSY

    def test_release_keeps_offline_status(self, repo):
        task, agent = _assigned(repo)
        repo.set_agent_status(agent.id, AgentStatus.OFFLINE)
        released = repo.release_agent(agent.id, task.id, success=True)
        assert released.status == AgentStatus.OFFLINE
        assert released.success_count == 1


class TestTraceEvents:
    def _event(self, sequence, task_id=None):
        return TraceEvent(
            sequence=sequence, task_id=task_id, agent_id="agent-1", event="TASK_ASSIGNED",
            metadata={"n": sequence}, event_hash=f"e{sequence}", previous_hash="p", chain_hash=f"c{sequence}",
        )

    def test_round_trip_and_filter(self, repo):
        task_id = uuid.uuid4()
        repo.save_trace_event(self._event(1, task_id))
        repo.save_trace_event(self._event(2))
        assert repo.get_last_trace_event().sequence == 2
        scoped = repo.list_trace_events(task_id)
        assert [e.sequence for e in scoped] == [1]
        assert scoped[0].metadata == {"n": 1}
        assert [e.sequence for e in repo.list_trace_events()] == [1, 2]

    def test_empty_trail(self, repo):
        assert repo.get_last_trace_event() is None


class TestLedgerStorage:
    def _statement(self, block_index, position):
        return VerifiedStatement(
            block_index=block_index, position=position, agent_id="agent-1",
            content_type=ContentType.CODE, content=f"const v{position} = 1;",
            content_hash=f"h{position}", proof_hash=f"p{position}",
        )

    def test_blocks_carry_statements_in_order(self, repo):
        repo.save_block(LedgerBlock(index=0, previous_hash="0" * 64))
        repo.add_statement(self._statement(0, 0))
        repo.add_statement(self._statement(0, 1))
        latest = repo.get_latest_block()
        assert latest.index == 0
        assert [s.position for s in latest.statements] == [0, 1]

    def test_save_block_updates_seal_in_place(self, repo):
        block = LedgerBlock(index=0, previous_hash="0" * 64)
        repo.save_block(block)
        repo.add_statement(self._statement(0, 0))
        repo.save_block(block.model_copy(update={"hash": "00ab", "nonce": 7, "sealed": True}))
        repo.save_block(LedgerBlock(index=1, previous_hash="00ab"))
        blocks = repo.list_blocks()
        assert [b.index for b in blocks] == [0, 1]
        assert blocks[0].sealed and blocks[0].nonce == 7
        assert len(blocks[0].statements) == 1
        assert blocks[1].statements == []

    def test_counts(self, repo):
        repo.save_block(LedgerBlock(index=0, previous_hash="0" * 64, sealed=True, hash="00"))
        repo.add_statement(self._statement(0, 0))
        repo.save_rejection(RejectedVerification(
            agent_id="agent-1", output_hash="x", failure_reason=FailureReason.SYNTAX_ERROR,
        ))
        assert repo.ledger_counts() == {"blocks": 1, "sealed_blocks": 1, "statements": 1, "rejections": 1}
