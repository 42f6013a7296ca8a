"""Tests for src/orchestrator/dispatcher.py — assignment, routing, deadlocks."""

import threading
import uuid

import pytest

from src.core.config import DispatcherConfig
from src.core.exceptions import AssignmentConflictError
from src.core.models import AgentRole, AgentStatus, TaskStatus
from src.orchestrator import audit as trace_events
from src.orchestrator.dispatcher import Dispatcher, missing_context
from src.tools.sandbox import ExecutionResult
from tests.conftest import make_agent, make_task


def _verification(verifier, passed_code="const total = [1, 2].reduce((a, b) => a + b, 0);"):
    return verifier.verify("agent", None, "sum", passed_code)


class TestSingleAssignment:
    def test_assigns_queued_task_to_idle_worker(self, dispatcher, memory_repo):
        agent = memory_repo.create_agent(make_agent(AgentRole.MID_DEV))
        task = memory_repo.create_task(make_task())

        report = dispatcher.run_cycle()

        assert len(report.assignments) == 1
        stored = memory_repo.get_task(task.id)
        assert stored.status == TaskStatus.ASSIGNED
        assert stored.assigned_to_agent_id == agent.id
        assert stored.owner_agent_id == agent.id
        assert memory_repo.get_agent(agent.id).status == AgentStatus.BUSY

    def test_one_worker_never_takes_two_tasks_in_a_cycle(self, dispatcher, memory_repo):
        memory_repo.create_agent(make_agent(AgentRole.MID_DEV))
        first = memory_repo.create_task(make_task("first"))
        second = memory_repo.create_task(make_task("second"))

        report = dispatcher.run_cycle()

        assert [a.task_id for a in report.assignments] == [first.id]
        assert memory_repo.get_task(second.id).status == TaskStatus.QUEUED
        assert "no idle MID_DEV worker" in report.skipped_tasks[str(second.id)]

    def test_concurrent_cycles_never_double_assign(self, memory_repo, audit):
        for i in range(3):
            memory_repo.create_agent(make_agent(AgentRole.MID_DEV, name=f"mid-{i}"))
        for i in range(6):
            memory_repo.create_task(make_task(f"task-{i}"))
        dispatchers = [Dispatcher(memory_repo, DispatcherConfig(), audit=audit) for _ in range(4)]

        threads = [threading.Thread(target=d.run_cycle) for d in dispatchers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assigned = [t for t in memory_repo.list_tasks() if t.status == TaskStatus.ASSIGNED]
        holders = [t.assigned_to_agent_id for t in assigned]
        assert 0 < len(assigned) <= 3
        assert len(set(holders)) == len(holders)

    def test_overlapping_cycle_is_skipped(self, dispatcher):
        dispatcher._cycle_lock.acquire()
        try:
            report = dispatcher.run_cycle()
        finally:
            dispatcher._cycle_lock.release()
        assert report.skipped is True
        assert report.assignments == []

    def test_assignment_is_traced(self, dispatcher, memory_repo):
        memory_repo.create_agent(make_agent(AgentRole.MID_DEV))
        task = memory_repo.create_task(make_task())

        dispatcher.run_cycle()

        events = memory_repo.list_trace_events(task.id)
        assert [e.event for e in events] == [trace_events.TASK_ASSIGNED]
        assert events[0].metadata["effective_role"] == "MID_DEV"


class TestElasticRouting:
    def test_simple_architect_task_fast_tracks_to_junior(self, dispatcher, memory_repo):
        junior = memory_repo.create_agent(make_agent(AgentRole.JUNIOR_DEV))
        memory_repo.create_agent(make_agent(AgentRole.ARCHITECT))
        task = memory_repo.create_task(make_task(role=AgentRole.ARCHITECT, complexity=10))

        report = dispatcher.run_cycle()

        assert report.assignments[0].effective_role == AgentRole.JUNIOR_DEV
        assert report.assignments[0].reason.startswith("fast-track")
        assert memory_repo.get_task(task.id).assigned_to_agent_id == junior.id

    def test_complex_junior_task_escalates_to_architect(self, dispatcher, memory_repo):
        memory_repo.create_agent(make_agent(AgentRole.JUNIOR_DEV))
        architect = memory_repo.create_agent(make_agent(AgentRole.ARCHITECT))
        task = memory_repo.create_task(make_task(role=AgentRole.JUNIOR_DEV, complexity=95))

        report = dispatcher.run_cycle()

        assert report.assignments[0].effective_role == AgentRole.ARCHITECT
        assert memory_repo.get_task(task.id).assigned_to_agent_id == architect.id

    def test_mid_complexity_keeps_required_role(self, dispatcher, memory_repo):
        memory_repo.create_agent(make_agent(AgentRole.JUNIOR_DEV))
        senior = memory_repo.create_agent(make_agent(AgentRole.SENIOR_DEV))
        memory_repo.create_task(make_task(role=AgentRole.SENIOR_DEV, complexity=50))

        report = dispatcher.run_cycle()

        assert report.assignments[0].agent_id == senior.id
        assert report.assignments[0].reason == "direct"

    def test_backpressure_downgrades_saturated_architects(self, memory_repo, audit):
        dispatcher = Dispatcher(memory_repo, DispatcherConfig(backpressure_load_threshold=1), audit=audit)
        busy = [memory_repo.create_agent(make_agent(AgentRole.ARCHITECT, name=f"arch-{i}")) for i in range(2)]
        for agent in busy:
            t = memory_repo.create_task(make_task(role=AgentRole.ARCHITECT))
            memory_repo.assign_task(t.id, agent.id, TaskStatus.QUEUED, "seed")
            memory_repo.transition_task(t.id, TaskStatus.ASSIGNED, {"status": TaskStatus.IN_PROGRESS})
        lead = memory_repo.create_agent(make_agent(AgentRole.TEAM_LEAD))
        task = memory_repo.create_task(make_task("design", role=AgentRole.ARCHITECT))

        report = dispatcher.run_cycle()

        assert report.assignments[0].task_id == task.id
        assert report.assignments[0].agent_id == lead.id
        assert report.assignments[0].effective_role == AgentRole.TEAM_LEAD
        assert "backpressure" in report.assignments[0].reason

    def test_no_backpressure_under_threshold(self, dispatcher, memory_repo):
        memory_repo.create_agent(make_agent(AgentRole.TEAM_LEAD))
        task = memory_repo.create_task(make_task(role=AgentRole.ARCHITECT))

        report = dispatcher.run_cycle()

        assert report.assignments == []
        assert report.skipped_tasks[str(task.id)] == "no idle ARCHITECT worker"


class TestStickyAssignment:
    def _run_to_revision(self, dispatcher, memory_repo, verifier, fake_sandbox):
        task = memory_repo.create_task(make_task())
        dispatcher.run_cycle()
        task = memory_repo.get_task(task.id)
        dispatcher.start_task(task.id, task.assigned_to_agent_id)
        fake_sandbox.syntax_result = ExecutionResult(
            stdout="", stderr="SyntaxError: Unexpected token", exit_code=1,
        )
        rejected = verifier.verify("a", str(task.id), "sum", "const x = ;")
        return dispatcher.submit_result(task.id, task.assigned_to_agent_id, "const x = ;", rejected)

    def test_revision_returns_to_owner(self, dispatcher, memory_repo, verifier, fake_sandbox):
        owner = memory_repo.create_agent(make_agent(AgentRole.MID_DEV, name="owner"))
        revised = self._run_to_revision(dispatcher, memory_repo, verifier, fake_sandbox)
        memory_repo.create_agent(make_agent(AgentRole.MID_DEV, name="newcomer"))

        report = dispatcher.run_cycle()

        assert revised.status == TaskStatus.NEEDS_REVISION
        assert report.assignments[0].agent_id == owner.id
        assert report.assignments[0].reason == "sticky owner"

    def test_owner_role_wins_over_complexity_routing(self, dispatcher, memory_repo, verifier, fake_sandbox):
        owner = memory_repo.create_agent(make_agent(AgentRole.MID_DEV, name="owner"))
        revised = self._run_to_revision(dispatcher, memory_repo, verifier, fake_sandbox)
        memory_repo._tasks[revised.id].complexity_score = 95
        memory_repo.create_agent(make_agent(AgentRole.ARCHITECT))

        report = dispatcher.run_cycle()

        assert report.assignments[0].agent_id == owner.id
        assert report.assignments[0].effective_role == AgentRole.MID_DEV


class TestDeadlockDetection:
    def _revision_task(self, memory_repo, retries):
        task = memory_repo.create_task(make_task(f"retry-{retries}"))
        memory_repo.transition_task(task.id, TaskStatus.QUEUED, {
            "status": TaskStatus.NEEDS_REVISION,
            "retry_count": retries,
        })
        return task

    def test_third_failure_goes_to_war_room(self, dispatcher, memory_repo):
        task = self._revision_task(memory_repo, 3)

        report = dispatcher.run_cycle()

        stored = memory_repo.get_task(task.id)
        assert stored.status == TaskStatus.WAR_ROOM
        assert stored.is_deadlocked is True
        assert "War Room" in stored.blocked_reason
        assert report.deadlocked_tasks == [str(task.id)]
        events = [e.event for e in memory_repo.list_trace_events(task.id)]
        assert trace_events.DEADLOCK_DETECTED in events

    def test_two_retries_stay_dispatchable(self, dispatcher, memory_repo):
        task = self._revision_task(memory_repo, 2)

        report = dispatcher.run_cycle()

        assert memory_repo.get_task(task.id).status == TaskStatus.NEEDS_REVISION
        assert report.deadlocked_tasks == []

    def test_failed_tasks_also_deadlock(self, dispatcher, memory_repo):
        task = memory_repo.create_task(make_task())
        memory_repo.transition_task(task.id, TaskStatus.QUEUED, {"status": TaskStatus.FAILED, "retry_count": 4})

        escalated = dispatcher.detect_deadlocks()

        assert [t.id for t in escalated] == [task.id]


class TestBlockedContext:
    def test_missing_context_blocks_queued_task(self, dispatcher, memory_repo):
        memory_repo.create_agent(make_agent())
        task = memory_repo.create_task(make_task(context_packet={
            "language": "javascript",
            "required_context": ["schema", "api_contract"],
            "schema": "users(id, email)",
        }))

        report = dispatcher.run_cycle()

        stored = memory_repo.get_task(task.id)
        assert stored.status == TaskStatus.BLOCKED
        assert stored.blocked_reason == "Missing required context: api_contract"
        assert report.blocked_tasks == [str(task.id)]

    def test_unblock_requeues(self, dispatcher, memory_repo):
        task = memory_repo.create_task(make_task(context_packet={"required_context": ["schema"]}))
        dispatcher.run_cycle()

        unblocked = dispatcher.unblock(task.id)

        assert unblocked.status == TaskStatus.QUEUED
        assert unblocked.blocked_reason is None

    def test_missing_context_helper(self):
        task = make_task(context_packet={"required_context": "schema", "schema": ""})
        assert missing_context(task) == ["schema"]


class TestResultPath:
    @pytest.fixture
    def held(self, dispatcher, memory_repo):
        agent = memory_repo.create_agent(make_agent())
        task = memory_repo.create_task(make_task())
        dispatcher.run_cycle()
        return memory_repo.get_task(task.id), agent

    def test_passing_artifact_moves_to_review(self, dispatcher, memory_repo, verifier, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)

        updated = dispatcher.submit_result(task.id, agent.id, "const a = 1;", _verification(verifier))

        assert updated.status == TaskStatus.IN_REVIEW
        assert updated.assigned_to_agent_id is None
        assert updated.result["proof_hash"]
        released = memory_repo.get_agent(agent.id)
        assert released.status == AgentStatus.IDLE
        assert released.success_count == 1

    def test_rejected_artifact_charges_a_retry(self, dispatcher, memory_repo, verifier, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)
        rejected = verifier.verify("a", None, "sum", "const result = [1, 2].unique();")

        updated = dispatcher.submit_result(task.id, agent.id, "x", rejected)

        assert updated.status == TaskStatus.NEEDS_REVISION
        assert updated.retry_count == 1
        assert updated.review_feedback["failed_checks"] == ["api"]
        assert updated.error_message.startswith("api:")

    def test_submit_from_wrong_worker_conflicts(self, dispatcher, verifier, held):
        task, _ = held
        with pytest.raises(AssignmentConflictError):
            dispatcher.submit_result(task.id, uuid.uuid4(), "x", _verification(verifier))

    def test_fail_before_start_requeues_without_penalty(self, dispatcher, held):
        task, agent = held
        updated = dispatcher.fail_task(task.id, agent.id, "backend down")
        assert updated.status == TaskStatus.QUEUED
        assert updated.retry_count == 0

    def test_fail_in_progress_charges_retry(self, dispatcher, memory_repo, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)

        updated = dispatcher.fail_task(task.id, agent.id, "backend down")

        assert updated.status == TaskStatus.FAILED
        assert updated.retry_count == 1
        assert memory_repo.get_agent(agent.id).fail_count == 1

    def test_review_approval_completes(self, dispatcher, verifier, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)
        dispatcher.submit_result(task.id, agent.id, "const a = 1;", _verification(verifier))

        done = dispatcher.record_review(task.id, approved=True)

        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at is not None

    def test_review_rejection_needs_revision(self, dispatcher, verifier, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)
        dispatcher.submit_result(task.id, agent.id, "const a = 1;", _verification(verifier))

        revised = dispatcher.record_review(task.id, approved=False, feedback={"comment": "rename"})

        assert revised.status == TaskStatus.NEEDS_REVISION
        assert revised.review_feedback == {"source": "review", "comment": "rename"}

    def test_review_outside_review_state_conflicts(self, dispatcher, held):
        task, _ = held
        with pytest.raises(AssignmentConflictError):
            dispatcher.record_review(task.id, approved=True)

    def test_passing_tests_move_task_to_qa(self, dispatcher, verifier, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)
        dispatcher.submit_result(task.id, agent.id, "const a = 1;", _verification(verifier))

        waiting = dispatcher.request_tests(task.id)
        assert waiting.status == TaskStatus.PENDING_TESTS

        qa = dispatcher.record_tests(task.id, passed=True, report={"suite": "cart.test.js", "count": 4})
        assert qa.status == TaskStatus.IN_QA
        assert qa.result["tests"] == {"passed": True, "suite": "cart.test.js", "count": 4}
        assert "proof_hash" in qa.result
        assert dispatcher.record_review(task.id, approved=True).status == TaskStatus.COMPLETED

    def test_failing_tests_send_task_back_for_revision(self, dispatcher, verifier, held):
        task, agent = held
        dispatcher.start_task(task.id, agent.id)
        dispatcher.submit_result(task.id, agent.id, "const a = 1;", _verification(verifier))
        dispatcher.request_tests(task.id)

        revised = dispatcher.record_tests(task.id, passed=False, report={"failures": ["empty cart"]})

        assert revised.status == TaskStatus.NEEDS_REVISION
        assert revised.retry_count == task.retry_count + 1
        assert revised.review_feedback == {"source": "tests", "failures": ["empty cart"]}

    def test_test_steps_require_matching_state(self, dispatcher, held):
        task, _ = held
        with pytest.raises(AssignmentConflictError, match="not under review"):
            dispatcher.request_tests(task.id)
        with pytest.raises(AssignmentConflictError, match="not awaiting tests"):
            dispatcher.record_tests(task.id, passed=True)
