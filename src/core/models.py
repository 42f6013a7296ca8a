"""All Pydantic data models for Agent Foundry.

Defines the data contracts used by the dispatcher, the verification gate,
the proof ledger and the war room. Every table row and every structured
result handed back to a caller has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    NEEDS_REVISION = "NEEDS_REVISION"
    PENDING_TESTS = "PENDING_TESTS"
    IN_QA = "IN_QA"
    WAR_ROOM = "WAR_ROOM"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class AgentRole(str, enum.Enum):
    ARCHITECT = "ARCHITECT"
    TEAM_LEAD = "TEAM_LEAD"
    SENIOR_DEV = "SENIOR_DEV"
    MID_DEV = "MID_DEV"
    JUNIOR_DEV = "JUNIOR_DEV"
    QA = "QA"
    TEST_GENERATOR = "TEST_GENERATOR"
    DESIGNER = "DESIGNER"


class AgentStatus(str, enum.Enum):
    IDLE = "IDLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class ContentType(str, enum.Enum):
    CODE = "CODE"
    TEXT = "TEXT"
    JSON = "JSON"


class FailureReason(str, enum.Enum):
    SYNTAX_ERROR = "SYNTAX_ERROR"
    SANDBOX_FAIL = "SANDBOX_FAIL"
    API_HALLUCINATION = "API_HALLUCINATION"
    ENTROPY_VIOLATION = "ENTROPY_VIOLATION"
    SAFETY_VIOLATION = "SAFETY_VIOLATION"
    CRITIC_REJECTED = "CRITIC_REJECTED"


HIGH_TIER_ROLES = frozenset({AgentRole.ARCHITECT, AgentRole.TEAM_LEAD})
LOW_TIER_ROLES = frozenset({AgentRole.MID_DEV, AgentRole.JUNIOR_DEV})

# Statuses in which a task may be picked up by the dispatch cycle.
REVISION_STATUSES = frozenset({TaskStatus.NEEDS_REVISION})
DEADLOCK_CANDIDATE_STATUSES = frozenset({TaskStatus.NEEDS_REVISION, TaskStatus.FAILED})


# ---------------------------------------------------------------------------
# Database row models
# ---------------------------------------------------------------------------

class Task(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.QUEUED
    required_role: AgentRole = AgentRole.MID_DEV
    complexity_score: Optional[int] = Field(default=None, ge=0, le=100)
    retry_count: int = 0
    is_deadlocked: bool = False
    owner_agent_id: Optional[uuid.UUID] = None
    assigned_to_agent_id: Optional[uuid.UUID] = None
    trace_id: Optional[str] = None
    context_packet: dict[str, Any] = Field(default_factory=dict)
    output_artifact: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    review_feedback: Optional[dict[str, Any]] = None
    blocked_reason: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def effective_complexity(self) -> int:
        return 50 if self.complexity_score is None else self.complexity_score


class Agent(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    name: str
    role: AgentRole
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: Optional[uuid.UUID] = None
    score: float = 100.0
    success_count: int = 0
    fail_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    last_active_at: Optional[datetime] = None


class TraceEvent(BaseModel):
    """Audit record. The hash fields chain every event to its predecessor."""
    id: uuid.UUID = Field(default_factory=_new_uuid)
    sequence: int = 0
    task_id: Optional[uuid.UUID] = None
    agent_id: Optional[str] = None
    event: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
    event_hash: str = ""
    previous_hash: str = ""
    chain_hash: str = ""


class StatusEvent(BaseModel):
    entity_type: str  # "task" or "agent"
    entity_id: str
    new_state: str
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

CHECK_ORDER = ("syntax", "sandbox", "api", "entropy", "safety", "critic")


class CheckResult(BaseModel):
    passed: bool
    message: Optional[str] = None
    duration_ms: float = 0.0
    skipped: bool = False

    @classmethod
    def skip(cls, message: str = "Not run") -> "CheckResult":
        return cls(passed=True, message=message, skipped=True)


class VerificationResult(BaseModel):
    passed: bool
    checks: dict[str, CheckResult] = Field(default_factory=dict)
    proof_hash: str
    input_hash: str
    output_hash: str
    timestamp: datetime = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_checks(self) -> list[str]:
        return [name for name in CHECK_ORDER if name in self.checks and not self.checks[name].passed]

    @property
    def first_failure(self) -> Optional[tuple[str, str]]:
        for name in self.failed_checks:
            return name, self.checks[name].message or ""
        return None


class RoleBaseline(BaseModel):
    """Per-role limits used by the entropy check."""
    max_complexity_ratio: float
    min_similarity: float
    max_new_imports: int
    max_line_delta: int


ROLE_BASELINES: dict[AgentRole, RoleBaseline] = {
    AgentRole.SENIOR_DEV: RoleBaseline(
        max_complexity_ratio=3.5, min_similarity=0.7, max_new_imports=2, max_line_delta=50,
    ),
    AgentRole.MID_DEV: RoleBaseline(
        max_complexity_ratio=4.0, min_similarity=0.6, max_new_imports=3, max_line_delta=100,
    ),
    AgentRole.JUNIOR_DEV: RoleBaseline(
        max_complexity_ratio=4.5, min_similarity=0.5, max_new_imports=4, max_line_delta=150,
    ),
    AgentRole.ARCHITECT: RoleBaseline(
        max_complexity_ratio=5.0, min_similarity=0.4, max_new_imports=5, max_line_delta=200,
    ),
    AgentRole.QA: RoleBaseline(
        max_complexity_ratio=3.0, min_similarity=0.9, max_new_imports=1, max_line_delta=30,
    ),
}


def baseline_for(role: AgentRole | str | None) -> RoleBaseline:
    """Return the entropy baseline for a role, falling back to MID_DEV."""
    if role is not None:
        try:
            return ROLE_BASELINES[AgentRole(role)]
        except (KeyError, ValueError):
            pass
    return ROLE_BASELINES[AgentRole.MID_DEV]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class VerifiedStatement(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    block_index: int = 0
    position: int = 0
    agent_id: str
    task_id: Optional[str] = None
    content_type: ContentType = ContentType.CODE
    content: str
    content_hash: str
    proof_hash: str
    syntax_valid: bool = True
    sandbox_valid: bool = True
    api_valid: bool = True
    entropy_valid: bool = True
    safety_valid: bool = True
    critic_valid: bool = True
    created_at: datetime = Field(default_factory=_now)


class LedgerBlock(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    index: int
    previous_hash: str
    hash: str = ""
    nonce: int = 0
    sealed: bool = False
    statements: list[VerifiedStatement] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)


class RejectedVerification(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    agent_id: str
    task_id: Optional[str] = None
    output_hash: str
    failure_reason: FailureReason
    message: str = ""
    created_at: datetime = Field(default_factory=_now)


class StoreResult(BaseModel):
    verified: bool
    verification: VerificationResult
    block: Optional[LedgerBlock] = None
    statement: Optional[VerifiedStatement] = None


class ChainIntegrityReport(BaseModel):
    valid: bool
    blocks_checked: int = 0
    invalid_blocks: list[int] = Field(default_factory=list)
    first_invalid_index: Optional[int] = None
    reasons: dict[int, str] = Field(default_factory=dict)


class LedgerStats(BaseModel):
    total_blocks: int = 0
    sealed_blocks: int = 0
    total_statements: int = 0
    total_rejections: int = 0
    rejection_rate: float = 0.0


# ---------------------------------------------------------------------------
# Orchestration results
# ---------------------------------------------------------------------------

class AgentResult(BaseModel):
    """Standardized output from any agent."""
    agent_name: str
    status: str  # "success", "failure", "blocked"
    data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    duration_seconds: float = 0.0


class Assignment(BaseModel):
    task_id: uuid.UUID
    agent_id: uuid.UUID
    required_role: AgentRole
    effective_role: AgentRole
    reason: str
    trace_id: str


class DispatchReport(BaseModel):
    """Outcome of one dispatch cycle."""
    skipped: bool = False
    examined: int = 0
    assignments: list[Assignment] = Field(default_factory=list)
    skipped_tasks: dict[str, str] = Field(default_factory=dict)  # task_id -> reason
    blocked_tasks: list[str] = Field(default_factory=list)
    deadlocked_tasks: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class MediationOutcome(BaseModel):
    task_id: uuid.UUID
    resolved: bool
    reason: str = ""
    target_file: Optional[str] = None
    analysis: Optional[str] = None
