"""Shared fixtures for Agent Foundry tests.

Tests use real dependencies where they are cheap (the in-memory repository,
the Python subprocess sandbox, httpx transports). Tests requiring external
services use skip markers when unavailable.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so DATABASE_URL etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=False)

from src.core.config import (
    AppConfig,
    DatabaseConfig,
    DispatcherConfig,
    GenerationParams,
    ModelRegistry,
    SandboxConfig,
    VerifierConfig,
    load_config,
    load_model_registry,
)
from src.core.models import Agent, AgentRole, Task
from src.db.memory import InMemoryRepository
from src.llm.backend import GenerationBackend
from src.llm.router import ModelRouter
from src.orchestrator.audit import AuditTrail
from src.orchestrator.dispatcher import Dispatcher
from src.orchestrator.notifications import StatusNotifier
from src.tools.sandbox import ExecutionResult, Sandbox, SubprocessSandbox
from src.verification.runtime import PASS_MARKER
from src.verification.verifier import ArtifactVerifier


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "agent_foundry"),
            user=parsed.username or "foundry",
            password=parsed.password or "foundry",
        )
    return DatabaseConfig()


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    import psycopg

    try:
        conn = psycopg.connect(_get_db_config().connection_string, connect_timeout=3)
    except psycopg.Error:
        return False
    conn.close()
    return True


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)

requires_node = pytest.mark.skipif(
    shutil.which("node") is None,
    reason="node binary not on PATH",
)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeSandbox(Sandbox):
    """Sandbox double for JavaScript paths: records calls, returns canned results.

    By default every parse succeeds and every run prints the completion
    marker. Tests override ``syntax_result`` / ``run_result``.
    """

    def __init__(self):
        super().__init__(SandboxConfig())
        self.syntax_result = ExecutionResult(stdout="", stderr="", exit_code=0)
        self.run_result = ExecutionResult(stdout=f"{PASS_MARKER}\n", stderr="", exit_code=0)
        self.syntax_calls: list[tuple[str, str]] = []
        self.run_calls: list[tuple[str, str]] = []

    def check_syntax(self, code: str, language: str) -> ExecutionResult:
        self.syntax_calls.append((code, language))
        return self.syntax_result

    def execute(self, code: str, language: str) -> ExecutionResult:
        self.run_calls.append((code, language))
        return self.run_result

    def _launch(self, workdir, lang, syntax_only):
        raise AssertionError("FakeSandbox never launches processes")


class ScriptedBackend(GenerationBackend):
    """Generation backend double that replays queued responses."""

    name = "scripted"

    def __init__(self, *responses: str):
        self.responses = list(responses)
        self.calls: list[tuple[str, str, GenerationParams]] = []

    def generate(self, system_prompt: str, user_prompt: str, params: GenerationParams) -> str:
        self.calls.append((system_prompt, user_prompt, params))
        if not self.responses:
            raise AssertionError("ScriptedBackend ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def model_registry(config_dir: Path) -> ModelRegistry:
    return load_model_registry(config_dir=config_dir)


@pytest.fixture
def model_router(model_registry: ModelRegistry) -> ModelRouter:
    return ModelRouter(model_registry)


# ---------------------------------------------------------------------------
# Persistence & orchestration fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def audit(memory_repo) -> AuditTrail:
    return AuditTrail(memory_repo)


@pytest.fixture
def notifier() -> StatusNotifier:
    return StatusNotifier()


@pytest.fixture
def dispatcher(memory_repo, audit, notifier) -> Dispatcher:
    return Dispatcher(memory_repo, DispatcherConfig(), audit=audit, notifier=notifier)


@pytest.fixture
def db_config() -> DatabaseConfig:
    return _get_db_config()


@pytest.fixture
def db_engine(db_config):
    """Real PostgreSQL engine with a clean schema."""
    from src.db.engine import DatabaseEngine
    engine = DatabaseEngine(db_config)
    engine.initialize_schema()
    engine.execute(
        "TRUNCATE tasks, agents, trace_events, verified_statements, ledger_blocks, "
        "rejected_verifications CASCADE"
    )
    yield engine
    engine.close()


@pytest.fixture
def repository(db_engine):
    from src.db.repository import Repository
    return Repository(db_engine)


# ---------------------------------------------------------------------------
# Verification fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def python_sandbox() -> SubprocessSandbox:
    """Real subprocess sandbox; python runs through sys.executable."""
    return SubprocessSandbox(SandboxConfig(timeout_seconds=10.0))


@pytest.fixture
def verifier(fake_sandbox) -> ArtifactVerifier:
    return ArtifactVerifier(fake_sandbox, VerifierConfig())


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

def make_task(
    title: str = "Implement cart total",
    role: AgentRole = AgentRole.MID_DEV,
    complexity: Optional[int] = 50,
    **fields,
) -> Task:
    fields.setdefault("context_packet", {"language": "javascript"})
    return Task(title=title, required_role=role, complexity_score=complexity, **fields)


def make_agent(role: AgentRole = AgentRole.MID_DEV, name: Optional[str] = None, **fields) -> Agent:
    return Agent(name=name or f"{role.value.lower()}-worker", role=role, **fields)


@pytest.fixture
def sample_task() -> Task:
    return make_task(description="Sum item prices in a shopping cart")


@pytest.fixture
def sample_agent() -> Agent:
    return make_agent()
