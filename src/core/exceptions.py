"""Custom exception hierarchy for Agent Foundry.

All exceptions inherit from FoundryError so callers can catch broadly
or narrowly as needed. Expected long-running conditions (routing misses,
verification failures, deadlocks, mediation failures) are reported as
state and structured results, not raised.
"""


class FoundryError(Exception):
    """Base exception for all Foundry errors."""


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class DatabaseError(FoundryError):
    """Failed database operation."""


class SchemaInitError(DatabaseError):
    """Failed to initialize database schema."""


class ConnectionError(DatabaseError):
    """Failed to connect to database."""


class RecordNotFoundError(DatabaseError):
    """A task, worker, or block referenced by id does not exist."""


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------

class LLMError(FoundryError):
    """Failed LLM operation."""


class RateLimitError(LLMError):
    """Hit API rate limit."""


class AuthenticationError(LLMError):
    """Invalid API key or unauthorized."""


class ModelNotFoundError(LLMError):
    """Requested model not available."""


class ResponseParseError(LLMError):
    """Failed to parse LLM response."""


# ---------------------------------------------------------------------------
# Agents and orchestration
# ---------------------------------------------------------------------------

class AgentError(FoundryError):
    """Agent processing failure."""


class InvalidTransitionError(AgentError):
    """A task was asked to move along an edge the state machine does not allow."""

    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition for task {task_id}: {current} -> {target}")


class AssignmentConflictError(AgentError):
    """The task or worker changed state between read and write."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(FoundryError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


class SandboxError(ToolError):
    """The sandbox runtime could not be started or is misconfigured."""


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LedgerError(FoundryError):
    """Failed ledger operation (append, seal, or load)."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(FoundryError):
    """Invalid or missing configuration."""
