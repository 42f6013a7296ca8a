"""Subprocess execution for Agent Foundry.

Runs child processes with a hard timeout and optional memory cap, captures
stdout/stderr, and returns structured results. The sandbox and the syntax
checker are the only callers; candidate code never reaches a shell.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from src.core.exceptions import ShellTimeoutError, ToolError
from src.security.policy import SecurityPolicy

logger = logging.getLogger("foundry.tools.shell")

DEFAULT_TIMEOUT = 30.0  # seconds
MAX_OUTPUT_BYTES = 1_048_576


@dataclass
class ShellResult:
    """Structured result from a child process."""
    command: str
    return_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0 and not self.timed_out


def run_command(
    command: list[str],
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
    security_policy: Optional[SecurityPolicy] = None,
    memory_limit_mb: Optional[int] = None,
    input_text: Optional[str] = None,
) -> ShellResult:
    """Execute a command with timeout and output capture.

    Args:
        command: Argument vector; never interpreted by a shell.
        cwd: Working directory for the command.
        timeout: Max seconds before killing the process.
        env: Optional environment variables (merged over the base env).
        security_policy: Optional policy (runtime allowlist, env sanitization).
        memory_limit_mb: Address-space cap for the child (POSIX only).
        input_text: Optional text fed to stdin.

    Returns:
        ShellResult with return code, stdout, stderr.

    Raises:
        ShellTimeoutError: If command exceeds timeout.
        ToolError: If command can't be started or is not allowed.
    """
    if not command:
        raise ToolError("Empty command")
    cmd_str = " ".join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%.1fs)", cmd_str, cwd, timeout)

    if security_policy is not None and not security_policy.is_runtime_allowed(command[0]):
        raise ToolError(f"Runtime not allowed by security policy: {Path(command[0]).name}")

    run_env = _build_env(env=env, security_policy=security_policy)

    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=run_env,
            input=input_text,
            preexec_fn=_memory_limiter(memory_limit_mb),
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %.1fs: %s", timeout, cmd_str)
        raise ShellTimeoutError(f"Command timed out after {timeout}s: {cmd_str}")
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {e}") from e
    except OSError as e:
        raise ToolError(f"Failed to run command: {e}") from e

    stdout = _truncate_output(result.stdout)
    stderr = _truncate_output(result.stderr)
    logger.debug(
        "Command finished: rc=%d stdout=%d chars stderr=%d chars",
        result.returncode, len(stdout), len(stderr),
    )
    return ShellResult(
        command=cmd_str,
        return_code=result.returncode,
        stdout=stdout,
        stderr=stderr,
    )


def _memory_limiter(memory_limit_mb: Optional[int]) -> Optional[Callable[[], None]]:
    if not memory_limit_mb or sys.platform == "win32":
        return None

    import resource

    limit = memory_limit_mb * 1024 * 1024

    def _apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    return _apply


def _truncate_output(text: str) -> str:
    if len(text.encode("utf-8")) <= MAX_OUTPUT_BYTES:
        return text

    encoded = text.encode("utf-8")[:MAX_OUTPUT_BYTES]
    truncated = encoded.decode("utf-8", errors="ignore")
    return truncated + "\n... [output truncated]"


def _build_env(
    env: Optional[dict[str, str]],
    security_policy: Optional[SecurityPolicy],
) -> dict[str, str]:
    if security_policy is None:
        base_env = dict(os.environ)
    else:
        base_env = security_policy.build_subprocess_env()

    if env:
        base_env.update(env)

    return base_env
