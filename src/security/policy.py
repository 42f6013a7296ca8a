"""Execution policy for sandbox runs and workspace writes.

Provides:
- Runtime allowlisting for the sandbox (which interpreters may be launched)
- Path allowlisting with traversal checks
- Workspace boundary checks for resolved paths
- Environment sanitization for untrusted child processes
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from src.core.config import SecurityConfig


@dataclass
class SecurityPolicy:
    """Policy applied to sandboxed candidate code and mediator patch writes."""

    workspace_dir: Path = field(default_factory=lambda: Path(".").resolve())
    workspace_only: bool = True
    allowed_runtimes: list[str] = field(
        default_factory=lambda: ["node", "python", "python3", "docker"]
    )
    forbidden_paths: list[str] = field(default_factory=lambda: list(SecurityConfig().forbidden_paths))
    sanitize_env: bool = True
    safe_env_vars: list[str] = field(default_factory=lambda: list(SecurityConfig().safe_env_vars))

    @classmethod
    def from_config(cls, config: SecurityConfig, workspace_dir: str | Path) -> "SecurityPolicy":
        return cls(
            workspace_dir=Path(workspace_dir).resolve(),
            workspace_only=config.workspace_only,
            forbidden_paths=list(config.forbidden_paths),
            sanitize_env=config.sanitize_env,
            safe_env_vars=list(config.safe_env_vars),
        )

    def is_runtime_allowed(self, executable: str) -> bool:
        base = Path(executable).name
        if base in self.allowed_runtimes:
            return True
        # python3.12, python3.13 ...
        return base.startswith("python") and "python" in self.allowed_runtimes

    def is_path_allowed(self, path: str) -> bool:
        """Path pre-check before any filesystem operation."""
        if "\x00" in path:
            return False

        path_obj = Path(path)
        if any(part == ".." for part in path_obj.parts):
            return False

        lowered = path.lower()
        if "..%2f" in lowered or "%2f.." in lowered:
            return False

        expanded = Path(path).expanduser()

        for forbidden in self.forbidden_paths:
            forbidden_path = Path(forbidden).expanduser()
            if expanded == forbidden_path or _starts_with_path(expanded, forbidden_path):
                return False

        return True

    def is_resolved_path_allowed(self, resolved: Path) -> bool:
        if not self.workspace_only:
            return True
        return _starts_with_path(resolved, self.workspace_dir.resolve())

    def resolved_target(self, path: str | Path) -> Path:
        """Resolve a path against workspace while preserving relative inputs."""
        p = Path(path)
        if p.is_absolute():
            return p.resolve()
        return (self.workspace_dir / p).resolve()

    def build_subprocess_env(self, extra_env: dict[str, str] | None = None) -> dict[str, str]:
        """Build execution env with optional sanitization."""
        if self.sanitize_env:
            env = {k: os.environ[k] for k in self.safe_env_vars if k in os.environ}
        else:
            env = dict(os.environ)

        if extra_env:
            env.update(extra_env)

        return env


def _starts_with_path(path: Path, prefix: Path) -> bool:
    try:
        path.relative_to(prefix)
        return True
    except ValueError:
        return False
