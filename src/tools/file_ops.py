"""Workspace writes for patches the War Room has already validated.

A write lands atomically: the content goes to a temporary sibling which then
replaces the target, so a reader never sees half a file. The replaced file
is kept as ``<name>.bak``.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from src.core.exceptions import ToolError
from src.security.policy import SecurityPolicy

logger = logging.getLogger("foundry.tools.file_ops")


def write_file(
    path: str | Path,
    content: str,
    backup: bool = True,
    security_policy: SecurityPolicy | None = None,
) -> Path:
    """Write ``content`` to ``path`` and return the path written.

    With a security policy, relative paths resolve inside its workspace and
    anything that escapes it (traversal, forbidden prefixes, symlinked
    targets) is refused before the filesystem is touched.

    Raises:
        ToolError: the path is refused or the write fails.
    """
    target = Path(path) if security_policy is None else _resolve_write_path(path, security_policy)

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        if backup and target.is_file():
            backup_path = target.with_name(target.name + ".bak")
            shutil.copy2(target, backup_path)
            logger.debug("Backup created: %s", backup_path)

        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise ToolError(f"Failed to write {target}: {e}") from e

    logger.debug("Wrote %d bytes to %s", len(content), target)
    return target


def _resolve_write_path(path: str | Path, security_policy: SecurityPolicy) -> Path:
    path_str = str(path)
    if not security_policy.is_path_allowed(path_str):
        raise ToolError(f"Path not allowed by security policy: {path_str}")

    # Only the directory is resolved; the final component must not be followed.
    requested = Path(path)
    parent = security_policy.resolved_target(requested.parent)
    if not security_policy.is_resolved_path_allowed(parent):
        raise ToolError(f"Resolved path escapes workspace: {parent}")

    target = parent / requested.name
    if target.is_symlink():
        raise ToolError(f"Refusing to write through symlink: {target}")
    return target
