"""Isolated execution primitive for candidate code.

Two implementations share one contract, ``execute(code, language)`` and
``check_syntax(code, language)``, both returning an ExecutionResult:

- DockerSandbox (default): the programs run inside ``docker run --network
  none`` with a read-only root, and memory, CPU and pid limits.
- SubprocessSandbox: node / python child process in a throwaway directory,
  sanitized environment, hard wall-clock timeout and a memory cap. Python
  runs under an audit hook that refuses writes outside the directory,
  sockets and child processes. Node runs under its permission model when
  the runtime has one (file access limited to the directory, no child
  processes). Local development only: node keeps network access.

Neither raises for a misbehaving candidate. Timeouts, crashes and missing
runtimes come back as a result with ``error`` set, and callers decide.
"""

from __future__ import annotations

import logging
import sys
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from src.core.config import SandboxConfig
from src.core.exceptions import SandboxError, ShellTimeoutError, ToolError
from src.security.policy import SecurityPolicy
from src.tools.shell import run_command

logger = logging.getLogger("foundry.tools.sandbox")

_LANGUAGE_ALIASES = {
    "javascript": "javascript",
    "js": "javascript",
    "jsx": "javascript",
    "node": "javascript",
    "typescript": "typescript",
    "ts": "typescript",
    "tsx": "typescript",
    "python": "python",
    "py": "python",
    "python3": "python",
}

_FILENAMES = {
    "javascript": "main.js",
    "typescript": "main.ts",
    "python": "main.py",
}

# Parse-only check run inside node: strips TypeScript types when asked, then
# compiles the source as a classic script without executing it.
_NODE_SYNTAX_CHECKER = """\
const fs = require('fs');
const vm = require('vm');
let src = fs.readFileSync(process.argv[2], 'utf8');
if (process.argv[3] === 'typescript') {
  const mod = require('module');
  if (typeof mod.stripTypeScriptTypes !== 'function') {
    console.error('TypeScript parser unavailable in this node runtime');
    process.exit(3);
  }
  try {
    src = mod.stripTypeScriptTypes(src);
  } catch (e) {
    console.error('SyntaxError: ' + e.message);
    process.exit(1);
  }
}
try {
  new vm.Script(src, { filename: 'candidate' });
} catch (e) {
  console.error(e.name + ': ' + e.message);
  process.exit(1);
}
"""

PARSER_UNAVAILABLE_EXIT = 3

PYTHON_GUARD_FILE = "_sandbox_guard.py"

# Runs the candidate through runpy after installing an audit hook. Hooks
# cannot be removed once added, so the candidate cannot switch it off.
_PYTHON_GUARD = """\
import os
import runpy
import sys

ROOT = os.path.realpath(os.getcwd())
DENIED = frozenset({
    "os.system", "os.exec", "os.posix_spawn", "os.spawn", "os.fork", "os.forkpty",
    "os.kill", "os.killpg", "subprocess.Popen", "pty.spawn", "ctypes.dlopen",
    "socket.__new__", "socket.connect", "socket.bind", "socket.getaddrinfo",
})
PATH_EVENTS = frozenset({
    "os.remove", "os.rmdir", "os.rename", "os.mkdir", "os.chmod", "os.chown",
    "os.truncate", "os.symlink", "os.link", "os.utime", "shutil.rmtree",
    "shutil.move", "shutil.copyfile",
})
WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC


def inside(path):
    if isinstance(path, int):
        return True
    try:
        resolved = os.path.realpath(os.fsdecode(path))
    except (TypeError, ValueError):
        return True
    return resolved == ROOT or resolved.startswith(ROOT + os.sep)


def guard(event, args):
    if event in DENIED:
        raise PermissionError(f"Sandbox blocked {event}")
    if event == "open":
        path, mode, flags = args
        writing = (isinstance(mode, str) and any(c in mode for c in "wax+")) or (
            isinstance(flags, int) and flags & WRITE_FLAGS
        )
        if writing and not inside(path):
            raise PermissionError(f"Sandbox blocked write outside workdir: {path}")
    elif event in PATH_EVENTS:
        for arg in args:
            if isinstance(arg, (str, bytes, os.PathLike)) and not inside(arg):
                raise PermissionError(f"Sandbox blocked {event} outside workdir: {arg}")


sys.addaudithook(guard)
target = sys.argv[1]
sys.argv = sys.argv[1:]
runpy.run_path(target, run_name="__main__")
"""

_node_permission_flags: dict[str, Optional[str]] = {}
_node_permission_lock = threading.Lock()


def normalize_language(language: Optional[str]) -> str:
    """Map a language tag to javascript/typescript/python, or '' if unknown."""
    if not language:
        return ""
    return _LANGUAGE_ALIASES.get(language.strip().lower(), "")


@dataclass
class ExecutionResult:
    """Outcome of one sandboxed run."""
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float = 0.0
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


class Sandbox(ABC):
    """Isolated runner for untrusted snippets."""

    def __init__(self, config: Optional[SandboxConfig] = None, security_policy: Optional[SecurityPolicy] = None):
        self.config = config or SandboxConfig()
        self.security_policy = security_policy or SecurityPolicy()

    def execute(self, code: str, language: str) -> ExecutionResult:
        lang = normalize_language(language)
        if not lang:
            return _error_result(f"Unsupported language for sandbox: {language}")
        return self._run(code, lang, syntax_only=False)

    def check_syntax(self, code: str, language: str) -> ExecutionResult:
        """Parse without executing. JavaScript and TypeScript only."""
        lang = normalize_language(language)
        if lang not in ("javascript", "typescript"):
            return _error_result(f"No sandbox parser for language: {language}")
        return self._run(code, lang, syntax_only=True)

    def _run(self, code: str, lang: str, syntax_only: bool) -> ExecutionResult:
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="foundry-sandbox-") as workdir:
            work = Path(workdir)
            (work / _FILENAMES[lang]).write_text(code, encoding="utf-8", errors="surrogatepass")
            if syntax_only:
                (work / "check_syntax.js").write_text(_NODE_SYNTAX_CHECKER, encoding="utf-8")
            try:
                result = self._launch(work, lang, syntax_only)
            except ShellTimeoutError:
                return ExecutionResult(
                    stdout="",
                    stderr="",
                    exit_code=-1,
                    duration_ms=_elapsed_ms(started),
                    timed_out=True,
                    error=f"Execution exceeded {self.config.timeout_seconds}s timeout",
                )
            except (SandboxError, ToolError) as e:
                logger.warning("Sandbox could not run %s candidate: %s", lang, e)
                return _error_result(str(e), duration_ms=_elapsed_ms(started))
        return ExecutionResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            duration_ms=_elapsed_ms(started),
        )

    @abstractmethod
    def _launch(self, workdir: Path, lang: str, syntax_only: bool) -> ExecutionResult:
        """Run the prepared workdir; may raise ShellTimeoutError or ToolError."""


class SubprocessSandbox(Sandbox):
    """Local child process with timeout, memory cap, a scrubbed env and
    filesystem/process restrictions (see the module docstring)."""

    def _command(self, workdir: Path, lang: str, syntax_only: bool) -> tuple[list[str], Optional[int]]:
        if lang == "python":
            python = self.config.python_binary or sys.executable
            # V8 reserves more address space than it uses, so only python gets RLIMIT_AS.
            return [python, "-I", "-B", PYTHON_GUARD_FILE, _FILENAMES[lang]], self.config.memory_limit_mb

        node = [self.config.node_binary, f"--max-old-space-size={self.config.memory_limit_mb}"]
        permission = self.node_permission_flag()
        if permission:
            root = str(workdir.resolve())
            node += [permission, f"--allow-fs-read={root}", f"--allow-fs-write={root}", "--no-warnings"]
        if syntax_only:
            return [*node, "check_syntax.js", _FILENAMES[lang], lang], None
        if lang == "typescript":
            return [*node, "--experimental-strip-types", "--no-warnings", _FILENAMES[lang]], None
        return [*node, _FILENAMES[lang]], None

    def node_permission_flag(self) -> Optional[str]:
        """The permission-model flag this node understands, or None. Detected once per binary."""
        node = self.config.node_binary
        with _node_permission_lock:
            if node not in _node_permission_flags:
                _node_permission_flags[node] = self._detect_permission_flag(node)
            return _node_permission_flags[node]

    def _detect_permission_flag(self, node: str) -> Optional[str]:
        for flag in ("--permission", "--experimental-permission"):
            try:
                result = run_command([node, flag, "-e", "0"], timeout=10, security_policy=self.security_policy)
            except ToolError:
                return None
            if result.success:
                return flag
        logger.warning("%s has no permission model; JavaScript candidates get host filesystem access", node)
        return None

    def _launch(self, workdir: Path, lang: str, syntax_only: bool) -> ExecutionResult:
        if lang == "python":
            (workdir / PYTHON_GUARD_FILE).write_text(_PYTHON_GUARD, encoding="utf-8")
        command, memory_limit = self._command(workdir, lang, syntax_only)
        shell_result = run_command(
            command,
            cwd=str(workdir),
            timeout=self.config.timeout_seconds,
            env={"HOME": str(workdir), "TMPDIR": str(workdir), "NODE_OPTIONS": ""},
            security_policy=self.security_policy,
            memory_limit_mb=memory_limit,
        )
        return ExecutionResult(
            stdout=shell_result.stdout,
            stderr=shell_result.stderr,
            exit_code=shell_result.return_code,
        )


class DockerSandbox(Sandbox):
    """Throwaway container per run: no network, bounded memory, cpu and pids."""

    def _launch(self, workdir: Path, lang: str, syntax_only: bool) -> ExecutionResult:
        name = f"foundry-sandbox-{uuid.uuid4().hex[:12]}"
        image = self.config.docker_python_image if lang == "python" else self.config.docker_node_image
        if syntax_only:
            inner = ["node", "check_syntax.js", _FILENAMES[lang], lang]
        elif lang == "python":
            inner = ["python", "-I", "-B", _FILENAMES[lang]]
        elif lang == "typescript":
            inner = ["node", "--experimental-strip-types", "--no-warnings", _FILENAMES[lang]]
        else:
            inner = ["node", _FILENAMES[lang]]

        command = [
            self.config.docker_binary, "run", "--rm",
            "--name", name,
            "--network", "none",
            "-m", f"{self.config.memory_limit_mb}m",
            "--cpus", "1",
            "--pids-limit", "64",
            "--read-only",
            "-v", f"{workdir}:/sandbox:ro",
            "-w", "/sandbox",
            image,
            *inner,
        ]
        try:
            shell_result = run_command(
                command,
                timeout=self.config.timeout_seconds,
                security_policy=self.security_policy,
            )
        except ShellTimeoutError:
            self._kill(name)
            raise
        return ExecutionResult(
            stdout=shell_result.stdout,
            stderr=shell_result.stderr,
            exit_code=shell_result.return_code,
        )

    def _kill(self, name: str) -> None:
        try:
            run_command([self.config.docker_binary, "rm", "-f", name], timeout=10)
        except ToolError as e:
            logger.warning("Failed to remove timed-out sandbox container %s: %s", name, e)


def build_sandbox(config: SandboxConfig, security_policy: Optional[SecurityPolicy] = None) -> Sandbox:
    mode = config.mode.lower()
    if mode == "docker":
        return DockerSandbox(config, security_policy)
    if mode == "subprocess":
        return SubprocessSandbox(config, security_policy)
    raise SandboxError(f"Unknown sandbox mode: {config.mode}")


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


def _error_result(message: str, duration_ms: float = 0.0) -> ExecutionResult:
    return ExecutionResult(stdout="", stderr=message, exit_code=-1, duration_ms=duration_ms, error=message)
