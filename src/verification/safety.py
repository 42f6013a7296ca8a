"""Static scan for dangerous constructs in candidate code."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field

from src.core.models import CheckResult
from src.tools.sandbox import normalize_language

MAX_LOOP_ITERATIONS = 10_000_000
MAX_NESTING_DEPTH = 5
# Expensive math inside a loop only counts as blocking past this bound.
BLOCKING_ITERATIONS = 100_000

DANGEROUS_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"(?<![\w.])eval\s*\("), "eval() is dangerous"),
    (re.compile(r"\bnew\s+Function\s*\("), "new Function() is dangerous"),
    (re.compile(r"(?<![\w.])exec\s*\(\s*['\"`][^'\"`]*\$\{"), "Potential command injection via exec()"),
    (re.compile(r"\bdocument\.write(ln)?\s*\("), "document.write is unsafe HTML injection"),
    (re.compile(r"\.innerHTML\s*\+?=(?!=)\s*[^'\"\s]"), "innerHTML assigned without sanitization"),
    (re.compile(r"\bdangerouslySetInnerHTML\b"), "dangerouslySetInnerHTML is unsafe HTML injection"),
    (re.compile(r"__proto__"), "__proto__ manipulation is dangerous"),
    (re.compile(r"\bprocess\.exit\s*\("), "process.exit should not be in production code"),
    (re.compile(r"\brm\s+-(rf|fr)\b"), "Destructive shell command detected (rm -rf)"),
    (re.compile(r"\bfs\.(rmSync|rmdirSync)\s*\("), "Destructive filesystem call (fs.rmSync)"),
    (re.compile(r"\bshutil\.rmtree\s*\("), "Destructive filesystem call (shutil.rmtree)"),
    (re.compile(r"\bos\.system\s*\("), "os.system() runs a shell command"),
    (re.compile(r"\bsubprocess\.\w+\([^)]*shell\s*=\s*True"), "subprocess with shell=True"),
)

_PY_DANGEROUS = (
    (re.compile(r"(?<![\w.])exec\s*\("), "exec() is dangerous"),
    (re.compile(r"(?<![\w.])__import__\s*\("), "__import__() is dangerous"),
)

_JS_INFINITE = (
    re.compile(r"\bwhile\s*\(\s*(true|1)\s*\)"),
    re.compile(r"\bfor\s*\(\s*;\s*;\s*\)"),
)
_PY_INFINITE = re.compile(r"(?m)^\s*while\s+(True|1)\s*:")
_LOOP_EXIT = re.compile(r"\b(break|return)\b")

_JS_LOOP_BOUND = re.compile(r"\bfor\s*\([^;]*;\s*[^;]*?<=?\s*([\d_]+)")
_PY_LOOP_BOUND = re.compile(r"\brange\(\s*(?:[\d_]+\s*,\s*)?([\d_]+)")

_JS_EXPENSIVE_LOOP = re.compile(
    r"\bfor\s*\([^;]*;[^;]*?<=?\s*([\d_]+)[^)]*\)\s*\{[^}]*(Math\.(pow|sin|cos|tan|sqrt|log|exp)\b|\*\*)"
)
_PY_EXPENSIVE_LOOP = re.compile(
    r"for\s+\w+\s+in\s+range\(\s*(?:[\d_]+\s*,\s*)?([\d_]+)[^)]*\)\s*:[^\n]*\n((?:[ \t]+[^\n]*\n?)*)"
)
_PY_EXPENSIVE_MATH = re.compile(r"math\.(pow|sin|cos|tan|sqrt|log|exp)\b|\*\*")

_JS_LOOP_TOKEN = re.compile(r"\b(for|while|do)\b|\{|\}")
_PY_LOOP_LINE = re.compile(r"^(\s*)(for|while)\b.*:\s*(#.*)?$")


@dataclass
class SafetyReport:
    issues: list[str] = field(default_factory=list)
    nesting_depth: int = 0
    estimated_iterations: int = 0

    @property
    def is_safe(self) -> bool:
        return not self.issues


class CodeSafetyAnalyzer:
    """Pattern scan for dangerous calls and runaway loops."""

    def analyze(self, code: str, language: str = "javascript") -> SafetyReport:
        python = normalize_language(language) == "python"
        report = SafetyReport()

        for pattern, message in DANGEROUS_PATTERNS:
            if pattern.search(code):
                report.issues.append(message)
        if python:
            for pattern, message in _PY_DANGEROUS:
                if pattern.search(code):
                    report.issues.append(message)

        bounds = _PY_LOOP_BOUND.findall(code) if python else _JS_LOOP_BOUND.findall(code)
        report.estimated_iterations = max((_to_int(b) for b in bounds), default=0)
        if report.estimated_iterations > MAX_LOOP_ITERATIONS:
            report.issues.append(f"Expensive loop detected: ~{report.estimated_iterations:,} iterations")

        report.nesting_depth = _python_loop_depth(code) if python else _js_loop_depth(code)
        if report.nesting_depth > MAX_NESTING_DEPTH:
            report.issues.append(f"Deeply nested loops: {report.nesting_depth} levels")

        if self._has_infinite_loop(code, python):
            report.issues.append("Infinite loop without break or return")
        if self._has_blocking_loop(code, python):
            report.issues.append("Blocking computation: expensive math inside a large loop")
        return report

    def check(self, code: str, language: str = "javascript") -> CheckResult:
        started = time.monotonic()
        report = self.analyze(code, language)
        duration_ms = round((time.monotonic() - started) * 1000, 2)
        if report.issues:
            return CheckResult(
                passed=False,
                message="Safety violation: " + "; ".join(report.issues),
                duration_ms=duration_ms,
            )
        return CheckResult(passed=True, duration_ms=duration_ms)

    def _has_infinite_loop(self, code: str, python: bool) -> bool:
        if python:
            found = bool(_PY_INFINITE.search(code))
        else:
            found = any(p.search(code) for p in _JS_INFINITE)
        return found and not _LOOP_EXIT.search(code)

    def _has_blocking_loop(self, code: str, python: bool) -> bool:
        if python:
            return any(
                _to_int(bound) > BLOCKING_ITERATIONS and _PY_EXPENSIVE_MATH.search(body)
                for bound, body in _PY_EXPENSIVE_LOOP.findall(code)
            )
        return any(
            _to_int(match.group(1)) > BLOCKING_ITERATIONS
            for match in _JS_EXPENSIVE_LOOP.finditer(code)
        )


def _to_int(text: str) -> int:
    try:
        return int(text.replace("_", ""))
    except ValueError:
        return 0


def _js_loop_depth(code: str) -> int:
    """Deepest stack of brace blocks opened by a loop header."""
    stack: list[bool] = []
    pending_loop = False
    deepest = 0
    for match in _JS_LOOP_TOKEN.finditer(code):
        token = match.group(0)
        if token == "{":
            stack.append(pending_loop)
            pending_loop = False
            deepest = max(deepest, sum(stack))
        elif token == "}":
            if stack:
                stack.pop()
        else:
            pending_loop = True
    return deepest


def _python_loop_depth(code: str) -> int:
    loop_indents: list[int] = []
    deepest = 0
    for line in code.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        indent = len(line) - len(line.lstrip())
        while loop_indents and loop_indents[-1] >= indent:
            loop_indents.pop()
        if _PY_LOOP_LINE.match(line):
            loop_indents.append(indent)
            deepest = max(deepest, len(loop_indents))
    return deepest
