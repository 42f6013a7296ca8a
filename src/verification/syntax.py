"""Syntax layer of the verification gate.

Python is parsed in-process with ``ast``. JavaScript and TypeScript are
parsed by node inside the sandbox after module syntax and markdown fences
are stripped, so a candidate written as an ES module still parses as a
script. A missing parser is a failure, never a silent pass.
"""

from __future__ import annotations

import ast
import re
import time

from src.core.models import CheckResult
from src.tools.sandbox import PARSER_UNAVAILABLE_EXIT, Sandbox, normalize_language

_FENCE_LINE = re.compile(r"(?m)^\s*```[\w+-]*\s*$\n?")

_MODULE_SYNTAX = (
    (re.compile(r"import\s+type\s+[^;\n]*?from\s+['\"][^'\"]+['\"];?[ \t]*"), ""),
    (re.compile(r"import\s*\{[^}]*\}\s*from\s*['\"][^'\"]+['\"];?[ \t]*"), ""),
    (re.compile(r"import\s+[^;\n]*?\s+from\s+['\"][^'\"]+['\"];?[ \t]*"), ""),
    (re.compile(r"import\s+['\"][^'\"]+['\"];?[ \t]*"), ""),
    (re.compile(r"export\s+default\s+"), ""),
    (re.compile(r"export\s*\{[^}]*\}(\s*from\s*['\"][^'\"]+['\"])?;?"), ""),
    (re.compile(r"export\s+\*\s+from\s+['\"][^'\"]+['\"];?"), ""),
    (re.compile(r"\bexport\s+"), ""),
    (re.compile(r"await\s+import\s*\([^)]+\)"), "{}"),
)

_DECLARATION_ONLY = re.compile(r"(?m)^\s*(?:export\s+)?(interface|type|declare)\s")

_JS_EXECUTABLE = (
    re.compile(r"\bfunction\b"),
    re.compile(r"\bconst\b.*="),
    re.compile(r"\blet\b.*="),
    re.compile(r"\bclass\b"),
    re.compile(r"=>\s*\{"),
    re.compile(r"console\.\w+\("),
)

_PY_EXECUTABLE = (
    re.compile(r"(?m)^\s*(async\s+)?def\s+\w+"),
    re.compile(r"(?m)^\s*class\s+\w+"),
    re.compile(r"(?m)^\s*[A-Za-z_][\w.]*\s*(:[^=\n]+)?=[^=]"),
    re.compile(r"\bprint\("),
)


def strip_code_fences(code: str) -> str:
    return _FENCE_LINE.sub("", code).strip()


def strip_module_syntax(code: str) -> str:
    """Remove import/export syntax that a classic script cannot contain."""
    result = code
    for pattern, replacement in _MODULE_SYNTAX:
        result = pattern.sub(replacement, result)
    return result


def is_declaration_only(code: str) -> bool:
    return bool(_DECLARATION_ONLY.search(code))


def is_executable(code: str, language: str) -> bool:
    """Whether the artifact looks like something worth running.

    Pure type/interface declarations get syntax-only validation.
    """
    lang = normalize_language(language)
    if lang == "python":
        return any(p.search(code) for p in _PY_EXECUTABLE)
    if is_declaration_only(code):
        return False
    return any(p.search(code) for p in _JS_EXECUTABLE)


class SyntaxChecker:
    """Parses an artifact in its declared language."""

    def __init__(self, sandbox: Sandbox):
        self.sandbox = sandbox

    def check(self, code: str, language: str) -> CheckResult:
        started = time.monotonic()
        lang = normalize_language(language)
        source = strip_code_fences(code)

        if lang == "python":
            result = self._check_python(source)
        elif lang in ("javascript", "typescript"):
            result = self._check_script(source, lang)
        else:
            result = CheckResult(passed=False, message=f"Syntax error: unsupported language '{language}'")

        result.duration_ms = _elapsed_ms(started)
        return result

    def _check_python(self, source: str) -> CheckResult:
        try:
            ast.parse(source)
        except SyntaxError as e:
            return CheckResult(passed=False, message=f"Syntax error: {e.msg} (line {e.lineno})")
        return CheckResult(passed=True)

    def _check_script(self, source: str, lang: str) -> CheckResult:
        outcome = self.sandbox.check_syntax(strip_module_syntax(source), lang)
        if outcome.success:
            return CheckResult(passed=True)
        if outcome.error or outcome.timed_out or outcome.exit_code == PARSER_UNAVAILABLE_EXIT:
            detail = outcome.error or outcome.stderr.strip() or "parser did not respond"
            return CheckResult(passed=False, message=f"Syntax check unavailable: {detail}")
        detail = _first_line(outcome.stderr) or f"parser exited with code {outcome.exit_code}"
        return CheckResult(passed=False, message=f"Syntax error: {detail}")


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
