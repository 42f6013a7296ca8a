"""Output-proportionality check.

A small request that comes back as a sprawling artifact is a common
symptom of a worker inventing scope. The detector compares information
density and size of the output with the input request, scaled by how
complex the request sounds and by the worker role's baseline.
"""

from __future__ import annotations

import math
import re
import time
from collections import Counter
from dataclasses import dataclass

from src.core.models import CheckResult, RoleBaseline

_LOW_KEYWORDS = ("fix", "typo", "rename", "simple", "minor", "small", "tweak")
_MEDIUM_KEYWORDS = ("add", "update", "modify", "change", "implement")
_HIGH_KEYWORDS = ("create", "build", "full", "complete", "component", "feature", "service", "system")

_SIMPLE_TASK = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\bfix\b",
    r"\btypo\b",
    r"\brename\b",
    r"\badd\s+(a\s+)?log",
    r"\bconsole\.log",
    r"\bchange\s+(the\s+)?\w+\s+to\b",
    r"\bupdate\s+(the\s+)?\w+\b",
    r"\bremove\b",
    r"\bdelete\b",
    r"\bextract\b",
))
_COMPLEX_TASK = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\bfull\b",
    r"\bcomplete\b",
    r"\bcreate\s+(a\s+)?(new\s+)?(component|service|class|system)",
    r"\bbuild\b",
    r"\bimplement\b",
    r"\bwith\s+.*\s+and\s+",
))

_JS_IMPORT = re.compile(r"""import\s+.*?from\s+['"]([^'"]+)['"]""")
_PY_IMPORT = re.compile(r"(?m)^\s*(?:from\s+([\w.]+)\s+import|import\s+([\w.]+))")
_CLASS_DEF = re.compile(r"\bclass\s+\w+")
_FUNCTION_DEF = re.compile(r"\b(function|def\s+\w+|const\s+\w+\s*=\s*\(|=>\s*\{)")

MAX_SIMPLE_TASK_RATIO = 5.0


def shannon_entropy(text: str) -> float:
    """Bits per character of ``text``; 0 for empty input."""
    if not text:
        return 0.0
    length = len(text)
    return -sum((count / length) * math.log2(count / length) for count in Counter(text).values())


def complexity_multiplier(request: str) -> float:
    """How much output the request plausibly warrants, relative to 1.0."""
    lowered = request.lower()
    if any(kw in lowered for kw in _HIGH_KEYWORDS):
        if "with" in lowered and "and" in lowered:
            return 3.0
        if "full" in lowered or "complete" in lowered:
            return 2.5
        return 2.0
    if any(kw in lowered for kw in _MEDIUM_KEYWORDS):
        return 1.5
    if any(kw in lowered for kw in _LOW_KEYWORDS):
        return 0.8
    return 1.0


def is_simple_task(request: str) -> bool:
    simple = any(p.search(request) for p in _SIMPLE_TASK)
    complex_ = any(p.search(request) for p in _COMPLEX_TASK)
    return simple and not complex_


def combined_ratio(request: str, output: str) -> float:
    """Mean of the entropy ratio and the whitespace-normalized length ratio."""
    input_entropy = shannon_entropy(request)
    entropy_ratio = shannon_entropy(output) / input_entropy if input_entropy > 0 else 1.0
    input_size = len(re.sub(r"\s+", " ", request))
    size_ratio = len(re.sub(r"\s+", " ", output)) / input_size if input_size > 0 else 1.0
    return (entropy_ratio + size_ratio) / 2


def count_new_imports(output: str, request: str) -> int:
    known = _imports(request)
    return sum(1 for module in _import_list(output) if module not in known)


def _import_list(text: str) -> list[str]:
    modules = _JS_IMPORT.findall(text)
    for from_module, plain_module in _PY_IMPORT.findall(text):
        modules.append(from_module or plain_module)
    return modules


def _imports(text: str) -> set[str]:
    return set(_import_list(text))


@dataclass
class EntropyAnalysis:
    multiplier: float
    ratio: float
    max_ratio: float
    line_delta: int
    max_line_delta: float
    new_imports: int
    max_new_imports: int
    violations: list[str]


class EntropyDetector:
    """Flags output disproportionate to the request."""

    def analyze(self, request: str, output: str, baseline: RoleBaseline) -> EntropyAnalysis:
        multiplier = complexity_multiplier(request)
        max_ratio = baseline.max_complexity_ratio * multiplier
        max_line_delta = baseline.max_line_delta * multiplier
        max_new_imports = baseline.max_new_imports + 2 if multiplier > 1.5 else baseline.max_new_imports

        ratio = combined_ratio(request, output)
        line_delta = max(0, len(output.split("\n")) - len(request.split("\n")))
        new_imports = count_new_imports(output, request)

        violations = []
        if ratio > max_ratio:
            violations.append(f"entropy ratio {ratio:.2f} > {max_ratio:.2f}")
        if line_delta > max_line_delta:
            violations.append(f"line delta {line_delta} > {max_line_delta:g}")
        if new_imports > max_new_imports:
            violations.append(f"new imports {new_imports} > {max_new_imports}")
        overgeneration = self.overgeneration(request, output)
        if overgeneration:
            violations.append(overgeneration)

        return EntropyAnalysis(
            multiplier=multiplier,
            ratio=ratio,
            max_ratio=max_ratio,
            line_delta=line_delta,
            max_line_delta=max_line_delta,
            new_imports=new_imports,
            max_new_imports=max_new_imports,
            violations=violations,
        )

    def overgeneration(self, request: str, output: str) -> str:
        """Unrequested structure for a simple request, or '' when none."""
        if not is_simple_task(request):
            return ""
        size_ratio = len(output) / max(len(request), 1)
        if size_ratio > MAX_SIMPLE_TASK_RATIO:
            return f"output is {size_ratio:.1f}x larger than the input for a simple task"
        classes = len(_CLASS_DEF.findall(output))
        if classes and "class" not in request.lower():
            return f"created {classes} class(es) when none were requested"
        functions = len(_FUNCTION_DEF.findall(output))
        if functions > 2 and len(request.split()) < 10:
            return f"created {functions} functions for a simple request"
        return ""

    def check(self, request: str, output: str, baseline: RoleBaseline) -> CheckResult:
        started = time.monotonic()
        analysis = self.analyze(request, output, baseline)
        duration_ms = round((time.monotonic() - started) * 1000, 2)
        if analysis.violations:
            return CheckResult(
                passed=False,
                message="Entropy violation: " + ", ".join(analysis.violations),
                duration_ms=duration_ms,
            )
        return CheckResult(passed=True, duration_ms=duration_ms)
