"""Semantic critic: a second model reviews the artifact for fabricated APIs.

The critic is the only check that depends on an external service. When the
service errors or answers with something that is not a ``{passed, reason}``
object, ``fail_open`` decides the outcome. The default (True) keeps an
infrastructure hiccup from blocking otherwise-good output, at the cost of
letting an unreviewed artifact through. High-assurance deployments set
``verifier.critic_fail_open: false``.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from src.core.config import GenerationParams, PromptLoader
from src.core.exceptions import FoundryError
from src.core.models import CheckResult
from src.llm.backend import GenerationBackend, is_stub_response
from src.llm.response_parser import extract_json_block

logger = logging.getLogger("foundry.verification.critic")

_DEFAULT_CRITIC_PROMPT = """\
You are a code reviewer checking generated code for HALLUCINATIONS only.

Flag the code ONLY if it calls methods, functions, types or packages that do
not exist in the language runtime or in well-known libraries (for example
Promise.wait, Array.prototype.unique, JSON.parseString, React.useFetch).

Do NOT flag:
- valid but complex code, unusual style or missing error handling
- real built-ins such as Array.prototype.map, Promise.all, Object.entries
- object spread, optional chaining, async/await, generators
- identifiers the code declares itself
- ambient objects such as req, res, fetch, localStorage or document

Respond with a single JSON object and nothing else:
{"passed": true|false, "reason": "<one sentence>"}"""

MAX_ARTIFACT_CHARS = 8000


class SemanticCritic:
    """Asks the generation backend for a structured pass/fail verdict."""

    def __init__(
        self,
        backend: GenerationBackend,
        params: Optional[GenerationParams] = None,
        prompt_loader: Optional[PromptLoader] = None,
        fail_open: bool = True,
    ):
        self.backend = backend
        self.params = params or GenerationParams(role="QA", max_tokens=512, temperature=0.0)
        self.fail_open = fail_open
        self._prompt_loader = prompt_loader or PromptLoader()

    def check(self, code: str, language: str, request: str = "") -> CheckResult:
        started = time.monotonic()
        result = self._review(code, language, request)
        result.duration_ms = round((time.monotonic() - started) * 1000, 2)
        return result

    def _review(self, code: str, language: str, request: str) -> CheckResult:
        system_prompt = self._prompt_loader.load("critic_system.txt", default=_DEFAULT_CRITIC_PROMPT)
        user_prompt = (
            f"Task: {request or '(none given)'}\n\n"
            f"Language: {language}\n\n"
            f"```{language}\n{code[:MAX_ARTIFACT_CHARS]}\n```"
        )
        try:
            content = self.backend.generate(system_prompt, user_prompt, self.params)
        except FoundryError as e:
            return self._unavailable(f"critic backend error: {e}")

        if is_stub_response(content):
            return self._unavailable("critic backend answered with a stub")

        verdict = extract_json_block(content)
        if verdict is None or not isinstance(verdict.get("passed"), bool):
            return self._unavailable("critic response was not a {passed, reason} object")

        reason = str(verdict.get("reason") or "").strip()
        if verdict["passed"]:
            return CheckResult(passed=True, message=reason or None)
        return CheckResult(passed=False, message=f"Critic rejected: {reason or 'no reason given'}")

    def _unavailable(self, detail: str) -> CheckResult:
        # Fail-open is a named policy, not a catch-all: see verifier.critic_fail_open.
        if self.fail_open:
            logger.warning("Semantic critic unavailable (%s); failing open", detail)
            return CheckResult(passed=True, message=f"Critic unavailable, passed by policy: {detail}")
        logger.warning("Semantic critic unavailable (%s); failing closed", detail)
        return CheckResult(passed=False, message=f"Critic unavailable: {detail}")
