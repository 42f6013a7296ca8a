"""Verification gate: runs every check over a candidate artifact.

Checks run in a fixed order (syntax, sandbox, api, entropy, safety,
critic). A syntax failure short-circuits: the remaining checks are reported
as skipped. The critic runs only when enabled and every earlier check
passed. The verdict is the AND of the checks that ran, and the proof hash
binds input, output and each check's outcome to the verification time.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Optional

from src.core.config import VerifierConfig
from src.core.models import (
    CHECK_ORDER,
    AgentRole,
    CheckResult,
    RoleBaseline,
    VerificationResult,
    baseline_for,
)
from src.tools.sandbox import Sandbox, normalize_language
from src.verification.api_validator import APIValidator
from src.verification.critic import SemanticCritic
from src.verification.entropy import EntropyDetector
from src.verification.hashing import compute_proof_hash, hash_logic, sha256_hex
from src.verification.runtime import RuntimeChecker
from src.verification.safety import CodeSafetyAnalyzer
from src.verification.syntax import SyntaxChecker, strip_code_fences

logger = logging.getLogger("foundry.verification")


class ArtifactVerifier:
    """Multi-layer gate every generated artifact passes before acceptance.

    Args:
        sandbox: Isolated execution primitive for parsing and running candidates.
        config: Which optional checks are enabled.
        critic: Semantic critic; the critic check is skipped when None.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        config: Optional[VerifierConfig] = None,
        critic: Optional[SemanticCritic] = None,
    ):
        self.config = config or VerifierConfig()
        self.critic = critic
        self.safety = CodeSafetyAnalyzer()
        self.syntax = SyntaxChecker(sandbox)
        self.runtime = RuntimeChecker(sandbox, self.safety)
        self.api_validator = APIValidator()
        self.entropy = EntropyDetector()

    def verify(
        self,
        agent_id: str,
        task_id: Optional[str],
        input_prompt: str,
        candidate: str,
        language: str = "javascript",
        role_baseline: RoleBaseline | AgentRole | str | None = None,
    ) -> VerificationResult:
        input_hash = sha256_hex(input_prompt or "")
        output_hash = sha256_hex(candidate or "")
        metadata = {"agent_id": agent_id, "task_id": task_id, "language": language}

        if not candidate or not candidate.strip():
            checks = {name: CheckResult.skip("Empty artifact; nothing to verify") for name in CHECK_ORDER}
            proof_hash = compute_proof_hash(input_hash, output_hash, _outcomes(checks), timestamp=None)
            logger.debug("Empty artifact from agent %s; auto-pass", agent_id)
            return VerificationResult(
                passed=True,
                checks=checks,
                proof_hash=proof_hash,
                input_hash=input_hash,
                output_hash=output_hash,
                metadata={**metadata, "empty": True},
            )

        code = strip_code_fences(candidate)
        baseline = role_baseline if isinstance(role_baseline, RoleBaseline) else baseline_for(role_baseline)
        checks = self._run_checks(input_prompt or "", code, language, baseline)

        passed = all(check.passed for check in checks.values())
        timestamp = datetime.now(UTC)
        proof_hash = compute_proof_hash(input_hash, output_hash, _outcomes(checks), timestamp.isoformat())
        metadata["logic_hash"] = hash_logic(code)

        result = VerificationResult(
            passed=passed,
            checks=checks,
            proof_hash=proof_hash,
            input_hash=input_hash,
            output_hash=output_hash,
            timestamp=timestamp,
            metadata=metadata,
        )
        if passed:
            logger.info("Artifact from agent %s (task %s) verified", agent_id, task_id)
        else:
            name, message = result.first_failure
            logger.info("Artifact from agent %s (task %s) rejected by %s: %s", agent_id, task_id, name, message)
        return result

    def _run_checks(
        self, request: str, code: str, language: str, baseline: RoleBaseline,
    ) -> dict[str, CheckResult]:
        checks: dict[str, CheckResult] = {}
        lang = normalize_language(language) or language

        checks["syntax"] = self.syntax.check(code, lang)
        if not checks["syntax"].passed:
            for name in CHECK_ORDER[1:]:
                checks[name] = CheckResult.skip("Skipped: syntax check failed")
            return checks

        if self.config.enable_sandbox:
            checks["sandbox"] = self.runtime.check(code, lang)
        else:
            checks["sandbox"] = CheckResult.skip("Sandbox disabled")

        checks["api"] = self.api_validator.check(code, lang)

        if self.config.enable_entropy:
            checks["entropy"] = self.entropy.check(request, code, baseline)
        else:
            checks["entropy"] = CheckResult.skip("Entropy check disabled")

        checks["safety"] = self.safety.check(code, lang)

        if not self.config.enable_critic or self.critic is None:
            checks["critic"] = CheckResult.skip("Critic disabled")
        elif not all(check.passed for check in checks.values()):
            checks["critic"] = CheckResult.skip("Skipped: earlier check failed")
        else:
            checks["critic"] = self.critic.check(code, lang, request)
        return checks


def _outcomes(checks: dict[str, CheckResult]) -> dict[str, bool]:
    return {name: checks[name].passed for name in CHECK_ORDER}
