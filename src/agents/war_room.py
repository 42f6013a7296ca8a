"""War Room mediator: the single recovery path for deadlocked tasks.

Polls tasks in WAR_ROOM, asks the ARCHITECT model for a synthesized fix,
and validates the proposed patch in isolation (syntax, then a sandbox run
under the hard timeout). Only a patch that passes is written to the
workspace, after which the task's retry budget is reset and it moves on to
IN_QA. Anything else leaves the task in WAR_ROOM with a readable reason for
the next attempt; a patch is never applied unverified.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from src.agents.base_agent import BaseAgent
from src.core.config import MediatorConfig, PromptLoader
from src.core.exceptions import FoundryError, ToolError
from src.core.models import AgentResult, AgentRole, MediationOutcome, Task, TaskStatus
from src.db.base import RepositoryBase
from src.llm.backend import GenerationBackend, is_stub_response
from src.llm.response_parser import extract_json_block, strip_code_fences
from src.llm.router import ModelRouter
from src.orchestrator import audit as trace_events
from src.orchestrator.audit import AuditTrail
from src.orchestrator.notifications import StatusNotifier
from src.orchestrator.task_router import TaskRouter
from src.security.policy import SecurityPolicy
from src.tools.file_ops import write_file
from src.tools.sandbox import Sandbox
from src.verification.runtime import RuntimeChecker
from src.verification.syntax import SyntaxChecker

MEDIATOR_AGENT_ID = "WAR_ROOM_MEDIATOR"

_EXTENSION_LANGUAGES = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
}

_DEFAULT_WAR_ROOM_PROMPT = """\
You are the WAR ROOM MEDIATOR.
A deadlock has occurred: a developer agent and its reviewers are stuck in a
loop of rejections and failed fixes. You have override authority.

1. Analyze why they are stuck.
2. Propose one final, synthesized solution that satisfies the requirements.
3. Provide the complete contents of the file that resolves it.

Output JSON ONLY:
{
  "analysis": "why the deadlock happened",
  "resolution": "the technical fix",
  "target_file": "relative path of the file to write, e.g. src/cart.ts",
  "language": "typescript | javascript | python",
  "final_code": "the complete file contents"
}"""


class WarRoomMediator(BaseAgent):
    """Resolves WAR_ROOM tasks with a verified, applied patch."""

    def __init__(
        self,
        repository: RepositoryBase,
        backend: GenerationBackend,
        model_router: ModelRouter,
        sandbox: Sandbox,
        config: Optional[MediatorConfig] = None,
        security_policy: Optional[SecurityPolicy] = None,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[StatusNotifier] = None,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        super().__init__(name="WarRoomMediator", role=AgentRole.ARCHITECT.value)
        self.repository = repository
        self.backend = backend
        self.model_router = model_router
        self.config = config or MediatorConfig()
        self.security_policy = security_policy or SecurityPolicy(
            workspace_dir=Path(self.config.workspace_dir).resolve()
        )
        self.audit = audit
        self.router = TaskRouter(repository, notifier)
        self.syntax = SyntaxChecker(sandbox)
        self.runtime = RuntimeChecker(sandbox)
        self._prompt_loader = prompt_loader or PromptLoader()

    def run_once(self) -> list[MediationOutcome]:
        """Attempt mediation for a bounded batch of WAR_ROOM tasks."""
        outcomes = []
        for task in self.repository.list_tasks(status=TaskStatus.WAR_ROOM, limit=self.config.batch_size):
            result = self.run(task)
            outcomes.append(MediationOutcome(
                task_id=task.id,
                resolved=result.status == "success",
                reason=result.data.get("reason") or result.error or "",
                target_file=result.data.get("target_file"),
                analysis=result.data.get("analysis"),
            ))
        return outcomes

    def process(self, input_data: Task) -> AgentResult:
        task = input_data
        proposal, problem = self._propose(task)
        if proposal is None:
            return self._reject(task, problem)

        target_file = proposal.get("target_file") or proposal.get("targetFile")
        final_code = proposal.get("final_code") or proposal.get("finalCode")
        if not target_file or not final_code:
            return self._reject(task, "proposal contained no patch (target_file and final_code are required)")

        final_code = strip_code_fences(str(final_code))
        language = self._language_for(task, str(target_file), proposal.get("language"))

        problem = self._validate(final_code, language)
        if problem:
            return self._reject(task, f"patch failed isolated validation: {problem}")

        try:
            written = write_file(target_file, final_code, security_policy=self.security_policy)
        except ToolError as e:
            return self._reject(task, f"patch could not be applied: {e}")

        analysis = str(proposal.get("analysis", ""))
        resolution = str(proposal.get("resolution", ""))
        self.router.transition(task, TaskStatus.IN_QA, {
            "retry_count": 0,
            "is_deadlocked": False,
            "blocked_reason": None,
            "result": {
                "output": final_code,
                "note": "Resolved by War Room",
                "analysis": analysis,
                "resolution": resolution,
                "target_file": str(target_file),
                "applied_path": str(written),
            },
        }, reason="deadlock resolved")

        self._trace(task, trace_events.DEADLOCK_RESOLVED, {
            "analysis": analysis,
            "resolution": resolution,
            "target_file": str(target_file),
            "language": language,
        })
        self.logger.info("Deadlock resolved for '%s'; patch written to %s", task.title, written)
        return AgentResult(
            agent_name=self.name,
            status="success",
            data={
                "task_id": str(task.id),
                "target_file": str(target_file),
                "analysis": analysis,
                "reason": resolution,
            },
        )

    def build_prompt(self, task: Task) -> tuple[str, str]:
        system_prompt = self._prompt_loader.load("war_room_system.txt", default=_DEFAULT_WAR_ROOM_PROMPT)
        parts = [
            f"Task: {task.title}",
            task.description,
            "Task Context:\n" + json.dumps(task.context_packet, indent=2, default=str),
            "Last Feedback (the blocker):\n" + json.dumps(task.review_feedback or {}, indent=2, default=str),
        ]
        if task.error_message:
            parts.append(f"Last error: {task.error_message}")
        if task.output_artifact:
            parts.append(f"Last rejected attempt:\n```\n{task.output_artifact}\n```")
        return system_prompt, "\n\n".join(p for p in parts if p)

    def _propose(self, task: Task) -> tuple[Optional[dict[str, Any]], str]:
        system_prompt, user_prompt = self.build_prompt(task)
        try:
            content = self.backend.generate(
                system_prompt, user_prompt, self.model_router.get_params(AgentRole.ARCHITECT),
            )
        except FoundryError as e:
            return None, f"generation backend error: {e}"
        if is_stub_response(content):
            return None, "generation backend unavailable (stub response)"
        proposal = extract_json_block(content)
        if proposal is None:
            return None, "mediator response was not valid JSON"
        return proposal, ""

    def _validate(self, code: str, language: str) -> str:
        """Empty string when the patch parses and runs; otherwise the failure."""
        syntax = self.syntax.check(code, language)
        if not syntax.passed:
            return syntax.message or "syntax check failed"
        runtime = self.runtime.check(code, language)
        if not runtime.passed:
            return runtime.message or "sandbox run failed"
        return ""

    def _language_for(self, task: Task, target_file: str, declared: Any) -> str:
        if declared:
            return str(declared).lower()
        by_extension = _EXTENSION_LANGUAGES.get(Path(target_file).suffix.lower())
        if by_extension:
            return by_extension
        return str(task.context_packet.get("language", "javascript"))

    def _reject(self, task: Task, problem: str) -> AgentResult:
        reason = (
            f"War Room mediation failed: {problem}. "
            "Task remains in War Room for another attempt."
        )
        self.repository.transition_task(task.id, TaskStatus.WAR_ROOM, {"blocked_reason": reason})
        self._trace(task, trace_events.DEADLOCK_MEDIATION_FAILED, {"reason": problem})
        self.logger.warning("Mediation failed for '%s': %s", task.title, problem)
        return AgentResult(
            agent_name=self.name,
            status="failure",
            error=problem,
            data={"task_id": str(task.id), "reason": problem},
        )

    def _trace(self, task: Task, event: str, metadata: dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.record(task.id, MEDIATOR_AGENT_ID, event, metadata)
