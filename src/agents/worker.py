"""Code worker: turns an ASSIGNED task into a verified artifact.

The worker prompts the generation backend with role-appropriate parameters,
strips the answer down to code and sends it through the verification gate
(through the proof ledger when it is enabled, so accepted artifacts are
recorded). The dispatcher owns every state change; the worker only reports.
"""

from __future__ import annotations

import json
from typing import Optional

from src.agents.base_agent import BaseAgent
from src.core.config import PromptLoader
from src.core.exceptions import FoundryError, RecordNotFoundError
from src.core.models import Agent, AgentResult, ContentType, Task, VerificationResult
from src.ledger.proof_ledger import ProofLedger
from src.llm.backend import GenerationBackend, is_stub_response
from src.llm.response_parser import strip_code_fences
from src.llm.router import ModelRouter
from src.orchestrator.dispatcher import Dispatcher
from src.verification.verifier import ArtifactVerifier

_DEFAULT_WORKER_PROMPT = """\
You are a {role} engineer on an autonomous software team.
Write the code the task asks for and nothing more.

Rules:
- Use only real, documented APIs of the language and its standard library.
- Do not invent helper packages or utility types.
- Return a single fenced code block in {language}. No prose outside it."""


class CodeWorker(BaseAgent):
    """Produces and verifies one artifact per ASSIGNED task."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        backend: GenerationBackend,
        model_router: ModelRouter,
        verifier: ArtifactVerifier,
        ledger: Optional[ProofLedger] = None,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        super().__init__(name="CodeWorker", role="worker")
        self.dispatcher = dispatcher
        self.repository = dispatcher.repository
        self.backend = backend
        self.model_router = model_router
        self.verifier = verifier
        self.ledger = ledger
        self._prompt_loader = prompt_loader or PromptLoader()

    def process(self, input_data: Task) -> AgentResult:
        task = input_data
        if task.assigned_to_agent_id is None:
            return AgentResult(agent_name=self.name, status="blocked", error="Task has no assigned worker")
        agent = self.repository.get_agent(task.assigned_to_agent_id)
        if agent is None:
            raise RecordNotFoundError(f"Worker {task.assigned_to_agent_id} not found")

        task = self.dispatcher.start_task(task.id, agent.id)
        try:
            return self._work(task, agent)
        except Exception as e:
            self._abandon(task, agent, e)
            raise

    def _work(self, task: Task, agent: Agent) -> AgentResult:
        language = str(task.context_packet.get("language", "javascript"))
        system_prompt, user_prompt = self.build_prompts(task, agent, language)

        try:
            raw = self.backend.generate(system_prompt, user_prompt, self.model_router.get_params(agent.role))
        except FoundryError as e:
            self.dispatcher.fail_task(task.id, agent.id, f"Generation failed: {e}")
            return AgentResult(agent_name=self.name, status="failure", error=str(e), data={"task_id": str(task.id)})

        if is_stub_response(raw):
            error = "Generation backend unavailable; stub response discarded"
            self.dispatcher.fail_task(task.id, agent.id, error)
            return AgentResult(agent_name=self.name, status="failure", error=error, data={"task_id": str(task.id)})

        artifact = strip_code_fences(raw)
        verification, block_index = self._verify(task, agent, artifact, user_prompt, language)
        self.dispatcher.submit_result(task.id, agent.id, artifact, verification)
        failure = verification.first_failure
        return AgentResult(
            agent_name=self.name,
            status="success" if verification.passed else "failure",
            data={
                "task_id": str(task.id),
                "agent_id": str(agent.id),
                "verified": verification.passed,
                "proof_hash": verification.proof_hash,
                "block_index": block_index,
            },
            error=f"{failure[0]}: {failure[1]}" if failure else None,
        )

    def _abandon(self, task: Task, agent: Agent, error: Exception) -> None:
        """Hand a started task back so neither it nor the worker stays held."""
        try:
            self.dispatcher.fail_task(task.id, agent.id, f"Worker crashed: {type(error).__name__}: {error}")
        except FoundryError as release_error:
            self.logger.error(
                "Could not release task %s after %s: %s", task.id, type(error).__name__, release_error,
            )

    def build_prompts(self, task: Task, agent: Agent, language: str) -> tuple[str, str]:
        template = self._prompt_loader.load("worker_system.txt", default=_DEFAULT_WORKER_PROMPT)
        system_prompt = template.replace("{role}", agent.role.value).replace("{language}", language)

        parts = [f"Task: {task.title}"]
        if task.description:
            parts.append(task.description)
        context = {k: v for k, v in task.context_packet.items() if k not in ("language", "required_context")}
        if context:
            parts.append("Context:\n" + json.dumps(context, indent=2, default=str))
        if task.review_feedback:
            parts.append("Your previous attempt was rejected:\n" + json.dumps(task.review_feedback, indent=2, default=str))
            if task.output_artifact:
                parts.append(f"Previous attempt:\n```{language}\n{task.output_artifact}\n```")
        return system_prompt, "\n\n".join(parts)

    def _verify(
        self, task: Task, agent: Agent, artifact: str, request: str, language: str,
    ) -> tuple[VerificationResult, Optional[int]]:
        if self.ledger is not None:
            stored = self.ledger.verify_and_store(
                str(agent.id),
                artifact,
                ContentType.CODE,
                {
                    "task_id": str(task.id),
                    "input_context": request,
                    "language": language,
                    "role_baseline": agent.role,
                },
            )
            return stored.verification, stored.statement.block_index if stored.statement else None

        verification = self.verifier.verify(
            agent_id=str(agent.id),
            task_id=str(task.id),
            input_prompt=request,
            candidate=artifact,
            language=language,
            role_baseline=agent.role,
        )
        return verification, None
