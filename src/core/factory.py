"""Component factory for Agent Foundry.

Creates and wires every component (repository, sandbox, generation
backend, verification gate, ledger, dispatcher, worker, War Room mediator,
loop) so the CLI and tests receive fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from src.agents.war_room import WarRoomMediator
from src.agents.worker import CodeWorker
from src.core.config import (
    AppConfig,
    ModelRegistry,
    PromptLoader,
    load_config,
    load_model_registry,
)
from src.db.base import RepositoryBase
from src.db.engine import DatabaseEngine
from src.db.memory import InMemoryRepository
from src.db.repository import Repository
from src.ledger.proof_ledger import ProofLedger
from src.llm.backend import GenerationBackend, build_generation_backend
from src.llm.client import OpenRouterClient
from src.llm.router import ModelRouter
from src.orchestrator.audit import AuditTrail
from src.orchestrator.dispatcher import Dispatcher
from src.orchestrator.loop import OrchestratorLoop
from src.orchestrator.notifications import StatusNotifier
from src.security.policy import SecurityPolicy
from src.tools.sandbox import Sandbox, build_sandbox
from src.verification.critic import SemanticCritic
from src.verification.verifier import ArtifactVerifier

logger = logging.getLogger("foundry.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; the CLI and the loop pick the
    references they need.
    """

    config: AppConfig
    model_registry: ModelRegistry
    repository: RepositoryBase
    llm_client: OpenRouterClient
    model_router: ModelRouter
    backend: GenerationBackend
    security_policy: SecurityPolicy
    sandbox: Sandbox
    verifier: ArtifactVerifier
    audit: AuditTrail
    notifier: StatusNotifier
    dispatcher: Dispatcher
    worker: CodeWorker
    mediator: WarRoomMediator
    loop: OrchestratorLoop
    ledger: Optional[ProofLedger] = None
    db_engine: Optional[DatabaseEngine] = None


class ComponentFactory:
    """Factory for creating and wiring all Foundry components.

    Usage:
        bundle = ComponentFactory.create(env="test")
        bundle.loop.run_once()
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        initialize_schema: bool = True,
        config: Optional[AppConfig] = None,
        repository: Optional[RepositoryBase] = None,
        backend: Optional[GenerationBackend] = None,
        sandbox: Optional[Sandbox] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY env var.
            initialize_schema: Whether to run schema.sql on startup (PostgreSQL only).
            config: Pre-built config; skips the YAML cascade when given.
            repository, backend, sandbox: Overrides for tests and embedding.

        Returns:
            ComponentBundle with all components ready to use.
        """
        logger.info("Initializing components...")

        # --- Config ---
        config = config or load_config(config_dir=config_dir, env=env)
        model_registry = load_model_registry(config_dir=config_dir)
        prompt_loader = PromptLoader(config_dir / "prompts" if config_dir else None)
        logger.info("Config loaded (%d model roles)", len(model_registry.roles))

        # --- Persistence ---
        db_engine = None
        if repository is None:
            if config.database.backend == "memory":
                repository = InMemoryRepository()
                logger.info("Using in-memory repository")
            else:
                db_engine = DatabaseEngine(config.database)
                if initialize_schema:
                    db_engine.initialize_schema()
                    logger.info("Database schema initialized")
                repository = Repository(db_engine)

        # --- Observability ---
        obs = config.observability
        audit = AuditTrail(repository, Path(obs.trace_jsonl_path) if obs.trace_jsonl_path else None)
        notifier = StatusNotifier(
            Path(obs.notifications_jsonl_path) if obs.notifications_jsonl_path else None
        )

        # --- Generation ---
        llm_client = OpenRouterClient(config=config.llm, api_key=api_key)
        model_router = ModelRouter(model_registry)
        backend = backend or build_generation_backend(config.llm, model_router, primary_client=llm_client)
        logger.info("LLM client configured (base_url=%s)", config.llm.base_url)

        # --- Security policy & sandbox ---
        security_policy = SecurityPolicy.from_config(config.security, config.mediator.workspace_dir)
        sandbox = sandbox or build_sandbox(config.sandbox, security_policy)

        # --- Verification gate & ledger ---
        critic = None
        if config.verifier.enable_critic:
            critic = SemanticCritic(
                backend,
                params=model_router.get_params(config.verifier.critic_role),
                prompt_loader=prompt_loader,
                fail_open=config.verifier.critic_fail_open,
            )
        verifier = ArtifactVerifier(sandbox, config.verifier, critic)
        ledger = None
        if config.ledger.enabled:
            ledger = ProofLedger(repository, verifier, config.ledger, audit)

        # --- Agents & loop ---
        dispatcher = Dispatcher(repository, config.dispatcher, audit, notifier)
        worker = CodeWorker(dispatcher, backend, model_router, verifier, ledger, prompt_loader)
        mediator = WarRoomMediator(
            repository, backend, model_router, sandbox,
            config=config.mediator,
            security_policy=security_policy,
            audit=audit,
            notifier=notifier,
            prompt_loader=prompt_loader,
        )
        loop = OrchestratorLoop(dispatcher, worker, mediator, config.dispatcher, progress_callback)

        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            model_registry=model_registry,
            repository=repository,
            llm_client=llm_client,
            model_router=model_router,
            backend=backend,
            security_policy=security_policy,
            sandbox=sandbox,
            verifier=verifier,
            audit=audit,
            notifier=notifier,
            dispatcher=dispatcher,
            worker=worker,
            mediator=mediator,
            loop=loop,
            ledger=ledger,
            db_engine=db_engine,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.loop.shutdown(wait=True)
        bundle.llm_client.close()
        bundle.repository.close()
        logger.info("All components shut down")
