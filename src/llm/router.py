"""Model router for Agent Foundry.

Resolves worker roles (ARCHITECT, JUNIOR_DEV, QA, ...) to OpenRouter model IDs
and generation parameters using the user-managed config/models.yaml file.
"""

from __future__ import annotations

import logging

from src.core.config import GenerationParams, ModelRegistry
from src.core.models import AgentRole

logger = logging.getLogger("foundry.llm.router")


def _role_key(role: AgentRole | str) -> str:
    return role.value if isinstance(role, AgentRole) else str(role)


class ModelRouter:
    """Maps worker roles to LLM model IDs and role-appropriate parameters.

    The user manages config/models.yaml. This router reads it and resolves
    role names to OpenRouter model IDs, token budgets and temperatures. The
    core never depends on which provider answers.
    """

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def get_model(self, role: AgentRole | str) -> str:
        """Resolve a role to its configured model ID.

        Raises:
            ConfigError: If role not found in models.yaml.
        """
        key = _role_key(role)
        model = self.registry.get_model(key)
        logger.debug("Resolved role '%s' -> model '%s'", key, model)
        return model

    def get_model_chain(self, role: AgentRole | str) -> list[str]:
        """Resolve a role to [primary, fallbacks...], de-duplicated."""
        key = _role_key(role)
        primary = self.get_model(key)
        fallbacks = self.registry.get_fallback_models(key)

        chain: list[str] = []
        for model in [primary, *fallbacks]:
            if model and model not in chain:
                chain.append(model)

        logger.debug("Resolved model chain for role '%s': %s", key, chain)
        return chain

    def get_params(self, role: AgentRole | str) -> GenerationParams:
        return self.registry.get_params(_role_key(role))

    def list_roles(self) -> dict[str, str]:
        """Return all configured role -> model mappings."""
        return dict(self.registry.roles)
