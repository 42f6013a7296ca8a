"""Generation backends: the one seam through which prompts become text.

The core only ever calls ``generate(system_prompt, user_prompt, params)``.
``FallbackBackend`` keeps the system serviceable when the primary provider
is down: it walks an ordered chain of backends and, when every real backend
has failed, answers with a clearly labelled stub instead of blocking.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from src.core.config import GenerationParams, LLMConfig
from src.core.exceptions import FoundryError, LLMError
from src.llm.client import ChatMessage, OpenRouterClient
from src.llm.router import ModelRouter

logger = logging.getLogger("foundry.llm.backend")

STUB_MARKER = "[STUB RESPONSE]"


def is_stub_response(text: str) -> bool:
    return text.lstrip().startswith(STUB_MARKER)


class GenerationBackend(ABC):
    """Turns a prompt pair into candidate text."""

    name: str = "backend"

    @abstractmethod
    def generate(self, system_prompt: str, user_prompt: str, params: GenerationParams) -> str:
        """Return the generated text.

        Raises:
            LLMError: the backend could not produce a response.
        """


class OpenRouterBackend(GenerationBackend):
    """Generation through the OpenRouter client with per-role model chains."""

    def __init__(self, client: OpenRouterClient, router: ModelRouter, name: str = "openrouter"):
        self.client = client
        self.router = router
        self.name = name

    def generate(self, system_prompt: str, user_prompt: str, params: GenerationParams) -> str:
        role = params.role or "MID_DEV"
        messages = [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=user_prompt),
        ]
        response = self.client.complete_with_fallback(
            messages=messages,
            models=self.router.get_model_chain(role),
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            timeout=params.timeout_seconds,
        )
        return response.content


class StubBackend(GenerationBackend):
    """Last-resort backend. Its output is always marked as a stub."""

    name = "stub"

    def generate(self, system_prompt: str, user_prompt: str, params: GenerationParams) -> str:
        logger.warning("Serving stub response for role=%s; no generation backend available", params.role)
        return f"{STUB_MARKER} No generation backend was available for role {params.role or 'unknown'}."


class FallbackBackend(GenerationBackend):
    """Try each backend in order; the first successful answer wins."""

    name = "fallback"

    def __init__(self, backends: Sequence[GenerationBackend]):
        if not backends:
            raise LLMError("FallbackBackend needs at least one backend")
        self.backends = list(backends)

    def generate(self, system_prompt: str, user_prompt: str, params: GenerationParams) -> str:
        failures: list[str] = []
        for backend in self.backends:
            try:
                return backend.generate(system_prompt, user_prompt, params)
            except FoundryError as e:
                failures.append(f"{backend.name}: {e}")
                logger.warning("Backend '%s' failed (%s); degrading to next backend", backend.name, e)
        raise LLMError("All generation backends failed.\n" + "\n".join(failures))


def build_generation_backend(
    config: LLMConfig,
    router: ModelRouter,
    primary_client: Optional[OpenRouterClient] = None,
) -> GenerationBackend:
    """Wire the degradation chain: primary -> alternate -> stub."""
    primary = OpenRouterBackend(primary_client or OpenRouterClient(config=config), router, name="primary")
    chain: list[GenerationBackend] = [primary]

    if config.alternate_base_url:
        alternate_client = OpenRouterClient(
            config=config,
            api_key=os.getenv(config.alternate_api_key_env, ""),
            base_url=config.alternate_base_url,
        )
        chain.append(OpenRouterBackend(alternate_client, router, name="alternate"))

    if config.enable_stub_fallback:
        chain.append(StubBackend())

    return chain[0] if len(chain) == 1 else FallbackBackend(chain)
