"""OpenRouter chat-completions client for Agent Foundry.

Worker threads share one client, so the per-model failure counters and
cooldown deadlines sit behind a lock. A request is retried with exponential
backoff on rate limits, 5xx responses and transport errors. A model that keeps
failing is benched for ``model_cooldown_seconds`` while the chain moves on.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from src.core.config import LLMConfig
from src.core.exceptions import (
    AuthenticationError,
    LLMError,
    ModelNotFoundError,
    RateLimitError,
    ResponseParseError,
)

logger = logging.getLogger("foundry.llm")

MAX_BACKOFF_SECONDS = 60.0


class ChatMessage(BaseModel):
    role: str  # "system", "user" or "assistant"
    content: str


class Completion(BaseModel):
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    raw: dict[str, Any] = Field(default_factory=dict)


class ModelCooldowns:
    """Consecutive-failure counters and cooldown deadlines keyed by model id."""

    def __init__(self, failure_threshold: int, cooldown_seconds: float):
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = max(1.0, float(cooldown_seconds))
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}
        self._benched_until: dict[str, float] = {}

    def remaining(self, model: str) -> float:
        with self._lock:
            until = self._benched_until.get(model)
            if until is None:
                return 0.0
            left = until - time.monotonic()
            if left <= 0:
                del self._benched_until[model]
                return 0.0
            return left

    def succeeded(self, model: str) -> None:
        with self._lock:
            self._failures.pop(model, None)
            self._benched_until.pop(model, None)

    def failed(self, model: str) -> bool:
        """Count one failure. Returns True when this failure benched the model."""
        with self._lock:
            count = self._failures.get(model, 0) + 1
            if count < self.failure_threshold:
                self._failures[model] = count
                return False
            self._failures.pop(model, None)
            self._benched_until[model] = time.monotonic() + self.cooldown_seconds
            return True

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        now = time.monotonic()
        with self._lock:
            models = sorted(set(self._failures) | set(self._benched_until))
            return {
                model: {
                    "failure_count": self._failures.get(model, 0),
                    "cooldown_remaining_seconds": round(
                        max(0.0, self._benched_until.get(model, 0.0) - now), 3
                    ),
                }
                for model in models
            }

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()
            self._benched_until.clear()


class OpenRouterClient:
    """Blocking client for OpenRouter's OpenAI-compatible API.

    Model ids come from config/models.yaml through the ModelRouter; nothing
    in this class names a model. ``transport`` lets tests swap the network
    layer for an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config or LLMConfig()
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.base_url = (base_url or self.config.base_url).rstrip("/")
        self.cooldowns = ModelCooldowns(
            self.config.model_failure_threshold,
            self.config.model_cooldown_seconds,
        )
        self._transport = transport
        self._http: Optional[httpx.Client] = None
        self._http_lock = threading.Lock()

    @property
    def http(self) -> httpx.Client:
        with self._http_lock:
            if self._http is None:
                self._http = httpx.Client(
                    base_url=self.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "HTTP-Referer": "https://github.com/agent-foundry",
                        "X-Title": "Agent Foundry",
                    },
                )
            return self._http

    def complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Completion:
        """Send one chat completion request, retrying transient failures.

        Raises:
            AuthenticationError: no key configured, or the key was refused.
            ModelNotFoundError: the provider does not know ``model``.
            RateLimitError: still rate limited after the last retry.
            ResponseParseError: the provider answered with an unusable body.
            LLMError: any other failure once retries are exhausted.
        """
        if not self.api_key:
            raise AuthenticationError("OPENROUTER_API_KEY not set")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "temperature": temperature if temperature is not None else self.config.default_temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        request_timeout = timeout if timeout is not None else self.config.timeout_seconds
        attempts = self.config.provider_retries + 1
        last_error = "no attempt made"
        rate_limited = False

        for attempt in range(attempts):
            final = attempt == attempts - 1
            try:
                resp = self.http.post("/chat/completions", json=payload, timeout=request_timeout)
            except httpx.TransportError as e:
                last_error = f"network error: {e}"
                rate_limited = False
                self._pause(model, attempt, last_error, final)
                continue

            if resp.status_code == 401:
                raise AuthenticationError("Invalid API key")
            if resp.status_code == 404:
                raise ModelNotFoundError(f"Model not found: {model}")
            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                rate_limited = resp.status_code == 429
                self._pause(model, attempt, last_error, final)
                continue
            if resp.is_error:
                raise LLMError(f"Request to {model} rejected with HTTP {resp.status_code}: {resp.text[:200]}")
            return _parse_completion(resp, model)

        error_type = RateLimitError if rate_limited else LLMError
        raise error_type(f"Request failed after {attempts} attempts: {last_error}")

    def complete_with_fallback(
        self,
        messages: list[ChatMessage],
        models: list[str],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Completion:
        """Walk the model chain (``models`` then ``llm.fallback_models``) in order.

        Benched models are skipped. An authentication failure ends the walk
        at once since every model shares the key.
        """
        chain = list(dict.fromkeys(m for m in [*models, *self.config.fallback_models] if m))
        if not chain:
            raise LLMError("No models provided for completion")

        problems: list[str] = []
        for model in chain:
            wait = self.cooldowns.remaining(model)
            if wait > 0:
                problems.append(f"{model}: cooling down ({wait:.1f}s)")
                logger.warning("Skipping model '%s' due to cooldown (%.1fs remaining)", model, wait)
                continue

            try:
                completion = self.complete(
                    messages,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    timeout=timeout,
                )
            except AuthenticationError:
                raise
            except LLMError as e:
                problems.append(f"{model}: {e}")
                if self.cooldowns.failed(model):
                    logger.warning(
                        "Model '%s' benched for %.0fs after %d consecutive failures",
                        model, self.cooldowns.cooldown_seconds, self.cooldowns.failure_threshold,
                    )
                else:
                    logger.warning("Model '%s' failed, trying next in chain", model)
                continue

            self.cooldowns.succeeded(model)
            return completion

        raise LLMError("All models failed.\n" + "\n".join(problems))

    def get_model_failover_state(self) -> dict[str, dict[str, float | int]]:
        """Failure counts and remaining cooldown per model."""
        return self.cooldowns.snapshot()

    def close(self) -> None:
        with self._http_lock:
            if self._http is not None:
                self._http.close()
                self._http = None
        self.cooldowns.clear()

    def _pause(self, model: str, attempt: int, reason: str, final: bool) -> None:
        if final:
            return
        delay = backoff_delay(attempt, self.config.provider_backoff_seconds)
        logger.warning("%s on '%s'; retry %d in %.1fs", reason, model, attempt + 1, delay)
        time.sleep(delay)


def backoff_delay(attempt: int, base_seconds: float = 2.0) -> float:
    """Exponential backoff: base, 2x base, 4x base, ... capped at a minute."""
    return min(base_seconds * (2 ** attempt), MAX_BACKOFF_SECONDS)


def _parse_completion(resp: httpx.Response, requested_model: str) -> Completion:
    try:
        data = resp.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ResponseParseError(f"Malformed completion from {requested_model}: {e!r}") from e

    usage = data.get("usage") or {}
    completion = Completion(
        content=content or "",
        model=data.get("model") or requested_model,
        prompt_tokens=usage.get("prompt_tokens", 0),
        completion_tokens=usage.get("completion_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
        raw=data,
    )
    logger.debug("LLM response: model=%s tokens=%d", completion.model, completion.total_tokens)
    return completion
