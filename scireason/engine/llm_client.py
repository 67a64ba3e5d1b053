"""LLM client used as the step processor's model collaborator.

Providers are tried in order (the configured one first). Each provider may
carry several comma-separated API keys; a rate limit or timeout moves to the
next key, any other error moves to the next provider. Requests to the same
provider are spaced by a minimum interval.
"""

import asyncio
import logging
import os
import random
import time
from typing import Optional

from dotenv import load_dotenv

from scireason.contracts.schemas import GenerationResponse, TokenUsage
from scireason.errors import ModelUnavailableError

load_dotenv()

logger = logging.getLogger(__name__)

GEMINI_TIMEOUT_SECONDS = 60.0
SKIP_PROVIDER = "SKIP_PROVIDER_MISMATCH"

# provider -> (model env var, default model)
DEFAULT_MODELS = {
    "cerebras": ("CEREBRAS_MODEL", "llama-3.3-70b"),
    "groq": ("GROQ_MODEL", "llama-3.3-70b-versatile"),
    "gemini": ("GEMINI_MODEL", "gemini-2.5-flash"),
}

# USD per 1M tokens, (input, output)
PROVIDER_PRICING = {
    "cerebras": (0.20, 0.20),
    "groq": (0.50, 0.50),
    "gemini": (0.10, 0.40),
}


def estimate_cost(provider: str, prompt_tokens: int, completion_tokens: int) -> float:
    price_in, price_out = PROVIDER_PRICING.get(provider, (0.0, 0.0))
    return round((prompt_tokens * price_in + completion_tokens * price_out) / 1_000_000, 6)


def _is_retryable(exc: Exception) -> bool:
    """Rate limits and timeouts are worth another key on the same provider."""
    text = str(exc)
    return "429" in text or "RESOURCE_EXHAUSTED" in text or isinstance(exc, asyncio.TimeoutError)


class ProviderStats:
    """Keys, rotation pointer and request spacing for one provider."""

    def __init__(self, name: str, interval: float):
        self.name = name
        self.interval = interval
        self.last_request_time = 0.0
        self.lock = asyncio.Lock()

        raw = os.getenv(f"{name.upper()}_API_KEY", "")
        self.keys = [k.strip() for k in raw.split(",") if k.strip()]
        self.current_key_index = 0

    def get_current_key(self) -> Optional[str]:
        return self.keys[self.current_key_index] if self.keys else None

    def rotate_key(self) -> bool:
        """Advance to the next key. True when the rotation wrapped around."""
        if not self.keys:
            return False
        self.current_key_index = (self.current_key_index + 1) % len(self.keys)
        return self.current_key_index == 0

    async def wait_turn(self) -> None:
        async with self.lock:
            elapsed = time.time() - self.last_request_time
            if elapsed < self.interval:
                await asyncio.sleep(self.interval - elapsed + random.uniform(0.1, 0.5))
            self.last_request_time = time.time()


def default_providers() -> dict[str, ProviderStats]:
    return {
        "cerebras": ProviderStats("cerebras", 2.0),
        "groq": ProviderStats("groq", 3.0),  # 20 RPM against a 30 RPM limit
        "gemini": ProviderStats("gemini", 15.0),  # free tier
    }


class LLMClient:
    """Answers step prompts through the first provider that responds."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        providers: Optional[dict[str, ProviderStats]] = None,
    ):
        pool = providers if providers is not None else default_providers()
        first = (provider or os.getenv("LLM_PROVIDER", "cerebras")).lower()
        self.providers = sorted(pool.values(), key=lambda stats: stats.name != first)

        self.model = model
        self.total_tokens = 0
        self.total_cost = 0.0
        self._clients: dict[str, object] = {}

    @property
    def has_credentials(self) -> bool:
        return any(stats.keys for stats in self.providers)

    async def _get_client(self, stats: ProviderStats):
        key = stats.get_current_key()
        if not key:
            return None
        if stats.name == "gemini":
            # built per call inside the worker thread
            return "GEMINI_MARKER"

        slot = f"{stats.name}_{stats.current_key_index}"
        if slot not in self._clients:
            if stats.name == "groq":
                from groq import AsyncGroq
                self._clients[slot] = AsyncGroq(api_key=key)
            elif stats.name == "cerebras":
                from cerebras.cloud.sdk import AsyncCerebras
                self._clients[slot] = AsyncCerebras(api_key=key)
        return self._clients.get(slot)

    def _resolve_model(self, provider: str, override: Optional[str]) -> str:
        """Model name for ``provider``; ``"provider/model"`` overrides pin one provider."""
        if override and "/" in override:
            wanted, name = override.split("/", 1)
            return name if wanted.lower() == provider else SKIP_PROVIDER
        if override:
            return override
        env_var, default = DEFAULT_MODELS.get(provider, ("", "llama-3.3-70b"))
        return os.getenv(env_var, default) if env_var else default

    async def _call_gemini(
        self, stats: ProviderStats, model_name: str, prompt: str, system_prompt: str | None
    ) -> tuple[str, TokenUsage]:
        import google.genai as genai
        from google.genai import types

        key = stats.get_current_key()

        def _generate():
            config = types.GenerateContentConfig(system_instruction=system_prompt) if system_prompt else None
            return genai.Client(api_key=key).models.generate_content(
                model=model_name, contents=prompt, config=config
            )

        response = await asyncio.wait_for(asyncio.to_thread(_generate), timeout=GEMINI_TIMEOUT_SECONDS)
        content = response.text or ""

        # No usage block from this SDK path; ~4 characters per token
        prompt_tokens = (len(prompt) + len(system_prompt or "")) // 4
        completion_tokens = len(content) // 4
        return content, TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost_usd=estimate_cost(stats.name, prompt_tokens, completion_tokens),
        )

    async def _call_chat(
        self, stats: ProviderStats, client, model_name: str, prompt: str, system_prompt: str | None
    ) -> tuple[str, TokenUsage]:
        messages = [{"role": "user", "content": prompt}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})

        response = await client.chat.completions.create(messages=messages, model=model_name)
        content = response.choices[0].message.content or ""

        if not response.usage:
            return content, TokenUsage()
        counted = response.usage
        return content, TokenUsage(
            prompt_tokens=counted.prompt_tokens,
            completion_tokens=counted.completion_tokens,
            total_tokens=counted.total_tokens,
            cost_usd=estimate_cost(stats.name, counted.prompt_tokens, counted.completion_tokens),
        )

    async def _try_provider(
        self, stats: ProviderStats, prompt: str, system_prompt: str | None, model_override: str | None
    ) -> tuple[Optional[GenerationResponse], Optional[Exception]]:
        """Attempt one provider across its keys."""
        last_error: Exception | None = None

        for _ in range(len(stats.keys) or 1):
            client = await self._get_client(stats)
            if not client:
                break
            model_name = self._resolve_model(stats.name, model_override or self.model)
            if model_name == SKIP_PROVIDER:
                break

            try:
                await stats.wait_turn()
                if stats.name == "gemini":
                    content, usage = await self._call_gemini(stats, model_name, prompt, system_prompt)
                else:
                    content, usage = await self._call_chat(stats, client, model_name, prompt, system_prompt)
            except Exception as e:
                last_error = e
                if not _is_retryable(e):
                    logger.error("[LLM] Error on %s: %s", stats.name, e)
                    break
                logger.warning("[LLM] %s throttled on key %d, rotating", stats.name, stats.current_key_index)
                stats.rotate_key()
                continue

            self.total_tokens += usage.total_tokens
            self.total_cost += usage.cost_usd
            return GenerationResponse(
                content=content, usage=usage, model_name=model_name, provider=stats.name
            ), None

        return None, last_error

    async def generate_content(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model_override: Optional[str] = None,
    ) -> Optional[GenerationResponse]:
        """First successful response across providers, or None when all fail."""
        last_error: Exception | None = None
        for stats in self.providers:
            response, error = await self._try_provider(stats, prompt, system_prompt, model_override)
            if response is not None:
                return response
            last_error = error or last_error

        logger.error("[LLM] No provider produced a response. Last error: %s", last_error)
        return None

    async def invoke(self, system_prompt: str, user_prompt: str) -> str:
        """Raises ModelUnavailableError when no provider answered."""
        response = await self.generate_content(user_prompt, system_prompt=system_prompt)
        if response is None:
            raise ModelUnavailableError("All LLM providers failed")
        return response.content
