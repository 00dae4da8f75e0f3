"""
Remindly — LLM Provider Abstraction.

Single public function `complete()` that routes to the configured provider.
Provider is selected on first use via the LLM_PROVIDER env var.
Supports: gemini (default), anthropic, openai.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from src.config import ConfigurationError

logger = logging.getLogger(__name__)

_ProviderFn = Callable[[str, str, str, str, int], Awaitable[str]]

# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _complete_gemini(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(model_name=model, system_instruction=system)
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(max_output_tokens=max_tokens),
    )
    return response.text


async def _complete_anthropic(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


async def _complete_openai(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content or ""


_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "gemini":    (_complete_gemini,    "gemini-2.5-flash"),
    "anthropic": (_complete_anthropic, "claude-haiku-4-5-20251001"),
    "openai":    (_complete_openai,    "gpt-4o-mini"),
}


def _select_provider() -> tuple[_ProviderFn, str, str]:
    """Read settings and return (provider_fn, model, api_key).

    Raises ConfigurationError for an unknown provider or a missing key.
    """
    from src.config import settings

    provider_name = settings.LLM_PROVIDER.lower()
    if provider_name not in _PROVIDERS:
        raise ConfigurationError(
            f"Unknown LLM_PROVIDER={provider_name!r}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )
    if not settings.LLM_API_KEY:
        raise ConfigurationError("LLM_API_KEY not configured")

    fn, default_model = _PROVIDERS[provider_name]
    model = settings.LLM_MODEL or default_model

    logger.info("LLM provider: %s, model: %s", provider_name, model)
    return fn, model, settings.LLM_API_KEY


# Lazy singleton, populated on first successful call to complete()
_provider_fn: _ProviderFn | None = None
_model: str = ""
_api_key: str = ""


def reset_provider() -> None:
    """Forget the selected provider so the next call re-reads settings."""
    global _provider_fn, _model, _api_key
    _provider_fn, _model, _api_key = None, "", ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def complete(
    system: str,
    user_message: str,
    max_tokens: int = 256,
    timeout: float | None = None,
) -> str:
    """Send a prompt to the configured LLM provider and return the response text.

    Raises ConfigurationError, asyncio.TimeoutError, or the provider's own
    errors; callers should handle exceptions.
    """
    global _provider_fn, _model, _api_key

    if _provider_fn is None:
        _provider_fn, _model, _api_key = _select_provider()

    if timeout is None:
        from src.config import settings
        timeout = settings.EXTERNAL_TIMEOUT_SECONDS

    return await asyncio.wait_for(
        _provider_fn(_api_key, _model, system, user_message, max_tokens),
        timeout=timeout,
    )
