"""Factory for creating LLM clients from configuration."""

import os

from agent_playbook.core.config import LLMConfig, get_config
from agent_playbook.llm.client import (
    AnthropicClient,
    GoogleClient,
    LLMClient,
    MockLLMClient,
    OpenAIClient,
    OpenRouterClient,
)

# Credential environment variable per provider
PROVIDER_ENV_KEYS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_GENERATIVE_AI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Order in which alternate providers are tried after the primary one
FALLBACK_ORDER = ("anthropic", "openai", "google")

FALLBACK_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o-mini",
    "google": "gemini-2.0-flash",
}

_CLIENTS: dict[str, type[LLMClient]] = {
    "anthropic": AnthropicClient,
    "openai": OpenAIClient,
    "google": GoogleClient,
    "openrouter": OpenRouterClient,
}


def get_available_providers() -> list[str]:
    """Providers in fallback order whose credentials are present in the environment."""
    return [p for p in FALLBACK_ORDER if os.getenv(PROVIDER_ENV_KEYS[p])]


def create_llm_client(
    config: LLMConfig | None = None,
    provider: str | None = None,
    model: str | None = None,
) -> LLMClient:
    """Create an LLM client based on configuration.

    Args:
        config: LLMConfig to use. If None, loads from global config.
        provider: Overrides ``config.provider``
        model: Overrides ``config.model``

    Returns:
        LLMClient instance for the configured provider.

    Raises:
        ValueError: If provider is not supported or its API key is missing.
    """
    if config is None:
        config = get_config().llm

    provider = (provider or config.provider).lower()
    model = model or config.model

    if provider == "mock":
        return MockLLMClient()

    client_cls = _CLIENTS.get(provider)
    if client_cls is None:
        raise ValueError(
            f"Unsupported LLM provider: {provider}. "
            f"Supported providers: mock, {', '.join(_CLIENTS)}"
        )
    return client_cls(
        model=model,
        default_temperature=config.temperature,
        default_max_tokens=config.max_tokens,
    )
