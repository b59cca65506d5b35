"""AI provider factory."""

from __future__ import annotations

from inboxpilot.ai.base import AIProvider
from inboxpilot.ai.ollama import OllamaProvider
from inboxpilot.ai.anthropic_provider import AnthropicProvider


def get_provider(model_spec: str, config: dict | None = None) -> tuple[AIProvider, str]:
    """Parse 'provider:model_name' and return (provider_instance, model_name).

    If no colon is present, assumes ollama as the provider.
    """
    if ":" in model_spec:
        provider_name, model_name = model_spec.split(":", 1)
    else:
        provider_name = "ollama"
        model_name = model_spec

    config = config or {}

    if provider_name == "ollama":
        return OllamaProvider(
            base_url=config.get("ollama_base_url", "http://localhost:11434"),
            api_key=config.get("ollama_api_key", ""),
            embedding_model=config.get("embedding_model", "nomic-embed-text"),
        ), model_name
    elif provider_name == "anthropic":
        return AnthropicProvider(), model_name
    else:
        raise ValueError(f"Unknown AI provider: {provider_name!r}. Use 'ollama' or 'anthropic'.")
