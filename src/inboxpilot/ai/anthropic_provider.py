"""Anthropic AI provider: Claude API client."""

from __future__ import annotations

from inboxpilot.ai.base import parse_json_text
from inboxpilot.errors import ConfigurationError, RateLimitError


class AnthropicProvider:
    """Anthropic API client for Claude models."""

    def __init__(self):
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic()
        return self._client

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
        temperature: float | None = None,
    ):
        """Send a prompt to Claude and return the parsed response."""
        import anthropic

        client = self._get_client()

        kwargs: dict = {
            "model": model,
            "max_tokens": 4096,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature

        try:
            response = client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            raise RateLimitError(str(e)) from e

        response_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                response_text += block.text

        return parse_json_text(response_text)

    def embed(self, texts: list[str]) -> list[list[float]]:
        raise ConfigurationError(
            "Anthropic has no embeddings endpoint; set ai.provider to ollama for FAQ dedupe"
        )
