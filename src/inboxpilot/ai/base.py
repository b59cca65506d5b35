"""AI provider protocol and response parsing."""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AIProvider(Protocol):
    """Protocol for AI model providers."""

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
        temperature: float | None = None,
    ) -> Any:
        """Send a prompt and get a structured response.

        Args:
            prompt: the user prompt
            model: model name/identifier
            system: optional system prompt
            response_format: if "json", request JSON output
            temperature: sampling temperature, provider default when None

        Returns:
            Parsed JSON (dict or list), or {"text": raw_text} if not JSON.
        """
        ...

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one embedding vector per input text."""
        ...


def parse_json_text(response_text: str) -> Any:
    """Parse model output as JSON, looking inside markdown code fences.

    Returns {"text": response_text} when nothing parses.
    """
    try:
        return json.loads(response_text)
    except json.JSONDecodeError:
        pass
    for fence in ("```json", "```"):
        if fence in response_text:
            try:
                start = response_text.index(fence) + len(fence)
                end = response_text.index("```", start)
                return json.loads(response_text[start:end].strip())
            except (ValueError, json.JSONDecodeError):
                continue
    # Bare array or object embedded in prose
    for open_char, close_char in (("[", "]"), ("{", "}")):
        start = response_text.find(open_char)
        end = response_text.rfind(close_char)
        if start != -1 and end > start:
            try:
                return json.loads(response_text[start:end + 1])
            except json.JSONDecodeError:
                continue
    return {"text": response_text}


def is_unparsed(result: Any) -> bool:
    """True when a provider returned raw text instead of JSON."""
    return isinstance(result, dict) and set(result) == {"text"}
