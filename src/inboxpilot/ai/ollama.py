"""Ollama AI provider: HTTP client for local or hosted inference."""

from __future__ import annotations

import time

import httpx

from inboxpilot.ai.base import parse_json_text
from inboxpilot.errors import raise_for_status


class OllamaProvider:
    """Ollama HTTP API client for local or cloud inference."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        api_key: str = "",
        embedding_model: str = "nomic-embed-text",
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.embedding_model = embedding_model

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: dict) -> dict:
        max_retries = 3
        for attempt in range(max_retries):
            try:
                with httpx.Client(timeout=120.0) as client:
                    resp = client.post(
                        f"{self.base_url}{path}", json=payload, headers=self._headers(),
                    )
                raise_for_status(resp.status_code, resp.text, resp.headers.get("retry-after"))
                return resp.json()
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt < max_retries - 1:
                    time.sleep(2 ** attempt)
                    continue
                raise ConnectionError(
                    f"Failed to connect to Ollama at {self.base_url}: {e}"
                ) from e
        raise RuntimeError("unreachable")

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
        temperature: float | None = None,
    ):
        """Send a prompt to Ollama and return the parsed response."""
        payload: dict = {
            "model": model,
            "prompt": prompt,
            "stream": False,
        }
        if system:
            payload["system"] = system
        if response_format == "json":
            payload["format"] = "json"
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        data = self._post("/api/generate", payload)
        return parse_json_text(data.get("response", ""))

    def embed(self, texts: list[str]) -> list[list[float]]:
        data = self._post("/api/embed", {"model": self.embedding_model, "input": texts})
        return data.get("embeddings", [])
