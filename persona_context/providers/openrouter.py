"""OpenRouterProvider: OpenAI-compatible chat completions via httpx.

Serves both the summary model (``complete``) and the streamed chat reply
(``stream_chat``). Works with any server exposing /v1/chat/completions.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator

import httpx

from ..types import LLMProviderError
from .base import MAX_RETRIES, BaseProvider

logger = logging.getLogger(__name__)


class OpenRouterProvider(BaseProvider):
    """LLM provider for OpenRouter or any OpenAI-compatible endpoint."""

    def __init__(
        self,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "mistralai/mistral-7b-instruct",
        temperature: float = 0.3,
        api_key: str | None = None,
        api_key_env: str = "OPENROUTER_API_KEY",
        timeout: float = 120.0,
        title: str = "persona-context",
        max_retries: int = MAX_RETRIES,
    ) -> None:
        super().__init__(max_retries=max_retries)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.api_key = api_key if api_key is not None else os.environ.get(api_key_env, "")
        self.title = title
        self._timeout = timeout

    def _provider_name(self) -> str:
        return "openrouter"

    def _get_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _get_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": self.title,
        }

    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        return {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }

    def _extract_text(self, data: dict) -> str:
        choices = data.get("choices", [])
        if choices:
            return choices[0].get("message", {}).get("content", "") or ""
        return ""

    async def stream_chat(
        self,
        messages: list[dict],
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas from a streamed chat completion.

        Non-2xx responses raise LLMProviderError before any delta is yielded.
        """
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream(
                    "POST", self._get_url(), headers=self._get_headers(), json=payload,
                ) as response:
                    if response.status_code >= 300:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise LLMProviderError(
                            f"HTTP {response.status_code}: {body[:500]}",
                            provider=self._provider_name(),
                            status_code=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        delta = parse_sse_line(line)
                        if delta is None:
                            break
                        if delta:
                            yield delta
        except httpx.HTTPError as e:
            raise LLMProviderError(f"HTTP error: {e}", provider=self._provider_name()) from e


def parse_sse_line(line: str) -> str | None:
    """Content delta of one SSE line. ``""`` for non-content lines, None at [DONE]."""
    line = line.strip()
    if not line.startswith("data:"):
        return ""
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE payload: %s", data[:100])
        return ""
    if "error" in event:
        err = event["error"]
        message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
        raise LLMProviderError(f"Stream error: {message}", provider="openrouter")
    choices = event.get("choices") or []
    if not choices:
        return ""
    return choices[0].get("delta", {}).get("content") or ""


__all__ = ["OpenRouterProvider", "parse_sse_line"]
