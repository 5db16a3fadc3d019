"""OpenAI-compatible LLM provider.

For local servers that speak the OpenAI Chat Completions API instead of
Ollama's native one (LM Studio, vLLM, llama.cpp server, Ollama's own
``/v1`` endpoint).  Set LLM_BASE_URL to the server's ``/v1`` URL.
"""

from __future__ import annotations

import logging
from typing import Generator

from errors import ProviderError
from .base import LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI Chat Completions API."""

    def __init__(self, api_key: str = "", base_url: str = "", *, timeout: float = 300.0, client=None):
        if client is None:
            from openai import OpenAI  # type: ignore[import-untyped]

            kwargs: dict = {"api_key": api_key or "not-needed", "timeout": timeout}
            if base_url:
                kwargs["base_url"] = base_url
            client = OpenAI(**kwargs)
        self._client = client
        logger.info(
            f"OpenAI-compatible provider ready"
            f"{' (base_url=' + base_url + ')' if base_url else ''}"
        )

    @property
    def name(self) -> str:
        return "openai"

    def complete(self, messages: list[dict], *, model: str) -> str:
        from openai import OpenAIError  # type: ignore[import-untyped]

        try:
            response = self._client.chat.completions.create(
                model=model,
                messages=messages,
            )
        except OpenAIError as e:
            raise ProviderError(f"OpenAI-compatible API error: {e}") from e
        return response.choices[0].message.content or ""

    def stream_text_deltas(self, messages: list[dict], *, model: str) -> Generator[str, None, None]:
        from openai import OpenAIError  # type: ignore[import-untyped]

        try:
            stream = self._client.chat.completions.create(
                model=model,
                messages=messages,
                stream=True,
            )
            for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta and delta.content:
                    yield delta.content
        except OpenAIError as e:
            raise ProviderError(f"OpenAI-compatible API error: {e}") from e

    def list_models(self) -> list[dict]:
        from openai import OpenAIError  # type: ignore[import-untyped]

        try:
            return [{"name": m.id} for m in self._client.models.list()]
        except OpenAIError as e:
            raise ProviderError(f"OpenAI-compatible API error: {e}") from e
