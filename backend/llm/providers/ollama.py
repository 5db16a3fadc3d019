"""Ollama LLM provider (local inference server).

Uses the native ``/api/chat`` endpoint.  In streaming mode Ollama answers
with newline-delimited JSON; each fragment may carry a ``message.content``
delta.  Fragments that do not parse are skipped, an ``error`` fragment
aborts the stream.
"""

from __future__ import annotations

import json
import logging
from typing import Generator

import httpx

from errors import ProtocolError, ProviderError
from .base import LLMProvider

logger = logging.getLogger(__name__)


def parse_stream_fragment(line: str) -> dict:
    """Decode one NDJSON line from ``/api/chat``.

    Raises ProtocolError when the line is not a JSON object.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Unparsable stream fragment: {line[:80]!r}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Unexpected stream fragment type: {type(data).__name__}")
    return data


def fragment_delta(data: dict) -> str:
    """Incremental content carried by a decoded fragment ("" if none)."""
    message = data.get("message") or {}
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


class OllamaProvider(LLMProvider):
    """Ollama chat API over HTTP."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        *,
        timeout: float = 300.0,
        connect_timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )
        logger.info(f"Ollama provider ready (base_url={self.base_url})")

    @property
    def name(self) -> str:
        return "ollama"

    def complete(self, messages: list[dict], *, model: str) -> str:
        payload = {"model": model, "messages": messages, "stream": False}
        try:
            response = self._client.post("/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama API error: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Ollama returned invalid JSON: {e}") from e

        if data.get("error"):
            raise ProviderError(f"Ollama API error: {data['error']}")
        return fragment_delta(data)

    def stream_text_deltas(self, messages: list[dict], *, model: str) -> Generator[str, None, None]:
        payload = {"model": model, "messages": messages, "stream": True}
        try:
            with self._client.stream("POST", "/api/chat", json=payload) as response:
                if response.is_error:
                    response.read()
                    raise ProviderError(
                        f"Ollama API error: {response.status_code} {response.reason_phrase}"
                        f"{': ' + response.text[:200] if response.text else ''}"
                    )
                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = parse_stream_fragment(line)
                    except ProtocolError as e:
                        logger.debug(f"Skipping fragment: {e}")
                        continue
                    if data.get("error"):
                        raise ProviderError(f"Ollama stream error: {data['error']}")
                    delta = fragment_delta(data)
                    if delta:
                        yield delta
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama API error: {e}") from e

    def list_models(self) -> list[dict]:
        try:
            response = self._client.get("/api/tags")
            response.raise_for_status()
            return list(response.json().get("models", []))
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama API error: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Ollama returned invalid JSON: {e}") from e

    def close(self) -> None:
        self._client.close()
