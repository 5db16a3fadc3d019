"""Inference provider loader.

LLM_PROVIDER picks the backend:

  - ollama  native ``/api/chat`` over httpx (default)
  - openai  any OpenAI-compatible server (LM Studio, vLLM, llama.cpp)

The openai SDK is imported only when that provider is selected.

Usage:
    from llm.providers import provider
    text = provider().complete(messages, model="llama3.2")
"""

from __future__ import annotations

import logging
import threading

from .base import LLMProvider

logger = logging.getLogger(__name__)

SUPPORTED = ("ollama", "openai")

_provider: LLMProvider | None = None
_lock = threading.Lock()


def _load_provider() -> LLMProvider:
    from settings import settings

    name = settings.LLM_PROVIDER.lower()

    if name == "ollama":
        from .ollama import OllamaProvider

        return OllamaProvider(
            base_url=settings.LLM_BASE_URL,
            timeout=settings.INFERENCE_TIMEOUT,
            connect_timeout=settings.INFERENCE_CONNECT_TIMEOUT,
        )
    if name == "openai":
        from .openai import OpenAIProvider

        return OpenAIProvider(
            api_key=settings.LLM_API_KEY,
            base_url=settings.LLM_BASE_URL,
            timeout=settings.INFERENCE_TIMEOUT,
        )
    raise ValueError(f"Unknown LLM_PROVIDER: '{name}'.  Supported: {', '.join(SUPPORTED)}")


def provider() -> LLMProvider:
    """Process-wide provider, created on first use.

    Turns run on worker threads, so creation is guarded.
    """
    global _provider
    with _lock:
        if _provider is None:
            _provider = _load_provider()
            logger.info(f"Inference provider: {_provider.name}")
        return _provider


def reset() -> None:
    """Close the current provider; the next ``provider()`` call builds a new one."""
    global _provider
    with _lock:
        if _provider is not None:
            _provider.close()
        _provider = None
