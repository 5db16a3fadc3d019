"""LLM provider base class.

Every provider implements three methods:
  - complete(messages, model=...) -> str       (returns response text)
  - stream_text_deltas(messages, model=...)    (yields text delta strings)
  - list_models() -> list[dict]                (models the server can run)

The model is chosen per call because each chat request names its own.
Failures surface as ``errors.ProviderError``.

To add a new provider:
  1. Create llm/providers/your_provider.py
  2. Subclass LLMProvider
  3. Register it in llm/providers/__init__.py
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generator


class LLMProvider(ABC):
    """Abstract base for LLM providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'ollama', 'openai')."""
        ...

    @abstractmethod
    def complete(self, messages: list[dict], *, model: str) -> str:
        """Send messages and return the full response text."""
        ...

    @abstractmethod
    def stream_text_deltas(self, messages: list[dict], *, model: str) -> Generator[str, None, None]:
        """Send messages and yield text deltas as they arrive."""
        ...

    @abstractmethod
    def list_models(self) -> list[dict]:
        """Return the models available on the server (at least a ``name`` key)."""
        ...

    def close(self) -> None:
        """Release network resources.  Default: nothing to release."""
