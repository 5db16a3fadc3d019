"""Embedding service — text in, fixed-dimension vector out.

Two providers, selected by EMBEDDING_PROVIDER:

  - openai  Hosted embeddings API (text-embedding-3-small by default), asked
            for EMBEDDING_DIMENSION directly via the ``dimensions`` parameter.
            Also works against OpenAI-compatible servers via EMBEDDING_BASE_URL.
  - local   sentence-transformers model, loaded lazily on first call and
            truncated to EMBEDDING_DIMENSION.

Every message of every turn is embedded on the request path, so calls are
retried a bounded number of times with exponential backoff before a
ProviderError is raised.  Callers decide whether to degrade or abort.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

from errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Abstract base for embedding backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return the raw vector for *text*; may raise anything."""
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API."""

    DEFAULT_MODEL = "text-embedding-3-small"

    def __init__(self, api_key: str, model: str = "", dimension: int = 512, base_url: str = ""):
        from openai import OpenAI  # type: ignore[import-untyped]

        kwargs: dict = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        self._client = OpenAI(**kwargs)
        self._model = model or self.DEFAULT_MODEL
        self._dimension = dimension
        logger.info(f"OpenAI embeddings ready (model={self._model}, dim={dimension})")

    @property
    def name(self) -> str:
        return "openai"

    def embed(self, text: str) -> list[float]:
        response = self._client.embeddings.create(
            model=self._model,
            input=text,
            dimensions=self._dimension,
        )
        return list(response.data[0].embedding)


class LocalEmbeddingProvider(EmbeddingProvider):
    """sentence-transformers model running in-process, no API key required."""

    def __init__(self, model: str, dimension: int = 512):
        self._model_name = model
        self._dimension = dimension
        self._model = None

    @property
    def name(self) -> str:
        return "local"

    def _get_model(self):
        """Lazy-load and cache the SentenceTransformer model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self._model_name, truncate_dim=self._dimension)
            logger.info(f"Loaded local embedding model {self._model_name}")
        return self._model

    def embed(self, text: str) -> list[float]:
        vec = self._get_model().encode(text, convert_to_numpy=True).astype("float32")
        return vec.tolist()


class EmbeddingService:
    """Dimension-checked, retrying front for an EmbeddingProvider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        dimension: int,
        max_retries: int = 3,
        backoff: float = 0.5,
        sleep=time.sleep,
    ):
        self.provider = provider
        self.dimension = dimension
        self._max_retries = max(0, max_retries)
        self._backoff = backoff
        self._sleep = sleep

    def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ValidationError("Cannot embed blank text")

        attempts = self._max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                vector = self.provider.embed(text)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Embedding attempt {attempt}/{attempts} failed ({self.provider.name}): {e}"
                )
                if attempt < attempts:
                    self._sleep(self._backoff * (2 ** (attempt - 1)))
        else:
            raise ProviderError(f"Embedding provider failed: {last_error}") from last_error

        if len(vector) != self.dimension:
            raise ProviderError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )
        return [float(x) for x in vector]


def load_embedding_service() -> EmbeddingService:
    """Build the service configured by EMBEDDING_PROVIDER."""
    from settings import settings

    name = settings.EMBEDDING_PROVIDER.lower()
    if name == "openai":
        provider: EmbeddingProvider = OpenAIEmbeddingProvider(
            api_key=settings.EMBEDDING_API_KEY,
            model=settings.EMBEDDING_MODEL,
            dimension=settings.EMBEDDING_DIMENSION,
            base_url=settings.EMBEDDING_BASE_URL,
        )
    elif name == "local":
        provider = LocalEmbeddingProvider(
            model=settings.EMBEDDING_MODEL,
            dimension=settings.EMBEDDING_DIMENSION,
        )
    else:
        raise ValueError(
            f"Unknown EMBEDDING_PROVIDER: '{name}'.  Supported: openai, local"
        )

    return EmbeddingService(
        provider,
        dimension=settings.EMBEDDING_DIMENSION,
        max_retries=settings.EMBEDDING_MAX_RETRIES,
        backoff=settings.EMBEDDING_RETRY_BACKOFF,
    )
