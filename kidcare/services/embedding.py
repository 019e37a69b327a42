"""
Embedding Service - text to fixed-dimension vectors.

Supports OpenAI-compatible API (/embeddings) and Ollama native API (/api/embeddings).
The provider is selected via EMBEDDING_PROVIDER and injected into EmbeddingService.
Embedding dimension is configured via EMBEDDING_DIM environment variable.
"""
import asyncio
import logging
import random
from typing import List, Optional, Protocol

import httpx

from kidcare.core.concurrency import gather_or_cancel
from kidcare.core.config import settings
from kidcare.core.exceptions import (
    DimensionMismatchError,
    EmbeddingProviderError,
    EmptyInputError,
    provider_error_from_exception,
)

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """One HTTP round trip: a single text in, a single vector out."""

    model: str

    async def embed_one(self, text: str) -> List[float]:
        ...

    async def aclose(self) -> None:
        ...


class _HTTPEmbeddingProvider:
    provider_name = "Embedding provider"

    def __init__(
        self,
        api_base: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = (api_base or settings.EMBEDDING_API_BASE).rstrip("/")
        self.model = model or settings.EMBEDDING_MODEL
        api_key = api_key if api_key is not None else settings.EMBEDDING_API_KEY
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        # One pooled client per provider, shared by concurrent requests
        self.client = client or httpx.AsyncClient(
            timeout=timeout or settings.EMBEDDING_TIMEOUT,
            headers=headers,
        )

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            resp = await self.client.post(f"{self.api_base}{path}", json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise provider_error_from_exception(e, EmbeddingProviderError, self.provider_name)
        except ValueError as e:
            raise EmbeddingProviderError(f"{self.provider_name} returned invalid JSON: {e}")

    async def aclose(self) -> None:
        await self.client.aclose()


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """OpenAI-compatible ``POST {base}/embeddings {model, input}``."""

    provider_name = "OpenAI-compatible embedding API"

    async def embed_one(self, text: str) -> List[float]:
        data = await self._post("/embeddings", {"model": self.model, "input": text})
        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            raise EmbeddingProviderError("Invalid embedding response format")
        if not embedding:
            raise EmbeddingProviderError("Invalid embedding response format")
        return embedding


class OllamaEmbeddingProvider(_HTTPEmbeddingProvider):
    """Ollama native ``POST {base}/api/embeddings {model, prompt}``."""

    provider_name = "Ollama embedding API"

    async def embed_one(self, text: str) -> List[float]:
        data = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise EmbeddingProviderError("Invalid embedding response format")
        return embedding


def create_embedding_provider(provider: Optional[str] = None) -> EmbeddingProvider:
    """Build the provider named by EMBEDDING_PROVIDER."""
    provider = provider or settings.EMBEDDING_PROVIDER
    if provider == "ollama":
        return OllamaEmbeddingProvider()
    if provider == "openai":
        return OpenAIEmbeddingProvider()
    raise ValueError(f"Unknown embedding provider: {provider}")


class EmbeddingService:
    """
    Resilient embedding generation on top of an EmbeddingProvider.

    Each single-text call is retried with exponential backoff plus jitter,
    but only for failures classified as retryable. Batches are split into
    groups of ``batch_size``; texts in a group are embedded concurrently and
    groups run one after another.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimension: Optional[int] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
        strict_dimension: Optional[bool] = None,
    ):
        self.provider = provider
        self.dimension = dimension or settings.EMBEDDING_DIM
        self.max_retries = settings.EMBEDDING_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.EMBEDDING_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.strict_dimension = (
            settings.EMBEDDING_STRICT_DIMENSION if strict_dimension is None else strict_dimension
        )

    async def embed(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Raises:
            EmptyInputError: text is empty or whitespace
            EmbeddingProviderError: provider failed after retries
        """
        if not text or not text.strip():
            raise EmptyInputError("Text to embed must not be empty")

        vector = await self._embed_with_retry(text)
        self._check_dimension(vector)
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts, preserving order.

        Every element is validated before the first provider call.
        """
        if not texts:
            raise EmptyInputError("Texts to embed must not be empty")
        for i, text in enumerate(texts):
            if not text or not text.strip():
                raise EmptyInputError(f"Text at index {i} must not be empty")

        vectors: List[List[float]] = []
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size

        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            logger.debug(
                f"Embedding batch {start // self.batch_size + 1}/{total_batches}, size: {len(batch)}"
            )
            try:
                batch_vectors = await gather_or_cancel(
                    *(self._embed_with_retry(text) for text in batch)
                )
            except EmbeddingProviderError as e:
                logger.error(f"Batch embedding failed: {e}")
                raise
            for vector in batch_vectors:
                self._check_dimension(vector)
            vectors.extend(batch_vectors)

        return vectors

    async def _embed_with_retry(self, text: str) -> List[float]:
        last_error: Optional[EmbeddingProviderError] = None

        for attempt in range(self.max_retries + 1):
            try:
                vector = await self.provider.embed_one(text)
                logger.debug(f"Embedding generated, dimension: {len(vector)}")
                return vector
            except EmbeddingProviderError as e:
                last_error = e
                if not e.retryable:
                    logger.error(f"Embedding request failed (not retryable): {e}")
                    raise
                if attempt < self.max_retries:
                    # Exponential backoff with jitter
                    delay = self.base_delay * (2 ** attempt) + random.uniform(0, 1)
                    logger.warning(
                        f"Embedding attempt {attempt + 1} failed, retrying in {delay:.1f}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Embedding failed after {self.max_retries + 1} attempts: {e}")

        raise last_error or EmbeddingProviderError("Embedding generation failed")

    def _check_dimension(self, vector: List[float]) -> None:
        if len(vector) == self.dimension:
            return
        if self.strict_dimension:
            raise DimensionMismatchError(self.dimension, len(vector))
        logger.warning(
            f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
        )

    async def aclose(self) -> None:
        await self.provider.aclose()


# Default service instance
_default_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get the default embedding service instance (singleton)."""
    global _default_service
    if _default_service is None:
        _default_service = EmbeddingService(create_embedding_provider())
    return _default_service
