from __future__ import annotations

import hashlib
import logging
import math
from typing import Any, List, Protocol

import aiohttp

from memory_graph.config import MemoryGraphSettings
from memory_graph.errors import ProviderError
from memory_graph.providers.openrouter import OpenRouterClient

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


def _check_vector(vector: Any, dimensions: int | None, provider: str) -> List[float]:
    if not isinstance(vector, list) or not vector:
        raise ProviderError("returned an empty or malformed vector", provider=provider)
    if dimensions is not None and len(vector) != dimensions:
        raise ProviderError(
            f"returned {len(vector)} dimensions, expected {dimensions}", provider=provider
        )
    try:
        return [float(v) for v in vector]
    except (TypeError, ValueError) as exc:
        raise ProviderError("returned non-numeric vector components", provider=provider) from exc


class HashEmbedder:
    """Deterministic offline embedder.  Similarity carries no meaning."""

    def __init__(self, dim: int = 384) -> None:
        self._dim = dim

    async def embed(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        values = [b / 255.0 for b in digest]
        if len(values) < self._dim:
            values = (values * ((self._dim // len(values)) + 1))[:self._dim]
        else:
            values = values[:self._dim]
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]


class OpenRouterEmbedder:
    """Embedding via OpenRouter's ``/embeddings`` endpoint."""

    def __init__(self, client: OpenRouterClient, model: str, dimensions: int | None = None) -> None:
        self._client = client
        self._model = model
        self._dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        vectors = await self._client.embed(self._model, [text])
        return _check_vector(vectors[0] if vectors else None, self._dimensions, "embedding")


class OllamaEmbedder:
    """Embedding via a local Ollama instance."""

    def __init__(self, base_url: str, model: str, dimensions: int | None = None,
                 timeout: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._dimensions = dimensions
        self._timeout = timeout

    async def embed(self, text: str) -> List[float]:
        url = f"{self._base_url}/api/embeddings"
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json={"model": self._model, "prompt": text}) as resp:
                    resp.raise_for_status()
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as exc:
            raise ProviderError(f"Ollama request failed: {exc}", provider="embedding") from exc
        return _check_vector(data.get("embedding") if isinstance(data, dict) else None,
                             self._dimensions, "embedding")


def build_embedder(settings: MemoryGraphSettings, client: OpenRouterClient | None = None) -> Embedder:
    backend = settings.EMBEDDING_BACKEND
    if backend == "openrouter":
        if client is None:
            raise ValueError("EMBEDDING_BACKEND=openrouter requires an OpenRouter client")
        return OpenRouterEmbedder(client, settings.EMBEDDING_MODEL, settings.EMBEDDING_DIMENSIONS)
    if backend == "ollama":
        return OllamaEmbedder(settings.OLLAMA_BASE_URL, settings.OLLAMA_EMBED_MODEL, settings.EMBEDDING_DIMENSIONS)
    logger.warning("Using HashEmbedder; similarity search will not be semantic.")
    return HashEmbedder(settings.EMBEDDING_DIMENSIONS)
