"""Wire settings into a ready-to-use :class:`MemoryGraphEngine`."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from memory_graph.config import MemoryGraphSettings, get_settings
from memory_graph.memory.engine import MemoryGraphEngine
from memory_graph.memory.locks import build_owner_lock
from memory_graph.providers.categorizer import build_categorizer
from memory_graph.providers.embeddings import build_embedder
from memory_graph.providers.openrouter import OpenRouterClient
from memory_graph.storage.base import VectorStore
from memory_graph.storage.memory import InMemoryVectorStore
from memory_graph.storage.postgres import PostgresVectorStore

logger = logging.getLogger(__name__)


def build_store(settings: MemoryGraphSettings) -> VectorStore:
    if settings.STORE_BACKEND == "postgres":
        return PostgresVectorStore(
            settings.POSTGRES_URL,
            dimensions=settings.EMBEDDING_DIMENSIONS,
            default_retention_days=settings.DEFAULT_RETENTION_DAYS,
        )
    logger.warning("Using InMemoryVectorStore; memories are lost when the process exits.")
    return InMemoryVectorStore(default_retention_days=settings.DEFAULT_RETENTION_DAYS)


def build_engine(
    settings: MemoryGraphSettings,
    client: Optional[OpenRouterClient] = None,
) -> MemoryGraphEngine:
    """Assemble an engine from *settings*.

    Both shipped stores also answer ``get_retention_days``, so the store
    doubles as the retention context.
    """
    store = build_store(settings)
    return MemoryGraphEngine.from_settings(
        settings,
        store=store,
        embedder=build_embedder(settings, client),
        categorizer=build_categorizer(settings, client),
        retention=store,  # type: ignore[arg-type]
        lock=build_owner_lock(settings.OWNER_LOCK, settings.REDIS_URL, settings.OWNER_LOCK_TTL_SEC),
    )


@asynccontextmanager
async def open_engine(settings: Optional[MemoryGraphSettings] = None) -> AsyncIterator[MemoryGraphEngine]:
    """Start an engine and its HTTP client, and close both on exit."""
    settings = settings or get_settings()
    client: Optional[OpenRouterClient] = None
    if settings.needs_openrouter:
        if not settings.OPENROUTER_API_KEY:
            raise ValueError("OPENROUTER_API_KEY is required for the openrouter backends")
        client = OpenRouterClient(settings.OPENROUTER_API_KEY, settings.OPENROUTER_BASE_URL)

    engine = build_engine(settings, client)
    try:
        await engine.start()
        yield engine
    finally:
        await engine.close()
        if client is not None:
            await client.close()
