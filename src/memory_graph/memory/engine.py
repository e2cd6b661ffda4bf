"""The memory graph engine.

:class:`MemoryGraphEngine` turns raw text into stored, linked memories and
serves the read paths over them.  It owns no state of its own beyond a set
of in-flight background tasks: the :class:`VectorStore` is the only shared
mutable resource, and every provider is an injected capability object.

Creation pipeline::

    validate -> [embed, categorize] -> clamp importance -> snapshot metadata
             -> (owner lock) resolve relationships -> atomic save

Nothing is written unless every step before the save succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Set

from memory_graph.config import MemoryGraphSettings
from memory_graph.errors import ContentTooLarge, InvalidInput, MemoryGraphError, ProviderError
from memory_graph.graph.schema import (
    Categorization,
    ContextualMemory,
    EdgeType,
    GraphNode,
    Memory,
    MemoryContext,
    MemoryGraph,
    MemoryStats,
    Relationship,
    SimilarMemory,
    is_memory_id,
    utc_now,
)
from memory_graph.memory.deadlines import call_provider, gather_or_cancel, read_store
from memory_graph.memory.decay import FreshnessPolicy
from memory_graph.memory.locks import NullOwnerLock, OwnerLock
from memory_graph.memory.metadata import DEFAULT_MAX_DEPTH, snapshot_metadata
from memory_graph.memory.resolver import DEFAULT_MIN_SIMILARITY, DEFAULT_TOP_K, RelationshipResolver
from memory_graph.providers.categorizer import Categorizer
from memory_graph.providers.embeddings import Embedder
from memory_graph.storage.base import RetentionContext, VectorStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_LENGTH = 50_000
DEFAULT_IMPORTANCE = 0.5
DEFAULT_RETENTION_DAYS = 30


def validate_content(content: Any, max_length: int = DEFAULT_MAX_CONTENT_LENGTH) -> str:
    """Return the trimmed content or raise.

    Raises:
        InvalidInput: *content* is ``None``, not a string, blank, or holds a
            NUL character (Postgres text cannot store one).
        ContentTooLarge: the trimmed text is longer than *max_length*.
    """
    if content is None:
        raise InvalidInput("Content is required")
    if not isinstance(content, str):
        raise InvalidInput(f"Content must be a string, got {type(content).__name__}")
    text = content.strip()
    if not text:
        raise InvalidInput("Content cannot be empty")
    if "\x00" in text:
        raise InvalidInput("Content cannot contain NUL characters")
    if len(text) > max_length:
        raise ContentTooLarge(len(text), max_length)
    return text


def clamp_importance(value: Any) -> float:
    if isinstance(value, bool):
        return DEFAULT_IMPORTANCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_IMPORTANCE
    if math.isnan(number):
        return DEFAULT_IMPORTANCE
    return max(0.0, min(1.0, number))


def _require_owner(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInput("user_id is required")
    return user_id


class _StaticRetention:
    def __init__(self, days: int) -> None:
        self._days = days

    async def get_retention_days(self, user_id: str) -> int:
        return self._days


class MemoryGraphEngine:
    """Creates memories, links them, and answers graph queries for one store."""

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        categorizer: Categorizer,
        retention: Optional[RetentionContext] = None,
        lock: Optional[OwnerLock] = None,
        *,
        max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
        provider_timeout: Optional[float] = 10.0,
        read_timeout: Optional[float] = 5.0,
        related_top_k: int = DEFAULT_TOP_K,
        related_min_similarity: float = DEFAULT_MIN_SIMILARITY,
        infer_entity_edges: bool = False,
        metadata_max_depth: int = DEFAULT_MAX_DEPTH,
        default_retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._categorizer = categorizer
        self._retention = retention if retention is not None else _StaticRetention(default_retention_days)
        self._lock = lock if lock is not None else NullOwnerLock()
        self.max_content_length = max_content_length
        self.provider_timeout = provider_timeout
        self.read_timeout = read_timeout
        self.metadata_max_depth = metadata_max_depth
        self._resolver = RelationshipResolver(
            store,
            categorizer,
            top_k=related_top_k,
            min_similarity=related_min_similarity,
            provider_timeout=provider_timeout,
            infer_entity_edges=infer_entity_edges,
        )
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: MemoryGraphSettings,
        store: VectorStore,
        embedder: Embedder,
        categorizer: Categorizer,
        retention: Optional[RetentionContext] = None,
        lock: Optional[OwnerLock] = None,
    ) -> "MemoryGraphEngine":
        return cls(
            store,
            embedder,
            categorizer,
            retention=retention,
            lock=lock,
            max_content_length=settings.MAX_CONTENT_LENGTH,
            provider_timeout=settings.PROVIDER_TIMEOUT_SEC,
            read_timeout=settings.READ_TIMEOUT_SEC,
            related_top_k=settings.RELATED_TOP_K,
            related_min_similarity=settings.RELATED_MIN_SIMILARITY,
            infer_entity_edges=settings.INFER_ENTITY_EDGES,
            metadata_max_depth=settings.METADATA_MAX_DEPTH,
            default_retention_days=settings.DEFAULT_RETENTION_DAYS,
        )

    @property
    def store(self) -> VectorStore:
        return self._store

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        await self._store.open()

    async def drain(self) -> None:
        """Wait for background access updates scheduled by the read paths."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self._lock.close()
        await self._store.close()

    # -- Creation --------------------------------------------------------------

    async def create_memory(
        self,
        user_id: str,
        content: Any,
        source_url: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Memory:
        text = validate_content(content, self.max_content_length)
        owner = _require_owner(user_id)

        embedding, categorization = await gather_or_cancel(
            call_provider(self._embedder.embed(text), "embedding", self.provider_timeout),
            call_provider(self._categorizer.categorize(text), "categorization", self.provider_timeout),
        )
        if not embedding:
            raise ProviderError("Embedding provider returned an empty vector", provider="embedding")

        memory = Memory(
            user_id=owner,
            content=text,
            content_type=content_type or categorization.type,
            embedding=list(embedding),
            importance_score=clamp_importance(categorization.importance),
            tags=list(categorization.tags),
            entities=list(categorization.entities),
            source_url=source_url,
            metadata=self._build_metadata(categorization),
        )

        async with self._lock.hold(owner):
            relationships = await self._resolver.resolve(memory)
            stored = await self._store.save_memory(memory, relationships)

        logger.info(
            "Stored memory %s for %s (%s, importance %.2f, %d relationships)",
            stored.id, owner, stored.content_type, stored.importance_score, len(relationships),
        )
        return stored

    def _build_metadata(self, categorization: Categorization) -> Dict[str, Any]:
        snapshot = snapshot_metadata(categorization.metadata, self.metadata_max_depth)
        if isinstance(snapshot, dict):
            metadata = snapshot
        elif snapshot is None:
            metadata = {}
        else:
            metadata = {"provider_metadata": snapshot}
        metadata.update({
            "type": categorization.type,
            "tags": list(categorization.tags),
            "entity_count": len(categorization.entities),
        })
        return metadata

    # -- Reads -----------------------------------------------------------------

    async def get_memory_by_id(self, user_id: str, memory_id: Any) -> Optional[Memory]:
        if not is_memory_id(memory_id):
            return None
        memory = await read_store(self._store.get_memory(user_id, memory_id), "get_memory", self.read_timeout)
        if memory is None:
            return None
        try:
            await read_store(self._store.record_access(user_id, [memory.id]), "record_access", self.read_timeout)
        except MemoryGraphError as exc:
            logger.warning("Could not record access to memory %s: %s", memory.id, exc)
        else:
            memory.touch()
        return memory

    async def search_memories(self, user_id: str, query_text: Any, limit: int = 10) -> List[SimilarMemory]:
        text = validate_content(query_text, self.max_content_length)
        if limit <= 0:
            return []
        vector = await call_provider(self._embedder.embed(text), "embedding", self.provider_timeout)
        results = await read_store(
            self._store.nearest(user_id, vector, limit=limit),
            "search",
            self.read_timeout,
        )
        self._schedule_access(user_id, [r.memory.id for r in results])
        return results

    async def find_similar_memories(
        self,
        user_id: str,
        embedding: Sequence[float],
        threshold: float = 0.7,
        limit: int = 10,
    ) -> List[SimilarMemory]:
        if not embedding:
            raise InvalidInput("Embedding cannot be empty")
        if limit <= 0:
            return []
        return await read_store(
            self._store.nearest(user_id, embedding, limit=limit, min_similarity=threshold),
            "find_similar",
            self.read_timeout,
        )

    async def get_memory_graph(self, user_id: str) -> MemoryGraph:
        memories, retention_days = await gather_or_cancel(
            read_store(self._store.list_active(user_id), "list_active", self.read_timeout),
            read_store(self._retention.get_retention_days(user_id), "retention", self.read_timeout),
        )
        edges: List[Relationship] = []
        if memories:
            edges = await read_store(
                self._store.relationships_between(user_id, [m.id for m in memories]),
                "relationships",
                self.read_timeout,
            )
        policy = FreshnessPolicy(retention_days)
        now = utc_now()
        nodes = [GraphNode(m, policy.score(m, now), policy.days_left(m, now)) for m in memories]
        return MemoryGraph(nodes=nodes, edges=edges)

    async def get_stats(self, user_id: str) -> MemoryStats:
        return await read_store(self._store.stats(user_id), "stats", self.read_timeout)

    async def get_recent_memories(self, user_id: str, limit: int = 20) -> List[Memory]:
        if limit <= 0:
            return []
        return await read_store(self._store.list_recent(user_id, limit), "list_recent", self.read_timeout)

    async def get_memories_with_context(self, user_id: str, query_text: Any, limit: int = 5) -> MemoryContext:
        """Search, then attach each hit's edges, neighbours and a timeline note."""
        hits = await self.search_memories(user_id, query_text, limit)
        if not hits:
            return MemoryContext()

        seen = {hit.memory.id for hit in hits}
        enriched: List[ContextualMemory] = []
        for hit in hits:
            relationships = await read_store(
                self._store.relationships_for(user_id, hit.memory.id),
                "relationships",
                self.read_timeout,
            )
            connected: List[Memory] = []
            for rel in relationships:
                other = rel.target_memory_id if rel.source_memory_id == hit.memory.id else rel.source_memory_id
                if other in seen:
                    continue
                seen.add(other)
                neighbour = await read_store(self._store.get_memory(user_id, other), "get_memory", self.read_timeout)
                if neighbour is not None:
                    connected.append(neighbour)
            enriched.append(ContextualMemory(
                memory=hit.memory,
                similarity=hit.similarity,
                relationships=relationships,
                connected_memories=connected,
                temporal_context=temporal_context(hit.memory, relationships, connected),
            ))
        return MemoryContext(memories=enriched, graph_summary=graph_summary(enriched))

    # -- Lifecycle of stored memories -----------------------------------------

    async def archive_memory(self, user_id: str, memory_id: Any, reason: str = "manual") -> bool:
        if not is_memory_id(memory_id):
            return False
        archived = await self._store.archive(user_id, memory_id, reason)
        if archived:
            logger.info("Archived memory %s for %s (%s)", memory_id, user_id, reason)
        return archived

    async def archive_expired(self, user_id: str) -> int:
        days = await read_store(self._retention.get_retention_days(user_id), "retention", self.read_timeout)
        cutoff = utc_now() - timedelta(days=days)
        count = await self._store.archive_created_before(user_id, cutoff, "expired")
        if count:
            logger.info("Archived %d expired memories for %s (retention %d days)", count, user_id, days)
        return count

    # -- Background access tracking -------------------------------------------

    def _schedule_access(self, user_id: str, memory_ids: List[str]) -> None:
        if not memory_ids:
            return
        task = asyncio.create_task(self._record_access(user_id, memory_ids))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_access(self, user_id: str, memory_ids: List[str]) -> None:
        try:
            await self._store.record_access(user_id, memory_ids)
        except MemoryGraphError as exc:
            logger.warning("Access update failed for %d memories of %s: %s", len(memory_ids), user_id, exc)


def _count(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def temporal_context(memory: Memory, relationships: Sequence[Relationship], connected: Sequence[Memory]) -> str:
    parts = [f"Created: {memory.created_at.isoformat()}"]
    counts: Dict[EdgeType, int] = {}
    for rel in relationships:
        counts[rel.relationship_type] = counts.get(rel.relationship_type, 0) + 1

    if counts.get(EdgeType.CONTRADICTS):
        parts.append(f"Contradicts {_count(counts[EdgeType.CONTRADICTS], 'other memory', 'other memories')}")
        if memory.metadata.get("superseded_by"):
            parts.append("Outdated: superseded by newer information")
    if counts.get(EdgeType.EXTENDS):
        parts.append(f"Extends {_count(counts[EdgeType.EXTENDS], 'related memory', 'related memories')}")
    if counts.get(EdgeType.RELATED_TO):
        parts.append(f"Related to {_count(counts[EdgeType.RELATED_TO], 'other memory', 'other memories')}")

    older = sum(1 for m in connected if m.created_at < memory.created_at)
    newer = sum(1 for m in connected if m.created_at > memory.created_at)
    if older:
        parts.append(f"{_count(older, 'earlier memory', 'earlier memories')} on record")
    if newer:
        parts.append(f"{_count(newer, 'later memory', 'later memories')} on record")
    return " | ".join(parts)


def graph_summary(memories: Sequence[ContextualMemory]) -> str:
    edges = [rel for m in memories for rel in m.relationships]
    contradictions = sum(1 for rel in edges if rel.relationship_type is EdgeType.CONTRADICTS)
    extensions = sum(1 for rel in edges if rel.relationship_type is EdgeType.EXTENDS)

    found = _count(len(memories), "relevant memory", "relevant memories")
    summary = [f"Found {found} with {_count(len(edges), 'relationship', 'relationships')}."]
    if contradictions:
        summary.append(
            f"{_count(contradictions, 'contradiction', 'contradictions')} detected; "
            "prefer the most recent information."
        )
    if extensions:
        summary.append(f"Information builds across {_count(extensions, 'connected insight', 'connected insights')}.")
    return " ".join(summary)
