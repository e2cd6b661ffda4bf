from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from memory_graph.errors import PersistenceError
from memory_graph.graph.schema import EdgeType, Entity, Memory, MemoryStats, Relationship, SimilarMemory, is_memory_id

logger = logging.getLogger(__name__)

# pgvector refuses HNSW indexes above this many dimensions.
_HNSW_MAX_DIMENSIONS = 2000
# Candidate list size for pgvector releases without iterative index scans.
_HNSW_EF_SEARCH = 1000

_MEMORY_FIELDS = (
    "id::text AS id", "user_id", "content", "content_type", "source_url",
    "embedding::text AS embedding", "importance_score", "tags", "entities",
    "metadata", "access_count", "last_accessed", "created_at", "is_archived",
    "archived_at",
)


def _columns(alias: str = "") -> str:
    prefix = f"{alias}." if alias else ""
    return ", ".join(prefix + f for f in _MEMORY_FIELDS)


def _vector_literal(vector: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresVectorStore:
    """PostgreSQL + pgvector implementation of the vector store.

    Every creation runs in one transaction: the memory row, its entity
    mention counters and its edges commit together or not at all.
    Similarity ranking uses pgvector's cosine distance operator so the
    database, not the application, scans the embeddings.
    """

    def __init__(self, dsn: str, dimensions: int, default_retention_days: int = 30,
                 min_size: int = 1, max_size: int = 10) -> None:
        self._dsn = dsn
        self._dimensions = int(dimensions)
        self.default_retention_days = default_retention_days
        self._min_size = min_size
        self._max_size = max_size
        self._pool: AsyncConnectionPool | None = None
        self._warned_no_users_table = False
        self._iterative_scan = False

    def _ensure_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise RuntimeError("PostgresVectorStore not initialized. Call open() first.")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def open(self) -> None:
        if self._pool is not None:
            return
        pool = AsyncConnectionPool(
            self._dsn,
            min_size=self._min_size,
            max_size=self._max_size,
            kwargs={"row_factory": dict_row, "connect_timeout": 3},
            open=False,
        )
        try:
            await pool.open(wait=True)
        except psycopg.Error as exc:
            raise PersistenceError(f"Could not connect to Postgres: {exc}") from exc
        self._pool = pool
        await self._ensure_schema()
        self._iterative_scan = await self._supports_iterative_scan()
        logger.info(
            "Postgres vector store ready (dims=%d, iterative_scan=%s)",
            self._dimensions, self._iterative_scan,
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _cursor(self, operation: str) -> AsyncIterator[psycopg.AsyncCursor]:
        pool = self._ensure_pool()
        try:
            async with pool.connection() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        yield cur
        except psycopg.Error as exc:
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    async def _supports_iterative_scan(self) -> bool:
        async with self._cursor("extension check") as cur:
            await cur.execute("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
            row = await cur.fetchone()
        if not row:
            return False
        try:
            version = tuple(int(part) for part in str(row["extversion"]).split(".")[:2])
        except ValueError:
            return False
        return version >= (0, 8)

    async def _widen_index_scan(self, cur: psycopg.AsyncCursor) -> None:
        # The HNSW index is shared by every owner and the owner filter runs
        # after the index scan, so a plain scan can return too few rows.
        if self._iterative_scan:
            await cur.execute("SET LOCAL hnsw.iterative_scan = strict_order")
        else:
            await cur.execute(f"SET LOCAL hnsw.ef_search = {_HNSW_EF_SEARCH}")

    async def _ensure_schema(self) -> None:
        dims = self._dimensions
        async with self._cursor("schema setup") as cur:
            await cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            await cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS memories (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    content_type VARCHAR(50) NOT NULL DEFAULT 'fact',
                    source_url TEXT,
                    embedding vector({dims}) NOT NULL,
                    importance_score DOUBLE PRECISION NOT NULL DEFAULT 0.5,
                    tags TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
                    entities JSONB NOT NULL DEFAULT '[]'::jsonb,
                    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    last_accessed TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    is_archived BOOLEAN NOT NULL DEFAULT FALSE,
                    archived_at TIMESTAMPTZ,
                    superseded_by UUID
                )
                """
            )
            await cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_memories_user_active
                ON memories (user_id, created_at DESC) WHERE is_archived = FALSE
                """
            )
            if dims <= _HNSW_MAX_DIMENSIONS:
                await cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_memories_embedding
                    ON memories USING hnsw (embedding vector_cosine_ops)
                    """
                )
            await cur.execute(
                """
                CREATE TABLE IF NOT EXISTS memory_relationships (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    source_memory_id UUID NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
                    target_memory_id UUID NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
                    relationship_type VARCHAR(50) NOT NULL,
                    strength DOUBLE PRECISION NOT NULL DEFAULT 0.5,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    UNIQUE (source_memory_id, target_memory_id, relationship_type)
                )
                """
            )
            await cur.execute(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    entity_type VARCHAR(50) NOT NULL,
                    entity_value TEXT NOT NULL,
                    normalized_value TEXT NOT NULL,
                    first_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    last_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    mention_count INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (user_id, entity_type, normalized_value)
                )
                """
            )
            await cur.execute(
                """
                CREATE TABLE IF NOT EXISTS entity_mentions (
                    id UUID PRIMARY KEY,
                    entity_id UUID NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
                    memory_id UUID NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
                    context TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

    # -- Retention context ---------------------------------------------------

    async def get_retention_days(self, user_id: str) -> int:
        try:
            async with self._cursor("retention lookup") as cur:
                await cur.execute(
                    "SELECT memory_retention_days FROM users WHERE id::text = %s",
                    (user_id,),
                )
                row = await cur.fetchone()
        except PersistenceError as exc:
            if not isinstance(exc.__cause__, pg_errors.UndefinedTable):
                raise
            if not self._warned_no_users_table:
                logger.warning("No users table; using %d retention days for everyone", self.default_retention_days)
                self._warned_no_users_table = True
            return self.default_retention_days
        if not row or row.get("memory_retention_days") is None:
            return self.default_retention_days
        return int(row["memory_retention_days"])

    # -- Writes --------------------------------------------------------------

    async def save_memory(self, memory: Memory, relationships: Sequence[Relationship]) -> Memory:
        async with self._cursor("memory creation") as cur:
            await cur.execute(
                f"""
                INSERT INTO memories (id, user_id, content, content_type, source_url, embedding,
                                      importance_score, tags, entities, metadata, access_count,
                                      last_accessed, created_at, is_archived)
                VALUES (%(id)s, %(user_id)s, %(content)s, %(content_type)s, %(source_url)s,
                        %(embedding)s::vector, %(importance)s, %(tags)s, %(entities)s,
                        %(metadata)s, %(access_count)s, %(last_accessed)s, %(created_at)s, FALSE)
                RETURNING {_columns()}
                """,
                {
                    "id": memory.id,
                    "user_id": memory.user_id,
                    "content": memory.content,
                    "content_type": memory.content_type,
                    "source_url": memory.source_url,
                    "embedding": _vector_literal(memory.embedding),
                    "importance": memory.importance_score,
                    "tags": list(memory.tags),
                    "entities": Jsonb([e.to_dict() for e in memory.entities]),
                    "metadata": Jsonb(memory.metadata),
                    "access_count": memory.access_count,
                    "last_accessed": memory.last_accessed_at,
                    "created_at": memory.created_at,
                },
            )
            row = await cur.fetchone()

            for entity in memory.entities:
                etype, norm = entity.key
                if not norm:
                    continue
                await cur.execute(
                    """
                    INSERT INTO entities (id, user_id, entity_type, entity_value, normalized_value)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, entity_type, normalized_value)
                    DO UPDATE SET last_seen = NOW(), mention_count = entities.mention_count + 1
                    RETURNING id
                    """,
                    (str(uuid.uuid4()), memory.user_id, etype, entity.value, norm),
                )
                entity_row = await cur.fetchone()
                await cur.execute(
                    "INSERT INTO entity_mentions (id, entity_id, memory_id, context) VALUES (%s, %s, %s, %s)",
                    (str(uuid.uuid4()), entity_row["id"], memory.id, entity.context),
                )

            targets = {rel.target_memory_id for rel in relationships}
            if targets:
                await cur.execute(
                    "SELECT id::text AS id FROM memories WHERE user_id = %s AND id = ANY(%s::uuid[])",
                    (memory.user_id, [t for t in targets if is_memory_id(t)]),
                )
                missing = targets - {r["id"] for r in await cur.fetchall()}
                if missing:
                    # Raising inside the transaction rolls the memory back as well.
                    raise PersistenceError(
                        f"Relationship targets are not memories of this owner: {sorted(missing)}"
                    )

            for rel in relationships:
                if rel.user_id != memory.user_id or rel.source_memory_id != memory.id:
                    raise PersistenceError(f"Relationship {rel.id} does not belong to memory {memory.id}")
                await cur.execute(
                    """
                    INSERT INTO memory_relationships
                        (id, user_id, source_memory_id, target_memory_id, relationship_type,
                         strength, metadata, created_at)
                    SELECT %(id)s, %(user_id)s, %(source)s, t.id, %(type)s, %(strength)s,
                           %(metadata)s, %(created_at)s
                    FROM memories t
                    WHERE t.id = %(target)s AND t.user_id = %(user_id)s
                    ON CONFLICT (source_memory_id, target_memory_id, relationship_type) DO NOTHING
                    """,
                    {
                        "id": rel.id,
                        "user_id": memory.user_id,
                        "source": memory.id,
                        "target": rel.target_memory_id,
                        "type": rel.relationship_type.value,
                        "strength": rel.strength,
                        "metadata": Jsonb(rel.metadata),
                        "created_at": rel.created_at,
                    },
                )
        return self._row_to_memory(row)

    async def record_access(self, user_id: str, memory_ids: Sequence[str]) -> None:
        ids = [m for m in memory_ids if is_memory_id(m)]
        if not ids:
            return
        async with self._cursor("access update") as cur:
            await cur.execute(
                """
                UPDATE memories
                SET access_count = access_count + 1, last_accessed = NOW()
                WHERE user_id = %s AND id = ANY(%s::uuid[])
                """,
                (user_id, ids),
            )

    async def archive(self, user_id: str, memory_id: str, reason: str,
                      superseded_by: Optional[str] = None) -> bool:
        if not is_memory_id(memory_id):
            return False
        patch: Dict[str, Any] = {"archive_reason": reason}
        if superseded_by:
            patch["superseded_by"] = superseded_by
        async with self._cursor("archive") as cur:
            await cur.execute(
                """
                UPDATE memories
                SET is_archived = TRUE, archived_at = NOW(), superseded_by = %s,
                    metadata = metadata || %s
                WHERE id = %s AND user_id = %s AND is_archived = FALSE
                RETURNING id
                """,
                (superseded_by if superseded_by and is_memory_id(superseded_by) else None,
                 Jsonb(patch), memory_id, user_id),
            )
            return await cur.fetchone() is not None

    async def archive_created_before(self, user_id: str, cutoff: datetime, reason: str) -> int:
        async with self._cursor("retention sweep") as cur:
            await cur.execute(
                """
                UPDATE memories
                SET is_archived = TRUE, archived_at = NOW(), metadata = metadata || %s
                WHERE user_id = %s AND is_archived = FALSE AND created_at < %s
                """,
                (Jsonb({"archive_reason": reason}), user_id, cutoff),
            )
            return cur.rowcount or 0

    # -- Reads ---------------------------------------------------------------

    async def get_memory(self, user_id: str, memory_id: str) -> Optional[Memory]:
        if not is_memory_id(memory_id):
            return None
        async with self._cursor("memory lookup") as cur:
            await cur.execute(
                f"SELECT {_columns()} FROM memories WHERE id = %s AND user_id = %s",
                (memory_id, user_id),
            )
            row = await cur.fetchone()
        return self._row_to_memory(row) if row else None

    async def nearest(self, user_id: str, vector: Sequence[float], limit: int,
                      min_similarity: Optional[float] = None) -> List[SimilarMemory]:
        if limit <= 0:
            return []
        params: Dict[str, Any] = {"vec": _vector_literal(vector), "user_id": user_id, "limit": limit}
        cutoff = ""
        if min_similarity is not None:
            cutoff = "AND 1 - (embedding <=> %(vec)s::vector) >= %(min)s"
            params["min"] = min_similarity
        async with self._cursor("similarity query") as cur:
            await self._widen_index_scan(cur)
            await cur.execute(
                f"""
                SELECT {_columns()}, 1 - (embedding <=> %(vec)s::vector) AS similarity
                FROM memories
                WHERE user_id = %(user_id)s AND is_archived = FALSE {cutoff}
                ORDER BY embedding <=> %(vec)s::vector, created_at DESC
                LIMIT %(limit)s
                """,
                params,
            )
            rows = await cur.fetchall()
        return [SimilarMemory(self._row_to_memory(r), float(r["similarity"])) for r in rows]

    async def list_active(self, user_id: str, limit: Optional[int] = None) -> List[Memory]:
        async with self._cursor("active memories") as cur:
            await cur.execute(
                f"""
                SELECT {_columns()} FROM memories
                WHERE user_id = %s AND is_archived = FALSE
                ORDER BY importance_score DESC, created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = await cur.fetchall()
        return [self._row_to_memory(r) for r in rows]

    async def list_recent(self, user_id: str, limit: int = 20) -> List[Memory]:
        async with self._cursor("recent memories") as cur:
            await cur.execute(
                f"SELECT {_columns()} FROM memories WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            )
            rows = await cur.fetchall()
        return [self._row_to_memory(r) for r in rows]

    async def relationships_between(self, user_id: str, memory_ids: Sequence[str]) -> List[Relationship]:
        ids = [m for m in memory_ids if is_memory_id(m)]
        if not ids:
            return []
        async with self._cursor("graph edges") as cur:
            await cur.execute(
                """
                SELECT * FROM memory_relationships
                WHERE user_id = %(user_id)s
                  AND source_memory_id = ANY(%(ids)s::uuid[])
                  AND target_memory_id = ANY(%(ids)s::uuid[])
                ORDER BY strength DESC
                """,
                {"user_id": user_id, "ids": ids},
            )
            rows = await cur.fetchall()
        return [self._row_to_relationship(r) for r in rows]

    async def relationships_for(self, user_id: str, memory_id: str) -> List[Relationship]:
        if not is_memory_id(memory_id):
            return []
        async with self._cursor("memory edges") as cur:
            await cur.execute(
                """
                SELECT * FROM memory_relationships
                WHERE user_id = %(user_id)s
                  AND (source_memory_id = %(id)s OR target_memory_id = %(id)s)
                ORDER BY strength DESC, created_at DESC
                """,
                {"user_id": user_id, "id": memory_id},
            )
            rows = await cur.fetchall()
        return [self._row_to_relationship(r) for r in rows]

    async def memories_sharing_entities(self, user_id: str, entities: Sequence[Entity],
                                        exclude_ids: Iterable[str], limit: int = 10) -> List[Memory]:
        keys = [f"{etype}:{norm}" for etype, norm in (e.key for e in entities) if norm]
        if not keys or limit <= 0:
            return []
        excluded = [m for m in exclude_ids if is_memory_id(m)]
        async with self._cursor("entity neighbours") as cur:
            await cur.execute(
                f"""
                SELECT {_columns("m")} FROM memories m
                WHERE m.user_id = %(user_id)s
                  AND m.is_archived = FALSE
                  AND NOT (m.id = ANY(%(excluded)s::uuid[]))
                  AND m.id IN (
                      SELECT em.memory_id FROM entity_mentions em
                      JOIN entities e ON e.id = em.entity_id
                      WHERE e.user_id = %(user_id)s
                        AND e.entity_type || ':' || e.normalized_value = ANY(%(keys)s)
                  )
                ORDER BY m.created_at DESC
                LIMIT %(limit)s
                """,
                {"user_id": user_id, "excluded": excluded, "keys": keys, "limit": limit},
            )
            rows = await cur.fetchall()
        return [self._row_to_memory(r) for r in rows]

    async def stats(self, user_id: str) -> MemoryStats:
        async with self._cursor("stats") as cur:
            await cur.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM memories WHERE user_id = %(u)s) AS total_memories,
                    (SELECT COUNT(*) FROM memory_relationships WHERE user_id = %(u)s) AS total_relationships,
                    (SELECT COUNT(*) FROM entities WHERE user_id = %(u)s) AS total_entities,
                    (SELECT AVG(importance_score) FROM memories WHERE user_id = %(u)s) AS avg_importance
                """,
                {"u": user_id},
            )
            row = await cur.fetchone()
        return MemoryStats(
            total_memories=int(row["total_memories"] or 0),
            total_entities=int(row["total_entities"] or 0),
            total_relationships=int(row["total_relationships"] or 0),
            average_importance=float(row["avg_importance"] or 0.0),
        )

    # -- Row mapping ---------------------------------------------------------

    @staticmethod
    def _row_to_memory(row: dict) -> Memory:
        embedding = row.get("embedding")
        if isinstance(embedding, str):
            embedding = json.loads(embedding)
        return Memory(
            id=str(row["id"]),
            user_id=row["user_id"],
            content=row["content"],
            content_type=row["content_type"],
            embedding=[float(v) for v in (embedding or [])],
            importance_score=float(row["importance_score"]),
            tags=list(row.get("tags") or []),
            entities=[Entity.from_dict(e) for e in (row.get("entities") or [])],
            source_url=row.get("source_url"),
            metadata=row.get("metadata") or {},
            created_at=_aware(row["created_at"]),
            last_accessed_at=_aware(row["last_accessed"]),
            access_count=int(row.get("access_count") or 0),
            is_archived=bool(row.get("is_archived")),
            archived_at=_aware(row.get("archived_at")),
        )

    @staticmethod
    def _row_to_relationship(row: dict) -> Relationship:
        return Relationship(
            id=str(row["id"]),
            user_id=row["user_id"],
            source_memory_id=str(row["source_memory_id"]),
            target_memory_id=str(row["target_memory_id"]),
            relationship_type=EdgeType(row["relationship_type"]),
            strength=float(row["strength"]),
            created_at=_aware(row["created_at"]),
            metadata=row.get("metadata") or {},
        )
