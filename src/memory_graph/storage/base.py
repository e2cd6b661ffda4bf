from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence

from memory_graph.graph.schema import Entity, Memory, MemoryStats, Relationship, SimilarMemory


class VectorStore(Protocol):
    """Owner-scoped persistence for memories and their edges.

    Implementations must make :meth:`save_memory` all-or-nothing and must
    never return archived memories from :meth:`nearest` or
    :meth:`list_active`.
    """

    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def save_memory(self, memory: Memory, relationships: Sequence[Relationship]) -> Memory:
        ...

    async def get_memory(self, user_id: str, memory_id: str) -> Optional[Memory]:
        ...

    async def nearest(self, user_id: str, vector: Sequence[float], limit: int,
                      min_similarity: Optional[float] = None) -> List[SimilarMemory]:
        ...

    async def record_access(self, user_id: str, memory_ids: Sequence[str]) -> None:
        ...

    async def list_active(self, user_id: str, limit: Optional[int] = None) -> List[Memory]:
        ...

    async def list_recent(self, user_id: str, limit: int = 20) -> List[Memory]:
        ...

    async def relationships_between(self, user_id: str, memory_ids: Sequence[str]) -> List[Relationship]:
        ...

    async def relationships_for(self, user_id: str, memory_id: str) -> List[Relationship]:
        ...

    async def memories_sharing_entities(self, user_id: str, entities: Sequence[Entity],
                                        exclude_ids: Iterable[str], limit: int = 10) -> List[Memory]:
        ...

    async def archive(self, user_id: str, memory_id: str, reason: str,
                      superseded_by: Optional[str] = None) -> bool:
        ...

    async def archive_created_before(self, user_id: str, cutoff: datetime, reason: str) -> int:
        ...

    async def stats(self, user_id: str) -> MemoryStats:
        ...


class RetentionContext(Protocol):
    async def get_retention_days(self, user_id: str) -> int:
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b:
        return 0.0
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return dot / (na * nb)


def rank_key(item: SimilarMemory) -> tuple[float, float]:
    """Sort key: highest similarity first, then newest first."""
    return (-item.similarity, -item.memory.created_at.timestamp())
