from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from memory_graph.errors import PersistenceError
from memory_graph.graph.schema import Entity, Memory, MemoryStats, Relationship, SimilarMemory, utc_now
from memory_graph.storage.base import cosine_similarity, rank_key

logger = logging.getLogger(__name__)

EntityKey = Tuple[str, str, str]
EdgeKey = Tuple[str, str, str]


@dataclass
class EntityRecord:
    user_id: str
    entity_type: str
    value: str
    normalized_value: str
    first_seen: datetime
    last_seen: datetime
    mention_count: int = 1


class InMemoryVectorStore:
    """Process-local store used for tests and offline runs.

    Writes are staged and then committed without an intervening ``await``,
    so concurrent coroutines never observe a memory without its edges.
    Memories are deep-copied on the way in and out.
    """

    def __init__(self, default_retention_days: int = 30) -> None:
        self.default_retention_days = default_retention_days
        self._memories: Dict[str, Memory] = {}
        self._edges: List[Relationship] = []
        self._edge_keys: Set[EdgeKey] = set()
        self._entities: Dict[EntityKey, EntityRecord] = {}
        self._mentions: Dict[str, List[EntityKey]] = {}
        self._retention: Dict[str, int] = {}

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # -- Retention context ---------------------------------------------------

    def set_retention_days(self, user_id: str, days: int) -> None:
        self._retention[user_id] = days

    async def get_retention_days(self, user_id: str) -> int:
        return self._retention.get(user_id, self.default_retention_days)

    # -- Writes --------------------------------------------------------------

    async def save_memory(self, memory: Memory, relationships: Sequence[Relationship]) -> Memory:
        if memory.id in self._memories:
            raise PersistenceError(f"Memory {memory.id} already exists")
        for rel in relationships:
            if rel.user_id != memory.user_id or rel.source_memory_id != memory.id:
                raise PersistenceError(f"Relationship {rel.id} does not belong to memory {memory.id}")
            target = self._memories.get(rel.target_memory_id)
            if target is None or target.user_id != memory.user_id:
                raise PersistenceError(
                    f"Relationship target {rel.target_memory_id} is not a memory of this owner"
                )

        stored = copy.deepcopy(memory)
        new_edges: List[Relationship] = []
        new_keys: Set[EdgeKey] = set()
        for rel in relationships:
            key = (rel.source_memory_id, rel.target_memory_id, rel.relationship_type.value)
            if key in self._edge_keys or key in new_keys:
                continue
            new_keys.add(key)
            new_edges.append(copy.deepcopy(rel))

        now = utc_now()
        staged: Dict[EntityKey, EntityRecord] = {}
        mention_keys: List[EntityKey] = []
        for entity in memory.entities:
            etype, norm = entity.key
            if not norm:
                continue
            key = (memory.user_id, etype, norm)
            record = staged.get(key) or self._entities.get(key)
            if record is None:
                record = EntityRecord(
                    user_id=memory.user_id,
                    entity_type=etype,
                    value=entity.value,
                    normalized_value=norm,
                    first_seen=now,
                    last_seen=now,
                    mention_count=1,
                )
            else:
                record = copy.copy(record)
                record.mention_count += 1
                record.last_seen = now
            staged[key] = record
            mention_keys.append(key)

        # Commit.
        self._memories[stored.id] = stored
        self._edges.extend(new_edges)
        self._edge_keys.update(new_keys)
        self._entities.update(staged)
        self._mentions[stored.id] = mention_keys
        return copy.deepcopy(stored)

    async def record_access(self, user_id: str, memory_ids: Sequence[str]) -> None:
        now = utc_now()
        for mid in memory_ids:
            memory = self._memories.get(mid)
            if memory is not None and memory.user_id == user_id:
                memory.touch(now)

    async def archive(self, user_id: str, memory_id: str, reason: str,
                      superseded_by: Optional[str] = None) -> bool:
        memory = self._memories.get(memory_id)
        if memory is None or memory.user_id != user_id or memory.is_archived:
            return False
        memory.is_archived = True
        memory.archived_at = utc_now()
        memory.metadata["archive_reason"] = reason
        if superseded_by:
            memory.metadata["superseded_by"] = superseded_by
        return True

    async def archive_created_before(self, user_id: str, cutoff: datetime, reason: str) -> int:
        expired = [m.id for m in self._active(user_id) if m.created_at < cutoff]
        for mid in expired:
            await self.archive(user_id, mid, reason)
        return len(expired)

    # -- Reads ---------------------------------------------------------------

    def _active(self, user_id: str) -> List[Memory]:
        return [m for m in self._memories.values() if m.user_id == user_id and not m.is_archived]

    async def get_memory(self, user_id: str, memory_id: str) -> Optional[Memory]:
        memory = self._memories.get(memory_id)
        if memory is None or memory.user_id != user_id:
            return None
        return copy.deepcopy(memory)

    async def nearest(self, user_id: str, vector: Sequence[float], limit: int,
                      min_similarity: Optional[float] = None) -> List[SimilarMemory]:
        if limit <= 0:
            return []
        scored: List[SimilarMemory] = []
        for memory in self._active(user_id):
            sim = cosine_similarity(vector, memory.embedding)
            if min_similarity is not None and sim < min_similarity:
                continue
            scored.append(SimilarMemory(memory=memory, similarity=sim))
        scored.sort(key=rank_key)
        return [SimilarMemory(copy.deepcopy(s.memory), s.similarity) for s in scored[:limit]]

    async def list_active(self, user_id: str, limit: Optional[int] = None) -> List[Memory]:
        active = sorted(self._active(user_id), key=lambda m: (-m.importance_score, -m.created_at.timestamp()))
        if limit is not None:
            active = active[:limit]
        return [copy.deepcopy(m) for m in active]

    async def list_recent(self, user_id: str, limit: int = 20) -> List[Memory]:
        owned = [m for m in self._memories.values() if m.user_id == user_id]
        owned.sort(key=lambda m: m.created_at, reverse=True)
        return [copy.deepcopy(m) for m in owned[:limit]]

    async def relationships_between(self, user_id: str, memory_ids: Sequence[str]) -> List[Relationship]:
        wanted = set(memory_ids)
        out = [
            copy.deepcopy(e) for e in self._edges
            if e.user_id == user_id and e.source_memory_id in wanted and e.target_memory_id in wanted
        ]
        out.sort(key=lambda e: e.strength, reverse=True)
        return out

    async def relationships_for(self, user_id: str, memory_id: str) -> List[Relationship]:
        out = [copy.deepcopy(e) for e in self._edges if e.user_id == user_id and e.touches(memory_id)]
        out.sort(key=lambda e: (-e.strength, -e.created_at.timestamp()))
        return out

    async def memories_sharing_entities(self, user_id: str, entities: Sequence[Entity],
                                        exclude_ids: Iterable[str], limit: int = 10) -> List[Memory]:
        keys = {(user_id, *e.key) for e in entities if e.normalized}
        if not keys or limit <= 0:
            return []
        excluded = set(exclude_ids)
        out: List[Memory] = []
        for memory in self._active(user_id):
            if memory.id in excluded:
                continue
            if keys.intersection(self._mentions.get(memory.id, [])):
                out.append(copy.deepcopy(memory))
                if len(out) >= limit:
                    break
        return out

    async def stats(self, user_id: str) -> MemoryStats:
        owned = [m for m in self._memories.values() if m.user_id == user_id]
        avg = sum(m.importance_score for m in owned) / len(owned) if owned else 0.0
        return MemoryStats(
            total_memories=len(owned),
            total_entities=sum(1 for key in self._entities if key[0] == user_id),
            total_relationships=sum(1 for e in self._edges if e.user_id == user_id),
            average_importance=avg,
        )

    def entity_mentions(self, user_id: str, entity_type: str, value: str) -> int:
        record = self._entities.get((user_id, entity_type.lower().strip(), value.lower().strip()))
        return record.mention_count if record else 0
