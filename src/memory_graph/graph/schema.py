from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4


class EdgeType(str, Enum):
    CONTRADICTS = "contradicts"
    EXTENDS = "extends"
    RELATED_TO = "related_to"
    INFERRED = "inferred"
    TEMPORAL = "temporal"
    CAUSAL = "causal"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Entity:
    type: str
    value: str
    context: Optional[str] = None

    @property
    def normalized(self) -> str:
        return self.value.lower().strip()

    @property
    def key(self) -> tuple[str, str]:
        return (self.type.lower().strip(), self.normalized)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "value": self.value, "context": self.context}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        return cls(
            type=str(data.get("type") or "concept"),
            value=str(data.get("value") or ""),
            context=data.get("context"),
        )


@dataclass
class Memory:
    user_id: str
    content: str
    content_type: str
    embedding: List[float]
    importance_score: float = 0.5
    tags: List[str] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    last_accessed_at: datetime = field(default_factory=utc_now)
    access_count: int = 0
    is_archived: bool = False
    archived_at: Optional[datetime] = None

    def touch(self, now: Optional[datetime] = None) -> None:
        self.access_count += 1
        self.last_accessed_at = now or utc_now()

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "content_type": self.content_type,
            "importance_score": self.importance_score,
            "tags": list(self.tags),
            "entities": [e.to_dict() for e in self.entities],
            "source_url": self.source_url,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "last_accessed_at": _iso(self.last_accessed_at),
            "access_count": self.access_count,
            "is_archived": self.is_archived,
            "archived_at": _iso(self.archived_at),
        }
        if include_embedding:
            out["embedding"] = list(self.embedding)
        return out


@dataclass
class Relationship:
    user_id: str
    source_memory_id: str
    target_memory_id: str
    relationship_type: EdgeType
    strength: float
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def touches(self, memory_id: str) -> bool:
        return memory_id in (self.source_memory_id, self.target_memory_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source_memory_id": self.source_memory_id,
            "target_memory_id": self.target_memory_id,
            "relationship_type": self.relationship_type.value,
            "strength": self.strength,
            "created_at": _iso(self.created_at),
            "metadata": self.metadata,
        }


@dataclass
class SimilarMemory:
    memory: Memory
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        out = self.memory.to_dict()
        out["similarity"] = self.similarity
        return out


@dataclass
class Categorization:
    """Provider verdict for a piece of text."""

    type: str = "fact"
    importance: Any = 0.5
    tags: List[str] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    metadata: Any = None


@dataclass(frozen=True)
class ConflictAssessment:
    has_conflict: bool
    confidence: float
    extends: bool = False
    explanation: Optional[str] = None


@dataclass
class GraphNode:
    memory: Memory
    freshness: float
    days_until_expiry: float

    def to_dict(self) -> Dict[str, Any]:
        out = self.memory.to_dict()
        out["freshness"] = self.freshness
        out["days_until_expiry"] = self.days_until_expiry
        return out


@dataclass
class MemoryGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[Relationship] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass(frozen=True)
class MemoryStats:
    total_memories: int = 0
    total_entities: int = 0
    total_relationships: int = 0
    average_importance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_memories": self.total_memories,
            "total_entities": self.total_entities,
            "total_relationships": self.total_relationships,
            "average_importance": self.average_importance,
        }


@dataclass
class ContextualMemory:
    """A search hit together with its neighbourhood in the graph."""

    memory: Memory
    similarity: float
    relationships: List[Relationship] = field(default_factory=list)
    connected_memories: List[Memory] = field(default_factory=list)
    temporal_context: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out = self.memory.to_dict()
        out["similarity"] = self.similarity
        out["relationships"] = [r.to_dict() for r in self.relationships]
        out["connected_memories"] = [m.to_dict() for m in self.connected_memories]
        out["temporal_context"] = self.temporal_context
        return out


@dataclass
class MemoryContext:
    memories: List[ContextualMemory] = field(default_factory=list)
    graph_summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "graph_summary": self.graph_summary,
        }


def is_memory_id(value: Any) -> bool:
    """True when *value* is a UUID in canonical hyphenated form.

    Braced, ``urn:uuid:`` and unhyphenated spellings are rejected.
    """
    if not isinstance(value, str):
        return False
    try:
        return str(UUID(value)) == value.lower()
    except ValueError:
        return False
