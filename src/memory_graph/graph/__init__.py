from .schema import (
    Categorization,
    ConflictAssessment,
    ContextualMemory,
    EdgeType,
    Entity,
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

__all__ = [
    "Categorization",
    "ConflictAssessment",
    "ContextualMemory",
    "EdgeType",
    "Entity",
    "GraphNode",
    "Memory",
    "MemoryContext",
    "MemoryGraph",
    "MemoryStats",
    "Relationship",
    "SimilarMemory",
    "is_memory_id",
    "utc_now",
]
