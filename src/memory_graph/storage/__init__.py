"""Storage backends for the memory graph."""

from .base import RetentionContext, VectorStore, cosine_similarity
from .memory import InMemoryVectorStore
from .postgres import PostgresVectorStore

__all__ = [
    "RetentionContext",
    "VectorStore",
    "cosine_similarity",
    "InMemoryVectorStore",
    "PostgresVectorStore",
]
