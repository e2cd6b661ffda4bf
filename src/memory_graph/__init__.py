"""Personal knowledge graph of embedded, linked memories."""

from .errors import (
    ContentTooLarge,
    InvalidInput,
    MemoryGraphError,
    PersistenceError,
    ProviderError,
    StoreTimeout,
    UpstreamTimeout,
)
from .memory.engine import MemoryGraphEngine

__all__ = [
    "ContentTooLarge",
    "InvalidInput",
    "MemoryGraphError",
    "PersistenceError",
    "ProviderError",
    "StoreTimeout",
    "UpstreamTimeout",
    "MemoryGraphEngine",
]
