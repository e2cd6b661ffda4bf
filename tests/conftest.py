"""Shared fixtures for the memory graph test suite."""

import asyncio
import math
import re
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from memory_graph.graph.schema import Categorization, ConflictAssessment, Entity
from memory_graph.memory.engine import MemoryGraphEngine
from memory_graph.storage.memory import InMemoryVectorStore

OWNER = "user-1"
OTHER_OWNER = "user-2"

_WORD = re.compile(r"\w+")


class WordEmbedder:
    """Bag-of-words embedder: every distinct word gets its own dimension.

    Cosine similarity is then the normalised word overlap, so tests can
    reason about exact similarity values without collisions.
    """

    def __init__(self, dim: int = 1024, delay: float = 0.0) -> None:
        self.dim = dim
        self.delay = delay
        self.vocabulary: Dict[str, int] = {}
        self.calls = 0

    def vector(self, text: str) -> List[float]:
        values = [0.0] * self.dim
        for word in _WORD.findall(text.lower()):
            index = self.vocabulary.setdefault(word, len(self.vocabulary))
            values[index] += 1.0
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.vector(text)


ENTITY_WORDS = {"coffee": "preference", "tea": "preference", "paris": "place", "alice": "person"}


class FakeCategorizer:
    """Rule-based stand-in for the LLM categorizer.

    A new text contradicts a candidate when one says "love" and the other
    "hate"; it extends a candidate when it contains every candidate word.
    """

    def __init__(self, importance: Any = 0.5, metadata: Any = None, conflict_delay: float = 0.0) -> None:
        self.importance = importance
        self.metadata = metadata
        self.conflict_delay = conflict_delay
        self.conflict_calls = 0

    async def categorize(self, text: str) -> Categorization:
        words = set(_WORD.findall(text.lower()))
        entities = [Entity(type=kind, value=word) for word, kind in ENTITY_WORDS.items() if word in words]
        return Categorization(
            type="preference" if words & {"love", "hate", "like"} else "fact",
            importance=self.importance,
            tags=sorted(words & set(ENTITY_WORDS))[:5],
            entities=entities,
            metadata=self.metadata,
        )

    async def detect_conflict(self, candidate_text: str, new_text: str) -> ConflictAssessment:
        self.conflict_calls += 1
        if self.conflict_delay:
            await asyncio.sleep(self.conflict_delay)
        old = set(_WORD.findall(candidate_text.lower()))
        new = set(_WORD.findall(new_text.lower()))
        if ("love" in old and "hate" in new) or ("hate" in old and "love" in new):
            return ConflictAssessment(has_conflict=True, confidence=0.9, explanation="changed preference")
        return ConflictAssessment(has_conflict=False, confidence=0.1, extends=old < new)


@pytest.fixture
def store():
    return InMemoryVectorStore()


@pytest.fixture
def embedder():
    return WordEmbedder()


@pytest.fixture
def categorizer():
    return FakeCategorizer()


def make_engine(store, embedder, categorizer, lock=None, **kwargs: Any) -> MemoryGraphEngine:
    kwargs.setdefault("provider_timeout", 2.0)
    kwargs.setdefault("read_timeout", 2.0)
    return MemoryGraphEngine(store, embedder, categorizer, retention=store, lock=lock, **kwargs)


@pytest.fixture
def engine(store, embedder, categorizer):
    return make_engine(store, embedder, categorizer)


@pytest.fixture
def mock_openrouter():
    """Mock OpenRouter client."""
    client = AsyncMock()
    client.chat = AsyncMock()
    client.embed = AsyncMock()
    client.close = AsyncMock()
    return client


def relationships_of(store: InMemoryVectorStore, memory_id: str, owner: Optional[str] = OWNER) -> list:
    return [e for e in store._edges if e.user_id == owner and e.source_memory_id == memory_id]
