"""Tests for the memory creation pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import OWNER, FakeCategorizer, WordEmbedder, make_engine, relationships_of
from memory_graph.errors import ContentTooLarge, InvalidInput, PersistenceError, ProviderError, UpstreamTimeout
from memory_graph.graph.schema import EdgeType
from memory_graph.memory.engine import clamp_importance, validate_content
from memory_graph.memory.locks import LocalOwnerLock
from memory_graph.memory.metadata import CYCLE_MARKER, TRUNCATED_MARKER


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("content", [None, 42, b"bytes", "", "   ", "\n\t  \r\n", "before\x00after"])
def test_validate_content_rejects_missing_or_blank(content):
    with pytest.raises(InvalidInput):
        validate_content(content)


def test_validate_content_trims():
    assert validate_content("  hello  ") == "hello"


def test_validate_content_limit_applies_after_trimming():
    assert validate_content("  " + "x" * 50_000 + "  ") == "x" * 50_000
    with pytest.raises(ContentTooLarge) as exc_info:
        validate_content("x" * 50_001)
    assert exc_info.value.length == 50_001
    assert exc_info.value.limit == 50_000


def test_content_too_large_is_not_invalid_input():
    assert not issubclass(ContentTooLarge, InvalidInput)


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "", "   ", 7, "nul\x00byte"])
async def test_invalid_content_calls_no_provider(store, content):
    embedder = AsyncMock()
    categorizer = AsyncMock()
    engine = make_engine(store, embedder, categorizer)

    with pytest.raises(InvalidInput):
        await engine.create_memory(OWNER, content)

    embedder.embed.assert_not_awaited()
    categorizer.categorize.assert_not_awaited()


@pytest.mark.asyncio
async def test_oversized_content_calls_no_provider(store):
    embedder = AsyncMock()
    categorizer = AsyncMock()
    engine = make_engine(store, embedder, categorizer, max_content_length=10)

    with pytest.raises(ContentTooLarge):
        await engine.create_memory(OWNER, "x" * 11)

    embedder.embed.assert_not_awaited()
    categorizer.categorize.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_owner_rejected(engine):
    with pytest.raises(InvalidInput):
        await engine.create_memory("", "hello")


# ---------------------------------------------------------------------------
# Stored fields
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_content_round_trips_exactly(engine):
    text = "Café ☕ naïve 日本語 🎉\u0001inner\u0007control"
    memory = await engine.create_memory(OWNER, f"  {text}\n")

    assert memory.content == text
    fetched = await engine.get_memory_by_id(OWNER, memory.id)
    assert fetched is not None
    assert fetched.content == text


@pytest.mark.asyncio
async def test_created_memory_fields(engine):
    memory = await engine.create_memory(OWNER, "I love coffee in Paris", source_url="https://example.org/a")

    assert memory.user_id == OWNER
    assert memory.content_type == "preference"
    assert memory.source_url == "https://example.org/a"
    assert memory.importance_score == 0.5
    assert memory.access_count == 0
    assert memory.is_archived is False
    assert {e.value for e in memory.entities} == {"coffee", "paris"}
    assert memory.metadata["type"] == "preference"
    assert memory.metadata["entity_count"] == 2
    assert memory.metadata["tags"] == ["coffee", "paris"]
    assert len(memory.embedding) == 1024


@pytest.mark.asyncio
async def test_caller_content_type_wins(engine):
    memory = await engine.create_memory(OWNER, "I love tea", content_type="note")
    assert memory.content_type == "note"
    assert memory.metadata["type"] == "preference"


@pytest.mark.parametrize("raw,expected", [
    (1.5, 1.0),
    (-0.5, 0.0),
    (0, 0.0),
    (1, 1.0),
    (0.73, 0.73),
    ("0.25", 0.25),
    (float("nan"), 0.5),
    (float("inf"), 1.0),
    ("very important", 0.5),
    (None, 0.5),
    (True, 0.5),
])
def test_clamp_importance(raw, expected):
    assert clamp_importance(raw) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("raw,expected", [(1.5, 1.0), (-0.5, 0.0), (0, 0.0), (1, 1.0)])
async def test_importance_clamped_on_create(store, embedder, raw, expected):
    engine = make_engine(store, embedder, FakeCategorizer(importance=raw))
    memory = await engine.create_memory(OWNER, "something worth keeping")
    assert memory.importance_score == expected


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_provider_metadata_merged(store, embedder):
    engine = make_engine(store, embedder, FakeCategorizer(metadata={"mood": "happy", "type": "ignored"}))
    memory = await engine.create_memory(OWNER, "A sunny day")

    assert memory.metadata["mood"] == "happy"
    assert memory.metadata["type"] == "fact"


@pytest.mark.asyncio
async def test_self_referential_metadata_is_stored(store, embedder):
    cyclic = {"name": "loop"}
    cyclic["self"] = cyclic
    engine = make_engine(store, embedder, FakeCategorizer(metadata=cyclic))

    memory = await engine.create_memory(OWNER, "cyclic metadata")

    assert memory.metadata["name"] == "loop"
    assert memory.metadata["self"] == CYCLE_MARKER


@pytest.mark.asyncio
async def test_deep_metadata_is_bounded(store, embedder):
    deep = leaf = {}
    for _ in range(5000):
        leaf["child"] = {}
        leaf = leaf["child"]
    engine = make_engine(store, embedder, FakeCategorizer(metadata=deep), metadata_max_depth=8)

    memory = await engine.create_memory(OWNER, "deep metadata")

    node = memory.metadata
    for _ in range(7):
        node = node["child"]
    assert node["child"] == TRUNCATED_MARKER


@pytest.mark.asyncio
async def test_non_mapping_metadata_is_kept_under_a_key(store, embedder):
    engine = make_engine(store, embedder, FakeCategorizer(metadata=["a", "b"]))
    memory = await engine.create_memory(OWNER, "list metadata")
    assert memory.metadata["provider_metadata"] == ["a", "b"]


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_embedding_is_provider_error(store, categorizer):
    embedder = AsyncMock()
    embedder.embed = AsyncMock(return_value=[])
    engine = make_engine(store, embedder, categorizer)

    with pytest.raises(ProviderError):
        await engine.create_memory(OWNER, "hello")
    assert (await store.stats(OWNER)).total_memories == 0


@pytest.mark.asyncio
async def test_categorizer_failure_propagates_and_stores_nothing(store, embedder):
    categorizer = AsyncMock()
    categorizer.categorize = AsyncMock(side_effect=ProviderError("boom", provider="categorization"))
    engine = make_engine(store, embedder, categorizer)

    with pytest.raises(ProviderError, match="boom"):
        await engine.create_memory(OWNER, "hello")
    assert (await store.stats(OWNER)).total_memories == 0


@pytest.mark.asyncio
async def test_slow_embedder_times_out_and_stores_nothing(store, categorizer):
    engine = make_engine(store, WordEmbedder(delay=1.0), categorizer, provider_timeout=0.05)

    with pytest.raises(UpstreamTimeout) as exc_info:
        await engine.create_memory(OWNER, "too slow")

    assert exc_info.value.provider == "embedding"
    assert isinstance(exc_info.value, ProviderError)
    assert (await store.stats(OWNER)).total_memories == 0


@pytest.mark.asyncio
async def test_slow_conflict_check_times_out_and_stores_nothing(store, embedder):
    engine = make_engine(store, embedder, FakeCategorizer(), provider_timeout=0.05)
    await engine.create_memory(OWNER, "I love coffee")

    slow = make_engine(store, embedder, FakeCategorizer(conflict_delay=1.0), provider_timeout=0.05)
    with pytest.raises(UpstreamTimeout) as exc_info:
        await slow.create_memory(OWNER, "I hate coffee")

    assert exc_info.value.provider == "categorization"
    assert (await store.stats(OWNER)).total_memories == 1


@pytest.mark.asyncio
async def test_failed_save_leaves_nothing_behind(store, embedder, categorizer):
    engine = make_engine(store, embedder, categorizer)
    await engine.create_memory(OWNER, "I love coffee")
    store.save_memory = AsyncMock(side_effect=PersistenceError("disk full"))

    with pytest.raises(PersistenceError):
        await engine.create_memory(OWNER, "I hate coffee")

    stats = await store.stats(OWNER)
    assert stats.total_memories == 1
    assert stats.total_relationships == 0


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_creations_get_distinct_ids(engine, store):
    memories = await asyncio.gather(*(engine.create_memory(OWNER, f"note number {i}") for i in range(25)))

    assert len({m.id for m in memories}) == 25
    assert (await store.stats(OWNER)).total_memories == 25


@pytest.mark.asyncio
async def test_concurrent_contradictions_each_get_an_edge(store, embedder):
    engine = make_engine(store, embedder, FakeCategorizer(conflict_delay=0.01))
    original = await engine.create_memory(OWNER, "I love coffee")

    first, second = await asyncio.gather(
        engine.create_memory(OWNER, "I hate coffee"),
        engine.create_memory(OWNER, "I really hate coffee"),
    )

    for memory in (first, second):
        edges = relationships_of(store, memory.id)
        contradictions = [e for e in edges if e.relationship_type is EdgeType.CONTRADICTS]
        assert [e.target_memory_id for e in contradictions] == [original.id]
        assert contradictions[0].strength == 0.9

    # Without an owner lock neither submission saw the other.
    assert not any(e.target_memory_id == second.id for e in relationships_of(store, first.id))
    assert not any(e.target_memory_id == first.id for e in relationships_of(store, second.id))

    kept = await store.get_memory(OWNER, original.id)
    assert kept is not None and kept.is_archived is False


@pytest.mark.asyncio
async def test_owner_lock_serializes_resolution(store, embedder):
    engine = make_engine(store, embedder, FakeCategorizer(conflict_delay=0.01), lock=LocalOwnerLock())
    original = await engine.create_memory(OWNER, "I love coffee")

    first, second = await asyncio.gather(
        engine.create_memory(OWNER, "I hate coffee"),
        engine.create_memory(OWNER, "I really hate coffee"),
    )

    for memory in (first, second):
        targets = {e.target_memory_id for e in relationships_of(store, memory.id)
                   if e.relationship_type is EdgeType.CONTRADICTS}
        assert targets == {original.id}

    first_sees_second = any(e.target_memory_id == second.id for e in relationships_of(store, first.id))
    second_sees_first = any(e.target_memory_id == first.id for e in relationships_of(store, second.id))
    assert first_sees_second != second_sees_first
