"""Tests for the vector store backends."""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from conftest import OTHER_OWNER, OWNER
from memory_graph.errors import PersistenceError
from memory_graph.graph.schema import EdgeType, Entity, Memory, Relationship, is_memory_id, utc_now
from memory_graph.storage.base import cosine_similarity
from memory_graph.storage.memory import InMemoryVectorStore
from memory_graph.storage.postgres import PostgresVectorStore, _vector_literal


def _memory(owner=OWNER, vector=(1.0, 0.0, 0.0, 0.0), content="text", **kwargs) -> Memory:
    return Memory(user_id=owner, content=content, content_type="fact", embedding=list(vector), **kwargs)


def _edge(source: Memory, target_id: str, owner=OWNER) -> Relationship:
    return Relationship(
        user_id=owner,
        source_memory_id=source.id,
        target_memory_id=target_id,
        relationship_type=EdgeType.RELATED_TO,
        strength=0.7,
    )


# ---------------------------------------------------------------------------
# cosine_similarity
# ---------------------------------------------------------------------------


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == -1.0
    assert cosine_similarity([1.0, 0.0, 0.0, 0.0], [1.0, 1.0, 1.0, 1.0]) == 0.5


@pytest.mark.parametrize("a,b", [([], [1.0]), ([1.0], [1.0, 2.0]), ([0.0, 0.0], [1.0, 1.0])])
def test_cosine_similarity_degenerate(a, b):
    assert cosine_similarity(a, b) == 0.0


# ---------------------------------------------------------------------------
# InMemoryVectorStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_save_rejects_cross_owner_edge_atomically(store):
    foreign = await store.save_memory(_memory(owner=OTHER_OWNER), [])
    entity = Entity(type="place", value="Paris")
    memory = _memory(entities=[entity])

    with pytest.raises(PersistenceError):
        await store.save_memory(memory, [_edge(memory, foreign.id)])

    assert await store.get_memory(OWNER, memory.id) is None
    assert store.entity_mentions(OWNER, "place", "paris") == 0
    assert (await store.stats(OWNER)).total_relationships == 0


@pytest.mark.asyncio
async def test_save_rejects_missing_target_and_wrong_source(store):
    memory = _memory()
    with pytest.raises(PersistenceError):
        await store.save_memory(memory, [_edge(memory, str(uuid.uuid4()))])

    other = await store.save_memory(_memory(), [])
    stray = _edge(other, other.id)
    with pytest.raises(PersistenceError):
        await store.save_memory(memory, [stray])
    assert await store.get_memory(OWNER, memory.id) is None


@pytest.mark.asyncio
async def test_save_rejects_duplicate_id(store):
    memory = await store.save_memory(_memory(), [])
    with pytest.raises(PersistenceError):
        await store.save_memory(memory, [])


@pytest.mark.asyncio
async def test_returned_memories_are_copies(store):
    saved = await store.save_memory(_memory(tags=["a"]), [])
    saved.tags.append("mutated")

    fetched = await store.get_memory(OWNER, saved.id)
    assert fetched.tags == ["a"]


@pytest.mark.asyncio
async def test_duplicate_edges_are_skipped(store):
    target = await store.save_memory(_memory(), [])
    memory = _memory()
    await store.save_memory(memory, [_edge(memory, target.id), _edge(memory, target.id)])

    assert (await store.stats(OWNER)).total_relationships == 1


@pytest.mark.asyncio
async def test_nearest_threshold_is_inclusive(store):
    await store.save_memory(_memory(vector=(1.0, 0.0, 0.0, 0.0)), [])

    hits = await store.nearest(OWNER, [1.0, 1.0, 1.0, 1.0], limit=5, min_similarity=0.5)
    misses = await store.nearest(OWNER, [1.0, 1.0, 1.0, 1.0], limit=5, min_similarity=0.51)

    assert [h.similarity for h in hits] == [0.5]
    assert misses == []


@pytest.mark.asyncio
async def test_nearest_orders_by_similarity_then_recency(store):
    now = utc_now()
    old = await store.save_memory(_memory(vector=(1.0, 1.0, 0.0, 0.0), created_at=now - timedelta(hours=1)), [])
    new = await store.save_memory(_memory(vector=(1.0, 1.0, 0.0, 0.0), created_at=now), [])
    best = await store.save_memory(_memory(vector=(1.0, 0.0, 0.0, 0.0), created_at=now - timedelta(days=3)), [])

    results = await store.nearest(OWNER, [1.0, 0.0, 0.0, 0.0], limit=10)

    assert [r.memory.id for r in results] == [best.id, new.id, old.id]


@pytest.mark.asyncio
async def test_entity_mentions_are_counted(store):
    await store.save_memory(_memory(entities=[Entity("person", "Alice")]), [])
    await store.save_memory(_memory(entities=[Entity("person", " alice "), Entity("place", "Paris")]), [])

    assert store.entity_mentions(OWNER, "person", "ALICE") == 2
    assert store.entity_mentions(OWNER, "place", "paris") == 1
    assert store.entity_mentions(OTHER_OWNER, "person", "alice") == 0
    assert (await store.stats(OWNER)).total_entities == 2


@pytest.mark.asyncio
async def test_memories_sharing_entities(store):
    alice = await store.save_memory(_memory(entities=[Entity("person", "Alice")]), [])
    await store.save_memory(_memory(entities=[Entity("place", "Paris")]), [])
    await store.save_memory(_memory(owner=OTHER_OWNER, entities=[Entity("person", "Alice")]), [])

    found = await store.memories_sharing_entities(OWNER, [Entity("person", "alice")], exclude_ids=[])
    excluded = await store.memories_sharing_entities(OWNER, [Entity("person", "alice")], exclude_ids=[alice.id])

    assert [m.id for m in found] == [alice.id]
    assert excluded == []


@pytest.mark.asyncio
async def test_archive_created_before(store):
    cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)
    old = await store.save_memory(_memory(created_at=cutoff - timedelta(days=1)), [])
    recent = await store.save_memory(_memory(created_at=cutoff + timedelta(days=1)), [])

    assert await store.archive_created_before(OWNER, cutoff, "expired") == 1
    assert await store.archive_created_before(OWNER, cutoff, "expired") == 0
    assert (await store.get_memory(OWNER, old.id)).metadata["archive_reason"] == "expired"
    assert [m.id for m in await store.list_active(OWNER)] == [recent.id]


@pytest.mark.asyncio
async def test_relationships_between_only_active_pairs(store):
    a = await store.save_memory(_memory(), [])
    b = _memory()
    await store.save_memory(b, [_edge(b, a.id)])

    assert len(await store.relationships_between(OWNER, [a.id, b.id])) == 1
    assert await store.relationships_between(OWNER, [b.id]) == []
    assert len(await store.relationships_for(OWNER, a.id)) == 1


@pytest.mark.asyncio
async def test_retention_context():
    store = InMemoryVectorStore(default_retention_days=14)
    store.set_retention_days(OWNER, 7)

    assert await store.get_retention_days(OWNER) == 7
    assert await store.get_retention_days(OTHER_OWNER) == 14


# ---------------------------------------------------------------------------
# PostgresVectorStore
# ---------------------------------------------------------------------------


@pytest.fixture
def uninitialized_store():
    return PostgresVectorStore(dsn="postgresql://localhost/test", dimensions=4)


@pytest.mark.asyncio
async def test_postgres_save_without_open_raises(uninitialized_store):
    with pytest.raises(RuntimeError, match="not initialized"):
        await uninitialized_store.save_memory(_memory(), [])


@pytest.mark.asyncio
async def test_postgres_nearest_without_open_raises(uninitialized_store):
    with pytest.raises(RuntimeError, match="not initialized"):
        await uninitialized_store.nearest(OWNER, [0.0] * 4, limit=3)


@pytest.mark.asyncio
async def test_postgres_malformed_ids_skip_the_database(uninitialized_store):
    assert await uninitialized_store.get_memory(OWNER, "invalid") is None
    assert await uninitialized_store.archive(OWNER, "123", "manual") is False


def test_postgres_is_connected_false_before_open(uninitialized_store):
    assert uninitialized_store.is_connected is False


def test_vector_literal():
    assert _vector_literal([1, 0.5, -2]) == "[1.0,0.5,-2.0]"


def test_row_to_memory_parses_text_embedding():
    created = datetime(2024, 5, 1, 8, 30)
    row = {
        "id": uuid.UUID("12345678-1234-4678-9234-567812345678"),
        "user_id": OWNER,
        "content": "hello",
        "content_type": "fact",
        "embedding": "[0.1,0.2]",
        "importance_score": 0.4,
        "tags": ["x"],
        "entities": [{"type": "person", "value": "Alice", "context": None}],
        "source_url": None,
        "metadata": {"type": "fact"},
        "created_at": created,
        "last_accessed": created,
        "access_count": 3,
        "is_archived": False,
        "archived_at": None,
    }

    memory = PostgresVectorStore._row_to_memory(row)

    assert memory.id == "12345678-1234-4678-9234-567812345678"
    assert memory.embedding == [0.1, 0.2]
    assert memory.entities == [Entity("person", "Alice")]
    assert memory.created_at.tzinfo is timezone.utc
    assert memory.access_count == 3


class _RecordingCursor:
    def __init__(self, row=None):
        self.executed = []
        self._row = row

    async def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))

    async def fetchone(self):
        return self._row

    async def fetchall(self):
        return []


def _attach_cursor(store, cursor):
    @asynccontextmanager
    async def fake_cursor(operation):
        yield cursor

    store._cursor = fake_cursor
    return cursor


@pytest.mark.asyncio
@pytest.mark.parametrize("memory_id", [
    "urn:uuid:56ca16c4-3b2e-4f3a-9d5e-7c1a2b3c4d5e",
    "{56ca16c4-3b2e-4f3a-9d5e-7c1a2b3c4d5e}",
    "56ca16c43b2e4f3a9d5e7c1a2b3c4d5e",
])
async def test_postgres_non_canonical_ids_never_reach_sql(uninitialized_store, memory_id):
    cursor = _attach_cursor(uninitialized_store, _RecordingCursor())

    assert await uninitialized_store.get_memory(OWNER, memory_id) is None
    assert await uninitialized_store.archive(OWNER, memory_id, "manual") is False
    assert cursor.executed == []


@pytest.mark.asyncio
async def test_postgres_canonical_id_is_queried(uninitialized_store):
    cursor = _attach_cursor(uninitialized_store, _RecordingCursor())
    memory_id = "56ca16c4-3b2e-4f3a-9d5e-7c1a2b3c4d5e"

    assert await uninitialized_store.get_memory(OWNER, memory_id) is None
    assert cursor.executed[0][1] == (memory_id, OWNER)


def test_is_memory_id_accepts_only_canonical_form():
    canonical = str(uuid.uuid4())
    assert is_memory_id(canonical)
    assert is_memory_id(canonical.upper())
    assert not is_memory_id(f"urn:uuid:{canonical}")
    assert not is_memory_id("{" + canonical + "}")
    assert not is_memory_id(canonical.replace("-", ""))


@pytest.mark.asyncio
@pytest.mark.parametrize("iterative, setting", [
    (True, "SET LOCAL hnsw.iterative_scan = strict_order"),
    (False, "SET LOCAL hnsw.ef_search = 1000"),
])
async def test_postgres_nearest_widens_the_index_scan(uninitialized_store, iterative, setting):
    cursor = _attach_cursor(uninitialized_store, _RecordingCursor())
    uninitialized_store._iterative_scan = iterative

    assert await uninitialized_store.nearest(OWNER, [1.0, 0.0, 0.0, 0.0], limit=5, min_similarity=0.5) == []

    assert cursor.executed[0] == (setting, None)
    query, params = cursor.executed[1]
    assert "user_id = %(user_id)s" in query
    assert params["user_id"] == OWNER


@pytest.mark.asyncio
@pytest.mark.parametrize("version, expected", [("0.8.0", True), ("0.10.1", True), ("0.7.4", False), (None, False)])
async def test_postgres_detects_iterative_scan_support(uninitialized_store, version, expected):
    row = {"extversion": version} if version else None
    _attach_cursor(uninitialized_store, _RecordingCursor(row))

    assert await uninitialized_store._supports_iterative_scan() is expected
