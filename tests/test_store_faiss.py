"""Tests for the FAISS vector store and its SQLite payload."""
import dataclasses
import uuid

import pytest

from conftest import make_chunk
from ragcore import db
from ragcore.rag import store_faiss
from ragcore.rag.chunker import SourceType
from ragcore.rag.store_faiss import FAISSVectorStore, point_id_for

E0 = [1.0, 0.0, 0.0, 0.0]
E1 = [0.0, 1.0, 0.0, 0.0]
E2 = [0.0, 0.0, 1.0, 0.0]


async def _seed(store):
    chunks = [
        make_chunk("warranty covers two years", source="manual.pdf", index=0),
        make_chunk("refunds within thirty days", source="policy.pdf", index=0),
        make_chunk("shipping is free", source="faq.txt", index=0, source_type=SourceType.TEXT),
    ]
    assert await store.upsert(chunks, [E0, E1, E2], embedding_model="test:4")
    return chunks


@pytest.mark.asyncio
async def test_stored_chunk_is_its_own_nearest_neighbour(store):
    chunks = await _seed(store)

    results = await store.search(E1, limit=3)

    assert results[0].chunk.id == chunks[1].id
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)


@pytest.mark.asyncio
async def test_search_applies_score_threshold(store):
    await _seed(store)

    results = await store.search([1.0, 0.2, 0.0, 0.0], limit=5, min_score=0.5)

    assert [r.chunk.content for r in results] == ["warranty covers two years"]
    assert all(0.0 <= r.score <= 1.0 for r in results)


@pytest.mark.asyncio
async def test_search_normalizes_query_and_stored_vectors(store):
    chunk = make_chunk("scaled")
    await store.upsert([chunk], [[3.0, 0.0, 0.0, 0.0]])

    results = await store.search([0.5, 0.0, 0.0, 0.0], limit=1)

    assert results[0].score == pytest.approx(1.0, abs=1e-5)


@pytest.mark.asyncio
async def test_search_filters_by_language(store):
    english = make_chunk("return policy", language="en")
    arabic = make_chunk("سياسة الإرجاع", language="ar")
    await store.upsert([english, arabic], [E0, [0.9, 0.1, 0.0, 0.0]])

    results = await store.search(E0, limit=5, language="ar")

    assert [r.chunk.id for r in results] == [arabic.id]
    assert await store.search(E0, limit=5, language="fr") == []


@pytest.mark.asyncio
async def test_upsert_rejects_mismatched_inputs(store):
    with pytest.raises(ValueError):
        await store.upsert([make_chunk(), make_chunk()], [E0])

    with pytest.raises(ValueError):
        await store.upsert([make_chunk()], [[1.0, 0.0, 0.0]])


@pytest.mark.asyncio
async def test_upsert_replaces_existing_point(store):
    chunk = make_chunk("v1")
    await store.upsert([chunk], [E0])
    await store.upsert([chunk], [E1])

    assert await store.count() == 1
    results = await store.search(E1, limit=1, min_score=0.9)
    assert results[0].chunk.id == chunk.id


@pytest.mark.asyncio
async def test_delete_by_source_removes_only_that_source(store):
    await _seed(store)

    assert await store.delete_by_source("manual.pdf")

    assert await store.count() == 2
    results = await store.search(E0, limit=5)
    assert "manual.pdf" not in {r.source for r in results}
    assert await store.delete_by_source("never-indexed.pdf")


@pytest.mark.asyncio
async def test_upsert_recreates_missing_collection(store):
    await _seed(store)
    await store.drop_collection()

    assert await store.search(E0, limit=5) == []
    assert await store.count() == 0

    chunk = make_chunk("after drop")
    assert await store.upsert([chunk], [E2])
    assert await store.count() == 1
    assert (await store.search(E2, limit=1))[0].chunk.id == chunk.id


@pytest.mark.asyncio
async def test_chunks_are_rebuilt_from_payload_on_cache_miss(store):
    chunks = await _seed(store)
    store._cache.clear()

    result = (await store.search(E0, limit=1))[0]
    original = chunks[0]

    assert result.chunk == original


@pytest.mark.asyncio
async def test_index_persists_across_instances(store, tmp_path):
    chunks = await _seed(store)

    reopened = FAISSVectorStore(index_dir=tmp_path, dimension=4, min_score=0.0)
    await reopened.init_or_load()

    assert await reopened.count() == 3
    result = (await reopened.search(E2, limit=1))[0]
    assert result.chunk.id == chunks[2].id
    assert result.chunk.source_type == SourceType.TEXT
    assert [s["source"] for s in await reopened.list_sources()] == ["faq.txt", "manual.pdf", "policy.pdf"]


@pytest.mark.asyncio
async def test_dimension_change_recreates_empty_collection(store, tmp_path):
    await _seed(store)

    resized = FAISSVectorStore(index_dir=tmp_path, dimension=8, min_score=0.0)
    await resized.init_or_load()

    assert await resized.count() == 0
    assert resized.get_stats()["dimension"] == 8


@pytest.mark.asyncio
async def test_delete_by_embedding_model(store):
    old = make_chunk("old scheme")
    new = make_chunk("new scheme")
    await store.upsert([old], [E0], embedding_model="hash-fallback:4")
    await store.upsert([new], [E1], embedding_model="onnx:model.onnx:4")

    removed = await store.delete_by_embedding_model("onnx:model.onnx:4", keep=True)

    assert removed == 1
    assert await store.count() == 1
    assert store.get_stats()["embedding_models"] == ["onnx:model.onnx:4"]


@pytest.mark.asyncio
async def test_search_with_wrong_query_width_returns_empty(store):
    await _seed(store)

    assert await store.search([1.0, 0.0], limit=3) == []


@pytest.mark.asyncio
async def test_search_on_empty_collection(store):
    assert await store.search(E0, limit=3) == []


def test_point_id_is_deterministic_and_fits_int64():
    chunk_id = uuid.UUID("12345678-1234-5678-1234-567812345678")

    assert point_id_for(chunk_id) == point_id_for(chunk_id)
    assert 0 <= point_id_for(chunk_id) < 2 ** 63
    assert point_id_for(chunk_id) != point_id_for(uuid.uuid4())


class RejectFirstAdd:
    """Wraps a FAISS index and fails the first add_with_ids call."""

    def __init__(self, index):
        self._index = index
        self.adds = 0

    def add_with_ids(self, vectors, ids):
        self.adds += 1
        if self.adds == 1:
            raise RuntimeError("index rejected the write")
        return self._index.add_with_ids(vectors, ids)

    def __getattr__(self, name):
        return getattr(self._index, name)


def _stored_contents(store, chunks):
    entries = db.get_entries_by_point_ids([point_id_for(c.id) for c in chunks], store.db_path)
    return sorted(e["content"] for e in entries)


@pytest.mark.asyncio
async def test_failed_payload_write_keeps_previous_version(store, monkeypatch):
    chunk = make_chunk("v1")
    await store.upsert([chunk], [E0])

    def failing_upsert(entries, db_path=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "upsert_entries", failing_upsert)
    assert not await store.upsert([dataclasses.replace(chunk, content="v2")], [E1])
    monkeypatch.undo()

    assert await store.count() == 1
    assert _stored_contents(store, [chunk]) == ["v1"]
    results = await store.search(E0, limit=1, min_score=0.9)
    assert results[0].chunk.id == chunk.id


@pytest.mark.asyncio
async def test_failed_index_write_restores_vectors_and_payload(store):
    chunk = make_chunk("v1")
    await store.upsert([chunk], [E0])
    fresh = make_chunk("never stored")

    real_index = store.index
    store.index = RejectFirstAdd(real_index)
    assert not await store.upsert([dataclasses.replace(chunk, content="v2"), fresh], [E1, E2])
    store.index = real_index

    assert await store.count() == 1
    assert _stored_contents(store, [chunk, fresh]) == ["v1"]
    store._cache.clear()
    results = await store.search(E0, limit=1, min_score=0.9)
    assert results[0].chunk.content == "v1"


@pytest.mark.asyncio
async def test_upsert_tags_each_chunk_with_its_own_embedding_model(store):
    model_chunk = make_chunk("model path")
    fallback_chunk = make_chunk("fallback path")

    assert await store.upsert(
        [model_chunk, fallback_chunk],
        [E0, E1],
        embedding_model=["onnx:model.onnx:4", "hash-fallback:4"],
    )

    assert store.get_stats()["embedding_models"] == ["hash-fallback:4", "onnx:model.onnx:4"]
    assert await store.delete_by_embedding_model("hash-fallback:4") == 1
    assert (await store.search(E0, limit=1))[0].chunk.id == model_chunk.id


@pytest.mark.asyncio
async def test_upsert_rejects_misaligned_model_tags(store):
    with pytest.raises(ValueError):
        await store.upsert([make_chunk(), make_chunk()], [E0, E1], embedding_model=["a:4"])


@pytest.mark.asyncio
async def test_batched_writes_persist_once_on_exit(store, tmp_path, monkeypatch):
    writes = []
    write_index = store_faiss.faiss.write_index

    def counting_write(index, path):
        writes.append(path)
        write_index(index, path)

    monkeypatch.setattr(store_faiss.faiss, "write_index", counting_write)

    with store.batched_writes():
        await store.upsert([make_chunk("one")], [E0])
        await store.upsert([make_chunk("two")], [E1])
        with store.batched_writes():
            await store.delete_by_source("nothing-here.pdf")
        assert writes == []

    assert len(writes) == 1
    reopened = FAISSVectorStore(index_dir=tmp_path, dimension=4, min_score=0.0)
    await reopened.load_index()
    assert await reopened.count() == 2
