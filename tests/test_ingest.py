"""Tests for the ingest pipeline."""
import asyncio
from types import SimpleNamespace
from unittest.mock import Mock

import numpy as np
import pytest

from conftest import DISCRIMINATING_DIMENSION, make_chunk
from ragcore import db
from ragcore.rag import store_faiss
from ragcore.rag.chunker import SourceType, TextChunker
from ragcore.rag.embedder import Embedder
from ragcore.rag.ingest import IngestPipeline
from ragcore.rag.store_faiss import FAISSVectorStore


@pytest.fixture
def pipeline(embedder, text_store):
    return IngestPipeline(
        chunker=TextChunker(chunk_size=100),
        embedder=embedder,
        vector_store=text_store,
    )


@pytest.mark.asyncio
async def test_ingest_text_chunks_embeds_and_stores(pipeline, text_store):
    result = await pipeline.ingest_text("x" * 250, "/docs/guide.txt", SourceType.TEXT)

    assert result == {"source": "guide.txt", "chunks_created": 3, "stored": True}
    assert await text_store.count() == 3
    assert pipeline.stats["embeddings_generated"] == 3
    assert pipeline.stats["chunks_created"] == 3


@pytest.mark.asyncio
async def test_empty_text_creates_nothing(pipeline, text_store):
    result = await pipeline.ingest_text("   ", "/docs/empty.txt", SourceType.TEXT)

    assert result["chunks_created"] == 0
    assert await text_store.count() == 0


@pytest.mark.asyncio
async def test_reingest_replaces_previous_chunks(pipeline, text_store):
    await pipeline.ingest_text("a" * 300, "/docs/guide.txt", SourceType.TEXT)
    await pipeline.ingest_text("b" * 150, "/docs/guide.txt", SourceType.TEXT)

    assert await text_store.count() == 2
    sources = await text_store.list_sources()
    assert sources == [{"source": "guide.txt", "source_type": "Text", "chunk_count": 2}]


async def _stored_entries(store, source):
    point_ids = await store.get_point_ids_by_source(source)
    return sorted(db.get_entries_by_point_ids(point_ids, store.db_path), key=lambda e: e["chunk_index"])


@pytest.mark.asyncio
async def test_reingest_keeps_chunk_indices_contiguous(pipeline, text_store):
    await pipeline.ingest_text("a" * 100, "/docs/guide.txt", SourceType.TEXT)
    await pipeline.ingest_text("b" * 250, "/docs/guide.txt", SourceType.TEXT)

    entries = await _stored_entries(text_store, "guide.txt")
    assert [e["chunk_index"] for e in entries] == [0, 1, 2]
    assert {e["content"][0] for e in entries} == {"b"}


@pytest.mark.asyncio
async def test_failed_reingest_keeps_previous_entries(pipeline, text_store, monkeypatch):
    await pipeline.ingest_text("a" * 200, "/docs/guide.txt", SourceType.TEXT)

    def failing_upsert(entries, db_path=None):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "upsert_entries", failing_upsert)
    result = await pipeline.ingest_text("b" * 300, "/docs/guide.txt", SourceType.TEXT)
    monkeypatch.undo()

    assert result["stored"] is False
    assert await text_store.count() == 2
    entries = await _stored_entries(text_store, "guide.txt")
    assert [e["content"] for e in entries] == ["a" * 100, "a" * 100]


class BoomFailsSession:
    """Inference session that fails on any input containing token id 9."""

    def get_inputs(self):
        return [SimpleNamespace(name="input_ids"), SimpleNamespace(name="attention_mask")]

    def run(self, output_names, feeds):
        if (feeds["input_ids"] == 9).any():
            raise RuntimeError("inference exploded")
        return [np.ones((1, 16, DISCRIMINATING_DIMENSION), dtype=np.float32)]


@pytest.mark.asyncio
async def test_vectors_from_failed_inference_are_tagged_as_fallback(text_store, tmp_path):
    embedder = Embedder(
        dimension=DISCRIMINATING_DIMENSION,
        max_tokens=16,
        model_path=tmp_path / "model.onnx",
        session=BoomFailsSession(),
        vocabulary={"boom": 9},
    )
    pipeline = IngestPipeline(chunker=TextChunker(chunk_size=10), embedder=embedder, vector_store=text_store)

    await pipeline.ingest_text("helloworldboom boom", "/docs/flaky.txt", SourceType.TEXT)

    assert text_store.get_stats()["embedding_models"] == [
        f"hash-fallback:{DISCRIMINATING_DIMENSION}",
        f"onnx:model.onnx:{DISCRIMINATING_DIMENSION}",
    ]
    assert await pipeline.purge_stale_embeddings() == 1
    entries = await _stored_entries(text_store, "flaky.txt")
    assert [e["content"] for e in entries] == ["helloworld"]


@pytest.mark.asyncio
async def test_cancelled_ingest_writes_nothing(text_store):
    started = asyncio.Event()

    async def never_finishes(texts):
        started.set()
        await asyncio.Event().wait()

    embedder = Mock()
    embedder.model_id = "test:62"
    embedder.embed_batch_tagged = never_finishes
    pipeline = IngestPipeline(chunker=TextChunker(chunk_size=100), embedder=embedder, vector_store=text_store)

    task = asyncio.create_task(pipeline.ingest_text("c" * 500, "/docs/big.txt", SourceType.TEXT))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert await text_store.count() == 0


@pytest.mark.asyncio
async def test_purge_stale_embeddings_keeps_current_model(pipeline, text_store):
    stale = make_chunk("made by an older embedder")
    await text_store.upsert([stale], [[1.0] + [0.0] * 61], embedding_model="onnx:old.onnx:62")
    await pipeline.ingest_text("fresh text", "/docs/new.txt", SourceType.TEXT)

    removed = await pipeline.purge_stale_embeddings()

    assert removed == 1
    assert await text_store.count() == 1
    assert text_store.get_stats()["embedding_models"] == ["hash-fallback:62"]


@pytest.mark.asyncio
async def test_delete_source(pipeline, text_store):
    await pipeline.ingest_text("hello world", "https://example.com/help", SourceType.WEBSITE)
    await pipeline.ingest_text("y" * 60, "https://example.com/help", SourceType.WEBSITE)

    assert await text_store.count() == 1
    assert await pipeline.delete_source("example.com/help")
    assert await text_store.count() == 0


@pytest.mark.asyncio
async def test_ingest_directory_reports_stats(pipeline, tmp_path):
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "a.txt").write_text("alpha " * 30, encoding="utf-8")
    (docs / "b.md").write_text("beta", encoding="utf-8")
    (docs / "empty.txt").write_text("", encoding="utf-8")
    (docs / "bad.txt").write_bytes(b"\xff\xfe\xfa")
    (docs / "image.png").write_bytes(b"\x89PNG")
    progress = []

    stats = await pipeline.ingest_directory(
        docs, progress_callback=lambda current, total, path: progress.append((current, total))
    )

    assert stats["files_processed"] == 3
    assert stats["files_failed"] == 1
    assert stats["chunks_created"] == 3
    assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]


@pytest.mark.asyncio
async def test_ingest_directory_missing(pipeline, tmp_path):
    with pytest.raises(FileNotFoundError):
        await pipeline.ingest_directory(tmp_path / "nope")


@pytest.mark.asyncio
async def test_ingest_paths_writes_the_index_once(pipeline, text_store, tmp_path, monkeypatch):
    paths = []
    for name in ("a.txt", "b.txt", "c.txt"):
        path = tmp_path / name
        path.write_text(f"contents of {name}", encoding="utf-8")
        paths.append(path)

    writes = []
    write_index = store_faiss.faiss.write_index

    def counting_write(index, path):
        writes.append(path)
        write_index(index, path)

    monkeypatch.setattr(store_faiss.faiss, "write_index", counting_write)

    stats = await pipeline.ingest_paths(paths)

    assert stats["files_processed"] == 3
    assert len(writes) == 1
    reopened = FAISSVectorStore(index_dir=text_store.index_dir, dimension=DISCRIMINATING_DIMENSION)
    await reopened.load_index()
    assert await reopened.count() == 3
