"""Shared fixtures: temporary stores and fallback-mode embedders."""
import os
import tempfile
import uuid
from datetime import datetime, timezone

# Keep the default data directory out of the working tree
os.environ.setdefault("DATA_DIR", os.path.join(tempfile.gettempdir(), "ragcore-test-data"))

import pytest
import pytest_asyncio

from ragcore.rag.chunker import Chunk, SourceType
from ragcore.rag.embedder import Embedder
from ragcore.rag.store_faiss import FAISSVectorStore, SearchResult

# 62 = 2 * 31, so each fallback word lands on two buckets and texts stay distinguishable
DISCRIMINATING_DIMENSION = 62


def make_chunk(
    content: str = "some content",
    source: str = "manual.pdf",
    index: int = 0,
    language: str = "en",
    source_type: SourceType = SourceType.PDF,
) -> Chunk:
    return Chunk(
        id=uuid.uuid4(),
        content=content,
        source=source,
        source_type=source_type,
        index=index,
        created_at=datetime.now(timezone.utc),
        language=language,
        extra_metadata={"file_path": f"/docs/{source}"},
    )


def make_result(source: str, score: float, content: str = None) -> SearchResult:
    return SearchResult(
        chunk=make_chunk(content=content or f"{source} text {score}", source=source),
        score=score,
    )


@pytest.fixture
def embedder():
    """Fallback-mode embedder with a dimension that keeps texts distinguishable."""
    return Embedder(dimension=DISCRIMINATING_DIMENSION, max_concurrency=2, load_model=False)


@pytest_asyncio.fixture
async def store(tmp_path):
    """Empty 4-dimensional store for hand-built vectors."""
    vector_store = FAISSVectorStore(index_dir=tmp_path, dimension=4, min_score=0.0)
    await vector_store.create_collection()
    return vector_store


@pytest_asyncio.fixture
async def text_store(tmp_path):
    """Empty store sized for the ``embedder`` fixture."""
    vector_store = FAISSVectorStore(
        index_dir=tmp_path / "text",
        dimension=DISCRIMINATING_DIMENSION,
        min_score=0.0,
    )
    await vector_store.create_collection()
    return vector_store
