"""FAISS vector store for semantic search.

Handles:
- Collection (index) creation, loading and self-healing recreation
- Upsert with deterministic point ids derived from chunk ids
- Cosine search with score threshold and language filter
- Delete by source / by embedding model
- Payload persistence in SQLite with a bounded reconstruction cache
- Batched index persistence for bulk writes
"""
import hashlib
import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import faiss
import numpy as np
import structlog

from ragcore import config, db
from ragcore.rag.cache import LRUCache
from ragcore.rag.chunker import Chunk, SourceType

logger = structlog.get_logger()

INDEX_TYPE = "IndexIDMap2(IndexFlatIP)"

# FAISS ids are signed int64
_POINT_ID_MASK = 0x7FFF_FFFF_FFFF_FFFF


class VectorStoreError(Exception):
    """Base error for vector store failures."""


class CollectionNotFoundError(VectorStoreError):
    """The FAISS collection does not exist (never created, or dropped)."""


@dataclass
class SearchResult:
    """A retrieved chunk with its cosine similarity (0-1)."""

    chunk: Chunk
    score: float

    @property
    def source(self) -> str:
        return self.chunk.source


def point_id_for(chunk_id: uuid.UUID) -> int:
    """Derive a stable 63-bit point id from a chunk UUID."""
    digest = hashlib.blake2b(chunk_id.bytes, digest_size=8).digest()
    return int.from_bytes(digest, "big") & _POINT_ID_MASK


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(vectors / norms, dtype=np.float32)


def _chunk_from_entry(entry: Dict[str, Any]) -> Chunk:
    try:
        source_type = SourceType(entry["source_type"])
    except ValueError:
        source_type = SourceType.UNKNOWN

    return Chunk(
        id=uuid.UUID(entry["chunk_id"]),
        content=entry["content"],
        source=entry["source"],
        source_type=source_type,
        index=entry["chunk_index"],
        created_at=datetime.fromisoformat(entry["created_at"]),
        language=entry["language"],
        extra_metadata=entry.get("metadata") or {},
    )


class FAISSVectorStore:
    """FAISS-backed vector store with an SQLite payload table."""

    def __init__(
        self,
        index_dir: Path = None,
        dimension: int = None,
        min_score: float = None,
        cache_size: int = None,
        cache_ttl: float = None,
    ):
        """Initialize the FAISS vector store.

        Args:
            index_dir: Directory for index, metadata and payload files (default: DATA_DIR)
            dimension: Vector dimension (default from config)
            min_score: Default minimum cosine score for search (default from config)
            cache_size: Capacity of the chunk reconstruction cache
            cache_ttl: TTL in seconds of cached chunks
        """
        self.index_dir = Path(index_dir or config.DATA_DIR)
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.min_score = config.MIN_RELEVANCE_SCORE if min_score is None else min_score

        self.index_path = self.index_dir / "vectors.index"
        self.metadata_path = self.index_dir / "metadata.json"
        self.db_path = self.index_dir / "chunks.sqlite"

        self.index: Optional[faiss.Index] = None
        self.metadata: Dict[str, Any] = {}
        self._cache: LRUCache[int, Chunk] = LRUCache(
            capacity=cache_size or config.CHUNK_CACHE_SIZE,
            ttl_seconds=cache_ttl or config.CHUNK_CACHE_TTL,
        )
        self._defer_depth = 0
        self._dirty = False

        self.index_dir.mkdir(parents=True, exist_ok=True)
        db.init_database(self.db_path)

        logger.info(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            dimension=self.dimension,
            min_score=self.min_score,
        )

    # Collection lifecycle

    async def create_collection(self) -> None:
        """Create a new, empty collection with the configured dimension.

        Any payload rows left from a previous collection are cleared.
        """
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))
        self.metadata = {
            "embedding_dimension": self.dimension,
            "index_type": INDEX_TYPE,
            "metric": "cosine",
            "vector_count": 0,
        }
        db.clear_all_entries(self.db_path)
        self._cache.clear()
        self._persist()

        logger.info(
            "faiss_collection_created",
            dimension=self.dimension,
            index_type=INDEX_TYPE,
        )

    async def drop_collection(self) -> None:
        """Delete the collection, its files and all payload rows."""
        logger.warning("dropping_collection", index_dir=str(self.index_dir))

        self.index = None
        self.metadata = {}
        self._cache.clear()
        db.clear_all_entries(self.db_path)

        for path in (self.index_path, self.metadata_path):
            if path.exists():
                path.unlink()
                logger.info("deleted_collection_file", path=str(path))

    async def load_index(self) -> None:
        """Load an existing collection from disk.

        A collection built with a different dimension is replaced by a new,
        empty one.

        Raises:
            FileNotFoundError: If index files don't exist
            RuntimeError: If loading fails
        """
        if not self.index_path.exists():
            raise FileNotFoundError(f"Index not found: {self.index_path}")

        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata not found: {self.metadata_path}")

        try:
            with open(self.metadata_path, "r") as f:
                metadata = json.load(f)
        except Exception as e:
            raise RuntimeError(f"Failed to load metadata: {e}") from e

        stored_dim = metadata.get("embedding_dimension")
        if stored_dim != self.dimension:
            logger.warning(
                "index_dimension_mismatch_recreating",
                stored_dimension=stored_dim,
                expected_dimension=self.dimension,
            )
            await self.create_collection()
            return

        try:
            self.index = faiss.read_index(str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to load FAISS index: {e}") from e

        self.metadata = metadata

        payload_count = db.get_entry_count(self.db_path)
        if payload_count != self.index.ntotal:
            logger.warning(
                "index_payload_count_mismatch",
                vector_count=self.index.ntotal,
                payload_count=payload_count,
            )

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            vector_count=self.index.ntotal,
        )

    async def init_or_load(self) -> None:
        """Load the collection if it exists on disk, otherwise create it."""
        if self.index_path.exists() and self.metadata_path.exists():
            logger.info("existing_index_detected", path=str(self.index_path))
            await self.load_index()
        else:
            logger.info("no_index_found_initializing_new")
            await self.create_collection()

    async def save_index(self) -> None:
        """Save the FAISS index and metadata to disk.

        Raises:
            CollectionNotFoundError: If there is no collection
        """
        self._require_index()
        self._persist()

    @contextmanager
    def batched_writes(self) -> Iterator[None]:
        """Defer index persistence until the outermost block exits.

        Every mutation rewrites the whole index file, so bulk ingestion wraps
        its writes here to pay that cost once. Payload rows are still committed
        per write.
        """
        self._defer_depth += 1
        try:
            yield
        finally:
            self._defer_depth -= 1
            if self._defer_depth == 0 and self._dirty and self.index is not None:
                self._persist()

    def _persist(self) -> None:
        if self._defer_depth:
            self._dirty = True
            return

        index = self._require_index()
        self._dirty = False
        self.metadata["vector_count"] = int(index.ntotal)

        faiss.write_index(index, str(self.index_path))
        with open(self.metadata_path, "w") as f:
            json.dump(self.metadata, f, indent=2)

        logger.debug(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=index.ntotal,
        )

    def _require_index(self) -> faiss.Index:
        if self.index is None:
            raise CollectionNotFoundError(f"Collection not found in {self.index_dir}")
        return self.index

    # Writes

    async def upsert(
        self,
        chunks: List[Chunk],
        embeddings: List[List[float]],
        embedding_model: Union[str, List[str]] = "unknown",
    ) -> bool:
        """Insert or replace chunks with their embeddings.

        If the collection is missing it is recreated and the write retried once.
        A failed write leaves previously stored points as they were.

        Args:
            chunks: Chunks to store
            embeddings: One vector per chunk, aligned with ``chunks``
            embedding_model: Tag of the embedding scheme that produced the
                vectors, or one tag per chunk

        Returns:
            True on success, False if the backing store failed

        Raises:
            ValueError: If counts or vector widths don't match
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Chunks and embeddings count must match "
                f"({len(chunks)} != {len(embeddings)})"
            )

        if isinstance(embedding_model, str):
            model_tags = [embedding_model] * len(chunks)
        else:
            model_tags = list(embedding_model)
            if len(model_tags) != len(chunks):
                raise ValueError(
                    f"Chunks and embedding model tags count must match "
                    f"({len(chunks)} != {len(model_tags)})"
                )

        if not chunks:
            return True

        vectors = np.asarray(embeddings, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got shape {vectors.shape}"
            )

        vectors = _normalize_rows(vectors)
        point_ids = np.array([point_id_for(c.id) for c in chunks], dtype=np.int64)
        entries = [
            {
                "point_id": int(pid),
                "chunk_id": str(chunk.id),
                "content": chunk.content,
                "source": chunk.source,
                "source_type": chunk.source_type.value,
                "chunk_index": chunk.index,
                "language": chunk.language,
                "embedding_model": model_tag,
                "created_at": chunk.created_at.isoformat(),
                "metadata": chunk.extra_metadata,
            }
            for pid, chunk, model_tag in zip(point_ids, chunks, model_tags)
        ]

        try:
            self._write_points(point_ids, vectors, entries)
        except CollectionNotFoundError:
            logger.warning("collection_not_found_recreating", count=len(chunks))
            try:
                await self.create_collection()
                self._write_points(point_ids, vectors, entries)
            except Exception as e:
                logger.error(
                    "upsert_retry_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    count=len(chunks),
                )
                return False
            logger.info("upsert_succeeded_after_recreate", count=len(chunks))
        except Exception as e:
            logger.error(
                "upsert_failed",
                error=str(e),
                error_type=type(e).__name__,
                count=len(chunks),
            )
            return False

        for pid, chunk in zip(point_ids, chunks):
            self._cache.set(int(pid), chunk)

        logger.info(
            "chunks_upserted",
            count=len(chunks),
            dimension=self.dimension,
            embedding_models=sorted(set(model_tags)),
            total_vectors=self.index.ntotal,
        )
        return True

    def _write_points(
        self,
        point_ids: np.ndarray,
        vectors: np.ndarray,
        entries: List[Dict[str, Any]],
    ) -> None:
        index = self._require_index()
        ids = [int(pid) for pid in point_ids]

        # Previous versions of the same points, restored if the index write fails
        previous = db.get_entries_by_point_ids(ids, self.db_path)
        previous_vectors = {}
        for entry in previous:
            try:
                previous_vectors[entry["point_id"]] = index.reconstruct(entry["point_id"])
            except RuntimeError:
                logger.warning("vector_missing_for_payload", point_id=entry["point_id"])

        # Payload first: one transaction, nothing touched if it fails
        db.upsert_entries(entries, self.db_path)

        try:
            index.remove_ids(point_ids)
            index.add_with_ids(vectors, point_ids)
        except Exception:
            index.remove_ids(point_ids)
            if previous_vectors:
                index.add_with_ids(
                    np.asarray(list(previous_vectors.values()), dtype=np.float32),
                    np.array(list(previous_vectors.keys()), dtype=np.int64),
                )
            previous_ids = {entry["point_id"] for entry in previous}
            db.delete_entries([pid for pid in ids if pid not in previous_ids], self.db_path)
            db.upsert_entries(previous, self.db_path)
            raise

        self._persist()

    def _remove_points(self, point_ids: List[int]) -> int:
        index = self._require_index()
        if not point_ids:
            return 0

        removed = index.remove_ids(np.array(point_ids, dtype=np.int64))
        db.delete_entries(point_ids, self.db_path)
        for pid in point_ids:
            self._cache.delete(pid)
        self._persist()
        return int(removed)

    async def get_point_ids_by_source(self, source: str) -> List[int]:
        """Point ids currently stored for a source."""
        return db.get_point_ids_by_source(source, self.db_path)

    async def delete_points(self, point_ids: List[int]) -> bool:
        """Remove entries by point id.

        Returns:
            True on success (including when nothing matched), False on failure
        """
        try:
            removed = self._remove_points(list(point_ids))
        except Exception as e:
            logger.error(
                "delete_points_failed",
                count=len(point_ids),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info("points_deleted", requested=len(point_ids), removed=removed)
        return True

    async def delete_by_source(self, source: str) -> bool:
        """Remove every entry whose source equals ``source`` exactly.

        Returns:
            True on success (including when nothing matched), False on failure
        """
        try:
            point_ids = db.get_point_ids_by_source(source, self.db_path)
            removed = self._remove_points(point_ids)
            self._cache.evict_where(lambda chunk: chunk.source == source)
        except Exception as e:
            logger.error(
                "delete_by_source_failed",
                source=source,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info("source_deleted", source=source, removed=removed)
        return True

    async def delete_by_embedding_model(self, embedding_model: str, keep: bool = False) -> int:
        """Remove entries produced by an embedding scheme.

        Args:
            embedding_model: Embedding model tag
            keep: If True, remove every entry *not* tagged with embedding_model

        Returns:
            Number of entries removed
        """
        point_ids = db.get_point_ids_by_embedding_model(
            embedding_model, exclude=keep, db_path=self.db_path
        )
        removed = self._remove_points(point_ids)

        logger.info(
            "embedding_model_entries_deleted",
            embedding_model=embedding_model,
            keep=keep,
            removed=removed,
        )
        return removed

    # Reads

    async def search(
        self,
        query_vector: List[float],
        limit: int = 5,
        min_score: Optional[float] = None,
        language: Optional[str] = None,
    ) -> List[SearchResult]:
        """Search for the chunks most similar to a query vector.

        Errors are logged and reported as an empty result.

        Args:
            query_vector: Query embedding
            limit: Maximum number of results
            min_score: Minimum cosine score (default: store's min_score)
            language: Only consider chunks tagged with this language

        Returns:
            SearchResults ordered by descending score
        """
        min_score = self.min_score if min_score is None else min_score

        try:
            index = self._require_index()
            if index.ntotal == 0 or limit <= 0:
                return []

            query = np.asarray([query_vector], dtype=np.float32)
            if query.shape[1] != self.dimension:
                raise ValueError(
                    f"Query dimension mismatch: expected {self.dimension}, "
                    f"got {query.shape[1]}"
                )
            query = _normalize_rows(query)

            allowed = None
            if language:
                allowed = set(db.get_point_ids_by_language(language, self.db_path))
                if not allowed:
                    return []

            k = index.ntotal if allowed is not None else min(limit, index.ntotal)
            scores, ids = index.search(query, k)

            candidates = []
            for pid, raw in zip(ids[0].tolist(), scores[0].tolist()):
                if pid == -1:
                    continue
                score = min(1.0, max(0.0, raw))
                if score < min_score:
                    continue
                if allowed is not None and pid not in allowed:
                    continue
                candidates.append((pid, score))
                if len(candidates) >= limit:
                    break

            chunks = self._reconstruct([pid for pid, _ in candidates])

            results = []
            for pid, score in candidates:
                chunk = chunks.get(pid)
                if chunk is None:
                    logger.warning("payload_missing_for_point", point_id=pid)
                    continue
                results.append(SearchResult(chunk=chunk, score=score))

            results.sort(key=lambda r: r.score, reverse=True)

        except Exception as e:
            logger.warning(
                "vector_search_failed",
                error=str(e),
                error_type=type(e).__name__,
                limit=limit,
                language=language,
            )
            return []

        if results:
            logger.info(
                "vector_search_completed",
                limit=limit,
                min_score=min_score,
                language=language,
                results_found=len(results),
                scores=[round(r.score, 3) for r in results],
            )
        else:
            logger.warning(
                "vector_search_no_results",
                limit=limit,
                min_score=min_score,
                language=language,
            )

        return results

    def _reconstruct(self, point_ids: List[int]) -> Dict[int, Chunk]:
        """Rebuild chunks for point ids, cache first, payload table on a miss."""
        found: Dict[int, Chunk] = {}
        missing = []

        for pid in point_ids:
            chunk = self._cache.get(pid)
            if chunk is None:
                missing.append(pid)
            else:
                found[pid] = chunk

        if missing:
            for entry in db.get_entries_by_point_ids(missing, self.db_path):
                chunk = _chunk_from_entry(entry)
                self._cache.set(entry["point_id"], chunk)
                found[entry["point_id"]] = chunk

            logger.debug(
                "chunks_reconstructed_from_payload",
                requested=len(missing),
                found=len(found),
            )

        return found

    async def count(self) -> int:
        """Total number of stored entries (0 if the collection is unavailable)."""
        try:
            return int(self._require_index().ntotal)
        except Exception as e:
            logger.error("count_failed", error=str(e), error_type=type(e).__name__)
            return 0

    async def list_sources(self) -> List[Dict[str, Any]]:
        """Distinct sources with their chunk counts."""
        return db.list_sources(self.db_path)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store.

        Returns:
            Dictionary with store statistics
        """
        if self.index is None:
            return {
                "initialized": False,
                "vector_count": 0,
                "dimension": self.dimension,
            }

        cache_stats = self._cache.stats()
        return {
            "initialized": True,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "index_exists_on_disk": self.index_path.exists(),
            "embedding_models": db.get_embedding_models(self.db_path),
            "cache": {
                "size": cache_stats.size,
                "capacity": cache_stats.capacity,
                "hits": cache_stats.hits,
                "misses": cache_stats.misses,
                "evictions": cache_stats.evictions,
            },
            "metadata": self.metadata,
        }


# Singleton instance for convenience
_store_instance: Optional[FAISSVectorStore] = None


async def get_vector_store() -> FAISSVectorStore:
    """Get or create a singleton vector store instance.

    Returns:
        FAISSVectorStore instance

    Note: This loads the index if it exists
    """
    global _store_instance
    if _store_instance is None:
        _store_instance = FAISSVectorStore()
        await _store_instance.init_or_load()
    return _store_instance
