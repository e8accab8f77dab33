"""Ingest pipeline for indexing extracted text.

Orchestrates:
- Text chunking
- Embedding generation (all chunks before any write)
- Replacement of a source's previous entries once the new ones are stored
- Vector and payload storage
- Purging vectors from a stale embedding scheme
"""
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from ragcore.rag.chunker import SourceType, TextChunker, display_name, get_chunker
from ragcore.rag.embedder import Embedder, get_embedder
from ragcore.rag.store_faiss import FAISSVectorStore, get_vector_store, point_id_for

logger = structlog.get_logger()

TEXT_SUFFIXES = (".txt", ".md", ".text")


def _empty_stats() -> Dict[str, int]:
    return {
        "files_processed": 0,
        "files_failed": 0,
        "chunks_created": 0,
        "embeddings_generated": 0,
    }


class IngestPipeline:
    """Pipeline for ingesting source text into the vector store."""

    def __init__(
        self,
        chunker: Optional[TextChunker] = None,
        embedder: Optional[Embedder] = None,
        vector_store: Optional[FAISSVectorStore] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            chunker: Text chunker (default singleton)
            embedder: Embedder (default singleton)
            vector_store: Vector store (default singleton, loaded on first use)
        """
        self.chunker = chunker or get_chunker()
        self.embedder = embedder or get_embedder()
        self.vector_store = vector_store
        self.stats = _empty_stats()

        logger.info(
            "ingest_pipeline_initialized",
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            embedding_model=self.embedder.model_id,
        )

    async def _store(self) -> FAISSVectorStore:
        if self.vector_store is None:
            self.vector_store = await get_vector_store()
        return self.vector_store

    async def ingest_text(
        self,
        text: str,
        source: str,
        source_type: SourceType = SourceType.TEXT,
        chunk_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Chunk, embed and store one source's text, replacing its previous entries.

        Nothing is written until every chunk is embedded, so a cancelled
        ingest leaves the store untouched. The source's previous entries are
        removed only once the new ones are stored; a failed store keeps them.

        Args:
            text: Extracted UTF-8 text
            source: Source identifier (file path or URL)
            source_type: Kind of source
            chunk_size: Override the chunker's chunk size

        Returns:
            Dictionary with source (display name), chunks_created and stored
        """
        name = display_name(source, source_type)
        chunks = self.chunker.split(text, source, source_type, chunk_size=chunk_size)

        if not chunks:
            logger.warning("no_chunks_created", source=name)
            return {"source": name, "chunks_created": 0, "stored": False}

        logger.info("ingesting_source", source=name, **self.chunker.get_chunk_stats(chunks))

        embeddings, model_ids = await self.embedder.embed_batch_tagged([c.content for c in chunks])
        self.stats["embeddings_generated"] += len(embeddings)

        store = await self._store()
        previous_ids = await store.get_point_ids_by_source(name)

        stored = await store.upsert(chunks, embeddings, embedding_model=model_ids)

        if not stored:
            logger.error(
                "source_ingest_store_failed",
                source=name,
                chunks=len(chunks),
                previous_entries_kept=len(previous_ids),
            )
            return {"source": name, "chunks_created": len(chunks), "stored": False}

        new_ids = {point_id_for(c.id) for c in chunks}
        stale_ids = [pid for pid in previous_ids if pid not in new_ids]
        if stale_ids and not await store.delete_points(stale_ids):
            logger.warning("previous_entries_not_removed", source=name, count=len(stale_ids))

        self.stats["chunks_created"] += len(chunks)
        logger.info(
            "source_ingested",
            source=name,
            chunks_created=len(chunks),
            replaced=len(stale_ids),
        )
        return {"source": name, "chunks_created": len(chunks), "stored": True}

    async def ingest_file(
        self,
        file_path: Path,
        source_type: SourceType = SourceType.TEXT,
        chunk_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Ingest a UTF-8 text file (already-extracted text).

        Raises:
            OSError / UnicodeDecodeError: If the file can't be read
        """
        file_path = Path(file_path)
        logger.info("ingesting_file", path=str(file_path))

        text = file_path.read_text(encoding="utf-8")
        return await self.ingest_text(text, str(file_path), source_type, chunk_size=chunk_size)

    def discover_files(self, directory: Path) -> List[Path]:
        """Find text files under a directory, recursively.

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        directory = Path(directory)
        if not directory.exists():
            raise FileNotFoundError(f"Directory not found: {directory}")

        files = sorted(
            p for p in directory.rglob("*") if p.is_file() and p.suffix.lower() in TEXT_SUFFIXES
        )
        logger.info("text_files_discovered", count=len(files), directory=str(directory))
        return files

    async def ingest_paths(
        self,
        paths: List[Path],
        source_type: SourceType = SourceType.TEXT,
        rebuild: bool = False,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ) -> Dict[str, int]:
        """Ingest many files, continuing past per-file failures.

        Args:
            paths: Files to ingest
            source_type: Kind of source for every file
            rebuild: If True, drop and recreate the collection first
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics
        """
        logger.info("starting_ingest", files=len(paths), rebuild=rebuild)

        store = await self._store()
        if rebuild:
            await store.drop_collection()
            await store.create_collection()
            logger.info("collection_rebuilt")

        self.stats = _empty_stats()

        # The index file is written once for the whole run
        with store.batched_writes():
            for idx, file_path in enumerate(paths, 1):
                if progress_callback:
                    progress_callback(idx, len(paths), file_path)

                try:
                    result = await self.ingest_file(file_path, source_type)
                except (OSError, UnicodeDecodeError, ValueError) as e:
                    logger.error("file_ingestion_failed", path=str(file_path), error=str(e))
                    self.stats["files_failed"] += 1
                    continue

                if result["chunks_created"] and not result["stored"]:
                    self.stats["files_failed"] += 1
                else:
                    self.stats["files_processed"] += 1

        logger.info("ingest_completed", stats=self.stats)
        return self.stats

    async def ingest_directory(
        self,
        directory: Path,
        source_type: SourceType = SourceType.TEXT,
        rebuild: bool = False,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ) -> Dict[str, int]:
        """Ingest every text file under a directory."""
        files = self.discover_files(directory)
        if not files:
            logger.warning("no_text_files_found", directory=str(directory))
            self.stats = _empty_stats()
            return self.stats

        return await self.ingest_paths(
            files, source_type, rebuild=rebuild, progress_callback=progress_callback
        )

    async def delete_source(self, source: str) -> bool:
        """Delete every entry stored for a source display name."""
        store = await self._store()
        return await store.delete_by_source(source)

    async def purge_stale_embeddings(self) -> int:
        """Delete entries not produced by the current embedding scheme.

        Returns:
            Number of entries removed
        """
        store = await self._store()
        removed = await store.delete_by_embedding_model(self.embedder.model_id, keep=True)
        logger.info(
            "stale_embeddings_purged",
            current_model=self.embedder.model_id,
            removed=removed,
        )
        return removed
