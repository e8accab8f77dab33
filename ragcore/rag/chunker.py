"""Text chunking for the RAG pipeline.

Implements fixed-width character chunking (code points, not bytes) with
source provenance and a lightweight Arabic/English language tag.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import structlog

from ragcore import config

logger = structlog.get_logger()

# Arabic, Arabic Supplement, Arabic Extended-A
ARABIC_RANGES = (
    ("\u0600", "\u06ff"),
    ("\u0750", "\u077f"),
    ("\u08a0", "\u08ff"),
)


class SourceType(str, Enum):
    """Where a chunk's text came from."""

    PDF = "PDF"
    WEBSITE = "Website"
    TEXT = "Text"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Chunk:
    """An immutable slice of source text, the unit of retrieval."""

    id: uuid.UUID
    content: str
    source: str
    source_type: SourceType
    index: int
    created_at: datetime
    language: str
    extra_metadata: Dict[str, str] = field(default_factory=dict)


def detect_language(text: str) -> str:
    """Tag text as 'ar' if it contains any Arabic-block character, else 'en'."""
    if not text or not text.strip():
        return "en"

    for char in text:
        for low, high in ARABIC_RANGES:
            if low <= char <= high:
                return "ar"
    return "en"


def display_name(source: str, source_type: SourceType) -> str:
    """Build the display name stored on each chunk.

    Web sources become host + path (+ query); file sources become the file name.
    """
    if source_type == SourceType.WEBSITE:
        parts = urlsplit(source)
        if parts.netloc:
            name = f"{parts.netloc}{parts.path or '/'}"
            if parts.query:
                name = f"{name}?{parts.query}"
            return name
        return source

    if source_type in (SourceType.PDF, SourceType.TEXT):
        name = PurePath(source).name
        return name or source

    return source


class TextChunker:
    """Fixed-width character chunker."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
        min_chunk_length: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Size of each chunk in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config, 0)
            min_chunk_length: Minimum length of a web chunk (default from config)
        """
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        self.min_chunk_length = (
            config.MIN_WEB_CHUNK_LENGTH if min_chunk_length is None else min_chunk_length
        )

        self._validate(self.chunk_size, self.chunk_overlap)

        logger.info(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            min_chunk_length=self.min_chunk_length,
        )

    @staticmethod
    def _validate(chunk_size: int, chunk_overlap: int) -> None:
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        if chunk_overlap < 0:
            raise ValueError(f"Overlap must not be negative, got {chunk_overlap}")
        if chunk_overlap >= chunk_size:
            raise ValueError(
                f"Overlap ({chunk_overlap}) must be less than "
                f"chunk size ({chunk_size})"
            )

    def split(
        self,
        text: str,
        source: str,
        source_type: SourceType = SourceType.UNKNOWN,
        chunk_size: Optional[int] = None,
    ) -> List[Chunk]:
        """Split text into ordered, language-tagged chunks.

        Args:
            text: Already-decoded text to split
            source: Source identifier (file path or URL)
            source_type: Kind of source, controls the web boundary filter
            chunk_size: Override the chunker's chunk size for this call

        Returns:
            List of Chunk objects with contiguous indices starting at 0
        """
        if not text or not text.strip():
            logger.debug("empty_text_skipped", source=source)
            return []

        size = chunk_size or self.chunk_size
        self._validate(size, self.chunk_overlap)
        step = size - self.chunk_overlap

        name = display_name(source, source_type)
        base_metadata = self._base_metadata(source, source_type)
        drop_short = source_type == SourceType.WEBSITE

        chunks: List[Chunk] = []
        skipped = 0

        for start in range(0, len(text), step):
            piece = text[start : start + size]

            # Nav/boilerplate fragments from web pages
            if drop_short and (len(piece) < self.min_chunk_length or not piece.strip()):
                skipped += 1
                continue

            chunks.append(
                Chunk(
                    id=uuid.uuid4(),
                    content=piece,
                    source=name,
                    source_type=source_type,
                    index=len(chunks),
                    created_at=datetime.now(timezone.utc),
                    language=detect_language(piece),
                    extra_metadata=dict(base_metadata),
                )
            )

            if start + size >= len(text):
                break

        if skipped:
            logger.info("short_chunks_skipped", source=name, count=skipped)

        logger.info(
            "text_chunked",
            source=name,
            source_type=source_type.value,
            text_length=len(text),
            chunk_count=len(chunks),
        )

        return chunks

    def _base_metadata(self, source: str, source_type: SourceType) -> Dict[str, str]:
        if source_type == SourceType.WEBSITE:
            return {
                "url": source,
                "domain": urlsplit(source).netloc,
                "scraped_at": datetime.now(timezone.utc).isoformat(),
            }
        if source_type in (SourceType.PDF, SourceType.TEXT):
            return {"file_path": source}
        return {}

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "languages": {},
            }

        chunk_sizes = [len(c.content) for c in chunks]
        languages: Dict[str, int] = {}
        for chunk in chunks:
            languages[chunk.language] = languages.get(chunk.language, 0) + 1

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "languages": languages,
        }


# Singleton instance for convenience
_chunker_instance = None


def get_chunker() -> TextChunker:
    """Get a singleton text chunker instance.

    Returns:
        TextChunker instance with default config
    """
    global _chunker_instance
    if _chunker_instance is None:
        _chunker_instance = TextChunker()
    return _chunker_instance
