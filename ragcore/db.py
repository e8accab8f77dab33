"""SQLite payload storage for the vector index.

Stores one row per index entry, keyed by the FAISS point id, with enough of
the chunk denormalized to rebuild it without any other lookup:
- chunk id, content, source, source type, ordinal, language
- embedding model tag (to purge vectors from a stale embedding scheme)
- creation time and extra metadata
"""
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List

import structlog

from ragcore import config

logger = structlog.get_logger()

_ENTRY_COLUMNS = (
    "point_id, chunk_id, content, source, source_type, chunk_index, "
    "language, embedding_model, created_at, metadata_json"
)

# Stay below SQLite's bound-parameter limit
_BATCH = 500


def get_connection(db_path: Path = None) -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Args:
        db_path: Database file (default from config)

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row
    """
    conn = sqlite3.connect(db_path or config.DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Path = None) -> None:
    """Initialize the database schema.

    Creates the index_entries table and its lookup indexes if missing.
    """
    db_path = db_path or config.DB_PATH
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS index_entries (
                point_id INTEGER PRIMARY KEY,
                chunk_id TEXT NOT NULL UNIQUE,
                content TEXT NOT NULL,
                source TEXT NOT NULL,
                source_type TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                language TEXT NOT NULL,
                embedding_model TEXT NOT NULL,
                created_at TEXT NOT NULL,
                metadata_json TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_source
            ON index_entries(source)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_embedding_model
            ON index_entries(embedding_model)
        """)

        conn.commit()
        logger.info("database_initialized", db_path=str(db_path))

    except Exception as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def upsert_entries(entries: List[Dict[str, Any]], db_path: Path = None) -> int:
    """Insert or replace index entries.

    Args:
        entries: Dicts with keys point_id, chunk_id, content, source,
            source_type, chunk_index, language, embedding_model, created_at,
            metadata
        db_path: Database file (default from config)

    Returns:
        Number of rows written
    """
    if not entries:
        return 0

    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.executemany(
            f"INSERT OR REPLACE INTO index_entries ({_ENTRY_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    e["point_id"],
                    e["chunk_id"],
                    e["content"],
                    e["source"],
                    e["source_type"],
                    e["chunk_index"],
                    e["language"],
                    e["embedding_model"],
                    e["created_at"],
                    json.dumps(e["metadata"]) if e.get("metadata") else None,
                )
                for e in entries
            ],
        )
        conn.commit()
        return len(entries)

    except Exception as e:
        conn.rollback()
        logger.error("entries_upsert_failed", error=str(e), count=len(entries))
        raise
    finally:
        conn.close()


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    metadata_json = entry.pop("metadata_json", None)
    entry["metadata"] = json.loads(metadata_json) if metadata_json else {}
    return entry


def _batches(ids: List[int]) -> Iterable[List[int]]:
    for start in range(0, len(ids), _BATCH):
        yield ids[start : start + _BATCH]


def get_entries_by_point_ids(point_ids: List[int], db_path: Path = None) -> List[Dict[str, Any]]:
    """Retrieve entries by their FAISS point ids.

    Returns:
        List of entry dictionaries (order not guaranteed)
    """
    if not point_ids:
        return []

    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        entries = []
        for batch in _batches(point_ids):
            placeholders = ",".join("?" * len(batch))
            cursor.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM index_entries "
                f"WHERE point_id IN ({placeholders})",
                batch,
            )
            entries.extend(_row_to_dict(row) for row in cursor.fetchall())
        return entries

    except Exception as e:
        logger.error("entries_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_point_ids_by_source(source: str, db_path: Path = None) -> List[int]:
    """Point ids of every entry whose source equals ``source`` exactly."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT point_id FROM index_entries WHERE source = ?", (source,)
        ).fetchall()
        return [row["point_id"] for row in rows]
    finally:
        conn.close()


def get_point_ids_by_embedding_model(
    embedding_model: str,
    exclude: bool = False,
    db_path: Path = None,
) -> List[int]:
    """Point ids tagged with ``embedding_model`` (or, with exclude, every other tag)."""
    operator = "!=" if exclude else "="
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            f"SELECT point_id FROM index_entries WHERE embedding_model {operator} ?",
            (embedding_model,),
        ).fetchall()
        return [row["point_id"] for row in rows]
    finally:
        conn.close()


def delete_entries(point_ids: List[int], db_path: Path = None) -> int:
    """Delete entries by point id.

    Returns:
        Number of rows deleted
    """
    if not point_ids:
        return 0

    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        deleted = 0
        for batch in _batches(point_ids):
            placeholders = ",".join("?" * len(batch))
            cursor.execute(
                f"DELETE FROM index_entries WHERE point_id IN ({placeholders})", batch
            )
            deleted += cursor.rowcount
        conn.commit()
        return deleted

    except Exception as e:
        conn.rollback()
        logger.error("entries_delete_failed", error=str(e), count=len(point_ids))
        raise
    finally:
        conn.close()


def clear_all_entries(db_path: Path = None) -> int:
    """Delete all entries.

    Used when the collection is dropped or rebuilt.

    Returns:
        Number of entries deleted
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT COUNT(*) FROM index_entries")
        count = cursor.fetchone()[0]

        cursor.execute("DELETE FROM index_entries")
        conn.commit()

        logger.info("entries_cleared", count=count)
        return count

    except Exception as e:
        conn.rollback()
        logger.error("entries_clear_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_entry_count(db_path: Path = None) -> int:
    """Get the total number of stored entries."""
    conn = get_connection(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM index_entries").fetchone()[0]
    finally:
        conn.close()


def list_sources(db_path: Path = None) -> List[Dict[str, Any]]:
    """List distinct sources with their chunk counts, alphabetically."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT source, source_type, COUNT(*) AS chunk_count
            FROM index_entries
            GROUP BY source, source_type
            ORDER BY source
        """).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def get_embedding_models(db_path: Path = None) -> List[str]:
    """Distinct embedding model tags currently stored."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT DISTINCT embedding_model FROM index_entries ORDER BY embedding_model"
        ).fetchall()
        return [row["embedding_model"] for row in rows]
    finally:
        conn.close()


def get_point_ids_by_language(language: str, db_path: Path = None) -> List[int]:
    """Point ids of every entry tagged with ``language``."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT point_id FROM index_entries WHERE language = ?", (language,)
        ).fetchall()
        return [row["point_id"] for row in rows]
    finally:
        conn.close()
