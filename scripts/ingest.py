#!/usr/bin/env python
"""Ingest extracted text files into the knowledge base.

Usage:
    python scripts/ingest.py docs/                    # Ingest a directory
    python scripts/ingest.py a.txt b.txt --rebuild    # Full rebuild from scratch
    python scripts/ingest.py --delete-source a.txt    # Remove one source
    python scripts/ingest.py --purge-stale            # Drop vectors from an old embedder
    python scripts/ingest.py --list                   # List indexed sources
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from ragcore import config
from ragcore.logging_setup import configure_logging
from ragcore.rag.chunker import SourceType
from ragcore.rag.ingest import IngestPipeline

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Ingestion Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Files processed:      {stats['files_processed']}")
        print(f"  ❌ Files failed:         {stats['files_failed']}")
        print(f"  📝 Chunks created:       {stats['chunks_created']}")
        print(f"  🧮 Embeddings generated: {stats['embeddings_generated']}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["files_failed"] > 0:
            print(f"⚠️  Warning: {stats['files_failed']} file(s) failed to ingest.")
            print("   Check logs for details.\n")

        if stats["files_processed"] > 0:
            print(f"✅ Index ready at: {config.VECTOR_INDEX_PATH}")
            print(f"✅ Payload database at: {config.DB_PATH}\n")


def collect_paths(pipeline: IngestPipeline, inputs) -> list:
    paths = []
    for item in inputs:
        if item.is_dir():
            paths.extend(pipeline.discover_files(item))
        else:
            paths.append(item)
    return paths


async def list_sources(pipeline: IngestPipeline):
    store = await pipeline._store()
    sources = await store.list_sources()

    if not sources:
        print("\n📭 The knowledge base is empty.\n")
        return

    print(f"\n📚 {len(sources)} source(s), {await store.count()} chunk(s):\n")
    for entry in sources:
        print(f"   {entry['source']:<50} {entry['source_type']:<8} {entry['chunk_count']:>5} chunks")
    print()


async def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest extracted text into the RAG knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py docs/                  # Ingest every .txt/.md file
  python scripts/ingest.py docs/ --rebuild        # Full rebuild from scratch
  python scripts/ingest.py --delete-source a.txt  # Remove one source
        """,
    )

    parser.add_argument("paths", nargs="*", type=Path, help="Files or directories to ingest")

    parser.add_argument(
        "--source-type",
        choices=[t.value for t in SourceType],
        default=SourceType.TEXT.value,
        help="Source type recorded on every chunk (default: Text)",
    )

    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild index from scratch (clears existing data)",
    )

    parser.add_argument("--delete-source", metavar="NAME", help="Delete a source by display name")

    parser.add_argument(
        "--purge-stale",
        action="store_true",
        help="Delete vectors not produced by the current embedder",
    )

    parser.add_argument("--list", action="store_true", help="List indexed sources")

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING")

    pipeline = IngestPipeline()

    try:
        if args.list:
            await list_sources(pipeline)
            return

        if args.delete_source:
            ok = await pipeline.delete_source(args.delete_source)
            print(f"\n{'✅' if ok else '❌'} Delete source '{args.delete_source}'\n")
            sys.exit(0 if ok else 1)

        if args.purge_stale:
            removed = await pipeline.purge_stale_embeddings()
            print(f"\n🧹 Removed {removed} stale vector(s)\n")
            return

        paths = collect_paths(pipeline, args.paths)
        if not paths:
            parser.error("no input files found")

        print("\n📋 Configuration:")
        print(f"   Data directory:   {config.DATA_DIR}")
        print(f"   Embedding model:  {pipeline.embedder.model_id}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
        print(f"   Source type:      {args.source_type}")

        if args.rebuild:
            print("\n⚠️  Rebuild mode: Will clear existing index and database!")
            print("   Press Ctrl+C within 3 seconds to cancel...")
            await asyncio.sleep(3)

        progress = ProgressReporter(verbose=args.verbose)
        progress.start(f"{'Rebuilding' if args.rebuild else 'Ingesting'} {len(paths)} file(s)")

        stats = await pipeline.ingest_paths(
            paths,
            SourceType(args.source_type),
            rebuild=args.rebuild,
            progress_callback=progress.update,
        )

        progress.finish(stats)

        if stats["files_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Ingestion cancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
