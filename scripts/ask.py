#!/usr/bin/env python
"""Ask the knowledge base a question from the command line.

Usage:
    python scripts/ask.py "What is the warranty period?"
    python scripts/ask.py "ما هي مدة الضمان؟" --language ar
    python scripts/ask.py "How do refunds work?" --no-generation
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog
from pydantic import ValidationError

from ragcore.chat import ChatRequest, ChatService
from ragcore.llm_client import OllamaClient
from ragcore.logging_setup import configure_logging
from ragcore.rag.retriever import get_retriever

logger = structlog.get_logger()


async def main():
    parser = argparse.ArgumentParser(description="Ask the RAG knowledge base a question")
    parser.add_argument("question", help="Question to ask")
    parser.add_argument("--language", choices=["en", "ar"], default=None, help="Answer language")
    parser.add_argument("--session-id", default=None, help="Session id to echo back")
    parser.add_argument(
        "--no-generation",
        action="store_true",
        help="Skip the LLM and show the templated answer from retrieved chunks",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logs")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING")

    retriever = await get_retriever()
    generator = None if args.no_generation else OllamaClient()
    service = ChatService(retriever=retriever, generator=generator)

    try:
        response = await service.ask(
            ChatRequest(question=args.question, session_id=args.session_id, language=args.language)
        )
    except ValidationError as e:
        print(f"\n❌ Invalid question: {e.errors()[0]['msg']}\n")
        sys.exit(2)
    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ask_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    print(f"\n💬 {response.answer}\n")
    if response.sources:
        print("📚 Sources:")
        for source in response.sources:
            print(f"   - {source}")
    print(f"\n🔑 Session: {response.session_id}\n")


if __name__ == "__main__":
    asyncio.run(main())
