#!/usr/bin/env python
"""Validate the local setup: dependencies, model artifacts, index and Ollama."""
import asyncio
import sys
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"


def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")


def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")


def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")


def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")


def print_section(title):
    print(f"\n{BLUE}{'=' * 60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'=' * 60}{RESET}\n")


async def main():
    print_section("ragcore - Setup Validation")

    errors = []
    warnings = []

    # 1. Python version check
    print_section("1. Python Environment")
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    print_info(f"Python version: {python_version}")
    if sys.version_info >= (3, 10):
        print_success("Python version >= 3.10")
    else:
        print_error("Python version < 3.10 (required)")
        errors.append("Python version too old")

    in_venv = hasattr(sys, "base_prefix") and sys.base_prefix != sys.prefix
    if in_venv:
        print_success("Running in virtual environment")
    else:
        print_warning("Not running in virtual environment (recommended)")
        warnings.append("Not in venv")

    # 2. Import core dependencies
    print_section("2. Core Dependencies")

    dependencies = [
        ("structlog", "Structured logging"),
        ("httpx", "HTTP client"),
        ("numpy", "Numerical arrays"),
        ("faiss", "FAISS vector store"),
        ("pydantic", "Data validation"),
        ("onnxruntime", "ONNX embedding runtime"),
    ]

    for module_name, description in dependencies:
        try:
            __import__(module_name)
            print_success(f"{description:30} ({module_name})")
        except ImportError as e:
            if module_name == "onnxruntime":
                print_warning(f"{description:30} ({module_name}) - {e}")
                warnings.append("onnxruntime missing, hashing fallback only")
            else:
                print_error(f"{description:30} ({module_name}) - {e}")
                errors.append(f"Missing: {module_name}")

    # 3. Configuration
    print_section("3. Configuration")

    try:
        sys.path.insert(0, str(Path(__file__).parent.parent))
        from ragcore import config

        print_success("Config loaded successfully")
        print_info(f"  Chat model: {config.CHAT_MODEL}")
        print_info(f"  Ollama URL: {config.OLLAMA_BASE_URL}")
        print_info(f"  Embedding dimension: {config.EMBEDDING_DIMENSION}")
        print_info(f"  Chunk size: {config.CHUNK_SIZE} chars")
        print_info(f"  Data directory: {config.DATA_DIR}")

        if config.DATA_DIR.exists():
            print_success(f"Data directory exists: {config.DATA_DIR}")
        else:
            print_error(f"Data directory missing: {config.DATA_DIR}")
            errors.append("Data directory missing")

    except Exception as e:
        print_error(f"Failed to load config: {e}")
        errors.append("Config loading failed")
        return errors, warnings

    # 4. Embedding model artifacts
    print_section("4. Embedding Model")

    for label, path in (("ONNX model", config.ONNX_MODEL_PATH), ("Vocabulary", config.VOCAB_PATH)):
        if path.exists():
            print_success(f"{label} found: {path}")
        else:
            print_warning(f"{label} missing: {path}")
            warnings.append(f"{label} missing")

    try:
        from ragcore.rag.embedder import Embedder

        embedder = Embedder()
        vector = await embedder.embed("setup validation")
        print_success(f"Embedding working: {embedder.model_id} (dimension: {len(vector)})")
        if not embedder.is_model_loaded:
            print_info("  Using the hashing fallback; retrieval quality will be limited")
    except Exception as e:
        print_error(f"Embedding test failed: {e}")
        errors.append(f"Embedding error: {e}")

    # 5. Vector index
    print_section("5. Vector Index")

    if config.VECTOR_INDEX_PATH.exists():
        try:
            from ragcore.rag.store_faiss import FAISSVectorStore

            store = FAISSVectorStore()
            await store.load_index()
            stats = store.get_stats()
            print_success(f"Index loaded: {stats['vector_count']} vectors")
            for model in stats["embedding_models"]:
                print_info(f"  Embedding model in index: {model}")
        except Exception as e:
            print_error(f"Index load failed: {e}")
            errors.append(f"Index error: {e}")
    else:
        print_warning(f"No index yet at {config.VECTOR_INDEX_PATH}")
        print_info("  Run: python scripts/ingest.py <files or directory>")
        warnings.append("Index not built")

    # 6. Ollama connection
    print_section("6. Ollama Service")

    if not config.GENERATION_ENABLED:
        print_info("Generation disabled (GENERATION_ENABLED=false); answers use the template")
    else:
        try:
            import httpx

            from ragcore.llm_client import OllamaClient

            models = set(await OllamaClient().list_models())
            print_success(f"Ollama service running at {config.OLLAMA_BASE_URL}")
            print_info(f"Found {len(models)} models installed")

            if config.CHAT_MODEL in models:
                print_success(f"Chat model available: {config.CHAT_MODEL}")
            else:
                print_error(f"Chat model missing: {config.CHAT_MODEL}")
                print_info(f"  Run: ollama pull {config.CHAT_MODEL}")
                errors.append(f"Missing chat model: {config.CHAT_MODEL}")

        except httpx.ConnectError:
            print_warning("Cannot connect to Ollama service; answers will use the template")
            print_info("  Make sure Ollama is running: ollama serve")
            warnings.append("Ollama not running")
        except Exception as e:
            print_error(f"Ollama check failed: {e}")
            errors.append(f"Ollama error: {e}")

    # 7. Summary
    print_section("Summary")

    if not errors:
        print_success("All checks passed! ✨")
    else:
        print_error(f"Found {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")

    if warnings:
        print_warning(f"\nFound {len(warnings)} warning(s):")
        for i, warning in enumerate(warnings, 1):
            print(f"  {i}. {warning}")

    print()
    return errors, warnings


if __name__ == "__main__":
    errors, warnings = asyncio.run(main())
    sys.exit(1 if errors else 0)
