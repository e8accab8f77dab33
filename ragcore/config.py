"""Application configuration with sensible defaults."""
import os
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
MODELS_DIR = Path(os.getenv("MODELS_DIR", str(BASE_DIR / "models")))
ONNX_MODEL_PATH = Path(os.getenv("ONNX_MODEL_PATH", str(MODELS_DIR / "model.onnx")))
VOCAB_PATH = Path(os.getenv("VOCAB_PATH", str(MODELS_DIR / "vocab.txt")))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Embeddings (all-MiniLM-L6-v2 sized by default)
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "384"))
EMBEDDING_MAX_TOKENS = int(os.getenv("EMBEDDING_MAX_TOKENS", "128"))
EMBEDDING_MAX_CONCURRENCY = int(
    os.getenv("EMBEDDING_MAX_CONCURRENCY", str(max(1, (os.cpu_count() or 2) // 2)))
)

# Chunking (character-based, code points not bytes)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "500"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "0"))
MIN_WEB_CHUNK_LENGTH = int(os.getenv("MIN_WEB_CHUNK_LENGTH", "50"))

# Retrieval
MAX_SEARCH_RESULTS = int(os.getenv("MAX_SEARCH_RESULTS", "5"))
OVERFETCH_MULTIPLIER = int(os.getenv("OVERFETCH_MULTIPLIER", "3"))
MIN_RELEVANCE_SCORE = float(os.getenv("MIN_RELEVANCE_SCORE", "0.3"))
USE_QUERY_EXPANSION = _env_bool("USE_QUERY_EXPANSION", "true")
USE_SOURCE_DIVERSITY = _env_bool("USE_SOURCE_DIVERSITY", "true")
LANGUAGE_FILTER_ENABLED = _env_bool("LANGUAGE_FILTER_ENABLED", "false")

# Payload reconstruction cache
CHUNK_CACHE_SIZE = int(os.getenv("CHUNK_CACHE_SIZE", "2048"))
CHUNK_CACHE_TTL = int(os.getenv("CHUNK_CACHE_TTL", "3600"))

# Generation (Ollama)
GENERATION_ENABLED = _env_bool("GENERATION_ENABLED", "true")
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.3"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "800"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "60.0"))

# Storage
VECTOR_INDEX_PATH = DATA_DIR / "vectors.index"
DB_PATH = DATA_DIR / "chunks.sqlite"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
