"""Local embedding generation.

Two paths produce unit vectors of the same width:
- ONNX sentence model (mean pooling over real tokens) when model.onnx and
  vocab.txt are available
- Deterministic bag-of-hashed-words fallback otherwise, or when inference fails

Vectors from the two paths are not comparable, so every stored vector is
tagged with ``Embedder.model_id``.
"""
import asyncio
import math
import re
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import structlog

from ragcore import config

logger = structlog.get_logger()

PAD_ID = 0
UNK_ID = 100
CLS_ID = 101
SEP_ID = 102

_WORD_RE = re.compile(r"[^\W_]+")
_SPLIT_RE = re.compile(r"\W+")
_WS_RE = re.compile(r"\s+")

_MASK32 = 0xFFFFFFFF


def _to_int32(value: int) -> int:
    value &= _MASK32
    return value - (1 << 32) if value & 0x80000000 else value


def stable_hash(word: str) -> int:
    """Deterministic non-negative 32-bit hash (paired DJB2 over characters)."""
    hash1 = 5381
    hash2 = hash1

    for i in range(0, len(word), 2):
        hash1 = _to_int32(((hash1 << 5) + hash1) ^ ord(word[i]))
        if i == len(word) - 1:
            break
        hash2 = _to_int32(((hash2 << 5) + hash2) ^ ord(word[i + 1]))

    return abs(_to_int32(hash1 + hash2 * 1566083941))


def normalize_vector(vector: np.ndarray) -> np.ndarray:
    """L2-normalize a vector; a zero vector is returned unchanged."""
    magnitude = float(np.linalg.norm(vector))
    if magnitude > 0:
        return vector / magnitude
    return vector


def load_vocabulary(vocab_path: Path) -> Optional[Mapping[str, int]]:
    """Load a WordPiece-style vocabulary (one token per line, id = line number).

    Returns:
        Read-only token -> id mapping, or None if the file is missing or unreadable
    """
    if not vocab_path.exists():
        logger.warning("vocabulary_not_found", path=str(vocab_path))
        return None

    try:
        with open(vocab_path, "r", encoding="utf-8") as f:
            vocab = {line.rstrip("\n"): idx for idx, line in enumerate(f)}
    except (OSError, UnicodeDecodeError) as e:
        logger.error("vocabulary_load_failed", path=str(vocab_path), error=str(e))
        return None

    logger.info("vocabulary_loaded", path=str(vocab_path), tokens=len(vocab))
    return MappingProxyType(vocab)


def load_onnx_session(model_path: Path):
    """Create an ONNX Runtime session, or return None if unavailable."""
    if not model_path.exists():
        logger.warning("onnx_model_not_found", path=str(model_path))
        return None

    try:
        import onnxruntime

        session = onnxruntime.InferenceSession(
            str(model_path), providers=["CPUExecutionProvider"]
        )
    except Exception as e:
        logger.error("onnx_model_load_failed", path=str(model_path), error=str(e))
        return None

    logger.info("onnx_model_loaded", path=str(model_path))
    return session


class Embedder:
    """Text embedder with a model-backed path and a hashing fallback."""

    def __init__(
        self,
        dimension: int = None,
        max_tokens: int = None,
        max_concurrency: int = None,
        model_path: Path = None,
        vocab_path: Path = None,
        session=None,
        vocabulary: Optional[Mapping[str, int]] = None,
        load_model: bool = True,
    ):
        """Initialize the embedder.

        Missing model artifacts are not an error: the embedder starts in
        fallback mode.

        Args:
            dimension: Embedding dimension (default from config)
            max_tokens: Maximum token sequence length incl. [CLS]/[SEP]
            max_concurrency: Concurrent embeddings in embed_batch
            model_path: Path to model.onnx (default from config)
            vocab_path: Path to vocab.txt (default from config)
            session: Pre-built inference session (skips loading from disk)
            vocabulary: Pre-built vocabulary (skips loading from disk)
            load_model: Set False to force the fallback path
        """
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.max_tokens = max_tokens or config.EMBEDDING_MAX_TOKENS
        self.max_concurrency = max(1, max_concurrency or config.EMBEDDING_MAX_CONCURRENCY)
        self.model_path = Path(model_path or config.ONNX_MODEL_PATH)
        self.vocab_path = Path(vocab_path or config.VOCAB_PATH)

        if self.max_tokens < 3:
            raise ValueError(f"max_tokens must leave room for [CLS]/[SEP], got {self.max_tokens}")

        self._session = None
        self._vocabulary: Optional[Mapping[str, int]] = None
        self._input_names: frozenset = frozenset()

        if load_model:
            self._vocabulary = (
                MappingProxyType(dict(vocabulary))
                if vocabulary is not None
                else load_vocabulary(self.vocab_path)
            )
            if self._vocabulary is not None:
                self._session = session if session is not None else load_onnx_session(self.model_path)

        if self._session is not None:
            self._input_names = frozenset(i.name for i in self._session.get_inputs())
        else:
            self._vocabulary = None

        logger.info(
            "embedder_initialized",
            model_id=self.model_id,
            dimension=self.dimension,
            max_tokens=self.max_tokens,
            max_concurrency=self.max_concurrency,
        )

    @property
    def is_model_loaded(self) -> bool:
        return self._session is not None

    @property
    def model_id(self) -> str:
        """Identifier of the embedding scheme, stored with every vector."""
        if self.is_model_loaded:
            return f"onnx:{self.model_path.name}:{self.dimension}"
        return f"hash-fallback:{self.dimension}"

    def tokenize(self, text: str) -> List[int]:
        """Map text to a padded id sequence of length max_tokens."""
        vocab = self._vocabulary or {}
        normalized = _WS_RE.sub(" ", text.replace("\u0640", " ")).strip()
        words = _WORD_RE.findall(normalized)[: self.max_tokens - 2]

        ids = [CLS_ID]
        ids.extend(vocab.get(word.lower(), UNK_ID) for word in words)
        ids.append(SEP_ID)
        ids.extend([PAD_ID] * (self.max_tokens - len(ids)))
        return ids

    def _embed_with_model(self, text: str) -> np.ndarray:
        ids = self.tokenize(text)
        input_ids = np.array([ids], dtype=np.int64)
        attention_mask = (input_ids != PAD_ID).astype(np.int64)
        token_type_ids = np.zeros_like(input_ids)

        feeds = {
            "input_ids": input_ids,
            "attention_mask": attention_mask,
            "token_type_ids": token_type_ids,
        }
        feeds = {name: value for name, value in feeds.items() if name in self._input_names}

        outputs = self._session.run(None, feeds)
        hidden = np.asarray(outputs[0], dtype=np.float32)[0]

        if hidden.shape[-1] != self.dimension:
            raise ValueError(
                f"Model hidden size {hidden.shape[-1]} does not match dimension {self.dimension}"
            )

        # Mean pooling over non-padding positions only
        mask = attention_mask[0, : hidden.shape[0]].astype(np.float32)[:, None]
        pooled = (hidden * mask).sum(axis=0) / max(float(mask.sum()), 1.0)
        return normalize_vector(pooled.astype(np.float32))

    def _embed_fallback(self, text: str) -> np.ndarray:
        embedding = np.zeros(self.dimension, dtype=np.float32)
        words = [w for w in _SPLIT_RE.split(text.lower()) if w]
        if not words:
            return embedding

        weight = 1.0 / math.sqrt(len(words))
        offsets = np.arange(self.dimension, dtype=np.int64) * 31

        for word in words:
            buckets = (stable_hash(word) + offsets) % self.dimension
            np.add.at(embedding, buckets, weight)

        return normalize_vector(embedding)

    def embed_sync(self, text: str) -> Tuple[List[float], str]:
        """Embed text on the calling thread.

        Returns:
            Tuple of (vector, model id of the path that produced it)
        """
        if not text or not text.strip():
            return [0.0] * self.dimension, self.model_id

        if self.is_model_loaded:
            try:
                return self._embed_with_model(text).tolist(), self.model_id
            except Exception as e:
                logger.error(
                    "model_embedding_failed_using_fallback",
                    error=str(e),
                    error_type=type(e).__name__,
                    text_preview=text[:100],
                )

        return self._embed_fallback(text).tolist(), f"hash-fallback:{self.dimension}"

    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Args:
            text: Text to embed

        Returns:
            Unit vector of length ``dimension`` (all zeros for blank input)
        """
        vector, _ = await asyncio.to_thread(self.embed_sync, text)
        return vector

    async def embed_batch_tagged(self, texts: List[str]) -> Tuple[List[List[float]], List[str]]:
        """Embed many texts with bounded concurrency, keeping each vector's model id.

        At most ``max_concurrency`` texts are embedded at once. Cancellation is
        observed between texts. A text whose model inference failed comes back
        tagged with the fallback id, not ``model_id``.

        Args:
            texts: Texts to embed

        Returns:
            Tuple of (vectors, model ids), both aligned with the input order
        """
        if not texts:
            return [], []

        gate = asyncio.Semaphore(self.max_concurrency)

        async def _one(text: str) -> Tuple[List[float], str]:
            async with gate:
                return await asyncio.to_thread(self.embed_sync, text)

        pairs = await asyncio.gather(*(_one(t) for t in texts))
        vectors = [vector for vector, _ in pairs]
        model_ids = [model_id for _, model_id in pairs]

        fallbacks = sum(1 for model_id in model_ids if model_id != self.model_id)
        logger.info(
            "embeddings_batch_generated",
            count=len(vectors),
            dimension=self.dimension,
            model_id=self.model_id,
            fallback_count=fallbacks,
        )
        return vectors, model_ids

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts; vectors only, aligned with the input order."""
        vectors, _ = await self.embed_batch_tagged(texts)
        return vectors

    def get_stats(self) -> Dict[str, object]:
        return {
            "model_id": self.model_id,
            "model_loaded": self.is_model_loaded,
            "dimension": self.dimension,
            "max_tokens": self.max_tokens,
            "max_concurrency": self.max_concurrency,
        }


# Singleton instance for convenience
_embedder_instance: Optional[Embedder] = None


def get_embedder() -> Embedder:
    """Get or create a singleton embedder instance."""
    global _embedder_instance
    if _embedder_instance is None:
        _embedder_instance = Embedder()
    return _embedder_instance
