"""Retriever for semantic search over indexed chunks.

Handles:
- Query embedding and over-fetched vector search
- Query expansion when the first pass recalls too little
- Source-diversity re-ranking
- Context formatting for the LLM prompt
"""
import re
from typing import Dict, List, Optional

import structlog

from ragcore import config
from ragcore.rag.embedder import Embedder, get_embedder
from ragcore.rag.store_faiss import FAISSVectorStore, SearchResult, get_vector_store

logger = structlog.get_logger()

# Leading interrogative phrases stripped during expansion (longest match wins)
INTERROGATIVE_PREFIXES = (
    "tell me about",
    "what are",
    "what is",
    "what's",
    "how do",
    "how does",
    "how can",
    "how to",
    "can you explain",
    "explain",
    "describe",
    "what",
    "which",
    "how",
    "where",
    "when",
    "why",
    "who",
)

# (singular, plural) pairs toggled during expansion
PLURAL_TOGGLES = (
    ("service", "services"),
    ("policy", "policies"),
    ("product", "products"),
    ("document", "documents"),
    ("fee", "fees"),
)

_PREFIX_RE = re.compile(
    r"^\s*(?:%s)\b[\s,:]*"
    % "|".join(re.escape(p) for p in sorted(INTERROGATIVE_PREFIXES, key=len, reverse=True)),
    re.IGNORECASE,
)


def _toggle_plural(question: str) -> Optional[str]:
    for singular, plural in PLURAL_TOGGLES:
        plural_re = re.compile(rf"\b{plural}\b", re.IGNORECASE)
        if plural_re.search(question):
            return plural_re.sub(singular, question)
        singular_re = re.compile(rf"\b{singular}\b", re.IGNORECASE)
        if singular_re.search(question):
            return singular_re.sub(plural, question)
    return None


def generate_query_variations(question: str) -> List[str]:
    """Build reformulated queries for a low-recall question.

    Variants, in order: the question without its leading interrogative
    phrase, its content words (longer than 3 characters), and a
    singular/plural toggle of a known domain noun. Duplicates, blanks and the
    original question itself are dropped.
    """
    question = question.strip()
    variations: List[str] = []

    stripped = _PREFIX_RE.sub("", question).strip(" ?!.")
    variations.append(stripped)

    words = [w.strip("?!.,;:") for w in question.split()]
    variations.append(" ".join(w for w in words if len(w) > 3))

    toggled = _toggle_plural(question)
    if toggled:
        variations.append(toggled)

    seen = {question}
    unique = []
    for variation in variations:
        if variation and variation not in seen:
            seen.add(variation)
            unique.append(variation)
    return unique


def dedupe_results(results: List[SearchResult]) -> List[SearchResult]:
    """Drop repeated chunks, keeping the first occurrence order."""
    seen = set()
    unique = []
    for result in results:
        if result.chunk.id not in seen:
            seen.add(result.chunk.id)
            unique.append(result)
    return unique


def apply_source_diversity(results: List[SearchResult], max_results: int) -> List[SearchResult]:
    """Interleave sources round-robin so no single source dominates.

    Candidates are partitioned into per-source queues (sources ordered by
    first appearance, queue order preserved); each round takes the head of
    every non-empty queue until ``max_results`` are selected.
    """
    if max_results <= 0:
        return []

    queues: Dict[str, List[SearchResult]] = {}
    for result in results:
        queues.setdefault(result.source, []).append(result)

    if len(queues) <= 1:
        return results[:max_results]

    selected: List[SearchResult] = []
    depth = 0
    while len(selected) < max_results:
        row = [queue[depth] for queue in queues.values() if depth < len(queue)]
        if not row:
            break
        selected.extend(row[: max_results - len(selected)])
        depth += 1

    logger.info(
        "source_diversity_applied",
        candidates=len(results),
        selected=len(selected),
        sources={source: len(queue) for source, queue in queues.items()},
    )
    return selected


def format_context(results: List[SearchResult]) -> str:
    """Format results as ``Source: <source>`` blocks for the prompt."""
    return "\n\n".join(f"Source: {r.source}\n{r.chunk.content}" for r in results)


class Retriever:
    """Semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        vector_store: Optional[FAISSVectorStore] = None,
        max_results: int = None,
        overfetch_multiplier: int = None,
        min_relevance: float = None,
        use_query_expansion: bool = None,
        use_source_diversity: bool = None,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedder for queries (default singleton)
            vector_store: FAISS vector store (will load default if not provided)
            max_results: Target number of results N (default from config)
            overfetch_multiplier: Candidates fetched per target result
            min_relevance: Minimum cosine score (default from config)
            use_query_expansion: Enable query expansion (default from config)
            use_source_diversity: Enable source-diversity re-rank (default from config)
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.max_results = max_results or config.MAX_SEARCH_RESULTS
        self.overfetch_multiplier = overfetch_multiplier or config.OVERFETCH_MULTIPLIER
        self.min_relevance = config.MIN_RELEVANCE_SCORE if min_relevance is None else min_relevance
        self.use_query_expansion = (
            config.USE_QUERY_EXPANSION if use_query_expansion is None else use_query_expansion
        )
        self.use_source_diversity = (
            config.USE_SOURCE_DIVERSITY if use_source_diversity is None else use_source_diversity
        )

        logger.info(
            "retriever_initialized",
            max_results=self.max_results,
            overfetch_multiplier=self.overfetch_multiplier,
            min_relevance=self.min_relevance,
            use_query_expansion=self.use_query_expansion,
            use_source_diversity=self.use_source_diversity,
        )

    async def _ensure_components(self) -> None:
        if self.embedder is None:
            self.embedder = get_embedder()
        if self.vector_store is None:
            self.vector_store = await get_vector_store()

    async def search(
        self,
        query: str,
        limit: int,
        language: Optional[str] = None,
    ) -> List[SearchResult]:
        """Embed a query and run one vector search.

        Args:
            query: Query text
            limit: Maximum number of results
            language: Optional language filter

        Returns:
            SearchResults ordered by descending score
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        await self._ensure_components()

        query_embedding = await self.embedder.embed(query)
        results = await self.vector_store.search(
            query_embedding,
            limit=limit,
            min_score=self.min_relevance,
            language=language,
        )

        logger.debug("query_searched", query_preview=query[:100], results=len(results))
        return results

    async def search_with_expansion(
        self,
        question: str,
        candidate_limit: int,
        target: int,
        language: Optional[str] = None,
    ) -> List[SearchResult]:
        """Search, expanding the query when fewer than target/2 candidates come back."""
        results = await self.search(question, candidate_limit, language)

        if not self.use_query_expansion or len(results) >= target / 2:
            logger.info("original_query_sufficient", results=len(results))
            return results

        variations = generate_query_variations(question)
        logger.info(
            "query_expansion_started",
            original_results=len(results),
            variations=len(variations),
        )

        combined = list(results)
        per_variation = max(1, candidate_limit // 2)
        for variation in variations:
            combined.extend(await self.search(variation, per_variation, language))

        unique = dedupe_results(combined)[:candidate_limit]
        logger.info("query_expansion_completed", unique_results=len(unique))
        return unique

    async def retrieve(
        self,
        question: str,
        max_results: Optional[int] = None,
        language: Optional[str] = None,
    ) -> List[SearchResult]:
        """Retrieve, expand and diversify candidates for a question.

        Args:
            question: User question
            max_results: Target number of results N (overrides default)
            language: Optional language filter

        Returns:
            At most N SearchResults
        """
        target = max_results or self.max_results
        candidate_limit = target * self.overfetch_multiplier

        logger.info(
            "retrieval_started",
            question_preview=question[:100],
            target=target,
            candidate_limit=candidate_limit,
        )

        candidates = await self.search_with_expansion(
            question, candidate_limit, target, language
        )

        if self.use_source_diversity:
            selected = apply_source_diversity(candidates, target)
        else:
            selected = candidates[:target]

        logger.info(
            "retrieval_completed",
            candidates=len(candidates),
            selected=len(selected),
            sources=sorted({r.source for r in selected}),
        )
        return selected


# Singleton instance for convenience
_retriever_instance: Optional[Retriever] = None


async def get_retriever() -> Retriever:
    """Get or create a singleton retriever instance.

    Returns:
        Retriever instance
    """
    global _retriever_instance
    if _retriever_instance is None:
        _retriever_instance = Retriever()
        await _retriever_instance._ensure_components()
    return _retriever_instance
