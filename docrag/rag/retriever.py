"""Retriever for semantic search over the documentation index.

Handles:
- Query embedding generation (same model version as the index)
- FAISS vector search with a relevance floor
- Result ranking and context formatting
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog

from docrag.config import RagSettings
from docrag.errors import (
    DimensionMismatchError,
    EmbeddingError,
    ModelVersionMismatchError,
    NoResultsError,
    QueryTimeoutError,
)
from docrag.rag.services import EmbeddingService
from docrag.rag.store_faiss import FAISSVectorStore, IndexEntry

logger = structlog.get_logger()


@dataclass
class RetrievalResult:
    """A single retrieved chunk with its cosine similarity."""

    entry: IndexEntry
    score: float

    @property
    def chunk_id(self) -> str:
        return self.entry.chunk_id

    @property
    def content(self) -> str:
        return self.entry.text

    @property
    def heading_path(self) -> str:
        return self.entry.metadata.get("heading_path", "")

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.entry.metadata

    @property
    def source(self) -> str:
        """Get a formatted source string for display."""
        if self.heading_path:
            return f"{self.entry.document_id} > {self.heading_path}"
        return self.entry.document_id


class Retriever:
    """Semantic retriever for the query engine."""

    def __init__(
        self,
        store: FAISSVectorStore,
        embedder: EmbeddingService,
        settings: Optional[RagSettings] = None,
    ):
        """Initialize the retriever.

        Args:
            store: Loaded vector store
            embedder: Embedding service; must match the index's model version
            settings: Retrieval settings (default: from environment)
        """
        self.store = store
        self.embedder = embedder
        self.settings = settings or RagSettings.from_env()

    def check_model_version(self) -> None:
        """Refuse to query an index built with a different embedding model.

        Raises:
            ModelVersionMismatchError: If the tags differ
        """
        index_version = self.store.model_version
        if index_version is not None and index_version != self.embedder.model_version:
            raise ModelVersionMismatchError(
                f"Index was built with {index_version!r} but queries are embedded "
                f"with {self.embedder.model_version!r}; rebuild the index",
                expected=index_version,
                actual=self.embedder.model_version,
            )

    async def embed_query(self, query: str) -> List[float]:
        """Embed the question, bounded by the embedding timeout.

        Raises:
            QueryTimeoutError: If the embedding service doesn't answer in time
            EmbeddingError: If the embedding request fails
        """
        timeout = self.settings.embed_timeout
        try:
            return await asyncio.wait_for(self.embedder.embed(query), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise QueryTimeoutError(
                f"Embedding the question took longer than {timeout}s",
                timeout=timeout,
            ) from e
        except httpx.HTTPError as e:
            raise EmbeddingError(
                f"Embedding the question failed: {e}",
                provider_name=getattr(self.embedder, "provider_name", None),
            ) from e

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Retrieve the most relevant chunks for a query.

        Args:
            query: User question
            top_k: Number of results to return (default from settings)
            min_score: Minimum cosine similarity to keep a hit (default from settings)

        Returns:
            Up to top_k results, best first; never empty

        Raises:
            ValueError: If the query is empty or top_k is not positive
            ModelVersionMismatchError: If the embedder doesn't match the index
            NoResultsError: If the index is empty or nothing clears the floor
        """
        if not query or not query.strip():
            raise ValueError("Question must not be empty")

        top_k = self.settings.top_k if top_k is None else top_k
        if top_k <= 0:
            raise ValueError(f"top_k must be positive, got {top_k}")
        min_score = self.settings.min_score if min_score is None else min_score

        self.check_model_version()

        if len(self.store) == 0:
            logger.warning("empty_index_no_results")
            raise NoResultsError("The index is empty; run an ingestion first")

        logger.info("retrieval_started", query_length=len(query), top_k=top_k)

        query_embedding = await self.embed_query(query)

        try:
            hits = self.store.search(query_embedding, k=top_k)
        except DimensionMismatchError as e:
            # Same tag but different vector size still means a different model
            raise ModelVersionMismatchError(
                f"Query embedding does not fit the index: {e.message}",
                expected=self.store.model_version,
                actual=self.embedder.model_version,
            ) from e

        results = [
            RetrievalResult(entry=h.entry, score=h.score)
            for h in hits
            if h.score >= min_score
        ]

        if not results:
            logger.info("no_results_above_floor", min_score=min_score, hits=len(hits))
            raise NoResultsError(f"No indexed chunk scored at least {min_score}")

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score,
        )

        return results


def context_parts(results: List[RetrievalResult], max_chars: int) -> List[str]:
    """Numbered, source-labelled context blocks that fit in max_chars once joined.

    The first block that doesn't fit is truncated if there is meaningful space
    left for it; everything after it is dropped.
    """
    parts: List[str] = []
    total_chars = 0

    for i, result in enumerate(results, 1):
        chunk_text = (
            f"[Source {i}: {result.source}]\n"
            f"{result.content.strip()}\n"
        )

        separator = 1 if parts else 0
        if total_chars + separator + len(chunk_text) > max_chars:
            remaining = max_chars - total_chars - separator - len("...\n")
            if remaining > 200 or (not parts and remaining > 0):
                parts.append(chunk_text[:remaining] + "...\n")
            break

        parts.append(chunk_text)
        total_chars += separator + len(chunk_text)

    return parts


def format_context(results: List[RetrievalResult], max_chars: int) -> str:
    """Format retrieved chunks as context for the prompt.

    Args:
        results: Retrieval results, best first
        max_chars: Maximum total characters of context to return

    Returns:
        Context string ready for the prompt
    """
    parts = context_parts(results, max_chars)
    context = "\n".join(parts)

    logger.debug(
        "context_formatted",
        num_chunks=len(parts),
        total_chars=len(context),
    )

    return context
