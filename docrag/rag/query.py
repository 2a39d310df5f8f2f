"""Query engine: answers questions from the indexed documentation.

retrieve top-K chunks -> compose a bounded prompt -> ask the language model.
Each call is independent; the store and services are passed in explicitly.
"""
import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import httpx
import structlog

from docrag.config import RagSettings
from docrag.errors import DocRagError, NoResultsError, QueryTimeoutError
from docrag.rag.retriever import RetrievalResult, Retriever, context_parts
from docrag.rag.services import EmbeddingService, LanguageModel
from docrag.rag.store_faiss import FAISSVectorStore

logger = structlog.get_logger()

PROMPT_TEMPLATE = """Answer the question using the documentation excerpts below.
Cite excerpts by their source number, e.g. [Source 2]. If the excerpts don't
contain the answer, say that you don't know.

DOCUMENTATION:
{context}

QUESTION:
{question}

ANSWER:"""


@dataclass(frozen=True)
class SourceChunk:
    """A chunk that was placed in the prompt."""

    chunk_id: str
    document_id: str
    heading_path: str
    score: float


@dataclass
class Answer:
    """A generated answer and the chunks it was grounded on."""

    answer_text: str
    source_chunks: List[SourceChunk] = field(default_factory=list)


class QueryEngine:
    """Answers questions against a loaded vector store."""

    def __init__(
        self,
        store: FAISSVectorStore,
        embedder: EmbeddingService,
        llm: LanguageModel,
        settings: Optional[RagSettings] = None,
    ):
        self.settings = settings or RagSettings.from_env()
        self.store = store
        self.llm = llm
        self.retriever = Retriever(store, embedder, settings=self.settings)

    def build_prompt(
        self, question: str, results: List[RetrievalResult]
    ) -> Tuple[str, List[RetrievalResult]]:
        """Compose the prompt from as many results as fit in the context budget.

        Returns:
            (prompt, results actually placed in the prompt)
        """
        parts = context_parts(results, self.settings.max_context_chars)
        prompt = PROMPT_TEMPLATE.format(context="\n".join(parts), question=question.strip())
        return prompt, results[: len(parts)]

    async def answer(
        self,
        question: str,
        top_k: Optional[int] = None,
        timeout: Optional[float] = None,
        min_score: Optional[float] = None,
    ) -> Answer:
        """Answer a question from the top-K most similar chunks.

        Args:
            question: Natural-language question
            top_k: Number of chunks to retrieve (default from settings)
            timeout: Seconds to wait for the language model (default llm_timeout)
            min_score: Relevance floor override (default from settings)

        Returns:
            Answer with the answer text and the chunks used

        Raises:
            ValueError: If the question is empty or top_k is not positive
            ModelVersionMismatchError: If the index was built with another model
            NoResultsError: If nothing relevant is indexed, or no retrieved chunk
                fits in the context budget
            QueryTimeoutError: If embedding or generation exceeds its timeout
            LLMError: If the language model call fails
        """
        timeout = self.settings.llm_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        results = await self.retriever.retrieve(question, top_k=top_k, min_score=min_score)
        prompt, used = self.build_prompt(question, results)
        if not used:
            raise NoResultsError(
                f"No retrieved chunk fits in max_context_chars={self.settings.max_context_chars}"
            )

        logger.info(
            "answer_generation_started",
            question_preview=question[:100],
            sources=len(used),
            prompt_length=len(prompt),
        )

        try:
            answer_text = await asyncio.wait_for(self.llm.complete(prompt), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error("answer_generation_timeout", timeout=timeout)
            raise QueryTimeoutError(
                f"No answer within {timeout}s",
                timeout=timeout,
                provider_name=getattr(self.llm, "provider_name", None),
            ) from e

        logger.info("answer_generated", answer_length=len(answer_text))

        return Answer(
            answer_text=answer_text,
            source_chunks=[
                SourceChunk(
                    chunk_id=r.chunk_id,
                    document_id=r.entry.document_id,
                    heading_path=r.heading_path,
                    score=r.score,
                )
                for r in used
            ],
        )

    async def answer_many(
        self,
        questions: Sequence[str],
        top_k: Optional[int] = None,
        timeout: Optional[float] = None,
        min_score: Optional[float] = None,
    ) -> List[Union[Answer, Exception]]:
        """Answer questions one after another.

        Returns:
            One item per question, in order: the Answer, or the error that
            question produced
        """
        outcomes: List[Union[Answer, Exception]] = []

        for question in questions:
            try:
                outcomes.append(
                    await self.answer(question, top_k=top_k, timeout=timeout, min_score=min_score)
                )
            except (DocRagError, ValueError) as e:
                logger.warning(
                    "question_failed",
                    question_preview=question[:100],
                    error=str(e),
                    error_type=type(e).__name__,
                )
                outcomes.append(e)

        return outcomes
