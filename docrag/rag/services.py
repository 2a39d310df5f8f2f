"""External service boundaries for the RAG pipeline.

The pipeline and query engine only depend on two small protocols:

- ``EmbeddingService``: text in, fixed-length vector out, plus a
  ``model_version`` tag recorded with every index entry.
- ``LanguageModel``: composed prompt in, free-text answer out.

The Ollama implementations below are what the CLI wires up; tests plug in
in-memory fakes.
"""
from typing import List, Optional, Protocol, runtime_checkable

import httpx
import structlog

from docrag import config
from docrag.errors import EmbeddingError, LLMError
from docrag.llm_client import OllamaClient

logger = structlog.get_logger()


@runtime_checkable
class EmbeddingService(Protocol):
    """Produces embedding vectors for text."""

    model_version: str

    async def embed(self, text: str) -> List[float]:
        ...


@runtime_checkable
class LanguageModel(Protocol):
    """Produces a free-text completion for a prompt."""

    async def complete(self, prompt: str) -> str:
        ...


class OllamaEmbeddingService:
    """Embedding service backed by Ollama's /api/embeddings."""

    provider_name = "ollama"

    def __init__(
        self,
        client: OllamaClient,
        model: str = None,
        model_version: Optional[str] = None,
    ):
        self.client = client
        self.model = model or config.EMBEDDING_MODEL
        self.model_version = model_version or config.EMBEDDING_MODEL_VERSION or self.model

    async def resolve_model_version(self) -> str:
        """Pin the version tag to the installed model digest.

        A tag of ``"<model>@<digest[:12]>"`` changes when the model is
        re-pulled under the same name, which a bare model name would not.
        Leaves an explicitly configured version untouched.
        """
        if config.EMBEDDING_MODEL_VERSION:
            return self.model_version

        digest = await self.client.model_digest(self.model)
        if digest:
            self.model_version = f"{self.model}@{digest[:12]}"
        logger.info("embedding_model_version_resolved", model_version=self.model_version)
        return self.model_version

    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Raises:
            httpx.HTTPError: Transport or HTTP status failures (retryable upstream)
            EmbeddingError: If Ollama returns an empty embedding
        """
        response = await self.client.embeddings(prompt=text, model=self.model)
        embedding = response.get("embedding", [])

        if not embedding:
            raise EmbeddingError(
                "Empty embedding returned", provider_name=self.provider_name
            )

        return embedding


class OllamaLanguageModel:
    """Language model backed by Ollama's /api/chat."""

    provider_name = "ollama"

    SYSTEM_PROMPT = (
        "You answer questions about plugin development using only the "
        "documentation excerpts provided. If the excerpts do not contain the "
        "answer, say so plainly."
    )

    def __init__(
        self,
        client: OllamaClient,
        model: str = None,
        temperature: Optional[float] = 0.2,
    ):
        self.client = client
        self.model = model or config.CHAT_MODEL
        self.temperature = temperature

    async def complete(self, prompt: str) -> str:
        messages = [
            {"role": "system", "content": self.SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        try:
            data = await self.client.chat(
                messages=messages,
                model=self.model,
                temperature=self.temperature,
            )
        except httpx.TimeoutException:
            # Surface timeouts unchanged; the query engine maps them
            raise
        except httpx.HTTPError as e:
            raise LLMError(f"Chat request failed: {e}", provider_name=self.provider_name) from e

        content = data.get("message", {}).get("content", "")
        if not content.strip():
            raise LLMError("Empty answer returned", provider_name=self.provider_name)

        return content.strip()
