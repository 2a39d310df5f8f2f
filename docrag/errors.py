"""Exception hierarchy for docrag.

All errors inherit from :class:`DocRagError`, which carries an optional
``provider_name`` naming the external service involved (e.g. "ollama",
"faiss") so log lines and CLI output can say where a failure came from.

    DocRagError
    +-- ReadError                  (source file unreadable; skipped)
    +-- EmbeddingError             (embedding failed after retries)
    +-- IndexCorruptionError       (persisted index failed to load/validate)
    +-- ConfigurationError
    |   +-- ModelVersionMismatchError
    |   +-- DimensionMismatchError
    +-- NoResultsError             (empty index or nothing above the floor)
    +-- QueryTimeoutError          (also a builtin TimeoutError)
    +-- LLMError                   (language model call failed)
"""
from pathlib import Path
from typing import Optional, Union


class DocRagError(Exception):
    """Base exception for all docrag errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: Optional[str] = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> Optional[str]:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


class ReadError(DocRagError):
    """Raised when a source document cannot be read or decoded."""

    def __init__(
        self,
        message: str = "Source file could not be read",
        path: Optional[Union[str, Path]] = None,
        provider_name: Optional[str] = None,
    ) -> None:
        self.path = str(path) if path is not None else None
        super().__init__(message=message, provider_name=provider_name)


class EmbeddingError(DocRagError):
    """Raised when the embedding service fails for a chunk after retries."""

    def __init__(
        self,
        message: str = "Embedding request failed",
        chunk_id: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> None:
        self.chunk_id = chunk_id
        super().__init__(message=message, provider_name=provider_name)


class IndexCorruptionError(DocRagError):
    """Raised when a persisted index is missing pieces or fails validation."""

    def __init__(
        self,
        message: str = "Persisted index is corrupt",
        provider_name: Optional[str] = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(DocRagError):
    """Raised when configuration is invalid or inconsistent with the index."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        provider_name: Optional[str] = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ModelVersionMismatchError(ConfigurationError):
    """Raised when the embedding model version differs from the index's."""

    def __init__(
        self,
        message: str = "Embedding model version does not match the index",
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message=message, provider_name=provider_name)


class DimensionMismatchError(ConfigurationError):
    """Raised when a vector's dimensionality differs from the index's."""

    def __init__(
        self,
        message: str = "Embedding dimension does not match the index",
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        provider_name: Optional[str] = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message=message, provider_name=provider_name)


class NoResultsError(DocRagError):
    """Raised when retrieval finds nothing to answer from."""

    def __init__(
        self,
        message: str = "No relevant documentation found",
        provider_name: Optional[str] = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class QueryTimeoutError(DocRagError, TimeoutError):
    """Raised when an embedding or language model call exceeds its time bound."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout: Optional[float] = None,
        provider_name: Optional[str] = None,
    ) -> None:
        self.timeout = timeout
        super().__init__(message=message, provider_name=provider_name)


class LLMError(DocRagError):
    """Raised when the language model call fails or returns nothing usable."""

    def __init__(
        self,
        message: str = "Language model call failed",
        provider_name: Optional[str] = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
