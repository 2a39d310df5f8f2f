"""Application configuration with sensible defaults."""
import os
from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(os.getenv("DOCRAG_HOME", Path.cwd()))
INDEX_DIR = Path(os.getenv("INDEX_DIR", BASE_DIR / "storage"))
DOCS_ROOTS: List[Path] = [
    Path(p) for p in os.getenv("DOCS_ROOTS", str(BASE_DIR)).split(os.pathsep) if p
]
DOCS_PATTERN = os.getenv("DOCS_PATTERN", "*.md")

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")
# Pin the version tag stored with the index; empty = resolve from Ollama digest
EMBEDDING_MODEL_VERSION = os.getenv("EMBEDDING_MODEL_VERSION", "")

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_LENGTH = int(os.getenv("CHUNK_LENGTH", "2400"))       # ≈600 tokens
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "320"))      # ≈80 tokens
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
MIN_SCORE = float(os.getenv("MIN_SCORE", "0.0"))            # cosine floor, 0 = off
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "6000"))

# Embedding throughput and resilience
CONCURRENCY_LIMIT = int(os.getenv("CONCURRENCY_LIMIT", "4"))
STRICT_MODE = _env_bool("STRICT_MODE", "false")
EMBED_TIMEOUT = float(os.getenv("EMBED_TIMEOUT", "30.0"))
EMBED_MAX_ATTEMPTS = int(os.getenv("EMBED_MAX_ATTEMPTS", "4"))
RETRY_INITIAL_WAIT = float(os.getenv("RETRY_INITIAL_WAIT", "0.5"))
RETRY_MAX_WAIT = float(os.getenv("RETRY_MAX_WAIT", "8.0"))

# Answer generation
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "60.0"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")  # console | json


class RagSettings(BaseModel):
    """Recognized pipeline options.

    Everything the ingestion and query paths are allowed to tune lives here;
    unknown keys are rejected rather than silently carried around.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    chunk_length: int = Field(default=CHUNK_LENGTH, gt=0)
    chunk_overlap: int = Field(default=CHUNK_OVERLAP, ge=0)
    top_k: int = Field(default=RETRIEVAL_TOP_K, gt=0)
    concurrency_limit: int = Field(default=CONCURRENCY_LIMIT, gt=0)
    strict_mode: bool = STRICT_MODE

    min_score: float = Field(default=MIN_SCORE, ge=-1.0, le=1.0)
    max_context_chars: int = Field(default=MAX_CONTEXT_CHARS, gt=0)
    embed_timeout: float = Field(default=EMBED_TIMEOUT, gt=0)
    embed_max_attempts: int = Field(default=EMBED_MAX_ATTEMPTS, gt=0)
    retry_initial_wait: float = Field(default=RETRY_INITIAL_WAIT, ge=0)
    retry_max_wait: float = Field(default=RETRY_MAX_WAIT, ge=0)
    llm_timeout: float = Field(default=LLM_TIMEOUT, gt=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "RagSettings":
        if self.chunk_overlap >= self.chunk_length:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_length ({self.chunk_length})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides) -> "RagSettings":
        """Build settings from the module defaults, applying non-None overrides."""
        return cls(**{k: v for k, v in overrides.items() if v is not None})
