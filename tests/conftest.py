"""Shared pytest fixtures for the docrag test suite."""

from __future__ import annotations

import asyncio
import hashlib
import re
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

from docrag.config import RagSettings
from docrag.rag.loader import CorpusLoader
from docrag.rag.store_faiss import FAISSVectorStore

# ---------------------------------------------------------------------------
# Fake services
# ---------------------------------------------------------------------------

EMBEDDING_DIM = 64

_WORD = re.compile(r"[a-z0-9]+")


def text_to_vector(text: str, dim: int = EMBEDDING_DIM) -> List[float]:
    """Deterministic bag-of-words vector: texts sharing words score higher.

    Dimension 0 is a constant bias so no vector is ever all zeros.
    """
    vector = [0.0] * dim
    vector[0] = 1.0
    for word in _WORD.findall(text.lower()):
        bucket = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % (dim - 1) + 1
        vector[bucket] += 1.0
    return vector


def service_unavailable() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://ollama.test/api/embeddings")
    response = httpx.Response(503, request=request)
    return httpx.HTTPStatusError("503 Service Unavailable", request=request, response=response)


class FakeEmbedder:
    """In-memory deterministic embedding service.

    Texts containing any of ``fail_on`` always fail with a transient
    connection error, so they exhaust their retries.
    """

    provider_name = "fake-embed"

    def __init__(
        self,
        model_version: str = "fake-embed@v1",
        dim: int = EMBEDDING_DIM,
        fail_on: tuple = (),
        delay: float = 0.0,
    ) -> None:
        self.model_version = model_version
        self.dim = dim
        self.fail_on = fail_on
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if any(marker in text for marker in self.fail_on):
                raise httpx.ConnectError("connection refused")
            return text_to_vector(text, self.dim)
        finally:
            self.in_flight -= 1


class FlakyEmbedder(FakeEmbedder):
    """Fails the first ``failures`` attempts for every text with a 503."""

    def __init__(self, failures: int = 1, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.attempts: Dict[str, int] = {}

    async def embed(self, text: str) -> List[float]:
        self.attempts[text] = self.attempts.get(text, 0) + 1
        if self.attempts[text] <= self.failures:
            self.calls.append(text)
            raise service_unavailable()
        return await super().embed(text)


class FakeLLM:
    """Language model that records prompts and returns a canned answer."""

    provider_name = "fake-llm"

    def __init__(self, answer: str = "Use registerCommand. [Source 1]", delay: float = 0.0) -> None:
        self.answer = answer
        self.delay = delay
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.answer


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> RagSettings:
    """Settings with small chunks and no retry back-off."""
    defaults = {
        "chunk_length": 200,
        "chunk_overlap": 50,
        "top_k": 5,
        "concurrency_limit": 4,
        "strict_mode": False,
        "min_score": 0.0,
        "max_context_chars": 6000,
        "embed_timeout": 5.0,
        "embed_max_attempts": 3,
        "retry_initial_wait": 0.0,
        "retry_max_wait": 0.0,
        "llm_timeout": 5.0,
    }
    defaults.update(overrides)
    return RagSettings(**defaults)


def write_docs(root: Path, files: Dict[str, str]) -> Path:
    """Write {relative path: content} under root and return root."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def sized_text(chunks: int, word: str = "plugin") -> str:
    """Text that chunks into exactly ``chunks`` pieces with make_settings()."""
    if chunks == 1:
        return f"{word} " * 20
    # 200 + 150 * (chunks - 1) characters of unbroken text
    return "x" * (200 + 150 * (chunks - 1))


@pytest.fixture
def settings() -> RagSettings:
    return make_settings()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def index_dir(tmp_path: Path) -> Path:
    return tmp_path / "index"


@pytest.fixture
def store(index_dir: Path) -> FAISSVectorStore:
    return FAISSVectorStore(index_dir=index_dir)


@pytest.fixture
def docs_root(tmp_path: Path) -> Path:
    """A small documentation tree with frontmatter, headings and noise dirs."""
    root = tmp_path / "docs"
    return write_docs(
        root,
        {
            "intro.md": (
                "---\ntitle: Introduction\ntags: [start]\n---\n"
                "# Introduction\n\nPlugins extend the editor with commands.\n"
            ),
            "guides/commands.md": (
                "# Commands\n\n## Registering\n\n"
                "Call registerCommand with an id and a callback to add a command.\n"
            ),
            "guides/settings.md": (
                "# Settings\n\nPlugins read settings through the configuration API.\n"
            ),
            "node_modules/pkg/readme.md": "# Vendored\n\nShould never be indexed.\n",
            "notes.txt": "not markdown",
        },
    )


@pytest.fixture
def loader(docs_root: Path) -> CorpusLoader:
    return CorpusLoader(roots=[docs_root])
