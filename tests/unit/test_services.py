"""Unit tests for the Ollama client and service adapters, using httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Callable, List

import httpx
import pytest

from docrag.errors import EmbeddingError, LLMError
from docrag.llm_client import OllamaClient
from docrag.rag.services import (
    EmbeddingService,
    LanguageModel,
    OllamaEmbeddingService,
    OllamaLanguageModel,
)

_TAGS = {
    "models": [
        {"name": "mxbai-embed-large:latest", "model": "mxbai-embed-large:latest", "digest": "8a1bc2d3e4f5a6b7c8d9"},
        {"name": "gemma3:12b", "model": "gemma3:12b", "digest": "ffff0000ffff"},
    ]
}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> OllamaClient:
    return OllamaClient(base_url="http://ollama.test", transport=httpx.MockTransport(handler))


def _recording(responses: dict, seen: List[httpx.Request]) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = responses[request.url.path]
        return httpx.Response(status, json=body)

    return handler


class TestOllamaClient:
    async def test_embeddings_posts_model_and_prompt(self) -> None:
        seen: List[httpx.Request] = []
        client = _client(_recording({"/api/embeddings": (200, {"embedding": [0.1, 0.2]})}, seen))

        data = await client.embeddings("hello", model="embed-model")

        assert data == {"embedding": [0.1, 0.2]}
        assert json.loads(seen[0].content) == {"model": "embed-model", "prompt": "hello"}

    async def test_chat_is_non_streaming_with_temperature(self) -> None:
        seen: List[httpx.Request] = []
        client = _client(_recording({"/api/chat": (200, {"message": {"content": "hi"}})}, seen))

        await client.chat([{"role": "user", "content": "hey"}], model="chat-model", temperature=0.1)

        payload = json.loads(seen[0].content)
        assert payload["stream"] is False
        assert payload["model"] == "chat-model"
        assert payload["options"] == {"temperature": 0.1}

    async def test_http_errors_are_raised(self) -> None:
        client = _client(lambda request: httpx.Response(500, json={"error": "boom"}))

        with pytest.raises(httpx.HTTPStatusError):
            await client.embeddings("hello")

    async def test_model_digest_matches_latest_tag(self) -> None:
        client = _client(lambda request: httpx.Response(200, json=_TAGS))

        assert await client.model_digest("mxbai-embed-large") == "8a1bc2d3e4f5a6b7c8d9"
        assert await client.model_digest("gemma3:12b") == "ffff0000ffff"
        assert await client.model_digest("missing") is None


class TestOllamaEmbeddingService:
    def test_satisfies_protocol(self) -> None:
        service = OllamaEmbeddingService(_client(lambda r: httpx.Response(200)), model="m")

        assert isinstance(service, EmbeddingService)

    async def test_embed_returns_vector(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"embedding": [1.0, 2.0, 3.0]}))

        vector = await OllamaEmbeddingService(client, model="m").embed("text")

        assert vector == [1.0, 2.0, 3.0]

    async def test_empty_embedding_is_an_error(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"embedding": []}))

        with pytest.raises(EmbeddingError) as excinfo:
            await OllamaEmbeddingService(client, model="m").embed("text")

        assert str(excinfo.value).startswith("[ollama]")

    async def test_transport_errors_propagate_for_retry(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(httpx.ConnectError):
            await OllamaEmbeddingService(_client(handler), model="m").embed("text")

    async def test_resolve_model_version_pins_digest(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("docrag.config.EMBEDDING_MODEL_VERSION", "")
        service = OllamaEmbeddingService(
            _client(lambda request: httpx.Response(200, json=_TAGS)),
            model="mxbai-embed-large:latest",
        )

        assert await service.resolve_model_version() == "mxbai-embed-large:latest@8a1bc2d3e4f5"
        assert service.model_version == "mxbai-embed-large:latest@8a1bc2d3e4f5"

    async def test_configured_version_is_kept(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("docrag.config.EMBEDDING_MODEL_VERSION", "pinned-v3")
        seen: List[httpx.Request] = []
        service = OllamaEmbeddingService(_client(_recording({}, seen)), model="m")

        assert await service.resolve_model_version() == "pinned-v3"
        assert seen == []

    async def test_unknown_model_keeps_name_as_version(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("docrag.config.EMBEDDING_MODEL_VERSION", "")
        service = OllamaEmbeddingService(
            _client(lambda request: httpx.Response(200, json={"models": []})),
            model="not-pulled",
        )

        assert await service.resolve_model_version() == "not-pulled"


class TestOllamaLanguageModel:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(OllamaLanguageModel(_client(lambda r: httpx.Response(200))), LanguageModel)

    async def test_complete_sends_system_and_user_messages(self) -> None:
        seen: List[httpx.Request] = []
        client = _client(_recording({"/api/chat": (200, {"message": {"content": "  An answer.  "}})}, seen))

        answer = await OllamaLanguageModel(client, model="chat").complete("the prompt")

        assert answer == "An answer."
        messages = json.loads(seen[0].content)["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[1]["content"] == "the prompt"

    async def test_empty_answer_is_an_error(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"message": {"content": " "}}))

        with pytest.raises(LLMError):
            await OllamaLanguageModel(client, model="chat").complete("prompt")

    async def test_http_error_becomes_llm_error(self) -> None:
        client = _client(lambda request: httpx.Response(503, json={"error": "loading"}))

        with pytest.raises(LLMError) as excinfo:
            await OllamaLanguageModel(client, model="chat").complete("prompt")

        assert excinfo.value.provider_name == "ollama"

    async def test_timeouts_are_not_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(httpx.ReadTimeout):
            await OllamaLanguageModel(_client(handler), model="chat").complete("prompt")
