"""Thin async client for the parts of the Ollama HTTP API docrag needs."""
import httpx
from typing import Any, Dict, List, Optional
import structlog

from docrag import config

logger = structlog.get_logger()

TAGS_TIMEOUT = 5.0


class OllamaClient:
    """Async client for the Ollama chat, embeddings and tags endpoints.

    A fresh ``httpx.AsyncClient`` is opened per call, so one instance can be
    shared by concurrent embedding tasks.
    """

    def __init__(
        self,
        base_url: str = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Server URL (default: config.OLLAMA_BASE_URL)
            timeout: Default per-request timeout in seconds
            transport: Custom httpx transport, e.g. httpx.MockTransport
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, path, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "ollama_bad_status",
                    path=path,
                    status_code=e.response.status_code,
                )
                raise
            except httpx.TransportError as e:
                logger.warning(
                    "ollama_unreachable",
                    path=path,
                    base_url=self.base_url,
                    error_type=type(e).__name__,
                )
                raise
            return response.json()

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Run one non-streaming chat completion.

        Returns:
            The decoded response; the reply is under ``["message"]["content"]``

        Raises:
            httpx.HTTPError: Transport failures and non-2xx responses
        """
        payload: Dict[str, Any] = {
            "model": model or config.CHAT_MODEL,
            "messages": messages,
            "stream": False,
        }
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        data = await self._request("POST", "/api/chat", payload, timeout)
        logger.info(
            "chat_completed",
            model=payload["model"],
            messages=len(messages),
            answer_chars=len(data.get("message", {}).get("content", "")),
        )
        return data

    async def embeddings(
        self,
        prompt: str,
        model: str = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Embed ``prompt``; the vector is under ``["embedding"]``.

        Raises:
            httpx.HTTPError: Transport failures and non-2xx responses
        """
        payload = {"model": model or config.EMBEDDING_MODEL, "prompt": prompt}
        data = await self._request("POST", "/api/embeddings", payload, timeout)
        logger.debug(
            "text_embedded",
            model=payload["model"],
            chars=len(prompt),
            dimension=len(data.get("embedding", [])),
        )
        return data

    async def list_models(self) -> List[Dict[str, Any]]:
        """Models installed on the server, as reported by /api/tags."""
        data = await self._request("GET", "/api/tags", timeout=TAGS_TIMEOUT)
        return data.get("models", [])

    async def model_digest(self, model: str) -> Optional[str]:
        """Return the digest of an installed model, or None if it isn't listed."""
        wanted = model if ":" in model else f"{model}:latest"
        for entry in await self.list_models():
            if entry.get("name") in (model, wanted) or entry.get("model") in (model, wanted):
                return entry.get("digest")
        return None
