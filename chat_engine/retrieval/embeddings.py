"""Query embedders — Gemini over HTTP, OpenAI through its SDK."""

from __future__ import annotations

import logging

import httpx

from chat_engine.retrieval.interface import Embedder, RetrievalError

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiEmbedder(Embedder):
    """``embedContent`` with the RETRIEVAL_QUERY task type.

    No output dimensionality is requested so vectors match the stored
    default-size chunk embeddings.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-embedding-001",
        api_base: str = GEMINI_API_BASE,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._api_base = api_base.rstrip("/")
        self.http = httpx.AsyncClient(timeout=timeout)

    async def embed(self, text: str) -> list[float]:
        if not self._api_key:
            raise RetrievalError("Missing GEMINI_API_KEY for embeddings")
        try:
            resp = await self.http.post(
                f"{self._api_base}/{self._model}:embedContent",
                params={"key": self._api_key},
                json={
                    "model": f"models/{self._model}",
                    "content": {"parts": [{"text": text}]},
                    "taskType": "RETRIEVAL_QUERY",
                },
            )
        except httpx.HTTPError as exc:
            raise RetrievalError(f"Embedding request failed: {exc}") from exc
        if resp.status_code != 200:
            raise RetrievalError(f"Embedding API error: {resp.status_code} {resp.text[:200]}")

        values = (resp.json().get("embedding") or {}).get("values")
        if not isinstance(values, list) or not values:
            raise RetrievalError("Invalid embedding format from Gemini")
        return values

    async def close(self) -> None:
        await self.http.aclose()


class OpenAIEmbedder(Embedder):
    def __init__(self, api_key: str | None = None, model: str = "text-embedding-3-small") -> None:
        # Late import so the rest of the package works without openai installed
        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model

    async def embed(self, text: str) -> list[float]:
        from openai import OpenAIError

        try:
            response = await self._client.embeddings.create(model=self._model, input=text)
        except OpenAIError as exc:
            raise RetrievalError(f"Embedding request failed: {exc}") from exc
        return list(response.data[0].embedding)

    async def close(self) -> None:
        await self._client.close()
