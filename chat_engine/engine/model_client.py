"""Model service client — ABC, Gemini streaming implementation, and mocks."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from chat_engine.engine.models import (
    Citation,
    FunctionCallPart,
    ModelChunk,
    ModelPart,
    TextPart,
    ThoughtPart,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class ModelTransportError(RuntimeError):
    """The model service could not be reached or answered with a non-success status."""


class MalformedChunk(ValueError):
    """A pushed chunk could not be decoded; the stream continues past it."""


@dataclass
class ModelRequest:
    """Everything one round sends upstream."""

    system_instruction: str
    contents: list[dict[str, Any]]
    function_declarations: list[dict[str, Any]] = field(default_factory=list)
    use_search_grounding: bool = False

    def tools_payload(self) -> list[dict[str, Any]]:
        if self.use_search_grounding:
            return [{"google_search": {}}]
        if self.function_declarations:
            return [{"functionDeclarations": self.function_declarations}]
        return []


# ---------------------------------------------------------------------------
# Chunk parsing
# ---------------------------------------------------------------------------

def parse_part(raw: dict[str, Any]) -> ModelPart | None:
    """Classify a raw part dict into exactly one variant (or None if empty)."""
    if raw.get("thought"):
        return ThoughtPart(raw=raw)
    call = raw.get("functionCall")
    if isinstance(call, dict) and call.get("name"):
        args = call.get("args") or {}
        if not isinstance(args, dict):
            args = {"value": args}
        return FunctionCallPart(raw=raw, name=call["name"], arguments=args, call_id=call.get("id"))
    text = raw.get("text")
    if isinstance(text, str):
        return TextPart(raw=raw, text=text)
    if raw.get("thoughtSignature"):
        return ThoughtPart(raw=raw)
    return None


def parse_chunk(payload: Any) -> ModelChunk:
    """Turn one decoded ``streamGenerateContent`` chunk into a ModelChunk."""
    try:
        return _parse_chunk(payload)
    except (ValidationError, AttributeError, KeyError, TypeError) as exc:
        raise MalformedChunk(str(exc)) from exc


def _parse_chunk(payload: Any) -> ModelChunk:
    if not isinstance(payload, dict):
        raise MalformedChunk(f"expected object, got {type(payload).__name__}")

    candidates = payload.get("candidates") or []
    if not isinstance(candidates, list):
        raise MalformedChunk("candidates is not a list")
    if not candidates:
        return ModelChunk()
    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise MalformedChunk("candidate is not an object")

    content = candidate.get("content") or {}
    if not isinstance(content, dict):
        raise MalformedChunk("candidate content is not an object")
    parts: list[ModelPart] = []
    raw_parts = content.get("parts")
    if isinstance(raw_parts, list):
        for raw in raw_parts:
            if not isinstance(raw, dict):
                continue
            part = parse_part(raw)
            if part is not None:
                parts.append(part)

    grounding = candidate.get("groundingMetadata") or {}
    if not isinstance(grounding, dict):
        raise MalformedChunk("groundingMetadata is not an object")
    grounding_chunks = grounding.get("groundingChunks")
    if grounding_chunks and not isinstance(grounding_chunks, list):
        raise MalformedChunk("groundingChunks is not a list")

    citations: list[Citation] = []
    for gc in grounding_chunks or []:
        web = gc.get("web") if isinstance(gc, dict) else None
        if isinstance(web, dict) and web.get("uri") and web.get("title"):
            citations.append(Citation(uri=web["uri"], title=web["title"]))

    return ModelChunk(parts=parts, citations=citations, has_grounding=bool(grounding_chunks))


def decode_sse_line(line: str) -> ModelChunk | None:
    """Decode one SSE line. Returns None for non-data lines."""
    if not line.startswith("data:"):
        return None
    body = line[5:].strip()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedChunk(str(exc)) from exc
    return parse_chunk(payload)


# ---------------------------------------------------------------------------
# Client interface
# ---------------------------------------------------------------------------

class ModelClient(ABC):
    """Abstract streaming model interface.

    ``stream`` yields parsed chunks for a single round. It raises
    ``ModelTransportError`` before yielding anything when the call itself
    fails; malformed chunks are skipped inside the stream.
    """

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelChunk]: ...

    async def close(self) -> None:
        return None


class GeminiModelClient(ModelClient):
    def __init__(
        self,
        api_key: str,
        model: str = "gemini-3-flash-preview",
        api_base: str = DEFAULT_API_BASE,
        thinking_level: str | None = "medium",
        timeout: float = 120.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._api_base = api_base.rstrip("/")
        self._thinking_level = thinking_level
        self.http = http or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self._api_base}/{self._model}:streamGenerateContent"

    def build_body(self, request: ModelRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "system_instruction": {"parts": [{"text": request.system_instruction}]},
            "contents": request.contents,
        }
        tools = request.tools_payload()
        if tools:
            body["tools"] = tools
        if self._thinking_level:
            body["generationConfig"] = {
                "thinkingConfig": {
                    "thinkingLevel": self._thinking_level,
                    "includeThoughts": True,
                },
            }
        return body

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelChunk]:
        try:
            async with self.http.stream(
                "POST",
                self.url,
                params={"alt": "sse", "key": self._api_key},
                json=self.build_body(request),
            ) as response:
                if response.status_code != 200:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise ModelTransportError(
                        f"Model API error: {response.status_code} {detail[:500]}"
                    )
                async for line in response.aiter_lines():
                    try:
                        chunk = decode_sse_line(line)
                    except MalformedChunk as exc:
                        logger.warning("Skipping malformed model chunk: %s", exc)
                        continue
                    if chunk is not None:
                        yield chunk
        except httpx.HTTPError as exc:
            raise ModelTransportError(f"Model API unreachable: {exc}") from exc

    async def close(self) -> None:
        await self.http.aclose()


# ---------------------------------------------------------------------------
# Test mock — deterministic, pre-scripted rounds
# ---------------------------------------------------------------------------

RoundScript = list[dict[str, Any]] | Exception


class MockModelClient(ModelClient):
    """Replays one script per round. Used in unit tests.

    Each script is either a list of raw chunk payloads (run through
    ``parse_chunk`` so malformed entries are skipped like on the wire) or an
    exception raised as a transport failure.
    """

    def __init__(self, rounds: list[RoundScript]) -> None:
        self._rounds = list(rounds)
        self._call_index = 0
        self.requests: list[ModelRequest] = []
        self.chunks_delivered = 0

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelChunk]:
        self.requests.append(request)
        if self._call_index >= len(self._rounds):
            script: RoundScript = [text_payload("[mock responses exhausted]")]
        else:
            script = self._rounds[self._call_index]
        self._call_index += 1

        if isinstance(script, Exception):
            raise script
        for payload in script:
            try:
                chunk = parse_chunk(payload)
            except MalformedChunk as exc:
                logger.warning("Skipping malformed model chunk: %s", exc)
                continue
            self.chunks_delivered += 1
            yield chunk

    @property
    def call_count(self) -> int:
        return self._call_index


def text_payload(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def thought_payload(summary: str = "thinking", signature: str | None = None) -> dict[str, Any]:
    part: dict[str, Any] = {"text": summary, "thought": True}
    if signature:
        part["thoughtSignature"] = signature
    return {"candidates": [{"content": {"role": "model", "parts": [part]}}]}


def function_call_payload(name: str, args: dict[str, Any], call_id: str | None = None) -> dict[str, Any]:
    call: dict[str, Any] = {"name": name, "args": args}
    if call_id:
        call["id"] = call_id
    return {"candidates": [{"content": {"role": "model", "parts": [{"functionCall": call}]}}]}


# ---------------------------------------------------------------------------
# Demo mock — for running without an API key
# ---------------------------------------------------------------------------

class DemoMockModelClient(ModelClient):
    """Demonstrates a two-round turn without a real model.

    Round 1 asks for a stats widget; once a function response is in the
    history it answers with a short text summary.
    """

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelChunk]:
        last = request.contents[-1] if request.contents else {}
        answered = any("functionResponse" in p for p in last.get("parts", []))
        names = {d["name"] for d in request.function_declarations}

        if not answered and "show_stats" in names:
            yield parse_chunk(thought_payload("Planning a summary widget"))
            yield parse_chunk(function_call_payload("show_stats", {
                "title": "Demo summary",
                "stats": [{"label": "Rounds", "value": "2", "trend": "neutral"}],
            }))
            return

        yield parse_chunk(text_payload("This is a demo response. "))
        yield parse_chunk(text_payload("Set GEMINI_API_KEY for real model output."))
