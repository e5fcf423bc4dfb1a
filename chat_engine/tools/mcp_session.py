"""MCP client over Streamable HTTP — one session per chat turn."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import httpx

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"
CLIENT_INFO = {"name": "chat-engine", "version": "0.1.0"}


class MCPError(Exception):
    """Transport or JSON-RPC level failure talking to the tool server."""


class MCPSession:
    """initialize → notifications/initialized → tools/list → tools/call*.

    The session id returned by ``initialize`` (``Mcp-Session-Id`` header) is
    attached to every later request. Responses may come back as plain JSON or
    as a short SSE stream; both are accepted.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.session_id: str | None = None
        self.server_info: dict[str, Any] = {}
        self._extra_headers = headers or {}
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    # -- protocol ----------------------------------------------------------

    async def initialize(self) -> dict[str, Any]:
        result = await self._call("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self._notify("notifications/initialized")
        logger.info("MCP session opened url=%s session=%s", self.url, self.session_id)
        return result

    async def list_tools(self) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = await self._call("tools/list", params)
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool and flatten its content blocks to text.

        A tool-level failure (``isError``) is returned as text like any other
        result; only transport and JSON-RPC errors raise.
        """
        result = await self._call("tools/call", {"name": name, "arguments": arguments})
        text = flatten_content(result.get("content", []))
        if result.get("isError"):
            logger.warning("MCP tool %s reported an error: %s", name, text[:200])
            return text or f"Tool '{name}' failed without a message."
        if not text and result.get("structuredContent") is not None:
            text = json.dumps(result["structuredContent"], default=str)
        return text

    async def close(self) -> None:
        if self.session_id:
            try:
                await self.http.delete(self.url, headers=self._headers())
            except httpx.HTTPError as exc:
                logger.debug("MCP session delete failed: %s", exc)
        if self._owns_http:
            await self.http.aclose()
        self.session_id = None

    # -- transport ---------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self._extra_headers,
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _notify(self, method: str) -> None:
        msg = {"jsonrpc": "2.0", "method": method}
        try:
            resp = await self.http.post(self.url, json=msg, headers=self._headers())
        except httpx.HTTPError as exc:
            raise MCPError(f"{method} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise MCPError(f"{method} failed: HTTP {resp.status_code}")

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        mid = str(uuid.uuid4())
        req = {"jsonrpc": "2.0", "id": mid, "method": method, "params": params}
        try:
            resp = await self.http.post(self.url, json=req, headers=self._headers())
        except httpx.HTTPError as exc:
            raise MCPError(f"{method} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise MCPError(f"{method} failed: HTTP {resp.status_code} {resp.text[:200]}")

        session_id = resp.headers.get(SESSION_HEADER)
        if session_id:
            self.session_id = session_id

        msg = _find_response(resp, mid)
        if msg is None:
            raise MCPError(f"{method}: no JSON-RPC response for request {mid}")

        err = msg.get("error")
        if err is not None:
            # error may be an object or a bare string
            text = err if isinstance(err, str) else err.get("message", str(err))
            raise MCPError(f"{method} error: {text}")
        result = msg.get("result")
        return result if isinstance(result, dict) else {}


def _find_response(resp: httpx.Response, mid: str) -> dict[str, Any] | None:
    content_type = resp.headers.get("content-type", "")
    if content_type.startswith("text/event-stream"):
        candidates = []
        for line in resp.text.splitlines():
            if not line.startswith("data:"):
                continue
            try:
                candidates.append(json.loads(line[5:].strip()))
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON SSE line from MCP server")
    else:
        try:
            body = resp.json()
        except ValueError as exc:
            raise MCPError(f"invalid JSON from MCP server: {exc}") from exc
        candidates = body if isinstance(body, list) else [body]

    for msg in candidates:
        if isinstance(msg, dict) and msg.get("id") == mid:
            return msg
    return None


def flatten_content(blocks: list[dict[str, Any]]) -> str:
    texts = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "resource":
            resource = block.get("resource") or {}
            texts.append(resource.get("text") or resource.get("uri", ""))
        else:
            texts.append(f"[{block.get('type', 'content')} omitted]")
    return "\n".join(t for t in texts if t)
