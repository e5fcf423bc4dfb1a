"""Tool registry and per-turn router.

Two tool universes share one declaration list: fixed client-rendered tools
and proxied tools discovered over MCP. The router picks a ``ToolHandler`` by
name; callers never need to know which implementation served a call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from pydantic import ValidationError

from chat_engine.engine.models import (
    ToolDeclaration,
    ToolInvocationRequest,
    ToolInvocationResult,
)
from chat_engine.tools.client_tools import CLIENT_TOOLS, ClientToolDef
from chat_engine.tools.mcp_session import MCPError, MCPSession
from chat_engine.tracing.interface import TraceCollector

logger = logging.getLogger(__name__)

UNAVAILABLE_TEXT = "This tool is currently unavailable. Continue without it."

# Keys the model service accepts in a function parameter schema.
_SCHEMA_KEYS = {
    "type", "format", "description", "nullable", "enum", "items", "properties",
    "required", "minItems", "maxItems", "minimum", "maximum", "anyOf",
    "propertyOrdering",
}

SessionFactory = Callable[[], MCPSession]


def to_model_schema(schema: Any) -> Any:
    """Strip JSON-Schema keywords the model service rejects ($schema, additionalProperties, ...)."""
    if isinstance(schema, list):
        return [to_model_schema(s) for s in schema]
    if not isinstance(schema, dict):
        return schema
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: to_model_schema(sub) for name, sub in value.items()}
        elif key in ("items", "anyOf"):
            cleaned[key] = to_model_schema(value)
        else:
            cleaned[key] = value
    return cleaned


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class ToolHandler(ABC):
    client_rendered: bool = False

    @abstractmethod
    async def invoke(self, request: ToolInvocationRequest) -> ToolInvocationResult: ...


class ClientRenderedHandler(ToolHandler):
    """Returns the tool's placeholder immediately; the arguments are the real payload."""

    client_rendered = True

    def __init__(self, tool: ClientToolDef) -> None:
        self._tool = tool

    async def invoke(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        return ToolInvocationResult(
            tool_call_id=request.tool_call_id,
            name=request.name,
            arguments=request.arguments,
            result_placeholder=self._tool.placeholder,
            client_rendered=True,
        )


class ProxiedConnection:
    """Lazily opens the turn's MCP session, at most once.

    If setup fails the failure sticks for the rest of the turn.
    """

    def __init__(self, factory: SessionFactory | None) -> None:
        self._factory = factory
        self._session: MCPSession | None = None
        self._attempted = False
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self._factory is not None

    async def get(self) -> MCPSession | None:
        async with self._lock:
            if self._attempted:
                return self._session
            self._attempted = True
            if self._factory is None:
                return None
            session = self._factory()
            try:
                await session.initialize()
            except MCPError as exc:
                logger.warning("MCP session setup failed: %s", exc)
                await session.close()
                return None
            self._session = session
            return session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class ProxiedHandler(ToolHandler):
    def __init__(self, connection: ProxiedConnection) -> None:
        self._connection = connection

    async def invoke(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        session = await self._connection.get()
        if session is None:
            text = UNAVAILABLE_TEXT
        else:
            try:
                text = await session.call_tool(request.name, request.arguments)
            except MCPError as exc:
                logger.warning("tool=%s proxied call failed: %s", request.name, exc)
                text = f"Error calling {request.name}: {exc}"
        return ToolInvocationResult(
            tool_call_id=request.tool_call_id,
            name=request.name,
            arguments=request.arguments,
            result_text=text,
        )


# ---------------------------------------------------------------------------
# Registry (process-wide) and router (per turn)
# ---------------------------------------------------------------------------

class ToolRegistry:
    """Process-wide tool catalogue.

    Holds the fixed client-rendered set and caches the proxied declarations
    after the first successful discovery.
    """

    def __init__(
        self,
        client_tools: tuple[ClientToolDef, ...] = CLIENT_TOOLS,
        session_factory: SessionFactory | None = None,
        excluded_tool: str | None = "web_search",
        search_grounding: bool = False,
    ) -> None:
        self._client_tools: dict[str, ClientToolDef] = {t.name: t for t in client_tools}
        self._session_factory = session_factory
        self._excluded = excluded_tool
        self.search_grounding = search_grounding
        self._proxied: list[ToolDeclaration] | None = None
        self._discovery_lock = asyncio.Lock()
        for tool in client_tools:
            logger.info("Registered client-rendered tool %s", tool.name)

    def is_client_rendered(self, name: str) -> bool:
        return name in self._client_tools

    def client_tool(self, name: str) -> ClientToolDef | None:
        return self._client_tools.get(name)

    @property
    def client_declarations(self) -> list[ToolDeclaration]:
        return [t.declaration for t in self._client_tools.values()]

    @property
    def cached_proxied(self) -> list[ToolDeclaration] | None:
        return self._proxied

    async def discover(self, connection: ProxiedConnection) -> list[ToolDeclaration]:
        """List proxied tools through ``connection``; cache on success."""
        async with self._discovery_lock:
            if self._proxied is not None:
                return self._proxied
            session = await connection.get()
            if session is None:
                return []
            try:
                raw_tools = await session.list_tools()
                declarations = [d for d in map(self._declaration, raw_tools) if d is not None]
            except MCPError as exc:
                logger.warning("MCP tool discovery failed: %s", exc)
                return []
            except Exception:
                logger.exception("MCP tool discovery failed")
                return []
            self._proxied = declarations
            logger.info("Discovered %d proxied tool(s)", len(declarations))
            return declarations

    def _declaration(self, tool: Any) -> ToolDeclaration | None:
        if not isinstance(tool, dict):
            logger.warning("Skipping non-object tool entry: %r", tool)
            return None
        name = tool.get("name")
        if not isinstance(name, str) or not name:
            return None
        if name == self._excluded or name in self._client_tools:
            return None
        try:
            return ToolDeclaration(
                name=name,
                description=tool.get("description") or "",
                parameters=to_model_schema(tool.get("inputSchema") or {"type": "object"}),
            )
        except ValidationError as exc:
            logger.warning("Skipping proxied tool %r with invalid declaration: %s", name, exc)
            return None

    def open_turn(self, trace: TraceCollector | None = None, trace_id: str | None = None) -> "ToolRouter":
        return ToolRouter(self, ProxiedConnection(self._session_factory), trace, trace_id)


class ToolRouter:
    """Per-turn view of the registry. ``resolve`` never raises."""

    def __init__(
        self,
        registry: ToolRegistry,
        connection: ProxiedConnection,
        trace: TraceCollector | None = None,
        trace_id: str | None = None,
    ) -> None:
        self._registry = registry
        self._connection = connection
        self._proxied_handler = ProxiedHandler(connection)
        self._trace = trace
        self._trace_id = trace_id
        self._declarations: list[ToolDeclaration] | None = None

    @property
    def search_grounding(self) -> bool:
        return self._registry.search_grounding

    async def declarations(self) -> list[ToolDeclaration]:
        """Client-rendered + proxied declarations, discovered at most once per turn."""
        if self._declarations is None:
            proxied: list[ToolDeclaration] = []
            if self._connection.configured:
                proxied = await self._registry.discover(self._connection)
            self._declarations = self._registry.client_declarations + proxied
        return self._declarations

    async def function_declarations(self) -> list[dict[str, Any]]:
        if self.search_grounding:
            return []
        return [d.to_function_declaration() for d in await self.declarations()]

    def is_client_rendered(self, name: str) -> bool:
        return self._registry.is_client_rendered(name)

    def handler_for(self, name: str) -> ToolHandler:
        tool = self._registry.client_tool(name)
        if tool is not None:
            return ClientRenderedHandler(tool)
        return self._proxied_handler

    async def resolve(self, request: ToolInvocationRequest) -> ToolInvocationResult:
        handler = self.handler_for(request.name)
        t0 = time.time()
        try:
            result = await handler.invoke(request)
            status = "ok"
        except Exception as exc:
            logger.exception("tool=%s handler raised", request.name)
            result = ToolInvocationResult(
                tool_call_id=request.tool_call_id,
                name=request.name,
                arguments=request.arguments,
                result_text=f"Error calling {request.name}: {exc}",
                client_rendered=handler.client_rendered,
            )
            status = "error"
        latency = time.time() - t0
        logger.info(
            "tool=%s client_rendered=%s latency=%.3fs %s",
            request.name, handler.client_rendered, latency, status,
        )
        if self._trace and self._trace_id:
            await self._trace.emit(self._trace_id, "tool_exec", {
                "tool": request.name,
                "client_rendered": handler.client_rendered,
                "latency_ms": round(latency * 1000, 2),
                "status": status,
            })
        return result

    async def close(self) -> None:
        await self._connection.close()
