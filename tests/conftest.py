"""Shared fixtures for chat_engine tests."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from chat_engine.engine.models import Conversation, Message, Role
from chat_engine.engine.orchestrator import ChatOrchestrator
from chat_engine.engine.store import InMemoryConversationStore
from chat_engine.prompting.composer import PromptComposer
from chat_engine.tools.registry import ToolRegistry
from chat_engine.tracing.jsonl_tracer import JSONLTraceCollector

ANALYST_INSTRUCTION = "You are a helpful analyst. Summarize the quarter."


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def tool_registry():
    return ToolRegistry()


@pytest.fixture
def composer():
    return PromptComposer()


@pytest.fixture
def trace_collector(tmp_path):
    return JSONLTraceCollector(trace_dir=str(tmp_path / "traces"))


@pytest.fixture
def seed_conversation(store):
    """Put a conversation whose last message is ``text`` into the store."""

    def _seed(
        text: str = "How did revenue move this quarter?",
        conversation_id: str = "conv-1",
        base_instruction: str = ANALYST_INSTRUCTION,
        history: list[Message] | None = None,
        **fields,
    ) -> str:
        messages = list(history or []) + [Message(role=Role.USER, content=text)]
        store.put(Conversation(
            conversation_id=conversation_id,
            base_instruction=base_instruction,
            messages=messages,
            **fields,
        ))
        return conversation_id

    return _seed


@pytest.fixture
def make_orchestrator(store, tool_registry, composer, trace_collector):
    def _make(model_client, **overrides) -> ChatOrchestrator:
        overrides.setdefault("tool_registry", tool_registry)
        return ChatOrchestrator(
            store=store,
            composer=composer,
            model_client=model_client,
            trace_collector=trace_collector,
            **overrides,
        )

    return _make


# ---------------------------------------------------------------------------
# Scripted MCP server for httpx_mock callbacks
# ---------------------------------------------------------------------------

MCP_URL = "http://tools.test/mcp"


class FakeMCPServer:
    """Answers JSON-RPC posts, echoing request ids; records what it saw."""

    def __init__(self) -> None:
        self.tool_pages: list[list[dict[str, Any]]] = [[]]
        self.call_results: dict[str, dict[str, Any]] = {}
        self.rpc_errors: dict[str, dict[str, Any]] = {}
        self.fail_methods: set[str] = set()
        self.methods: list[str] = []
        self.session_headers: list[str | None] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            self.methods.append("DELETE")
            return httpx.Response(204)

        msg = json.loads(request.content)
        method = msg["method"]
        self.methods.append(method)
        self.session_headers.append(request.headers.get("Mcp-Session-Id"))

        if method in self.fail_methods:
            return httpx.Response(500, text="server exploded")
        if "id" not in msg:
            return httpx.Response(202)

        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg["id"]}
        if method in self.rpc_errors:
            reply["error"] = self.rpc_errors[method]
        elif method == "initialize":
            reply["result"] = {"protocolVersion": "2025-03-26", "serverInfo": {"name": "fake"}}
        elif method == "tools/list":
            cursor = (msg.get("params") or {}).get("cursor")
            index = int(cursor) if cursor else 0
            reply["result"] = {"tools": self.tool_pages[index]}
            if index + 1 < len(self.tool_pages):
                reply["result"]["nextCursor"] = str(index + 1)
        elif method == "tools/call":
            reply["result"] = self.call_results[msg["params"]["name"]]
        return httpx.Response(200, json=reply, headers={"Mcp-Session-Id": "sess-1"})


@pytest.fixture
def mcp_server(httpx_mock):
    server = FakeMCPServer()
    httpx_mock.add_callback(server, url=MCP_URL, is_reusable=True)
    return server
