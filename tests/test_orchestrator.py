"""Tests for ChatOrchestrator — round loop, tool round-trips, failure and cancellation."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from chat_engine.engine.model_client import (
    MockModelClient,
    ModelTransportError,
    function_call_payload,
    text_payload,
    thought_payload,
)
from chat_engine.engine.models import (
    ChatTurnRequest,
    GraphMatches,
    Message,
    Role,
    StreamEventType,
    ToolInvocationResult,
)
from chat_engine.retrieval.gateway import RetrievalGateway
from chat_engine.retrieval.in_memory import InMemoryChunkStore
from chat_engine.retrieval.interface import Embedder, GraphClient, RetrievalError, StoredChunk
from chat_engine.tools.mcp_session import MCPSession
from chat_engine.tools.registry import UNAVAILABLE_TEXT, ToolRegistry

MCP_URL = "http://tools.test/mcp"


# -- helpers ----------------------------------------------------------------

def of_type(events, event_type):
    return [e.data for e in events if e.type == event_type]


async def run_turn(orchestrator, conversation_id, **kwargs):
    request = ChatTurnRequest(conversation_id=conversation_id)
    return [e async for e in orchestrator.handle(request, **kwargs)]


def grounded_payload(text: str, sources: list[tuple[str, str]]) -> dict:
    return {"candidates": [{
        "content": {"role": "model", "parts": [{"text": text}]},
        "groundingMetadata": {
            "groundingChunks": [{"web": {"uri": uri, "title": title}} for uri, title in sources],
        },
    }]}


def assert_tool_events_paired(events):
    seen: dict[str, list[str]] = {}
    for data in of_type(events, StreamEventType.TOOL_CALL):
        seen.setdefault(data["toolCallId"], []).append(data["status"])
    for call_id, statuses in seen.items():
        assert statuses == ["running", "complete"], call_id


class FixedEmbedder(Embedder):
    async def embed(self, text: str) -> list[float]:
        return [1.0, 0.0]


class FailingGraph(GraphClient):
    async def related(self, query_text: str, entities: list[str]) -> GraphMatches:
        raise RetrievalError("neo4j down")


# -- tests ------------------------------------------------------------------

class TestTextOnlyTurn:
    async def test_streams_text_and_persists(self, make_orchestrator, seed_conversation, store):
        mock = MockModelClient([[text_payload("Revenue rose "), text_payload("8%.")]])
        cid = seed_conversation()

        events = await run_turn(make_orchestrator(mock), cid)
        types = [e.type for e in events]

        assert types[0] == StreamEventType.INTENT
        assert types[-1] == StreamEventType.DONE
        assert types.count(StreamEventType.DONE) == 1
        assert of_type(events, StreamEventType.TEXT) == ["Revenue rose ", "8%."]
        assert of_type(events, StreamEventType.STATUS) == ["generating"]
        assert of_type(events, StreamEventType.ROUND) == [
            {"current": 1, "maxRounds": 5, "status": "started"},
            {"current": 1, "maxRounds": 5, "status": "complete", "toolCalls": []},
        ]
        assert mock.call_count == 1

        saved = store.messages(cid)[-1]
        assert saved.role == Role.ASSISTANT
        assert saved.content == "Revenue rose 8%."
        assert saved.tool_calls == []

    async def test_empty_answer_is_still_persisted(self, make_orchestrator, seed_conversation, store):
        mock = MockModelClient([[{"usageMetadata": {"totalTokenCount": 1}}]])
        cid = seed_conversation()

        events = await run_turn(make_orchestrator(mock), cid)

        assert events[-1].type == StreamEventType.DONE
        saved = store.messages(cid)
        assert len(saved) == 2
        assert saved[-1].role == Role.ASSISTANT
        assert saved[-1].content == ""

    async def test_done_is_wire_terminator(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([[text_payload("ok")]])
        events = await run_turn(make_orchestrator(mock), seed_conversation())
        assert events[-1].sse_frame() == "data: [DONE]\n\n"
        assert events[0].sse_frame().startswith('data: {"intent": ')

    async def test_history_maps_roles_and_drops_system(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([[text_payload("ok")]])
        cid = seed_conversation(
            text="And the next quarter?",
            history=[
                Message(role=Role.SYSTEM, content="legacy system note"),
                Message(role=Role.USER, content="How was Q2?"),
                Message(role=Role.ASSISTANT, content="Q2 was flat."),
            ],
        )
        await run_turn(make_orchestrator(mock), cid)

        contents = mock.requests[0].contents
        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[-1]["parts"] == [{"text": "And the next quarter?"}]

    async def test_request_carries_instruction_and_declarations(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([[text_payload("ok")]])
        events = await run_turn(make_orchestrator(mock), seed_conversation())

        request = mock.requests[0]
        assert request.system_instruction.startswith("You are a helpful analyst.")
        names = {d["name"] for d in request.function_declarations}
        assert {"show_chart", "ask_questions", "generate_document"} <= names
        assert not request.use_search_grounding

        enhanced = [d for d in of_type(events, StreamEventType.DATA_SOURCE) if d["type"] == "prompt_enhanced"]
        assert enhanced and enhanced[0]["status"] == "complete"

    async def test_search_grounding_replaces_declarations(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([[text_payload("ok")]])
        orchestrator = make_orchestrator(mock, tool_registry=ToolRegistry(search_grounding=True))
        await run_turn(orchestrator, seed_conversation())

        request = mock.requests[0]
        assert request.use_search_grounding
        assert request.function_declarations == []
        assert request.tools_payload() == [{"google_search": {}}]


class TestToolRoundTrip:
    async def test_client_rendered_tool(self, make_orchestrator, seed_conversation, store):
        args = {"title": "Revenue", "type": "bar", "data": [{"q": "Q1", "v": 10}], "xKey": "q", "yKeys": ["v"]}
        mock = MockModelClient([
            [
                thought_payload("Choosing a chart", signature="sig-1"),
                function_call_payload("show_chart", args, call_id="fc-1"),
            ],
            [text_payload("Here is the chart.")],
        ])
        cid = seed_conversation()
        events = await run_turn(make_orchestrator(mock), cid)

        running, complete = of_type(events, StreamEventType.TOOL_CALL)
        assert running == {
            "toolCallId": "fc-1", "name": "show_chart", "args": args,
            "isFrontendTool": True, "status": "running",
        }
        assert complete["status"] == "complete"
        assert complete["result"] == args
        assert of_type(events, StreamEventType.STATUS) == ["thinking", "tool_calling", "generating"]
        assert of_type(events, StreamEventType.TEXT) == ["Here is the chart."]
        assert of_type(events, StreamEventType.ROUND)[1]["toolCalls"] == [
            {"name": "show_chart", "isFrontendTool": True},
        ]

        saved = store.messages(cid)[-1]
        assert saved.content == "Here is the chart."
        assert [tc.name for tc in saved.tool_calls] == ["show_chart"]
        assert saved.tool_calls[0].client_rendered

    async def test_replays_parts_verbatim_with_function_responses(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([
            [
                thought_payload("Choosing a chart", signature="sig-1"),
                function_call_payload("show_chart", {"title": "t"}, call_id="fc-1"),
            ],
            [text_payload("done")],
        ])
        await run_turn(make_orchestrator(mock), seed_conversation())

        contents = mock.requests[1].contents
        assert contents[-2] == {"role": "model", "parts": [
            {"text": "Choosing a chart", "thought": True, "thoughtSignature": "sig-1"},
            {"functionCall": {"name": "show_chart", "args": {"title": "t"}, "id": "fc-1"}},
        ]}
        assert contents[-1] == {"role": "user", "parts": [
            {"functionResponse": {
                "name": "show_chart",
                "id": "fc-1",
                "response": {"result": "Chart displayed to the user."},
            }},
        ]}
        # the first request is not mutated by later rounds
        assert len(mock.requests[0].contents) == 1

    async def test_proxied_tool_without_connection_is_unavailable(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([
            [function_call_payload("lookup_policy", {"query": "travel"})],
            [text_payload("No policy data right now.")],
        ])
        events = await run_turn(make_orchestrator(mock), seed_conversation())

        _, complete = of_type(events, StreamEventType.TOOL_CALL)
        assert complete["toolCallId"] == "call_0_0"
        assert complete["isFrontendTool"] is False
        assert complete["result"] == UNAVAILABLE_TEXT
        assert of_type(events, StreamEventType.ERROR) == []
        assert mock.call_count == 2
        response = mock.requests[1].contents[-1]["parts"][0]["functionResponse"]
        assert "id" not in response
        assert response["response"] == {"result": UNAVAILABLE_TEXT}

    async def test_bad_tool_listing_still_finishes(self, make_orchestrator, seed_conversation, mcp_server):
        mcp_server.tool_pages = [[{"name": "lookup", "description": None}, 42]]
        registry = ToolRegistry(session_factory=lambda: MCPSession(MCP_URL))
        mock = MockModelClient([[text_payload("Answer without tools.")]])

        events = await run_turn(make_orchestrator(mock, tool_registry=registry), seed_conversation())

        assert of_type(events, StreamEventType.TEXT) == ["Answer without tools."]
        assert of_type(events, StreamEventType.ERROR) == []
        assert [e.type for e in events].count(StreamEventType.DONE) == 1
        assert events[-1].type == StreamEventType.DONE
        names = [d["name"] for d in mock.requests[0].function_declarations]
        assert "lookup" in names

    async def test_several_calls_in_one_round(self, make_orchestrator, seed_conversation, store):
        two_calls = {"candidates": [{"content": {"role": "model", "parts": [
            {"functionCall": {"name": "show_stats", "args": {"title": "a"}}},
            {"functionCall": {"name": "show_plan", "args": {"title": "b"}}},
        ]}}]}
        mock = MockModelClient([[two_calls], [text_payload("summary")]])
        cid = seed_conversation()
        events = await run_turn(make_orchestrator(mock), cid)

        assert_tool_events_paired(events)
        ids = [d["toolCallId"] for d in of_type(events, StreamEventType.TOOL_CALL)]
        assert ids == ["call_0_0", "call_0_0", "call_0_1", "call_0_1"]
        parts = mock.requests[1].contents[-1]["parts"]
        assert [p["functionResponse"]["name"] for p in parts] == ["show_stats", "show_plan"]
        assert len(store.messages(cid)[-1].tool_calls) == 2


class TestRoundCeiling:
    async def test_sixth_round_never_starts(self, make_orchestrator, seed_conversation, store):
        rounds = [
            [text_payload(f"step {i}. "), function_call_payload("show_stats", {"title": f"r{i}"})]
            for i in range(8)
        ]
        mock = MockModelClient(rounds)
        cid = seed_conversation()
        events = await run_turn(make_orchestrator(mock), cid)
        types = [e.type for e in events]

        assert mock.call_count == 5
        started = [r for r in of_type(events, StreamEventType.ROUND) if r["status"] == "started"]
        assert [r["current"] for r in started] == [1, 2, 3, 4, 5]
        assert StreamEventType.ERROR not in types
        assert types[-1] == StreamEventType.DONE
        assert types.count(StreamEventType.DONE) == 1
        assert_tool_events_paired(events)

        saved = store.messages(cid)[-1]
        assert saved.content == "step 0. step 1. step 2. step 3. step 4. "
        assert len(saved.tool_calls) == 5

    async def test_configured_ceiling(self, make_orchestrator, seed_conversation):
        rounds = [[function_call_payload("show_stats", {"title": "x"})] for _ in range(4)]
        mock = MockModelClient(rounds)
        await run_turn(make_orchestrator(mock, max_rounds=2), seed_conversation())
        assert mock.call_count == 2


class TestFailures:
    async def test_transport_failure_emits_error_then_done(self, make_orchestrator, seed_conversation, store):
        mock = MockModelClient([ModelTransportError("Model API error: 503 unavailable")])
        cid = seed_conversation()
        events = await run_turn(make_orchestrator(mock), cid)
        types = [e.type for e in events]

        assert of_type(events, StreamEventType.ERROR) == ["Model API error: 503 unavailable"]
        assert types[-2:] == [StreamEventType.ERROR, StreamEventType.DONE]
        assert len(store.messages(cid)) == 1  # nothing persisted

    async def test_failure_after_tool_result_persists_partial_turn(
        self, make_orchestrator, seed_conversation, store
    ):
        mock = MockModelClient([
            [function_call_payload("show_plan", {"title": "Rollout"}, call_id="fc-9")],
            ModelTransportError("Model API unreachable: reset"),
        ])
        cid = seed_conversation()
        events = await run_turn(make_orchestrator(mock), cid)

        assert len(of_type(events, StreamEventType.ERROR)) == 1
        assert events[-1].type == StreamEventType.DONE
        saved = store.messages(cid)[-1]
        assert saved.content == "(tool response)"
        assert [tc.tool_call_id for tc in saved.tool_calls] == ["fc-9"]

    async def test_unexpected_stream_error_is_fatal_not_raised(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([RuntimeError("kaput")])
        events = await run_turn(make_orchestrator(mock), seed_conversation())
        assert of_type(events, StreamEventType.ERROR) == ["Model call failed: kaput"]
        assert events[-1].type == StreamEventType.DONE

    async def test_malformed_chunks_are_skipped(self, make_orchestrator, seed_conversation):
        mock = MockModelClient([[
            "garbage",
            {"candidates": ["not-an-object"]},
            {"candidates": [{"content": "oops"}]},
            {"candidates": {"first": {}}},
            text_payload("still here"),
        ]])
        events = await run_turn(make_orchestrator(mock), seed_conversation())

        assert of_type(events, StreamEventType.TEXT) == ["still here"]
        assert of_type(events, StreamEventType.ERROR) == []
        assert mock.chunks_delivered == 1


class TestCitations:
    async def test_sources_deduplicated_by_uri(self, make_orchestrator, seed_conversation, store):
        mock = MockModelClient([[
            grounded_payload("Rates rose ", [("https://a.example", "A"), ("https://b.example", "B")]),
            grounded_payload("twice.", [("https://a.example", "A again")]),
        ]])
        cid = seed_conversation()
        events = await run_turn(make_orchestrator(mock), cid)
        types = [e.type for e in events]

        assert of_type(events, StreamEventType.SOURCES) == [[
            {"uri": "https://a.example", "title": "A"},
            {"uri": "https://b.example", "title": "B"},
        ]]
        assert types[-2:] == [StreamEventType.SOURCES, StreamEventType.DONE]
        assert of_type(events, StreamEventType.STATUS).count("searching") == 1
        assert [c.uri for c in store.messages(cid)[-1].sources] == ["https://a.example", "https://b.example"]


class TestCancellation:
    async def test_cancel_event_stops_stream_without_persisting(
        self, make_orchestrator, seed_conversation, store
    ):
        mock = MockModelClient([[text_payload("one "), text_payload("two "), text_payload("three")]])
        cid = seed_conversation()
        cancel = asyncio.Event()

        events = []
        async for event in make_orchestrator(mock).handle(ChatTurnRequest(conversation_id=cid), cancel=cancel):
            events.append(event)
            if event.type == StreamEventType.TEXT:
                cancel.set()

        assert of_type(events, StreamEventType.TEXT) == ["one "]
        assert StreamEventType.DONE not in [e.type for e in events]
        assert len(store.messages(cid)) == 1

    async def test_closed_generator_never_persists(
        self, make_orchestrator, seed_conversation, store, tmp_path
    ):
        mock = MockModelClient([[text_payload("partial "), text_payload("answer")]])
        cid = seed_conversation()
        request = ChatTurnRequest(conversation_id=cid)

        gen = make_orchestrator(mock).handle(request)
        async for event in gen:
            if event.type == StreamEventType.TEXT:
                break
        await gen.aclose()

        assert len(store.messages(cid)) == 1
        trace_file = Path(tmp_path / "traces" / f"{request.trace_id}.jsonl")
        records = [json.loads(line) for line in trace_file.read_text().splitlines()]
        assert records[0]["event"] == "turn_start"
        assert records[-1]["event"] == "turn_done"
        assert records[-1]["outcome"] == "cancelled"


class TestRetrievalAndIntent:
    async def test_graph_failure_still_composes_vector_context(
        self, make_orchestrator, seed_conversation, store
    ):
        chunks = InMemoryChunkStore([
            StoredChunk(id="c1", document_id="doc-1", content="Q3 revenue grew 8% on services.",
                        json_path="$.sections[2]", embedding=[1.0, 0.0]),
            StoredChunk(id="c2", document_id="doc-2", content="Headcount was flat.",
                        embedding=[0.6, 0.8]),
        ])
        gateway = RetrievalGateway(FixedEmbedder(), chunks, FailingGraph())
        mock = MockModelClient([[text_payload("Revenue grew 8%.")]])
        cid = seed_conversation(retrieval_enabled=True)

        events = await run_turn(make_orchestrator(mock, retrieval=gateway), cid)
        sources = of_type(events, StreamEventType.DATA_SOURCE)

        assert [d["type"] for d in sources] == ["vector_search", "knowledge_graph", "prompt_enhanced"]
        assert sources[0]["status"] == "complete"
        assert sources[0]["resultCount"] == 2
        assert sources[0]["topScore"] == 1.0
        assert sources[1] == {"type": "knowledge_graph", "status": "error", "error": "neo4j down"}

        instruction = mock.requests[0].system_instruction
        assert "### Relevant document excerpts" in instruction
        assert "Q3 revenue grew 8% on services." in instruction
        assert "Related entities" not in instruction

        saved = store.messages(cid)[-1]
        assert [(d.type, d.count) for d in saved.data_sources] == [("vector_search", 2)]

    async def test_retrieval_skipped_when_disabled(self, make_orchestrator, seed_conversation):
        gateway = RetrievalGateway(FixedEmbedder(), InMemoryChunkStore(), FailingGraph())
        mock = MockModelClient([[text_payload("ok")]])
        events = await run_turn(make_orchestrator(mock, retrieval=gateway), seed_conversation())
        types = [d["type"] for d in of_type(events, StreamEventType.DATA_SOURCE)]
        assert "vector_search" not in types

    async def test_answers_to_clarifying_questions_continue_drafting(
        self, make_orchestrator, seed_conversation
    ):
        asked = Message(
            role=Role.ASSISTANT,
            content="(tool response)",
            tool_calls=[ToolInvocationResult(
                tool_call_id="fc-1", name="ask_questions", arguments={}, client_rendered=True,
                result_placeholder="Questions displayed to the user.",
            )],
        )
        cid = seed_conversation(
            text="Budget is 50k and the team is five people.",
            history=[Message(role=Role.USER, content="Draft a statement of work for the migration"), asked],
        )
        mock = MockModelClient([[function_call_payload("generate_document", {"title": "SOW"})], [text_payload("Drafted.")]])
        events = await run_turn(make_orchestrator(mock), cid)

        intent = of_type(events, StreamEventType.INTENT)[0]
        assert intent["isContinuation"] is True
        assert intent["isDocumentDrafting"] is True
        instruction = mock.requests[0].system_instruction
        assert "## Visual Tools" not in instruction
        assert instruction.rstrip().endswith("retrieved context.")
