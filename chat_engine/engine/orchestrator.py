"""ChatOrchestrator — the bounded multi-round turn loop."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator

from chat_engine.engine.accumulator import TurnAccumulator
from chat_engine.engine.model_client import ModelClient, ModelRequest, ModelTransportError
from chat_engine.engine.models import (
    ChatTurnRequest,
    DataSourceSummary,
    FunctionCallPart,
    Message,
    ModelChunk,
    Role,
    RoundState,
    RoundStatus,
    StreamEvent,
    StreamEventType,
    TextPart,
    ThoughtPart,
    ToolInvocationRequest,
    ToolInvocationResult,
)
from chat_engine.engine.store import ConversationStore
from chat_engine.prompting.composer import PromptComposer
from chat_engine.retrieval.gateway import RetrievalGateway, format_context, graph_event, vector_event
from chat_engine.tools.registry import ToolRegistry
from chat_engine.tracing.interface import NullTraceCollector, TraceCollector

logger = logging.getLogger(__name__)


def to_model_history(messages: list[Message]) -> list[dict[str, Any]]:
    """Conversation log -> model ``contents``; system messages are dropped."""
    contents = []
    for msg in messages:
        if msg.role == Role.SYSTEM or not msg.content:
            continue
        role = "model" if msg.role == Role.ASSISTANT else "user"
        contents.append({"role": role, "parts": [{"text": msg.content}]})
    return contents


def function_response(
    request: ToolInvocationRequest,
    result: ToolInvocationResult,
    echo_id: bool,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "name": request.name,
        "response": {"result": result.model_output()},
    }
    if echo_id:
        response["id"] = request.tool_call_id
    return {"functionResponse": response}


class ChatOrchestrator:
    """Public API: ``async for event in orchestrator.handle(request): ...``

    Event order per turn::

        intent, data_source*, (round started, status/text/tool_call*, round complete)*,
        sources?, done

    ``done`` is always the last event unless the turn is cancelled, in which
    case nothing further is emitted and nothing is persisted.
    """

    MAX_ROUNDS: int = 5

    def __init__(
        self,
        store: ConversationStore,
        tool_registry: ToolRegistry,
        composer: PromptComposer,
        model_client: ModelClient,
        trace_collector: TraceCollector | None = None,
        retrieval: RetrievalGateway | None = None,
        max_rounds: int | None = None,
    ) -> None:
        self._store = store
        self._tools = tool_registry
        self._composer = composer
        self._model = model_client
        self._trace = trace_collector or NullTraceCollector()
        self._retrieval = retrieval
        self.max_rounds = max(1, max_rounds or self.MAX_ROUNDS)

    @property
    def store(self) -> ConversationStore:
        return self._store

    # ------------------------------------------------------------------
    # Public handle
    # ------------------------------------------------------------------

    async def handle(
        self,
        request: ChatTurnRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        trace_id = request.trace_id
        t_start = time.time()

        conversation = await self._store.get(request.conversation_id)
        await self._trace.emit(trace_id, "turn_start", {
            "conversation_id": request.conversation_id,
            "subject_id": request.subject_id,
            "history_len": len(conversation.messages),
        })

        acc = TurnAccumulator()
        router = self._tools.open_turn(self._trace, trace_id)
        outcome = "cancelled"
        round_index = 0

        try:
            # 1. Intent ----------------------------------------------------
            signals = self._composer.signals(conversation.messages)
            intent = self._composer.classify(signals)
            await self._trace.emit(trace_id, "intent", intent.payload())
            yield self._event(StreamEventType.INTENT, intent.payload(), trace_id)

            # 2. Retrieval -------------------------------------------------
            context = ""
            query = signals.latest_user_message
            if conversation.retrieval_enabled and self._retrieval is not None and query:
                result = await self._retrieval.search(query, include_graph=conversation.include_graph)
                if self._cancelled(cancel):
                    return
                context = format_context(result)
                await self._trace.emit(trace_id, "retrieve", {
                    "vector_count": len(result.vector_matches),
                    "vector_error": result.vector_error,
                    "graph_error": result.graph_error,
                    "vector_ms": result.vector_duration_ms,
                    "graph_ms": result.graph_duration_ms,
                })
                vector = vector_event(result)
                yield self._event(StreamEventType.DATA_SOURCE, vector, trace_id)
                if result.vector_error is None:
                    acc.data_sources.append(DataSourceSummary(
                        type="vector_search",
                        count=len(result.vector_matches),
                        top_score=vector["topScore"],
                    ))
                graph = graph_event(result)
                if graph is not None:
                    yield self._event(StreamEventType.DATA_SOURCE, graph, trace_id)
                    if result.graph_error is None:
                        acc.data_sources.append(DataSourceSummary(
                            type="knowledge_graph", count=graph["nodeCount"],
                        ))

            # 3. Compose ---------------------------------------------------
            composed = self._composer.compose(
                conversation.base_instruction, context, signals, intent=intent,
            )
            await self._trace.emit(trace_id, "compose", {
                "chars": len(composed.text),
                "modifications": composed.modifications,
            })
            if composed.modifications:
                yield self._event(StreamEventType.DATA_SOURCE, {
                    "type": "prompt_enhanced",
                    "status": "complete",
                    "modifications": composed.modifications,
                }, trace_id)

            # 4. Round loop ------------------------------------------------
            contents = to_model_history(conversation.messages)
            failure: str | None = None

            while True:
                if self._cancelled(cancel):
                    return
                if round_index >= self.max_rounds:
                    logger.info("Round ceiling (%d) reached, finishing turn", self.max_rounds)
                    break

                state = RoundState(index=round_index, max_rounds=self.max_rounds)
                yield self._event(StreamEventType.ROUND, state.payload(), trace_id)
                acc.start_round()

                model_request = ModelRequest(
                    system_instruction=composed.text,
                    contents=list(contents),
                    function_declarations=await router.function_declarations(),
                    use_search_grounding=router.search_grounding,
                )
                t_llm = time.time()
                try:
                    async with aclosing(self._model.stream(model_request)) as chunks:
                        async for chunk in chunks:
                            if self._cancelled(cancel):
                                return
                            for event in self._fold_chunk(chunk, acc, round_index, trace_id):
                                yield event
                except ModelTransportError as exc:
                    logger.warning("Model call failed in round %d: %s", round_index, exc)
                    failure = str(exc)
                except Exception as exc:
                    logger.exception("Model stream raised in round %d", round_index)
                    failure = f"Model call failed: {exc}"

                await self._trace.emit(trace_id, "model_call", {
                    "round": round_index,
                    "latency_ms": round((time.time() - t_llm) * 1000, 2),
                    "parts": len(acc.round_parts),
                    "tool_calls": len(acc.pending_calls),
                    "error": failure,
                })
                if failure is not None:
                    break

                # -- final text-only round --------------------------------
                if not acc.pending_calls:
                    state.status = RoundStatus.COMPLETE
                    yield self._event(StreamEventType.ROUND, state.payload(), trace_id)
                    break

                # -- tool execution ---------------------------------------
                yield self._event(StreamEventType.STATUS, "tool_calling", trace_id)
                contents.append(acc.model_turn())
                model_ids = {
                    p.call_id for p in acc.round_parts
                    if isinstance(p, FunctionCallPart) and p.call_id
                }
                responses = []
                for call in acc.pending_calls:
                    client_rendered = router.is_client_rendered(call.name)
                    running = {
                        "toolCallId": call.tool_call_id,
                        "name": call.name,
                        "args": call.arguments,
                        "isFrontendTool": client_rendered,
                    }
                    yield self._event(StreamEventType.TOOL_CALL, {**running, "status": "running"}, trace_id)

                    result = await router.resolve(call)
                    if self._cancelled(cancel):
                        return
                    acc.add_tool_result(result)
                    state.tool_calls_this_round.append(result)
                    yield self._event(StreamEventType.TOOL_CALL, {
                        **running,
                        "status": "complete",
                        "result": call.arguments if client_rendered else result.model_output(),
                    }, trace_id)
                    responses.append(function_response(call, result, call.tool_call_id in model_ids))

                contents.append({"role": "user", "parts": responses})
                state.status = RoundStatus.COMPLETE
                yield self._event(StreamEventType.ROUND, state.payload(), trace_id)
                round_index += 1

            # 5. Finish ----------------------------------------------------
            if failure is not None:
                outcome = "failed"
                yield self._event(StreamEventType.ERROR, failure, trace_id)
                if acc.has_tool_results:
                    await self._persist(request.conversation_id, acc)
            else:
                outcome = "done"
                if acc.sources:
                    yield self._event(
                        StreamEventType.SOURCES,
                        [c.model_dump() for c in acc.sources],
                        trace_id,
                    )
                await self._persist(request.conversation_id, acc)
            yield self._event(StreamEventType.DONE, None, trace_id)

        finally:
            await router.close()
            await self._trace.emit(trace_id, "turn_done", {
                "outcome": outcome,
                "tool_rounds": round_index,
                "tool_calls": len(acc.tool_results),
                "total_latency_ms": round((time.time() - t_start) * 1000, 2),
            })
            await self._trace.flush(trace_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fold_chunk(
        self,
        chunk: ModelChunk,
        acc: TurnAccumulator,
        round_index: int,
        trace_id: str,
    ) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for part in chunk.parts:
            acc.retain(part)
            if isinstance(part, ThoughtPart):
                if not acc.emitted_thinking:
                    acc.emitted_thinking = True
                    events.append(self._event(StreamEventType.STATUS, "thinking", trace_id))
            elif isinstance(part, FunctionCallPart):
                acc.buffer_call(part, round_index)
            elif isinstance(part, TextPart) and part.text:
                if not acc.emitted_generating:
                    acc.emitted_generating = True
                    events.append(self._event(StreamEventType.STATUS, "generating", trace_id))
                acc.add_text(part.text)
                events.append(self._event(StreamEventType.TEXT, part.text, trace_id))

        if chunk.has_grounding:
            if not acc.emitted_searching:
                acc.emitted_searching = True
                events.append(self._event(StreamEventType.STATUS, "searching", trace_id))
            acc.add_citations(chunk.citations)
        return events

    async def _persist(self, conversation_id: str, acc: TurnAccumulator) -> None:
        try:
            await self._store.append_message(conversation_id, acc.to_message())
        except Exception:
            logger.exception("Failed to persist assistant message for %s", conversation_id)

    @staticmethod
    def _cancelled(cancel: asyncio.Event | None) -> bool:
        return cancel is not None and cancel.is_set()

    @staticmethod
    def _event(event_type: StreamEventType, data: Any, trace_id: str) -> StreamEvent:
        return StreamEvent(type=event_type, data=data, trace_id=trace_id)
