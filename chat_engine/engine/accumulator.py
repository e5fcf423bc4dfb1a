"""TurnAccumulator — the single mutable fold state threaded through one turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chat_engine.engine.models import (
    Citation,
    DataSourceSummary,
    FunctionCallPart,
    Message,
    ModelPart,
    Role,
    ToolInvocationRequest,
    ToolInvocationResult,
)

EMPTY_TURN_CONTENT = "(tool response)"


@dataclass
class TurnAccumulator:
    """Owned by the orchestrator for the lifetime of a turn; never shared."""

    text_parts: list[str] = field(default_factory=list)
    tool_results: dict[str, ToolInvocationResult] = field(default_factory=dict)
    citations: dict[str, Citation] = field(default_factory=dict)
    data_sources: list[DataSourceSummary] = field(default_factory=list)

    emitted_thinking: bool = False
    emitted_generating: bool = False
    emitted_searching: bool = False

    # per-round buffers, reset by ``start_round``
    round_parts: list[ModelPart] = field(default_factory=list)
    pending_calls: list[ToolInvocationRequest] = field(default_factory=list)

    def start_round(self) -> None:
        self.round_parts = []
        self.pending_calls = []

    # -- folding -----------------------------------------------------------

    def retain(self, part: ModelPart) -> None:
        self.round_parts.append(part)

    def add_text(self, text: str) -> None:
        self.text_parts.append(text)

    def buffer_call(self, part: FunctionCallPart, round_index: int) -> ToolInvocationRequest:
        call_id = part.call_id or f"call_{round_index}_{len(self.pending_calls)}"
        request = ToolInvocationRequest(tool_call_id=call_id, name=part.name, arguments=part.arguments)
        self.pending_calls.append(request)
        return request

    def add_citations(self, citations: list[Citation]) -> None:
        for citation in citations:
            self.citations.setdefault(citation.uri, citation)

    def add_tool_result(self, result: ToolInvocationResult) -> None:
        self.tool_results.setdefault(result.tool_call_id, result)

    # -- history replay ----------------------------------------------------

    def model_turn(self) -> dict[str, Any]:
        """This round's parts, verbatim and in order, as one model-role turn."""
        return {"role": "model", "parts": [part.raw for part in self.round_parts]}

    # -- outputs -----------------------------------------------------------

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def sources(self) -> list[Citation]:
        return list(self.citations.values())

    @property
    def has_tool_results(self) -> bool:
        return bool(self.tool_results)

    def to_message(self) -> Message:
        return Message(
            role=Role.ASSISTANT,
            content=self.text or (EMPTY_TURN_CONTENT if self.tool_results else ""),
            tool_calls=list(self.tool_results.values()),
            sources=self.sources,
            data_sources=list(self.data_sources),
        )
