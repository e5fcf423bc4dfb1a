"""Core data models — no internal dependencies, only Pydantic + stdlib."""

from __future__ import annotations

import json
import time
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Conversation log (owned by the persistence collaborator)
# ---------------------------------------------------------------------------

class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Citation(BaseModel):
    uri: str
    title: str


class DataSourceSummary(BaseModel):
    """Compact per-backend record persisted on the assistant message."""
    type: str
    count: int
    top_score: float | None = None


class ToolInvocationResult(BaseModel):
    """Canonical output of either tool execution path."""
    tool_call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result_text: str | None = None
    result_placeholder: str | None = None
    client_rendered: bool = False

    def model_output(self) -> str:
        """Text handed back to the model as the function response."""
        if self.result_placeholder is not None:
            return self.result_placeholder
        return self.result_text or ""


class Message(BaseModel):
    role: Role
    content: str
    created_at: float = Field(default_factory=time.time)
    tool_calls: list[ToolInvocationResult] = Field(default_factory=list)
    sources: list[Citation] = Field(default_factory=list)
    data_sources: list[DataSourceSummary] = Field(default_factory=list)

    model_config = {"frozen": True}


class Conversation(BaseModel):
    conversation_id: str
    subject_id: str = "anonymous"
    base_instruction: str = ""
    retrieval_enabled: bool = False
    include_graph: bool = True
    messages: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Inbound request (adapter → engine)
# ---------------------------------------------------------------------------

class ChatTurnRequest(BaseModel):
    """Adapter-agnostic chat turn."""
    conversation_id: str
    subject_id: str = "anonymous"
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolDeclaration(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_function_declaration(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolInvocationRequest(BaseModel):
    """A single function call requested by the model."""
    tool_call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Model stream parts — one variant per kind, decided once at parse time
# ---------------------------------------------------------------------------

class ThoughtPart(BaseModel):
    kind: Literal["thought"] = "thought"
    raw: dict[str, Any]


class FunctionCallPart(BaseModel):
    kind: Literal["function_call"] = "function_call"
    raw: dict[str, Any]
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str | None = None


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    raw: dict[str, Any]
    text: str


ModelPart = Annotated[
    Union[ThoughtPart, FunctionCallPart, TextPart],
    Field(discriminator="kind"),
]


class ModelChunk(BaseModel):
    """One server-pushed chunk: zero or more parts plus grounding citations."""
    parts: list[ModelPart] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    has_grounding: bool = False


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class SourceRef(BaseModel):
    document_id: str
    json_path: str | None = None


class VectorMatch(BaseModel):
    content: str
    score: float
    source_ref: SourceRef


class GraphNode(BaseModel):
    id: str
    labels: list[str] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        for key in ("name", "title", "id"):
            value = self.properties.get(key)
            if value:
                return str(value)
        return self.id


class GraphRelationship(BaseModel):
    id: str
    type: str
    start: str
    end: str
    properties: dict[str, Any] = Field(default_factory=dict)


class GraphMatches(BaseModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    relationships: list[GraphRelationship] = Field(default_factory=list)


class RetrievalResult(BaseModel):
    vector_matches: list[VectorMatch] = Field(default_factory=list)
    graph_matches: GraphMatches | None = None
    vector_error: str | None = None
    graph_error: str | None = None
    graph_attempted: bool = False
    vector_duration_ms: float = 0.0
    graph_duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# Round bookkeeping
# ---------------------------------------------------------------------------

class RoundStatus(str, Enum):
    STARTED = "started"
    COMPLETE = "complete"


class RoundState(BaseModel):
    index: int
    max_rounds: int
    status: RoundStatus = RoundStatus.STARTED
    tool_calls_this_round: list[ToolInvocationResult] = Field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "current": self.index + 1,
            "maxRounds": self.max_rounds,
            "status": self.status.value,
        }
        if self.status == RoundStatus.COMPLETE:
            data["toolCalls"] = [
                {"name": tc.name, "isFrontendTool": tc.client_rendered}
                for tc in self.tool_calls_this_round
            ]
        return data


# ---------------------------------------------------------------------------
# Outbound events (engine → adapter)
# ---------------------------------------------------------------------------

class StreamEventType(str, Enum):
    INTENT = "intent"
    STATUS = "status"
    TEXT = "text"
    TOOL_CALL = "tool_call"
    DATA_SOURCE = "data_source"
    ROUND = "round"
    SOURCES = "sources"
    ERROR = "error"
    DONE = "done"


class StreamEvent(BaseModel):
    type: StreamEventType
    data: Any = None
    trace_id: str = ""
    timestamp: float = Field(default_factory=time.time)

    def wire_payload(self) -> str:
        """Single JSON object keyed by event type; ``[DONE]`` for the terminal marker."""
        if self.type == StreamEventType.DONE:
            return "[DONE]"
        return json.dumps({self.type.value: self.data}, default=str)

    def sse_frame(self) -> str:
        return f"data: {self.wire_payload()}\n\n"

