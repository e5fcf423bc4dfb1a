from chat_engine.engine.models import (
    ChatTurnRequest,
    Citation,
    Conversation,
    Message,
    ModelChunk,
    Role,
    StreamEvent,
    StreamEventType,
    ToolDeclaration,
    ToolInvocationRequest,
    ToolInvocationResult,
)
from chat_engine.engine.store import ConversationNotFound, ConversationStore, InMemoryConversationStore
from chat_engine.engine.model_client import (
    DemoMockModelClient,
    GeminiModelClient,
    MockModelClient,
    ModelClient,
    ModelTransportError,
)
from chat_engine.engine.accumulator import TurnAccumulator
from chat_engine.engine.orchestrator import ChatOrchestrator

__all__ = [
    "ChatOrchestrator",
    "ChatTurnRequest",
    "Citation",
    "Conversation",
    "ConversationNotFound",
    "ConversationStore",
    "DemoMockModelClient",
    "GeminiModelClient",
    "InMemoryConversationStore",
    "Message",
    "MockModelClient",
    "ModelChunk",
    "ModelClient",
    "ModelTransportError",
    "Role",
    "StreamEvent",
    "StreamEventType",
    "ToolDeclaration",
    "ToolInvocationRequest",
    "ToolInvocationResult",
    "TurnAccumulator",
]
