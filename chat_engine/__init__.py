"""chat_engine — conversational orchestration with tools, retrieval, and tracing.

Usage::

    from chat_engine import create_engine

    engine = create_engine()
    async for event in engine.handle(ChatTurnRequest(conversation_id="c1")):
        print(event.sse_frame())
"""

from __future__ import annotations

import logging

from dotenv import load_dotenv

load_dotenv()  # reads .env into os.environ (no-op if file missing)

from chat_engine.config import EngineSettings
from chat_engine.engine.model_client import DemoMockModelClient, GeminiModelClient, ModelClient
from chat_engine.engine.models import ChatTurnRequest, StreamEvent, StreamEventType
from chat_engine.engine.orchestrator import ChatOrchestrator
from chat_engine.engine.store import ConversationStore, InMemoryConversationStore
from chat_engine.prompting.composer import PromptComposer
from chat_engine.retrieval.embeddings import GeminiEmbedder, OpenAIEmbedder
from chat_engine.retrieval.gateway import RetrievalGateway
from chat_engine.retrieval.graph import Neo4jGraphClient
from chat_engine.retrieval.in_memory import InMemoryChunkStore
from chat_engine.retrieval.interface import Embedder
from chat_engine.tools.mcp_session import MCPSession
from chat_engine.tools.registry import ToolRegistry
from chat_engine.tracing.jsonl_tracer import JSONLTraceCollector

__all__ = [
    "ChatOrchestrator",
    "ChatTurnRequest",
    "EngineSettings",
    "StreamEvent",
    "StreamEventType",
    "create_engine",
]

logger = logging.getLogger(__name__)


def _build_retrieval(settings: EngineSettings) -> RetrievalGateway | None:
    if not settings.corpus_path:
        return None
    store = InMemoryChunkStore.from_file(settings.corpus_path)

    embedder: Embedder
    if settings.embedding_provider == "openai":
        embedder = OpenAIEmbedder(
            api_key=settings.openai_api_key or None,
            model=settings.openai_embedding_model,
        )
    else:
        embedder = GeminiEmbedder(api_key=settings.gemini_api_key, model=settings.embedding_model)

    graph = None
    if settings.neo4j_uri:
        graph = Neo4jGraphClient(
            settings.neo4j_uri,
            settings.neo4j_user,
            settings.neo4j_password,
            result_limit=settings.graph_result_limit,
        )
    logger.info("Retrieval enabled: %d chunk(s), graph=%s", len(store), graph is not None)
    return RetrievalGateway(
        embedder,
        store,
        graph,
        top_k=settings.vector_top_k,
        min_token_length=settings.graph_min_token_length,
        max_entities=settings.graph_max_entities,
    )


def create_engine(
    *,
    settings: EngineSettings | None = None,
    store: ConversationStore | None = None,
    model_client: ModelClient | None = None,
    trace_dir: str | None = None,
    use_mock_model: bool | None = None,
) -> ChatOrchestrator:
    """Wire all components and return a ready-to-use ChatOrchestrator.

    Environment variables (all optional, see ``EngineSettings``):
      GEMINI_API_KEY   — required for real model calls
      GEMINI_MODEL     — default ``gemini-3-flash-preview``
      USE_MOCK_MODEL   — set to ``1`` to use the demo mock
      CORPUS_PATH      — JSON chunk corpus; enables retrieval
      MCP_SERVER_URL   — enables proxied tools
      CONVERSATIONS_PATH — JSON list of conversations to seed the in-memory store
    """
    settings = settings or EngineSettings()
    if store is None:
        if settings.conversations_path:
            store = InMemoryConversationStore.from_file(settings.conversations_path)
        else:
            store = InMemoryConversationStore()
    mock = use_mock_model if use_mock_model is not None else settings.use_mock_model

    # -- components --
    trace_collector = JSONLTraceCollector(trace_dir or settings.trace_dir)

    session_factory = None
    if settings.mcp_server_url:
        url = settings.mcp_server_url
        timeout = settings.request_timeout_seconds

        def session_factory() -> MCPSession:
            return MCPSession(url, timeout=timeout)

    tool_registry = ToolRegistry(
        session_factory=session_factory,
        excluded_tool=settings.mcp_excluded_tool or None,
        search_grounding=settings.web_search_grounding,
    )

    if model_client is None:
        if mock or not settings.gemini_api_key:
            model_client = DemoMockModelClient()
        else:
            model_client = GeminiModelClient(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                api_base=settings.gemini_api_base,
                thinking_level=settings.thinking_level or None,
                timeout=settings.request_timeout_seconds,
            )

    return ChatOrchestrator(
        store=store,
        tool_registry=tool_registry,
        composer=PromptComposer(),
        model_client=model_client,
        trace_collector=trace_collector,
        retrieval=_build_retrieval(settings),
        max_rounds=settings.max_rounds,
    )
