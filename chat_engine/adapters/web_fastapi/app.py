"""FastAPI SSE adapter — thin translation layer, no business logic."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chat_engine import create_engine
from chat_engine.engine.models import ChatTurnRequest
from chat_engine.engine.orchestrator import ChatOrchestrator
from chat_engine.engine.store import ConversationNotFound

logger = logging.getLogger(__name__)


class ChatBody(BaseModel):
    conversation_id: str = Field(alias="conversationId")

    model_config = {"populate_by_name": True}


def subject_from_header(authorization: str | None) -> str:
    """Opaque caller identity from ``Authorization: Bearer <subject>``; not validated here."""
    if authorization and authorization.lower().startswith("bearer "):
        subject = authorization[7:].strip()
        if subject:
            return subject
    return "anonymous"


def create_app(engine: ChatOrchestrator | None = None) -> FastAPI:
    engine = engine or create_engine()
    app = FastAPI(title="Chat Engine API", version="0.1.0")

    @app.post("/api/chat")
    async def chat(body: ChatBody, authorization: str | None = Header(default=None)) -> StreamingResponse:
        try:
            await engine.store.get(body.conversation_id)
        except ConversationNotFound:
            raise HTTPException(status_code=404, detail="Conversation not found")

        turn = ChatTurnRequest(
            conversation_id=body.conversation_id,
            subject_id=subject_from_header(authorization),
        )
        logger.info("chat turn conversation=%s trace=%s", turn.conversation_id, turn.trace_id)

        async def sse_stream():
            # Starlette cancels this generator when the client disconnects.
            async for event in engine.handle(turn):
                yield event.sse_frame()

        return StreamingResponse(
            sse_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    return app


# Module-level instance for ``uvicorn chat_engine.adapters.web_fastapi.app:app``
app = create_app()


def serve() -> None:
    """Entry-point for ``chat-engine-web`` console script.

    Conversations are read from ``CONVERSATIONS_PATH``; without it the store
    starts empty and every chat request answers 404. Embedders with their own
    store should call ``create_app(engine)`` instead.
    """
    import uvicorn

    uvicorn.run(
        "chat_engine.adapters.web_fastapi.app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
