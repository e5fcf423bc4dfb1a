"""CLI JSON-lines adapter — seeds a conversation from argv/stdin, prints StreamEvents as JSON."""

from __future__ import annotations

import asyncio
import json
import os
import sys

from chat_engine import create_engine
from chat_engine.engine.models import ChatTurnRequest, Conversation, Message, Role
from chat_engine.engine.store import InMemoryConversationStore

DEFAULT_INSTRUCTION = "You are a helpful assistant for an internal prompt library."


async def run_cli(text: str, instruction: str = DEFAULT_INSTRUCTION, retrieval: bool = False) -> None:
    store = InMemoryConversationStore()
    store.put(Conversation(
        conversation_id="cli-default",
        subject_id="cli",
        base_instruction=instruction,
        retrieval_enabled=retrieval,
        messages=[Message(role=Role.USER, content=text)],
    ))
    engine = create_engine(store=store)
    request = ChatTurnRequest(conversation_id="cli-default", subject_id="cli")
    async for event in engine.handle(request):
        print(json.dumps(event.model_dump(mode="json"), default=str), flush=True)


def main() -> None:
    instruction = os.environ.get("CHAT_INSTRUCTION", DEFAULT_INSTRUCTION)
    retrieval = bool(os.environ.get("CORPUS_PATH"))
    if len(sys.argv) > 1:
        text = " ".join(sys.argv[1:])
    else:
        raw = sys.stdin.read().strip()
        if not raw:
            print(
                "Usage: chat-engine-cli <text>  OR  "
                "echo '{\"text\":\"...\",\"instruction\":\"...\"}' | chat-engine-cli",
                file=sys.stderr,
            )
            sys.exit(1)
        try:
            data = json.loads(raw)
            text = data.get("text", raw)
            instruction = data.get("instruction", instruction)
        except json.JSONDecodeError:
            text = raw

    asyncio.run(run_cli(text, instruction, retrieval))


if __name__ == "__main__":
    main()
