"""Conversation store — ABC + in-memory implementation."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from chat_engine.engine.models import Conversation, Message

logger = logging.getLogger(__name__)


class ConversationNotFound(LookupError):
    """Raised when a conversation id is unknown to the store."""


class ConversationStore(ABC):
    """Async read/append log over conversations and their messages.

    The engine only reads a conversation at turn start and appends one
    assistant message at turn end. Swap to a real database by implementing
    this ABC.
    """

    @abstractmethod
    async def get(self, conversation_id: str) -> Conversation: ...

    @abstractmethod
    async def append_message(self, conversation_id: str, message: Message) -> None: ...


class InMemoryConversationStore(ConversationStore):
    """Dict-backed store — suitable for single-process dev/test."""

    def __init__(self) -> None:
        self._store: dict[str, Conversation] = {}

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryConversationStore":
        """Seed from a JSON list of ``Conversation`` objects (snake_case fields)."""
        store = cls()
        for item in json.loads(Path(path).read_text()):
            store.put(Conversation.model_validate(item))
        logger.info("Loaded %d conversation(s) from %s", len(store._store), path)
        return store

    def put(self, conversation: Conversation) -> None:
        self._store[conversation.conversation_id] = conversation

    async def get(self, conversation_id: str) -> Conversation:
        conversation = self._store.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation.model_copy(update={"messages": list(conversation.messages)})

    async def append_message(self, conversation_id: str, message: Message) -> None:
        conversation = self._store.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        conversation.messages.append(message)

    def messages(self, conversation_id: str) -> list[Message]:
        conversation = self._store.get(conversation_id)
        return list(conversation.messages) if conversation else []
