"""Retrieval interfaces — embedder, chunk store and graph client ABCs."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from chat_engine.engine.models import GraphMatches, VectorMatch


class StoredChunk(BaseModel):
    """One pre-embedded chunk of a source document."""
    id: str
    document_id: str
    chunk_index: int = 0
    content: str
    json_path: str | None = None
    embedding: list[float] = Field(default_factory=list)


class RetrievalError(RuntimeError):
    """A retrieval backend failed; callers degrade instead of aborting."""


class Embedder(ABC):
    """Turns query text into a vector in the same space as the stored chunks."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]: ...

    async def close(self) -> None:
        return None


class ChunkStore(ABC):
    """Similarity search over a pre-populated chunk corpus.

    Swap to a real vector database by implementing this ABC.
    """

    @abstractmethod
    async def search(self, embedding: list[float], k: int = 5) -> list[VectorMatch]: ...


class GraphClient(ABC):
    """Entity lookup against a knowledge graph."""

    @abstractmethod
    async def related(self, query_text: str, entities: list[str]) -> GraphMatches: ...

    async def close(self) -> None:
        return None
