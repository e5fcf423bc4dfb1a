"""In-memory cosine-similarity chunk store, loaded from a JSON corpus file."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path

from chat_engine.engine.models import SourceRef, VectorMatch
from chat_engine.retrieval.interface import ChunkStore, RetrievalError, StoredChunk

logger = logging.getLogger(__name__)


def cosine(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise RetrievalError(f"embedding dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryChunkStore(ChunkStore):
    """Brute-force cosine scorer over a static corpus."""

    def __init__(self, chunks: list[StoredChunk] | None = None) -> None:
        self._chunks = [c for c in (chunks or []) if c.embedding]

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryChunkStore":
        """Load ``[{id, documentId, chunkIndex, content, metadata: {jsonPath}, embedding}]``."""
        raw = json.loads(Path(path).read_text())
        chunks = []
        for item in raw:
            metadata = item.get("metadata") or {}
            chunks.append(StoredChunk(
                id=str(item.get("id") or item.get("_id")),
                document_id=str(item.get("documentId", "")),
                chunk_index=item.get("chunkIndex", 0),
                content=item.get("content", ""),
                json_path=metadata.get("jsonPath") or metadata.get("sectionPath"),
                embedding=item.get("embedding") or [],
            ))
        logger.info("Loaded %d chunk(s) from %s", len(chunks), path)
        return cls(chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    async def search(self, embedding: list[float], k: int = 5) -> list[VectorMatch]:
        scored = [
            VectorMatch(
                content=chunk.content,
                score=round(cosine(embedding, chunk.embedding), 4),
                source_ref=SourceRef(document_id=chunk.document_id, json_path=chunk.json_path),
            )
            for chunk in self._chunks
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:k]
