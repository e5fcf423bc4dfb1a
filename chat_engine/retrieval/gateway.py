"""Retrieval gateway — vector search and graph lookup, run side by side.

Both paths degrade independently: a failing backend yields an empty result
and a recorded error, never an exception. The caller waits for both before
composing the system instruction.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from chat_engine.engine.models import GraphMatches, RetrievalResult, VectorMatch
from chat_engine.retrieval.graph import candidate_entities
from chat_engine.retrieval.interface import ChunkStore, Embedder, GraphClient

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 200
GRAPH_CONTEXT_NODES = 25


class RetrievalGateway:
    def __init__(
        self,
        embedder: Embedder,
        store: ChunkStore,
        graph: GraphClient | None = None,
        top_k: int = 5,
        min_token_length: int = 4,
        max_entities: int = 5,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._graph = graph
        self._top_k = top_k
        self._min_token_length = min_token_length
        self._max_entities = max_entities

    @property
    def has_graph(self) -> bool:
        return self._graph is not None

    async def search(self, query_text: str, include_graph: bool = True) -> RetrievalResult:
        use_graph = include_graph and self._graph is not None
        vector_outcome, graph_outcome = await asyncio.gather(
            self._vector_path(query_text),
            self._graph_path(query_text) if use_graph else _skipped(),
        )
        matches, vector_error, vector_ms = vector_outcome
        graph, graph_error, graph_ms = graph_outcome
        return RetrievalResult(
            vector_matches=matches,
            graph_matches=graph,
            vector_error=vector_error,
            graph_error=graph_error,
            graph_attempted=use_graph,
            vector_duration_ms=vector_ms,
            graph_duration_ms=graph_ms,
        )

    async def _vector_path(self, query_text: str) -> tuple[list[VectorMatch], str | None, float]:
        t0 = time.time()
        try:
            embedding = await self._embedder.embed(query_text)
            matches = await self._store.search(embedding, k=self._top_k)
        except Exception as exc:
            logger.warning("Vector search failed: %s", exc)
            return [], str(exc), _ms_since(t0)
        logger.info("Vector search returned %d match(es)", len(matches))
        return matches, None, _ms_since(t0)

    async def _graph_path(self, query_text: str) -> tuple[GraphMatches | None, str | None, float]:
        assert self._graph is not None
        t0 = time.time()
        entities = candidate_entities(query_text, self._min_token_length, self._max_entities)
        try:
            graph = await self._graph.related(query_text, entities)
        except Exception as exc:
            logger.warning("Graph search failed: %s", exc)
            return None, str(exc), _ms_since(t0)
        logger.info(
            "Graph search returned %d node(s), %d relationship(s)",
            len(graph.nodes), len(graph.relationships),
        )
        return graph, None, _ms_since(t0)

    async def close(self) -> None:
        await self._embedder.close()
        if self._graph is not None:
            await self._graph.close()


async def _skipped() -> tuple[None, None, float]:
    return None, None, 0.0


def _ms_since(t0: float) -> float:
    return round((time.time() - t0) * 1000, 2)


# ---------------------------------------------------------------------------
# Flattening into model-visible text
# ---------------------------------------------------------------------------

def format_context(result: RetrievalResult) -> str:
    """Flatten a retrieval result into text appended to the system instruction."""
    sections: list[str] = []

    if result.vector_matches:
        lines = ["### Relevant document excerpts"]
        for i, match in enumerate(result.vector_matches, start=1):
            ref = match.source_ref
            where = f"document {ref.document_id}"
            if ref.json_path:
                where += f", {ref.json_path}"
            lines.append(f"[{i}] ({where}; similarity {match.score:.3f})\n{match.content.strip()}")
        sections.append("\n\n".join(lines))

    graph = result.graph_matches
    if graph and (graph.nodes or graph.relationships):
        names = {node.id: node.display_name for node in graph.nodes}
        lines = ["### Related entities (knowledge graph)"]
        for node in graph.nodes[:GRAPH_CONTEXT_NODES]:
            labels = ":".join(node.labels) or "Entity"
            lines.append(f"- ({labels}) {node.display_name}")
        for rel in graph.relationships:
            start = names.get(rel.start, rel.start)
            end = names.get(rel.end, rel.end)
            lines.append(f"- {start} -[{rel.type}]-> {end}")
        sections.append("\n".join(lines))

    if not sections:
        return ""
    header = (
        "## Retrieved Context\n"
        "Use the following retrieved material when it is relevant. Cite the "
        "document and section you relied on."
    )
    return "\n\n".join([header, *sections])


# ---------------------------------------------------------------------------
# data_source event payloads
# ---------------------------------------------------------------------------

def vector_event(result: RetrievalResult) -> dict[str, Any]:
    if result.vector_error is not None:
        return {"type": "vector_search", "status": "error", "error": result.vector_error}
    matches = result.vector_matches
    return {
        "type": "vector_search",
        "status": "complete",
        "resultCount": len(matches),
        "topScore": matches[0].score if matches else None,
        "durationMs": result.vector_duration_ms,
        "documents": [
            {
                "score": m.score,
                "jsonPath": m.source_ref.json_path,
                "snippet": m.content[:SNIPPET_CHARS],
            }
            for m in matches
        ],
    }


def graph_event(result: RetrievalResult) -> dict[str, Any] | None:
    if not result.graph_attempted:
        return None
    if result.graph_error is not None:
        return {"type": "knowledge_graph", "status": "error", "error": result.graph_error}
    graph = result.graph_matches or GraphMatches()
    return {
        "type": "knowledge_graph",
        "status": "complete",
        "nodeCount": len(graph.nodes),
        "relationshipCount": len(graph.relationships),
        "durationMs": result.graph_duration_ms,
        "entities": [
            {"labels": node.labels, "name": node.display_name}
            for node in graph.nodes[:GRAPH_CONTEXT_NODES]
        ],
    }
