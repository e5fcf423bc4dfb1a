"""Neo4j knowledge-graph client over the HTTP Query API (v2)."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit

import httpx

from chat_engine.engine.models import GraphMatches, GraphNode, GraphRelationship
from chat_engine.retrieval.interface import GraphClient, RetrievalError

logger = logging.getLogger(__name__)

# Query API does not accept literal line breaks inside the statement.
RELATED_ENTITIES_CYPHER = (
    "MATCH (n) WHERE any(label IN labels(n) WHERE toLower(label) IN $entities) "
    "OR any(prop IN keys(n) WHERE any(t IN $entities WHERE toLower(toString(n[prop])) CONTAINS t)) "
    "OPTIONAL MATCH (n)-[r]-(m) "
    "RETURN DISTINCT n, r, m LIMIT $limit"
)

_TOKEN_STRIP = re.compile(r"^[^\w]+|[^\w]+$")


def candidate_entities(query_text: str, min_length: int = 4, max_entities: int = 5) -> list[str]:
    """Lower-cased query tokens of at least ``min_length`` chars, first ``max_entities`` unique."""
    seen: list[str] = []
    for raw in query_text.split():
        token = _TOKEN_STRIP.sub("", raw).lower()
        if len(token) < min_length or token in seen:
            continue
        seen.append(token)
        if len(seen) >= max_entities:
            break
    return seen


def query_api_url(uri: str) -> str:
    """Map a bolt/neo4j URI to the HTTP Query API endpoint."""
    http_uri = uri
    for scheme, replacement in (
        ("neo4j+s://", "https://"),
        ("bolt+s://", "https://"),
        ("neo4j://", "http://"),
        ("bolt://", "http://"),
    ):
        if http_uri.startswith(scheme):
            http_uri = replacement + http_uri[len(scheme):]
            break
    if not http_uri.startswith(("http://", "https://")):
        http_uri = f"https://{http_uri}"

    parts = urlsplit(http_uri)
    host = parts.hostname or ""
    port = parts.port
    # Aura (*.databases.neo4j.io) serves HTTPS on 443
    if not host.endswith(".databases.neo4j.io") and port in (None, 7687):
        port = 7473 if parts.scheme == "https" else 7474
    netloc = f"{host}:{port}" if port else host
    return f"{parts.scheme}://{netloc}/db/neo4j/query/v2"


def _element_id(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("elementId") or value.get("identity") or value.get("id") or "")
    return str(value)


class Neo4jGraphClient(GraphClient):
    def __init__(
        self,
        uri: str,
        username: str,
        password: str,
        result_limit: int = 50,
        timeout: float = 15.0,
    ) -> None:
        self.url = query_api_url(uri)
        self._result_limit = result_limit
        self.http = httpx.AsyncClient(timeout=timeout, auth=(username, password))

    async def related(self, query_text: str, entities: list[str]) -> GraphMatches:
        if not entities:
            return GraphMatches()
        try:
            resp = await self.http.post(
                self.url,
                headers={"Accept": "application/json"},
                json={
                    "statement": RELATED_ENTITIES_CYPHER,
                    "parameters": {"entities": entities, "limit": self._result_limit},
                },
            )
        except httpx.HTTPError as exc:
            raise RetrievalError(f"Neo4j unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise RetrievalError(f"Neo4j API error: {resp.status_code} {resp.text[:200]}")

        body = resp.json()
        errors = body.get("errors") or []
        if errors:
            raise RetrievalError(
                "Neo4j query error: " + ", ".join(e.get("message", str(e)) for e in errors)
            )
        return parse_query_response(body, self._result_limit)

    async def close(self) -> None:
        await self.http.aclose()


def parse_query_response(body: dict[str, Any], limit: int = 50) -> GraphMatches:
    """Parse ``{data: {fields: [n, r, m], values: [[...]]}}`` into nodes + relationships."""
    data = body.get("data") or {}
    fields: list[str] = data.get("fields") or []
    index = {name: i for i, name in enumerate(fields)}

    nodes: dict[str, GraphNode] = {}
    relationships: dict[str, GraphRelationship] = {}

    def cell(row: list[Any], name: str) -> Any:
        i = index.get(name)
        return row[i] if i is not None and i < len(row) else None

    for row in (data.get("values") or [])[:limit]:
        for name in ("n", "m"):
            node = cell(row, name)
            if isinstance(node, dict):
                node_id = _element_id(node)
                nodes.setdefault(node_id, GraphNode(
                    id=node_id,
                    labels=node.get("labels") or [],
                    properties=node.get("properties") or {},
                ))
        rel = cell(row, "r")
        if isinstance(rel, dict):
            rel_id = _element_id(rel)
            relationships.setdefault(rel_id, GraphRelationship(
                id=rel_id,
                type=rel.get("type", ""),
                start=str(rel.get("startNodeElementId") or _element_id(cell(row, "n"))),
                end=str(rel.get("endNodeElementId") or _element_id(cell(row, "m"))),
                properties=rel.get("properties") or {},
            ))

    return GraphMatches(nodes=list(nodes.values()), relationships=list(relationships.values()))
