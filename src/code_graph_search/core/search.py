"""Semantic search over the embedded code graph.

Queries are embedded with the same model as the nodes and matched against
``CodeNode.embedding``, through the HNSW vector index when it was built and
through an exact scan with Kuzu's array distance functions otherwise.
``search_with_context`` additionally walks the graph around every match.
Both operations only read from the engine.
"""

from loguru import logger

from ..config.defaults import MAX_CONTEXT_HOPS
from ..config.settings import SearchConfig
from .embeddings import Embedder
from .exceptions import (
    CodeGraphSearchError,
    DatabaseNotInitializedError,
    EmbeddingsNotReadyError,
    SearchError,
)
from .graph_engine import GraphEngine
from .models import ConnectedNode, ContextResult, NodeRecord, SearchHit

# Distance expressions for the exact scan, matching the index metrics
_SCAN_DISTANCE = {
    "cosine": "1.0 - array_cosine_similarity(n.embedding, {q})",
    "l2": "array_distance(n.embedding, {q})",
    "l2sq": "array_squared_distance(n.embedding, {q})",
    "dotproduct": "-array_inner_product(n.embedding, {q})",
}

_NODE_COLUMNS = (
    "{v}.id AS id, {v}.label AS label, {v}.name AS name, {v}.filePath AS filePath, "
    "{v}.startLine AS startLine, {v}.endLine AS endLine"
)


class SemanticSearcher:
    """Nearest-neighbor and graph-expanded search."""

    def __init__(
        self,
        engine: GraphEngine,
        embedder: Embedder,
        config: SearchConfig | None = None,
    ) -> None:
        self.engine = engine
        self.embedder = embedder
        self.config = config or SearchConfig()
        self.embeddings_ready = False

    def mark_ready(self) -> None:
        """Record that the embedding phase has completed."""
        self.embeddings_ready = True

    def reset(self) -> None:
        self.embeddings_ready = False

    def _check_ready(self) -> None:
        if not self.engine.is_ready():
            raise DatabaseNotInitializedError(
                "Database not ready. Please load a repository first."
            )
        if not self.embeddings_ready:
            raise EmbeddingsNotReadyError(
                "Embeddings not ready. Please wait for embedding pipeline to complete."
            )

    async def _embed_query(self, query: str) -> list[float]:
        vector = await self.embedder.embed_query(query)
        expected = self.engine.schema.embedding_dim
        if len(vector) != expected:
            raise SearchError(
                f"Query embedding has {len(vector)} dimensions, expected {expected}"
            )
        return vector

    def _index_query(self, k: int) -> str:
        schema = self.engine.schema
        return f"""
            CALL QUERY_VECTOR_INDEX('{schema.node_table}', '{schema.vector_index}', $q, {k})
            RETURN {_NODE_COLUMNS.format(v="node")}, distance
            ORDER BY distance
        """

    def _scan_query(self, k: int) -> str:
        schema = self.engine.schema
        q = f"CAST($q AS FLOAT[{schema.embedding_dim}])"
        distance = _SCAN_DISTANCE[self.config.metric].format(q=q)
        return f"""
            MATCH (n:{schema.node_table})
            WHERE n.embedding IS NOT NULL
            WITH n, {distance} AS distance
            ORDER BY distance
            LIMIT {k}
            RETURN {_NODE_COLUMNS.format(v="n")}, distance
        """

    async def search(
        self, query: str, k: int | None = None, max_distance: float | None = None
    ) -> list[SearchHit]:
        """Find the nodes closest in meaning to ``query``.

        Args:
            query: Natural language query
            k: Maximum number of results (config default when None)
            max_distance: Distance threshold (config default when None)

        Returns:
            At most ``k`` hits, ascending by distance, each within
            ``max_distance``

        Raises:
            DatabaseNotInitializedError: If the engine is not ready
            EmbeddingsNotReadyError: If the embedding phase has not completed
            SearchError: If the query fails
        """
        self._check_ready()
        k = self.config.k if k is None else int(k)
        max_distance = self.config.max_distance if max_distance is None else max_distance
        if k < 1:
            raise SearchError(f"k must be positive, got {k}")

        try:
            vector = await self._embed_query(query)
            if self.engine.is_vector_index_built:
                statement = self._index_query(k)
            else:
                statement = self._scan_query(k)
            rows = await self.engine.execute_prepared(statement, {"q": vector})
        except CodeGraphSearchError as e:
            if isinstance(e, SearchError):
                raise
            raise SearchError(f"Semantic search failed: {e}") from e

        hits = [
            SearchHit(node=NodeRecord.from_row(row), distance=float(row["distance"]))
            for row in rows
            if row["distance"] is not None and float(row["distance"]) <= max_distance
        ]
        hits.sort(key=lambda hit: hit.distance)
        logger.debug(f"Semantic search '{query[:50]}' returned {len(hits[:k])} results")
        return hits[:k]

    async def _expand(self, seed_id: str, hops: int) -> list[ConnectedNode]:
        schema = self.engine.schema
        statement = f"""
            MATCH (a:{schema.node_table})-[r:{schema.edge_table}]-(b:{schema.node_table})
            WHERE list_contains($ids, a.id)
            RETURN {_NODE_COLUMNS.format(v="b")}, r.type AS relType
        """

        visited = {seed_id}
        frontier = [seed_id]
        connected: list[ConnectedNode] = []

        for depth in range(1, hops + 1):
            if not frontier or len(connected) >= self.config.max_neighbors:
                break
            rows = await self.engine.execute_prepared(statement, {"ids": frontier})

            next_frontier = []
            for row in rows:
                node_id = row["id"]
                if node_id in visited:
                    continue
                visited.add(node_id)
                next_frontier.append(node_id)
                connected.append(
                    ConnectedNode(
                        node=NodeRecord.from_row(row),
                        hops=depth,
                        relation_type=row.get("relType") or "",
                    )
                )
            frontier = next_frontier

        return connected[: self.config.max_neighbors]

    async def search_with_context(
        self, query: str, k: int | None = None, hops: int | None = None
    ) -> list[ContextResult]:
        """Semantic search plus the graph neighborhood of every match.

        Args:
            query: Natural language query
            k: Number of seed matches (config default when None)
            hops: Relationship steps to expand, in either direction

        Returns:
            One ContextResult per seed match, in distance order

        Raises:
            DatabaseNotInitializedError: If the engine is not ready
            EmbeddingsNotReadyError: If the embedding phase has not completed
            SearchError: If the query fails or ``hops`` is out of range
        """
        self._check_ready()
        k = self.config.context_k if k is None else k
        hops = self.config.context_hops if hops is None else int(hops)
        if not 1 <= hops <= MAX_CONTEXT_HOPS:
            raise SearchError(f"hops must be between 1 and {MAX_CONTEXT_HOPS}, got {hops}")

        hits = await self.search(query, k=k, max_distance=float("inf"))

        results = []
        for hit in hits:
            try:
                connected = await self._expand(hit.node.id, hops)
            except CodeGraphSearchError as e:
                raise SearchError(f"Graph expansion failed for {hit.node.id}: {e}") from e
            results.append(
                ContextResult(node=hit.node, distance=hit.distance, connected=connected)
            )
        return results
