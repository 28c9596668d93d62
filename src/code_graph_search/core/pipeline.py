"""Ingestion pipeline façade.

Sequences structural bulk load, embedding and search over one graph engine.
The graph engine and the embedding stage are both optional enhancements:
when either is unavailable the pipeline logs the failure and keeps the
in-memory graph usable for the host.
"""

import inspect
from typing import Any

from loguru import logger

from ..config.settings import PipelineConfig
from .batch_executor import BatchedStatementExecutor
from .embedding_pipeline import EmbeddingPipeline
from .embeddings import Embedder, SentenceTransformerEmbedder
from .exceptions import DatabaseNotInitializedError
from .graph_engine import GraphEngine
from .models import (
    BulkLoadResult,
    ContextResult,
    DiagnosticResult,
    EmbeddingResult,
    FileContents,
    GraphStats,
    KnowledgeGraph,
    OperationResult,
    PipelineResult,
    SearchHit,
)
from .progress import (
    EmbeddingProgress,
    EmbeddingProgressCallback,
    PipelineProgress,
    ProgressCallback,
)
from .search import SemanticSearcher


class IngestionPipeline:
    """Load → embed → query over a single, explicitly owned graph engine.

    One repository at a time: call ``close()`` before loading another one.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        engine: GraphEngine | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        """Wire the pipeline components.

        Args:
            config: Pipeline configuration (defaults when None)
            engine: Graph engine (created from ``config`` when None)
            embedder: Embedding collaborator (sentence-transformers when None)
        """
        self.config = config or PipelineConfig()
        self.engine = engine or GraphEngine(self.config.engine, self.config.schema)
        self.embedder = embedder or SentenceTransformerEmbedder(
            model_name=self.config.embedding.model_name,
            device=self.config.embedding.device,
            expected_dim=self.config.schema.embedding_dim,
        )
        self.executor = BatchedStatementExecutor(self.engine, self.config.batch)
        self.embedding_pipeline = EmbeddingPipeline(
            self.engine,
            self.executor,
            self.embedder,
            config=self.config.embedding,
            schema=self.engine.schema,
            search=self.config.search,
        )
        self.searcher = SemanticSearcher(self.engine, self.embedder, self.config.search)
        self._embedding_progress: EmbeddingProgress | None = None

    # ── structural load ─────────────────────────────────────────────────

    async def load_graph(
        self,
        graph: KnowledgeGraph,
        file_contents: FileContents,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        """Bulk load a graph into the engine.

        Never raises for engine problems: an unavailable or failing engine
        yields ``load.success == False`` and the graph is returned as is.
        """
        stats = {
            "filesProcessed": graph.node_count,
            "totalFiles": graph.node_count,
            "nodesCreated": graph.node_count,
        }
        await self._report(
            on_progress,
            PipelineProgress(
                phase="loading", percent=98, message="Loading into Kuzu...", stats=stats
            ),
        )

        # Embeddings of a previous load no longer match the graph
        self.searcher.reset()
        self._embedding_progress = None

        try:
            load = await self.engine.bulk_load(graph, file_contents)
        except Exception as e:
            logger.warning(f"Graph engine unavailable, continuing without it: {e}")
            load = BulkLoadResult(success=False, count=0, error=str(e))

        graph_stats = await self.get_stats() if load.success else None
        if graph_stats is not None:
            logger.debug(f"Kuzu loaded: {graph_stats.nodes} nodes, {graph_stats.edges} edges")

        await self._report(
            on_progress,
            PipelineProgress(
                phase="complete",
                percent=100,
                message="Graph ready" if load.success else "Graph ready (database unavailable)",
                stats=stats,
            ),
        )
        return PipelineResult(
            graph=graph,
            file_contents=dict(file_contents),
            load=load,
            stats=graph_stats,
        )

    # ── queries ─────────────────────────────────────────────────────────

    def is_ready(self) -> bool:
        return self.engine.is_ready()

    def _require_ready(self) -> None:
        if not self.engine.is_ready():
            raise DatabaseNotInitializedError(
                "Database not ready. Please load a repository first."
            )

    async def run_query(self, cypher: str) -> list[dict[str, Any]]:
        """Execute a Cypher query against the loaded graph.

        Raises:
            DatabaseNotInitializedError: If no repository has been loaded
            QueryError: If the query fails
        """
        self._require_ready()
        return await self.engine.query(cypher)

    async def get_stats(self) -> GraphStats:
        """Node and edge counts; zeros when the engine is unavailable."""
        if not self.engine.is_ready():
            return GraphStats()
        stats = await self.engine.get_stats()
        if stats.error:
            logger.debug(f"Stats unavailable: {stats.error}")
        return stats

    async def test_array_params(self) -> DiagnosticResult:
        """Check that the engine round-trips vector parameters."""
        if not self.engine.is_ready():
            return DiagnosticResult(success=False, error="Database not ready")
        return await self.engine.test_array_params()

    # ── embeddings ──────────────────────────────────────────────────────

    @property
    def is_embedding_complete(self) -> bool:
        return self.searcher.embeddings_ready

    @property
    def embedding_progress(self) -> EmbeddingProgress | None:
        return self._embedding_progress

    def is_embedding_model_ready(self) -> bool:
        return self.embedder.is_ready()

    async def start_embedding_pipeline(
        self, on_progress: EmbeddingProgressCallback | None = None
    ) -> EmbeddingResult:
        """Generate embeddings for the loaded graph and build the vector index.

        Raises:
            DatabaseNotInitializedError: If no repository has been loaded
            EmbeddingError: If the embedding model fails
        """
        self._require_ready()
        self.searcher.reset()
        self._embedding_progress = None

        async def track(progress: EmbeddingProgress) -> None:
            self._embedding_progress = progress
            await self._report(on_progress, progress)

        result = await self.embedding_pipeline.run(track)
        self.searcher.mark_ready()
        return result

    async def semantic_search(
        self, query: str, k: int = 10, max_distance: float = 0.5
    ) -> list[SearchHit]:
        """Nodes closest in meaning to ``query``."""
        return await self.searcher.search(query, k=k, max_distance=max_distance)

    async def semantic_search_with_context(
        self, query: str, k: int = 5, hops: int = 2
    ) -> list[ContextResult]:
        """Nearest nodes plus their neighborhood up to ``hops`` relationships away."""
        return await self.searcher.search_with_context(query, k=k, hops=hops)

    async def dispose_embedder(self) -> None:
        await self.embedder.dispose()
        self.searcher.reset()
        self._embedding_progress = None

    # ── teardown ────────────────────────────────────────────────────────

    async def close(self) -> OperationResult:
        """Tear down the engine; failures are logged, never raised."""
        result = await self.engine.close()
        if not result.success:
            logger.warning(f"Graph engine teardown incomplete: {result.error}")
        self.searcher.reset()
        self._embedding_progress = None
        return result

    async def __aenter__(self) -> "IngestionPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    async def _report(callback: Any, event: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # A broken progress consumer must not abort ingestion
            logger.warning(f"Progress callback failed: {e}")
