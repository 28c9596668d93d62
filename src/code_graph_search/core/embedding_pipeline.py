"""Embedding phase: attach vectors to loaded nodes and build the vector index.

Runs after the structural bulk load. Embeddable nodes are read back from the
graph (their ``content`` column already holds the extracted source), embedded
in batches, and patched in with the batched statement executor. The vector
index is built once every vector is in place.
"""

import inspect
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger

from ..config.settings import EmbeddingConfig, SchemaConfig, SearchConfig
from .batch_executor import BatchedStatementExecutor
from .embeddings import Embedder
from .exceptions import EmbeddingError
from .graph_engine import GraphEngine
from .models import EmbeddingResult
from .progress import EmbeddingProgress, EmbeddingProgressCallback


@dataclass
class EmbeddableNode:
    """Node text source read back from the graph."""

    id: str
    label: str
    name: str
    file_path: str
    content: str


def build_embedding_text(node: EmbeddableNode, max_chars: int) -> str:
    """Text fed to the embedding model for one node."""
    header = f"{node.label}: {node.name}\nFile: {node.file_path}"
    content = (node.content or "").strip()
    text = f"{header}\n\n{content}" if content else header
    return text[:max_chars]


async def _notify(callback: EmbeddingProgressCallback | None, event: EmbeddingProgress) -> None:
    if callback is None:
        return
    result = callback(event)
    if inspect.isawaitable(result):
        await result


class EmbeddingPipeline:
    """Generates embeddings for embeddable nodes and indexes them."""

    def __init__(
        self,
        engine: GraphEngine,
        executor: BatchedStatementExecutor,
        embedder: Embedder,
        config: EmbeddingConfig | None = None,
        schema: SchemaConfig | None = None,
        search: SearchConfig | None = None,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.embedder = embedder
        self.config = config or EmbeddingConfig()
        self.schema = schema or engine.schema
        self.search = search or SearchConfig()

    @property
    def update_statement(self) -> str:
        return (
            f"MATCH (n:{self.schema.node_table} {{id: $nodeId}}) "
            "SET n.embedding = $embedding"
        )

    async def fetch_embeddable_nodes(self) -> list[EmbeddableNode]:
        rows = await self.engine.execute_prepared(
            f"""
            MATCH (n:{self.schema.node_table})
            WHERE list_contains($labels, n.label)
            RETURN n.id AS id, n.label AS label, n.name AS name,
                   n.filePath AS filePath, n.content AS content
            """,
            {"labels": list(self.config.labels)},
        )
        return [
            EmbeddableNode(
                id=row["id"],
                label=row["label"] or "",
                name=row["name"] or "",
                file_path=row["filePath"] or "",
                content=row["content"] or "",
            )
            for row in rows
        ]

    def _check_dimensions(self, vectors: list[list[float]]) -> None:
        expected = self.schema.embedding_dim
        for vector in vectors:
            if len(vector) != expected:
                raise EmbeddingError(
                    f"Embedding dimension mismatch: expected {expected}, got {len(vector)}",
                    context={"model_dimension": len(vector)},
                )

    async def run(
        self, on_progress: EmbeddingProgressCallback | None = None
    ) -> EmbeddingResult:
        """Embed every embeddable node and build the vector index.

        Raises:
            EmbeddingError: If the model fails or produces wrongly sized vectors
            DatabaseError: If vectors cannot be written to the graph
        """
        start_time = time.time()
        try:
            await _notify(on_progress, EmbeddingProgress(phase="loading-model", percent=0))
            await self.embedder.load()

            # Kuzu refuses updates to an indexed column
            await self.engine.drop_vector_index()

            nodes = await self.fetch_embeddable_nodes()
            total = len(nodes)
            logger.info(f"Embedding {total} nodes with batch size {self.config.batch_size}")

            await _notify(
                on_progress,
                EmbeddingProgress(phase="embedding", percent=0, total_nodes=total),
            )

            processed = 0
            for start in range(0, total, self.config.batch_size):
                batch = nodes[start : start + self.config.batch_size]
                texts = [build_embedding_text(n, self.config.max_chars) for n in batch]
                vectors = await self.embedder.embed(texts)
                self._check_dimensions(vectors)

                params: list[dict[str, Any]] = [
                    {"nodeId": node.id, "embedding": vector}
                    for node, vector in zip(batch, vectors)
                ]
                await self.executor.execute_batched(self.update_statement, params)

                processed += len(batch)
                await _notify(
                    on_progress,
                    EmbeddingProgress(
                        phase="embedding",
                        percent=int(processed / total * 90),
                        nodes_processed=processed,
                        total_nodes=total,
                    ),
                )

            await _notify(
                on_progress,
                EmbeddingProgress(
                    phase="indexing",
                    percent=95,
                    nodes_processed=processed,
                    total_nodes=total,
                ),
            )
            index_result = await self.engine.create_vector_index(self.search.metric)
            if not index_result.success:
                logger.warning(
                    f"Vector index unavailable, search falls back to exact scan: "
                    f"{index_result.error}"
                )

            elapsed = time.time() - start_time
            await _notify(
                on_progress,
                EmbeddingProgress(
                    phase="ready",
                    percent=100,
                    nodes_processed=processed,
                    total_nodes=total,
                ),
            )
            logger.info(f"✓ Embedded {processed} nodes in {elapsed:.1f}s")
            return EmbeddingResult(
                nodes_embedded=processed,
                index_built=index_result.success,
                elapsed_seconds=elapsed,
            )

        except Exception as e:
            logger.error(f"Embedding pipeline failed: {e}")
            await _notify(
                on_progress, EmbeddingProgress(phase="error", percent=0, error=str(e))
            )
            raise
